"""Allow ``python -m verbete.worker``."""

from verbete.worker.main import run

run()
