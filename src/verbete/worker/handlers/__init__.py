"""Job handlers for the Verbete worker.

Each handler processes one scheduled job:
- expiry: Expiration alerts at the configured thresholds
- cleanup: Expired-token sweep
- digest: Admin daily summary
- retention: Weekly communication log purge
"""

from verbete.worker.handlers.cleanup import expired_cleanup_handler
from verbete.worker.handlers.digest import daily_digest_handler
from verbete.worker.handlers.expiry import expiry_check_handler
from verbete.worker.handlers.retention import communication_cleanup_handler

__all__ = [
    "communication_cleanup_handler",
    "daily_digest_handler",
    "expired_cleanup_handler",
    "expiry_check_handler",
]
