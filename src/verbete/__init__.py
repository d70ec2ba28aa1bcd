"""Verbete - anonymous article submissions.

Authors submit without an account and keep access through a single
e-mailed token. This package holds the token lifecycle, the submission
status machine, and the scheduled expiration alerts.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
