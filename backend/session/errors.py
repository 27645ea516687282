"""
Exceptions raised across the session boundary.
"""

from __future__ import annotations

AUTH_MISSING_MESSAGE = (
    "Authentication files not found. "
    "Please follow the deployment guide to set up authentication files."
)


class AuthMissing(Exception):
    """
    Deployment requires pre-provisioned credentials and none exist.

    Critical and never retryable: the caller is expected to end the process.
    """

    def __init__(self, message: str = AUTH_MISSING_MESSAGE) -> None:
        super().__init__(message)


class NotConnected(Exception):
    """An operation needed a Connected session and there is none."""

    def __init__(self, message: str = "WhatsApp is not connected") -> None:
        super().__init__(message)
