"""
Domain errors for the donation lifecycle.

Every error carries the HTTP status it maps to; the API layer renders them
through a single exception handler registered in main.py.
"""
from typing import Any, Optional


class DonationError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 400
    code = "DONATION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(DonationError):
    """Bad input: amount out of range, missing donor identity fields"""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(DonationError):
    status_code = 404
    code = "NOT_FOUND"


class StateError(DonationError):
    """Operation not allowed in the donation's current status"""

    status_code = 409
    code = "INVALID_STATE"


class ConcurrentUpdateError(StateError):
    """Guarded update matched no row: another request changed the donation first"""

    code = "CONCURRENT_UPDATE"


class DonationsClosedError(StateError):
    status_code = 403
    code = "DONATIONS_CLOSED"


class GatewayError(DonationError):
    """Payment provider unreachable or returned an error"""

    status_code = 502
    code = "GATEWAY_ERROR"


class EmailDeliveryError(DonationError):
    status_code = 502
    code = "EMAIL_DELIVERY_FAILED"


class TranslationError(Exception):
    """Translation API failure (offline backfill only)"""
