"""Error taxonomy for the booking orchestrator.

Every error carries a machine-readable ``code`` and ``category`` so callers
can branch on them without parsing the human-readable message.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class FieldError(BaseModel):
    """A single validation failure, addressed by field path."""
    field: str
    message: str


class ErrorDetail(BaseModel):
    """Error shape carried by every operation response."""
    code: str
    category: str
    message: str
    field: Optional[str] = None


class SkybookError(Exception):
    code = "internal_error"
    category = "internal"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_error_details(self) -> List[ErrorDetail]:
        return [ErrorDetail(code=self.code, category=self.category, message=self.message)]


class ValidationError(SkybookError):
    """Malformed or inconsistent input. Never retried."""
    code = "validation_failed"
    category = "validation"

    def __init__(self, errors: List[FieldError]):
        self.errors = list(errors)
        super().__init__("; ".join(e.message for e in self.errors) or "Validation failed")

    def to_error_details(self) -> List[ErrorDetail]:
        return [
            ErrorDetail(code=self.code, category=self.category, message=e.message, field=e.field)
            for e in self.errors
        ]


class StateTransitionError(SkybookError):
    """Illegal stage change. A logic fault, fatal to the current request only."""
    code = "illegal_transition"
    category = "state"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move conversation from '{current}' to '{target}'")


class ProviderError(SkybookError):
    """The inventory provider rejected a request."""
    code = "provider_error"
    category = "provider"

    def __init__(self, message: str, status: Optional[int] = None,
                 errors: Optional[List[Dict[str, Any]]] = None):
        self.status = status
        self.errors = errors or []
        super().__init__(message)

    @property
    def provider_code(self) -> Optional[str]:
        return self.errors[0].get("code") if self.errors else None

    @property
    def provider_type(self) -> Optional[str]:
        return self.errors[0].get("type") if self.errors else None

    def to_error_details(self) -> List[ErrorDetail]:
        if not self.errors:
            return super().to_error_details()
        return [
            ErrorDetail(
                code=e.get("code") or self.code,
                category=self.category,
                message=e.get("message") or e.get("title") or self.message,
            )
            for e in self.errors
        ]


class ProviderTimeoutError(ProviderError):
    code = "provider_timeout"


class EnrichmentError(SkybookError):
    """Detail fetch for a single offer failed. Recovered locally, never raised to callers."""
    code = "enrichment_failed"
    category = "provider"

    def __init__(self, offer_id: str, cause: Exception):
        self.offer_id = offer_id
        self.cause = cause
        super().__init__(f"Could not enrich offer {offer_id}: {cause}")


class CountMismatchError(SkybookError):
    """Submitted passengers do not match the offer's passenger slots."""
    code = "passenger_count_mismatch"
    category = "booking"

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"Passenger count mismatch: expected {expected}, got {got}")


class ExpiryError(SkybookError):
    """The offer expired before payment; the caller must refresh it."""
    code = "offer_expired"
    category = "booking"

    def __init__(self, offer_id: str, expires_at: Any = None):
        self.offer_id = offer_id
        self.expires_at = expires_at
        super().__init__(f"Offer {offer_id} has expired")


class SessionNotFoundError(SkybookError):
    code = "session_not_found"
    category = "session"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Conversation {session_id} not found")


class NoOfferSelectedError(SkybookError):
    code = "no_offer_selected"
    category = "booking"

    def __init__(self, message: str = "No flight selected for booking"):
        super().__init__(message)


class BookingNotFoundError(SkybookError):
    code = "booking_not_found"
    category = "booking"

    def __init__(self, booking_reference: str):
        self.booking_reference = booking_reference
        super().__init__(f"Booking {booking_reference} not found")


class BookingAccessError(SkybookError):
    """The booking belongs to another user."""
    code = "booking_forbidden"
    category = "authorization"

    def __init__(self, booking_reference: str):
        self.booking_reference = booking_reference
        super().__init__("Not authorized to view this booking")
