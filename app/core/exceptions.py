from typing import Optional


class BookingError(Exception):
    """Base class for errors surfaced by the booking and reschedule engines."""

    status_code: int = 400
    code: str = "booking_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class SlotUnavailable(BookingError):
    """The slot exists but could not be claimed (already booked, cancelled or past)."""

    status_code = 409
    code = "slot_unavailable"


class InvalidTransition(BookingError):
    status_code = 409
    code = "invalid_transition"


class ProposalConflict(BookingError):
    status_code = 409
    code = "proposal_conflict"


class ConcurrentModification(BookingError):
    """A version-guarded write lost against another writer."""

    status_code = 409
    code = "concurrent_modification"


class NotFound(BookingError):
    status_code = 404
    code = "not_found"


class ValidationError(BookingError):
    status_code = 422
    code = "validation_error"


class RateLimited(BookingError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, detail: str, retry_after: Optional[int] = None):
        super().__init__(detail)
        self.retry_after = retry_after
