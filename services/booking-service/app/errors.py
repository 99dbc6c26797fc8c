"""Domain errors raised by the booking, escrow and wallet layers.

Each error carries a stable ``code`` plus a ``context`` dict so the HTTP layer
can surface exactly why money did or did not move.
"""

from typing import Any


class BookingServiceError(Exception):
    code = "booking_service_error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "context": _jsonable(self.context)}


def _jsonable(context: dict) -> dict:
    out = {}
    for k, v in context.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[k] = v
        elif isinstance(v, (list, tuple, set)):
            out[k] = [str(x.value) if hasattr(x, "value") else str(x) for x in v]
        elif hasattr(v, "value"):
            out[k] = v.value
        else:
            out[k] = str(v)
    return out


class InvalidPricingInput(BookingServiceError):
    code = "invalid_pricing_input"
    status_code = 422


class InvalidAmount(BookingServiceError):
    code = "invalid_amount"
    status_code = 422


class InsufficientBalance(BookingServiceError):
    code = "insufficient_balance"
    status_code = 402


class InvalidBookingState(BookingServiceError):
    code = "invalid_booking_state"
    status_code = 409


class InvalidEscrowState(BookingServiceError):
    code = "invalid_escrow_state"
    status_code = 409


class EscrowConflict(BookingServiceError):
    code = "escrow_conflict"
    status_code = 409


class ReferenceConflict(BookingServiceError):
    code = "reference_conflict"
    status_code = 409


class RefundAmountMismatch(BookingServiceError):
    code = "refund_amount_mismatch"
    status_code = 422


class InvalidSchedule(BookingServiceError):
    code = "invalid_schedule"
    status_code = 422


class ScheduleConflict(BookingServiceError):
    code = "schedule_conflict"
    status_code = 409


class WorkerServiceUnavailable(BookingServiceError):
    code = "worker_service_unavailable"
    status_code = 409


class NotAuthorized(BookingServiceError):
    code = "not_authorized"
    status_code = 403


class NotBookingParticipant(NotAuthorized):
    code = "not_booking_participant"


class NotFound(BookingServiceError):
    code = "not_found"
    status_code = 404


class DepositNotFound(NotFound):
    code = "deposit_not_found"
