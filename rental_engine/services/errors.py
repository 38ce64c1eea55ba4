from __future__ import annotations

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

# Connection loss and lock or pool timeouts; safe to retry once rolled back.
TRANSIENT_STORAGE_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


class BookingError(RuntimeError):
    status_code = 400
    code = "booking_error"
    default_reason = "The booking request could not be processed."
    retryable = False

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_payload(self) -> dict:
        return {"detail": self.reason, "code": self.code, "retryable": self.retryable}


class InvalidRequestData(BookingError):
    status_code = 400
    code = "invalid_request"
    default_reason = "The request is missing required information."


class InvalidDateRange(BookingError):
    status_code = 400
    code = "invalid_date_range"
    default_reason = "The requested date range is not valid."


class RequestNotFound(BookingError):
    status_code = 404
    code = "not_found"
    default_reason = "Rental request not found."


class EquipmentUnavailable(BookingError):
    status_code = 409
    code = "equipment_unavailable"
    default_reason = "This equipment is not currently listed for rent."


class SlotConflict(BookingError):
    status_code = 409
    code = "slot_conflict"
    default_reason = "The equipment is already booked for part of the requested dates."
    retryable = True


class InvalidTransition(BookingError):
    status_code = 409
    code = "invalid_transition"
    default_reason = "This action is not allowed in the request's current status."


class ActionNotPermitted(BookingError):
    status_code = 403
    code = "not_permitted"
    default_reason = "You are not allowed to perform this action on the request."


class TokenInvalid(BookingError):
    status_code = 410
    code = "token_invalid"
    default_reason = "This handover code is not valid or has already been used."


class StorageUnavailable(BookingError):
    status_code = 503
    code = "storage_unavailable"
    default_reason = "The booking service is temporarily unavailable. Please try again."
    retryable = True
