# Booking core error taxonomy and its JSON error handler
from flask import current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.extensions import db


class BookingError(Exception):
    """Base class for every error the booking core surfaces to callers."""

    status_code = 400
    code = "booking_error"
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.details = details

    def to_dict(self):
        payload = {"error": self.message, "code": self.code}
        if self.retryable:
            payload["retryable"] = True
        payload.update(self.details)
        return payload


class ValidationError(BookingError):
    """Request is malformed."""

    code = "validation_error"


class NotFound(BookingError):
    """Resource not found."""

    status_code = 404
    code = "not_found"


class SlotConflict(BookingError):
    """Stylist already has a booking overlapping the requested interval."""

    status_code = 409
    code = "conflict"


class LeadTimeViolation(BookingError):
    """Requested start is inside the minimum advance-notice window."""

    status_code = 422
    code = "lead_time_violation"


class CouponRejected(BookingError):
    """Coupon cannot be applied."""

    status_code = 422
    code = "coupon_rejected"

    def __init__(self, reason):
        super().__init__(f"Coupon rejected: {reason}", reason=reason)
        self.reason = reason


class InvalidTransition(BookingError):
    """Requested state change is not allowed from the current state."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, kind, current, target):
        super().__init__(
            f"Cannot move {kind} from '{current}' to '{target}'",
            current=current,
            target=target,
        )


class Busy(BookingError):
    """Resource is being modified by another request; retry shortly."""

    status_code = 503
    code = "busy"
    retryable = True


def register_error_handlers(app):
    @app.errorhandler(BookingError)
    def handle_booking_error(error):
        if isinstance(error, InvalidTransition):
            current_app.logger.warning(f"Rejected transition: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error):
        db.session.rollback()
        current_app.logger.error(f"Database error: {error}")
        return jsonify({"error": "Database error", "code": "database_error"}), 500
