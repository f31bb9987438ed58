"""
Booking and payment lifecycles.

Booking status and payment status move independently. The only coupling is
that cancelling never touches payment status: a paid booking that is
cancelled stays ``paid`` until a refund is recorded explicitly.

All writes go through the ORM, where ``Booking.version`` turns each flush
into a conditional UPDATE; a lost race surfaces as Busy.
"""
from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from app.errors import Busy, InvalidTransition, NotFound, ValidationError
from app.extensions import db
from app.models import Booking
from app.services.booking_policy import load_policy
from app.services.slot_allocator import (
    get_gate,
    release_slot,
    stylist_key,
    try_reserve,
)

BOOKING_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"in-progress", "cancelled"},
    "in-progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

PAYMENT_TRANSITIONS = {
    "unpaid": {"pending", "paid"},
    "pending": {"paid"},
    "paid": {"refunded"},
    "refunded": set(),
}

# Statuses after which a booking no longer holds its stylist's time
RELEASING_STATUSES = {"completed", "cancelled"}


def can_transition(current, target):
    return target in BOOKING_TRANSITIONS.get(current, set())


def can_transition_payment(current, target, method):
    if target not in PAYMENT_TRANSITIONS.get(current, set()):
        return False
    # Skipping "pending" is only for cash settled at the counter
    if current == "unpaid" and target == "paid":
        return method == "cash"
    return True


def _load_booking(booking_id):
    booking = db.session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def _check_version(booking, expected_version):
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("expectedVersion must be an integer")
    if booking.version != expected:
        raise Busy(
            "Booking was modified since it was read",
            current_version=booking.version,
        )


def transition_booking(
    booking_id,
    target,
    now,
    stylist_id=None,
    admin_notes=None,
    expected_version=None,
    actor="admin",
):
    """
    Move a booking to ``target`` status.

    ``stylist_id`` may accompany ``pending -> confirmed`` to assign a stylist;
    the assignment is reserved through the slot allocator. Returns the
    updated booking.
    """
    booking = _load_booking(booking_id)
    if not can_transition(booking.status, target):
        raise InvalidTransition("booking", booking.status, target)

    assigning = (
        target == "confirmed"
        and stylist_id is not None
        and stylist_id != booking.stylist_id
    )
    if stylist_id is not None and target != "confirmed":
        raise ValidationError("A stylist can only be assigned when confirming")

    locked_stylist = booking.stylist_id
    keys = [stylist_key(locked_stylist)]
    if assigning:
        keys.append(stylist_key(stylist_id))

    with get_gate().hold(*keys):
        try:
            # Re-read under the gate; the status may have moved while we waited
            booking = _load_booking(booking_id)
            if not can_transition(booking.status, target):
                raise InvalidTransition("booking", booking.status, target)
            if booking.stylist_id != locked_stylist:
                raise Busy("Booking was reassigned concurrently; retry shortly")
            _check_version(booking, expected_version)

            previous = booking.status
            if assigning:
                try_reserve(
                    stylist_id,
                    booking.start_time,
                    booking.end_time,
                    now,
                    load_policy(),
                    exclude_booking_id=booking.id,
                    check_lead=False,
                )
                released_stylist = booking.stylist_id
                booking.stylist_id = stylist_id
                release_slot(released_stylist)

            booking.status = target
            if admin_notes is not None:
                booking.admin_notes = admin_notes.strip() or None

            if target in RELEASING_STATUSES:
                release_slot(booking.stylist_id)

            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise Busy("Booking was modified concurrently; retry shortly")
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.info(
        f"Booking {booking.id} moved {previous} -> {target} by {actor}"
    )
    return booking


def transition_payment(booking_id, target, reference=None, expected_version=None):
    """Move a booking's payment to ``target`` status."""
    try:
        booking = _load_booking(booking_id)
        if not can_transition_payment(
            booking.payment_status, target, booking.payment_method
        ):
            raise InvalidTransition("payment", booking.payment_status, target)
        _check_version(booking, expected_version)

        previous = booking.payment_status
        booking.payment_status = target
        if reference:
            booking.payment_reference = reference
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise Busy("Booking was modified concurrently; retry shortly")
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        f"Booking {booking.id} payment moved {previous} -> {target}"
    )
    return booking
