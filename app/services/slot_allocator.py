"""
Slot allocation for stylist bookings.

A reservation is accepted only when the requested interval is aligned to the
configured granularity, respects the lead time, and does not overlap another
active booking of the same stylist. Intervals are half-open: a booking ending
at 10:45 does not block one starting at 10:45.

Reservations for one stylist are serialized twice over:

* in-process, by a ReservationGate lock keyed by stylist (bounded wait, then Busy)
* in the database, by a compare-and-set on ``stylists.schedule_version``,
  which also fences writers running in other processes
"""
import threading
from contextlib import contextmanager
from datetime import datetime, time, timedelta

from flask import current_app
from sqlalchemy import and_, select, update

from app.errors import Busy, LeadTimeViolation, NotFound, SlotConflict, ValidationError
from app.extensions import db
from app.models import ACTIVE_BOOKING_STATUSES, Booking, Stylist


class ReservationGate:
    """Per-key locks with a bounded acquire timeout."""

    def __init__(self, timeout=5.0):
        self.timeout = timeout
        self._locks = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key):
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys):
        """
        Acquire the locks for every non-empty key, in sorted order.

        Sorting keeps two callers that need the same pair of keys from
        deadlocking each other.
        """
        wanted = sorted({key for key in keys if key is not None})
        acquired = []
        try:
            for key in wanted:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout):
                    raise Busy(f"Timed out waiting for {key[0]} {key[1]}; retry shortly")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def stylist_key(stylist_id):
    return ("stylist", stylist_id) if stylist_id is not None else None


def coupon_key(coupon_id):
    return ("coupon", coupon_id) if coupon_id is not None else None


def get_gate():
    return current_app.extensions["reservation_gate"]


def check_alignment(start, end, slot_minutes):
    """Reject intervals that are empty or off the slot grid."""
    if start is None or end is None:
        raise ValidationError("Start and end time are required")
    if end <= start:
        raise ValidationError("End time must be after start time")

    for label, moment in (("start", start), ("end", end)):
        minutes = moment.hour * 60 + moment.minute
        if moment.second or moment.microsecond or minutes % slot_minutes:
            raise ValidationError(
                f"Booking {label} {moment.strftime('%H:%M:%S')} is not aligned "
                f"to {slot_minutes}-minute slots"
            )


def check_lead_time(start, now, lead_time_days):
    earliest = now + timedelta(days=lead_time_days)
    if start < earliest:
        raise LeadTimeViolation(
            f"Bookings need at least {lead_time_days} day(s) notice; "
            f"earliest start is {earliest.isoformat(timespec='minutes')}",
            earliest_start=earliest.isoformat(),
        )


def overlap_clause(start, end):
    return and_(Booking.start_time < end, start < Booking.end_time)


def find_conflicts(stylist_id, start, end, exclude_booking_id=None):
    """Active bookings of the stylist overlapping ``[start, end)``."""
    stmt = select(Booking).where(
        Booking.stylist_id == stylist_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        overlap_clause(start, end),
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return db.session.scalars(stmt.order_by(Booking.start_time)).all()


def bump_schedule_version(stylist_id, seen_version):
    """
    Compare-and-set the stylist's schedule version.

    Raises Busy when another writer got there first.
    """
    result = db.session.execute(
        update(Stylist)
        .where(Stylist.id == stylist_id, Stylist.schedule_version == seen_version)
        .values(schedule_version=seen_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Busy("Stylist schedule changed concurrently; retry shortly")
    return seen_version + 1


def release_slot(stylist_id):
    """Advance the schedule version after a booking stops holding time."""
    if stylist_id is None:
        return
    seen = db.session.scalar(
        select(Stylist.schedule_version).where(Stylist.id == stylist_id)
    )
    if seen is not None:
        bump_schedule_version(stylist_id, seen)


def try_reserve(
    stylist_id,
    start,
    end,
    now,
    policy,
    exclude_booking_id=None,
    check_lead=True,
):
    """
    Check and claim ``[start, end)`` for ``stylist_id`` inside the caller's
    transaction.

    The caller must hold the stylist's gate key and commit (or roll back) the
    surrounding session. Returns the stylist's new schedule version, or None
    when no stylist was requested.
    """
    check_alignment(start, end, policy.slot_duration_minutes)
    if check_lead:
        check_lead_time(start, now, policy.lead_time_days)

    # "Any stylist" bookings are allowed to overlap each other
    if stylist_id is None:
        return None

    stylist = db.session.get(
        Stylist, stylist_id, populate_existing=True, with_for_update=True
    )
    if stylist is None or not stylist.active:
        raise NotFound("Stylist not found")
    seen_version = stylist.schedule_version

    conflicts = find_conflicts(stylist_id, start, end, exclude_booking_id)
    if conflicts:
        clash = conflicts[0]
        raise SlotConflict(
            f"Stylist is already booked from {clash.start_time.strftime('%H:%M')} "
            f"to {clash.end_time.strftime('%H:%M')}",
            conflicting_booking_id=clash.id,
        )

    return bump_schedule_version(stylist_id, seen_version)


def available_starts(
    stylist_id, day, duration_minutes, now, policy, open_time=None, close_time=None
):
    """
    Aligned start times on ``day`` where a booking of ``duration_minutes``
    would be accepted for the stylist.
    """
    if duration_minutes <= 0 or duration_minutes % policy.slot_duration_minutes:
        raise ValidationError(
            f"Duration must be a positive multiple of {policy.slot_duration_minutes} minutes"
        )

    step = timedelta(minutes=policy.slot_duration_minutes)
    duration = timedelta(minutes=duration_minutes)
    day_start = datetime.combine(day, open_time or time.min)
    offset = (day_start.hour * 60 + day_start.minute) % policy.slot_duration_minutes
    if offset or day_start.second or day_start.microsecond:
        day_start = day_start.replace(second=0, microsecond=0) + timedelta(
            minutes=policy.slot_duration_minutes - offset
        )
    day_end = (
        datetime.combine(day, close_time)
        if close_time
        else datetime.combine(day + timedelta(days=1), time.min)
    )
    earliest = now + timedelta(days=policy.lead_time_days)

    busy = []
    if stylist_id is not None:
        busy = [
            (b.start_time, b.end_time)
            for b in find_conflicts(stylist_id, day_start, day_end)
        ]

    slots = []
    current = day_start
    while current + duration <= day_end:
        slot_end = current + duration
        if current >= earliest and not any(
            current < busy_end and busy_start < slot_end for busy_start, busy_end in busy
        ):
            slots.append(current)
        current += step
    return slots
