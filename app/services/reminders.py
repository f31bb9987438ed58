"""
Appointment reminders.

One scan cycle looks, for every configured day offset ``d``, at bookings
starting in ``[now + d days, now + d days + scan_window)`` and sends each
customer one reminder per enabled channel.

Delivery is send-then-mark: the ReminderDispatch row for
(booking, offset, channel) is written only after the channel accepted the
message. A crash between the two leads to a resend carrying the same
idempotency key on the next cycle, never to a silently dropped reminder.
"""
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, selectinload

from app.extensions import db
from app.models import REMINDABLE_STATUSES, Booking, ReminderDispatch
from app.services.booking_policy import load_policy
from app.services.notification_channels import SendResult

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
MISSING_CONTACT_REASONS = {
    "email": "missing email address",
    "whatsapp": "missing whatsapp number",
}


def render_template(template, params):
    """Fill ``{{name}}`` placeholders; unknown names are left untouched."""
    return PLACEHOLDER.sub(
        lambda match: str(params.get(match.group(1), match.group(0))), template
    )


def format_service_list(services):
    names = [service.name for service in services if service.name]
    if not names:
        return "your upcoming appointment"
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


def booking_params(booking, offset_days=None):
    start = booking.start_time
    customer = booking.customer
    stylist = booking.stylist
    return {
        "booking_id": booking.id,
        "customer_name": (customer.full_name if customer else None) or "there",
        "stylist_name": stylist.full_name if stylist else "any stylist",
        "services": format_service_list(booking.services),
        "date": start.strftime("%A, %d %b %Y"),
        "time": start.strftime("%H:%M"),
        "invoice_no": booking.invoice_no or "",
        "offset_days": offset_days if offset_days is not None else "",
    }


def idempotency_key(booking_id, offset_days, channel):
    return f"reminder:{booking_id}:{offset_days}:{channel}"


def _preferences(customer):
    return {
        "email": customer.notify_email,
        "whatsapp": customer.notify_whatsapp,
    }


def enabled_channels(customer, channels):
    """(name, channel, recipient) for each channel this customer accepts."""
    if customer is None:
        return []

    preferences = _preferences(customer)
    result = []
    for name in channels.names():
        if not preferences.get(name, False):
            continue
        channel = channels.get(name)
        recipient = channel.recipient_for(customer)
        if recipient:
            result.append((name, channel, recipient))
    return result


def missing_contacts(customer, channels):
    """Configured channels the customer opted into but has no contact for."""
    if customer is None:
        return []

    preferences = _preferences(customer)
    return [
        name
        for name in channels.names()
        if preferences.get(name, False)
        and not channels.get(name).recipient_for(customer)
    ]


def send_with_retry(
    channel, recipient, template_id, params, key, max_attempts, backoff, sleep
):
    """
    Send through ``channel``, retrying failures with exponential backoff.

    Returns (SendResult, attempts). Exceptions raised by the channel count as
    failed attempts.
    """
    result = SendResult(False, reason="not attempted")
    for attempt in range(max_attempts):
        try:
            result = channel.send(recipient, template_id, params, key)
        except Exception as e:
            result = SendResult(False, reason=str(e))

        if result.accepted:
            return result, attempt + 1

        if attempt < max_attempts - 1:
            wait_time = backoff * (2**attempt)
            current_app.logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} to send {template_id} via "
                f"{channel.name} failed: {result.reason}. Retrying in {wait_time}s..."
            )
            sleep(wait_time)
    return result, max_attempts


@dataclass
class ScanFailure:
    booking_id: int
    offset_days: int
    channel: str
    reason: str


@dataclass
class ScanReport:
    offsets: List[int] = field(default_factory=list)
    candidates: int = 0
    sent: int = 0
    already_sent: int = 0
    failures: List[ScanFailure] = field(default_factory=list)
    deadline_reached: bool = False

    def to_dict(self):
        return {
            "offsets": self.offsets,
            "candidates": self.candidates,
            "sent": self.sent,
            "alreadySent": self.already_sent,
            "failures": [
                {
                    "bookingId": f.booking_id,
                    "offsetDays": f.offset_days,
                    "channel": f.channel,
                    "reason": f.reason,
                }
                for f in self.failures
            ],
            "deadlineReached": self.deadline_reached,
        }


class ReminderScanner:
    def __init__(
        self,
        channels,
        scan_window_minutes=60,
        max_attempts=3,
        backoff_seconds=1.0,
        sleep=time.sleep,
        monotonic=time.monotonic,
    ):
        self.channels = channels
        self.scan_window = timedelta(minutes=scan_window_minutes)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.monotonic = monotonic

    def due_bookings(self, offset_days, now):
        window_start = now + timedelta(days=offset_days)
        window_end = window_start + self.scan_window
        stmt = (
            select(Booking)
            .options(
                joinedload(Booking.customer),
                joinedload(Booking.stylist),
                selectinload(Booking.services),
            )
            .where(
                Booking.status.in_(REMINDABLE_STATUSES),
                Booking.start_time >= window_start,
                Booking.start_time < window_end,
            )
            .order_by(Booking.start_time, Booking.id)
        )
        return db.session.scalars(stmt).unique().all()

    def already_sent(self, booking_id, offset_days, channel):
        return (
            db.session.scalar(
                select(ReminderDispatch.id).where(
                    ReminderDispatch.booking_id == booking_id,
                    ReminderDispatch.offset_days == offset_days,
                    ReminderDispatch.channel == channel,
                )
            )
            is not None
        )

    def run_cycle(self, now, deadline=None):
        """
        Run one scan at ``now``. ``deadline`` is a ``monotonic()`` value after
        which remaining work is left for the next cycle.
        """
        policy = load_policy()
        report = ScanReport(offsets=list(policy.reminder_schedule_days))

        for offset_days in policy.reminder_schedule_days:
            bookings = self.due_bookings(offset_days, now)
            report.candidates += len(bookings)

            for booking in bookings:
                booking_id = booking.id
                try:
                    targets = enabled_channels(booking.customer, self.channels)
                    missing = missing_contacts(booking.customer, self.channels)
                except Exception as e:
                    db.session.rollback()
                    current_app.logger.error(
                        f"Could not resolve channels for booking {booking_id}: {e}"
                    )
                    report.failures.append(
                        ScanFailure(booking_id, offset_days, "*", str(e))
                    )
                    continue

                for name in missing:
                    reason = MISSING_CONTACT_REASONS.get(name, f"missing {name} contact")
                    current_app.logger.warning(
                        f"Cannot remind booking {booking_id} "
                        f"(offset {offset_days}d, {name}): {reason}"
                    )
                    report.failures.append(
                        ScanFailure(booking_id, offset_days, name, reason)
                    )

                for name, channel, recipient in targets:
                    if deadline is not None and self.monotonic() > deadline:
                        report.deadline_reached = True
                        return report
                    try:
                        self._remind(
                            booking,
                            offset_days,
                            name,
                            channel,
                            recipient,
                            policy,
                            now,
                            report,
                        )
                    except Exception as e:
                        db.session.rollback()
                        current_app.logger.error(
                            f"Reminder for booking {booking_id} "
                            f"(offset {offset_days}d, {name}) failed: {e}"
                        )
                        report.failures.append(
                            ScanFailure(booking_id, offset_days, name, str(e))
                        )
        return report

    def _remind(
        self, booking, offset_days, name, channel, recipient, policy, now, report
    ):
        if self.already_sent(booking.id, offset_days, name):
            report.already_sent += 1
            return

        params = booking_params(booking, offset_days)
        body = render_template(policy.template_for(name, "reminder"), params)
        key = idempotency_key(booking.id, offset_days, name)
        payload = {
            **params,
            "body": body,
            "subject": f"Reminder: your appointment on {params['date']}",
        }
        result, attempts = send_with_retry(
            channel,
            recipient,
            "reminder",
            payload,
            key,
            self.max_attempts,
            self.backoff_seconds,
            self.sleep,
        )

        if not result.accepted:
            current_app.logger.error(
                f"Giving up on reminder for booking {booking.id} "
                f"(offset {offset_days}d, {name}) after {attempts} attempt(s): "
                f"{result.reason}"
            )
            report.failures.append(
                ScanFailure(booking.id, offset_days, name, result.reason or "failed")
            )
            return

        db.session.add(
            ReminderDispatch(
                booking_id=booking.id,
                offset_days=offset_days,
                channel=name,
                idempotency_key=key,
                provider_reference=result.reference,
                attempts=attempts,
                sent_at=now,
            )
        )
        try:
            db.session.commit()
        except IntegrityError:
            # Another scan recorded the same dispatch first
            db.session.rollback()
            report.already_sent += 1
            return

        report.sent += 1


def send_confirmation(booking, channels):
    """
    Best-effort confirmation notice after a booking is confirmed.

    Failures are logged and never propagate.
    """
    policy = load_policy()
    params = booking_params(booking)
    sent: List[str] = []
    for name, channel, recipient in enabled_channels(booking.customer, channels):
        body = render_template(policy.template_for(name, "confirmation"), params)
        key = f"confirmation:{booking.id}:{name}"
        try:
            result: Optional[SendResult] = channel.send(
                recipient,
                "confirmation",
                {**params, "body": body, "subject": "Your appointment is confirmed"},
                key,
            )
        except Exception as e:
            result = SendResult(False, reason=str(e))

        if result.accepted:
            sent.append(name)
        else:
            current_app.logger.warning(
                f"Confirmation for booking {booking.id} via {name} failed: "
                f"{result.reason}"
            )
    return sent
