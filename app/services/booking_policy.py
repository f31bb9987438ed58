# Booking and notification policy, read by the core as an immutable snapshot
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Tuple

from sqlalchemy import select

from app.errors import ValidationError
from app.extensions import db
from app.models import Settings

CHANNELS = ("email", "whatsapp")

DEFAULT_TEMPLATES = {
    "email": {
        "reminder": (
            "Hi {{customer_name}}, this is a reminder that {{services}} is "
            "scheduled on {{date}} at {{time}}. If you need to make changes, "
            "contact us as soon as possible. See you soon!"
        ),
        "confirmation": (
            "Hi {{customer_name}}, your booking for {{services}} on {{date}} at "
            "{{time}} is confirmed."
        ),
    },
    "whatsapp": {
        "reminder": (
            "Hi {{customer_name}}! Reminder: {{services}} on {{date}} at {{time}}. "
            "Reply to this chat if you need to reschedule."
        ),
        "confirmation": (
            "Hi {{customer_name}}! Your booking for {{services}} on {{date}} at "
            "{{time}} is confirmed."
        ),
    },
}


@dataclass(frozen=True)
class PolicySnapshot:
    dp_type: str = "percent"
    dp_amount: Decimal = Decimal("0")
    lead_time_days: int = 1
    slot_duration_minutes: int = 15
    cancellation_policy: str = ""
    reminder_schedule_days: Tuple[int, ...] = (7, 1)
    templates: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def template_for(self, channel: str, kind: str) -> str:
        """Return the configured template, falling back to the built-in text."""
        configured = (self.templates.get(channel) or {}).get(kind)
        return configured or DEFAULT_TEMPLATES[channel][kind]

    def deposit_for(self, total: Decimal) -> Decimal:
        if self.dp_type == "fixed":
            deposit = self.dp_amount
        else:
            deposit = (total * self.dp_amount / Decimal("100")).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )
        return max(Decimal("0"), min(deposit, total))


def _snapshot(row):
    if row is None:
        return PolicySnapshot()

    days = sorted({int(d) for d in (row.reminder_schedule_days or [])}, reverse=True)
    return PolicySnapshot(
        dp_type=row.dp_type,
        dp_amount=Decimal(row.dp_amount or 0),
        lead_time_days=row.lead_time_days,
        slot_duration_minutes=row.slot_duration_minutes,
        cancellation_policy=row.cancellation_policy or "",
        reminder_schedule_days=tuple(days),
        templates=dict(row.templates or {}),
    )


def load_policy():
    """Read the current settings row as a PolicySnapshot."""
    row = db.session.scalar(select(Settings).order_by(Settings.id).limit(1))
    return _snapshot(row)


def update_policy(data):
    """
    Apply an administrative settings change.

    Only the keys present in ``data`` are changed. Returns the new snapshot.
    """
    row = db.session.scalar(select(Settings).order_by(Settings.id).limit(1))
    if row is None:
        row = Settings()
        db.session.add(row)

    try:
        _apply_changes(row, data)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return _snapshot(row)


def _apply_changes(row, data):
    if "dpType" in data:
        if data["dpType"] not in ("percent", "fixed"):
            raise ValidationError("dpType must be 'percent' or 'fixed'")
        row.dp_type = data["dpType"]

    if "dpAmount" in data:
        row.dp_amount = _non_negative_decimal(data["dpAmount"], "dpAmount")

    if "leadTimeDays" in data:
        row.lead_time_days = _non_negative_int(data["leadTimeDays"], "leadTimeDays")

    if "slotDurationMinutes" in data:
        minutes = _non_negative_int(data["slotDurationMinutes"], "slotDurationMinutes")
        if minutes == 0 or (24 * 60) % minutes != 0:
            raise ValidationError("slotDurationMinutes must evenly divide a day")
        row.slot_duration_minutes = minutes

    if "cancellationPolicy" in data:
        row.cancellation_policy = str(data["cancellationPolicy"] or "")

    if "reminderScheduleDays" in data:
        days = data["reminderScheduleDays"]
        if not isinstance(days, list):
            raise ValidationError("reminderScheduleDays must be a list of day offsets")
        row.reminder_schedule_days = sorted(
            {_non_negative_int(d, "reminderScheduleDays") for d in days}, reverse=True
        )

    if "templates" in data:
        row.templates = _merge_templates(row.templates or {}, data["templates"])

    # A fresh row has no column defaults applied until flush
    if (row.dp_type or "percent") == "percent" and row.dp_amount is not None:
        if Decimal(row.dp_amount) > 100:
            raise ValidationError("Percent deposit cannot exceed 100")


def policy_payload(policy):
    return {
        "booking": {
            "dpType": policy.dp_type,
            "dpAmount": float(policy.dp_amount),
            "leadTimeDays": policy.lead_time_days,
            "slotDurationMinutes": policy.slot_duration_minutes,
            "cancellationPolicy": policy.cancellation_policy,
        },
        "notifications": {
            "reminderScheduleDays": list(policy.reminder_schedule_days),
            "templates": {
                channel: {
                    kind: policy.template_for(channel, kind)
                    for kind in ("reminder", "confirmation")
                }
                for channel in CHANNELS
            },
        },
    }


def _merge_templates(current, incoming):
    if not isinstance(incoming, dict):
        raise ValidationError("templates must be an object keyed by channel")

    merged = {channel: dict(current.get(channel) or {}) for channel in CHANNELS}
    for channel, kinds in incoming.items():
        if channel not in CHANNELS or not isinstance(kinds, dict):
            raise ValidationError(f"Unknown template channel: {channel}")
        for kind, body in kinds.items():
            if kind not in ("reminder", "confirmation"):
                raise ValidationError(f"Unknown template kind: {kind}")
            merged[channel][kind] = body or None
    return merged


def _non_negative_int(value, name):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a whole number")
    if number < 0:
        raise ValidationError(f"{name} must not be negative")
    return number


def _non_negative_decimal(value, name):
    try:
        number = Decimal(str(value))
    except (ArithmeticError, ValueError):
        raise ValidationError(f"{name} must be a number")
    if number < 0:
        raise ValidationError(f"{name} must not be negative")
    return number
