from datetime import datetime

from flask import request


def request_json():
    """The JSON object body of the current request, or an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


def parse_datetime(value, field_name):
    """
    Parse an ISO 8601 string into a naive local datetime, or raise ValueError.

    Values carrying an offset (or ``Z``) are converted to the server's local
    time, which is what stored booking times and ``datetime.now()`` use.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} is required")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(
            f"Invalid datetime format for {field_name}. "
            "Use ISO 8601 (e.g. 2025-11-20T11:30:00)"
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def build_booking_payload(booking):
    return {
        "id": booking.id,
        "version": booking.version,
        "customer": {
            "id": booking.customer_id,
            "fullName": booking.customer.full_name if booking.customer else None,
        },
        "stylist": (
            {"id": booking.stylist_id, "fullName": booking.stylist.full_name}
            if booking.stylist
            else None
        ),
        "services": [
            {
                "serviceId": s.service_id,
                "name": s.name,
                "price": _money(s.price),
                "durationMinutes": s.duration_minutes,
            }
            for s in booking.services
        ],
        "startTime": _iso(booking.start_time),
        "endTime": _iso(booking.end_time),
        "status": booking.status,
        "notes": booking.notes,
        "adminNotes": booking.admin_notes,
        "slot": {"date": booking.slot_date},
        "payment": {
            "method": booking.payment_method,
            "subtotalAmount": _money(booking.subtotal_amount),
            "discountAmount": _money(booking.discount_amount),
            "dpAmount": _money(booking.dp_amount),
            "totalAmount": _money(booking.total_amount),
            "status": booking.payment_status,
            "invoiceNo": booking.invoice_no,
            "reference": booking.payment_reference,
            "couponCode": booking.coupon_code,
        },
        "createdAt": _iso(booking.created_at),
        "updatedAt": _iso(booking.updated_at),
    }


def build_booking_stats(bookings):
    stats = {
        "total": 0,
        "pending": 0,
        "confirmed": 0,
        "inProgress": 0,
        "completed": 0,
        "cancelled": 0,
        "paymentPaid": 0,
    }
    keys = {
        "pending": "pending",
        "confirmed": "confirmed",
        "in-progress": "inProgress",
        "completed": "completed",
        "cancelled": "cancelled",
    }
    for booking in bookings:
        stats["total"] += 1
        key = keys.get(booking.status)
        if key:
            stats[key] += 1
        if booking.payment_status == "paid":
            stats["paymentPaid"] += 1
    return stats


def build_discount_payload(priced):
    return {
        "couponCode": priced.coupon_code,
        "subtotal": _money(priced.subtotal),
        "eligibleSubtotal": _money(priced.eligible_subtotal),
        "discount": _money(priced.discount),
        "total": _money(priced.total),
    }
