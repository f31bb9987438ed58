from flask import Blueprint, current_app, jsonify
from sqlalchemy import select

from app.errors import NotFound
from app.extensions import db
from app.models import Booking, ReminderDispatch
from app.scheduler import get_scheduler
from app.utils.serializers import parse_datetime, request_json

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("/reminders/run", methods=["POST"])
def run_reminder_scan():
    """
    Run one reminder scan now
    ---
    tags:
      - Notifications
    summary: Trigger the booking reminder scan outside its schedule
    description: Runs the same scan the background scheduler runs. Reminders
        already recorded for a (booking, offset, channel) are not sent again,
        so calling this repeatedly is safe.
    parameters:
      - in: body
        name: body
        required: false
        schema:
          type: object
          properties:
            now:
              type: string
              description: Scan as if it were this moment (ISO 8601)
    responses:
      200:
        description: Scan report
      409:
        description: Another scan is already running
    """
    data = request_json()
    now = None
    if data.get("now"):
        try:
            now = parse_datetime(data["now"], "now")
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

    report = get_scheduler(current_app).run_once_now(now)
    if report is None:
        return (
            jsonify({"status": "skipped", "error": "A reminder scan is already running"}),
            409,
        )

    return jsonify({"status": "success", "report": report.to_dict()}), 200


@notifications_bp.route("/bookings/<int:booking_id>/reminders", methods=["GET"])
def get_booking_reminders(booking_id):
    """
    GET /api/notifications/bookings/<booking_id>/reminders
    Purpose: List the reminders already delivered for a booking.
    """
    if db.session.get(Booking, booking_id) is None:
        raise NotFound("Booking not found")

    dispatches = db.session.scalars(
        select(ReminderDispatch)
        .where(ReminderDispatch.booking_id == booking_id)
        .order_by(ReminderDispatch.sent_at, ReminderDispatch.id)
    ).all()

    return jsonify(
        [
            {
                "offsetDays": d.offset_days,
                "channel": d.channel,
                "sentAt": d.sent_at.isoformat(),
                "attempts": d.attempts,
                "reference": d.provider_reference,
            }
            for d in dispatches
        ]
    )
