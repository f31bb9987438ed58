# Booking and notification policy (administrative channel)
from flask import Blueprint, jsonify, request

from app.errors import ValidationError
from app.services.booking_policy import load_policy, policy_payload, update_policy

settings_bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@settings_bp.route("/booking", methods=["GET"])
def get_booking_settings():
    """
    GET /api/settings/booking
    Purpose: Return the current booking and reminder policy.
    """
    return jsonify(policy_payload(load_policy()))


@settings_bp.route("/booking", methods=["PUT"])
def update_booking_settings():
    """
    PUT /api/settings/booking
    Purpose: Change booking and reminder policy.
    Input: JSON body with any of dpType, dpAmount, leadTimeDays,
           slotDurationMinutes, cancellationPolicy, reminderScheduleDays,
           templates ({"email": {"reminder": "..."}, "whatsapp": {...}}).

    Behavior:
    - Only keys present in the body change.
    - Invalid values return 400 and nothing is saved.
    - Running scans pick the new policy up on their next cycle.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        raise ValidationError("Request body is required")
    return jsonify(policy_payload(update_policy(data)))
