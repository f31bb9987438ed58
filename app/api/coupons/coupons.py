# Coupon preview: price a draft booking without redeeming the coupon
import datetime

from flask import Blueprint, jsonify

from app.errors import ValidationError
from app.services.booking_service import draft_lines, snapshot_services
from app.services.discounts import apply_coupon, find_coupon
from app.utils.serializers import build_discount_payload, request_json

coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


@coupons_bp.route("/validate", methods=["POST"])
def validate_coupon():
    """
    Check a coupon against a draft booking
    ---
    tags:
      - Coupons
    summary: Preview the discount a coupon would give, without using it up
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - code
            - serviceIds
          properties:
            code:
              type: string
              example: HAIR10
            serviceIds:
              type: array
              items:
                type: integer
    responses:
      200:
        description: Coupon applies; discounted totals returned
      422:
        description: Coupon rejected, with the reason
    """
    data = request_json()
    code = data.get("code")
    service_ids = data.get("serviceIds")
    if not code or not isinstance(service_ids, list):
        raise ValidationError("code and serviceIds are required")

    lines = draft_lines(snapshot_services(service_ids))
    priced = apply_coupon(find_coupon(code), lines, datetime.datetime.now())
    return jsonify({"valid": True, **build_discount_payload(priced)})
