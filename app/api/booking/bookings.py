# Create bookings, drive their lifecycle, and list stylist availability
import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from app.errors import NotFound, ValidationError
from app.extensions import db
from app.models import BOOKING_STATUSES, PAYMENT_STATUSES, Booking, Stylist
from app.services.booking_policy import load_policy
from app.services.booking_service import create_booking, delete_booking, update_services
from app.services.booking_state import transition_booking, transition_payment
from app.services.notification_channels import get_channels
from app.services.reminders import send_confirmation
from app.services.slot_allocator import available_starts
from app.utils.serializers import (
    build_booking_payload,
    build_booking_stats,
    parse_datetime,
    request_json,
)

bookings_bp = Blueprint("bookings", __name__, url_prefix="/api/bookings")

ACTOR_ROLES = ("admin", "customer")


def _optional_int(value, name):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _expected_version(data):
    return _optional_int(data.get("expectedVersion"), "expectedVersion")


def _optional_string(value):
    return value.strip() or None if isinstance(value, str) else None


def _actor():
    role = request.headers.get("X-Actor-Role", "admin").strip().lower()
    if role not in ACTOR_ROLES:
        raise ValidationError("X-Actor-Role must be admin or customer")
    return role


def _load(booking_id):
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


@bookings_bp.route("", methods=["GET"])
def list_bookings():
    """
    List bookings with optional filters
    ---
    tags:
      - Bookings
    parameters:
      - in: query
        name: status
        type: string
      - in: query
        name: paymentStatus
        type: string
      - in: query
        name: dateFrom
        type: string
        description: YYYY-MM-DD, inclusive
      - in: query
        name: dateTo
        type: string
        description: YYYY-MM-DD, inclusive
      - in: query
        name: stylistId
        type: integer
      - in: query
        name: customerId
        type: integer
    responses:
      200:
        description: Bookings and per-status counts
    """
    args = request.args
    stmt = select(Booking).options(
        selectinload(Booking.services),
        selectinload(Booking.customer),
        selectinload(Booking.stylist),
    )

    status = args.get("status")
    if status and status in BOOKING_STATUSES:
        stmt = stmt.where(Booking.status == status)

    payment_status = args.get("paymentStatus")
    if payment_status and payment_status in PAYMENT_STATUSES:
        stmt = stmt.where(Booking.payment_status == payment_status)

    # slot_date is YYYY-MM-DD, so string comparison is date order
    if args.get("dateFrom"):
        stmt = stmt.where(Booking.slot_date >= args["dateFrom"])
    if args.get("dateTo"):
        stmt = stmt.where(Booking.slot_date <= args["dateTo"])

    stylist_id = _optional_int(args.get("stylistId"), "stylistId")
    if stylist_id is not None:
        stmt = stmt.where(Booking.stylist_id == stylist_id)

    customer_id = _optional_int(args.get("customerId"), "customerId")
    if customer_id is not None:
        stmt = stmt.where(Booking.customer_id == customer_id)

    bookings = db.session.scalars(
        stmt.order_by(Booking.created_at.desc(), Booking.id.desc())
    ).all()

    return jsonify(
        {
            "bookings": [build_booking_payload(b) for b in bookings],
            "stats": build_booking_stats(bookings),
        }
    )


@bookings_bp.route("", methods=["POST"])
def add_booking():
    """
    Create a new booking
    ---
    summary: Reserve a slot and create a pending booking
    description: Snapshots the requested services, applies an optional coupon,
        reserves the stylist's time and stores the booking as pending. End
        time is start time plus the sum of service durations.
    tags:
      - Bookings
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - customerId
            - serviceIds
            - startTime
          properties:
            customerId:
              type: integer
            serviceIds:
              type: array
              items:
                type: integer
            startTime:
              type: string
              example: "2025-11-20T10:00:00"
            stylistId:
              type: integer
            couponCode:
              type: string
            paymentMethod:
              type: string
              enum: [cash, bank-transfer, e-wallet, credit-card]
            notes:
              type: string
    responses:
      201:
        description: Booking created
      400:
        description: Missing or invalid parameters
      404:
        description: Customer, stylist or service not found
      409:
        description: Stylist already booked for an overlapping interval
      422:
        description: Lead time violated or coupon rejected
      503:
        description: Reservation contention, safe to retry
    """
    data = request_json()

    required_fields = ["customerId", "serviceIds", "startTime"]
    missing = [f for f in required_fields if f not in data]
    if missing:
        raise ValidationError(f'Missing required fields: {", ".join(missing)}')

    service_ids = data["serviceIds"]
    if not isinstance(service_ids, list):
        raise ValidationError("serviceIds must be a list")

    try:
        start = parse_datetime(data["startTime"], "startTime")
    except ValueError as e:
        raise ValidationError(str(e))

    booking = create_booking(
        customer_id=_optional_int(data["customerId"], "customerId"),
        service_ids=service_ids,
        start=start,
        now=datetime.datetime.now(),
        stylist_id=_optional_int(data.get("stylistId"), "stylistId"),
        coupon_code=data.get("couponCode"),
        payment_method=data.get("paymentMethod") or "e-wallet",
        notes=_optional_string(data.get("notes")),
    )

    return jsonify({"booking": build_booking_payload(booking)}), 201


@bookings_bp.route("/<int:booking_id>", methods=["GET"])
def get_booking(booking_id):
    return jsonify({"booking": build_booking_payload(_load(booking_id))})


@bookings_bp.route("/<int:booking_id>", methods=["DELETE"])
def remove_booking(booking_id):
    """Administrative hard delete of a booking."""
    delete_booking(booking_id)
    return jsonify({"message": "Booking deleted"})


@bookings_bp.route("/<int:booking_id>/services", methods=["PUT"])
def edit_booking_services(booking_id):
    """
    PUT /api/bookings/<booking_id>/services
    Purpose: Replace the services of a pending or confirmed booking.
    Input: JSON body {"serviceIds": [...]}

    Behavior:
    - Services are re-snapshotted from the catalog.
    - End time and totals are recomputed; the new interval is re-reserved.
    - A redeemed coupon only discounts the services it still matches; when it
      matches none of the new services the edit is rejected with 422.
    """
    data = request_json()
    service_ids = data.get("serviceIds")
    if not isinstance(service_ids, list):
        raise ValidationError("serviceIds must be a list")

    booking = update_services(booking_id, service_ids, datetime.datetime.now())
    return jsonify({"booking": build_booking_payload(booking)})


@bookings_bp.route("/<int:booking_id>/accept", methods=["POST"])
def accept_booking(booking_id):
    """
    Confirm a pending booking
    ---
    tags:
      - Bookings
    parameters:
      - in: path
        name: booking_id
        type: integer
        required: true
      - in: body
        name: body
        schema:
          type: object
          properties:
            stylistId:
              type: integer
              description: Assign a stylist while confirming
            adminNotes:
              type: string
            expectedVersion:
              type: integer
    responses:
      200:
        description: Booking confirmed
      409:
        description: Booking is not pending, or the stylist is already booked
    """
    data = request_json()
    booking = transition_booking(
        booking_id,
        "confirmed",
        datetime.datetime.now(),
        stylist_id=_optional_int(data.get("stylistId"), "stylistId"),
        admin_notes=data.get("adminNotes"),
        expected_version=_expected_version(data),
        actor=_actor(),
    )

    notified = send_confirmation(booking, get_channels())
    return jsonify({"booking": build_booking_payload(booking), "notified": notified})


@bookings_bp.route("/<int:booking_id>/start", methods=["POST"])
def start_booking(booking_id):
    data = request_json()
    booking = transition_booking(
        booking_id,
        "in-progress",
        datetime.datetime.now(),
        admin_notes=data.get("adminNotes"),
        expected_version=_expected_version(data),
        actor=_actor(),
    )
    return jsonify({"booking": build_booking_payload(booking)})


@bookings_bp.route("/<int:booking_id>/complete", methods=["POST"])
def complete_booking(booking_id):
    data = request_json()
    booking = transition_booking(
        booking_id,
        "completed",
        datetime.datetime.now(),
        admin_notes=data.get("adminNotes"),
        expected_version=_expected_version(data),
        actor=_actor(),
    )
    return jsonify({"booking": build_booking_payload(booking)})


@bookings_bp.route("/<int:booking_id>/cancel", methods=["POST"])
def cancel_booking(booking_id):
    """
    POST /api/bookings/<booking_id>/cancel
    Purpose: Cancel a booking and free its stylist's time immediately.

    Behavior:
    - Payment status is left as it is; a paid booking stays paid until a
      refund is recorded through /payment.
    - Completed or already cancelled bookings return 409.
    """
    data = request_json()
    booking = transition_booking(
        booking_id,
        "cancelled",
        datetime.datetime.now(),
        admin_notes=data.get("adminNotes"),
        expected_version=_expected_version(data),
        actor=_actor(),
    )
    return jsonify({"booking": build_booking_payload(booking)})


@bookings_bp.route("/<int:booking_id>/payment", methods=["POST"])
def update_payment(booking_id):
    """
    Record a payment status change
    ---
    tags:
      - Bookings
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - status
          properties:
            status:
              type: string
              enum: [pending, paid, refunded]
            reference:
              type: string
            expectedVersion:
              type: integer
    responses:
      200:
        description: Payment status updated
      409:
        description: Transition not allowed
    """
    data = request_json()
    target = data.get("status")
    if target not in PAYMENT_STATUSES:
        raise ValidationError("Invalid payment status")

    booking = transition_payment(
        booking_id,
        target,
        reference=_optional_string(data.get("reference")),
        expected_version=_expected_version(data),
    )
    return jsonify({"booking": build_booking_payload(booking)})


@bookings_bp.route("/stylists/<int:stylist_id>/available-times", methods=["GET"])
def get_stylist_available_times(stylist_id):
    """
    GET /api/bookings/stylists/<stylist_id>/available-times
        ?date=YYYY-MM-DD&duration=MINUTES[&open=HH:MM&close=HH:MM]
    Purpose: Calculate the start times a booking of the given duration could
             be reserved at for this stylist on that date.
    """
    date_str = request.args.get("date")
    if not date_str:
        raise ValidationError("Missing required query parameter: 'date' (YYYY-MM-DD)")

    duration_str = request.args.get("duration")
    if not duration_str:
        raise ValidationError(
            "Missing required query parameter: 'duration' (in minutes)"
        )

    try:
        selected_date = datetime.date.fromisoformat(date_str)
        duration_minutes = int(duration_str)
        open_time = (
            datetime.time.fromisoformat(request.args["open"])
            if request.args.get("open")
            else None
        )
        close_time = (
            datetime.time.fromisoformat(request.args["close"])
            if request.args.get("close")
            else None
        )
    except (ValueError, TypeError):
        raise ValidationError("Invalid 'date', 'duration', 'open' or 'close' format.")

    stylist = db.session.get(Stylist, stylist_id)
    if not stylist or not stylist.active:
        raise NotFound("Stylist not found")

    slots = available_starts(
        stylist_id,
        selected_date,
        duration_minutes,
        datetime.datetime.now(),
        load_policy(),
        open_time=open_time,
        close_time=close_time,
    )
    current_app.logger.debug(
        f"{len(slots)} open slot(s) for stylist {stylist_id} on {date_str}"
    )
    return jsonify([slot.time().isoformat(timespec="minutes") for slot in slots])
