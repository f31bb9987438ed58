"""
Booking request flow: price the draft, claim the slot, create a pending booking.

Coupon redemption, slot reservation and the booking insert share one
transaction. Either all of them commit or none does.
"""
import uuid
from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from app.errors import Busy, NotFound, ValidationError
from app.extensions import db
from app.models import (
    PAYMENT_METHODS,
    BookedService,
    Booking,
    Customer,
    Service,
)
from app.services.booking_policy import load_policy
from app.services.discounts import (
    DraftLine,
    apply_coupon,
    find_coupon,
    no_discount,
    normalize_code,
    price_with_coupon,
    redeem_coupon,
)
from app.services.slot_allocator import (
    coupon_key,
    get_gate,
    stylist_key,
    try_reserve,
)

EDITABLE_STATUSES = ("pending", "confirmed")


def snapshot_services(service_ids):
    """
    Copy name, price, duration and category of each catalog service.

    Order and repeats of ``service_ids`` are preserved.
    """
    if not service_ids:
        raise ValidationError("At least one service is required")

    try:
        wanted = [int(service_id) for service_id in service_ids]
    except (TypeError, ValueError):
        raise ValidationError("Service ids must be integers")

    found = {
        service.id: service
        for service in db.session.scalars(
            select(Service).where(Service.id.in_(set(wanted)))
        )
    }

    snapshots = []
    for position, service_id in enumerate(wanted):
        service = found.get(service_id)
        if service is None or not service.active:
            raise NotFound(f"Service {service_id} not found or inactive")
        snapshots.append(
            BookedService(
                position=position,
                service_id=service.id,
                category_id=service.category_id,
                name=service.name,
                price=Decimal(service.price),
                duration_minutes=service.duration_minutes,
            )
        )
    return snapshots


def draft_lines(snapshots):
    return [
        DraftLine(
            service_id=s.service_id, price=Decimal(s.price), category_id=s.category_id
        )
        for s in snapshots
    ]


def end_time_for(start, snapshots):
    return start + timedelta(minutes=sum(s.duration_minutes for s in snapshots))


def new_invoice_no(now):
    return f"INV-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


def create_booking(
    customer_id,
    service_ids,
    start,
    now,
    stylist_id=None,
    coupon_code=None,
    payment_method="e-wallet",
    notes=None,
):
    """
    Create a ``pending`` booking.

    Raises ValidationError, NotFound, CouponRejected, LeadTimeViolation,
    SlotConflict or Busy; on any of them nothing is written.
    """
    if customer_id is None:
        raise ValidationError("customerId is required")
    if start is None:
        raise ValidationError("startTime is required")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {payment_method}")
    if db.session.get(Customer, customer_id) is None:
        raise NotFound("Customer not found")

    policy = load_policy()
    snapshots = snapshot_services(service_ids)
    end = end_time_for(start, snapshots)
    lines = draft_lines(snapshots)

    coupon = None
    code = normalize_code(coupon_code)
    if code:
        coupon = find_coupon(code)

    keys = (stylist_key(stylist_id), coupon_key(coupon.id if coupon else None))
    with get_gate().hold(*keys):
        try:
            if code:
                # Re-read under the gate so the usage check sees the latest count
                coupon = find_coupon(code)
                if coupon is not None:
                    db.session.refresh(coupon)
                priced = apply_coupon(coupon, lines, now)
            else:
                priced = no_discount(lines)

            try_reserve(stylist_id, start, end, now, policy)

            booking = Booking(
                customer_id=customer_id,
                stylist_id=stylist_id,
                start_time=start,
                end_time=end,
                slot_date=start.strftime("%Y-%m-%d"),
                status="pending",
                notes=notes,
                payment_method=payment_method,
                payment_status="unpaid",
                subtotal_amount=priced.subtotal,
                discount_amount=priced.discount,
                total_amount=priced.total,
                dp_amount=policy.deposit_for(priced.total),
                coupon_code=priced.coupon_code,
                invoice_no=new_invoice_no(now),
                services=snapshots,
            )
            db.session.add(booking)

            if coupon is not None:
                redeem_coupon(coupon.id)

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.info(
        f"Booking {booking.id} created for customer {customer_id} "
        f"({start.isoformat()} - {end.isoformat()}, stylist={stylist_id})"
    )
    return booking


def update_services(booking_id, service_ids, now):
    """
    Replace a booking's services with fresh catalog snapshots.

    End time, subtotal, deposit and total are recomputed. A redeemed coupon is
    re-priced against the new services and only discounts the lines it
    matches; CouponRejected is raised when it matches none. The new interval
    is re-reserved for the booking's stylist.
    """
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")

    locked_stylist = booking.stylist_id
    with get_gate().hold(stylist_key(locked_stylist)):
        try:
            booking = db.session.get(Booking, booking_id, populate_existing=True)
            if booking.status not in EDITABLE_STATUSES:
                raise ValidationError(
                    f"Services of a {booking.status} booking cannot be changed"
                )
            if booking.stylist_id != locked_stylist:
                raise Busy("Booking was reassigned concurrently; retry shortly")

            policy = load_policy()
            snapshots = snapshot_services(service_ids)
            end = end_time_for(booking.start_time, snapshots)

            try_reserve(
                booking.stylist_id,
                booking.start_time,
                end,
                now,
                policy,
                exclude_booking_id=booking.id,
                check_lead=False,
            )

            lines = draft_lines(snapshots)
            if booking.coupon_code:
                priced = price_with_coupon(find_coupon(booking.coupon_code), lines)
            else:
                priced = no_discount(lines)
            total = priced.total

            booking.services = snapshots
            booking.end_time = end
            booking.subtotal_amount = priced.subtotal
            booking.discount_amount = priced.discount
            booking.total_amount = total
            if booking.payment_status == "unpaid":
                booking.dp_amount = policy.deposit_for(total)
            else:
                booking.dp_amount = min(Decimal(booking.dp_amount or 0), total)

            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise Busy("Booking was modified concurrently; retry shortly")
        except Exception:
            db.session.rollback()
            raise

    return booking


def delete_booking(booking_id):
    """Administrative hard delete; snapshots and dispatch markers go with it."""
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")

    with get_gate().hold(stylist_key(booking.stylist_id)):
        try:
            db.session.delete(booking)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise Busy("Booking was modified concurrently; retry shortly")
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.info(f"Booking {booking_id} deleted by admin")
