# Coupon eligibility, discount computation and usage redemption
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, or_, select, update

from app.errors import CouponRejected
from app.extensions import db
from app.models import Coupon

CENT = Decimal("0.01")


@dataclass(frozen=True)
class DraftLine:
    """One service in a booking that has not been created yet."""

    service_id: int
    price: Decimal
    category_id: Optional[int] = None


@dataclass(frozen=True)
class DiscountedTotal:
    subtotal: Decimal
    eligible_subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_code: Optional[str] = None


def subtotal_of(lines: List[DraftLine]) -> Decimal:
    return sum((Decimal(line.price) for line in lines), Decimal("0"))


def no_discount(lines: List[DraftLine]) -> DiscountedTotal:
    subtotal = subtotal_of(lines)
    return DiscountedTotal(subtotal, subtotal, Decimal("0"), subtotal)


def normalize_code(code):
    if code is None:
        return None
    normalized = str(code).strip()
    return normalized.upper() if normalized else None


def find_coupon(code):
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.session.scalar(select(Coupon).where(func.upper(Coupon.code) == normalized))


def _eligible_lines(coupon, lines):
    service_ids = {str(s) for s in (coupon.service_ids or [])}
    category_ids = {str(c) for c in (coupon.category_ids or [])}
    if not service_ids and not category_ids:
        return list(lines)
    return [
        line
        for line in lines
        if str(line.service_id) in service_ids
        or (line.category_id is not None and str(line.category_id) in category_ids)
    ]


def apply_coupon(coupon, lines: List[DraftLine], now) -> DiscountedTotal:
    """
    Price a draft booking with ``coupon``.

    Checks run in a fixed order and stop at the first failure, raising
    CouponRejected with the reason. Nothing is written here; see
    redeem_coupon for the usage counter.
    """
    if coupon is None:
        raise CouponRejected("coupon not found")
    if not coupon.is_active:
        raise CouponRejected("coupon is inactive")
    if coupon.start_date is not None and now < coupon.start_date:
        raise CouponRejected("coupon is not valid yet")
    if coupon.end_date is not None and now > coupon.end_date:
        raise CouponRejected("coupon has expired")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise CouponRejected("usage limit reached")

    return price_with_coupon(coupon, lines)


def price_with_coupon(coupon, lines: List[DraftLine]) -> DiscountedTotal:
    """
    Scope, minimum spend and discount amount for an already accepted coupon.

    Used directly when a booking's services change: the coupon was redeemed
    at booking time, so its validity window and usage count are not
    re-checked, but the discount only covers lines it still matches.
    """
    if coupon is None:
        raise CouponRejected("coupon not found")

    subtotal = subtotal_of(lines)
    eligible = _eligible_lines(coupon, lines)
    eligible_subtotal = subtotal_of(eligible)

    if eligible_subtotal < Decimal(coupon.min_spend or 0):
        raise CouponRejected(f"minimum spend of {Decimal(coupon.min_spend):.2f} not met")
    if not eligible:
        raise CouponRejected("coupon does not apply to the selected services")

    amount = Decimal(coupon.amount)
    if coupon.discount_type == "percent":
        discount = (eligible_subtotal * amount / Decimal("100")).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
    else:
        discount = amount
    discount = max(Decimal("0"), min(discount, eligible_subtotal))

    return DiscountedTotal(
        subtotal=subtotal,
        eligible_subtotal=eligible_subtotal,
        discount=discount,
        total=max(Decimal("0"), subtotal - discount),
        coupon_code=coupon.code,
    )


def redeem_coupon(coupon_id):
    """
    Count one use of the coupon inside the caller's transaction.

    The increment is a single conditional UPDATE, so the limit holds even when
    two redemptions race. Raises CouponRejected when no row qualified.
    """
    result = db.session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.is_active.is_(True),
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CouponRejected("usage limit reached")
