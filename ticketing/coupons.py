"""Coupon discount math and eligibility checks."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, DomainError, ErrorCode, InvalidInputError
from .helpers import as_utc
from .models import Coupon, DiscountType


def calculate_discount(coupon: Coupon, base_amount: int) -> int:
    """Return the discount ``coupon`` grants on ``base_amount``.

    Below ``min_purchase`` there is no discount. Percentage discounts are
    floored to whole currency units and capped by ``max_discount`` when set;
    fixed discounts ignore ``max_discount``. The result never exceeds
    ``base_amount``.
    """
    if base_amount < (coupon.min_purchase or 0):
        return 0

    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = base_amount * coupon.discount_value // 100
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    elif coupon.discount_type == DiscountType.FIXED:
        discount = coupon.discount_value
    else:
        discount = 0

    return max(0, min(discount, base_amount))


async def get_coupon_by_code(session: AsyncSession, code: str) -> Optional[Coupon]:
    result = await session.execute(select(Coupon).where(Coupon.code == code))
    return result.scalar_one_or_none()


def coupon_rejection(coupon: Coupon, event_id: uuid.UUID, now: datetime) -> Optional[DomainError]:
    """First reason ``coupon`` cannot be applied to ``event_id`` right now, or None."""
    if not coupon.is_active:
        return InvalidInputError(ErrorCode.COUPON_INACTIVE, "Coupon is not active")
    if as_utc(coupon.valid_until) < now:
        return InvalidInputError(ErrorCode.COUPON_EXPIRED, "Coupon has expired")
    if coupon.used_count >= coupon.usage_limit:
        return ConflictError(ErrorCode.COUPON_LIMIT_REACHED, "Coupon usage limit reached")
    if coupon.event_id is not None and coupon.event_id != event_id:
        return InvalidInputError(
            ErrorCode.COUPON_EVENT_MISMATCH, "This coupon is not valid for this event"
        )
    return None


async def validate_coupon(session: AsyncSession, code: str, event_id: uuid.UUID,
                          amount: int, now: datetime) -> dict:
    """Preview a coupon against a purchase amount without consuming it."""
    coupon = await get_coupon_by_code(session, code)
    if coupon is None:
        return _invalid(amount, "Coupon not found")

    rejection = coupon_rejection(coupon, event_id, now)
    if rejection is not None:
        return _invalid(amount, rejection.message)

    if amount < coupon.min_purchase:
        return _invalid(amount, f"Minimum purchase of {coupon.min_purchase} required")

    discount = calculate_discount(coupon, amount)
    return {
        "is_valid": True,
        "discount_amount": discount,
        "final_amount": max(0, amount - discount),
        "message": None,
    }


def _invalid(amount: int, message: str) -> dict:
    return {
        "is_valid": False,
        "discount_amount": 0,
        "final_amount": amount,
        "message": message,
    }
