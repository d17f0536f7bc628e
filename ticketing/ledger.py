"""Atomic counter adjustments for seats, loyalty points and coupon usage.

Each primitive is a single guarded UPDATE keyed by the owning row's primary
key, so the availability check and the write happen in one statement. A guard
miss raises, which makes the surrounding ``atomic`` block roll back. Nothing
here commits.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, ErrorCode, InvalidInputError, LedgerInvariantError
from .models import Coupon, TicketTier, User, UserPoint

logger = logging.getLogger(__name__)


async def _apply(session: AsyncSession, stmt):
    stmt = stmt.execution_options(synchronize_session=False)
    return (await session.execute(stmt)).scalar()


async def reserve_seats(session: AsyncSession, ticket_tier_id: uuid.UUID, quantity: int) -> int:
    """Add ``quantity`` to ``sold`` if capacity allows; returns the new ``sold``."""
    sold = await _apply(
        session,
        update(TicketTier)
        .where(
            TicketTier.id == ticket_tier_id,
            TicketTier.sold + quantity <= TicketTier.quantity,
        )
        .values(sold=TicketTier.sold + quantity, version=TicketTier.version + 1)
        .returning(TicketTier.sold),
    )
    if sold is None:
        raise ConflictError(ErrorCode.INSUFFICIENT_SEATS, "Not enough seats available")
    return sold


async def release_seats(session: AsyncSession, ticket_tier_id: uuid.UUID, quantity: int) -> int:
    sold = await _apply(
        session,
        update(TicketTier)
        .where(TicketTier.id == ticket_tier_id, TicketTier.sold >= quantity)
        .values(sold=TicketTier.sold - quantity, version=TicketTier.version + 1)
        .returning(TicketTier.sold),
    )
    if sold is None:
        raise LedgerInvariantError(
            f"Cannot release {quantity} seats from ticket tier {ticket_tier_id}"
        )
    return sold


async def debit_points(session: AsyncSession, user_id: uuid.UUID, amount: int) -> int:
    """Take ``amount`` points from the user if the balance covers it."""
    points = await _apply(
        session,
        update(User)
        .where(User.id == user_id, User.points >= amount)
        .values(points=User.points - amount)
        .returning(User.points),
    )
    if points is None:
        raise InvalidInputError(ErrorCode.INSUFFICIENT_POINTS, "Insufficient points balance")
    return points


async def credit_points(session: AsyncSession, user_id: uuid.UUID, amount: int) -> int:
    points = await _apply(
        session,
        update(User)
        .where(User.id == user_id)
        .values(points=User.points + amount)
        .returning(User.points),
    )
    if points is None:
        raise LedgerInvariantError(f"Cannot refund points to missing user {user_id}")
    return points


async def claim_coupon(session: AsyncSession, coupon_id: uuid.UUID) -> int:
    """Count one more use of the coupon, refusing to pass ``usage_limit``."""
    used = await _apply(
        session,
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.used_count < Coupon.usage_limit)
        .values(used_count=Coupon.used_count + 1)
        .returning(Coupon.used_count),
    )
    if used is None:
        raise ConflictError(ErrorCode.COUPON_LIMIT_REACHED, "Coupon usage limit reached")
    return used


async def release_coupon(session: AsyncSession, coupon_id: uuid.UUID) -> int:
    used = await _apply(
        session,
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.used_count > 0)
        .values(used_count=Coupon.used_count - 1)
        .returning(Coupon.used_count),
    )
    if used is None:
        raise LedgerInvariantError(f"Cannot release unused coupon {coupon_id}")
    return used


async def resync_points(session: AsyncSession, user_id: uuid.UUID, now: datetime) -> int:
    """Set the user's balance to the sum of their unexpired point grants."""
    total = (
        await session.execute(
            select(func.coalesce(func.sum(UserPoint.amount), 0)).where(
                UserPoint.user_id == user_id,
                UserPoint.expires_at >= now,
            )
        )
    ).scalar_one()
    points = await _apply(
        session,
        update(User).where(User.id == user_id).values(points=total).returning(User.points),
    )
    if points is None:
        raise LedgerInvariantError(f"Cannot resync points for missing user {user_id}")
    logger.debug("Resynced user %s points to %s", user_id, points)
    return points
