"""Transaction lifecycle: purchase creation and every status transition.

A purchase starts in WAITING_PAYMENT holding a seat reservation, an optional
points debit and an optional coupon use. Status changes are driven by the
buyer (upload proof, cancel), the event organizer (accept, reject) and the
sweeper (expire, auto-cancel). All of them go through ``apply_transition``,
which looks the change up in ``TRANSITIONS`` and, when the target state
releases the reservation, applies the three compensations in the same
database transaction as the status write.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key

from . import ledger
from .config import CONFIRMATION_WINDOW_DAYS, PAYMENT_WINDOW_HOURS
from .coupons import calculate_discount, coupon_rejection, get_coupon_by_code
from .database import atomic
from .errors import ConflictError, ErrorCode, ForbiddenError, InvalidInputError, NotFoundError
from .helpers import as_utc, utcnow
from .models import Coupon, Event, TicketTier, Transaction, TransactionStatus, User, UserRole
from .notifications import NotificationPublisher, accepted_payload, notify, rejected_payload

logger = logging.getLogger(__name__)

PAYMENT_WINDOW = timedelta(hours=PAYMENT_WINDOW_HOURS)
CONFIRMATION_WINDOW = timedelta(days=CONFIRMATION_WINDOW_DAYS)


class TransitionEvent(str, Enum):
    UPLOAD_PROOF = "UPLOAD_PROOF"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    EXPIRE = "EXPIRE"
    AUTO_CANCEL = "AUTO_CANCEL"


@dataclass(frozen=True)
class Transition:
    target: TransactionStatus
    releases_reservation: bool


_S = TransactionStatus
_E = TransitionEvent

TRANSITIONS = {
    (_S.WAITING_PAYMENT, _E.UPLOAD_PROOF): Transition(_S.WAITING_CONFIRMATION, False),
    (_S.WAITING_PAYMENT, _E.REJECT): Transition(_S.REJECTED, True),
    (_S.WAITING_PAYMENT, _E.CANCEL): Transition(_S.CANCELED, True),
    (_S.WAITING_PAYMENT, _E.EXPIRE): Transition(_S.EXPIRED, True),
    (_S.WAITING_CONFIRMATION, _E.ACCEPT): Transition(_S.DONE, False),
    (_S.WAITING_CONFIRMATION, _E.REJECT): Transition(_S.REJECTED, True),
    (_S.WAITING_CONFIRMATION, _E.CANCEL): Transition(_S.CANCELED, True),
    (_S.WAITING_CONFIRMATION, _E.AUTO_CANCEL): Transition(_S.CANCELED, True),
}

_WRONG_STATUS = {
    _E.UPLOAD_PROOF: "Payment proof can only be uploaded for transactions awaiting payment",
    _E.ACCEPT: "Only transactions awaiting confirmation can be accepted",
    _E.REJECT: "Only pending transactions can be rejected",
    _E.CANCEL: "Only pending transactions can be cancelled",
    _E.EXPIRE: "Only transactions awaiting payment can expire",
    _E.AUTO_CANCEL: "Only transactions awaiting confirmation can be auto-cancelled",
}


def transition_for(status: TransactionStatus, event: TransitionEvent) -> Transition:
    transition = TRANSITIONS.get((status, event))
    if transition is None:
        raise ConflictError(ErrorCode.INVALID_STATUS, _WRONG_STATUS[event])
    return transition


def _deadline(transaction: Transaction, status: TransactionStatus) -> Optional[datetime]:
    if status == _S.WAITING_CONFIRMATION:
        return as_utc(transaction.created_at) + CONFIRMATION_WINDOW
    return None


async def _refresh_if_loaded(session: AsyncSession, model, pk) -> None:
    # Guarded UPDATEs bypass the identity map; keep loaded rows honest.
    obj = session.identity_map.get(identity_key(model, pk))
    if obj is not None:
        await session.refresh(obj)


async def _release_reservation(session: AsyncSession, transaction: Transaction) -> None:
    await ledger.release_seats(session, transaction.ticket_tier_id, transaction.quantity)
    if transaction.points_used > 0:
        await ledger.credit_points(session, transaction.user_id, transaction.points_used)
    if transaction.coupon_id is not None:
        await ledger.release_coupon(session, transaction.coupon_id)


async def apply_transition(session: AsyncSession, transaction: Transaction,
                           event: TransitionEvent, now: Optional[datetime] = None,
                           **changes) -> Transaction:
    """Move ``transaction`` along ``event`` as one atomic unit.

    The status write is conditional on the status we read, so two racing
    transitions cannot both compensate the same reservation; the loser gets
    a ConflictError and nothing it did is committed.
    """
    now = now or utcnow()
    current = transaction.status
    transition = transition_for(current, event)

    async with atomic(session):
        changed = (
            await session.execute(
                update(Transaction)
                .where(Transaction.id == transaction.id, Transaction.status == current)
                .values(
                    status=transition.target,
                    expires_at=_deadline(transaction, transition.target),
                    updated_at=now,
                    **changes,
                )
                .returning(Transaction.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar()
        if changed is None:
            raise ConflictError(ErrorCode.INVALID_STATUS, "Transaction status changed concurrently")
        if transition.releases_reservation:
            await _release_reservation(session, transaction)

    await session.refresh(transaction)
    if transition.releases_reservation:
        await _refresh_if_loaded(session, TicketTier, transaction.ticket_tier_id)
        if transaction.points_used > 0:
            await _refresh_if_loaded(session, User, transaction.user_id)
        if transaction.coupon_id is not None:
            await _refresh_if_loaded(session, Coupon, transaction.coupon_id)

    logger.info("Transaction %s: %s -> %s (%s)",
                transaction.id, current.value, transition.target.value, event.value)
    return transaction


async def _get_transaction(session: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
    transaction = await session.get(Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError(ErrorCode.TRANSACTION_NOT_FOUND, "Transaction not found")
    return transaction


async def _get_owned_event(session: AsyncSession, organizer: User,
                           transaction: Transaction, action: str) -> Event:
    event = await session.get(Event, transaction.event_id)
    if event is None or event.organizer_id != organizer.id:
        raise ForbiddenError(
            ErrorCode.NOT_EVENT_OWNER,
            f"You can only {action} transactions for your own events",
        )
    return event


def _require_organizer(actor: User, action: str) -> None:
    if actor.role != UserRole.ORGANIZER:
        raise ForbiddenError(ErrorCode.NOT_ORGANIZER, f"Only organizers can {action} transactions")


async def create_transaction(session: AsyncSession, actor: User, *, event_id: uuid.UUID,
                             ticket_tier_id: uuid.UUID, quantity: int, points_used: int = 0,
                             coupon_code: Optional[str] = None,
                             now: Optional[datetime] = None) -> Transaction:
    """Create a WAITING_PAYMENT purchase and take its reservation.

    Checks run in a fixed order (event, tier, seats, points, coupon) and the
    first violation is raised. The insert, the seat reservation, the points
    debit and the coupon use are committed together or not at all.
    """
    now = now or utcnow()
    points_used = points_used or 0
    if quantity < 1:
        raise InvalidInputError(ErrorCode.INVALID_REQUEST, "Quantity must be at least 1")
    if points_used < 0:
        raise InvalidInputError(ErrorCode.INVALID_REQUEST, "Points used cannot be negative")

    event = await session.get(Event, event_id)
    if event is None:
        raise NotFoundError(ErrorCode.EVENT_NOT_FOUND, "Event not found")

    tier = await session.get(TicketTier, ticket_tier_id)
    if tier is None or tier.event_id != event.id:
        raise NotFoundError(ErrorCode.TICKET_TIER_NOT_FOUND, "Ticket tier not found")

    available = tier.quantity - tier.sold
    if available < quantity:
        raise ConflictError(ErrorCode.INSUFFICIENT_SEATS, f"Only {available} seats available")

    if points_used > 0 and actor.points < points_used:
        raise InvalidInputError(ErrorCode.INSUFFICIENT_POINTS, "Insufficient points balance")

    coupon = None
    if coupon_code:
        coupon = await get_coupon_by_code(session, coupon_code)
        if coupon is None:
            raise NotFoundError(ErrorCode.COUPON_NOT_FOUND, "Coupon not found")
        rejection = coupon_rejection(coupon, event.id, now)
        if rejection is not None:
            raise rejection

    base_amount = tier.price * quantity
    discount_amount = calculate_discount(coupon, base_amount) if coupon is not None else 0
    total_amount = max(0, base_amount - discount_amount - points_used)

    transaction = Transaction(
        id=uuid.uuid4(),
        user_id=actor.id,
        event_id=event.id,
        ticket_tier_id=tier.id,
        coupon_id=coupon.id if coupon is not None else None,
        quantity=quantity,
        total_amount=total_amount,
        discount_amount=discount_amount,
        points_used=points_used,
        status=_S.WAITING_PAYMENT,
        created_at=now,
        updated_at=now,
        expires_at=now + PAYMENT_WINDOW,
    )

    async with atomic(session):
        session.add(transaction)
        await session.flush()
        await ledger.reserve_seats(session, tier.id, quantity)
        if points_used > 0:
            await ledger.debit_points(session, actor.id, points_used)
        if coupon is not None:
            await ledger.claim_coupon(session, coupon.id)

    await session.refresh(tier)
    if points_used > 0:
        await _refresh_if_loaded(session, User, actor.id)
    if coupon is not None:
        await session.refresh(coupon)

    logger.info("Transaction %s created for user %s: %s x tier %s, total %s",
                transaction.id, actor.id, quantity, tier.id, total_amount)
    return transaction


async def upload_proof(session: AsyncSession, actor: User, transaction_id: uuid.UUID,
                       proof_url: str, now: Optional[datetime] = None) -> Transaction:
    transaction = await _get_transaction(session, transaction_id)
    if transaction.user_id != actor.id:
        raise ForbiddenError(
            ErrorCode.NOT_TRANSACTION_OWNER,
            "You can only upload proof for your own transactions",
        )
    return await apply_transition(session, transaction, _E.UPLOAD_PROOF, now,
                                  payment_proof_url=proof_url)


async def accept_transaction(session: AsyncSession, actor: User, transaction_id: uuid.UUID,
                             notifier: Optional[NotificationPublisher] = None,
                             now: Optional[datetime] = None) -> Transaction:
    _require_organizer(actor, "accept")
    transaction = await _get_transaction(session, transaction_id)
    event = await _get_owned_event(session, actor, transaction, "accept")

    transaction = await apply_transition(session, transaction, _E.ACCEPT, now)

    buyer = await session.get(User, transaction.user_id)
    notify(notifier, accepted_payload(transaction, buyer, event))
    return transaction


async def reject_transaction(session: AsyncSession, actor: User, transaction_id: uuid.UUID,
                             notifier: Optional[NotificationPublisher] = None,
                             now: Optional[datetime] = None) -> Transaction:
    _require_organizer(actor, "reject")
    transaction = await _get_transaction(session, transaction_id)
    event = await _get_owned_event(session, actor, transaction, "reject")

    transaction = await apply_transition(session, transaction, _E.REJECT, now)

    buyer = await session.get(User, transaction.user_id)
    notify(notifier, rejected_payload(transaction, buyer, event))
    return transaction


async def cancel_transaction(session: AsyncSession, actor: User, transaction_id: uuid.UUID,
                             now: Optional[datetime] = None) -> Transaction:
    transaction = await _get_transaction(session, transaction_id)
    if transaction.user_id != actor.id:
        raise ForbiddenError(
            ErrorCode.NOT_TRANSACTION_OWNER, "You can only cancel your own transactions"
        )
    return await apply_transition(session, transaction, _E.CANCEL, now)


async def expire_transaction(session: AsyncSession, transaction_id: uuid.UUID,
                             now: Optional[datetime] = None) -> Transaction:
    """Expire an unpaid transaction whose payment deadline has passed."""
    now = now or utcnow()
    transaction = await _get_transaction(session, transaction_id)
    transition_for(transaction.status, _E.EXPIRE)
    expires_at = as_utc(transaction.expires_at)
    if expires_at is None or expires_at >= now:
        raise ConflictError(ErrorCode.INVALID_STATUS, "Transaction has not reached its payment deadline")
    return await apply_transition(session, transaction, _E.EXPIRE, now)


async def auto_cancel_transaction(session: AsyncSession, transaction_id: uuid.UUID,
                                  now: Optional[datetime] = None) -> Transaction:
    """Cancel a transaction left unconfirmed past the confirmation window."""
    now = now or utcnow()
    transaction = await _get_transaction(session, transaction_id)
    transition_for(transaction.status, _E.AUTO_CANCEL)
    if as_utc(transaction.created_at) >= now - CONFIRMATION_WINDOW:
        raise ConflictError(
            ErrorCode.INVALID_STATUS, "Transaction is still within its confirmation window"
        )
    return await apply_transition(session, transaction, _E.AUTO_CANCEL, now)


async def get_transaction(session: AsyncSession, actor: User,
                          transaction_id: uuid.UUID) -> Transaction:
    transaction = await _get_transaction(session, transaction_id)
    if transaction.user_id == actor.id:
        return transaction
    if actor.role == UserRole.ORGANIZER:
        event = await session.get(Event, transaction.event_id)
        if event is not None and event.organizer_id == actor.id:
            return transaction
    raise ForbiddenError(ErrorCode.NOT_TRANSACTION_OWNER, "You cannot view this transaction")


async def list_transactions(session: AsyncSession, actor: User,
                            status: Optional[TransactionStatus] = None,
                            offset: int = 0, limit: int = 20) -> List[Transaction]:
    """Return the actor's own transactions, newest first."""
    stmt = select(Transaction).where(Transaction.user_id == actor.id)
    if status is not None:
        stmt = stmt.where(Transaction.status == status)
    stmt = stmt.order_by(Transaction.created_at.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
