import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import transactions
from .coupons import validate_coupon
from .database import get_session
from .errors import ErrorCode, NotFoundError, UnauthorizedError
from .helpers import utcnow
from .models import TicketTier, TransactionStatus, User
from .notifications import NotificationPublisher, get_notifier
from .schemas import (
    CreateTransactionRequest,
    PaymentProofRequest,
    TicketTierAvailabilityResponse,
    TransactionResponse,
    ValidateCouponRequest,
    ValidateCouponResponse,
)

router = APIRouter()


async def get_current_actor(
    x_api_token: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the authenticated actor from the ``X-API-TOKEN`` header."""
    if not x_api_token:
        raise UnauthorizedError()
    result = await session.execute(select(User).where(User.api_token == x_api_token))
    user = result.scalar_one_or_none()
    if user is None:
        raise UnauthorizedError("Invalid API token")
    return user


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    req: CreateTransactionRequest,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await transactions.create_transaction(
        session,
        actor,
        event_id=req.event_id,
        ticket_tier_id=req.ticket_tier_id,
        quantity=req.quantity,
        points_used=req.points_used,
        coupon_code=req.coupon_code,
    )


@router.get("/transactions", response_model=List[TransactionResponse])
async def list_transactions(
    status: Optional[TransactionStatus] = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    """
    Get the caller's own transactions, newest first
    """
    return await transactions.list_transactions(session, actor, status, offset, limit)


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: uuid.UUID,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await transactions.get_transaction(session, actor, transaction_id)


@router.post("/transactions/{transaction_id}/upload-proof", response_model=TransactionResponse)
async def upload_proof(
    transaction_id: uuid.UUID,
    req: PaymentProofRequest,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await transactions.upload_proof(session, actor, transaction_id, str(req.proof_url))


@router.patch("/transactions/{transaction_id}/accept", response_model=TransactionResponse)
async def accept_transaction(
    transaction_id: uuid.UUID,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    return await transactions.accept_transaction(session, actor, transaction_id, notifier)


@router.patch("/transactions/{transaction_id}/reject", response_model=TransactionResponse)
async def reject_transaction(
    transaction_id: uuid.UUID,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    return await transactions.reject_transaction(session, actor, transaction_id, notifier)


@router.patch("/transactions/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    transaction_id: uuid.UUID,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await transactions.cancel_transaction(session, actor, transaction_id)


@router.post("/coupons/validate", response_model=ValidateCouponResponse)
async def validate_coupon_route(
    req: ValidateCouponRequest,
    actor: User = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await validate_coupon(session, req.coupon_code, req.event_id, req.amount, utcnow())


@router.get("/ticket-tiers/{ticket_tier_id}/availability",
            response_model=TicketTierAvailabilityResponse)
async def ticket_tier_availability(
    ticket_tier_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """
    Get remaining seats for a ticket tier; ``version`` changes on every seat update
    """
    tier = await session.get(TicketTier, ticket_tier_id)
    if tier is None:
        raise NotFoundError(ErrorCode.TICKET_TIER_NOT_FOUND, "Ticket tier not found")
    return TicketTierAvailabilityResponse(
        ticket_tier_id=tier.id,
        quantity=tier.quantity,
        sold=tier.sold,
        available=tier.quantity - tier.sold,
        version=tier.version,
    )
