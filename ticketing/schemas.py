from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from pydantic.alias_generators import to_camel

from .models import TransactionStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CreateTransactionRequest(CamelModel):
    event_id: UUID
    ticket_tier_id: UUID
    quantity: int = Field(ge=1)
    points_used: int = Field(default=0, ge=0)
    coupon_code: Optional[str] = Field(default=None, max_length=50)


class PaymentProofRequest(CamelModel):
    proof_url: HttpUrl


class TransactionResponse(CamelModel):
    id: UUID
    user_id: UUID
    event_id: UUID
    ticket_tier_id: UUID
    quantity: int
    total_amount: int
    discount_amount: int
    points_used: int
    status: TransactionStatus
    coupon_id: Optional[UUID] = None
    payment_proof_url: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None


class ValidateCouponRequest(CamelModel):
    coupon_code: str = Field(min_length=1, max_length=50)
    event_id: UUID
    amount: int = Field(ge=0)


class ValidateCouponResponse(CamelModel):
    is_valid: bool
    discount_amount: int
    final_amount: int
    message: Optional[str] = None


class TicketTierAvailabilityResponse(CamelModel):
    ticket_tier_id: UUID
    quantity: int
    sold: int
    available: int
    version: int
