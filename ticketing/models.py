import enum
import uuid

import sqlalchemy as sa
from sqlalchemy.orm import declarative_base

from .helpers import utcnow

Base = declarative_base()


class UserRole(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    ORGANIZER = "ORGANIZER"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class TransactionStatus(str, enum.Enum):
    WAITING_PAYMENT = "WAITING_PAYMENT"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    DONE = "DONE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"


PENDING_STATUSES = (
    TransactionStatus.WAITING_PAYMENT,
    TransactionStatus.WAITING_CONFIRMATION,
)


class User(Base):
    __tablename__ = "users"
    id = sa.Column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    email = sa.Column(sa.String(255), nullable=False, unique=True)
    name = sa.Column(sa.String(255), nullable=True)
    role = sa.Column(sa.Enum(UserRole, native_enum=False, length=20), nullable=False,
                     default=UserRole.CUSTOMER)
    points = sa.Column(sa.Integer, nullable=False, default=0)
    api_token = sa.Column(sa.String(128), nullable=True, unique=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        sa.CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
    )


class Event(Base):
    __tablename__ = "events"
    id = sa.Column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    organizer_id = sa.Column(sa.Uuid, sa.ForeignKey("users.id"), nullable=False)
    name = sa.Column(sa.String(255), nullable=False)
    starts_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = sa.Column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    event_id = sa.Column(sa.Uuid, sa.ForeignKey("events.id"), nullable=False, index=True)
    name = sa.Column(sa.String(100), nullable=False)
    price = sa.Column(sa.Integer, nullable=False)  # smallest currency unit
    quantity = sa.Column(sa.Integer, nullable=False)
    sold = sa.Column(sa.Integer, nullable=False, default=0)
    version = sa.Column(sa.Integer, nullable=False, default=1, server_default="1")
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        sa.CheckConstraint("sold >= 0 AND sold <= quantity", name="ck_ticket_tiers_sold_within_quantity"),
    )


class Coupon(Base):
    __tablename__ = "coupons"
    id = sa.Column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    code = sa.Column(sa.String(50), nullable=False, unique=True)
    discount_type = sa.Column(sa.Enum(DiscountType, native_enum=False, length=20), nullable=False)
    discount_value = sa.Column(sa.Integer, nullable=False)
    min_purchase = sa.Column(sa.Integer, nullable=False, default=0)
    max_discount = sa.Column(sa.Integer, nullable=True)  # PERCENTAGE only
    usage_limit = sa.Column(sa.Integer, nullable=False)
    used_count = sa.Column(sa.Integer, nullable=False, default=0)
    valid_from = sa.Column(sa.DateTime(timezone=True), nullable=False)
    valid_until = sa.Column(sa.DateTime(timezone=True), nullable=False)
    is_active = sa.Column(sa.Boolean, nullable=False, default=True)
    event_id = sa.Column(sa.Uuid, sa.ForeignKey("events.id"), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        sa.CheckConstraint("used_count >= 0 AND used_count <= usage_limit",
                           name="ck_coupons_used_within_limit"),
    )


class UserPoint(Base):
    __tablename__ = "user_points"
    id = sa.Column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid, sa.ForeignKey("users.id"), nullable=False, index=True)
    amount = sa.Column(sa.Integer, nullable=False)
    source = sa.Column(sa.String(50), nullable=False)
    expires_at = sa.Column(sa.DateTime(timezone=True), nullable=False, index=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"
    id = sa.Column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid, sa.ForeignKey("users.id"), nullable=False, index=True)
    event_id = sa.Column(sa.Uuid, sa.ForeignKey("events.id"), nullable=False)
    ticket_tier_id = sa.Column(sa.Uuid, sa.ForeignKey("ticket_tiers.id"), nullable=False)
    coupon_id = sa.Column(sa.Uuid, sa.ForeignKey("coupons.id"), nullable=True)
    quantity = sa.Column(sa.Integer, nullable=False)
    total_amount = sa.Column(sa.Integer, nullable=False)
    discount_amount = sa.Column(sa.Integer, nullable=False, default=0)
    points_used = sa.Column(sa.Integer, nullable=False, default=0)
    status = sa.Column(sa.Enum(TransactionStatus, native_enum=False, length=32), nullable=False)
    payment_proof_url = sa.Column(sa.String(2048), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = sa.Column(sa.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    # Deadline of the current pending phase; NULL once terminal.
    expires_at = sa.Column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("quantity >= 1", name="ck_transactions_quantity_positive"),
        sa.CheckConstraint("total_amount >= 0", name="ck_transactions_total_non_negative"),
        sa.CheckConstraint("discount_amount >= 0", name="ck_transactions_discount_non_negative"),
        sa.CheckConstraint("points_used >= 0", name="ck_transactions_points_non_negative"),
        sa.Index("ix_transactions_status_expires_at", "status", "expires_at"),
        sa.Index("ix_transactions_status_created_at", "status", "created_at"),
    )


class JobLease(Base):
    __tablename__ = "job_leases"
    name = sa.Column(sa.String(100), primary_key=True)
    holder = sa.Column(sa.String(64), nullable=False)
    expires_at = sa.Column(sa.DateTime(timezone=True), nullable=False)
