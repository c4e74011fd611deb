import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from payments.database import Base

# Refunds discovered only through a provider webhook (dashboard refunds)
EXTERNAL_INITIATOR = "external"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GatewayType:
    STRIPE = "STRIPE"
    PAYPAL = "PAYPAL"


class DiscountType:
    PERCENTAGE = "percentage"
    FLAT = "flat"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, nullable=False)
    first_name = Column(String, default="")
    last_name = Column(String, default="")
    full_mobile = Column(String, nullable=True)
    country_code = Column(String(2), nullable=True)  # drives price + gateway selection
    role = Column(String, default="user")              # user | expert | admin
    is_active = Column(Boolean, default=True)


class Program(Base):
    __tablename__ = "programs"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    expert_id = Column(String(36), nullable=False)


class ProgramDuration(Base):
    __tablename__ = "program_durations"

    id = Column(String(36), primary_key=True, default=new_id)
    program_id = Column(String(36), ForeignKey("programs.id"), nullable=False)
    label = Column(String, default="")
    is_active = Column(Boolean, default=True)


class DurationPrice(Base):
    __tablename__ = "duration_prices"
    __table_args__ = (
        # at most one active price per (duration, location)
        Index(
            "uq_duration_prices_active_location",
            "duration_id",
            "location_code",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    duration_id = Column(String(36), ForeignKey("program_durations.id"), nullable=False)
    location_code = Column(String(2), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)
    currency_symbol = Column(String(8), default="")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(50), unique=True, nullable=False)
    discount_type = Column(String, nullable=False)       # percentage | flat
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_order_amount = Column(Numeric(10, 2), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    duration_id = Column(String(36), ForeignKey("program_durations.id"), nullable=False)
    duration_price_id = Column(String(36), ForeignKey("duration_prices.id"), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)
    location_code = Column(String(2), nullable=False)
    coupon_id = Column(String(36), ForeignKey("coupons.id"), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default=OrderStatus.PENDING)  # pending | paid | failed | refunded
    gateway = Column(String, nullable=False)                               # STRIPE | PAYPAL
    idempotency_key = Column(String, unique=True, nullable=False, index=True)
    gateway_order_id = Column(String, nullable=True, index=True)
    gateway_payment_id = Column(String, nullable=True, index=True)         # PaymentIntent / capture id
    gateway_token = Column(String, nullable=True)                          # session token or approval URL
    gateway_response = Column(Text, nullable=True)                         # raw webhook payload
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    refunds = relationship(
        "Refund",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="Refund.created_at",
    )


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(String, nullable=True)
    gateway_refund_id = Column(String, unique=True, nullable=True)
    status = Column(String, nullable=False, default=RefundStatus.PENDING)  # pending | completed | failed
    initiated_by = Column(String(36), nullable=False)                      # admin id or EXTERNAL_INITIATOR
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="refunds")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String(36), nullable=False, index=True)
    action = Column(String, nullable=False)
    actor = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
