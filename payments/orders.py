"""Checkout entry point: turns a buyer's intent into a single Pending order."""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payments.errors import DomainError, GatewayUnavailableError, NotFoundError
from payments.gateway import CreateGatewayOrderRequest, PaymentGateway
from payments.models import (
    Coupon,
    DurationPrice,
    GatewayType,
    Order,
    OrderStatus,
    ProgramDuration,
    User,
)
from payments.pricing import quote
from payments.selector import select_gateway
from payments.state import audit_entry, transition_order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitiateOrderResult:
    order_id: str
    status: str
    gateway: str
    amount: Decimal
    currency: str
    symbol: str
    gateway_order_id: Optional[str]
    payment_session_id: Optional[str]
    approval_url: Optional[str]


def _result_from_order(db: Session, order: Order) -> InitiateOrderResult:
    price = db.get(DurationPrice, order.duration_price_id)
    is_stripe = order.gateway == GatewayType.STRIPE
    return InitiateOrderResult(
        order_id=order.id,
        status=order.status,
        gateway=order.gateway,
        amount=Decimal(order.amount_paid).quantize(Decimal("0.01")),
        currency=order.currency_code,
        symbol=price.currency_symbol if price else "",
        gateway_order_id=order.gateway_order_id,
        payment_session_id=order.gateway_token if is_stripe else None,
        approval_url=order.gateway_token if not is_stripe else None,
    )


def _existing_order(db: Session, idempotency_key: str, user_id: str) -> Optional[Order]:
    existing = db.query(Order).filter_by(idempotency_key=idempotency_key).first()
    if existing and existing.user_id != user_id:
        raise DomainError("Idempotency key has already been used.")
    return existing


def _redeem_coupon(db: Session, coupon: Coupon) -> None:
    """Increment usage in the order's transaction, re-checking the cap in SQL."""
    rows = (
        db.query(Coupon)
        .filter(
            Coupon.id == coupon.id,
            or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
        )
        .update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False)
    )
    if rows == 0:
        raise DomainError(f"Coupon '{coupon.code}' has reached its maximum use limit.")


def initiate_order(
    db: Session,
    gateways: Mapping[str, PaymentGateway],
    user_id: str,
    duration_id: str,
    coupon_code: Optional[str],
    idempotency_key: str,
    default_location: str = "GB",
    now: Optional[datetime] = None,
) -> InitiateOrderResult:
    logger.info("Initiating order for user %s, duration %s", user_id, duration_id)

    existing = _existing_order(db, idempotency_key, user_id)
    if existing:
        logger.info("Idempotent order %s returned for key %s", existing.id, idempotency_key)
        return _result_from_order(db, existing)

    user = db.query(User).filter_by(id=user_id, is_active=True).first()
    if not user:
        raise NotFoundError("User", user_id)
    location_code = (user.country_code or default_location).upper()

    duration = db.query(ProgramDuration).filter_by(id=duration_id, is_active=True).first()
    if not duration:
        raise NotFoundError("ProgramDuration", duration_id)

    priced = quote(db, duration_id, location_code, coupon_code, default_location, now=now)
    gateway = select_gateway(location_code, gateways)

    order = Order(
        user_id=user_id,
        duration_id=duration_id,
        duration_price_id=priced.price.id,
        amount_paid=priced.amount_due,
        currency_code=priced.price.currency_code,
        location_code=location_code,
        coupon_id=priced.coupon.id if priced.coupon else None,
        discount_amount=priced.discount_amount,
        status=OrderStatus.PENDING,
        gateway=gateway.gateway_type,
        idempotency_key=idempotency_key,
    )
    db.add(order)
    try:
        db.flush()
        effects = [
            audit_entry(
                "order",
                order.id,
                "order.created",
                user_id,
                amount=str(priced.amount_due),
                currency=priced.price.currency_code,
                gateway=gateway.gateway_type,
            )
        ]
        if priced.coupon:
            _redeem_coupon(db, priced.coupon)
            effects.append(
                audit_entry(
                    "coupon",
                    priced.coupon.id,
                    "coupon.redeemed",
                    user_id,
                    order_id=order.id,
                    discount=str(priced.discount_amount),
                )
            )
        db.add_all(effects)
        db.commit()
    except IntegrityError:
        # A concurrent request with the same key won the unique constraint
        db.rollback()
        existing = _existing_order(db, idempotency_key, user_id)
        if existing is None:
            raise
        logger.info("Idempotency race on key %s resolved to order %s", idempotency_key, existing.id)
        return _result_from_order(db, existing)
    except DomainError:
        db.rollback()
        raise

    request = CreateGatewayOrderRequest(
        internal_order_id=order.id,
        amount=priced.amount_due,
        currency_code=priced.price.currency_code,
        customer_email=user.email,
        customer_name=f"{user.first_name} {user.last_name}".strip(),
        customer_phone=user.full_mobile,
    )
    try:
        created = gateway.create_order(request)
    except Exception as exc:
        logger.exception("Gateway %s failed to create order %s", gateway.gateway_type, order.id)
        effects = transition_order(
            db,
            order,
            OrderStatus.FAILED,
            actor=user_id,
            details={"reason": "gateway_create_failed"},
            failure_reason=str(exc)[:500],
        )
        db.add_all(effects)
        db.commit()
        raise GatewayUnavailableError("Payment gateway is unavailable. Please try again shortly.") from exc

    order.gateway_order_id = created.gateway_order_id
    order.gateway_token = created.payment_session_id or created.approval_url
    db.add(
        audit_entry(
            "order",
            order.id,
            "order.gateway_created",
            user_id,
            gateway_order_id=created.gateway_order_id,
        )
    )
    db.commit()

    logger.info("Order %s created via %s", order.id, gateway.gateway_type)
    return _result_from_order(db, order)


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def list_orders_for_user(db: Session, user_id: str) -> list[Order]:
    return db.query(Order).filter_by(user_id=user_id).order_by(Order.created_at.desc()).all()
