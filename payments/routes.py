import uuid
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, field_validator

from payments.auth import CurrentUser, require_admin, verify_token
from payments.config import settings
from payments.database import SessionLocal
from payments.errors import ForbiddenError
from payments.orders import get_order, initiate_order, list_orders_for_user
from payments.refunds import initiate_refund
from payments.selector import gateways

router = APIRouter(prefix="/orders")


class InitiateOrderRequest(BaseModel):
    duration_id: str
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    idempotency_key: str

    @field_validator("idempotency_key")
    @classmethod
    def must_be_uuid(cls, value: str) -> str:
        try:
            uuid.UUID(value)
        except ValueError:
            raise ValueError("idempotency_key must be a valid UUID")
        return value


class InitiateOrderResponse(BaseModel):
    order_id: str
    status: str
    gateway: str
    amount: Decimal
    currency: str
    symbol: str
    gateway_order_id: Optional[str]
    payment_session_id: Optional[str]
    approval_url: Optional[str]


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)


class OrderResponse(BaseModel):
    order_id: str
    user_id: str
    duration_id: str
    amount_paid: Decimal
    currency_code: str
    location_code: str
    discount_amount: Decimal
    status: str
    gateway: str
    gateway_order_id: Optional[str]
    failure_reason: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        return cls(
            order_id=order.id,
            user_id=order.user_id,
            duration_id=order.duration_id,
            amount_paid=order.amount_paid,
            currency_code=order.currency_code,
            location_code=order.location_code,
            discount_amount=order.discount_amount,
            status=order.status,
            gateway=order.gateway,
            gateway_order_id=order.gateway_order_id,
            failure_reason=order.failure_reason,
            created_at=order.created_at,
        )


@router.post("/initiate", status_code=201, response_model=InitiateOrderResponse)
def initiate_order_api(request: InitiateOrderRequest, user: CurrentUser = Depends(verify_token)):
    db = SessionLocal()
    try:
        result = initiate_order(
            db,
            gateways,
            user_id=user.user_id,
            duration_id=request.duration_id,
            coupon_code=request.coupon_code,
            idempotency_key=request.idempotency_key,
            default_location=settings.default_location_code,
        )
    finally:
        db.close()
    return InitiateOrderResponse(**asdict(result))


@router.get("/my", response_model=list[OrderResponse])
def my_orders(user: CurrentUser = Depends(verify_token)):
    db = SessionLocal()
    try:
        return [OrderResponse.from_order(o) for o in list_orders_for_user(db, user.user_id)]
    finally:
        db.close()


@router.get("/{order_id}", response_model=OrderResponse)
def order_detail(order_id: str, user: CurrentUser = Depends(verify_token)):
    db = SessionLocal()
    try:
        order = get_order(db, order_id)
        if order.user_id != user.user_id and not user.is_admin:
            raise ForbiddenError("You do not have access to this order.")
        return OrderResponse.from_order(order)
    finally:
        db.close()


@router.post("/{order_id}/refund", status_code=204)
def refund_order(order_id: str, request: RefundRequest, admin: CurrentUser = Depends(require_admin)):
    db = SessionLocal()
    try:
        initiate_refund(db, gateways, order_id, request.amount, request.reason, admin.user_id)
    finally:
        db.close()
    return Response(status_code=204)
