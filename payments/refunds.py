import logging
from decimal import Decimal
from typing import Mapping

from sqlalchemy.orm import Session

from payments.errors import DomainError, NotFoundError
from payments.gateway import GatewayRefundRequest, GatewayRefundResult, PaymentGateway
from payments.models import Order, OrderStatus, Refund, RefundStatus
from payments.selector import gateway_by_type
from payments.state import audit_entry, transition_order

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Pending refunds hold their amount until the gateway answers
RESERVED_STATUSES = (RefundStatus.PENDING, RefundStatus.COMPLETED)


def refundable_amount(order: Order) -> Decimal:
    """Amount paid minus completed refunds and refunds still in flight."""
    refunded = sum(
        (Decimal(r.amount) for r in order.refunds if r.status in RESERVED_STATUSES),
        Decimal("0"),
    )
    return Decimal(order.amount_paid) - refunded


def initiate_refund(
    db: Session,
    gateways: Mapping[str, PaymentGateway],
    order_id: str,
    amount: Decimal,
    reason: str,
    admin_id: str,
) -> Refund:
    """Refund a Paid order through its gateway.

    The amount is checked against what is still refundable before the gateway
    is called. On gateway failure the refund is stored as Failed, the order
    stays Paid so the refund can be retried, and a DomainError carries the
    gateway's reason.
    """
    logger.info("Initiating refund for order %s, amount %s", order_id, amount)

    # Row lock serialises concurrent refunds of the same order where the database supports it
    order = db.query(Order).filter_by(id=order_id).with_for_update().first()
    if order is None:
        raise NotFoundError("Order", order_id)
    if order.status != OrderStatus.PAID:
        raise DomainError(f"Only paid orders can be refunded. Current status: {order.status}.")

    amount = Decimal(amount).quantize(CENT)
    if amount <= 0:
        raise DomainError("Refund amount must be greater than zero.")
    available = refundable_amount(order)
    if amount > available:
        raise DomainError(f"Refund amount {amount} exceeds the refundable balance of {available}.")

    refund = Refund(
        order_id=order.id,
        amount=amount,
        reason=reason,
        status=RefundStatus.PENDING,
        initiated_by=admin_id,
    )
    db.add(refund)
    db.flush()
    db.add(audit_entry("refund", refund.id, "refund.requested", admin_id, order_id=order.id, amount=str(amount)))
    db.commit()

    gateway = gateway_by_type(order.gateway, gateways)
    request = GatewayRefundRequest(
        gateway_order_id=order.gateway_order_id or "",
        gateway_payment_id=order.gateway_payment_id,
        internal_refund_id=refund.id,
        amount=amount,
        currency_code=order.currency_code,
        reason=reason,
    )
    try:
        result = gateway.refund(request)
    except Exception as exc:
        logger.exception("Gateway %s raised while refunding %s", order.gateway, refund.id)
        result = GatewayRefundResult(success=False, failure_reason=str(exc))

    if result.success:
        refund.gateway_refund_id = result.gateway_refund_id
        refund.status = RefundStatus.COMPLETED
        effects = [
            audit_entry(
                "refund",
                refund.id,
                "refund.completed",
                admin_id,
                gateway_refund_id=result.gateway_refund_id,
            )
        ]
        effects += transition_order(
            db, order, OrderStatus.REFUNDED, actor=admin_id, details={"refund_id": refund.id}
        )
        db.add_all(effects)
        db.commit()
        logger.info("Refund %s completed for order %s", refund.id, order.id)
        return refund

    refund.status = RefundStatus.FAILED
    refund.gateway_refund_id = result.gateway_refund_id
    refund.failure_reason = (result.failure_reason or "unknown")[:500]
    db.add(audit_entry("refund", refund.id, "refund.failed", admin_id, reason=refund.failure_reason))
    db.commit()
    logger.error("Refund %s failed for order %s: %s", refund.id, order.id, result.failure_reason)
    raise DomainError(f"Gateway refund failed: {result.failure_reason}")
