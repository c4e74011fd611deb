"""Order lifecycle transitions.

``pending -> paid | failed`` and ``paid -> refunded``; failed and refunded
are terminal. A transition is applied with a conditional UPDATE guarded by
the expected source status, so concurrent webhook deliveries handled by
different processes cannot both apply it. Each transition returns the audit
rows describing it; the caller adds them to the same session and commits
them together with the mutation.
"""
import logging

from sqlalchemy.orm import Session

from payments.models import AuditLog, Order, OrderStatus, utcnow

logger = logging.getLogger(__name__)

ALLOWED_SOURCES = {
    OrderStatus.PAID: (OrderStatus.PENDING,),
    OrderStatus.FAILED: (OrderStatus.PENDING,),
    OrderStatus.REFUNDED: (OrderStatus.PAID,),
}

TERMINAL_STATUSES = (OrderStatus.FAILED, OrderStatus.REFUNDED)


def audit_entry(entity_type: str, entity_id: str, action: str, actor: str | None = None, **details) -> AuditLog:
    return AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor=actor,
        details=details or None,
    )


def transition_order(
    db: Session,
    order: Order,
    new_status: str,
    actor: str | None = None,
    details: dict | None = None,
    **changes,
) -> list[AuditLog]:
    """Move ``order`` to ``new_status`` and apply ``changes`` in the same UPDATE.

    Returns an empty list when the order is not in a source state allowed for
    ``new_status`` (already transitioned, or terminal); the order is left
    untouched in that case. ``order`` is refreshed from the database either way.
    """
    sources = ALLOWED_SOURCES[new_status]
    previous = order.status

    values = dict(changes)
    values["status"] = new_status
    values["updated_at"] = utcnow()

    rows = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status.in_(sources))
        .update(values, synchronize_session=False)
    )
    db.refresh(order)

    if rows == 0:
        logger.info(
            "Order %s not moved to %s: current status is %s", order.id, new_status, order.status
        )
        return []

    logger.info("Order %s moved %s -> %s", order.id, previous, new_status)
    return [
        audit_entry(
            "order",
            order.id,
            f"order.{new_status}",
            actor,
            from_status=previous,
            to_status=new_status,
            **(details or {}),
        )
    ]
