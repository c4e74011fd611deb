"""Applies verified gateway webhook events to stored orders.

Deliveries are at-least-once and unordered, so every branch is safe to run
twice: transitions only apply from their expected source status, refunds are
keyed by the gateway refund id, and an order is never created from a webhook.
Anything except a failed signature check is logged and swallowed so the
provider does not keep redelivering.
"""
import json
import logging
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from payments.errors import AuthenticationError
from payments.events import (
    ApprovalNeedsCapture,
    DisputeOpened,
    GatewayEvent,
    PaymentDenied,
    PaymentRefunded,
    PaymentSucceeded,
    Unrecognized,
)
from payments.gateway import PaymentGateway
from payments.models import EXTERNAL_INITIATOR, Order, OrderStatus, Refund, RefundStatus
from payments.notifier import Notifier, OrderFailed, build_paid_signal, emit
from payments.state import audit_entry, transition_order

logger = logging.getLogger(__name__)


class WebhookReconciler:
    def __init__(self, gateway: PaymentGateway, notifier: Notifier):
        self.gateway = gateway
        self.notifier = notifier

    @property
    def actor(self) -> str:
        return f"gateway:{self.gateway.gateway_type}"

    def handle(self, db: Session, raw_payload: bytes, headers: Mapping[str, str]) -> Optional[GatewayEvent]:
        """Verify, classify and apply one delivery.

        Raises AuthenticationError when the signature does not verify; that is
        the only failure surfaced to the caller.
        """
        name = self.gateway.gateway_type
        if not self.gateway.verify_webhook_signature(raw_payload, headers):
            logger.warning("%s webhook signature verification failed", name)
            raise AuthenticationError(f"Invalid {name} webhook signature.")

        try:
            payload = json.loads(raw_payload)
        except ValueError:
            logger.warning("%s webhook body is not valid JSON; ignored", name)
            return None

        try:
            event = self.gateway.parse_event(payload)
        except Exception:
            logger.exception("%s webhook payload could not be classified; ignored", name)
            return Unrecognized(self._event_type(payload), "payload could not be parsed")
        logger.info("%s webhook %s classified as %s", name, event.event_type, type(event).__name__)

        raw_text = raw_payload.decode("utf-8", errors="replace")
        try:
            signals = self._apply(db, event, raw_text)
        except Exception:
            db.rollback()
            logger.exception("%s webhook %s could not be applied; ignored", name, event.event_type)
            return event

        for signal in signals:
            emit(self.notifier, signal)
        return event

    @staticmethod
    def _event_type(payload) -> str:
        if not isinstance(payload, dict):
            return ""
        return str(payload.get("type") or payload.get("event_type") or "")

    def _apply(self, db: Session, event: GatewayEvent, raw_text: str) -> list:
        if isinstance(event, ApprovalNeedsCapture):
            return self._capture(event)
        if isinstance(event, PaymentSucceeded):
            return self._mark_paid(db, event, raw_text)
        if isinstance(event, PaymentDenied):
            return self._mark_failed(db, event, raw_text)
        if isinstance(event, PaymentRefunded):
            return self._record_refund(db, event)
        if isinstance(event, DisputeOpened):
            return self._alert_dispute(db, event)
        if isinstance(event, Unrecognized):
            logger.info(
                "%s event '%s' ignored: %s", self.gateway.gateway_type, event.event_type, event.note
            )
        return []

    def _find_order(self, db: Session, order_id: str, event_type: str) -> Optional[Order]:
        order = db.get(Order, order_id)
        if order is None:
            logger.warning("%s: order %s not found; ignored", event_type, order_id)
            return None
        if order.gateway != self.gateway.gateway_type:
            logger.warning(
                "%s: order %s belongs to %s, not %s; ignored",
                event_type, order_id, order.gateway, self.gateway.gateway_type,
            )
            return None
        return order

    def _capture(self, event: ApprovalNeedsCapture) -> list:
        # State changes wait for the completed-capture event that follows
        capture_id = self.gateway.capture_order(event.gateway_order_id)
        logger.info("Captured gateway order %s (capture %s)", event.gateway_order_id, capture_id)
        return []

    def _mark_paid(self, db: Session, event: PaymentSucceeded, raw_text: str) -> list:
        order = self._find_order(db, event.order_id, event.event_type)
        if order is None:
            return []
        if order.status == OrderStatus.PAID:
            logger.info("Order %s already marked Paid; skipping duplicate webhook", order.id)
            return []

        effects = transition_order(
            db,
            order,
            OrderStatus.PAID,
            actor=self.actor,
            details={"event_type": event.event_type, "capture_id": event.capture_id},
            gateway_payment_id=event.capture_id,
            gateway_response=raw_text,
        )
        if not effects:
            if order.status != OrderStatus.PAID:
                logger.error(
                    "Payment %s captured for order %s which is already %s; manual refund required",
                    event.capture_id, order.id, order.status,
                )
                db.add(
                    audit_entry(
                        "order",
                        order.id,
                        "order.paid_after_terminal",
                        self.actor,
                        status=order.status,
                        capture_id=event.capture_id,
                    )
                )
                db.commit()
            return []

        db.add_all(effects)
        db.commit()
        logger.info("Order %s marked as Paid (%s)", order.id, self.gateway.gateway_type)

        signal = build_paid_signal(db, order)
        return [signal] if signal else []

    def _mark_failed(self, db: Session, event: PaymentDenied, raw_text: str) -> list:
        order = self._find_order(db, event.order_id, event.event_type)
        if order is None:
            return []
        if order.status == OrderStatus.FAILED:
            logger.info("Order %s already marked Failed; skipping duplicate webhook", order.id)
            return []

        effects = transition_order(
            db,
            order,
            OrderStatus.FAILED,
            actor=self.actor,
            details={"event_type": event.event_type},
            failure_reason=event.reason,
            gateway_response=raw_text,
        )
        if not effects:
            logger.info("Denial for order %s ignored: order is already %s", order.id, order.status)
            return []

        db.add_all(effects)
        db.commit()
        logger.info("Order %s marked as Failed: %s", order.id, event.reason)
        return [OrderFailed(order_id=order.id, user_id=order.user_id)]

    def _record_refund(self, db: Session, event: PaymentRefunded) -> list:
        existing = db.query(Refund).filter_by(gateway_refund_id=event.refund_id).first()
        if existing:
            self._check_confirmed_amount(db, existing, event)
            return []

        order = (
            db.query(Order)
            .filter_by(gateway_payment_id=event.capture_id, gateway=self.gateway.gateway_type)
            .first()
        )
        if order is None:
            logger.warning(
                "%s: no order with payment %s for refund %s; ignored",
                event.event_type, event.capture_id, event.refund_id,
            )
            return []

        amount = event.amount if event.amount is not None else Decimal(order.amount_paid)
        pending = next(
            (
                r for r in order.refunds
                if r.status == RefundStatus.PENDING
                and r.gateway_refund_id is None
                and Decimal(r.amount) == amount
            ),
            None,
        )
        if pending:
            # The admin refund call has not recorded its result yet
            pending.gateway_refund_id = event.refund_id
            pending.status = RefundStatus.COMPLETED
            refund = pending
            action = "refund.confirmed"
        else:
            refund = Refund(
                order_id=order.id,
                amount=amount,
                reason=f"Refunded outside this system ({event.event_type})",
                gateway_refund_id=event.refund_id,
                status=RefundStatus.COMPLETED,
                initiated_by=EXTERNAL_INITIATOR,
            )
            db.add(refund)
            action = "refund.external_recorded"
        db.flush()

        effects = [
            audit_entry(
                "refund",
                refund.id,
                action,
                self.actor,
                order_id=order.id,
                gateway_refund_id=event.refund_id,
                amount=str(amount),
            )
        ]
        if order.status == OrderStatus.PAID:
            effects += transition_order(
                db, order, OrderStatus.REFUNDED, actor=self.actor, details={"refund_id": refund.id}
            )
        elif order.status != OrderStatus.REFUNDED:
            logger.warning("Refund %s recorded for order %s in status %s", refund.id, order.id, order.status)

        db.add_all(effects)
        db.commit()
        logger.info("Refund %s (%s) recorded for order %s", refund.id, event.refund_id, order.id)
        return []

    def _check_confirmed_amount(self, db: Session, refund: Refund, event: PaymentRefunded) -> None:
        if event.amount is None or Decimal(refund.amount) == event.amount:
            logger.info("Refund %s already recorded; webhook is a confirmation", event.refund_id)
            return
        logger.warning(
            "Refund %s amount mismatch: recorded %s, gateway reports %s; keeping recorded amount",
            event.refund_id, refund.amount, event.amount,
        )
        db.add(
            audit_entry(
                "refund",
                refund.id,
                "refund.amount_mismatch",
                self.actor,
                recorded=str(refund.amount),
                reported=str(event.amount),
            )
        )
        db.commit()

    def _alert_dispute(self, db: Session, event: DisputeOpened) -> list:
        order = None
        if event.capture_id:
            order = (
                db.query(Order)
                .filter_by(gateway_payment_id=event.capture_id, gateway=self.gateway.gateway_type)
                .first()
            )
        logger.critical(
            "DISPUTE OPENED on %s: dispute=%s order=%s payment=%s amount=%s reason=%s respond_by=%s",
            self.gateway.gateway_type,
            event.dispute_id,
            order.id if order else None,
            event.capture_id,
            event.amount,
            event.reason,
            event.respond_by.isoformat() if event.respond_by else "see provider dashboard",
        )
        if order is not None:
            db.add(
                audit_entry(
                    "order",
                    order.id,
                    "order.dispute_opened",
                    self.actor,
                    dispute_id=event.dispute_id,
                    reason=event.reason,
                )
            )
            db.commit()
        return []
