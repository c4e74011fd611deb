import json
import uuid
from decimal import Decimal

import pytest

from payments.errors import AuthenticationError
from payments.events import ApprovalNeedsCapture, DisputeOpened, PaymentSucceeded, Unrecognized
from payments.models import (
    EXTERNAL_INITIATOR,
    AuditLog,
    GatewayType,
    Order,
    OrderStatus,
    Refund,
    RefundStatus,
)
from payments.notifier import Notifier
from payments.orders import initiate_order
from payments.webhooks import WebhookReconciler


def paypal_body(event_type, resource):
    return json.dumps({"id": f"WH-{uuid.uuid4()}", "event_type": event_type, "resource": resource}).encode()


def captured(order_id, capture_id="CAP-1"):
    return paypal_body("PAYMENT.CAPTURE.COMPLETED", {"id": capture_id, "custom_id": order_id})


def denied(order_id):
    return paypal_body("PAYMENT.CAPTURE.DENIED", {"id": "CAP-X", "custom_id": order_id})


def refunded(refund_id, capture_id="CAP-1", amount="256.00"):
    return paypal_body(
        "PAYMENT.CAPTURE.REFUNDED",
        {
            "id": refund_id,
            "amount": {"value": amount, "currency_code": "GBP"},
            "links": [{"rel": "up", "href": f"https://api.paypal.test/v2/payments/captures/{capture_id}"}],
        },
    )


@pytest.fixture
def reconciler(gateways, notifier):
    return WebhookReconciler(gateways[GatewayType.PAYPAL], notifier)


@pytest.fixture
def order_id(db, gateways, catalog):
    result = initiate_order(
        db,
        gateways,
        user_id=catalog.buyer_id,
        duration_id=catalog.duration_id,
        coupon_code="SAVE20",
        idempotency_key=str(uuid.uuid4()),
    )
    return result.order_id


def order_in(db, order_id):
    db.expire_all()
    return db.get(Order, order_id)


def test_bad_signature_is_rejected_without_changes(db, reconciler, gateways, notifier, order_id):
    gateways[GatewayType.PAYPAL].verify_result = False

    with pytest.raises(AuthenticationError):
        reconciler.handle(db, captured(order_id), {})

    assert order_in(db, order_id).status == OrderStatus.PENDING
    assert notifier.paid == []


def test_completed_capture_marks_order_paid(db, reconciler, notifier, order_id, catalog):
    event = reconciler.handle(db, captured(order_id), {})

    assert isinstance(event, PaymentSucceeded)
    order = order_in(db, order_id)
    assert order.status == OrderStatus.PAID
    assert order.gateway_payment_id == "CAP-1"
    assert "PAYMENT.CAPTURE.COMPLETED" in order.gateway_response

    assert len(notifier.paid) == 1
    signal = notifier.paid[0]
    assert signal.order_id == order_id
    assert signal.program_id == catalog.program_id
    assert signal.expert_id == catalog.expert_id


def test_replayed_capture_is_a_no_op(db, reconciler, notifier, order_id):
    reconciler.handle(db, captured(order_id), {})
    reconciler.handle(db, captured(order_id), {})

    assert order_in(db, order_id).status == OrderStatus.PAID
    assert len(notifier.paid) == 1
    assert db.query(AuditLog).filter_by(entity_id=order_id, action="order.paid").count() == 1


def test_denial_marks_order_failed(db, reconciler, notifier, order_id):
    reconciler.handle(db, denied(order_id), {})

    order = order_in(db, order_id)
    assert order.status == OrderStatus.FAILED
    assert order.failure_reason == "PAYMENT.CAPTURE.DENIED"
    assert [s.order_id for s in notifier.failed] == [order_id]


def test_capture_after_denial_does_not_resurrect_order(db, reconciler, notifier, order_id):
    reconciler.handle(db, denied(order_id), {})
    reconciler.handle(db, captured(order_id), {})

    assert order_in(db, order_id).status == OrderStatus.FAILED
    assert notifier.paid == []
    assert db.query(AuditLog).filter_by(entity_id=order_id, action="order.paid_after_terminal").count() == 1


def test_denial_after_capture_keeps_order_paid(db, reconciler, notifier, order_id):
    reconciler.handle(db, captured(order_id), {})
    reconciler.handle(db, denied(order_id), {})

    assert order_in(db, order_id).status == OrderStatus.PAID
    assert notifier.failed == []


def test_unknown_order_is_ignored(db, reconciler, notifier, catalog):
    reconciler.handle(db, captured("no-such-order"), {})

    assert db.query(Order).count() == 0
    assert notifier.paid == []


def test_event_for_other_gateway_order_is_ignored(db, gateways, notifier, order_id):
    stripe_reconciler = WebhookReconciler(gateways[GatewayType.STRIPE], notifier)
    body = json.dumps(
        {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_9", "metadata": {"order_id": order_id}}},
        }
    ).encode()

    stripe_reconciler.handle(db, body, {})

    assert order_in(db, order_id).status == OrderStatus.PENDING


def test_unrecognized_event_changes_nothing(db, reconciler, notifier, order_id):
    audits_before = db.query(AuditLog).count()

    event = reconciler.handle(db, paypal_body("BILLING.PLAN.CREATED", {"id": "P-1"}), {})

    assert isinstance(event, Unrecognized)
    assert db.query(AuditLog).count() == audits_before
    assert order_in(db, order_id).status == OrderStatus.PENDING


def test_malformed_body_is_ignored(db, reconciler, order_id):
    assert reconciler.handle(db, b"{not json", {}) is None
    assert order_in(db, order_id).status == OrderStatus.PENDING


def test_approval_triggers_capture_only(db, reconciler, gateways, notifier, order_id):
    gateway_order_id = order_in(db, order_id).gateway_order_id

    event = reconciler.handle(db, paypal_body("CHECKOUT.ORDER.APPROVED", {"id": gateway_order_id}), {})

    assert isinstance(event, ApprovalNeedsCapture)
    assert gateways[GatewayType.PAYPAL].captured == [gateway_order_id]
    assert order_in(db, order_id).status == OrderStatus.PENDING
    assert notifier.paid == []


def test_external_refund_is_recorded(db, reconciler, order_id):
    reconciler.handle(db, captured(order_id), {})

    reconciler.handle(db, refunded("RF-1"), {})

    assert order_in(db, order_id).status == OrderStatus.REFUNDED
    refund = db.query(Refund).one()
    assert refund.gateway_refund_id == "RF-1"
    assert refund.status == RefundStatus.COMPLETED
    assert refund.initiated_by == EXTERNAL_INITIATOR
    assert refund.amount == Decimal("256.00")


def test_refund_webhook_for_known_refund_is_a_no_op(db, reconciler, order_id):
    reconciler.handle(db, captured(order_id), {})
    reconciler.handle(db, refunded("RF-1"), {})
    audits = db.query(AuditLog).count()

    reconciler.handle(db, refunded("RF-1"), {})

    assert db.query(Refund).count() == 1
    assert db.query(AuditLog).count() == audits


def test_refund_amount_mismatch_is_audited(db, reconciler, order_id):
    reconciler.handle(db, captured(order_id), {})
    reconciler.handle(db, refunded("RF-1"), {})

    reconciler.handle(db, refunded("RF-1", amount="100.00"), {})

    refund = db.query(Refund).one()
    assert refund.amount == Decimal("256.00")
    assert db.query(AuditLog).filter_by(action="refund.amount_mismatch").count() == 1


def test_refund_webhook_confirms_pending_admin_refund(db, reconciler, order_id):
    reconciler.handle(db, captured(order_id), {})
    db.add(Refund(order_id=order_id, amount=Decimal("256.00"), reason="duplicate purchase",
                  status=RefundStatus.PENDING, initiated_by="admin-1"))
    db.commit()

    reconciler.handle(db, refunded("RF-7"), {})

    refund = db.query(Refund).one()
    assert refund.initiated_by == "admin-1"
    assert refund.gateway_refund_id == "RF-7"
    assert refund.status == RefundStatus.COMPLETED
    assert order_in(db, order_id).status == OrderStatus.REFUNDED


def test_dispute_is_alerted_without_state_change(db, reconciler, order_id, caplog):
    reconciler.handle(db, captured(order_id), {})
    body = paypal_body(
        "CUSTOMER.DISPUTE.CREATED",
        {
            "dispute_id": "PP-D-1",
            "reason": "MERCHANDISE_OR_SERVICE_NOT_RECEIVED",
            "dispute_amount": {"value": "256.00", "currency_code": "GBP"},
            "disputed_transactions": [{"seller_transaction_id": "CAP-1"}],
        },
    )

    with caplog.at_level("CRITICAL"):
        reconciler.handle(db, body, {})

    assert order_in(db, order_id).status == OrderStatus.PAID
    assert "PP-D-1" in caplog.text
    assert db.query(AuditLog).filter_by(action="order.dispute_opened").count() == 1


def test_failing_notifier_does_not_affect_order(db, gateways, order_id, mocker):
    notifier = mocker.Mock()
    notifier.order_paid.side_effect = RuntimeError("smtp down")
    reconciler = WebhookReconciler(gateways[GatewayType.PAYPAL], notifier)

    reconciler.handle(db, captured(order_id), {})

    assert notifier.order_paid.call_count == 1
    assert order_in(db, order_id).status == OrderStatus.PAID


def test_dispute_with_malformed_transactions_is_still_alerted(db, reconciler, order_id, caplog):
    reconciler.handle(db, captured(order_id), {})
    body = paypal_body(
        "CUSTOMER.DISPUTE.CREATED",
        {"dispute_id": "PP-D-2", "disputed_transactions": {"x": 1}},
    )

    with caplog.at_level("CRITICAL"):
        event = reconciler.handle(db, body, {})

    assert isinstance(event, DisputeOpened)
    assert event.capture_id is None
    assert "PP-D-2" in caplog.text
    assert order_in(db, order_id).status == OrderStatus.PAID


def test_parser_error_is_swallowed(db, reconciler, gateways, notifier, order_id, mocker):
    mocker.patch.object(gateways[GatewayType.PAYPAL], "parse_event", side_effect=KeyError(0))

    event = reconciler.handle(db, captured(order_id), {})

    assert isinstance(event, Unrecognized)
    assert event.event_type == "PAYMENT.CAPTURE.COMPLETED"
    assert order_in(db, order_id).status == OrderStatus.PENDING
    assert notifier.paid == []


def test_dispute_for_other_gateway_payment_is_not_audited(db, reconciler, gateways, notifier, order_id):
    reconciler.handle(db, captured(order_id), {})
    stripe_reconciler = WebhookReconciler(gateways[GatewayType.STRIPE], notifier)
    body = json.dumps(
        {"type": "charge.dispute.created", "data": {"object": {"id": "dp_1", "payment_intent": "CAP-1"}}}
    ).encode()

    stripe_reconciler.handle(db, body, {})

    assert db.query(AuditLog).filter_by(action="order.dispute_opened").count() == 0


def test_notifier_contract_is_abstract():
    with pytest.raises(TypeError):
        Notifier()
