import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Mapping, Optional

import stripe

from payments.errors import GatewayError
from payments.events import (
    DisputeOpened,
    GatewayEvent,
    PaymentDenied,
    PaymentRefunded,
    PaymentSucceeded,
    Unrecognized,
)
from payments.gateway import (
    CreateGatewayOrderRequest,
    GatewayCreateOrderResult,
    GatewayRefundRequest,
    GatewayRefundResult,
    PaymentGateway,
)
from payments.models import GatewayType

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value, currency: Optional[str]) -> Optional[Decimal]:
    try:
        minor = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return minor
    return (minor / 100).quantize(Decimal("0.01"))


def _metadata(obj: dict) -> dict:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _timestamp(value) -> Optional[datetime]:
    if not isinstance(value, int) or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_stripe_event(payload: dict) -> GatewayEvent:
    """Translate a Stripe event body into a provider-neutral event."""
    if not isinstance(payload, dict):
        return Unrecognized("", "payload is not an object")

    event_type = payload.get("type") or ""
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        return Unrecognized(event_type, "data.object missing")

    if event_type == "payment_intent.succeeded":
        order_id = _metadata(obj).get("order_id")
        intent_id = obj.get("id")
        if not order_id or not intent_id:
            return Unrecognized(event_type, "metadata.order_id or intent id missing")
        return PaymentSucceeded(event_type, order_id=order_id, capture_id=intent_id)

    if event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        order_id = _metadata(obj).get("order_id")
        if not order_id:
            return Unrecognized(event_type, "metadata.order_id missing")
        return PaymentDenied(event_type, order_id=order_id, reason=event_type)

    if event_type in ("refund.created", "refund.updated"):
        if obj.get("status") != "succeeded":
            return Unrecognized(event_type, f"refund status {obj.get('status')!r}")
        return _refunded(event_type, obj, obj.get("payment_intent"))

    if event_type == "charge.refunded":
        refunds = obj.get("refunds")
        items = refunds.get("data") if isinstance(refunds, dict) else None
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            return Unrecognized(event_type, "refund list not expanded")
        refund = dict(items[0])
        refund.setdefault("currency", obj.get("currency"))
        return _refunded(event_type, refund, obj.get("payment_intent"))

    if event_type == "charge.dispute.created":
        dispute_id = obj.get("id")
        if not dispute_id:
            return Unrecognized(event_type, "dispute id missing")
        evidence = obj.get("evidence_details")
        due_by = evidence.get("due_by") if isinstance(evidence, dict) else None
        return DisputeOpened(
            event_type,
            dispute_id=dispute_id,
            capture_id=obj.get("payment_intent"),
            amount=from_minor_units(obj.get("amount"), obj.get("currency")),
            reason=obj.get("reason"),
            respond_by=_timestamp(due_by),
        )

    return Unrecognized(event_type)


def _refunded(event_type: str, refund: dict, payment_intent) -> GatewayEvent:
    refund_id = refund.get("id")
    if not refund_id or not payment_intent:
        return Unrecognized(event_type, "refund id or payment_intent missing")
    return PaymentRefunded(
        event_type,
        refund_id=refund_id,
        capture_id=payment_intent,
        amount=from_minor_units(refund.get("amount"), refund.get("currency")),
    )


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents. Payments are captured automatically."""

    gateway_type = GatewayType.STRIPE
    parse_event = staticmethod(parse_stripe_event)

    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def create_order(self, request: CreateGatewayOrderRequest) -> GatewayCreateOrderResult:
        logger.info("Stripe: creating PaymentIntent for order %s", request.internal_order_id)
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(request.amount, request.currency_code),
                currency=request.currency_code.lower(),
                automatic_payment_methods={"enabled": True},
                receipt_email=request.customer_email or None,
                metadata={"order_id": request.internal_order_id},
                idempotency_key=request.internal_order_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent creation failed for order %s: %s", request.internal_order_id, exc)
            raise GatewayError("Stripe", str(exc), getattr(exc, "http_status", None)) from exc

        if not intent.id or not intent.client_secret:
            raise GatewayError("Stripe", "PaymentIntent response missing id or client_secret")

        logger.info("Stripe: PaymentIntent %s created", intent.id)
        return GatewayCreateOrderResult(gateway_order_id=intent.id, payment_session_id=intent.client_secret)

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature or not self.webhook_secret:
            logger.warning("Stripe webhook missing signature header or secret")
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            logger.warning("Stripe webhook signature mismatch")
            return False
        return True

    def capture_order(self, gateway_order_id: str) -> Optional[str]:
        raise NotImplementedError("Stripe PaymentIntents are captured automatically.")

    def refund(self, request: GatewayRefundRequest) -> GatewayRefundResult:
        payment_intent = request.gateway_payment_id or request.gateway_order_id
        if not payment_intent:
            return GatewayRefundResult(success=False, failure_reason="Stripe refund requires a PaymentIntent id.")

        logger.info("Stripe: refunding %s, refund %s", payment_intent, request.internal_refund_id)
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent,
                amount=to_minor_units(request.amount, request.currency_code),
                reason="requested_by_customer",
                metadata={"refund_id": request.internal_refund_id, "note": request.reason[:500]},
                idempotency_key=request.internal_refund_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe refund %s failed: %s", request.internal_refund_id, exc)
            return GatewayRefundResult(success=False, failure_reason=f"Stripe refund failed: {exc}")

        if refund.status in ("failed", "canceled"):
            return GatewayRefundResult(
                success=False,
                gateway_refund_id=refund.id,
                failure_reason=f"Stripe refund {refund.status}",
            )

        logger.info("Stripe: refund %s accepted (%s)", refund.id, refund.status)
        return GatewayRefundResult(success=True, gateway_refund_id=refund.id)
