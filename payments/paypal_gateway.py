import base64
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

import requests

from payments.errors import GatewayError
from payments.events import (
    ApprovalNeedsCapture,
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
    format_amount,
)
from payments.models import GatewayType

logger = logging.getLogger(__name__)

VERIFICATION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

# PayPal tokens usually live for 9 hours
DEFAULT_TOKEN_LIFETIME = 32400


def _decimal(value) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) if value is not None else None
    except InvalidOperation:
        return None


def _amount(resource: dict, key: str = "amount") -> Optional[Decimal]:
    amount = resource.get(key)
    return _decimal(amount.get("value")) if isinstance(amount, dict) else None


def _json(response: requests.Response, what: str) -> dict:
    try:
        body = response.json()
    except ValueError as exc:
        raise GatewayError("PayPal", f"{what} response is not JSON", response.status_code) from exc
    if not isinstance(body, dict):
        raise GatewayError("PayPal", f"{what} response is not an object", response.status_code)
    return body


def _capture_id_from_links(resource: dict) -> Optional[str]:
    """A refund resource points at its capture through the ``up`` link."""
    for link in resource.get("links") or []:
        if isinstance(link, dict) and link.get("rel") == "up" and link.get("href"):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


def parse_paypal_event(payload: dict) -> GatewayEvent:
    """Translate a PayPal webhook body into a provider-neutral event."""
    if not isinstance(payload, dict):
        return Unrecognized("", "payload is not an object")

    event_type = payload.get("event_type") or ""
    resource = payload.get("resource")
    if not isinstance(resource, dict):
        return Unrecognized(event_type, "resource missing")

    if event_type == "CHECKOUT.ORDER.APPROVED":
        if not resource.get("id"):
            return Unrecognized(event_type, "order id missing")
        return ApprovalNeedsCapture(event_type, gateway_order_id=resource["id"])

    if event_type == "PAYMENT.CAPTURE.COMPLETED":
        # custom_id carries our internal order id, set when the order was created
        if not resource.get("custom_id") or not resource.get("id"):
            return Unrecognized(event_type, "custom_id or capture id missing")
        return PaymentSucceeded(event_type, order_id=resource["custom_id"], capture_id=resource["id"])

    if event_type == "PAYMENT.CAPTURE.DENIED":
        if not resource.get("custom_id"):
            return Unrecognized(event_type, "custom_id missing")
        return PaymentDenied(event_type, order_id=resource["custom_id"], reason=event_type)

    if event_type == "PAYMENT.CAPTURE.REFUNDED":
        capture_id = _capture_id_from_links(resource)
        if not resource.get("id") or not capture_id:
            return Unrecognized(event_type, "refund id or capture link missing")
        return PaymentRefunded(
            event_type,
            refund_id=resource["id"],
            capture_id=capture_id,
            amount=_amount(resource),
        )

    if event_type == "CUSTOMER.DISPUTE.CREATED":
        if not resource.get("dispute_id"):
            return Unrecognized(event_type, "dispute_id missing")
        transactions = resource.get("disputed_transactions")
        first = transactions[0] if isinstance(transactions, list) and transactions else {}
        if not isinstance(first, dict):
            first = {}
        return DisputeOpened(
            event_type,
            dispute_id=resource["dispute_id"],
            capture_id=first.get("seller_transaction_id"),
            amount=_amount(resource, "dispute_amount"),
            reason=resource.get("reason"),
            respond_by=None,
        )

    return Unrecognized(event_type)


class PayPalGateway(PaymentGateway):
    """PayPal Orders API v2 with an OAuth2 client-credentials token."""

    gateway_type = GatewayType.PAYPAL
    parse_event = staticmethod(parse_paypal_event)

    def __init__(
        self,
        base_url: str,
        client_id: str,
        secret: str,
        webhook_id: str,
        return_url: str,
        cancel_url: str,
        token_safety_margin: int = 300,
        timeout: float = 15,
        session: Optional[requests.Session] = None,
        clock=time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.secret = secret
        self.webhook_id = webhook_id
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.token_safety_margin = token_safety_margin
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    # -- OAuth token -------------------------------------------------------

    def _get_access_token(self) -> str:
        if self._token and self.clock() < self._token_expires_at:
            return self._token

        logger.info("PayPal: fetching new access token")
        credentials = base64.b64encode(f"{self.client_id}:{self.secret}".encode()).decode()
        try:
            response = self.session.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {credentials}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GatewayError("PayPal", f"token request failed: {exc}") from exc

        if not response.ok:
            raise GatewayError("PayPal", "token request rejected", response.status_code)

        body = _json(response, "token")
        token = body.get("access_token")
        if not token:
            raise GatewayError("PayPal", "token response missing 'access_token'")

        try:
            lifetime = int(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME
        # Concurrent refreshes may race here; the last one wins
        self._token = token
        self._token_expires_at = self.clock() + max(lifetime - self.token_safety_margin, 0)
        return token

    def _post(self, path: str, payload: Optional[dict], request_id: Optional[str] = None) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._get_access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        try:
            return self.session.post(
                f"{self.base_url}{path}",
                json=payload if payload is not None else {},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GatewayError("PayPal", f"{path} request failed: {exc}") from exc

    # -- Gateway contract --------------------------------------------------

    def create_order(self, request: CreateGatewayOrderRequest) -> GatewayCreateOrderResult:
        logger.info("PayPal: creating order for internal ID %s", request.internal_order_id)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.internal_order_id,
                    "custom_id": request.internal_order_id,
                    "amount": {
                        "currency_code": request.currency_code,
                        "value": format_amount(request.amount),
                    },
                }
            ],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "return_url": self.return_url,
                        "cancel_url": self.cancel_url,
                    }
                }
            },
        }
        response = self._post("/v2/checkout/orders", body, request_id=request.internal_order_id)
        if not response.ok:
            logger.error("PayPal CreateOrder failed: %s %s", response.status_code, response.text)
            raise GatewayError("PayPal", "order creation failed", response.status_code)

        data = _json(response, "create order")
        paypal_order_id = data.get("id")
        # "payer-action" when payment_source.paypal is sent, "approve" in the basic flow
        approval_url = next(
            (
                link.get("href")
                for link in data.get("links") or []
                if link.get("rel") in ("payer-action", "approve")
            ),
            None,
        )
        if not paypal_order_id or not approval_url:
            raise GatewayError("PayPal", "order response missing id or approval link")

        logger.info("PayPal: order %s created", paypal_order_id)
        return GatewayCreateOrderResult(gateway_order_id=paypal_order_id, approval_url=approval_url)

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        values = {name: headers.get(name) for name in VERIFICATION_HEADERS}
        if not all(values.values()):
            logger.warning("PayPal webhook missing required verification headers")
            return False

        try:
            webhook_event = json.loads(raw_payload)
        except ValueError:
            logger.warning("PayPal webhook body is not JSON")
            return False

        body = {
            "auth_algo": values["paypal-auth-algo"],
            "cert_url": values["paypal-cert-url"],
            "transmission_id": values["paypal-transmission-id"],
            "transmission_sig": values["paypal-transmission-sig"],
            "transmission_time": values["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": webhook_event,
        }
        try:
            response = self._post("/v1/notifications/verify-webhook-signature", body)
        except GatewayError as exc:
            logger.warning("PayPal verification call failed: %s", exc)
            return False

        if not response.ok:
            logger.warning("PayPal verification API returned %s", response.status_code)
            return False

        try:
            status = _json(response, "verify webhook").get("verification_status")
        except GatewayError as exc:
            logger.warning("PayPal verification response unreadable: %s", exc)
            return False
        if status != "SUCCESS":
            logger.warning("PayPal webhook verification_status: %s", status)
            return False
        return True

    def capture_order(self, gateway_order_id: str) -> Optional[str]:
        logger.info("PayPal: capturing order %s", gateway_order_id)
        response = self._post(
            f"/v2/checkout/orders/{gateway_order_id}/capture",
            None,
            request_id=f"capture-{gateway_order_id}",
        )
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            logger.info("PayPal: order %s already captured", gateway_order_id)
            return None
        if not response.ok:
            logger.error("PayPal capture failed: %s %s", response.status_code, response.text)
            raise GatewayError("PayPal", "capture failed", response.status_code)

        data = _json(response, "capture")
        try:
            capture_id = data["purchase_units"][0]["payments"]["captures"][0]["id"]
        except (KeyError, IndexError, TypeError):
            capture_id = None
        logger.info("PayPal: order %s captured as %s", gateway_order_id, capture_id)
        return capture_id

    def refund(self, request: GatewayRefundRequest) -> GatewayRefundResult:
        if not request.gateway_payment_id:
            return GatewayRefundResult(
                success=False,
                failure_reason="PayPal refund requires the capture id.",
            )

        logger.info(
            "PayPal: refunding capture %s, refund %s", request.gateway_payment_id, request.internal_refund_id
        )
        body = {
            "amount": {"value": format_amount(request.amount), "currency_code": request.currency_code},
            "note_to_payer": request.reason[:255],
        }
        try:
            response = self._post(
                f"/v2/payments/captures/{request.gateway_payment_id}/refund",
                body,
                request_id=request.internal_refund_id,
            )
        except GatewayError as exc:
            return GatewayRefundResult(success=False, failure_reason=str(exc))

        if not response.ok:
            logger.error("PayPal refund failed: %s %s", response.status_code, response.text)
            return GatewayRefundResult(
                success=False,
                failure_reason=f"PayPal refund failed: {response.status_code}",
            )

        try:
            refund_id = _json(response, "refund").get("id")
        except GatewayError as exc:
            return GatewayRefundResult(success=False, failure_reason=str(exc))
        logger.info("PayPal: refund %s completed", refund_id)
        return GatewayRefundResult(success=True, gateway_refund_id=refund_id)
