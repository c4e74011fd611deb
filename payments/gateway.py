"""Payment gateway contract shared by the Stripe and PayPal clients.

Each client owns its own authentication and translates between these
provider-neutral request/result types and the provider's wire format.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from payments.events import GatewayEvent


@dataclass(frozen=True)
class CreateGatewayOrderRequest:
    internal_order_id: str
    amount: Decimal
    currency_code: str
    customer_email: str
    customer_name: str
    customer_phone: Optional[str] = None


@dataclass(frozen=True)
class GatewayCreateOrderResult:
    gateway_order_id: str
    payment_session_id: Optional[str] = None  # Stripe client secret
    approval_url: Optional[str] = None        # PayPal payer approval link


@dataclass(frozen=True)
class GatewayRefundRequest:
    gateway_order_id: str
    gateway_payment_id: Optional[str]
    internal_refund_id: str
    amount: Decimal
    currency_code: str
    reason: str


@dataclass(frozen=True)
class GatewayRefundResult:
    success: bool
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentGateway(ABC):
    gateway_type: str

    @staticmethod
    @abstractmethod
    def parse_event(payload: dict) -> GatewayEvent:
        """Classify a verified webhook body. Never raises on unexpected shapes."""

    @abstractmethod
    def create_order(self, request: CreateGatewayOrderRequest) -> GatewayCreateOrderResult:
        """Create the external order. Raises GatewayError on any provider failure."""

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        """Check the authenticity of an inbound webhook.

        ``headers`` is keyed by lowercase header name. Never raises for a bad
        or missing signature, and never touches persisted state.
        """

    @abstractmethod
    def capture_order(self, gateway_order_id: str) -> Optional[str]:
        """Capture an approved order and return the capture id."""

    @abstractmethod
    def refund(self, request: GatewayRefundRequest) -> GatewayRefundResult:
        """Refund a captured payment. Provider failures are reported in the result."""


def format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount).quantize(Decimal('0.01'))}"
