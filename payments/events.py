"""Provider-neutral webhook events.

Each gateway module parses its own JSON shape into one of these variants so
the reconciler never looks at provider payloads directly.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class GatewayEvent:
    event_type: str


@dataclass(frozen=True)
class ApprovalNeedsCapture(GatewayEvent):
    event_type: str
    gateway_order_id: str


@dataclass(frozen=True)
class PaymentSucceeded(GatewayEvent):
    event_type: str
    order_id: str
    capture_id: str


@dataclass(frozen=True)
class PaymentDenied(GatewayEvent):
    event_type: str
    order_id: str
    reason: str


@dataclass(frozen=True)
class PaymentRefunded(GatewayEvent):
    event_type: str
    refund_id: str
    capture_id: str
    amount: Optional[Decimal] = None


@dataclass(frozen=True)
class DisputeOpened(GatewayEvent):
    event_type: str
    dispute_id: str
    capture_id: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    respond_by: Optional[datetime] = None


@dataclass(frozen=True)
class Unrecognized(GatewayEvent):
    event_type: str
    note: str = "unhandled event type"
