"""Boundary towards the notification collaborator.

The core only emits two signals. Delivery is not part of this service; a
failure while dispatching is logged and never reaches order state.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from payments.config import Settings
from payments.models import Order, Program, ProgramDuration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderPaid:
    order_id: str
    user_id: str
    duration_id: str
    program_id: str
    expert_id: str


@dataclass(frozen=True)
class OrderFailed:
    order_id: str
    user_id: str


@dataclass(frozen=True)
class NotifierConfig:
    email_enabled: bool = True
    sms_enabled: bool = False
    whatsapp_enabled: bool = False

    @classmethod
    def from_settings(cls, config: Settings) -> "NotifierConfig":
        return cls(
            email_enabled=config.notify_email_enabled,
            sms_enabled=config.notify_sms_enabled,
            whatsapp_enabled=config.notify_whatsapp_enabled,
        )

    def channels(self) -> list[str]:
        enabled = [("email", self.email_enabled), ("sms", self.sms_enabled), ("whatsapp", self.whatsapp_enabled)]
        return [name for name, on in enabled if on]


class Notifier(ABC):
    @abstractmethod
    def order_paid(self, signal: OrderPaid) -> None:
        """Buyer paid; enrolment follow-ups hang off this."""

    @abstractmethod
    def order_failed(self, signal: OrderFailed) -> None:
        """Payment was denied or never completed."""


class LoggingNotifier(Notifier):
    """Hands signals to the enabled channels; here that means logging them."""

    def __init__(self, config: NotifierConfig):
        self.config = config

    def order_paid(self, signal: OrderPaid) -> None:
        for channel in self.config.channels():
            logger.info(
                "Notify[%s] purchase_success: order=%s user=%s program=%s expert=%s",
                channel, signal.order_id, signal.user_id, signal.program_id, signal.expert_id,
            )

    def order_failed(self, signal: OrderFailed) -> None:
        for channel in self.config.channels():
            logger.info("Notify[%s] purchase_failed: order=%s user=%s", channel, signal.order_id, signal.user_id)


def build_paid_signal(db: Session, order: Order) -> Optional[OrderPaid]:
    duration = db.get(ProgramDuration, order.duration_id)
    if duration is None:
        logger.error("OrderPaid: duration %s not found for order %s", order.duration_id, order.id)
        return None
    program = db.get(Program, duration.program_id)
    if program is None:
        logger.error("OrderPaid: program %s not found for order %s", duration.program_id, order.id)
        return None
    return OrderPaid(
        order_id=order.id,
        user_id=order.user_id,
        duration_id=order.duration_id,
        program_id=program.id,
        expert_id=program.expert_id,
    )


def emit(notifier: Notifier, signal) -> None:
    """Dispatch ``signal``; errors are logged and swallowed."""
    try:
        if isinstance(signal, OrderPaid):
            notifier.order_paid(signal)
        else:
            notifier.order_failed(signal)
    except Exception:
        logger.exception("Notifier failed for %s", signal)
