from typing import Mapping

from payments.config import Settings, settings
from payments.gateway import PaymentGateway
from payments.models import GatewayType
from payments.paypal_gateway import PayPalGateway
from payments.stripe_gateway import StripeGateway

STRIPE_LOCATIONS = frozenset({"IN"})


def gateway_type_for_location(location_code: str) -> str:
    if (location_code or "").upper() in STRIPE_LOCATIONS:
        return GatewayType.STRIPE
    return GatewayType.PAYPAL


def select_gateway(location_code: str, gateways: Mapping[str, PaymentGateway]) -> PaymentGateway:
    """IN is served by Stripe, every other location by PayPal."""
    return gateways[gateway_type_for_location(location_code)]


def gateway_by_type(gateway_type: str, gateways: Mapping[str, PaymentGateway]) -> PaymentGateway:
    try:
        return gateways[gateway_type]
    except KeyError:
        raise ValueError(f"Unknown payment gateway type {gateway_type!r}") from None


def build_gateways(config: Settings) -> dict[str, PaymentGateway]:
    return {
        GatewayType.STRIPE: StripeGateway(
            api_key=config.stripe_secret_key,
            webhook_secret=config.stripe_webhook_secret,
            tolerance=config.stripe_webhook_tolerance,
        ),
        GatewayType.PAYPAL: PayPalGateway(
            base_url=config.paypal_base_url,
            client_id=config.paypal_client_id,
            secret=config.paypal_secret,
            webhook_id=config.paypal_webhook_id,
            return_url=config.paypal_return_url,
            cancel_url=config.paypal_cancel_url,
            token_safety_margin=config.paypal_token_safety_margin,
            timeout=config.http_timeout_seconds,
        ),
    }


gateways = build_gateways(settings)
