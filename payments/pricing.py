"""Location price resolution and coupon discounts."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from payments.errors import DomainError
from payments.models import Coupon, DiscountType, DurationPrice

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MINIMUM_CHARGE = Decimal("1")


@dataclass(frozen=True)
class PriceQuote:
    price: DurationPrice
    coupon: Optional[Coupon]
    discount_amount: Decimal
    amount_due: Decimal


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_price(db: Session, duration_id: str, location_code: str, default_location: str) -> DurationPrice:
    """Active price for the buyer's location, else for the default location."""
    for code in dict.fromkeys([location_code, default_location]):
        price = (
            db.query(DurationPrice)
            .filter_by(duration_id=duration_id, location_code=code, is_active=True)
            .first()
        )
        if price:
            if code != location_code:
                logger.info(
                    "No %s price for duration %s, falling back to %s", location_code, duration_id, code
                )
            return price
    raise DomainError(f"No price is available for duration {duration_id} in location '{location_code}'.")


def validate_coupon(coupon: Optional[Coupon], code: str, price: DurationPrice, now: datetime) -> Coupon:
    if coupon is None:
        raise DomainError(f"Coupon '{code}' is invalid or does not exist.")
    if not coupon.is_active:
        raise DomainError(f"Coupon '{code}' is no longer active.")

    valid_from = _as_utc(coupon.valid_from)
    valid_until = _as_utc(coupon.valid_until)
    if valid_from and now < valid_from:
        raise DomainError(f"Coupon '{code}' is not yet valid.")
    if valid_until and now > valid_until:
        raise DomainError(f"Coupon '{code}' has expired.")
    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        raise DomainError(f"Coupon '{code}' has reached its maximum use limit.")
    if coupon.min_order_amount is not None and Decimal(price.amount) < Decimal(coupon.min_order_amount):
        raise DomainError(
            f"Coupon '{code}' requires a minimum order amount of "
            f"{Decimal(coupon.min_order_amount):.2f} {price.currency_code}."
        )
    return coupon


def compute_discount(coupon: Coupon, amount: Decimal) -> Decimal:
    """Discount for ``amount``, capped so at least one unit of currency is charged."""
    amount = Decimal(amount)
    value = Decimal(coupon.discount_value)
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = (amount * value / 100).quantize(CENT, rounding=ROUND_HALF_EVEN)
    else:
        discount = value.quantize(CENT)

    if amount - discount < MINIMUM_CHARGE:
        discount = max(amount - MINIMUM_CHARGE, Decimal("0"))
    return discount.quantize(CENT)


def quote(
    db: Session,
    duration_id: str,
    location_code: str,
    coupon_code: Optional[str],
    default_location: str,
    now: Optional[datetime] = None,
) -> PriceQuote:
    price = resolve_price(db, duration_id, location_code, default_location)
    amount = Decimal(price.amount).quantize(CENT)

    if not coupon_code or not coupon_code.strip():
        return PriceQuote(price=price, coupon=None, discount_amount=Decimal("0.00"), amount_due=amount)

    code = coupon_code.strip().upper()
    coupon = db.query(Coupon).filter_by(code=code).first()
    validate_coupon(coupon, code, price, now or datetime.now(timezone.utc))

    discount = compute_discount(coupon, amount)
    return PriceQuote(price=price, coupon=coupon, discount_amount=discount, amount_due=amount - discount)
