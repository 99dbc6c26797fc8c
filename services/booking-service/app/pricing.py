from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from pydantic import BaseModel, ConfigDict

from .constants import PricingUnit
from .errors import InvalidPricingInput

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class Pricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit: PricingUnit
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    platform_fee: Decimal
    total_amount: Decimal
    worker_payout: Decimal
    currency: str


def _to_decimal(value, field: str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidPricingInput(f"{field} is not a number", **{field: value})


def compute_pricing(
    unit_price,
    unit: PricingUnit | str,
    quantity: int,
    fee_rate_percent,
    currency: str,
) -> Pricing:
    """Fix the charge for ``quantity`` units at ``unit_price``.

    The fee is rounded half-up to cents first, and total/payout are derived
    from the rounded fee, so ``subtotal + platform_fee == total_amount`` and
    ``subtotal - platform_fee == worker_payout`` hold exactly.
    """
    try:
        unit = PricingUnit(unit)
    except ValueError:
        raise InvalidPricingInput(f"unknown pricing unit {unit!r}", unit=unit)

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidPricingInput("quantity must be a whole number", quantity=quantity)
    if quantity < 1:
        raise InvalidPricingInput("quantity must be at least 1", quantity=quantity)

    unit_price = _to_decimal(unit_price, "unit_price")
    if not unit_price.is_finite() or unit_price < 0:
        raise InvalidPricingInput("unit_price must be >= 0", unit_price=unit_price)

    fee_rate = _to_decimal(fee_rate_percent, "fee_rate_percent")
    if not fee_rate.is_finite() or fee_rate < 0 or fee_rate > HUNDRED:
        raise InvalidPricingInput("fee rate must be within 0..100 percent", fee_rate_percent=fee_rate)

    if not currency:
        raise InvalidPricingInput("currency is required")

    unit_price = quantize_money(unit_price)
    subtotal = quantize_money(unit_price * quantity)
    platform_fee = quantize_money(subtotal * fee_rate / HUNDRED)

    return Pricing(
        unit=unit,
        unit_price=unit_price,
        quantity=quantity,
        subtotal=subtotal,
        platform_fee=platform_fee,
        total_amount=subtotal + platform_fee,
        worker_payout=subtotal - platform_fee,
        currency=currency.upper(),
    )
