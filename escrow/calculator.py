"""Payment amount arithmetic. All amounts are integers in minor currency units."""

import enum
from decimal import Decimal, ROUND_HALF_UP

from escrow.errors import ValidationError

DEFAULT_UPFRONT_PERCENTAGE = 50


class PaymentType(str, enum.Enum):
    FULL = "full"
    UPFRONT = "upfront"
    REMAINING = "remaining"


def parse_payment_type(value) -> PaymentType:
    try:
        return PaymentType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown payment type: {value!r}", field="payment_type"
        ) from None


def _check_amount(value, field: str) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer amount in minor units", field=field)
    if value < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    return value


def normalize_percentage(percentage) -> int:
    if percentage is None:
        return DEFAULT_UPFRONT_PERCENTAGE
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise ValidationError("upfront percentage must be an integer", field="upfront_payment_percentage")
    if not 0 <= percentage <= 100:
        raise ValidationError(
            "upfront percentage must be between 0 and 100", field="upfront_payment_percentage"
        )
    return percentage


def upfront_amount(base_price: int, percentage=None) -> int:
    base_price = _check_amount(base_price, "base_price")
    percentage = normalize_percentage(percentage)
    share = Decimal(base_price) * Decimal(percentage) / Decimal(100)
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_amount(base_price: int, percentage, mode) -> int:
    mode = parse_payment_type(mode)
    base_price = _check_amount(base_price, "base_price")
    if mode is PaymentType.FULL:
        return base_price
    upfront = upfront_amount(base_price, percentage)
    if mode is PaymentType.UPFRONT:
        return upfront
    # derived from the same rounded upfront leg so the legs always add up
    return base_price - upfront


def sum_charges(sub_service_charges) -> int:
    total = 0
    for charge in sub_service_charges or ():
        price = charge["price"] if isinstance(charge, dict) else charge.price
        total += _check_amount(price, "sub_service_charges.price")
    return total


def compute_total(base_price: int, percentage, mode, sub_service_charges=()) -> int:
    return compute_amount(base_price, percentage, mode) + sum_charges(sub_service_charges)
