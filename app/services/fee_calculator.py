"""Processing fee, currency and order total for a country.

Single authoritative place for money arithmetic: the order total stored at
creation is the amount charged, nothing downstream recomputes it.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from app.exceptions import InvalidAmount

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]

# percentage of subtotal + fixed fee, per country
FEE_STRUCTURES = {
    "US": {"percentage": Decimal("0.029"), "fixed": Decimal("0.30")},
    "IN": {"percentage": Decimal("0.02"), "fixed": Decimal("0.00")},
    "GB": {"percentage": Decimal("0.025"), "fixed": Decimal("0.20")},
    "SG": {"percentage": Decimal("0.028"), "fixed": Decimal("0.50")},
}
BASELINE_COUNTRY = "US"

CURRENCIES = {
    "US": "USD",
    "IN": "INR",
    "GB": "GBP",
    "SG": "SGD",
}
DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class TotalBreakdown:
    processing_fee: Decimal
    total_amount: Decimal
    currency: str


def to_decimal(value: Number, field: str = "amount") -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        # floats go through str() so 25.98 stays 25.98
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError as exc:
        raise InvalidAmount(f"{field} is not a valid amount", {"field": field}) from exc
    if not amount.is_finite():
        raise InvalidAmount(f"{field} is not a valid amount", {"field": field})
    if amount < 0:
        raise InvalidAmount(f"{field} cannot be negative", {"field": field})
    return amount


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def default_currency(country_code: str) -> str:
    return CURRENCIES.get((country_code or "").upper(), DEFAULT_CURRENCY)


def processing_fee(subtotal: Number, country_code: str) -> Decimal:
    structure = FEE_STRUCTURES.get((country_code or "").upper(), FEE_STRUCTURES[BASELINE_COUNTRY])
    return money(to_decimal(subtotal, "subtotal") * structure["percentage"] + structure["fixed"])


def compute_total(
    subtotal: Number,
    tax_amount: Number,
    delivery_fee: Number,
    discount_amount: Number,
    country_code: str,
) -> TotalBreakdown:
    subtotal = to_decimal(subtotal, "subtotal")
    tax_amount = to_decimal(tax_amount, "tax_amount")
    delivery_fee = to_decimal(delivery_fee, "delivery_fee")
    discount_amount = to_decimal(discount_amount, "discount_amount")

    fee = processing_fee(subtotal, country_code)
    total = money(subtotal) + money(tax_amount) + money(delivery_fee) + fee - money(discount_amount)

    return TotalBreakdown(
        processing_fee=fee,
        total_amount=money(total),
        currency=default_currency(country_code),
    )


def line_total(quantity: int, unit_price: Number) -> Decimal:
    if quantity <= 0:
        raise InvalidAmount("quantity must be a positive integer", {"field": "quantity"})
    return money(to_decimal(unit_price, "unit_price") * quantity)


def to_minor_units(amount: Number) -> int:
    """Gateway APIs take integer minor units (cents, paise)."""
    return int((money(to_decimal(amount)) * 100).to_integral_value())
