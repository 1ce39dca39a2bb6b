"""Tax, shipping and discount rules applied at checkout."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from storefront.common import ServiceSettings


def to_cents(amount: Decimal) -> int:
    return int((amount * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(value: int) -> Decimal:
    return (Decimal(value) / Decimal("100")).quantize(Decimal("0.01"))


@dataclass(frozen=True, slots=True)
class PricedLine:
    product_id: int
    quantity: int
    unit_price_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True, slots=True)
class PriceQuote:
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents + self.shipping_cents - self.discount_cents


class DiscountPolicy(Protocol):
    def discount_for(self, *, user_id: str, lines: Sequence[PricedLine], subtotal_cents: int) -> int: ...


class NoDiscount:
    def discount_for(self, *, user_id: str, lines: Sequence[PricedLine], subtotal_cents: int) -> int:
        return 0


class PricingRules(Protocol):
    def quote(self, *, user_id: str, lines: Sequence[PricedLine]) -> PriceQuote: ...


class ConfiguredPricing:
    """Percentage tax and flat shipping from settings, discounts from a pluggable policy.

    Tax is charged on the discounted subtotal and rounded half-up to the cent.
    """

    def __init__(
        self,
        *,
        tax_rate: Decimal,
        shipping_cents: int,
        discounts: DiscountPolicy | None = None,
    ) -> None:
        self.tax_rate = tax_rate
        self.shipping_cents = shipping_cents
        self.discounts = discounts or NoDiscount()

    @classmethod
    def from_settings(cls, settings: ServiceSettings, discounts: DiscountPolicy | None = None) -> ConfiguredPricing:
        return cls(
            tax_rate=settings.tax_rate,
            shipping_cents=to_cents(settings.shipping_flat),
            discounts=discounts,
        )

    def quote(self, *, user_id: str, lines: Sequence[PricedLine]) -> PriceQuote:
        subtotal = sum(line.line_total_cents for line in lines)
        discount = self.discounts.discount_for(user_id=user_id, lines=lines, subtotal_cents=subtotal)
        discount = max(0, min(discount, subtotal))
        taxable = Decimal(subtotal - discount)
        tax = int((taxable * self.tax_rate).to_integral_value(rounding=ROUND_HALF_UP))
        return PriceQuote(
            subtotal_cents=subtotal,
            tax_cents=tax,
            shipping_cents=self.shipping_cents,
            discount_cents=discount,
        )
