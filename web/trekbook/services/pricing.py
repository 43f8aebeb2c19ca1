"""Price breakdown for a checkout draft.

Pure and synchronous: the breakdown is recomputed wholesale whenever the draft
changes so that the amount shown and the amount authorized never diverge.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping

from trekbook.core.config import Settings
from trekbook.domain import ADDON_PRICES, BookingDraft, PriceBreakdown

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PricingRules:
    permit_fee: Decimal = Decimal("50")
    discount: Decimal = Decimal("-500")
    tax_rate: Decimal = Decimal("0.10")
    deposit_fraction: Decimal = Decimal("0.30")
    default_unit_price: Decimal = Decimal("1200")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingRules":
        return cls(
            permit_fee=settings.PERMIT_FEE,
            discount=settings.EARLY_BIRD_DISCOUNT,
            tax_rate=settings.TAX_RATE,
            deposit_fraction=settings.DEPOSIT_FRACTION,
            default_unit_price=settings.DEFAULT_PRICE_PER_TRAVELER,
        )


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_price(
    traveler_count: int,
    price_per_traveler: Decimal,
    selected_addons: Iterable[str],
    rules: PricingRules = PricingRules(),
    addon_prices: Mapping[str, Decimal] = ADDON_PRICES,
) -> PriceBreakdown:
    """Itemize the price of a booking.

    subtotal = base + fees + addons + discount
    tax      = subtotal * tax_rate
    total    = subtotal + tax
    partial  = total * deposit_fraction

    Unknown add-on ids contribute nothing. Input validation (negative counts)
    happens on the draft, not here.
    """
    unit_price = Decimal(price_per_traveler)
    base_price = traveler_count * unit_price
    fees = traveler_count * rules.permit_fee
    addons_total = sum((addon_prices.get(addon_id, Decimal("0")) for addon_id in selected_addons), Decimal("0"))
    subtotal = base_price + fees + addons_total + rules.discount
    tax = _money(subtotal * rules.tax_rate)
    total_due = _money(subtotal) + tax
    partial_amount = _money(total_due * rules.deposit_fraction)

    return PriceBreakdown(
        unit_price=_money(unit_price),
        base_price=_money(base_price),
        fees=_money(fees),
        addons_total=_money(addons_total),
        discount=_money(rules.discount),
        subtotal=_money(subtotal),
        tax=tax,
        total_due=total_due,
        partial_amount=partial_amount,
    )


def price_draft(draft: BookingDraft, rules: PricingRules = PricingRules()) -> PriceBreakdown:
    """Breakdown for *draft*; falls back to the default unit price without a tour."""
    unit_price = draft.tour.price_per_traveler if draft.tour else rules.default_unit_price
    return calculate_price(draft.traveler_count, unit_price, draft.selected_addons(), rules)
