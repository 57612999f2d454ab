"""
Pricing engine for team seats.

Pure functions over Decimal amounts; no I/O. Used by the pricing preview
endpoint, the seat service, and the startup margin check.
"""

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal

from app.models.domain.billing_domain import PricingBreakdown, Tier, TierLine
from app.models.domain.errors import ConfigurationError

CENT = Decimal("0.01")

# Monthly list price per seat, USD
TIER_PRICES: dict[Tier, Decimal] = {
    Tier.BASIC: Decimal("39.99"),
    Tier.ADVANCED: Decimal("79.99"),
    Tier.ELITE: Decimal("129.99"),
}

# Internal cost as a fraction of list price
TIER_COSTS: dict[Tier, Decimal] = {
    Tier.BASIC: Decimal("0.20"),
    Tier.ADVANCED: Decimal("0.35"),
    Tier.ELITE: Decimal("0.45"),
}

# Minimum margin that must survive the largest discount
MIN_MARGINS: dict[Tier, Decimal] = {
    Tier.BASIC: Decimal("0.70"),
    Tier.ADVANCED: Decimal("0.50"),
    Tier.ELITE: Decimal("0.40"),
}

# (minimum total seats, discount), highest threshold first
DISCOUNT_STEPS: tuple[tuple[int, Decimal], ...] = (
    (20, Decimal("0.25")),
    (10, Decimal("0.20")),
    (5, Decimal("0.10")),
)
MAX_DISCOUNT = max(discount for _, discount in DISCOUNT_STEPS)


def _money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def discount_percent(total_seats: int) -> Decimal:
    """Team discount as a fraction, stepped on the seat total across all tiers."""
    for threshold, discount in DISCOUNT_STEPS:
        if total_seats >= threshold:
            return discount
    return Decimal("0")


def price(seats_by_tier: Mapping[Tier, int], prices: Mapping[Tier, Decimal] = TIER_PRICES) -> PricingBreakdown:
    """
    Price a tier -> seat count map.

    Negative or missing counts count as zero; every tier appears in the
    breakdown so callers can render a fixed table.
    """
    per_tier: dict[Tier, TierLine] = {}
    total_seats = 0
    list_subtotal = Decimal("0")

    for tier in Tier:
        count = max(0, int(seats_by_tier.get(tier, 0)))
        unit_price = prices[tier]
        subtotal = _money(unit_price * count)
        per_tier[tier] = TierLine(count=count, unit_price=unit_price, subtotal=subtotal)
        total_seats += count
        list_subtotal += subtotal

    discount = discount_percent(total_seats)
    discount_amount = _money(list_subtotal * discount)

    return PricingBreakdown(
        total_seats=total_seats,
        per_tier=per_tier,
        discount_percent=discount,
        list_subtotal=list_subtotal,
        discount_amount=discount_amount,
        final_total=list_subtotal - discount_amount,
    )


def effective_margin(tier: Tier, discount: Decimal = MAX_DISCOUNT) -> Decimal:
    """Margin left on one seat of `tier` after `discount`."""
    list_price = TIER_PRICES[tier]
    effective_price = list_price * (1 - discount)
    cost = list_price * TIER_COSTS[tier]
    return (effective_price - cost) / effective_price


def validate_margins() -> None:
    """
    Check that every tier keeps its minimum margin at the maximum discount.

    Raises:
        ConfigurationError: naming every tier that falls short
    """
    failures = []
    for tier in Tier:
        margin = effective_margin(tier)
        if margin < MIN_MARGINS[tier]:
            failures.append(f"{tier.value}: {margin:.4f} < {MIN_MARGINS[tier]}")
    if failures:
        raise ConfigurationError("Pricing margin check failed: " + "; ".join(failures))
