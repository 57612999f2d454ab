"""
Seat aggregation and per-tier line item diffing.

Seats reduce to a tier -> quantity map (removed seats excluded); two maps
diff into create/update/delete operations that turn one into the other.
"""

from collections import Counter
from collections.abc import Iterable, Mapping

from app.models.domain.billing_domain import BillingLineItem, LineItemDiff, SeatRecord, Tier


def aggregate(seats: Iterable[SeatRecord]) -> dict[Tier, int]:
    """Count billable (active + pending) seats per tier; zero tiers are omitted."""
    counts = Counter(seat.tier for seat in seats if seat.status.is_billable)
    return {tier: count for tier, count in counts.items() if count > 0}


def diff_quantities(current: Mapping[Tier, int], proposed: Mapping[Tier, int]) -> LineItemDiff:
    current = {tier: qty for tier, qty in current.items() if qty > 0}
    proposed = {tier: qty for tier, qty in proposed.items() if qty > 0}

    return LineItemDiff(
        to_create={tier: qty for tier, qty in proposed.items() if tier not in current},
        to_update={
            tier: qty
            for tier, qty in proposed.items()
            if tier in current and current[tier] != qty
        },
        to_delete=frozenset(tier for tier in current if tier not in proposed),
    )


def diff(current_seats: Iterable[SeatRecord], proposed_seats: Iterable[SeatRecord]) -> LineItemDiff:
    """Per-tier line item changes from the current seat set to the proposed one."""
    return diff_quantities(aggregate(current_seats), aggregate(proposed_seats))


def apply_diff(quantities: Mapping[Tier, int], changes: LineItemDiff) -> dict[Tier, int]:
    """Apply a diff to a tier map; the inverse check for `diff_quantities`."""
    result = {tier: qty for tier, qty in quantities.items() if qty > 0}
    for tier in changes.to_delete:
        result.pop(tier, None)
    result.update(changes.to_update)
    result.update(changes.to_create)
    return result


def line_items_to_quantities(
    items: Iterable[BillingLineItem], tier_for_price: Mapping[str, Tier]
) -> dict[Tier, int]:
    """Tier map of the provider's current subscription items. Unknown prices are skipped."""
    quantities: dict[Tier, int] = {}
    for item in items:
        tier = tier_for_price.get(item.price_id)
        if tier is not None and item.quantity > 0:
            quantities[tier] = quantities.get(tier, 0) + item.quantity
    return quantities
