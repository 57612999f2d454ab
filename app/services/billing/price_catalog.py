"""
Mapping between seat tiers and the billing provider's price IDs.
"""

from collections.abc import Iterable, Mapping

from app.config import settings
from app.models.domain.billing_domain import Tier
from app.models.domain.errors import ConfigurationError


class PriceCatalog:
    def __init__(self, price_ids: Mapping[str, str | None] | None = None):
        raw = price_ids if price_ids is not None else settings.tier_price_ids()
        self._price_for_tier: dict[Tier, str] = {
            Tier(tier): price_id for tier, price_id in raw.items() if price_id
        }
        self._tier_for_price: dict[str, Tier] = {
            price_id: tier for tier, price_id in self._price_for_tier.items()
        }

    @property
    def tier_for_price_map(self) -> dict[str, Tier]:
        return dict(self._tier_for_price)

    def price_for(self, tier: Tier) -> str | None:
        return self._price_for_tier.get(tier)

    def tier_for(self, price_id: str | None) -> Tier | None:
        return self._tier_for_price.get(price_id) if price_id else None

    def highest_tier(self, price_ids: Iterable[str | None]) -> Tier | None:
        """Highest tier among the given prices, or None if none are known."""
        tiers = [tier for tier in map(self.tier_for, price_ids) if tier is not None]
        return max(tiers, key=lambda tier: tier.rank) if tiers else None

    def validate(self) -> None:
        """
        Every tier needs its own price ID.

        Raises:
            ConfigurationError: missing or duplicated price IDs
        """
        missing = [tier.value for tier in Tier if tier not in self._price_for_tier]
        if missing:
            raise ConfigurationError(f"Billing price IDs not configured for: {', '.join(missing)}")
        if len(self._tier_for_price) != len(self._price_for_tier):
            raise ConfigurationError("Billing price IDs must be distinct per tier")
