"""
Pushes a tenant's seat counts to its Stripe subscription.

Local seats are the source of truth for quantities; the subscription's
status is not written here. Stripe confirms every change with its own
webhook, which the push-event engine applies.
"""

from collections import defaultdict

from app.config import settings
from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.models.domain.billing_domain import (
    BillingLineItem,
    SubscriptionState,
    SubscriptionStatus,
    Tier,
)
from app.models.domain.errors import ConfigurationError
from app.services.billing.price_catalog import PriceCatalog
from app.services.billing.pricing import discount_percent
from app.services.billing.seat_aggregator import aggregate, diff_quantities, line_items_to_quantities
from app.services.billing.stripe_client import (
    StripeBillingClient,
    stripe_billing_client,
    subscription_line_items,
)

logger = get_logger(__name__)

COUPON_METADATA_KEY = "team_discount_coupon"


def seat_metadata(tenant_id: str, counts: dict[Tier, int]) -> dict[str, str]:
    metadata = {"tenant_id": tenant_id, "total_seats": str(sum(counts.values()))}
    for tier in Tier:
        metadata[f"{tier.value}_seats"] = str(counts.get(tier, 0))
    return metadata


def coupon_for(total_seats: int, prefix: str | None = None) -> str | None:
    """`team_discount_<pct>` for the seat total, or None below the first step."""
    discount = discount_percent(total_seats)
    if not discount:
        return None
    prefix = prefix if prefix is not None else settings.STRIPE_TEAM_COUPON_PREFIX
    return f"{prefix}{int(discount * 100)}"


def _has_live_subscription(state: SubscriptionState | None) -> bool:
    if state is None or not state.provider_subscription_id:
        return False
    return not state.status.is_ended


class SeatBillingSync:
    def __init__(
        self,
        store=None,
        stripe_client: StripeBillingClient | None = None,
        catalog: PriceCatalog | None = None,
    ):
        self._store = store or default_store
        self._stripe = stripe_client or stripe_billing_client
        self._catalog = catalog or PriceCatalog()

    def _price(self, tier: Tier) -> str:
        price_id = self._catalog.price_for(tier)
        if not price_id:
            raise ConfigurationError(f"No Stripe price configured for tier {tier.value}")
        return price_id

    async def sync_tenant(self, tenant_id: str, email: str | None = None) -> dict:
        """
        Bring the tenant's subscription line items in line with its seats.

        Runs under a per-tenant billing lock. A subscription created here is
        remembered before its first webhook arrives, so a second sync in the
        meantime modifies it instead of creating another one.

        Returns a summary with `action` one of skipped, none, created,
        updated, unchanged or canceled.

        Raises:
            ProviderError: Stripe call failed
            ConfigurationError: a tier has no price ID
        """
        summary = {"tenant_id": tenant_id, "action": "skipped", "total_seats": 0, "coupon": None}
        if not self._stripe.enabled:
            logger.debug("Billing disabled, seat sync skipped", tenant_id=tenant_id)
            return summary

        customer_id = await self._ensure_customer(tenant_id, email)

        async with self._store.transaction() as session:
            await session.credentials.lock_billing_account(tenant_id)
            seats = await session.seats.list_for_tenant(tenant_id)
            state = await session.subscriptions.get(tenant_id)
            pending_id = await session.credentials.get_billing_subscription(tenant_id)

            counts = aggregate(seats)
            total = sum(counts.values())
            summary["total_seats"] = total
            summary["coupon"] = coupon_for(total)
            subscription = await self._current_subscription(state, pending_id)

            if total == 0:
                if subscription:
                    await self._stripe.cancel_subscription(subscription["id"])
                    logger.info(
                        "Subscription canceled, no seats remain",
                        tenant_id=tenant_id,
                        subscription_id=subscription["id"],
                    )
                    summary["action"] = "canceled"
                else:
                    summary["action"] = "none"
                return summary

            if not customer_id:
                # Seats arrived after the customer check; their own sync picks this up
                logger.debug("No billing customer yet, seat sync deferred", tenant_id=tenant_id)
                return summary

            if subscription is None:
                items = [{"price": self._price(tier), "quantity": qty} for tier, qty in counts.items()]
                subscription = await self._stripe.create_subscription(
                    customer_id, items, seat_metadata(tenant_id, counts)
                )
                await session.credentials.set_billing_subscription(tenant_id, subscription["id"])
                logger.info(
                    "Subscription created for seats",
                    tenant_id=tenant_id,
                    subscription_id=subscription["id"],
                    total_seats=total,
                )
                summary["action"] = "created"
            else:
                summary["action"] = await self._update_items(tenant_id, subscription, counts)

        await self._sync_coupon(subscription, summary["coupon"])
        return summary

    async def _ensure_customer(self, tenant_id: str, email: str | None) -> str | None:
        """
        Stripe customer for a tenant with seats, created and stored on first use.

        Committed on its own so a later failure cannot orphan the customer.
        """
        async with self._store.transaction() as session:
            await session.credentials.lock_billing_account(tenant_id)
            customer_id = await session.credentials.get_billing_customer(tenant_id)
            if customer_id:
                return customer_id
            if not aggregate(await session.seats.list_for_tenant(tenant_id)):
                return None

            state = await session.subscriptions.get(tenant_id)
            customer_id = state.provider_customer_id if state else None
            if not customer_id:
                customer_id = await self._stripe.create_customer(tenant_id, email)
            await session.credentials.set_billing_customer(tenant_id, customer_id)
        return customer_id

    async def _current_subscription(
        self, state: SubscriptionState | None, pending_id: str | None
    ) -> dict | None:
        """The subscription seat changes go to, or None when a new one is needed."""
        candidates = []
        if _has_live_subscription(state):
            candidates.append(state.provider_subscription_id)
        if pending_id and pending_id not in candidates:
            candidates.append(pending_id)

        for subscription_id in candidates:
            subscription = await self._stripe.retrieve_subscription(subscription_id)
            if not SubscriptionStatus.parse(subscription.get("status")).is_ended:
                return subscription
            logger.debug("Skipping ended subscription", subscription_id=subscription_id)
        return None

    async def _update_items(self, tenant_id: str, subscription: dict, counts: dict[Tier, int]) -> str:
        line_items = subscription_line_items(subscription)
        items_by_tier: dict[Tier, list[BillingLineItem]] = defaultdict(list)
        for item in line_items:
            tier = self._catalog.tier_for(item.price_id)
            if tier is not None:
                items_by_tier[tier].append(item)

        current = line_items_to_quantities(line_items, self._catalog.tier_for_price_map)
        changes = diff_quantities(current, counts)
        if changes.is_empty:
            logger.debug("Subscription items already match seats", tenant_id=tenant_id)
            return "unchanged"

        items: list[dict] = []
        for tier, qty in changes.to_update.items():
            first, *extra = items_by_tier[tier]
            items.append({"id": first.item_id, "quantity": qty})
            items.extend({"id": item.item_id, "deleted": True} for item in extra)
        for tier, qty in changes.to_create.items():
            items.append({"price": self._price(tier), "quantity": qty})
        for tier in changes.to_delete:
            items.extend({"id": item.item_id, "deleted": True} for item in items_by_tier[tier])

        await self._stripe.modify_subscription(
            subscription["id"], items, seat_metadata(tenant_id, counts)
        )
        logger.info(
            "Subscription items updated",
            tenant_id=tenant_id,
            subscription_id=subscription["id"],
            created=[tier.value for tier in changes.to_create],
            updated=[tier.value for tier in changes.to_update],
            deleted=[tier.value for tier in changes.to_delete],
        )
        return "updated"

    async def _sync_coupon(self, subscription: dict, desired: str | None) -> None:
        current = (subscription.get("metadata") or {}).get(COUPON_METADATA_KEY) or None
        if current == desired:
            return
        if desired:
            await self._stripe.apply_coupon(subscription["id"], desired)
        else:
            await self._stripe.remove_discount(subscription["id"])


seat_billing_sync = SeatBillingSync()
