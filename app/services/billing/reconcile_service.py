"""
Correcting pull for billing state.

Webhooks can be lost or arrive out of order. This pass reads every known
subscription straight from Stripe and applies it through the same
derivation the webhook engine uses. The read time is the revision: a
webhook created after the read still wins, anything older loses to it.
"""

from datetime import UTC, datetime

from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import ProviderError
from app.services.billing.price_catalog import PriceCatalog
from app.services.billing.seat_billing_sync import SeatBillingSync, seat_billing_sync
from app.services.billing.stripe_client import StripeBillingClient, stripe_billing_client
from app.services.billing.subscription_state import (
    apply_retention,
    derive_from_subscription,
    is_stale,
)

logger = get_logger(__name__)

# Fields that do not describe the provider's view of the subscription
_VOLATILE_FIELDS = {"last_event_at", "updated_at"}


class BillingReconciler:
    def __init__(
        self,
        store=None,
        stripe_client: StripeBillingClient | None = None,
        catalog: PriceCatalog | None = None,
        seat_sync: SeatBillingSync | None = None,
    ):
        self._store = store or default_store
        self._stripe = stripe_client or stripe_billing_client
        self._catalog = catalog or PriceCatalog()
        self._seat_sync = seat_sync or seat_billing_sync

    async def reconcile_tenant(self, tenant_id: str, subscription_id: str) -> str:
        """
        Re-derive one tenant's state from a fresh Stripe read.

        Returns "corrected", "unchanged" or "stale".
        """
        read_at = datetime.now(UTC)
        subscription = await self._stripe.retrieve_subscription(subscription_id)

        async with self._store.transaction() as session:
            previous = await session.subscriptions.get_for_update(tenant_id)
            if is_stale(read_at, previous):
                # A webhook newer than our read landed in the meantime
                return "stale"

            state = derive_from_subscription(tenant_id, subscription, previous, self._catalog)
            state = apply_retention(previous, state, now=read_at)
            if previous is not None and state.model_dump(
                exclude=_VOLATILE_FIELDS
            ) == previous.model_dump(exclude=_VOLATILE_FIELDS):
                return "unchanged"

            state = state.model_copy(update={"last_event_at": read_at})
            await session.subscriptions.upsert(state)

        logger.warning(
            "Billing drift corrected",
            tenant_id=tenant_id,
            previous_status=previous.status.value if previous else None,
            status=state.status.value,
            previous_tier=previous.tier if previous else None,
            tier=state.tier,
        )
        return "corrected"

    async def reconcile_all(self) -> dict:
        summary = {"checked": 0, "corrected": 0, "unchanged": 0, "stale": 0, "failed": 0, "seat_syncs": 0}
        if not self._stripe.enabled:
            logger.info("Billing disabled, reconciliation skipped")
            summary["skipped"] = True
            return summary

        async with self._store.transaction() as session:
            states = await session.subscriptions.list_with_subscription()
            seat_tenants = await session.seats.list_tenants_with_seats()

        for state in states:
            summary["checked"] += 1
            try:
                outcome = await self.reconcile_tenant(state.tenant_id, state.provider_subscription_id)
            except ProviderError as e:
                summary["failed"] += 1
                logger.warning(
                    "Subscription read failed during reconciliation",
                    tenant_id=state.tenant_id,
                    error_kind=e.kind.value,
                    error=str(e),
                )
                continue
            summary[outcome] += 1

        for tenant_id in seat_tenants:
            try:
                await self._seat_sync.sync_tenant(tenant_id)
                summary["seat_syncs"] += 1
            except ProviderError as e:
                summary["failed"] += 1
                logger.warning(
                    "Seat sync failed during reconciliation",
                    tenant_id=tenant_id,
                    error_kind=e.kind.value,
                    error=str(e),
                )

        logger.info("Billing reconciliation finished", **summary)
        return summary


billing_reconciler = BillingReconciler()
