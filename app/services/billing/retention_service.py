"""
Retention window status and cleanup.

When a lapsed paid tenant's window expires, synced email and calendar data
is hard-deleted together with its mappings. The subscription row stays and
is marked data-cleared so the tenant can still resubscribe.
"""

from datetime import UTC, datetime

from app.db.helpers import with_db_retry
from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.services.billing.subscription_state import DATA_CLEARED_TIER

logger = get_logger(__name__)

NO_WINDOW = {
    "has_window": False,
    "expires_at": None,
    "days_remaining": None,
    "reason": None,
    "is_expired": False,
    "is_data_cleared": False,
}


class RetentionService:
    def __init__(self, store=None):
        self._store = store or default_store

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_status(self, tenant_id: str, now: datetime | None = None) -> dict:
        async with self._store.transaction() as session:
            state = await session.subscriptions.get(tenant_id)
        if state is None:
            return dict(NO_WINDOW)
        return state.retention_status(now)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def clear_tenant(self, tenant_id: str, now: datetime | None = None) -> dict | None:
        """
        Delete one tenant's synced data if its window is still expired.

        Returns the per-entity delete counts, or None if the tenant was
        reactivated (or already cleared) since it was listed.
        """
        now = now or datetime.now(UTC)
        async with self._store.transaction() as session:
            state = await session.subscriptions.get_for_update(tenant_id)
            if (
                state is None
                or state.status.is_live
                or state.retention_expires_at is None
                or state.retention_expires_at > now
                or state.data_cleared_at is not None
            ):
                return None

            removed = await session.entities.purge_tenant(tenant_id)
            removed["mappings"] = await session.mappings.delete_for_tenant(tenant_id)
            await session.subscriptions.upsert(
                state.model_copy(update={"tier": DATA_CLEARED_TIER, "data_cleared_at": now})
            )

        logger.info("Retention window expired, tenant data cleared", tenant_id=tenant_id, **removed)
        return removed

    async def cleanup_expired(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(UTC)
        async with self._store.transaction() as session:
            expired = await session.subscriptions.list_retention_expired(now)

        summary = {"candidates": len(expired), "cleared": 0, "skipped": 0}
        for state in expired:
            if await self.clear_tenant(state.tenant_id, now) is None:
                summary["skipped"] += 1
            else:
                summary["cleared"] += 1

        logger.info("Retention cleanup finished", **summary)
        return summary


retention_service = RetentionService()
