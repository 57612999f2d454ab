"""
Persistence for canonical subscription state (one row per tenant).
"""

from datetime import datetime

import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.models.domain.billing_domain import SubscriptionState


class SubscriptionRepository:
    """`subscription_states` keyed by tenant; rows are never deleted."""

    SELECT_COLUMNS = """
        tenant_id, tier, status, provider_customer_id, provider_subscription_id,
        current_period_start, current_period_end, cancel_at_period_end, canceled_at,
        trial_start, trial_end, retention_expires_at, retention_reason,
        data_cleared_at, last_event_at, updated_at
    """

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    @staticmethod
    def _row_to_state(row: dict | None) -> SubscriptionState | None:
        return SubscriptionState(**row) if row else None

    async def get(self, tenant_id: str) -> SubscriptionState | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM subscription_states WHERE tenant_id = %s"
        row = await fetch_one(query, (tenant_id,), connection=self._conn)
        return self._row_to_state(row)

    async def get_for_update(self, tenant_id: str) -> SubscriptionState | None:
        """Row-lock the tenant's state for the rest of the transaction."""
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM subscription_states
            WHERE tenant_id = %s
            FOR UPDATE
        """
        row = await fetch_one(query, (tenant_id,), connection=self._conn)
        return self._row_to_state(row)

    async def upsert(self, state: SubscriptionState) -> None:
        query = """
            INSERT INTO subscription_states (
                tenant_id, tier, status, provider_customer_id, provider_subscription_id,
                current_period_start, current_period_end, cancel_at_period_end, canceled_at,
                trial_start, trial_end, retention_expires_at, retention_reason,
                data_cleared_at, last_event_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id) DO UPDATE SET
                tier = EXCLUDED.tier,
                status = EXCLUDED.status,
                provider_customer_id = EXCLUDED.provider_customer_id,
                provider_subscription_id = EXCLUDED.provider_subscription_id,
                current_period_start = EXCLUDED.current_period_start,
                current_period_end = EXCLUDED.current_period_end,
                cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                canceled_at = EXCLUDED.canceled_at,
                trial_start = EXCLUDED.trial_start,
                trial_end = EXCLUDED.trial_end,
                retention_expires_at = EXCLUDED.retention_expires_at,
                retention_reason = EXCLUDED.retention_reason,
                data_cleared_at = EXCLUDED.data_cleared_at,
                last_event_at = EXCLUDED.last_event_at,
                updated_at = NOW()
        """
        params = (
            state.tenant_id,
            state.tier,
            state.status.value,
            state.provider_customer_id,
            state.provider_subscription_id,
            state.current_period_start,
            state.current_period_end,
            state.cancel_at_period_end,
            state.canceled_at,
            state.trial_start,
            state.trial_end,
            state.retention_expires_at,
            state.retention_reason,
            state.data_cleared_at,
            state.last_event_at,
        )
        await execute_query(query, params, connection=self._conn)

    async def list_with_subscription(self) -> list[SubscriptionState]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM subscription_states
            WHERE provider_subscription_id IS NOT NULL
            ORDER BY tenant_id
        """
        rows = await fetch_all(query, connection=self._conn)
        return [self._row_to_state(row) for row in rows]

    async def list_retention_expired(self, now: datetime) -> list[SubscriptionState]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM subscription_states
            WHERE retention_expires_at IS NOT NULL
              AND retention_expires_at <= %s
              AND data_cleared_at IS NULL
            ORDER BY retention_expires_at ASC
        """
        rows = await fetch_all(query, (now,), connection=self._conn)
        return [self._row_to_state(row) for row in rows]
