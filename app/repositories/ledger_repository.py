"""
Idempotency ledger for pushed billing events.
"""

import psycopg

from app.db.helpers import execute_query


class LedgerRepository:
    """`webhook_events`: the insert is the only "already processed" gate."""

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    async def record(self, event_id: str, event_type: str | None = None) -> bool:
        """Insert the event id. Returns False when it was already present."""
        query = """
            INSERT INTO webhook_events (event_id, event_type)
            VALUES (%s, %s)
            ON CONFLICT (event_id) DO NOTHING
        """
        inserted = await execute_query(query, (event_id, event_type), connection=self._conn)
        return inserted == 1
