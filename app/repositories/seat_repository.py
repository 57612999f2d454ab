"""
Persistence for team seats.
"""

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.models.domain.billing_domain import SeatRecord, SeatStatus, Tier


class SeatRepository:
    """`seat_records`; removal is a status change, rows are kept for billing history."""

    SELECT_COLUMNS = """
        id, tenant_id, member_id, email, invite_token, tier, status,
        is_owner, created_at, updated_at
    """

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    @staticmethod
    def _row_to_seat(row: dict | None) -> SeatRecord | None:
        if not row:
            return None
        return SeatRecord(**{**row, "id": str(row["id"])})

    async def list_for_tenant(self, tenant_id: str, include_removed: bool = False) -> list[SeatRecord]:
        status_filter = "" if include_removed else "AND status <> 'removed'"
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM seat_records
            WHERE tenant_id = %s {status_filter}
            ORDER BY is_owner DESC, created_at ASC
        """
        rows = await fetch_all(query, (tenant_id,), connection=self._conn)
        return [self._row_to_seat(row) for row in rows]

    async def list_tenants_with_seats(self) -> list[str]:
        query = """
            SELECT DISTINCT tenant_id
            FROM seat_records
            WHERE status <> 'removed'
            ORDER BY tenant_id
        """
        rows = await fetch_all(query, connection=self._conn)
        return [row["tenant_id"] for row in rows]

    async def get(self, tenant_id: str, seat_id: str) -> SeatRecord | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM seat_records WHERE id = %s AND tenant_id = %s"
        row = await fetch_one(query, (seat_id, tenant_id), connection=self._conn)
        return self._row_to_seat(row)

    async def create(
        self,
        tenant_id: str,
        tier: Tier,
        status: SeatStatus = SeatStatus.PENDING,
        email: str | None = None,
        member_id: str | None = None,
        invite_token: str | None = None,
        is_owner: bool = False,
    ) -> SeatRecord:
        query = f"""
            INSERT INTO seat_records (
                tenant_id, member_id, email, invite_token, tier, status, is_owner
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.SELECT_COLUMNS}
        """
        params = (tenant_id, member_id, email, invite_token, tier.value, status.value, is_owner)
        row = await fetch_one(query, params, connection=self._conn)
        if not row:
            raise DatabaseError("Failed to create seat", operation="create_seat")
        return self._row_to_seat(row)

    async def update_tier(self, tenant_id: str, seat_id: str, tier: Tier) -> SeatRecord | None:
        query = f"""
            UPDATE seat_records
            SET tier = %s, updated_at = NOW()
            WHERE id = %s AND tenant_id = %s AND status <> 'removed'
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(query, (tier.value, seat_id, tenant_id), connection=self._conn)
        return self._row_to_seat(row)

    async def mark_removed(self, tenant_id: str, seat_id: str) -> bool:
        query = """
            UPDATE seat_records
            SET status = 'removed', updated_at = NOW()
            WHERE id = %s AND tenant_id = %s AND status <> 'removed'
        """
        return await execute_query(query, (seat_id, tenant_id), connection=self._conn) == 1
