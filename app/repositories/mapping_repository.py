"""
Persistence for remote <-> local entity mappings.
"""

import psycopg

from app.db.helpers import execute_query, fetch_one
from app.models.domain.sync_domain import EntityMapping, EntityType


class MappingRepository:
    """Mapping Store backed by `entity_mappings`."""

    SELECT_COLUMNS = "tenant_id, entity_type, local_id, remote_id, remote_revision, updated_at"

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    @staticmethod
    def _row_to_mapping(row: dict | None) -> EntityMapping | None:
        if not row:
            return None
        return EntityMapping(
            tenant_id=row["tenant_id"],
            entity_type=row["entity_type"],
            local_id=str(row["local_id"]),
            remote_id=row["remote_id"],
            remote_revision=row.get("remote_revision"),
            updated_at=row.get("updated_at"),
        )

    async def get_by_remote(
        self, tenant_id: str, entity_type: EntityType, remote_id: str
    ) -> EntityMapping | None:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM entity_mappings
            WHERE tenant_id = %s AND entity_type = %s AND remote_id = %s
        """
        row = await fetch_one(
            query, (tenant_id, entity_type.value, remote_id), connection=self._conn
        )
        return self._row_to_mapping(row)

    async def create(self, mapping: EntityMapping) -> None:
        query = """
            INSERT INTO entity_mappings (tenant_id, entity_type, local_id, remote_id, remote_revision)
            VALUES (%s, %s, %s, %s, %s)
        """
        await execute_query(
            query,
            (
                mapping.tenant_id,
                mapping.entity_type.value,
                mapping.local_id,
                mapping.remote_id,
                mapping.remote_revision,
            ),
            connection=self._conn,
        )

    async def update_revision(
        self, tenant_id: str, entity_type: EntityType, remote_id: str, revision: str | None
    ) -> None:
        query = """
            UPDATE entity_mappings
            SET remote_revision = %s, updated_at = NOW()
            WHERE tenant_id = %s AND entity_type = %s AND remote_id = %s
        """
        await execute_query(
            query, (revision, tenant_id, entity_type.value, remote_id), connection=self._conn
        )

    async def delete(self, tenant_id: str, entity_type: EntityType, remote_id: str) -> None:
        query = """
            DELETE FROM entity_mappings
            WHERE tenant_id = %s AND entity_type = %s AND remote_id = %s
        """
        await execute_query(
            query, (tenant_id, entity_type.value, remote_id), connection=self._conn
        )

    async def delete_for_tenant(self, tenant_id: str) -> int:
        return await execute_query(
            "DELETE FROM entity_mappings WHERE tenant_id = %s", (tenant_id,), connection=self._conn
        )
