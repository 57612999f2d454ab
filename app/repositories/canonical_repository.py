"""
Canonical email/calendar rows written by the pull-sync engine.

Provider adapters emit field dicts keyed by column name; only whitelisted
columns are ever interpolated into SQL.
"""

from typing import Any

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.models.domain.sync_domain import EntityType

ENTITY_TABLES: dict[EntityType, str] = {
    EntityType.EMAIL: "email_messages",
    EntityType.CALENDAR: "calendar_events",
}

ENTITY_COLUMNS: dict[EntityType, tuple[str, ...]] = {
    EntityType.EMAIL: (
        "thread_id",
        "subject",
        "snippet",
        "from_address",
        "to_addresses",
        "cc_addresses",
        "labels",
        "is_read",
        "is_starred",
        "internal_date",
    ),
    EntityType.CALENDAR: (
        "calendar_id",
        "summary",
        "description",
        "location",
        "status",
        "start_at",
        "end_at",
        "attendees",
        "hangout_link",
    ),
}

JSON_COLUMNS = {"attendees"}


def _column_values(entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for column in ENTITY_COLUMNS[entity_type]:
        if column in fields:
            value = fields[column]
            values[column] = Jsonb(value) if column in JSON_COLUMNS else value
    return values


class CanonicalRepository:
    """Writes canonical entities; deletes are soft (`deleted_at`, `deleted_by`)."""

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    async def create(self, tenant_id: str, entity_type: EntityType, fields: dict[str, Any]) -> str:
        values = _column_values(entity_type, fields)
        columns = ["tenant_id", *values.keys()]
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({params}) RETURNING id").format(
            table=sql.Identifier(ENTITY_TABLES[entity_type]),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            params=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        row = await fetch_one(query, (tenant_id, *values.values()), connection=self._conn)
        if not row:
            raise DatabaseError("Failed to create canonical entity", operation="create_entity")
        return str(row["id"])

    async def update(
        self, tenant_id: str, entity_type: EntityType, local_id: str, fields: dict[str, Any]
    ) -> None:
        values = _column_values(entity_type, fields)
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in values
        ]
        # A re-sighted record is live again even if an earlier pass soft-deleted it
        assignments.append(sql.SQL("updated_at = NOW(), deleted_at = NULL, deleted_by = NULL"))
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE id = %s AND tenant_id = %s").format(
            table=sql.Identifier(ENTITY_TABLES[entity_type]),
            assignments=sql.SQL(", ").join(assignments),
        )
        await execute_query(query, (*values.values(), local_id, tenant_id), connection=self._conn)

    async def soft_delete(
        self, tenant_id: str, entity_type: EntityType, local_id: str, deleted_by: str = "remote"
    ) -> None:
        query = sql.SQL(
            "UPDATE {table} SET deleted_at = NOW(), deleted_by = %s, updated_at = NOW() "
            "WHERE id = %s AND tenant_id = %s AND deleted_at IS NULL"
        ).format(table=sql.Identifier(ENTITY_TABLES[entity_type]))
        await execute_query(query, (deleted_by, local_id, tenant_id), connection=self._conn)

    async def get(self, tenant_id: str, entity_type: EntityType, local_id: str) -> dict | None:
        query = sql.SQL("SELECT * FROM {table} WHERE id = %s AND tenant_id = %s").format(
            table=sql.Identifier(ENTITY_TABLES[entity_type])
        )
        return await fetch_one(query, (local_id, tenant_id), connection=self._conn)

    async def purge_tenant(self, tenant_id: str) -> dict[str, int]:
        """Hard-delete every canonical row for a tenant (retention cleanup only)."""
        removed = {}
        for entity_type, table in ENTITY_TABLES.items():
            query = sql.SQL("DELETE FROM {table} WHERE tenant_id = %s").format(
                table=sql.Identifier(table)
            )
            removed[entity_type.value] = await execute_query(
                query, (tenant_id,), connection=self._conn
            )
        return removed
