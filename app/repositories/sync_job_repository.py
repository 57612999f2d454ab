"""
Persistence for the sync job queue.

Every status transition is a conditional UPDATE so two workers racing on the
same job cannot both win; `claim` additionally relies on the partial unique
index `uq_sync_jobs_one_running` to keep one running job per (tenant, type).
"""

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, is_unique_violation
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import ErrorKind
from app.models.domain.sync_domain import EntityType, JobType, SyncJob

logger = get_logger(__name__)


class SyncJobRepository:
    """Job Queue backed by `sync_jobs`."""

    JOB_SELECT_COLUMNS = """
        id, tenant_id, provider, job_type, status, from_cursor, to_cursor,
        error_kind, error_detail, created_at, updated_at
    """

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    @staticmethod
    def _row_to_job(row: dict | None) -> SyncJob | None:
        if not row:
            return None

        return SyncJob(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            provider=row["provider"],
            job_type=row["job_type"],
            status=row["status"],
            from_cursor=row.get("from_cursor"),
            to_cursor=row.get("to_cursor"),
            error_kind=row.get("error_kind"),
            error_detail=row.get("error_detail"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    async def create(
        self,
        tenant_id: str,
        job_type: JobType,
        from_cursor: str | None = None,
        provider: str = "google",
    ) -> SyncJob:
        query = f"""
            INSERT INTO sync_jobs (tenant_id, provider, job_type, status, from_cursor)
            VALUES (%s, %s, %s, 'pending', %s)
            RETURNING {self.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(
            query, (tenant_id, provider, job_type.value, from_cursor), connection=self._conn
        )
        if not row:
            raise DatabaseError("Failed to create sync job", operation="create_sync_job")
        return self._row_to_job(row)

    async def get(self, job_id: str) -> SyncJob | None:
        query = f"SELECT {self.JOB_SELECT_COLUMNS} FROM sync_jobs WHERE id = %s"
        row = await fetch_one(query, (job_id,), connection=self._conn)
        return self._row_to_job(row)

    async def find_pending(self, tenant_id: str, job_type: JobType) -> SyncJob | None:
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM sync_jobs
            WHERE tenant_id = %s AND job_type = %s AND status = 'pending'
            ORDER BY created_at ASC
            LIMIT 1
        """
        row = await fetch_one(query, (tenant_id, job_type.value), connection=self._conn)
        return self._row_to_job(row)

    async def latest_completed(self, tenant_id: str, entity_type: EntityType) -> SyncJob | None:
        """Most recent completed job of either type in the entity family."""
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM sync_jobs
            WHERE tenant_id = %s
              AND job_type IN (%s, %s)
              AND status = 'completed'
            ORDER BY updated_at DESC
            LIMIT 1
        """
        params = (
            tenant_id,
            JobType.initial_for(entity_type).value,
            JobType.incremental_for(entity_type).value,
        )
        row = await fetch_one(query, params, connection=self._conn)
        return self._row_to_job(row)

    async def list_pending(self, limit: int = 20) -> list[SyncJob]:
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM sync_jobs
            WHERE status = 'pending'
            ORDER BY created_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (limit,), connection=self._conn)
        return [self._row_to_job(row) for row in rows]

    async def claim(self, job: SyncJob) -> bool:
        """
        Compare-and-swap pending -> running.

        Returns False when the job is no longer pending or another job of the
        same (tenant, type) is already running.
        """
        query = """
            UPDATE sync_jobs
            SET status = 'running', started_at = NOW(), updated_at = NOW()
            WHERE id = %s
              AND status = 'pending'
              AND NOT EXISTS (
                  SELECT 1 FROM sync_jobs running
                  WHERE running.tenant_id = %s
                    AND running.job_type = %s
                    AND running.status = 'running'
              )
        """
        params = (job.id, job.tenant_id, job.job_type.value)
        try:
            # Savepoint so a lost race on the unique index doesn't poison the caller's transaction
            async with self._conn.transaction():
                updated = await execute_query(query, params, connection=self._conn)
        except DatabaseError as e:
            if is_unique_violation(e):
                logger.info("Sync job claim lost to concurrent runner", job_id=job.id)
                return False
            raise
        return updated == 1

    async def complete(self, job_id: str, to_cursor: str) -> bool:
        query = """
            UPDATE sync_jobs
            SET status = 'completed', to_cursor = %s, error_kind = NULL,
                error_detail = NULL, finished_at = NOW(), updated_at = NOW()
            WHERE id = %s AND status = 'running'
        """
        return await execute_query(query, (to_cursor, job_id), connection=self._conn) == 1

    async def fail(self, job_id: str, kind: ErrorKind, detail: str | None = None) -> bool:
        """Mark a pending or running job failed. No-op once the job is terminal."""
        query = """
            UPDATE sync_jobs
            SET status = 'failed', error_kind = %s, error_detail = %s,
                finished_at = NOW(), updated_at = NOW()
            WHERE id = %s AND status IN ('pending', 'running')
        """
        params = (kind.value, (detail or "")[:1000] or None, job_id)
        return await execute_query(query, params, connection=self._conn) == 1
