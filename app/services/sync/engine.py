"""
Pull-sync engine.

Drains the sync job queue one bounded page per invocation: claim a pending
job, make sure the tenant's token is fresh, fetch the page of changes since
the job's cursor, reconcile each record against the mapping store in its own
transaction, then advance the cursor. Every record application is
idempotent, so any failed job is safe to re-run.
"""

from structlog.contextvars import bound_contextvars

from app.config import settings
from app.db.helpers import DatabaseError, is_unique_violation, with_db_retry
from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import (
    ErrorKind,
    JobAlreadyRunningError,
    JobNotFoundError,
    ProviderError,
    ReauthRequiredError,
)
from app.models.domain.sync_domain import (
    CAUGHT_UP,
    EntityMapping,
    EntityType,
    JobStatus,
    JobType,
    ReconcileOutcome,
    RemoteRecord,
    SyncCursor,
    SyncJob,
    SyncRunResult,
)
from app.services.calendar.google_client import google_calendar_service
from app.services.credential_service import CredentialService, credential_service
from app.services.google_gmail_service import google_gmail_service
from app.services.reconciliation.revision import ACTION_OUTCOMES, ReconcileAction, decide_action

logger = get_logger(__name__)

# A concurrent job may create the same mapping first; one retry sees it
APPLY_ATTEMPTS = 2


class PullSyncEngine:
    """Runs sync jobs for the email and calendar integrations."""

    def __init__(
        self,
        store=None,
        credentials: CredentialService | None = None,
        providers: dict | None = None,
        page_size: int | None = None,
        cancel_check_interval: int | None = None,
    ):
        self._store = store or default_store
        self._credentials = credentials or credential_service
        self._providers = providers or {
            EntityType.EMAIL: google_gmail_service,
            EntityType.CALENDAR: google_calendar_service,
        }
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.cancel_check_interval = max(
            1, cancel_check_interval or settings.SYNC_CANCEL_CHECK_INTERVAL
        )

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue_job(
        self, tenant_id: str, job_type: JobType, provider: str = "google"
    ) -> SyncJob:
        """
        Create a pending job, or return the one already pending for
        (tenant, job type). Incremental jobs start from the latest completed
        cursor of the same entity family.
        """
        async with self._store.transaction() as session:
            existing = await session.jobs.find_pending(tenant_id, job_type)
            if existing:
                logger.info(
                    "Sync job already pending",
                    tenant_id=tenant_id,
                    job_type=job_type.value,
                    job_id=existing.id,
                )
                return existing

            from_cursor = None
            if not job_type.is_initial:
                latest = await session.jobs.latest_completed(tenant_id, job_type.entity_type)
                if latest and latest.to_cursor:
                    # A listing page token is only valid for the job that issued it
                    seed = SyncCursor.decode(latest.to_cursor)
                    if seed.sync_token:
                        from_cursor = SyncCursor(sync_token=seed.sync_token).encode()

            job = await session.jobs.create(tenant_id, job_type, from_cursor, provider)

        logger.info(
            "Sync job enqueued",
            tenant_id=tenant_id,
            job_type=job_type.value,
            job_id=job.id,
            has_cursor=bool(from_cursor),
        )
        return job

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_job(self, job_id: str) -> SyncJob:
        async with self._store.transaction() as session:
            job = await session.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str) -> SyncJob:
        """Mark a pending or running job failed/cancelled. Terminal jobs are returned as-is."""
        async with self._store.transaction() as session:
            job = await session.jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status in (JobStatus.PENDING, JobStatus.RUNNING):
                await session.jobs.fail(job_id, ErrorKind.CANCELLED, "Cancelled by request")
                job = await session.jobs.get(job_id)
                logger.info("Sync job cancelled", job_id=job_id, tenant_id=job.tenant_id)
        return job

    async def run_next_pending(self) -> SyncRunResult | None:
        """Run the oldest pending job that can be claimed, if any."""
        results = await self.run_pending(max_jobs=1)
        return results[0] if results else None

    async def run_pending(self, max_jobs: int | None = None) -> list[SyncRunResult]:
        """Run up to `max_jobs` pending jobs, oldest first."""
        limit = max_jobs or settings.SYNC_WORKER_MAX_JOBS_PER_TICK
        async with self._store.transaction() as session:
            pending = await session.jobs.list_pending(limit)

        results = []
        for job in pending:
            if len(results) >= limit:
                break
            try:
                results.append(await self.run_once(job.id))
            except JobAlreadyRunningError:
                logger.debug("Skipping job claimed elsewhere", job_id=job.id)
        return results

    # ------------------------------------------------------------------
    # run_once
    # ------------------------------------------------------------------

    async def run_once(self, job_id: str) -> SyncRunResult:
        """
        Process one page for one job.

        Raises:
            JobNotFoundError: no such job
            JobAlreadyRunningError: job is not pending, or another job of the
                same (tenant, type) holds the running slot
        """
        async with self._store.transaction() as session:
            job = await session.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PENDING:
            raise JobAlreadyRunningError(job_id, job.status.value)

        with bound_contextvars(job_id=job.id, tenant_id=job.tenant_id, job_type=job.job_type.value):
            return await self._run_claimable(job)

    async def _run_claimable(self, job: SyncJob) -> SyncRunResult:
        result = SyncRunResult(job_id=job.id)
        entity_type = job.job_type.entity_type

        try:
            credential, refreshed = await self._credentials.ensure_fresh(job.tenant_id, job.provider)
        except ReauthRequiredError as e:
            return await self._fail(job, result, ErrorKind.AUTH_EXPIRED, str(e))
        except ProviderError as e:
            return await self._fail(job, result, ErrorKind.PROVIDER_UNAVAILABLE, str(e))

        has_scope = (
            credential.has_gmail_access()
            if entity_type == EntityType.EMAIL
            else credential.has_calendar_access()
        )
        if credential.scopes and not has_scope:
            return await self._fail(
                job, result, ErrorKind.AUTH_EXPIRED, f"Credential lacks {entity_type.value} scope"
            )

        # New token and the running transition commit together
        async with self._store.transaction() as session:
            if refreshed:
                await session.credentials.save(credential)
            claimed = await session.jobs.claim(job)
        if not claimed:
            raise JobAlreadyRunningError(job.id, JobStatus.RUNNING.value)

        logger.info("Sync job started", from_cursor=job.from_cursor)

        try:
            return await self._run_claimed(job, credential.access_token, result)
        except Exception as e:
            logger.error(
                "Sync job crashed", error=str(e), error_type=type(e).__name__, exc_info=True
            )
            await self._mark_failed(job, ErrorKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
            raise

    async def _run_claimed(
        self, job: SyncJob, access_token: str, result: SyncRunResult
    ) -> SyncRunResult:
        entity_type = job.job_type.entity_type
        provider = self._providers[entity_type]
        cursor = SyncCursor.decode(job.from_cursor)

        try:
            page = await provider.fetch_changes(
                access_token, cursor, initial=job.job_type.is_initial, page_size=self.page_size
            )
        except ProviderError as e:
            if e.kind.needs_reconnect:
                return await self._fail(job, result, ErrorKind.AUTH_EXPIRED, str(e))
            if e.kind == ErrorKind.CURSOR_INVALID:
                await self._fail(job, result, ErrorKind.CURSOR_INVALID, str(e))
                restart = await self.enqueue_job(
                    job.tenant_id, JobType.initial_for(entity_type), job.provider
                )
                result.continuation_job_id = restart.id
                return result
            return await self._fail(job, result, ErrorKind.PROVIDER_UNAVAILABLE, str(e))

        for index, record in enumerate(page.records):
            if index and index % self.cancel_check_interval == 0 and await self._is_cancelled(job):
                logger.info("Sync job cancelled mid-page", processed=result.processed)
                result.error = ErrorKind.CANCELLED
                return result
            result.record(await self._apply_record(job, entity_type, record))

        next_cursor = (
            page.next_cursor.encode()
            if not page.next_cursor.is_empty
            else (job.from_cursor or CAUGHT_UP)
        )
        result.next_cursor = next_cursor

        async with self._store.transaction() as session:
            completed = await session.jobs.complete(job.id, next_cursor)
            if completed and page.has_more:
                continuation = await session.jobs.create(
                    job.tenant_id, job.job_type, next_cursor, job.provider
                )
                result.continuation_job_id = continuation.id

        if not completed:
            logger.info("Sync job cancelled before completion", processed=result.processed)
            result.error = ErrorKind.CANCELLED
            return result

        logger.info(
            "Sync job completed",
            processed=result.processed,
            outcomes=result.outcomes,
            has_more=page.has_more,
            continuation_job_id=result.continuation_job_id,
        )
        return result

    async def _apply_record(
        self, job: SyncJob, entity_type: EntityType, record: RemoteRecord
    ) -> ReconcileOutcome:
        for attempt in range(1, APPLY_ATTEMPTS + 1):
            try:
                return await self._apply_record_once(job, entity_type, record)
            except DatabaseError as e:
                if attempt < APPLY_ATTEMPTS and is_unique_violation(e):
                    logger.info("Mapping created concurrently, re-reading", remote_id=record.remote_id)
                    continue
                raise
        raise RuntimeError("record apply loop exhausted")

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def _apply_record_once(
        self, job: SyncJob, entity_type: EntityType, record: RemoteRecord
    ) -> ReconcileOutcome:
        tenant_id = job.tenant_id
        async with self._store.transaction() as session:
            mapping = await session.mappings.get_by_remote(tenant_id, entity_type, record.remote_id)
            action = decide_action(mapping, record)

            if action == ReconcileAction.CREATE:
                local_id = await session.entities.create(tenant_id, entity_type, record.fields)
                await session.mappings.create(
                    EntityMapping(
                        tenant_id=tenant_id,
                        entity_type=entity_type,
                        local_id=local_id,
                        remote_id=record.remote_id,
                        remote_revision=record.revision,
                    )
                )
            elif action == ReconcileAction.UPDATE:
                await session.entities.update(tenant_id, entity_type, mapping.local_id, record.fields)
                await session.mappings.update_revision(
                    tenant_id, entity_type, record.remote_id, record.revision
                )
            elif action == ReconcileAction.DELETE:
                await session.entities.soft_delete(
                    tenant_id, entity_type, mapping.local_id, deleted_by="remote"
                )
                await session.mappings.delete(tenant_id, entity_type, record.remote_id)
            elif action == ReconcileAction.IGNORE_STALE:
                logger.debug(
                    "Remote revision not newer, skipping",
                    error_kind=ErrorKind.CONFLICT_STALE.value,
                    remote_id=record.remote_id,
                    incoming_revision=record.revision,
                    stored_revision=mapping.remote_revision,
                )

        return ACTION_OUTCOMES[action]

    async def _is_cancelled(self, job: SyncJob) -> bool:
        async with self._store.transaction() as session:
            current = await session.jobs.get(job.id)
        return current is None or current.status != JobStatus.RUNNING

    async def _mark_failed(self, job: SyncJob, kind: ErrorKind, detail: str) -> None:
        async with self._store.transaction() as session:
            await session.jobs.fail(job.id, kind, detail)

    async def _fail(
        self, job: SyncJob, result: SyncRunResult, kind: ErrorKind, detail: str
    ) -> SyncRunResult:
        await self._mark_failed(job, kind, detail)
        result.error = kind
        result.error_detail = detail
        result.next_cursor = job.from_cursor
        log = logger.warning if kind.needs_reconnect else logger.info
        log("Sync job failed", error_kind=kind.value, error=detail)
        return result


pull_sync_engine = PullSyncEngine()
