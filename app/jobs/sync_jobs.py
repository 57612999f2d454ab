"""
Pull-sync background jobs.

- scheduler: enqueue incremental email/calendar jobs for every connected tenant
- worker: drain pending jobs, one page each
"""

from app.config import settings
from app.db.store import store
from app.infrastructure.observability.logging import get_logger
from app.jobs.scheduling import PeriodicJob
from app.models.domain.credential_domain import Credential
from app.models.domain.sync_domain import JobType
from app.services.sync.engine import pull_sync_engine

logger = get_logger(__name__)

SCHEDULER_INTERVAL_MINUTES = 15


def job_types_for_scopes(scopes: list[str]) -> list[JobType]:
    """Incremental job types a credential's scopes allow. No recorded scopes allows both."""
    probe = Credential(tenant_id="", access_token="", scopes=scopes)
    job_types = []
    if not scopes or probe.has_gmail_access():
        job_types.append(JobType.EMAIL_INCREMENTAL)
    if not scopes or probe.has_calendar_access():
        job_types.append(JobType.CALENDAR_INCREMENTAL)
    return job_types


async def run_sync_scheduler(engine=None, store_=None) -> dict:
    engine = engine or pull_sync_engine
    async with (store_ or store).transaction() as session:
        tenants = await session.credentials.list_tenants("google")

    summary = {"tenants": len(tenants), "enqueued": 0, "failed": 0}
    for tenant in tenants:
        for job_type in job_types_for_scopes(tenant["scopes"]):
            try:
                await engine.enqueue_job(tenant["tenant_id"], job_type)
                summary["enqueued"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(
                    "Failed to enqueue sync job",
                    tenant_id=tenant["tenant_id"],
                    job_type=job_type.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    logger.info("Sync scheduler cycle completed", **summary)
    return summary


async def run_sync_worker_tick(engine=None) -> dict:
    engine = engine or pull_sync_engine
    results = await engine.run_pending(settings.SYNC_WORKER_MAX_JOBS_PER_TICK)
    summary = {
        "jobs": len(results),
        "succeeded": sum(1 for result in results if result.succeeded),
        "processed": sum(result.processed for result in results),
    }
    if results:
        logger.info("Sync worker tick completed", **summary)
    return summary


sync_scheduler_job = PeriodicJob("sync_scheduler", run_sync_scheduler, SCHEDULER_INTERVAL_MINUTES * 60)
sync_worker_job = PeriodicJob("sync_worker", run_sync_worker_tick, settings.SYNC_WORKER_POLL_SECONDS)


async def start_sync_scheduler() -> None:
    await sync_scheduler_job.run_forever()


async def start_sync_worker() -> None:
    await sync_worker_job.run_forever()
