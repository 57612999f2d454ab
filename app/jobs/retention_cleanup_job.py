"""
Retention cleanup job.

Daily: clears synced data for tenants whose retention window has expired.
In development it only runs when invoked explicitly.
"""

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.jobs.scheduling import PeriodicJob
from app.services.billing.retention_service import retention_service

logger = get_logger(__name__)

JOB_INTERVAL_HOURS = 24


async def run_retention_cleanup_job() -> dict:
    return await retention_service.cleanup_expired()


retention_cleanup_job = PeriodicJob(
    "retention_cleanup", run_retention_cleanup_job, JOB_INTERVAL_HOURS * 3600
)


async def start_retention_cleanup_scheduler() -> None:
    if settings.environment == "development":
        logger.info("Retention cleanup scheduler disabled in development, running once")
        await retention_cleanup_job.run_once()
        return
    await retention_cleanup_job.run_forever()
