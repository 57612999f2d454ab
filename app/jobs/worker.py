"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.

    python -m app.jobs.worker sync_worker
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.billing_reconcile_job import start_billing_reconcile_scheduler
from app.jobs.retention_cleanup_job import start_retention_cleanup_scheduler
from app.jobs.sync_jobs import start_sync_scheduler, start_sync_worker
from app.jobs.token_refresh_job import start_token_refresh_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "sync_worker": start_sync_worker,
    "sync_scheduler": start_sync_scheduler,
    "token_refresh": start_token_refresh_scheduler,
    "billing_reconcile": start_billing_reconcile_scheduler,
    "retention_cleanup": start_retention_cleanup_scheduler,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "sync_worker").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job with the database pool open."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await db_pool.initialize()
    try:
        await JOB_REGISTRY[name]()
    finally:
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.log_level)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
