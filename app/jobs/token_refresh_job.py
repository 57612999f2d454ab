"""
Token Refresh Job for proactive OAuth token management.
Refreshes Google credentials before they expire so sync jobs rarely have to.
"""

from app.infrastructure.observability.logging import get_logger
from app.jobs.scheduling import PeriodicJob
from app.services.credential_service import credential_service

logger = get_logger(__name__)

JOB_INTERVAL_MINUTES = 10


async def run_token_refresh_job() -> dict:
    """Run a single iteration of the token refresh job."""
    logger.info("Starting token refresh job", buffer_minutes=credential_service.buffer_minutes)
    return await credential_service.refresh_expiring(provider="google")


token_refresh_job = PeriodicJob("token_refresh", run_token_refresh_job, JOB_INTERVAL_MINUTES * 60)


async def start_token_refresh_scheduler() -> None:
    await token_refresh_job.run_forever()
