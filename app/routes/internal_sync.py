"""
Internal sync triggers for cron and operators.
Guarded by the shared `x-internal-secret` header instead of a user token.
"""

import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.api.sync_response import RunPendingResponse, SyncRunResponse
from app.models.domain.errors import JobAlreadyRunningError, JobNotFoundError
from app.routes.sync import get_sync_engine
from app.services.sync.engine import PullSyncEngine

logger = get_logger(__name__)


def require_internal_secret(x_internal_secret: str | None = Header(default=None)) -> None:
    expected = settings.INTERNAL_SYNC_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal sync endpoints are not configured",
        )
    if not x_internal_secret or not secrets.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal secret")


router = APIRouter(
    prefix="/internal/sync",
    tags=["internal"],
    dependencies=[Depends(require_internal_secret)],
)


@router.post("/run-once", response_model=RunPendingResponse)
async def run_next_pending_job(engine: PullSyncEngine = Depends(get_sync_engine)):
    """Claim and run the oldest pending job, if any."""
    result = await engine.run_next_pending()
    if result is None:
        return RunPendingResponse(ran=False)
    return RunPendingResponse(ran=True, result=SyncRunResponse.from_result(result))


@router.post("/jobs/{job_id}/run", response_model=SyncRunResponse)
async def run_sync_job(job_id: str, engine: PullSyncEngine = Depends(get_sync_engine)):
    try:
        result = await engine.run_once(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return SyncRunResponse.from_result(result)
