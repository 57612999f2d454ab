"""
Sync API Routes
Queue, inspect and cancel pull-sync jobs for the authenticated tenant.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import tenant_dependency
from app.infrastructure.observability.logging import get_logger
from app.models.api.sync_request import EnqueueSyncJobRequest
from app.models.api.sync_response import SyncJobResponse
from app.models.domain.errors import JobNotFoundError, ReauthRequiredError
from app.models.domain.sync_domain import SyncJob
from app.services.credential_service import CredentialService, credential_service
from app.services.sync.engine import PullSyncEngine, pull_sync_engine

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_sync_engine() -> PullSyncEngine:
    return pull_sync_engine


def get_credential_service() -> CredentialService:
    return credential_service


def reconnect_required(error: ReauthRequiredError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": error.kind.value, "action": "reconnect", "message": str(error)},
    )


async def _tenant_job(engine: PullSyncEngine, job_id: str, tenant_id: str) -> SyncJob:
    try:
        job = await engine.get_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    if job.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Sync job {job_id} not found")
    return job


@router.post("/jobs", response_model=SyncJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_sync_job(
    request: EnqueueSyncJobRequest,
    tenant_id: str = Depends(tenant_dependency),
    engine: PullSyncEngine = Depends(get_sync_engine),
    credentials: CredentialService = Depends(get_credential_service),
):
    """Queue a sync job; returns the already-pending one if there is one."""
    if await credentials.get(tenant_id, request.provider) is None:
        raise reconnect_required(
            ReauthRequiredError(
                "No credential stored for provider", tenant_id=tenant_id, provider=request.provider
            )
        )

    job = await engine.enqueue_job(tenant_id, request.job_type, request.provider)
    return SyncJobResponse.from_job(job)


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: str,
    tenant_id: str = Depends(tenant_dependency),
    engine: PullSyncEngine = Depends(get_sync_engine),
):
    return SyncJobResponse.from_job(await _tenant_job(engine, job_id, tenant_id))


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_sync_job(
    job_id: str,
    tenant_id: str = Depends(tenant_dependency),
    engine: PullSyncEngine = Depends(get_sync_engine),
):
    await _tenant_job(engine, job_id, tenant_id)
    job = await engine.cancel_job(job_id)
    return SyncJobResponse.from_job(job)
