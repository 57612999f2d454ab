# app/models/api/sync_response.py
"""
Sync API response models.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.sync_domain import SyncJob, SyncRunResult


class SyncJobResponse(BaseModel):
    """Job status as polled by the settings UI."""

    id: str
    tenant_id: str
    job_type: str
    status: str
    state: str = Field(..., description="needs_reconnect, retrying, running, cancelled, error or ok")
    from_cursor: str | None = None
    to_cursor: str | None = None
    error_kind: str | None = None
    error_detail: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            job_type=job.job_type.value,
            status=job.status.value,
            state=job.user_facing_state(),
            from_cursor=job.from_cursor,
            to_cursor=job.to_cursor,
            error_kind=job.error_kind.value if job.error_kind else None,
            error_detail=job.error_detail,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class SyncRunResponse(BaseModel):
    job_id: str
    processed: int
    next_cursor: str | None = None
    error: str | None = None
    error_detail: str | None = None
    outcomes: dict[str, int] = Field(default_factory=dict)
    continuation_job_id: str | None = None

    @classmethod
    def from_result(cls, result: SyncRunResult) -> "SyncRunResponse":
        return cls(**result.to_dict())


class RunPendingResponse(BaseModel):
    ran: bool
    result: SyncRunResponse | None = None
