# app/models/api/sync_request.py
"""
Sync API request models.
"""

from pydantic import BaseModel, Field

from app.models.domain.sync_domain import JobType


class EnqueueSyncJobRequest(BaseModel):
    """Request to queue a sync job for the authenticated tenant."""

    job_type: JobType = Field(..., description="email_initial, email_incremental, ...")
    provider: str = Field(default="google", description="OAuth provider")
