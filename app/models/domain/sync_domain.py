# app/models/domain/sync_domain.py
"""
Pull-sync domain models: jobs, cursors, remote records and mappings.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlencode

from pydantic import BaseModel

from app.models.domain.errors import ErrorKind

# Stored as to_cursor when the provider handed back no continuation token
CAUGHT_UP = "caught_up"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EntityType(str, Enum):
    EMAIL = "email"
    CALENDAR = "calendar"


class JobType(str, Enum):
    EMAIL_INITIAL = "email_initial"
    EMAIL_INCREMENTAL = "email_incremental"
    CALENDAR_INITIAL = "calendar_initial"
    CALENDAR_INCREMENTAL = "calendar_incremental"

    @property
    def entity_type(self) -> EntityType:
        return EntityType.EMAIL if self.value.startswith("email") else EntityType.CALENDAR

    @property
    def is_initial(self) -> bool:
        return self.value.endswith("_initial")

    @classmethod
    def incremental_for(cls, entity_type: EntityType) -> "JobType":
        return cls(f"{entity_type.value}_incremental")

    @classmethod
    def initial_for(cls, entity_type: EntityType) -> "JobType":
        return cls(f"{entity_type.value}_initial")


class SyncJob(BaseModel):
    """One sync attempt for a tenant."""

    id: str
    tenant_id: str
    provider: str = "google"
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    from_cursor: str | None = None
    to_cursor: str | None = None
    error_kind: ErrorKind | None = None
    error_detail: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def user_facing_state(self) -> str:
        """State the settings UI polls: needs_reconnect, retrying, running or ok."""
        if self.status == JobStatus.FAILED and self.error_kind:
            if self.error_kind.needs_reconnect:
                return "needs_reconnect"
            if self.error_kind in (ErrorKind.PROVIDER_UNAVAILABLE, ErrorKind.CURSOR_INVALID):
                return "retrying"
            if self.error_kind == ErrorKind.CANCELLED:
                return "cancelled"
            return "error"
        if self.status in (JobStatus.PENDING, JobStatus.RUNNING):
            return "running"
        return "ok"


class EntityMapping(BaseModel):
    """Correspondence between a canonical row and its remote counterpart."""

    tenant_id: str
    entity_type: EntityType
    local_id: str
    remote_id: str
    remote_revision: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SyncCursor:
    """
    Opaque provider position.

    `sync_token` is where the next incremental run starts (Gmail historyId,
    Calendar nextSyncToken); `page_token` continues an unfinished listing.
    """

    sync_token: str | None = None
    page_token: str | None = None

    def encode(self) -> str:
        parts = {}
        if self.sync_token:
            parts["sync"] = self.sync_token
        if self.page_token:
            parts["page"] = self.page_token
        return urlencode(parts) if parts else CAUGHT_UP

    @classmethod
    def decode(cls, raw: str | None) -> "SyncCursor":
        if not raw or raw == CAUGHT_UP:
            return cls()
        values = dict(parse_qsl(raw))
        return cls(sync_token=values.get("sync"), page_token=values.get("page"))

    @property
    def is_empty(self) -> bool:
        return not self.sync_token and not self.page_token


@dataclass
class RemoteRecord:
    """One changed remote entity as reported by the provider."""

    remote_id: str
    revision: str | None
    deleted: bool = False
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class RemotePage:
    """One bounded page of changes plus where to resume."""

    records: list[RemoteRecord]
    next_cursor: SyncCursor
    has_more: bool = False


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STALE = "stale"
    SKIPPED = "skipped"


@dataclass
class SyncRunResult:
    """Outcome of one run_once invocation."""

    job_id: str
    processed: int = 0
    next_cursor: str | None = None
    error: ErrorKind | None = None
    error_detail: str | None = None
    outcomes: dict[str, int] = field(default_factory=dict)
    continuation_job_id: str | None = None

    def record(self, outcome: ReconcileOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "processed": self.processed,
            "next_cursor": self.next_cursor,
            "error": self.error.value if self.error else None,
            "error_detail": self.error_detail,
            "outcomes": dict(self.outcomes),
            "continuation_job_id": self.continuation_job_id,
        }
