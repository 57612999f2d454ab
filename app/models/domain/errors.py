# app/models/domain/errors.py
"""
Typed error kinds for the reconciliation engines.

Provider clients decide the kind at the point where a raw HTTP or SDK
response is first parsed; callers branch on `kind`, never on message text.
"""

from enum import Enum


class ErrorKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    REAUTH_REQUIRED = "reauth_required"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CURSOR_INVALID = "cursor_invalid"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED_PAYLOAD = "malformed_payload"
    CONFLICT_STALE = "conflict_stale"
    CONFIGURATION_ERROR = "configuration_error"
    JOB_NOT_FOUND = "job_not_found"
    JOB_ALREADY_RUNNING = "job_already_running"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"

    @property
    def needs_reconnect(self) -> bool:
        return self in (ErrorKind.AUTH_EXPIRED, ErrorKind.REAUTH_REQUIRED)


class ReconciliationError(Exception):
    """Base exception for reconciliation operations."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.INTERNAL_ERROR,
        tenant_id: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.kind = kind
        self.tenant_id = tenant_id
        self.recoverable = recoverable


class ProviderError(ReconciliationError):
    """Raised by provider clients (Google, Stripe) with an already-classified kind."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
        provider: str | None = None,
        code: str | None = None,
    ):
        super().__init__(
            message,
            kind=kind,
            recoverable=kind in (ErrorKind.PROVIDER_UNAVAILABLE, ErrorKind.CURSOR_INVALID),
        )
        self.status_code = status_code
        self.provider = provider
        self.code = code


class ReauthRequiredError(ReconciliationError):
    """Refresh token absent or rejected; the tenant must reconnect the account."""

    def __init__(self, message: str, tenant_id: str | None = None, provider: str | None = None):
        super().__init__(
            message, kind=ErrorKind.REAUTH_REQUIRED, tenant_id=tenant_id, recoverable=False
        )
        self.provider = provider


class WebhookRejectedError(ReconciliationError):
    """Pushed event failed verification or parsing; it is never applied."""

    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message, kind=kind, recoverable=False)


class JobNotFoundError(ReconciliationError):
    def __init__(self, job_id: str):
        super().__init__(f"Sync job {job_id} not found", kind=ErrorKind.JOB_NOT_FOUND)
        self.job_id = job_id


class JobAlreadyRunningError(ReconciliationError):
    def __init__(self, job_id: str, status: str):
        super().__init__(
            f"Sync job {job_id} cannot start from status '{status}'",
            kind=ErrorKind.JOB_ALREADY_RUNNING,
        )
        self.job_id = job_id
        self.status = status


class ConfigurationError(ReconciliationError):
    """Fatal misconfiguration detected at startup (pricing margins, price IDs)."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.CONFIGURATION_ERROR, recoverable=False)


class SeatValidationError(ReconciliationError):
    """Rejected seat mutation (bad tier, owner removal, duplicate invite)."""

    def __init__(self, message: str, tenant_id: str | None = None):
        super().__init__(message, kind=ErrorKind.INTERNAL_ERROR, tenant_id=tenant_id, recoverable=False)


class SeatNotFoundError(ReconciliationError):
    def __init__(self, seat_id: str, tenant_id: str | None = None):
        super().__init__(f"Seat {seat_id} not found", tenant_id=tenant_id, recoverable=False)
        self.seat_id = seat_id
