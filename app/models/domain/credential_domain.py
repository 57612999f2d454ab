# app/models/domain/credential_domain.py
"""
Credential domain model.
One OAuth credential per (tenant, provider), decrypted in memory only.
"""

from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, Field


class Credential(BaseModel):
    """Domain model for OAuth credentials (decrypted)."""

    tenant_id: str
    provider: Literal["google"] = "google"
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None

    def is_expired(self) -> bool:
        """Check if access token is expired."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) >= self.expires_at

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """Check if token should be refreshed soon."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) + timedelta(minutes=buffer_minutes) >= self.expires_at

    def has_scope(self, fragment: str) -> bool:
        return any(fragment in scope for scope in self.scopes)

    def has_gmail_access(self) -> bool:
        return self.has_scope("gmail")

    def has_calendar_access(self) -> bool:
        return self.has_scope("calendar")

    def with_refreshed_tokens(
        self,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
        scopes: list[str] | None = None,
    ) -> "Credential":
        """
        Apply a token exchange result.

        A missing or empty refresh token in the exchange never overwrites
        the one already held.
        """
        return self.model_copy(
            update={
                "access_token": access_token,
                "expires_at": expires_at,
                "refresh_token": refresh_token or self.refresh_token,
                "scopes": scopes or self.scopes,
                "updated_at": datetime.now(UTC),
            }
        )
