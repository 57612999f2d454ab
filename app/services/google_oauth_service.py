"""
Google OAuth token endpoint client.

Only the refresh grant lives here: consent and code exchange belong to the
outer auth layer, which hands finished credentials to the credential service.
"""

from datetime import UTC, datetime, timedelta

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import ErrorKind, ProviderError, ReauthRequiredError
from app.services.infrastructure import google_http

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# OAuth error codes meaning the grant itself is dead and only re-consent helps
REAUTH_ERROR_CODES = {"invalid_grant", "unauthorized_client", "invalid_client"}


class TokenResponse:
    """Structured representation of OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = data.get("expires_in")
        self.scope = data.get("scope", "")

        if self.expires_in:
            self.expires_at = datetime.now(UTC) + timedelta(seconds=int(self.expires_in))
        else:
            self.expires_at = None

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []


class GoogleOAuthService:
    """Refreshes Google access tokens with typed failures."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client_id = settings.GOOGLE_CLIENT_ID
        self.client_secret = settings.GOOGLE_CLIENT_SECRET
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = google_http.create_client()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def refresh_access_token(
        self, refresh_token: str | None, tenant_id: str | None = None
    ) -> TokenResponse:
        """
        Exchange a refresh token for a new access token.

        The returned refresh token is None when Google did not rotate it;
        callers keep the one they already hold.

        Raises:
            ReauthRequiredError: No refresh token, or Google rejected the grant
            ProviderError: Transient token endpoint failure
        """
        if not refresh_token:
            raise ReauthRequiredError(
                "No refresh token stored; account must be reconnected",
                tenant_id=tenant_id,
                provider="google",
            )

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        response = await google_http.request_with_retry(
            self._get_client(),
            "POST",
            GOOGLE_TOKEN_URL,
            service="google_oauth",
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return self._handle_token_response(response, tenant_id)

    def _handle_token_response(
        self, response: httpx.Response, tenant_id: str | None
    ) -> TokenResponse:
        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            error_code = error_data.get("error") if isinstance(error_data, dict) else None

            logger.warning(
                "Google token refresh failed",
                tenant_id=tenant_id,
                status_code=response.status_code,
                error_code=error_code,
            )

            if error_code in REAUTH_ERROR_CODES or response.status_code in (400, 401):
                raise ReauthRequiredError(
                    f"Google rejected the refresh token ({error_code or response.status_code})",
                    tenant_id=tenant_id,
                    provider="google",
                )
            raise ProviderError(
                f"Google token endpoint error (HTTP {response.status_code})",
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                status_code=response.status_code,
                provider="google",
            )

        token_response = TokenResponse(google_http.parse_json(response, "google_oauth"))
        if not token_response.is_valid():
            raise ProviderError(
                "Invalid token response from Google",
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                status_code=response.status_code,
                provider="google",
            )

        logger.info(
            "Google token refresh successful",
            tenant_id=tenant_id,
            expires_in=token_response.expires_in,
            rotated_refresh_token=bool(token_response.refresh_token),
        )
        return token_response


google_oauth_service = GoogleOAuthService()
