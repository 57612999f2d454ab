"""
Credential Service for OAuth token lifecycle management.
Get, replace, refresh and hand out valid access tokens, plus the
billing-customer identifiers stored alongside them.
"""

from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db.helpers import with_db_retry
from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.models.domain.credential_domain import Credential
from app.models.domain.errors import ProviderError, ReauthRequiredError
from app.services.google_oauth_service import GoogleOAuthService, google_oauth_service

logger = get_logger(__name__)


class CredentialService:
    """
    Credential Store operations.

    `refresh` only talks to the provider; persisting is a separate step so
    the sync engine can write the new token in the same transaction that
    claims its job.
    """

    def __init__(self, store=None, oauth: GoogleOAuthService | None = None):
        self._store = store or default_store
        self._oauth = oauth or google_oauth_service
        self.buffer_minutes = settings.TOKEN_REFRESH_BUFFER_MINUTES

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, tenant_id: str, provider: str = "google") -> Credential | None:
        async with self._store.transaction() as session:
            return await session.credentials.get(tenant_id, provider)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def replace(self, credential: Credential) -> None:
        """
        Store a credential from a fresh consent (reconnect).

        An exchange without a refresh token keeps the stored one.
        """
        async with self._store.transaction() as session:
            await session.credentials.save(credential)
        logger.info(
            "Credential replaced",
            tenant_id=credential.tenant_id,
            provider=credential.provider,
            has_refresh_token=bool(credential.refresh_token),
        )

    async def refresh(self, credential: Credential) -> Credential:
        """
        Exchange the refresh token for a new access token. Not persisted.

        Raises:
            ReauthRequiredError: refresh token missing or rejected
            ProviderError: token endpoint temporarily unavailable
        """
        token_response = await self._oauth.refresh_access_token(
            credential.refresh_token, tenant_id=credential.tenant_id
        )
        return credential.with_refreshed_tokens(
            access_token=token_response.access_token,
            expires_at=token_response.expires_at,
            refresh_token=token_response.refresh_token,
            scopes=token_response.scopes,
        )

    async def ensure_fresh(
        self, tenant_id: str, provider: str = "google"
    ) -> tuple[Credential, bool]:
        """
        Load the credential and refresh it in memory when near expiry.

        Returns:
            (credential, refreshed) where `refreshed` means the caller must persist it
        """
        credential = await self.get(tenant_id, provider)
        if credential is None:
            raise ReauthRequiredError(
                "No credential stored for tenant", tenant_id=tenant_id, provider=provider
            )
        if not credential.needs_refresh(self.buffer_minutes):
            return credential, False
        return await self.refresh(credential), True

    async def get_valid_access_token(self, tenant_id: str, provider: str = "google") -> str:
        """Return a usable access token, refreshing and persisting if near expiry."""
        credential, refreshed = await self.ensure_fresh(tenant_id, provider)
        if refreshed:
            async with self._store.transaction() as session:
                await session.credentials.save(credential)
            logger.info("Access token refreshed", tenant_id=tenant_id, provider=provider)
        return credential.access_token

    async def refresh_expiring(self, provider: str = "google") -> dict:
        """
        Proactively refresh every credential expiring within the buffer.

        One tenant's failure never stops the batch.
        """
        cutoff = datetime.now(UTC) + timedelta(minutes=self.buffer_minutes)
        async with self._store.transaction() as session:
            expiring = await session.credentials.list_expiring(cutoff, provider)

        summary = {"checked": len(expiring), "refreshed": 0, "reauth_required": 0, "failed": 0}
        for credential in expiring:
            try:
                refreshed = await self.refresh(credential)
                async with self._store.transaction() as session:
                    await session.credentials.save(refreshed)
                summary["refreshed"] += 1
            except ReauthRequiredError:
                summary["reauth_required"] += 1
                logger.warning(
                    "Proactive refresh needs reconnect", tenant_id=credential.tenant_id
                )
            except ProviderError as e:
                summary["failed"] += 1
                logger.warning(
                    "Proactive refresh failed, will retry next run",
                    tenant_id=credential.tenant_id,
                    error=str(e),
                )

        logger.info("Proactive token refresh finished", **summary)
        return summary

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_billing_customer(self, tenant_id: str) -> str | None:
        async with self._store.transaction() as session:
            return await session.credentials.get_billing_customer(tenant_id)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def set_billing_customer(self, tenant_id: str, customer_id: str) -> None:
        async with self._store.transaction() as session:
            await session.credentials.set_billing_customer(tenant_id, customer_id)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_tenant_by_customer(self, customer_id: str) -> str | None:
        async with self._store.transaction() as session:
            return await session.credentials.find_tenant_by_customer(customer_id)


credential_service = CredentialService()
