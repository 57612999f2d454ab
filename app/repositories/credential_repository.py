"""
Persistence for OAuth credentials and billing-customer identifiers.

Tokens are encrypted on the way in and decrypted on the way out; nothing
above this layer ever sees ciphertext.
"""

from datetime import datetime

import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.credential_domain import Credential
from app.services.infrastructure.encryption_service import (
    decrypt_oauth_tokens,
    encrypt_oauth_tokens,
)

logger = get_logger(__name__)


class CredentialRepository:
    """Credential Store backed by `oauth_credentials` and `billing_customers`."""

    SELECT_COLUMNS = """
        tenant_id, provider, access_token, refresh_token,
        expires_at, scopes, updated_at
    """

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    @staticmethod
    def _row_to_credential(row: dict | None) -> Credential | None:
        if not row:
            return None

        access_token, refresh_token = decrypt_oauth_tokens(
            row["access_token"], row.get("refresh_token")
        )
        return Credential(
            tenant_id=row["tenant_id"],
            provider=row["provider"],
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=row.get("expires_at"),
            scopes=list(row.get("scopes") or []),
            updated_at=row.get("updated_at"),
        )

    async def get(self, tenant_id: str, provider: str = "google") -> Credential | None:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM oauth_credentials
            WHERE tenant_id = %s AND provider = %s
        """
        row = await fetch_one(query, (tenant_id, provider), connection=self._conn)
        return self._row_to_credential(row)

    async def save(self, credential: Credential) -> None:
        """
        Upsert a credential.

        A NULL refresh token keeps the stored one (COALESCE), so a token
        exchange that omits it can never erase it.
        """
        encrypted_access, encrypted_refresh = encrypt_oauth_tokens(
            credential.access_token, credential.refresh_token
        )
        query = """
            INSERT INTO oauth_credentials (
                tenant_id, provider, access_token, refresh_token, expires_at, scopes
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, provider) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, oauth_credentials.refresh_token),
                expires_at = EXCLUDED.expires_at,
                scopes = EXCLUDED.scopes,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                credential.tenant_id,
                credential.provider,
                encrypted_access,
                encrypted_refresh,
                credential.expires_at,
                credential.scopes,
            ),
            connection=self._conn,
        )
        logger.debug(
            "Credential stored",
            tenant_id=credential.tenant_id,
            provider=credential.provider,
            has_refresh_token=bool(credential.refresh_token),
        )

    async def list_expiring(self, before: datetime, provider: str = "google") -> list[Credential]:
        """Credentials with a refresh token whose access token expires before `before`."""
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM oauth_credentials
            WHERE provider = %s
              AND refresh_token IS NOT NULL
              AND expires_at IS NOT NULL
              AND expires_at <= %s
            ORDER BY expires_at ASC
        """
        rows = await fetch_all(query, (provider, before), connection=self._conn)
        return [self._row_to_credential(row) for row in rows]

    async def list_tenants(self, provider: str = "google") -> list[dict]:
        """Connected tenants and their granted scopes, without decrypting tokens."""
        query = """
            SELECT tenant_id, scopes
            FROM oauth_credentials
            WHERE provider = %s
            ORDER BY tenant_id
        """
        rows = await fetch_all(query, (provider,), connection=self._conn)
        return [{"tenant_id": row["tenant_id"], "scopes": list(row["scopes"] or [])} for row in rows]

    async def get_billing_customer(self, tenant_id: str) -> str | None:
        row = await fetch_one(
            "SELECT customer_id FROM billing_customers WHERE tenant_id = %s",
            (tenant_id,),
            connection=self._conn,
        )
        return row["customer_id"] if row else None

    async def set_billing_customer(self, tenant_id: str, customer_id: str) -> None:
        query = """
            INSERT INTO billing_customers (tenant_id, customer_id)
            VALUES (%s, %s)
            ON CONFLICT (tenant_id) DO UPDATE SET customer_id = EXCLUDED.customer_id
        """
        await execute_query(query, (tenant_id, customer_id), connection=self._conn)

    async def lock_billing_account(self, tenant_id: str) -> None:
        """Serialize billing writes for one tenant until the transaction ends."""
        await execute_query(
            "SELECT pg_advisory_xact_lock(hashtext('billing:' || %s))",
            (tenant_id,),
            connection=self._conn,
        )

    async def get_billing_subscription(self, tenant_id: str) -> str | None:
        row = await fetch_one(
            "SELECT subscription_id FROM billing_customers WHERE tenant_id = %s",
            (tenant_id,),
            connection=self._conn,
        )
        return row["subscription_id"] if row else None

    async def set_billing_subscription(self, tenant_id: str, subscription_id: str) -> None:
        await execute_query(
            "UPDATE billing_customers SET subscription_id = %s WHERE tenant_id = %s",
            (subscription_id, tenant_id),
            connection=self._conn,
        )

    async def find_tenant_by_customer(self, customer_id: str) -> str | None:
        row = await fetch_one(
            "SELECT tenant_id FROM billing_customers WHERE customer_id = %s",
            (customer_id,),
            connection=self._conn,
        )
        return row["tenant_id"] if row else None
