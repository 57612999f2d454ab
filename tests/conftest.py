import copy
import hashlib
import hmac
import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import psycopg
import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from app.auth.verify import auth_dependency, tenant_dependency  # noqa: E402
from app.db.helpers import DatabaseError  # noqa: E402
from app.models.domain.billing_domain import SeatRecord, SeatStatus  # noqa: E402
from app.models.domain.credential_domain import Credential  # noqa: E402
from app.models.domain.sync_domain import JobStatus, RemotePage, SyncJob  # noqa: E402
from app.services.billing.price_catalog import PriceCatalog  # noqa: E402
from app.services.billing.stripe_client import StripeBillingClient  # noqa: E402

TENANT = "tenant-1"
WEBHOOK_SECRET = "whsec_test_secret"
PRICE_IDS = {"basic": "price_basic", "advanced": "price_advanced", "elite": "price_elite"}


# ----------------------------------------------------------------------
# In-memory store: same session shape as app.db.store.PostgresStore
# ----------------------------------------------------------------------


class FakeCredentialRepository:
    def __init__(self, store):
        self._store = store

    @property
    def _data(self):
        return self._store.data

    async def get(self, tenant_id, provider="google"):
        return self._data["credentials"].get((tenant_id, provider))

    async def save(self, credential):
        existing = self._data["credentials"].get((credential.tenant_id, credential.provider))
        if existing and not credential.refresh_token:
            credential = credential.model_copy(update={"refresh_token": existing.refresh_token})
        self._data["credentials"][(credential.tenant_id, credential.provider)] = credential

    async def list_expiring(self, before, provider="google"):
        return [
            credential
            for (_, cred_provider), credential in self._data["credentials"].items()
            if cred_provider == provider and credential.expires_at and credential.expires_at <= before
        ]

    async def list_tenants(self, provider="google"):
        return [
            {"tenant_id": tenant_id, "scopes": list(credential.scopes)}
            for (tenant_id, cred_provider), credential in sorted(self._data["credentials"].items())
            if cred_provider == provider
        ]

    async def get_billing_customer(self, tenant_id):
        return self._data["customers"].get(tenant_id)

    async def set_billing_customer(self, tenant_id, customer_id):
        self._data["customers"][tenant_id] = customer_id

    async def lock_billing_account(self, tenant_id):
        self._store.billing_locks.append(tenant_id)

    async def get_billing_subscription(self, tenant_id):
        return self._data["billing_subscriptions"].get(tenant_id)

    async def set_billing_subscription(self, tenant_id, subscription_id):
        if tenant_id in self._data["customers"]:
            self._data["billing_subscriptions"][tenant_id] = subscription_id

    async def find_tenant_by_customer(self, customer_id):
        for tenant_id, known in self._data["customers"].items():
            if known == customer_id:
                return tenant_id
        return None


class FakeJobRepository:
    def __init__(self, store):
        self._store = store

    @property
    def _jobs(self):
        return self._store.data["jobs"]

    def _touch(self, job_id, **changes):
        self._jobs[job_id] = self._jobs[job_id].model_copy(
            update={**changes, "updated_at": self._store.tick()}
        )

    async def create(self, tenant_id, job_type, from_cursor=None, provider="google"):
        moment = self._store.tick()
        job = SyncJob(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            provider=provider,
            job_type=job_type,
            from_cursor=from_cursor,
            created_at=moment,
            updated_at=moment,
        )
        self._jobs[job.id] = job
        return job

    async def get(self, job_id):
        return self._jobs.get(job_id)

    async def find_pending(self, tenant_id, job_type):
        for job in self._jobs.values():
            if job.tenant_id == tenant_id and job.job_type == job_type and job.status == JobStatus.PENDING:
                return job
        return None

    async def latest_completed(self, tenant_id, entity_type):
        completed = [
            job
            for job in self._jobs.values()
            if job.tenant_id == tenant_id
            and job.job_type.entity_type == entity_type
            and job.status == JobStatus.COMPLETED
        ]
        return max(completed, key=lambda job: job.updated_at) if completed else None

    async def list_pending(self, limit=20):
        pending = [job for job in self._jobs.values() if job.status == JobStatus.PENDING]
        return sorted(pending, key=lambda job: job.created_at)[:limit]

    async def claim(self, job):
        current = self._jobs.get(job.id)
        if current is None or current.status != JobStatus.PENDING:
            return False
        for other in self._jobs.values():
            if (
                other.id != job.id
                and other.tenant_id == job.tenant_id
                and other.job_type == job.job_type
                and other.status == JobStatus.RUNNING
            ):
                return False
        self._touch(job.id, status=JobStatus.RUNNING)
        return True

    async def complete(self, job_id, to_cursor):
        current = self._jobs.get(job_id)
        if current is None or current.status != JobStatus.RUNNING:
            return False
        self._touch(job_id, status=JobStatus.COMPLETED, to_cursor=to_cursor)
        return True

    async def fail(self, job_id, kind, detail=None):
        current = self._jobs.get(job_id)
        if current is None or current.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            return False
        self._touch(job_id, status=JobStatus.FAILED, error_kind=kind, error_detail=detail)
        return True


class FakeMappingRepository:
    def __init__(self, store):
        self._store = store

    @property
    def _mappings(self):
        return self._store.data["mappings"]

    async def get_by_remote(self, tenant_id, entity_type, remote_id):
        return self._mappings.get((tenant_id, entity_type, remote_id))

    async def create(self, mapping):
        self._mappings[(mapping.tenant_id, mapping.entity_type, mapping.remote_id)] = mapping

    async def update_revision(self, tenant_id, entity_type, remote_id, revision):
        key = (tenant_id, entity_type, remote_id)
        self._mappings[key] = self._mappings[key].model_copy(update={"remote_revision": revision})

    async def delete(self, tenant_id, entity_type, remote_id):
        self._mappings.pop((tenant_id, entity_type, remote_id), None)

    async def delete_for_tenant(self, tenant_id):
        keys = [key for key in self._mappings if key[0] == tenant_id]
        for key in keys:
            del self._mappings[key]
        return len(keys)


class FakeCanonicalRepository:
    def __init__(self, store):
        self._store = store

    def _rows(self, entity_type):
        return self._store.data["entities"].setdefault(entity_type, {})

    async def create(self, tenant_id, entity_type, fields):
        local_id = str(uuid.uuid4())
        self._rows(entity_type)[local_id] = {
            "id": local_id,
            "tenant_id": tenant_id,
            **fields,
            "deleted_at": None,
            "deleted_by": None,
        }
        return local_id

    async def update(self, tenant_id, entity_type, local_id, fields):
        row = self._rows(entity_type)[local_id]
        row.update(fields)
        row.update({"deleted_at": None, "deleted_by": None})

    async def soft_delete(self, tenant_id, entity_type, local_id, deleted_by="remote"):
        row = self._rows(entity_type).get(local_id)
        if row and row["deleted_at"] is None:
            row.update({"deleted_at": datetime.now(UTC), "deleted_by": deleted_by})

    async def get(self, tenant_id, entity_type, local_id):
        row = self._rows(entity_type).get(local_id)
        return row if row and row["tenant_id"] == tenant_id else None

    async def purge_tenant(self, tenant_id):
        removed = {}
        for entity_type, rows in self._store.data["entities"].items():
            ids = [local_id for local_id, row in rows.items() if row["tenant_id"] == tenant_id]
            for local_id in ids:
                del rows[local_id]
            removed[entity_type.value] = len(ids)
        return removed


class FakeLedgerRepository:
    def __init__(self, store):
        self._store = store

    async def record(self, event_id, event_type=None):
        ledger = self._store.data["ledger"]
        if event_id in ledger:
            return False
        ledger[event_id] = event_type
        return True


class FakeSubscriptionRepository:
    def __init__(self, store):
        self._store = store

    @property
    def _states(self):
        return self._store.data["subscriptions"]

    async def get(self, tenant_id):
        return self._states.get(tenant_id)

    async def get_for_update(self, tenant_id):
        return self._states.get(tenant_id)

    async def upsert(self, state):
        self._states[state.tenant_id] = state.model_copy(update={"updated_at": datetime.now(UTC)})

    async def list_with_subscription(self):
        return [state for _, state in sorted(self._states.items()) if state.provider_subscription_id]

    async def list_retention_expired(self, now):
        return [
            state
            for state in self._states.values()
            if state.retention_expires_at is not None
            and state.retention_expires_at <= now
            and state.data_cleared_at is None
        ]


class FakeSeatRepository:
    def __init__(self, store):
        self._store = store

    @property
    def _seats(self):
        return self._store.data["seats"]

    async def list_for_tenant(self, tenant_id, include_removed=False):
        seats = [
            seat
            for seat in self._seats.values()
            if seat.tenant_id == tenant_id and (include_removed or seat.status != SeatStatus.REMOVED)
        ]
        return sorted(seats, key=lambda seat: (not seat.is_owner, seat.created_at))

    async def list_tenants_with_seats(self):
        return sorted(
            {seat.tenant_id for seat in self._seats.values() if seat.status != SeatStatus.REMOVED}
        )

    async def get(self, tenant_id, seat_id):
        seat = self._seats.get(seat_id)
        return seat if seat and seat.tenant_id == tenant_id else None

    async def create(
        self,
        tenant_id,
        tier,
        status=SeatStatus.PENDING,
        email=None,
        member_id=None,
        invite_token=None,
        is_owner=False,
    ):
        for other in self._seats.values():
            if other.tenant_id != tenant_id or other.status == SeatStatus.REMOVED:
                continue
            if (email and (other.email or "").lower() == email.lower()) or (
                member_id and other.member_id == member_id
            ):
                raise DatabaseError("Query failed: duplicate seat", operation="fetch_one") from (
                    psycopg.errors.UniqueViolation("duplicate key value violates unique constraint")
                )
        seat = SeatRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            tier=tier,
            status=status,
            email=email,
            member_id=member_id,
            invite_token=invite_token,
            is_owner=is_owner,
            created_at=self._store.tick(),
        )
        self._seats[seat.id] = seat
        return seat

    async def update_tier(self, tenant_id, seat_id, tier):
        seat = await self.get(tenant_id, seat_id)
        if seat is None or seat.status == SeatStatus.REMOVED:
            return None
        self._seats[seat_id] = seat.model_copy(update={"tier": tier})
        return self._seats[seat_id]

    async def mark_removed(self, tenant_id, seat_id):
        seat = await self.get(tenant_id, seat_id)
        if seat is None or seat.status == SeatStatus.REMOVED:
            return False
        self._seats[seat_id] = seat.model_copy(update={"status": SeatStatus.REMOVED})
        return True


class FakeSession:
    def __init__(self, store):
        self.credentials = FakeCredentialRepository(store)
        self.jobs = FakeJobRepository(store)
        self.mappings = FakeMappingRepository(store)
        self.entities = FakeCanonicalRepository(store)
        self.ledger = FakeLedgerRepository(store)
        self.subscriptions = FakeSubscriptionRepository(store)
        self.seats = FakeSeatRepository(store)


class InMemoryStore:
    """Rolls back every change made inside a transaction that raises."""

    def __init__(self):
        self.data = {
            "credentials": {},
            "customers": {},
            "billing_subscriptions": {},
            "jobs": {},
            "mappings": {},
            "entities": {},
            "ledger": {},
            "subscriptions": {},
            "seats": {},
        }
        self._clock = datetime(2026, 1, 1, tzinfo=UTC)
        self.transactions = 0
        self.billing_locks: list[str] = []

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.data)
        self.transactions += 1
        try:
            yield FakeSession(self)
        except BaseException:
            self.data = snapshot
            raise

    # Direct accessors for assertions
    def jobs(self) -> list[SyncJob]:
        return sorted(self.data["jobs"].values(), key=lambda job: job.created_at)

    def rows(self, entity_type) -> dict:
        return self.data["entities"].get(entity_type, {})


@pytest.fixture
def store():
    return InMemoryStore()


def make_credential(tenant_id=TENANT, expires_in_minutes=60, **overrides) -> Credential:
    values = {
        "tenant_id": tenant_id,
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": datetime.now(UTC) + timedelta(minutes=expires_in_minutes),
        "scopes": [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/calendar.readonly",
        ],
    }
    values.update(overrides)
    return Credential(**values)


@pytest.fixture
def credential_factory():
    return make_credential


# ----------------------------------------------------------------------
# Provider fakes
# ----------------------------------------------------------------------


class FakeProvider:
    """Hands out queued pages (or raises queued exceptions) in order."""

    def __init__(self, *pages):
        self.pages = list(pages)
        self.calls = []

    async def fetch_changes(self, access_token, cursor, initial, page_size):
        self.calls.append(
            {"access_token": access_token, "cursor": cursor, "initial": initial, "page_size": page_size}
        )
        if not self.pages:
            raise AssertionError("fetch_changes called with no page queued")
        item = self.pages.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def empty_page():
    from app.models.domain.sync_domain import SyncCursor

    return RemotePage(records=[], next_cursor=SyncCursor(sync_token="sync-1"))


@pytest.fixture
def oauth_mock():
    oauth = AsyncMock()
    oauth.refresh_access_token = AsyncMock()
    return oauth


# ----------------------------------------------------------------------
# Stripe helpers
# ----------------------------------------------------------------------


@pytest.fixture
def catalog():
    return PriceCatalog(PRICE_IDS)


@pytest.fixture
def stripe_client():
    return StripeBillingClient(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_id: str, event_type: str, obj: dict, created: int) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "created": created, "data": {"object": obj}}
    ).encode("utf-8")


# ----------------------------------------------------------------------
# Auth overrides
# ----------------------------------------------------------------------


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123", "tenant_id": TENANT}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override
        app.dependency_overrides[tenant_dependency] = lambda: TENANT

    return _apply


@pytest.fixture
def signed_event():
    """Build (payload, stripe-signature header) for an event."""

    def _build(event_id, event_type, obj, created=None, secret=WEBHOOK_SECRET):
        payload = make_event(event_id, event_type, obj, created or int(time.time()))
        return payload, sign_payload(payload, secret)

    return _build


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def add_seats(store):
    """Seed billable seats directly through the fake repository."""

    async def _add(tenant_id, tier, count=1, status=SeatStatus.ACTIVE, is_owner=False):
        created = []
        async with store.transaction() as session:
            for _ in range(count):
                created.append(
                    await session.seats.create(
                        tenant_id, tier, status=status, member_id=str(uuid.uuid4()), is_owner=is_owner
                    )
                )
        return created

    return _add
