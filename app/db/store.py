# app/db/store.py
"""
Transactional store used by the reconciliation engines.

`PostgresStore.transaction()` yields a `StoreSession` whose repositories all
share one pooled connection inside one transaction: commit on clean exit,
rollback on exception. Engines depend only on this shape, which keeps them
testable against in-memory fakes.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import psycopg

from app.db.pool import db_pool
from app.repositories.canonical_repository import CanonicalRepository
from app.repositories.credential_repository import CredentialRepository
from app.repositories.ledger_repository import LedgerRepository
from app.repositories.mapping_repository import MappingRepository
from app.repositories.seat_repository import SeatRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.sync_job_repository import SyncJobRepository


class StoreSession:
    """Repositories bound to a single connection."""

    def __init__(self, connection: psycopg.AsyncConnection):
        self.connection = connection
        self.credentials = CredentialRepository(connection)
        self.jobs = SyncJobRepository(connection)
        self.mappings = MappingRepository(connection)
        self.entities = CanonicalRepository(connection)
        self.ledger = LedgerRepository(connection)
        self.subscriptions = SubscriptionRepository(connection)
        self.seats = SeatRepository(connection)


class PostgresStore:
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        async with db_pool.transaction() as conn:
            yield StoreSession(conn)


store = PostgresStore()
