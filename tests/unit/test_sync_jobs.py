import asyncio
from unittest.mock import AsyncMock

import pytest

from app.jobs.scheduling import PeriodicJob
from app.jobs.sync_jobs import job_types_for_scopes, run_sync_scheduler, run_sync_worker_tick
from app.models.domain.errors import ErrorKind
from app.models.domain.sync_domain import JobType, SyncRunResult

GMAIL = "https://www.googleapis.com/auth/gmail.readonly"
CALENDAR = "https://www.googleapis.com/auth/calendar.readonly"


def test_job_types_follow_granted_scopes():
    assert job_types_for_scopes([GMAIL]) == [JobType.EMAIL_INCREMENTAL]
    assert job_types_for_scopes([CALENDAR]) == [JobType.CALENDAR_INCREMENTAL]
    assert job_types_for_scopes([]) == [JobType.EMAIL_INCREMENTAL, JobType.CALENDAR_INCREMENTAL]


@pytest.mark.asyncio
async def test_scheduler_enqueues_per_connected_tenant(store, credential_factory):
    store.data["credentials"][("a", "google")] = credential_factory(tenant_id="a", scopes=[GMAIL])
    store.data["credentials"][("b", "google")] = credential_factory(tenant_id="b")
    engine = AsyncMock()

    summary = await run_sync_scheduler(engine=engine, store_=store)

    assert summary == {"tenants": 2, "enqueued": 3, "failed": 0}
    engine.enqueue_job.assert_any_await("a", JobType.EMAIL_INCREMENTAL)
    engine.enqueue_job.assert_any_await("b", JobType.CALENDAR_INCREMENTAL)


@pytest.mark.asyncio
async def test_scheduler_survives_enqueue_failure(store, credential_factory):
    store.data["credentials"][("a", "google")] = credential_factory(tenant_id="a", scopes=[GMAIL])
    engine = AsyncMock()
    engine.enqueue_job.side_effect = RuntimeError("db down")

    summary = await run_sync_scheduler(engine=engine, store_=store)

    assert summary["failed"] == 1


@pytest.mark.asyncio
async def test_worker_tick_summarises_results():
    ok = SyncRunResult(job_id="1", processed=3)
    failed = SyncRunResult(job_id="2", error=ErrorKind.PROVIDER_UNAVAILABLE)
    engine = AsyncMock()
    engine.run_pending.return_value = [ok, failed]

    summary = await run_sync_worker_tick(engine=engine)

    assert summary == {"jobs": 2, "succeeded": 1, "processed": 3}


@pytest.mark.asyncio
async def test_periodic_job_skips_overlapping_run():
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return {"done": True}

    job = PeriodicJob("slow", slow, 60)
    first = asyncio.create_task(job.run_once())
    await asyncio.sleep(0)

    assert await job.run_once() == {"skipped": True, "reason": "already_running"}
    release.set()
    assert await first == {"done": True}
    assert job.is_running is False
