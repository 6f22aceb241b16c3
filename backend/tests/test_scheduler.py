"""
Tests for the scheduler lifecycle and a full submit -> check -> process cycle.
"""

import asyncio

import pytest
from sqlalchemy import select

from conftest import FakeReportingClient, add_job, client_factory_for, gzip_json
from report_sync.ads_api import ReportStatus
from report_sync.config import Settings
from report_sync.models import CampaignPerformanceDaily, JobStatus
from report_sync.services.job_store import JobStore
from report_sync.services.scheduler import ReportJobScheduler


def make_scheduler(session_factory, clock, client=None, **overrides):
    settings = Settings(
        submit_interval_seconds=3600, check_interval_seconds=3600, process_interval_seconds=3600,
        rate_limit_inter_request_delay_ms=0, **overrides,
    )
    return ReportJobScheduler(
        settings,
        session_factory=session_factory,
        client_factory=client_factory_for(client or FakeReportingClient()),
        job_store=JobStore(clock=clock),
    )


@pytest.mark.anyio
async def test_start_is_idempotent_and_stop_waits(session_factory, clock):
    scheduler = make_scheduler(session_factory, clock)

    assert scheduler.start() is True
    assert scheduler.start() is False
    assert scheduler.is_running
    await asyncio.sleep(0.05)

    assert await scheduler.stop(timeout=5) is True
    assert not scheduler.is_running
    assert await scheduler.stop() is False
    status = scheduler.status()
    assert set(status["loops"]) == {"submit", "check", "process", "cleanup", "sync_pass"}
    assert status["loops"]["submit"]["runs"] >= 1


@pytest.mark.anyio
async def test_run_once_moves_a_job_through_the_pipeline(session_factory, account, clock):
    job = await add_job(session_factory, account, clock)
    client = FakeReportingClient(
        statuses={"report-1": ReportStatus("report-1", "COMPLETED", url="https://s3/report-1.gz")},
        payload=gzip_json([{"date": "2026-10-17", "campaignId": "111", "cost": 5.0, "sales14d": 20.0}]),
    )
    scheduler = make_scheduler(session_factory, clock, client)

    results = await scheduler.run_once()

    assert results["submit"]["submitted"] == 1
    assert results["check"]["completed"] == 1
    assert results["process"]["processed"] == 1
    async with session_factory() as db:
        stored = await JobStore().get_job(db, job.id)
        rows = (await db.execute(select(CampaignPerformanceDaily))).scalars().all()
    assert stored.status == JobStatus.COMPLETED.value
    assert stored.processed_at is not None
    assert [r.spend for r in rows] == [5.0]


@pytest.mark.anyio
async def test_failing_tick_is_recorded_not_raised(session_factory, clock):
    scheduler = make_scheduler(session_factory, clock)

    async def broken():
        raise RuntimeError("database went away")

    _, state = scheduler._loops["submit"]
    result = await scheduler._run_tick("submit", broken, state)

    assert result is None
    assert state.errors == 1
    assert state.last_error == "database went away"


@pytest.mark.anyio
async def test_sync_pass_covers_active_accounts(session_factory, account, clock):
    scheduler = make_scheduler(session_factory, clock)
    summary = await scheduler.run_sync_pass()
    assert summary == {"accounts": 1, "jobs_created": 175, "errors": 0}
    assert (await scheduler.run_cleanup()) == {"deleted": 0}
