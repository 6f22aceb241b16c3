"""
Tests for the control API: job creation and inspection, sync stats,
scheduler lifecycle and cron endpoints.
"""

import uuid
from datetime import date

import pytest
from unittest.mock import patch
from httpx import AsyncClient, ASGITransport

from conftest import FakeReportingClient, add_job, client_factory_for
from report_sync.config import Settings
from report_sync.database import get_db
from report_sync.main import app
from report_sync.schemas import DateRange, JobMetadata
from report_sync.services.job_store import JobStore
from report_sync.services.scheduler import ReportJobScheduler


@pytest.fixture
async def client(session_factory, clock):
    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    scheduler = ReportJobScheduler(
        Settings(rate_limit_inter_request_delay_ms=0),
        session_factory=session_factory,
        client_factory=client_factory_for(FakeReportingClient()),
        job_store=JobStore(clock=clock),
    )
    original = app.state.scheduler
    app.state.scheduler = scheduler
    app.dependency_overrides[get_db] = _get_test_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    await scheduler.stop()
    app.dependency_overrides.clear()
    app.state.scheduler = original


@pytest.mark.anyio
async def test_create_jobs_for_a_date_range(client, account):
    response = await client.post(f"/api/accounts/{account.id}/jobs", json={
        "start_date": "2026-09-01",
        "end_date": "2026-09-30",
        "ad_products": ["SPONSORED_PRODUCTS", "SPONSORED_DISPLAY"],
        "report_kinds": ["keyword"],
    })
    assert response.status_code == 201
    data = response.json()
    # Sponsored Display has no keyword report
    assert data["created"] == 1
    assert data["jobs"][0]["ad_product"] == "SPONSORED_PRODUCTS"
    assert data["jobs"][0]["status"] == "pending"

    again = await client.post(f"/api/accounts/{account.id}/jobs", json={
        "start_date": "2026-09-01", "end_date": "2026-09-30",
        "ad_products": ["SPONSORED_PRODUCTS"], "report_kinds": ["keyword"],
    })
    assert again.json()["created"] == 0


@pytest.mark.anyio
async def test_create_jobs_validates_the_body(client, account):
    response = await client.post(f"/api/accounts/{account.id}/jobs", json={"sweep": "monthly"})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_unknown_account_and_bad_ids(client):
    assert (await client.get(f"/api/accounts/{uuid.uuid4()}/jobs")).status_code == 404
    assert (await client.get("/api/accounts/not-a-uuid/jobs")).status_code == 400
    assert (await client.get(f"/api/jobs/{uuid.uuid4()}")).status_code == 404


@pytest.mark.anyio
async def test_get_and_list_jobs(client, session_factory, account, clock):
    job = await add_job(session_factory, account, clock)
    response = await client.get(f"/api/jobs/{job.id}")
    assert response.status_code == 200
    assert response.json()["id"] == str(job.id)
    assert response.json()["tier"] == "daily"

    listed = await client.get(f"/api/accounts/{account.id}/jobs", params={"limit": 10})
    assert [j["id"] for j in listed.json()] == [str(job.id)]


@pytest.mark.anyio
async def test_sync_pass_and_stats(client, account):
    response = await client.post(f"/api/accounts/{account.id}/sync")
    assert response.status_code == 200
    assert response.json()["created"] == 175
    assert response.json()["mode"] == "initialization"

    stats = (await client.get(f"/api/accounts/{account.id}/sync-stats")).json()
    assert stats["mode"] == "initialization"
    assert stats["pendingTasks"] == 175
    assert stats["completedTasks"] == 0
    assert stats["initializationProgress"] == 0.0


@pytest.mark.anyio
async def test_retry_failed_endpoint(client, session_factory, account, clock):
    rng = DateRange(start=date(2026, 10, 10), end=date(2026, 10, 10))
    await add_job(session_factory, account, clock, status="failed", start_date=rng.start, end_date=rng.end,
                  job_metadata=JobMetadata().with_failure(rng, "boom"))
    response = await client.post(f"/api/accounts/{account.id}/jobs/retry-failed")
    assert response.json() == {"retried": 1, "skipped": 0}


@pytest.mark.anyio
async def test_scheduler_lifecycle_endpoints(client):
    started = await client.post("/api/scheduler/start")
    assert started.json() == {"started": True, "running": True}
    assert (await client.post("/api/scheduler/start")).json()["started"] is False
    status = (await client.get("/api/scheduler/status")).json()
    assert status["running"] is True
    stopped = await client.post("/api/scheduler/stop")
    assert stopped.json() == {"stopped": True, "running": False}


@pytest.mark.anyio
async def test_run_once_endpoint(client):
    response = await client.post("/api/scheduler/run-once")
    assert response.status_code == 200
    assert set(response.json()) == {"submit", "check", "process"}


@pytest.mark.anyio
async def test_api_key_is_enforced_when_configured(client, account):
    with patch("report_sync.auth.get_settings", return_value=Settings(api_key="secret-key")):
        assert (await client.get(f"/api/accounts/{account.id}/jobs")).status_code == 401
        ok = await client.get(f"/api/accounts/{account.id}/jobs",
                              headers={"Authorization": "Bearer secret-key"})
        assert ok.status_code == 200


@pytest.mark.anyio
async def test_cron_requires_the_shared_secret(client, account):
    with patch("report_sync.routers.cron.get_settings", return_value=Settings(cron_secret="cron-s3cret")):
        assert (await client.post("/api/cron/sync-pass")).status_code == 401
        response = await client.post("/api/cron/sync-pass", headers={"X-Cron-Secret": "cron-s3cret"})
        assert response.status_code == 200
        assert response.json()["result"]["jobs_created"] == 175
        cleanup = await client.post("/api/cron/cleanup", headers={"Authorization": "Bearer cron-s3cret"})
        assert cleanup.json() == {"status": "ok", "result": {"deleted": 0}}


@pytest.mark.anyio
async def test_cron_without_secret_configured(client):
    with patch("report_sync.routers.cron.get_settings", return_value=Settings(cron_secret="")):
        assert (await client.post("/api/cron/run-once")).status_code == 500
