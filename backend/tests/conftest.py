"""
Shared fixtures: a throwaway SQLite database per test, a controllable clock,
and a fake Reporting API client.
"""

import gzip
import json
import os
from datetime import date, datetime, timedelta

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from report_sync.ads_api import ReportStatus
from report_sync.database import Base
from report_sync.models import Account, Credential, ReportJob, JobStatus
import report_sync.models  # noqa: F401


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Naive-UTC clock that only moves when a test advances it."""

    def __init__(self, now: datetime = datetime(2026, 10, 18, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def session_factory(anyio_backend, tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'report_sync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def account(session_factory):
    async with session_factory() as db:
        cred = Credential(name="Test Seller", client_id="amzn1.application-oa2-client.test",
                          access_token="access-token", region="na")
        db.add(cred)
        await db.flush()
        acct = Account(credential_id=cred.id, profile_id="1234567890", marketplace="US",
                       account_name="Test Seller US")
        db.add(acct)
        await db.commit()
    return acct


async def add_job(session_factory, account, clock=None, **overrides) -> ReportJob:
    now = clock() if clock else datetime(2026, 10, 18, 12, 0, 0)
    fields = dict(
        account_id=account.id,
        profile_id=account.profile_id,
        tier="daily",
        report_kind="campaign",
        ad_product="SPONSORED_PRODUCTS",
        priority="critical",
        start_date=date(2026, 10, 17),
        end_date=date(2026, 10, 17),
        status=JobStatus.PENDING.value,
        retry_count=0,
        max_retries=3,
        records_processed=0,
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    async with session_factory() as db:
        job = ReportJob(**fields)
        db.add(job)
        await db.commit()
    return job


def gzip_json(records) -> bytes:
    return gzip.compress(json.dumps(records).encode("utf-8"))


class FakeReportingClient:
    """Stands in for AmazonAdsReportingClient; records every call."""

    def __init__(self, submit=None, statuses=None, payload: bytes = b"[]"):
        self.submit = submit or (lambda n: f"report-{n}")
        self.statuses = statuses or {}
        self.payload = payload
        self.requests = []
        self.closed = False

    async def request_report(self, **kwargs) -> str:
        self.requests.append(kwargs)
        result = self.submit(len(self.requests))
        if isinstance(result, BaseException):
            raise result
        return result

    async def get_report_status(self, report_id: str) -> ReportStatus:
        status = self.statuses.get(report_id, ReportStatus(report_id, "PENDING"))
        if isinstance(status, BaseException):
            raise status
        return status

    async def download_report(self, url: str) -> bytes:
        if isinstance(self.payload, BaseException):
            raise self.payload
        return self.payload

    async def aclose(self) -> None:
        self.closed = True


def client_factory_for(client: FakeReportingClient):
    calls = []

    async def factory(account, db, force_refresh: bool = False):
        calls.append(force_refresh)
        return client

    factory.calls = calls
    return factory
