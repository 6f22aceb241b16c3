"""
Submission Worker: turns pending jobs into requested Amazon reports.

Each tick claims up to batch_size pending jobs (oldest first), requests their
reports through the account's rate limiter, and records either the returned
report id or a classified failure.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from report_sync.ads_api import AmazonAdsReportingClient, ErrorClass, ReportingApiError, classify_error
from report_sync.models import Account, ReportJob, JobStatus, PRIORITY_WEIGHTS
from report_sync.services.field_mapping import get_report_definition
from report_sync.services.job_store import JobStore, effective_range
from report_sync.services.rate_limiter import RateLimiterRegistry
from report_sync.services.token_service import get_reporting_client

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Awaitable[AmazonAdsReportingClient]]


class UnsupportedReportError(ReportingApiError):
    """No report definition for the job's (ad product, report kind)."""
    error_class = ErrorClass.AUTHORIZATION


async def load_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one()


class SubmissionWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        job_store: JobStore,
        limiters: RateLimiterRegistry,
        client_factory: ClientFactory = get_reporting_client,
        batch_size: int = 5,
        owner: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.job_store = job_store
        self.limiters = limiters
        self.client_factory = client_factory
        self.batch_size = batch_size
        self.owner = owner or f"submit-{uuid.uuid4().hex[:12]}"
        # Accounts whose last call came back 401; their token is refreshed before the next call
        self._force_refresh: set[uuid.UUID] = set()

    async def run_tick(self) -> dict:
        async with self.session_factory() as db:
            jobs = await self.job_store.claim_batch(db, (JobStatus.PENDING.value,), self.batch_size, self.owner)
            await db.commit()
        if not jobs:
            return {"claimed": 0, "submitted": 0, "failed": 0, "retrying": 0, "skipped": 0}

        by_account: dict[uuid.UUID, list[ReportJob]] = defaultdict(list)
        for job in jobs:
            by_account[job.account_id].append(job)

        stats = {"claimed": len(jobs), "submitted": 0, "failed": 0, "retrying": 0, "skipped": 0}
        for account_id, account_jobs in by_account.items():
            outcomes = await self._request_reports(account_id, account_jobs)
            for job, outcome in zip(account_jobs, outcomes):
                result = await self._record_outcome(job.id, account_id, outcome)
                stats[result] += 1
        logger.info(f"Submission tick: {stats}")
        return stats

    async def _request_reports(self, account_id: uuid.UUID, jobs: list[ReportJob]) -> list:
        try:
            async with self.session_factory() as db:
                account = await load_account(db, account_id)
                client = await self.client_factory(
                    account, db, force_refresh=account_id in self._force_refresh,
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Could not build Reporting API client for account {account_id}: {e}")
            return [e] * len(jobs)
        self._force_refresh.discard(account_id)

        limiter = self.limiters.get(account_id)

        async def request(job: ReportJob) -> str:
            definition = get_report_definition(job.ad_product, job.report_kind)
            if definition is None:
                raise UnsupportedReportError(f"No {job.report_kind} report for {job.ad_product}")
            rng = effective_range(job)
            return await client.request_report(
                report_type_id=definition.report_type_id,
                ad_product=job.ad_product,
                start_date=rng.start,
                end_date=rng.end,
                columns=list(definition.columns),
                group_by=list(definition.group_by),
            )

        try:
            return await asyncio.gather(
                *(limiter.submit(lambda job=job: request(job), priority=PRIORITY_WEIGHTS.get(job.priority, 0))
                  for job in jobs),
                return_exceptions=True,
            )
        finally:
            await client.aclose()

    async def _record_outcome(self, job_id: uuid.UUID, account_id: uuid.UUID, outcome) -> str:
        async with self.session_factory() as db:
            job = await self.job_store.get_job(db, job_id)
            if job is None or job.status != JobStatus.PENDING.value:
                return "skipped"
            if isinstance(outcome, BaseException):
                error_class = classify_error(outcome)
                if error_class == ErrorClass.CREDENTIAL_EXPIRED:
                    self._force_refresh.add(account_id)
                if not isinstance(outcome, ReportingApiError):
                    logger.warning(f"Unexpected error submitting job {job_id}: {outcome!r}")
                job = await self.job_store.record_submission_failure(
                    db, job, str(outcome), error_class, owner=self.owner,
                )
                await db.commit()
                return "failed" if job.status == JobStatus.FAILED.value else "retrying"

            await self.job_store.mark_submitted(db, job, outcome, owner=self.owner)
            await db.commit()
            return "submitted"
