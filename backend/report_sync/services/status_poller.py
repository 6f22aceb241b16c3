"""
Status Poller: follows requested reports until Amazon finishes them.

COMPLETED with a download URL -> completed; FAILED -> failed; anything else
-> processing, unless the job has waited longer than the timeout, which
force-terminates it as expired. A poll that errors out (network, 5xx,
throttling) leaves the job alone for the next tick unless it has timed out.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from report_sync.ads_api import ReportStatus
from report_sync.models import ReportJob, JobStatus, IN_FLIGHT_STATUSES, PRIORITY_WEIGHTS
from report_sync.services.job_store import JobStore
from report_sync.services.rate_limiter import RateLimiterRegistry
from report_sync.services.submission_worker import ClientFactory, load_account
from report_sync.services.token_service import get_reporting_client

logger = logging.getLogger(__name__)


class StatusPoller:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        job_store: JobStore,
        limiters: RateLimiterRegistry,
        client_factory: ClientFactory = get_reporting_client,
        batch_size: int = 10,
        timeout_minutes: int = 15,
        owner: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.job_store = job_store
        self.limiters = limiters
        self.client_factory = client_factory
        self.batch_size = batch_size
        self.timeout = timedelta(minutes=timeout_minutes)
        self.owner = owner or f"poll-{uuid.uuid4().hex[:12]}"

    def timed_out(self, job: ReportJob) -> bool:
        started = job.submitted_at or job.created_at
        return started is not None and self.job_store.clock() - started > self.timeout

    async def run_tick(self) -> dict:
        async with self.session_factory() as db:
            jobs = await self.job_store.claim_batch(db, IN_FLIGHT_STATUSES, self.batch_size, self.owner)
            await db.commit()

        stats = {"checked": len(jobs), "completed": 0, "failed": 0, "expired": 0, "processing": 0, "errors": 0, "skipped": 0}
        if not jobs:
            return stats

        by_account: dict[uuid.UUID, list[ReportJob]] = defaultdict(list)
        for job in jobs:
            by_account[job.account_id].append(job)

        for account_id, account_jobs in by_account.items():
            outcomes = await self._fetch_statuses(account_id, account_jobs)
            for job, outcome in zip(account_jobs, outcomes):
                result = await self._apply(job.id, outcome)
                stats[result] += 1
        logger.info(f"Status poll tick: {stats}")
        return stats

    async def _fetch_statuses(self, account_id: uuid.UUID, jobs: list[ReportJob]) -> list:
        try:
            async with self.session_factory() as db:
                account = await load_account(db, account_id)
                client = await self.client_factory(account, db)
                await db.commit()
        except Exception as e:
            logger.error(f"Could not build Reporting API client for account {account_id}: {e}")
            return [e] * len(jobs)

        limiter = self.limiters.get(account_id)
        try:
            return await asyncio.gather(
                *(limiter.submit(lambda job=job: client.get_report_status(job.report_id),
                                 priority=PRIORITY_WEIGHTS.get(job.priority, 0))
                  for job in jobs),
                return_exceptions=True,
            )
        finally:
            await client.aclose()

    async def _apply(self, job_id: uuid.UUID, outcome) -> str:
        async with self.session_factory() as db:
            job = await self.job_store.get_job(db, job_id)
            if job is None or job.status not in IN_FLIGHT_STATUSES:
                return "skipped"

            if isinstance(outcome, BaseException) or not isinstance(outcome, ReportStatus):
                if self.timed_out(job):
                    await self._expire(db, job)
                    await db.commit()
                    return "expired"
                logger.warning(f"Status check for job {job.id} (report {job.report_id}) failed, will retry: {outcome}")
                await self.job_store.release(db, job, owner=self.owner)
                await db.commit()
                return "errors"

            if outcome.is_completed:
                await self.job_store.transition(
                    db, job, JobStatus.COMPLETED.value, owner=self.owner,
                    download_url=outcome.url, error_message=None,
                )
                result = "completed"
            elif outcome.is_failed:
                await self.job_store.fail(db, job, outcome.failure_reason or "Report generation failed", owner=self.owner)
                result = "failed"
            elif self.timed_out(job):
                await self._expire(db, job)
                result = "expired"
            else:
                await self.job_store.transition(db, job, JobStatus.PROCESSING.value, owner=self.owner)
                result = "processing"
            await db.commit()
            return result

    async def _expire(self, db, job: ReportJob) -> None:
        minutes = int(self.timeout.total_seconds() // 60)
        await self.job_store.fail(
            db, job, f"Report not ready after {minutes} minutes",
            owner=self.owner, status=JobStatus.EXPIRED.value,
        )
