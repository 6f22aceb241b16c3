"""
Job Store: durable report job lifecycle.

    pending ──► submitted ──► processing ──► completed
       │            │  ╲           │  ╲
       ▼            ▼   ╲► failed ◄┘   ╲► expired
     failed      expired / completed

completed, failed and expired are terminal. The only way back to pending is
retry_failed(), an operator action that reopens just the failed sub-ranges.

Workers never hold a job through a plain SELECT: claim_batch() reserves rows
with a conditional UPDATE on (status, lease) and only rows whose UPDATE
matched are handed out. Every transition clears the lease. A lease left by a
crashed worker expires after claim_ttl_seconds and the job is claimable again.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from report_sync.ads_api import ErrorClass
from report_sync.models import (
    Account, ReportJob, SyncState, JobStatus, SyncMode, DataTier,
    TERMINAL_STATUSES,
)
from report_sync.schemas import DateRange, JobMetadata, envelope
from report_sync.utils import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    JobStatus.PENDING.value: frozenset({JobStatus.SUBMITTED.value, JobStatus.FAILED.value}),
    JobStatus.SUBMITTED.value: frozenset({
        JobStatus.PROCESSING.value, JobStatus.COMPLETED.value,
        JobStatus.FAILED.value, JobStatus.EXPIRED.value,
    }),
    JobStatus.PROCESSING.value: frozenset({
        JobStatus.PROCESSING.value, JobStatus.COMPLETED.value,
        JobStatus.FAILED.value, JobStatus.EXPIRED.value,
    }),
    JobStatus.COMPLETED.value: frozenset(),
    JobStatus.FAILED.value: frozenset(),
    JobStatus.EXPIRED.value: frozenset(),
}

INITIALIZATION_TIERS = (
    DataTier.REALTIME.value, DataTier.HOT.value, DataTier.WARM.value, DataTier.COLD.value,
    DataTier.HOT_DATA.value, DataTier.COLD_DATA.value, DataTier.STRUCTURE_DATA.value,
)


class JobStoreError(Exception):
    pass


class InvalidTransitionError(JobStoreError):
    def __init__(self, job_id, from_status: str, to_status: str):
        super().__init__(f"Job {job_id}: illegal transition {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class LeaseLostError(JobStoreError):
    """Another worker holds a live lease on the job."""


@dataclass(frozen=True)
class JobSpec:
    tier: str
    report_kind: str
    ad_product: str
    priority: str
    start_date: date
    end_date: date
    is_initialization: bool = False
    is_full_attribution: bool = False

    @property
    def key(self) -> tuple:
        return (self.report_kind, self.ad_product, self.start_date, self.end_date)


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def effective_range(job: ReportJob) -> DateRange:
    """The range a job works on: its retry scope when reopened, else its full range."""
    meta = job.job_metadata
    if meta and meta.ranges_to_process:
        return envelope(meta.ranges_to_process)
    return DateRange(start=job.start_date, end=job.end_date)


class JobStore:
    """All job reads and writes. Callers own the session and commit."""

    def __init__(
        self,
        claim_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.clock = clock

    # ── Creation ──────────────────────────────────────────────────────

    async def create_jobs(
        self,
        db: AsyncSession,
        account: Account,
        specs: Iterable[JobSpec],
        max_retries: int = 3,
        dedupe_tiers: Optional[tuple[str, ...]] = None,
        dedupe_statuses: Optional[tuple[str, ...]] = None,
    ) -> list[ReportJob]:
        """
        Insert pending jobs, skipping any whose (kind, product, start, end)
        already exists for the account among jobs matching the dedupe filters.
        """
        specs = list(specs)
        if not specs:
            return []

        query = select(
            ReportJob.report_kind, ReportJob.ad_product, ReportJob.start_date, ReportJob.end_date,
        ).where(ReportJob.account_id == account.id)
        if dedupe_tiers is not None:
            query = query.where(ReportJob.tier.in_(dedupe_tiers))
        if dedupe_statuses is not None:
            query = query.where(ReportJob.status.in_(dedupe_statuses))
        existing = {tuple(row) for row in (await db.execute(query)).all()}

        now = self.clock()
        created = []
        for spec in specs:
            if spec.key in existing:
                continue
            existing.add(spec.key)
            job = ReportJob(
                account_id=account.id,
                profile_id=account.profile_id,
                marketplace=account.marketplace,
                tier=spec.tier,
                report_kind=spec.report_kind,
                ad_product=spec.ad_product,
                priority=spec.priority,
                start_date=spec.start_date,
                end_date=spec.end_date,
                status=JobStatus.PENDING.value,
                retry_count=0,
                max_retries=max_retries,
                records_processed=0,
                job_metadata=JobMetadata(
                    tier=spec.tier,
                    is_initialization=spec.is_initialization,
                    is_full_attribution=spec.is_full_attribution,
                ),
                # keeps creation order stable within one batch
                created_at=now + timedelta(microseconds=len(created)),
                updated_at=now,
            )
            db.add(job)
            created.append(job)

        await db.flush()
        skipped = len(specs) - len(created)
        if created or skipped:
            logger.info(f"Account {account.id}: created {len(created)} report jobs, skipped {skipped} duplicates")
        return created

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_job(self, db: AsyncSession, job_id: uuid.UUID) -> Optional[ReportJob]:
        result = await db.execute(select(ReportJob).where(ReportJob.id == job_id))
        return result.scalar_one_or_none()

    async def list_account_jobs(self, db: AsyncSession, account_id: uuid.UUID, limit: int = 50) -> list[ReportJob]:
        result = await db.execute(
            select(ReportJob)
            .where(ReportJob.account_id == account_id)
            .order_by(ReportJob.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def status_counts(self, db: AsyncSession, account_id: uuid.UUID, tiers: Optional[tuple[str, ...]] = None) -> dict[str, int]:
        query = (
            select(ReportJob.status, func.count())
            .where(ReportJob.account_id == account_id)
            .group_by(ReportJob.status)
        )
        if tiers is not None:
            query = query.where(ReportJob.tier.in_(tiers))
        rows = (await db.execute(query)).all()
        return {status: count for status, count in rows}

    async def initialization_outstanding(self, db: AsyncSession, account_id: uuid.UUID) -> int:
        """
        Initialization jobs not yet completed and ingested. Failed and
        expired ones count too: their ranges are still missing.
        """
        result = await db.execute(
            select(func.count()).select_from(ReportJob).where(
                ReportJob.account_id == account_id,
                ReportJob.tier.in_(INITIALIZATION_TIERS),
                or_(ReportJob.status != JobStatus.COMPLETED.value, ReportJob.processed_at.is_(None)),
            )
        )
        return result.scalar() or 0

    # ── Claims ────────────────────────────────────────────────────────

    def _lease_free(self, now: datetime):
        return or_(ReportJob.lease_owner.is_(None), ReportJob.lease_expires_at < now)

    async def claim_batch(
        self,
        db: AsyncSession,
        statuses: tuple[str, ...],
        limit: int,
        owner: str,
        unprocessed_only: bool = False,
    ) -> list[ReportJob]:
        """Atomically reserve up to `limit` jobs in creation order."""
        now = self.clock()
        conditions = [ReportJob.status.in_(statuses), self._lease_free(now)]
        if unprocessed_only:
            conditions.append(ReportJob.processed_at.is_(None))

        candidates = (await db.execute(
            select(ReportJob.id).where(*conditions).order_by(ReportJob.created_at, ReportJob.id).limit(limit)
        )).scalars().all()

        claimed = []
        for job_id in candidates:
            result = await db.execute(
                update(ReportJob)
                .where(ReportJob.id == job_id, *conditions)
                .values(lease_owner=owner, lease_expires_at=now + self.claim_ttl)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(job_id)

        if not claimed:
            return []
        result = await db.execute(
            select(ReportJob)
            .where(ReportJob.id.in_(claimed))
            .order_by(ReportJob.created_at, ReportJob.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def _check_lease(self, job: ReportJob, owner: Optional[str]) -> None:
        if owner is None or job.lease_owner in (None, owner):
            return
        if job.lease_expires_at and job.lease_expires_at < self.clock():
            return
        raise LeaseLostError(f"Job {job.id} is leased by {job.lease_owner}")

    async def release(self, db: AsyncSession, job: ReportJob, owner: Optional[str] = None) -> None:
        self._check_lease(job, owner)
        job.lease_owner = None
        job.lease_expires_at = None
        await db.flush()

    # ── Transitions ───────────────────────────────────────────────────

    async def transition(
        self,
        db: AsyncSession,
        job: ReportJob,
        to_status: str,
        owner: Optional[str] = None,
        **fields,
    ) -> ReportJob:
        if not can_transition(job.status, to_status):
            raise InvalidTransitionError(job.id, job.status, to_status)
        self._check_lease(job, owner)
        now = self.clock()
        from_status = job.status
        job.status = to_status
        for name, value in fields.items():
            setattr(job, name, value)
        if to_status == JobStatus.SUBMITTED.value and "submitted_at" not in fields:
            job.submitted_at = now
        if to_status == JobStatus.COMPLETED.value and "completed_at" not in fields:
            job.completed_at = now
        job.lease_owner = None
        job.lease_expires_at = None
        job.updated_at = now
        await db.flush()
        if from_status != to_status:
            logger.info(f"Job {job.id} ({job.ad_product}/{job.report_kind} {job.start_date}..{job.end_date}): "
                        f"{from_status} -> {to_status}")
        return job

    async def mark_submitted(self, db: AsyncSession, job: ReportJob, report_id: str, owner: Optional[str] = None) -> ReportJob:
        return await self.transition(db, job, JobStatus.SUBMITTED.value, owner, report_id=report_id, error_message=None)

    async def fail(self, db: AsyncSession, job: ReportJob, error: str, owner: Optional[str] = None,
                   status: str = JobStatus.FAILED.value) -> ReportJob:
        """Terminal failure (failed or expired); the range is recorded for operator retry."""
        meta = job.metadata_or_default.with_failure(effective_range(job), error)
        return await self.transition(db, job, status, owner, error_message=error, job_metadata=meta)

    async def record_submission_failure(
        self,
        db: AsyncSession,
        job: ReportJob,
        error: str,
        error_class: ErrorClass,
        owner: Optional[str] = None,
    ) -> ReportJob:
        """
        Count a failed submission attempt. Authorization errors fail the job
        at once; anything else keeps it pending until retry_count reaches
        max_retries.
        """
        job.retry_count = (job.retry_count or 0) + 1
        if error_class == ErrorClass.AUTHORIZATION or job.retry_count >= job.max_retries:
            return await self.fail(db, job, error, owner)
        self._check_lease(job, owner)
        job.error_message = error
        job.lease_owner = None
        job.lease_expires_at = None
        job.updated_at = self.clock()
        await db.flush()
        logger.info(f"Job {job.id} submission failed ({error_class.value}), "
                    f"attempt {job.retry_count}/{job.max_retries}: {error}")
        return job

    # ── Operator actions ──────────────────────────────────────────────

    async def retry_failed(self, db: AsyncSession, account_id: uuid.UUID, max_retries: int = 3) -> dict:
        """Reopen failed/expired jobs whose failed ranges have retries left."""
        result = await db.execute(
            select(ReportJob).where(
                ReportJob.account_id == account_id,
                ReportJob.status.in_((JobStatus.FAILED.value, JobStatus.EXPIRED.value)),
            ).order_by(ReportJob.created_at)
        )
        retried = skipped = 0
        now = self.clock()
        for job in result.scalars().all():
            reopened = job.metadata_or_default.reopened(max_retries)
            if reopened is None:
                skipped += 1
                continue
            job.status = JobStatus.PENDING.value
            job.job_metadata = reopened
            job.retry_count = 0
            job.report_id = None
            job.download_url = None
            job.error_message = None
            job.submitted_at = None
            job.completed_at = None
            job.lease_owner = None
            job.lease_expires_at = None
            job.updated_at = now
            retried += 1
        await db.flush()
        logger.info(f"Account {account_id}: retried {retried} jobs, skipped {skipped} (max retries exceeded)")
        return {"retried": retried, "skipped": skipped}

    async def cleanup(self, db: AsyncSession, retention_days: int = 7) -> int:
        """
        Delete terminal jobs untouched for retention_days. Completed jobs
        still waiting for ingestion are kept, and so are initialization jobs
        of accounts still initializing, since backfill completion is judged
        from them.
        """
        cutoff = self.clock() - timedelta(days=retention_days)
        initializing = select(SyncState.account_id).where(SyncState.mode == SyncMode.INITIALIZATION.value)
        result = await db.execute(
            delete(ReportJob)
            .where(
                ReportJob.status.in_(TERMINAL_STATUSES),
                ReportJob.updated_at < cutoff,
                or_(ReportJob.status != JobStatus.COMPLETED.value, ReportJob.processed_at.is_not(None)),
                or_(
                    ReportJob.tier.not_in(INITIALIZATION_TIERS),
                    ReportJob.account_id.not_in(initializing),
                ),
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info(f"Cleanup removed {deleted} report jobs older than {retention_days} days")
        return deleted
