"""
Sync-Mode Selector: decides what each account needs on a scheduling pass.

initialization
    Queue the whole backfill (tiered or legacy policy) anchored on the date
    the backfill started. Re-running is idempotent: slices already queued,
    whatever their status, are not queued again. The account flips to
    incremental once every initialization job is completed and ingested; a
    failed or expired slice holds it in initialization until retried.

incremental
    Queue a T-1 job per report kind and ad product, plus either a full
    attribution re-walk (every day of each product's attribution window, in
    7-day slices) when the last walk is older than
    full_attribution_frequency_days, or a shallow re-check of the last
    daily_attribution_check_days days.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from report_sync.config import Settings, get_settings
from report_sync.models import (
    Account, SyncState, SyncMode, DataTier, JobPriority, JobStatus, ReportKind,
)
from report_sync.schemas import CreateJobsRequest, SyncStats
from report_sync.services.field_mapping import is_supported
from report_sync.services.job_store import INITIALIZATION_TIERS, JobSpec, JobStore
from report_sync.services.tier_policy import (
    ATTRIBUTION_WINDOW_DAYS, TIER_POLICY, TierConfig, legacy_policy, recent_days, slice_range, slice_tier,
)
from report_sync.utils import utc_today, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.SUBMITTED.value, JobStatus.PROCESSING.value)

ATTRIBUTION_SLICE_DAYS = 7
# Amazon caps a single v3 report at 31 days
MAX_REPORT_DAYS = 31


@dataclass
class PassResult:
    account_id: uuid.UUID
    mode: str
    created: int = 0
    flipped: bool = False
    backfill_failed: int = 0
    attribution: Optional[str] = None  # "full" | "shallow"
    job_ids: list = field(default_factory=list)


def policy_tiers(settings: Settings, policy: str) -> tuple[TierConfig, ...]:
    if policy == "legacy":
        return legacy_policy(settings.legacy_hot_slice_days, settings.legacy_cold_slice_days)
    return TIER_POLICY


def backfill_specs(
    tiers: tuple[TierConfig, ...],
    ad_products: list[str],
    today: date,
    is_initialization: bool = True,
) -> list[JobSpec]:
    """Every (slice, kind, product) of the policy; unsupported combinations are left out."""
    specs = []
    for tier in tiers:
        ranges = slice_tier(tier, today)
        for ad_product in ad_products:
            for kind in tier.report_kinds:
                if not is_supported(ad_product, kind):
                    continue
                for rng in ranges:
                    specs.append(JobSpec(
                        tier=tier.tier, report_kind=kind, ad_product=ad_product, priority=tier.priority,
                        start_date=rng.start, end_date=rng.end, is_initialization=is_initialization,
                    ))
    return specs


def chunk_range(start: date, end: date, days: int = MAX_REPORT_DAYS) -> list[tuple[date, date]]:
    chunks = []
    cur = start
    while cur <= end:
        chunk_end = min(cur + timedelta(days=days - 1), end)
        chunks.append((cur, chunk_end))
        cur = chunk_end + timedelta(days=1)
    return chunks


class SyncModeSelector:
    def __init__(
        self,
        job_store: JobStore,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = utc_today,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_store = job_store
        self.settings = settings or get_settings()
        self.today = today
        self.clock = clock

    @property
    def ad_products(self) -> list[str]:
        return self.settings.ad_product_list

    @property
    def incremental_kinds(self) -> list[str]:
        return self.settings.incremental_report_kind_list

    async def get_state(self, db: AsyncSession, account_id: uuid.UUID) -> Optional[SyncState]:
        result = await db.execute(select(SyncState).where(SyncState.account_id == account_id))
        return result.scalar_one_or_none()

    async def get_or_create_state(self, db: AsyncSession, account: Account) -> SyncState:
        state = await self.get_state(db, account.id)
        if state is None:
            state = SyncState(
                account_id=account.id,
                mode=SyncMode.INITIALIZATION.value,
                backfill_policy=self.settings.backfill_policy,
                backfill_anchor_date=self.today(),
                backfill_completed=False,
            )
            db.add(state)
            await db.flush()
            logger.info(f"Account {account.id}: new sync state, starting {state.backfill_policy} backfill "
                        f"anchored at {state.backfill_anchor_date}")
        return state

    async def run_pass(self, db: AsyncSession, account: Account) -> PassResult:
        state = await self.get_or_create_state(db, account)
        result = PassResult(account_id=account.id, mode=state.mode)

        if state.mode == SyncMode.INITIALIZATION.value:
            await self._initialization_pass(db, account, state, result)

        if state.mode == SyncMode.INCREMENTAL.value:
            await self._incremental_pass(db, account, state, result)

        state.last_pass_at = self.clock()
        result.mode = state.mode
        await db.flush()
        return result

    async def _initialization_pass(self, db: AsyncSession, account: Account, state: SyncState, result: PassResult) -> None:
        anchor = state.backfill_anchor_date or self.today()
        specs = backfill_specs(policy_tiers(self.settings, state.backfill_policy), self.ad_products, anchor)
        created = await self.job_store.create_jobs(
            db, account, specs,
            max_retries=self.settings.job_max_retries,
            dedupe_tiers=INITIALIZATION_TIERS,
        )
        result.created += len(created)
        result.job_ids.extend(job.id for job in created)

        outstanding = await self.job_store.initialization_outstanding(db, account.id)
        if outstanding == 0:
            now = self.clock()
            state.mode = SyncMode.INCREMENTAL.value
            state.backfill_completed = True
            state.backfill_completed_at = now
            result.flipped = True
            logger.info(f"Account {account.id}: backfill complete, switching to incremental sync")
        else:
            counts = await self.job_store.status_counts(db, account.id, tiers=INITIALIZATION_TIERS)
            result.backfill_failed = counts.get(JobStatus.FAILED.value, 0) + counts.get(JobStatus.EXPIRED.value, 0)
            if result.backfill_failed == outstanding:
                logger.warning(f"Account {account.id}: backfill stalled, {outstanding} jobs failed or expired; "
                               f"retry them to finish initialization")
            else:
                logger.info(f"Account {account.id}: initializing, {outstanding} backfill jobs outstanding "
                            f"({result.backfill_failed} failed)")

    def full_attribution_due(self, state: SyncState) -> bool:
        if state.last_full_attribution_at is None:
            return True
        elapsed = self.clock() - state.last_full_attribution_at
        return elapsed > timedelta(days=self.settings.full_attribution_frequency_days)

    def incremental_specs(self, full_attribution: bool) -> list[JobSpec]:
        today = self.today()
        yesterday = recent_days(1, today)
        specs = []
        for ad_product in self.ad_products:
            for kind in self.incremental_kinds:
                if is_supported(ad_product, kind):
                    specs.append(JobSpec(
                        tier=DataTier.DAILY.value, report_kind=kind, ad_product=ad_product,
                        priority=JobPriority.CRITICAL.value,
                        start_date=yesterday.start, end_date=yesterday.end,
                    ))

        for ad_product in self.ad_products:
            if full_attribution:
                window = ATTRIBUTION_WINDOW_DAYS.get(ad_product, 14)
                ranges = slice_range(0, window, ATTRIBUTION_SLICE_DAYS, today)
                priority = JobPriority.HIGH.value
            else:
                ranges = [recent_days(self.settings.daily_attribution_check_days, today)]
                priority = JobPriority.MEDIUM.value
            for rng in ranges:
                specs.append(JobSpec(
                    tier=DataTier.ATTRIBUTION.value, report_kind=ReportKind.CAMPAIGN.value,
                    ad_product=ad_product, priority=priority,
                    start_date=rng.start, end_date=rng.end, is_full_attribution=full_attribution,
                ))
        return specs

    async def _incremental_pass(self, db: AsyncSession, account: Account, state: SyncState, result: PassResult) -> None:
        full = self.full_attribution_due(state)
        created = await self.job_store.create_jobs(
            db, account, self.incremental_specs(full),
            max_retries=self.settings.job_max_retries,
            dedupe_statuses=ACTIVE_STATUSES,
        )
        if full:
            state.last_full_attribution_at = self.clock()
        result.created += len(created)
        result.job_ids.extend(job.id for job in created)
        result.attribution = "full" if full else "shallow"
        logger.info(f"Account {account.id}: incremental pass queued {len(created)} jobs "
                    f"({result.attribution} attribution check)")

    # ── Reporting / operator helpers ─────────────────────────────────

    def estimated_daily_tasks(self) -> int:
        kinds = [
            (p, k) for p in self.ad_products for k in self.incremental_kinds if is_supported(p, k)
        ]
        return len(kinds) + len(self.ad_products)

    async def get_sync_stats(self, db: AsyncSession, account_id: uuid.UUID) -> SyncStats:
        state = await self.get_state(db, account_id)
        counts = await self.job_store.status_counts(db, account_id)
        pending = sum(counts.get(s, 0) for s in ACTIVE_STATUSES)
        completed = counts.get(JobStatus.COMPLETED.value, 0)
        failed = counts.get(JobStatus.FAILED.value, 0) + counts.get(JobStatus.EXPIRED.value, 0)
        mode = state.mode if state else SyncMode.INITIALIZATION.value

        progress = None
        if mode == SyncMode.INITIALIZATION.value:
            init_counts = await self.job_store.status_counts(db, account_id, tiers=INITIALIZATION_TIERS)
            total = sum(init_counts.values())
            if total:
                outstanding = await self.job_store.initialization_outstanding(db, account_id)
                progress = round((total - outstanding) / total * 100, 1)
            estimated = await self.job_store.initialization_outstanding(db, account_id)
        else:
            progress = 100.0
            estimated = self.estimated_daily_tasks()

        return SyncStats(
            mode=mode,
            pending_tasks=pending,
            completed_tasks=completed,
            failed_tasks=failed,
            estimated_daily_tasks=estimated,
            initialization_progress=progress,
            last_sync_at=state.last_pass_at if state else None,
        )

    async def create_jobs_for_account(self, db: AsyncSession, account: Account, request: CreateJobsRequest) -> list:
        """Operator-requested jobs: an explicit date range, or a tiered / legacy sweep from today."""
        ad_products = request.ad_products or self.ad_products
        if request.sweep:
            tiers = policy_tiers(self.settings, request.sweep)
            if request.report_kinds:
                tiers = tuple(
                    TierConfig(t.tier, t.start_day, t.end_day, t.slice_days,
                               tuple(k for k in t.report_kinds if k in request.report_kinds), t.priority)
                    for t in tiers
                )
            # sweep jobs stay out of backfill progress and the flip check
            specs = [replace(spec, tier=DataTier.MANUAL.value)
                     for spec in backfill_specs(tiers, ad_products, self.today(), is_initialization=False)]
        else:
            kinds = request.report_kinds or [ReportKind.CAMPAIGN.value]
            specs = [
                JobSpec(
                    tier=DataTier.MANUAL.value, report_kind=kind, ad_product=ad_product,
                    priority=request.priority, start_date=start, end_date=end,
                )
                for ad_product in ad_products
                for kind in kinds
                if is_supported(ad_product, kind)
                for start, end in chunk_range(request.start_date, request.end_date)
            ]
        return await self.job_store.create_jobs(
            db, account, specs,
            max_retries=self.settings.job_max_retries,
            dedupe_statuses=ACTIVE_STATUSES,
        )
