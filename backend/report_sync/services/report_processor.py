"""
Report Processor: ingests completed reports into the performance store.

Per job: download the GZIP_JSON document, decode it, map each record through
the per-product field table, then in ONE transaction:

  1. stamp processed_at with a conditional UPDATE (status = completed AND
     processed_at IS NULL); if no row matched, another worker already
     ingested this report and nothing else happens
  2. upsert daily rows (last write wins)
  3. add the same metrics to the campaign summary totals (campaign reports)
  4. record records_processed and the processed range

Because the summary deltas share the transaction with the processed_at stamp,
they are applied at most once per report. Bad records are logged and skipped;
a failed download or undecodable document leaves the job completed but
unprocessed, with error_message set, for the next tick.
"""

import gzip
import json
import logging
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from report_sync.models import (
    Campaign, CampaignPerformanceDaily, EntityPerformanceDaily, ReportJob,
    JobStatus, ReportKind,
)
from report_sync.services.field_mapping import FieldMappingError, MappedRecord, map_record
from report_sync.services.job_store import JobStore, effective_range
from report_sync.services.submission_worker import ClientFactory, load_account
from report_sync.services.token_service import get_reporting_client

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class ReportDecodeError(Exception):
    """Downloaded report could not be decompressed or parsed."""


def decode_report(payload: bytes) -> list[dict]:
    """Decompress (when gzipped) and parse a report document into records."""
    try:
        raw = gzip.decompress(payload) if payload[:2] == GZIP_MAGIC else payload
        parsed = json.loads(raw.decode("utf-8")) if raw.strip() else []
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ReportDecodeError(f"Could not decode report: {e}") from e

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        # Some formats wrap rows in a key
        for key in ("rows", "data", "records", "results"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
        return [parsed]
    raise ReportDecodeError(f"Unexpected report document type: {type(parsed).__name__}")


@dataclass
class IngestStats:
    stored: int = 0
    skipped: int = 0
    unmatched_campaigns: set = field(default_factory=set)


def _ratios(spend: float, sales: float) -> tuple[Optional[float], Optional[float]]:
    acos = round(spend / sales * 100, 2) if sales else None
    roas = round(sales / spend, 2) if spend else None
    return acos, roas


async def store_campaign_rows(
    db: AsyncSession,
    job: ReportJob,
    records: list[MappedRecord],
    stats: IngestStats,
    now: datetime,
) -> None:
    campaign_ids = sorted({r.entity_id for r in records})
    campaigns = {}
    if campaign_ids:
        result = await db.execute(
            select(Campaign).where(Campaign.account_id == job.account_id, Campaign.amazon_campaign_id.in_(campaign_ids))
        )
        campaigns = {c.amazon_campaign_id: c for c in result.scalars().all()}

    existing = {}
    if records:
        result = await db.execute(
            select(CampaignPerformanceDaily).where(
                CampaignPerformanceDaily.account_id == job.account_id,
                CampaignPerformanceDaily.amazon_campaign_id.in_(campaign_ids),
                CampaignPerformanceDaily.report_date.in_(sorted({r.report_date for r in records})),
            )
        )
        existing = {(row.amazon_campaign_id, row.report_date): row for row in result.scalars().all()}

    for rec in records:
        campaign = campaigns.get(rec.entity_id)
        if campaign is None and rec.entity_id not in stats.unmatched_campaigns:
            stats.unmatched_campaigns.add(rec.entity_id)
            logger.warning(f"Job {job.id}: campaign {rec.entity_id} not found for account {job.account_id}; "
                           f"storing daily rows without summary update")

        acos, roas = _ratios(rec.spend, rec.sales)
        key = (rec.entity_id, rec.report_date)
        row = existing.get(key)
        if row is None:
            row = CampaignPerformanceDaily(
                account_id=job.account_id,
                amazon_campaign_id=rec.entity_id,
                report_date=rec.report_date,
            )
            db.add(row)
            existing[key] = row
        row.campaign_id = campaign.id if campaign else None
        row.ad_product = job.ad_product
        row.impressions = rec.impressions
        row.clicks = rec.clicks
        row.spend = rec.spend
        row.sales = rec.sales
        row.orders = rec.orders
        row.acos = acos
        row.roas = roas
        row.source = "api"
        row.synced_at = now

        if campaign is not None:
            campaign.impressions = (campaign.impressions or 0) + rec.impressions
            campaign.clicks = (campaign.clicks or 0) + rec.clicks
            campaign.spend = round((campaign.spend or 0.0) + rec.spend, 2)
            campaign.sales = round((campaign.sales or 0.0) + rec.sales, 2)
            campaign.orders = (campaign.orders or 0) + rec.orders
            campaign.synced_at = now
        stats.stored += 1


async def store_entity_rows(
    db: AsyncSession,
    job: ReportJob,
    records: list[MappedRecord],
    stats: IngestStats,
    now: datetime,
) -> None:
    existing = {}
    if records:
        result = await db.execute(
            select(EntityPerformanceDaily).where(
                EntityPerformanceDaily.account_id == job.account_id,
                EntityPerformanceDaily.report_kind == job.report_kind,
                EntityPerformanceDaily.entity_id.in_(sorted({r.entity_id for r in records})),
                EntityPerformanceDaily.report_date.in_(sorted({r.report_date for r in records})),
            )
        )
        existing = {(row.entity_id, row.report_date): row for row in result.scalars().all()}

    for rec in records:
        key = (rec.entity_id, rec.report_date)
        row = existing.get(key)
        if row is None:
            row = EntityPerformanceDaily(
                account_id=job.account_id,
                report_kind=job.report_kind,
                entity_id=rec.entity_id,
                report_date=rec.report_date,
            )
            db.add(row)
            existing[key] = row
        row.amazon_campaign_id = rec.campaign_id
        row.ad_group_id = rec.ad_group_id
        row.entity_text = rec.entity_text
        row.ad_product = job.ad_product
        row.impressions = rec.impressions
        row.clicks = rec.clicks
        row.spend = rec.spend
        row.sales = rec.sales
        row.orders = rec.orders
        row.source = "api"
        row.synced_at = now
        stats.stored += 1


class ReportProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        job_store: JobStore,
        client_factory: ClientFactory = get_reporting_client,
        batch_size: int = 3,
        owner: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.job_store = job_store
        self.client_factory = client_factory
        self.batch_size = batch_size
        self.owner = owner or f"process-{uuid.uuid4().hex[:12]}"

    async def run_tick(self) -> dict:
        async with self.session_factory() as db:
            jobs = await self.job_store.claim_batch(
                db, (JobStatus.COMPLETED.value,), self.batch_size, self.owner, unprocessed_only=True,
            )
            await db.commit()

        stats = {"claimed": len(jobs), "processed": 0, "records": 0, "errors": 0}
        for job in jobs:
            try:
                records = await self._download(job)
            except Exception as e:
                logger.error(f"Job {job.id}: report download/decode failed: {e}")
                await self._record_error(job.id, f"Processing failed: {e}")
                stats["errors"] += 1
                continue

            try:
                stored = await self.ingest(job.id, records)
            except SQLAlchemyError as e:
                logger.error(f"Job {job.id}: storing report rows failed: {e}")
                await self._record_error(job.id, f"Ingestion failed: {e}")
                stats["errors"] += 1
                continue
            if stored is not None:
                stats["processed"] += 1
                stats["records"] += stored
        logger.info(f"Report processing tick: {stats}")
        return stats

    async def _download(self, job: ReportJob) -> list[dict]:
        async with self.session_factory() as db:
            account = await load_account(db, job.account_id)
            client = await self.client_factory(account, db)
            await db.commit()
        try:
            payload = await client.download_report(job.download_url)
        finally:
            await client.aclose()
        return decode_report(payload)

    async def _record_error(self, job_id: uuid.UUID, message: str) -> None:
        async with self.session_factory() as db:
            job = await self.job_store.get_job(db, job_id)
            if job is None:
                return
            job.error_message = message
            await self.job_store.release(db, job, owner=self.owner)
            await db.commit()

    async def ingest(self, job_id: uuid.UUID, raw_records: list[dict]) -> Optional[int]:
        """
        Store one report's records. Returns the number stored, or None when the
        job was already processed (or is not completed).
        """
        async with self.session_factory() as db:
            now = self.job_store.clock()
            result = await db.execute(
                update(ReportJob)
                .where(
                    ReportJob.id == job_id,
                    ReportJob.status == JobStatus.COMPLETED.value,
                    ReportJob.processed_at.is_(None),
                )
                .values(processed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                logger.info(f"Job {job_id} already processed; skipping")
                return None

            job = await self.job_store.get_job(db, job_id)
            stats = IngestStats()
            mapped = []
            for raw in raw_records:
                try:
                    mapped.append(map_record(raw, job.ad_product, job.report_kind))
                except FieldMappingError as e:
                    stats.skipped += 1
                    logger.warning(f"Job {job.id}: skipping record: {e}")

            if job.report_kind == ReportKind.CAMPAIGN.value:
                await store_campaign_rows(db, job, mapped, stats, now)
            else:
                await store_entity_rows(db, job, mapped, stats, now)

            job.records_processed = stats.stored
            job.error_message = None
            job.job_metadata = job.metadata_or_default.with_processed(effective_range(job), checkpoint=now)
            job.lease_owner = None
            job.lease_expires_at = None
            job.updated_at = now
            await db.commit()

        logger.info(f"Job {job_id}: stored {stats.stored} rows, skipped {stats.skipped} records"
                    + (f", {len(stats.unmatched_campaigns)} unknown campaigns" if stats.unmatched_campaigns else ""))
        return stats.stored
