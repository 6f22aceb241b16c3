"""
Tests for report decoding, field mapping and exactly-once ingestion.
"""

import gzip
import json
from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import FakeReportingClient, add_job, client_factory_for, gzip_json
from report_sync.models import Campaign, CampaignPerformanceDaily, EntityPerformanceDaily, JobStatus
from report_sync.services.field_mapping import FieldMappingError, map_record
from report_sync.services.job_store import JobStore
from report_sync.services.report_processor import ReportDecodeError, ReportProcessor, decode_report

SP = "SPONSORED_PRODUCTS"
SB = "SPONSORED_BRANDS"

RECORDS = [
    {"date": "2026-10-17", "campaignId": "111", "impressions": 1000, "clicks": 20, "cost": 12.5,
     "sales7d": 40.0, "sales14d": 55.0, "purchases7d": 2, "purchases14d": 3},
    {"date": "2026-10-17", "campaignId": "222", "impressions": 500, "clicks": 5, "cost": 4.0,
     "sales14d": 0, "purchases14d": 0},
]


# ══════════════════════════════════════════════════════════════════════
#  DECODING & MAPPING
# ══════════════════════════════════════════════════════════════════════

def test_decode_gzip_and_plain_json():
    assert decode_report(gzip_json(RECORDS)) == RECORDS
    assert decode_report(json.dumps(RECORDS).encode()) == RECORDS
    assert decode_report(json.dumps({"rows": RECORDS}).encode()) == RECORDS
    assert decode_report(gzip.compress(b"")) == []


@pytest.mark.parametrize("payload", [b"\x1f\x8bnot really gzip", gzip.compress(b"{not json")])
def test_decode_rejects_corrupt_documents(payload):
    with pytest.raises(ReportDecodeError):
        decode_report(payload)


def test_sp_prefers_fourteen_day_attribution():
    rec = map_record(RECORDS[0], SP, "campaign")
    assert rec.report_date == date(2026, 10, 17)
    assert rec.entity_id == "111"
    assert rec.sales == 55.0
    assert rec.orders == 3
    assert rec.spend == 12.5


def test_sb_prefers_click_attributed_columns():
    rec = map_record({"date": "2026-10-17", "campaignId": "9", "cost": 3.456,
                      "salesClicks": 10, "sales": 99, "purchasesClicks": 2, "purchases": 7}, SB, "campaign")
    assert rec.sales == 10.0
    assert rec.orders == 2
    assert rec.spend == 3.46


def test_fallback_when_preferred_column_is_missing():
    rec = map_record({"date": "2026-10-17", "campaignId": "9", "sales": 99, "purchases": 7}, SB, "campaign")
    assert rec.sales == 99.0
    assert rec.orders == 7
    assert rec.impressions == 0


@pytest.mark.parametrize("record", [
    {"campaignId": "1", "cost": 1},
    {"date": "2026-10-17", "cost": 1},
    {"date": "not-a-date", "campaignId": "1"},
    {"date": "2026-10-17", "campaignId": "1", "cost": "lots"},
])
def test_unmappable_records_raise(record):
    with pytest.raises(FieldMappingError):
        map_record(record, SP, "campaign")


def test_keyword_records_use_keyword_id_and_text():
    rec = map_record({"date": "2026-10-17", "campaignId": "1", "adGroupId": "2", "keywordId": "3",
                      "keyword": "running shoes"}, SP, "keyword")
    assert rec.entity_id == "3"
    assert rec.ad_group_id == "2"
    assert rec.entity_text == "running shoes"


# ══════════════════════════════════════════════════════════════════════
#  INGESTION
# ══════════════════════════════════════════════════════════════════════

async def completed_job(session_factory, account, clock, **overrides):
    fields = dict(status="completed", report_id="rep-1",
                  download_url="https://s3/rep-1.gz", completed_at=clock.now)
    fields.update(overrides)
    return await add_job(session_factory, account, clock, **fields)


async def add_campaign(session_factory, account, amazon_id="111"):
    async with session_factory() as db:
        campaign = Campaign(account_id=account.id, amazon_campaign_id=amazon_id, campaign_name="Brand - Exact",
                            spend=100.0, sales=300.0, impressions=10000, clicks=200, orders=10)
        db.add(campaign)
        await db.commit()
    return campaign


def processor_for(session_factory, clock, client=None):
    return ReportProcessor(session_factory, JobStore(clock=clock), client_factory_for(client or FakeReportingClient()))


@pytest.mark.anyio
async def test_ingest_is_applied_exactly_once(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock)
    campaign = await add_campaign(session_factory, account)
    processor = processor_for(session_factory, clock)

    assert await processor.ingest(job.id, RECORDS) == 2
    assert await processor.ingest(job.id, RECORDS) is None

    async with session_factory() as db:
        refreshed = (await db.execute(select(Campaign).where(Campaign.id == campaign.id))).scalar_one()
        rows = (await db.execute(select(CampaignPerformanceDaily))).scalars().all()
        stored = await JobStore().get_job(db, job.id)

    assert refreshed.spend == 112.5
    assert refreshed.sales == 355.0
    assert refreshed.impressions == 11000
    assert refreshed.orders == 13
    assert len(rows) == 2
    row = next(r for r in rows if r.amazon_campaign_id == "111")
    assert row.campaign_id == campaign.id
    assert row.acos == round(12.5 / 55.0 * 100, 2)
    assert row.roas == round(55.0 / 12.5, 2)
    assert stored.records_processed == 2
    assert stored.processed_at == clock.now
    assert stored.job_metadata.processed_ranges[0].start == date(2026, 10, 17)


@pytest.mark.anyio
async def test_reingesting_a_range_overwrites_daily_rows(session_factory, account, clock):
    first = await completed_job(session_factory, account, clock)
    second = await completed_job(session_factory, account, clock, tier="attribution")
    processor = processor_for(session_factory, clock)

    await processor.ingest(first.id, RECORDS[:1])
    await processor.ingest(second.id, [dict(RECORDS[0], sales14d=80.0)])

    async with session_factory() as db:
        rows = (await db.execute(select(CampaignPerformanceDaily))).scalars().all()
    assert len(rows) == 1
    assert rows[0].sales == 80.0


@pytest.mark.anyio
async def test_zero_records_still_marks_processed(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock)
    assert await processor_for(session_factory, clock).ingest(job.id, []) == 0
    async with session_factory() as db:
        stored = await JobStore().get_job(db, job.id)
    assert stored.processed_at is not None
    assert stored.records_processed == 0


@pytest.mark.anyio
async def test_unknown_campaigns_are_stored_without_summary(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock)
    assert await processor_for(session_factory, clock).ingest(job.id, RECORDS[1:]) == 1
    async with session_factory() as db:
        row = (await db.execute(select(CampaignPerformanceDaily))).scalar_one()
    assert row.campaign_id is None
    assert row.amazon_campaign_id == "222"
    assert row.acos is None


@pytest.mark.anyio
async def test_bad_records_are_skipped(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock)
    stored = await processor_for(session_factory, clock).ingest(job.id, [{"campaignId": "1"}, *RECORDS])
    assert stored == 2


@pytest.mark.anyio
async def test_entity_reports_go_to_entity_rows(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock, report_kind="ad_group")
    records = [{"date": "2026-10-17", "campaignId": "111", "adGroupId": "g-1", "adGroupName": "Exact",
                "cost": 2.0, "sales14d": 8.0}]
    assert await processor_for(session_factory, clock).ingest(job.id, records) == 1
    async with session_factory() as db:
        row = (await db.execute(select(EntityPerformanceDaily))).scalar_one()
    assert row.report_kind == "ad_group"
    assert row.entity_id == "g-1"
    assert row.amazon_campaign_id == "111"
    assert row.entity_text == "Exact"


@pytest.mark.anyio
async def test_run_tick_downloads_and_ingests(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock)
    client = FakeReportingClient(payload=gzip_json(RECORDS))

    stats = await processor_for(session_factory, clock, client).run_tick()

    assert stats == {"claimed": 1, "processed": 1, "records": 2, "errors": 0}
    assert client.closed
    assert (await processor_for(session_factory, clock, client).run_tick())["claimed"] == 0
    async with session_factory() as db:
        assert (await JobStore().get_job(db, job.id)).status == JobStatus.COMPLETED.value


@pytest.mark.anyio
async def test_corrupt_download_leaves_job_for_retry(session_factory, account, clock):
    job = await completed_job(session_factory, account, clock)
    client = FakeReportingClient(payload=b"\x1f\x8bgarbage")

    stats = await processor_for(session_factory, clock, client).run_tick()

    assert stats["errors"] == 1
    async with session_factory() as db:
        stored = await JobStore().get_job(db, job.id)
    assert stored.processed_at is None
    assert stored.lease_owner is None
    assert "Processing failed" in stored.error_message


class ConflictingProcessor(ReportProcessor):
    """Raises a unique-key conflict while storing one chosen job."""

    def __init__(self, *args, conflict_job_id, **kwargs):
        super().__init__(*args, **kwargs)
        self.conflict_job_id = conflict_job_id

    async def ingest(self, job_id, raw_records):
        if job_id == self.conflict_job_id:
            raise IntegrityError("INSERT INTO campaign_performance_daily", {}, Exception("UNIQUE constraint failed"))
        return await super().ingest(job_id, raw_records)


@pytest.mark.anyio
async def test_storage_error_releases_the_job_and_the_tick_goes_on(session_factory, account, clock):
    first = await completed_job(session_factory, account, clock)
    second = await completed_job(session_factory, account, clock, report_id="rep-2",
                                 start_date=date(2026, 10, 16), end_date=date(2026, 10, 16))
    client = FakeReportingClient(payload=gzip_json(RECORDS))
    processor = ConflictingProcessor(session_factory, JobStore(clock=clock), client_factory_for(client),
                                     conflict_job_id=first.id)

    stats = await processor.run_tick()

    assert stats == {"claimed": 2, "processed": 1, "records": 2, "errors": 1}
    async with session_factory() as db:
        failed = await JobStore().get_job(db, first.id)
        done = await JobStore().get_job(db, second.id)
    assert failed.processed_at is None
    assert failed.lease_owner is None
    assert "Ingestion failed" in failed.error_message
    assert done.processed_at == clock.now
