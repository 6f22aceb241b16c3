"""
Tests for JobMetadata range bookkeeping and request validation.
"""

from datetime import date

import pytest
from pydantic import ValidationError

from report_sync.schemas import CreateJobsRequest, DateRange, JobMetadata, merge_ranges


def r(start: str, end: str) -> DateRange:
    return DateRange(start=date.fromisoformat(start), end=date.fromisoformat(end))


def test_date_range_rejects_inverted_bounds():
    with pytest.raises(ValidationError):
        r("2026-10-10", "2026-10-01")


def test_merge_ranges_coalesces_overlapping_and_adjacent():
    merged = merge_ranges([
        r("2026-10-08", "2026-10-10"),
        r("2026-10-01", "2026-10-03"),
        r("2026-10-04", "2026-10-05"),
        r("2026-10-09", "2026-10-12"),
    ])
    assert merged == [r("2026-10-01", "2026-10-05"), r("2026-10-08", "2026-10-12")]


def test_processed_ranges_are_merged_on_load():
    meta = JobMetadata.model_validate({
        "processed_ranges": [
            {"start": "2026-10-03", "end": "2026-10-04"},
            {"start": "2026-10-01", "end": "2026-10-02"},
        ],
    })
    assert meta.processed_ranges == [r("2026-10-01", "2026-10-04")]


def test_failed_range_retry_count_cannot_be_negative():
    with pytest.raises(ValidationError):
        JobMetadata.model_validate({
            "failed_ranges": [{"start": "2026-10-01", "end": "2026-10-02", "retry_count": -1}],
        })


def test_with_failure_bumps_the_same_range():
    meta = JobMetadata().with_failure(r("2026-10-01", "2026-10-07"), "boom")
    meta = meta.with_failure(r("2026-10-01", "2026-10-07"), "boom again")
    assert len(meta.failed_ranges) == 1
    assert meta.failed_ranges[0].retry_count == 2
    assert meta.failed_ranges[0].error == "boom again"


def test_reopened_only_includes_ranges_with_retries_left():
    meta = (
        JobMetadata()
        .with_failure(r("2026-10-01", "2026-10-07"), "e")
        .with_failure(r("2026-09-01", "2026-09-07"), "e")
        .with_failure(r("2026-09-01", "2026-09-07"), "e")
        .with_failure(r("2026-09-01", "2026-09-07"), "e")
    )
    reopened = meta.reopened(max_retries=3)
    assert reopened.retry_mode is True
    assert reopened.ranges_to_process == [r("2026-10-01", "2026-10-07")]


def test_reopened_is_none_when_retries_are_exhausted():
    meta = JobMetadata().with_failure(r("2026-10-01", "2026-10-07"), "e")
    assert meta.reopened(max_retries=1) is None


def test_with_processed_settles_covered_failures():
    meta = JobMetadata().with_failure(r("2026-10-01", "2026-10-07"), "e").reopened(3)
    done = meta.with_processed(r("2026-10-01", "2026-10-07"))
    assert done.failed_ranges == []
    assert done.ranges_to_process == []
    assert done.retry_mode is False
    assert done.processed_ranges == [r("2026-10-01", "2026-10-07")]


def test_metadata_is_immutable():
    meta = JobMetadata()
    with pytest.raises(ValidationError):
        meta.retry_mode = True


def test_create_jobs_request_needs_range_or_sweep():
    with pytest.raises(ValidationError):
        CreateJobsRequest()
    with pytest.raises(ValidationError):
        CreateJobsRequest(start_date=date(2026, 10, 2), end_date=date(2026, 10, 1))
    assert CreateJobsRequest(sweep="legacy").sweep == "legacy"


def test_create_jobs_request_validates_names():
    with pytest.raises(ValidationError):
        CreateJobsRequest(sweep="tiered", report_kinds=["search_term"])
    with pytest.raises(ValidationError):
        CreateJobsRequest(sweep="tiered", priority="urgent")
    req = CreateJobsRequest(sweep="tiered", ad_products=["sponsored_brands"])
    assert req.ad_products == ["SPONSORED_BRANDS"]
