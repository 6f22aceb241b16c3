"""
Typed sub-records and API response shapes.

JobMetadata replaces the free-form JSON blob on report jobs: date ranges are
validated (start <= end), processed ranges are kept merged and
non-overlapping, and failed-range retry counters cannot go negative.
Instances are frozen; every mutation helper returns a new instance so the ORM
sees a changed value on assignment.
"""

from datetime import date, datetime, timedelta
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DateRange(BaseModel):
    """Inclusive calendar date range."""
    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after end {self.end}")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def covers(self, other: "DateRange") -> bool:
        return self.start <= other.start and other.end <= self.end


def merge_ranges(ranges: list[DateRange]) -> list[DateRange]:
    """Sort and coalesce overlapping or adjacent ranges."""
    merged: list[DateRange] = []
    for rng in sorted(ranges, key=lambda r: (r.start, r.end)):
        if merged and rng.start <= merged[-1].end + timedelta(days=1):
            last = merged[-1]
            if rng.end > last.end:
                merged[-1] = DateRange(start=last.start, end=rng.end)
        else:
            merged.append(rng)
    return merged


def envelope(ranges: list[DateRange]) -> Optional[DateRange]:
    if not ranges:
        return None
    return DateRange(start=min(r.start for r in ranges), end=max(r.end for r in ranges))


class FailedRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    error: str = ""
    retry_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "FailedRange":
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after end {self.end}")
        return self

    def as_range(self) -> DateRange:
        return DateRange(start=self.start, end=self.end)


class JobMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Optional[str] = None
    is_initialization: bool = False
    is_full_attribution: bool = False
    retry_mode: bool = False
    processed_ranges: list[DateRange] = Field(default_factory=list)
    failed_ranges: list[FailedRange] = Field(default_factory=list)
    ranges_to_process: list[DateRange] = Field(default_factory=list)
    last_checkpoint: Optional[datetime] = None

    @field_validator("processed_ranges")
    @classmethod
    def _merge_processed(cls, value: list[DateRange]) -> list[DateRange]:
        return merge_ranges(value)

    def with_processed(self, rng: DateRange, checkpoint: Optional[datetime] = None) -> "JobMetadata":
        """Record an ingested range; failed ranges it covers are settled."""
        remaining = [f for f in self.failed_ranges if not rng.covers(f.as_range())]
        return self.model_copy(update={
            "processed_ranges": merge_ranges([*self.processed_ranges, rng]),
            "failed_ranges": remaining,
            "ranges_to_process": [],
            "retry_mode": False,
            "last_checkpoint": checkpoint or self.last_checkpoint,
        })

    def with_failure(self, rng: DateRange, error: str) -> "JobMetadata":
        """Record a failed range, bumping its counter if it failed before."""
        failed = []
        found = False
        for f in self.failed_ranges:
            if f.start == rng.start and f.end == rng.end:
                failed.append(f.model_copy(update={"error": error, "retry_count": f.retry_count + 1}))
                found = True
            else:
                failed.append(f)
        if not found:
            failed.append(FailedRange(start=rng.start, end=rng.end, error=error, retry_count=1))
        return self.model_copy(update={"failed_ranges": failed})

    def retryable_ranges(self, max_retries: int) -> list[DateRange]:
        return [f.as_range() for f in self.failed_ranges if f.retry_count < max_retries]

    def reopened(self, max_retries: int) -> Optional["JobMetadata"]:
        """Metadata for an operator retry, or None when nothing is retryable."""
        ranges = self.retryable_ranges(max_retries)
        if not ranges:
            return None
        return self.model_copy(update={"retry_mode": True, "ranges_to_process": merge_ranges(ranges)})


# ══════════════════════════════════════════════════════════════════════
#  API SHAPES
# ══════════════════════════════════════════════════════════════════════

class CreateJobsRequest(BaseModel):
    """Either an explicit date range or a tier sweep ("tiered" / "legacy")."""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sweep: Optional[str] = None
    report_kinds: Optional[list[str]] = None
    ad_products: Optional[list[str]] = None
    priority: str = "medium"

    @field_validator("report_kinds")
    @classmethod
    def _known_kinds(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        allowed = {"campaign", "ad_group", "keyword", "target"}
        for kind in value or []:
            if kind not in allowed:
                raise ValueError(f"Unknown report kind {kind!r}")
        return value

    @field_validator("ad_products")
    @classmethod
    def _known_products(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        allowed = {"SPONSORED_PRODUCTS", "SPONSORED_BRANDS", "SPONSORED_DISPLAY"}
        value = [p.upper() for p in value] if value else value
        for product in value or []:
            if product not in allowed:
                raise ValueError(f"Unknown ad product {product!r}")
        return value

    @field_validator("priority")
    @classmethod
    def _known_priority(cls, value: str) -> str:
        if value not in ("critical", "high", "medium", "low"):
            raise ValueError(f"Unknown priority {value!r}")
        return value

    @model_validator(mode="after")
    def _check_target(self) -> "CreateJobsRequest":
        if self.sweep:
            if self.sweep not in ("tiered", "legacy"):
                raise ValueError("sweep must be 'tiered' or 'legacy'")
            return self
        if not self.start_date or not self.end_date:
            raise ValueError("Provide start_date and end_date, or a sweep")
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ReportJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    profile_id: Optional[str] = None
    marketplace: Optional[str] = None
    tier: str
    report_kind: str
    ad_product: str
    priority: str
    start_date: date
    end_date: date
    status: str
    report_id: Optional[str] = None
    records_processed: int = 0
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    metadata: Optional[JobMetadata] = None
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "ReportJobOut":
        return cls(
            id=str(job.id),
            account_id=str(job.account_id),
            profile_id=job.profile_id,
            marketplace=job.marketplace,
            tier=job.tier,
            report_kind=job.report_kind,
            ad_product=job.ad_product,
            priority=job.priority,
            start_date=job.start_date,
            end_date=job.end_date,
            status=job.status,
            report_id=job.report_id,
            records_processed=job.records_processed or 0,
            error_message=job.error_message,
            retry_count=job.retry_count or 0,
            max_retries=job.max_retries,
            metadata=job.job_metadata,
            created_at=job.created_at,
            submitted_at=job.submitted_at,
            completed_at=job.completed_at,
            processed_at=job.processed_at,
            updated_at=job.updated_at,
        )


class SyncStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: str
    pending_tasks: int = Field(0, serialization_alias="pendingTasks")
    completed_tasks: int = Field(0, serialization_alias="completedTasks")
    failed_tasks: int = Field(0, serialization_alias="failedTasks")
    estimated_daily_tasks: int = Field(0, serialization_alias="estimatedDailyTasks")
    initialization_progress: Optional[float] = Field(None, serialization_alias="initializationProgress")
    last_sync_at: Optional[datetime] = Field(None, serialization_alias="lastSyncAt")
