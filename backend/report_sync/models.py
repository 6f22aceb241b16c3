"""
Amazon Ads Report Sync: Database Models
Report jobs, per-account sync state, and the performance store they feed.
"""

import uuid
import enum
from datetime import date, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, CheckConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator
from report_sync.database import Base
from report_sync.schemas import JobMetadata


def _utcnow() -> datetime:
    """Naive UTC now, matching DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.EXPIRED.value)
IN_FLIGHT_STATUSES = (JobStatus.SUBMITTED.value, JobStatus.PROCESSING.value)


class DataTier(str, enum.Enum):
    REALTIME = "realtime"
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    # Legacy backfill buckets
    HOT_DATA = "hot_data"
    COLD_DATA = "cold_data"
    STRUCTURE_DATA = "structure_data"
    # Incremental work
    DAILY = "daily"
    ATTRIBUTION = "attribution"
    MANUAL = "manual"


class ReportKind(str, enum.Enum):
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"
    TARGET = "target"


class AdProduct(str, enum.Enum):
    SPONSORED_PRODUCTS = "SPONSORED_PRODUCTS"
    SPONSORED_BRANDS = "SPONSORED_BRANDS"
    SPONSORED_DISPLAY = "SPONSORED_DISPLAY"


class JobPriority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_WEIGHTS = {
    JobPriority.CRITICAL.value: 4,
    JobPriority.HIGH.value: 3,
    JobPriority.MEDIUM.value: 2,
    JobPriority.LOW.value: 1,
}


class SyncMode(str, enum.Enum):
    INITIALIZATION = "initialization"
    INCREMENTAL = "incremental"


class JobMetadataType(TypeDecorator):
    """Persists JobMetadata as JSON; always loads back as the typed model."""
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, dict):
            value = JobMetadata.model_validate(value)
        return value.model_dump(mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return JobMetadata.model_validate(value)


# ══════════════════════════════════════════════════════════════════════
#  CREDENTIALS & ACCOUNTS
# ══════════════════════════════════════════════════════════════════════

class Credential(Base):
    """Login-with-Amazon credentials used for Reporting API calls."""
    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str] = mapped_column(String(512), nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    region: Mapped[str] = mapped_column(String(10), default="na")
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    accounts: Mapped[list["Account"]] = relationship("Account", back_populates="credential", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_credentials_status", "status"),
    )


class Account(Base):
    """An advertiser profile whose reports are synced."""
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    amazon_account_id: Mapped[str] = mapped_column(String(255), nullable=True)
    account_name: Mapped[str] = mapped_column(String(512), nullable=True)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    marketplace: Mapped[str] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    credential: Mapped["Credential"] = relationship("Credential", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("credential_id", "profile_id", name="uq_account_profile_per_credential"),
        Index("ix_accounts_credential_id", "credential_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS: Running summary totals fed by processed reports
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    campaign_type: Mapped[str] = mapped_column(String(100), nullable=True)
    state: Mapped[str] = mapped_column(String(50), nullable=True)
    spend: Mapped[float] = mapped_column(Float, nullable=True, default=0.0)
    sales: Mapped[float] = mapped_column(Float, nullable=True, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, nullable=True, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=True, default=0)
    orders: Mapped[int] = mapped_column(Integer, nullable=True, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "amazon_campaign_id", name="uq_campaign_per_account"),
        Index("ix_campaigns_account_id", "account_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  REPORT JOBS: One asynchronous Reporting API request each
# ══════════════════════════════════════════════════════════════════════

class ReportJob(Base):
    """
    Lifecycle: pending -> submitted -> processing -> completed | failed | expired.
    lease_owner / lease_expires_at implement the atomic claim; a lease left
    behind by a crashed worker expires and the job becomes claimable again.
    """
    __tablename__ = "report_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    marketplace: Mapped[str] = mapped_column(String(100), nullable=True)

    tier: Mapped[str] = mapped_column(String(30), nullable=False)
    report_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    ad_product: Mapped[str] = mapped_column(String(40), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default=JobPriority.MEDIUM.value)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    report_id: Mapped[str] = mapped_column(String(255), nullable=True)  # Amazon report handle
    download_url: Mapped[str] = mapped_column(Text, nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    job_metadata: Mapped[JobMetadata] = mapped_column("metadata", JobMetadataType, nullable=True)

    lease_owner: Mapped[str] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_report_jobs_date_order"),
        Index("ix_report_jobs_status_created", "status", "created_at"),
        Index("ix_report_jobs_account_status", "account_id", "status"),
        Index("ix_report_jobs_dedupe", "account_id", "report_kind", "ad_product", "start_date", "end_date"),
    )

    @property
    def metadata_or_default(self) -> JobMetadata:
        return self.job_metadata or JobMetadata(tier=self.tier)


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGN PERFORMANCE DAILY: One row per campaign per date
# ══════════════════════════════════════════════════════════════════════

class CampaignPerformanceDaily(Base):
    """
    Keyed by (account, Amazon campaign id, date). Re-ingesting an overlapping
    range overwrites the metrics (last write wins).
    """
    __tablename__ = "campaign_performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    ad_product: Mapped[str] = mapped_column(String(40), nullable=True)

    spend: Mapped[float] = mapped_column(Float, default=0.0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    acos: Mapped[float] = mapped_column(Float, nullable=True)
    roas: Mapped[float] = mapped_column(Float, nullable=True)

    source: Mapped[str] = mapped_column(String(50), default="api")
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "amazon_campaign_id", "report_date", name="uq_campaign_perf_daily"),
        Index("ix_cpd_account_date", "account_id", "report_date"),
    )


class EntityPerformanceDaily(Base):
    """Ad group / keyword / target rows, keyed by (account, kind, entity id, date)."""
    __tablename__ = "entity_performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    report_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=True)
    entity_text: Mapped[str] = mapped_column(String(512), nullable=True)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    ad_product: Mapped[str] = mapped_column(String(40), nullable=True)

    spend: Mapped[float] = mapped_column(Float, default=0.0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    orders: Mapped[int] = mapped_column(Integer, default=0)

    source: Mapped[str] = mapped_column(String(50), default="api")
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "report_kind", "entity_id", "report_date", name="uq_entity_perf_daily"),
        Index("ix_epd_account_date", "account_id", "report_date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC STATE: Per-account backfill / incremental bookkeeping
# ══════════════════════════════════════════════════════════════════════

class SyncState(Base):
    __tablename__ = "sync_states"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    mode: Mapped[str] = mapped_column(String(20), default=SyncMode.INITIALIZATION.value)
    backfill_policy: Mapped[str] = mapped_column(String(20), default="tiered")
    backfill_anchor_date: Mapped[date] = mapped_column(Date, nullable=True)
    backfill_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    backfill_completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_full_attribution_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_pass_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
