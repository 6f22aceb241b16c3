"""
Tier Policy & Slicer: split the trailing year into report-sized date ranges.

Day offsets count back from "today": offset 0 is yesterday, offset d is
today - d - 1. A tier covers the half-open offset interval [start_day, end_day)
and is cut into slices of slice_days, the last one clamped to end_day.

Slices are always computed from the date passed in (or today's date at call
time); nothing is cached, so a rerun after midnight shifts every range by one
day.
"""

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from report_sync.models import DataTier, JobPriority, ReportKind, AdProduct
from report_sync.schemas import DateRange
from report_sync.utils import utc_today


@dataclass(frozen=True)
class TierConfig:
    tier: str
    start_day: int
    end_day: int
    slice_days: int
    report_kinds: tuple[str, ...]
    priority: str

    @property
    def span_days(self) -> int:
        return self.end_day - self.start_day

    @property
    def slice_count(self) -> int:
        return math.ceil(self.span_days / self.slice_days)


ALL_KINDS = tuple(k.value for k in ReportKind)

TIER_POLICY: tuple[TierConfig, ...] = (
    TierConfig(DataTier.REALTIME.value, 0, 7, 1, ALL_KINDS, JobPriority.CRITICAL.value),
    TierConfig(DataTier.HOT.value, 8, 30, 7, ALL_KINDS, JobPriority.HIGH.value),
    TierConfig(DataTier.WARM.value, 31, 90, 15,
               (ReportKind.CAMPAIGN.value, ReportKind.AD_GROUP.value), JobPriority.MEDIUM.value),
    TierConfig(DataTier.COLD.value, 91, 365, 30, (ReportKind.CAMPAIGN.value,), JobPriority.LOW.value),
)


def legacy_policy(hot_slice_days: int = 7, cold_slice_days: int = 10) -> tuple[TierConfig, ...]:
    """Full-account backfill: 90 hot days then the rest of the year, campaign reports only."""
    if not 3 <= hot_slice_days <= 7:
        raise ValueError(f"Legacy hot slice must be 3-7 days, got {hot_slice_days}")
    if not 10 <= cold_slice_days <= 30:
        raise ValueError(f"Legacy cold slice must be 10-30 days, got {cold_slice_days}")
    return (
        TierConfig(DataTier.HOT_DATA.value, 0, 90, hot_slice_days,
                   (ReportKind.CAMPAIGN.value,), JobPriority.HIGH.value),
        TierConfig(DataTier.COLD_DATA.value, 90, 365, cold_slice_days,
                   (ReportKind.CAMPAIGN.value,), JobPriority.LOW.value),
    )


LEGACY_POLICY: tuple[TierConfig, ...] = legacy_policy()


# Attribution window per ad product, in days
ATTRIBUTION_WINDOW_DAYS = {
    AdProduct.SPONSORED_PRODUCTS.value: 14,
    AdProduct.SPONSORED_BRANDS.value: 30,
    AdProduct.SPONSORED_DISPLAY.value: 30,
}


def offset_to_date(offset: int, today: date) -> date:
    return today - timedelta(days=offset + 1)


def slice_range(
    start_day: int,
    end_day: int,
    slice_days: int,
    today: Optional[date] = None,
) -> list[DateRange]:
    """
    Cut offsets [start_day, end_day) into contiguous slices, newest first.
    Returns ceil((end_day - start_day) / slice_days) ranges.
    """
    if slice_days <= 0:
        raise ValueError("slice_days must be positive")
    if start_day < 0 or end_day < start_day:
        raise ValueError(f"Invalid offset interval [{start_day}, {end_day})")
    today = today or utc_today()

    slices = []
    cur = start_day
    while cur < end_day:
        slice_end = min(cur + slice_days, end_day)
        slices.append(DateRange(
            start=offset_to_date(slice_end - 1, today),
            end=offset_to_date(cur, today),
        ))
        cur = slice_end
    return slices


def slice_tier(config: TierConfig, today: Optional[date] = None) -> list[DateRange]:
    return slice_range(config.start_day, config.end_day, config.slice_days, today)


def recent_days(days: int, today: Optional[date] = None) -> DateRange:
    """The most recent `days` complete days, ending yesterday."""
    today = today or utc_today()
    return DateRange(start=today - timedelta(days=days), end=today - timedelta(days=1))
