"""
Report catalog and per-product field mapping for Reporting API v3.

Which v3 report (type id, groupBy, columns) backs each (ad product, report
kind), and which vendor columns feed each local metric. Column names differ
by product: SP reports attributed sales as sales7d / sales14d, SB and SD use
the "Clicks"-suffixed variants. Each metric resolves through an ordered list
of candidate keys; the first key present with a non-null value wins.
Supporting a new product variant means editing these tables only.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from report_sync.models import AdProduct, ReportKind

logger = logging.getLogger(__name__)

SP = AdProduct.SPONSORED_PRODUCTS.value
SB = AdProduct.SPONSORED_BRANDS.value
SD = AdProduct.SPONSORED_DISPLAY.value


@dataclass(frozen=True)
class ReportDefinition:
    report_type_id: str
    group_by: tuple[str, ...]
    columns: tuple[str, ...]


_SP_METRICS = ("impressions", "clicks", "cost", "sales7d", "purchases7d", "sales14d", "purchases14d")
_SBD_METRICS = ("impressions", "clicks", "cost", "sales", "salesClicks", "purchases", "purchasesClicks")

_CAMPAIGN_COLS = ("date", "campaignId", "campaignName", "campaignStatus")
_AD_GROUP_COLS = ("date", "campaignId", "adGroupId", "adGroupName")

REPORT_DEFINITIONS: dict[tuple[str, str], ReportDefinition] = {
    (SP, ReportKind.CAMPAIGN.value): ReportDefinition(
        "spCampaigns", ("campaign",), _CAMPAIGN_COLS + _SP_METRICS),
    (SP, ReportKind.AD_GROUP.value): ReportDefinition(
        "spCampaigns", ("campaign", "adGroup"), _AD_GROUP_COLS + _SP_METRICS),
    (SP, ReportKind.KEYWORD.value): ReportDefinition(
        "spTargeting", ("targeting",),
        ("date", "campaignId", "adGroupId", "keywordId", "keyword", "matchType") + _SP_METRICS),
    (SP, ReportKind.TARGET.value): ReportDefinition(
        "spTargeting", ("targeting",),
        ("date", "campaignId", "adGroupId", "targetId", "targetingExpression") + _SP_METRICS),

    (SB, ReportKind.CAMPAIGN.value): ReportDefinition(
        "sbCampaigns", ("campaign",), _CAMPAIGN_COLS + _SBD_METRICS),
    (SB, ReportKind.AD_GROUP.value): ReportDefinition(
        "sbAdGroup", ("adGroup",), _AD_GROUP_COLS + _SBD_METRICS),
    (SB, ReportKind.KEYWORD.value): ReportDefinition(
        "sbTargeting", ("targeting",),
        ("date", "campaignId", "adGroupId", "keywordId", "keywordText", "matchType") + _SBD_METRICS),
    (SB, ReportKind.TARGET.value): ReportDefinition(
        "sbTargeting", ("targeting",),
        ("date", "campaignId", "adGroupId", "targetId", "targetingExpression") + _SBD_METRICS),

    # Sponsored Display has no keyword reports; targets cover them
    (SD, ReportKind.CAMPAIGN.value): ReportDefinition(
        "sdCampaigns", ("campaign",), _CAMPAIGN_COLS + _SBD_METRICS),
    (SD, ReportKind.AD_GROUP.value): ReportDefinition(
        "sdAdGroup", ("adGroup",), _AD_GROUP_COLS + _SBD_METRICS),
    (SD, ReportKind.TARGET.value): ReportDefinition(
        "sdTargeting", ("targeting",),
        ("date", "campaignId", "adGroupId", "targetId", "targetingExpression") + _SBD_METRICS),
}


def get_report_definition(ad_product: str, report_kind: str) -> Optional[ReportDefinition]:
    return REPORT_DEFINITIONS.get((ad_product, report_kind))


def is_supported(ad_product: str, report_kind: str) -> bool:
    return (ad_product, report_kind) in REPORT_DEFINITIONS


# ══════════════════════════════════════════════════════════════════════
#  FIELD PRECEDENCE
# ══════════════════════════════════════════════════════════════════════

_COMMON = {
    "date": ("date", "reportDate"),
    "campaign_id": ("campaignId",),
    "ad_group_id": ("adGroupId",),
    "impressions": ("impressions",),
    "clicks": ("clicks",),
    "spend": ("cost", "spend"),
}

FIELD_MAPPINGS: dict[str, dict[str, tuple[str, ...]]] = {
    SP: {
        **_COMMON,
        "sales": ("sales14d", "attributedSales14d", "sales7d", "attributedSales7d", "sales"),
        "orders": ("purchases14d", "attributedConversions14d", "purchases7d", "attributedConversions7d", "orders"),
    },
    SB: {
        **_COMMON,
        "sales": ("salesClicks", "sales", "attributedSales14d"),
        "orders": ("purchasesClicks", "purchases", "attributedConversions14d", "orders"),
    },
    SD: {
        **_COMMON,
        "sales": ("salesClicks", "sales", "attributedSales14d"),
        "orders": ("purchasesClicks", "purchases", "attributedConversions14d", "orders"),
    },
}

ENTITY_ID_FIELDS = {
    ReportKind.CAMPAIGN.value: ("campaignId",),
    ReportKind.AD_GROUP.value: ("adGroupId",),
    ReportKind.KEYWORD.value: ("keywordId", "targetId"),
    ReportKind.TARGET.value: ("targetId", "keywordId"),
}

ENTITY_TEXT_FIELDS = ("keywordText", "keyword", "targetingExpression", "targetingText", "adGroupName", "campaignName")


class FieldMappingError(ValueError):
    """A record is missing a field the row cannot be stored without."""


def pick(record: dict, candidates: tuple[str, ...]):
    for key in candidates:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def _number(value, cast):
    if value is None:
        return cast(0)
    try:
        return cast(float(value))
    except (TypeError, ValueError):
        raise FieldMappingError(f"Non-numeric metric value {value!r}")


@dataclass
class MappedRecord:
    report_date: date
    entity_id: str
    campaign_id: Optional[str]
    ad_group_id: Optional[str]
    entity_text: Optional[str]
    impressions: int
    clicks: int
    spend: float
    sales: float
    orders: int


def map_record(record: dict, ad_product: str, report_kind: str) -> MappedRecord:
    """Resolve one vendor record into local metrics, or raise FieldMappingError."""
    mapping = FIELD_MAPPINGS.get(ad_product)
    if mapping is None:
        raise FieldMappingError(f"No field mapping for ad product {ad_product}")
    if not isinstance(record, dict):
        raise FieldMappingError(f"Record is not an object: {type(record).__name__}")

    raw_date = pick(record, mapping["date"])
    if raw_date is None:
        raise FieldMappingError("Record has no date")
    try:
        report_date = date.fromisoformat(str(raw_date)[:10])
    except ValueError:
        raise FieldMappingError(f"Unparseable date {raw_date!r}")

    entity_id = pick(record, ENTITY_ID_FIELDS[report_kind])
    if entity_id is None:
        raise FieldMappingError(f"Record has no {report_kind} id")

    campaign_id = pick(record, mapping["campaign_id"])
    ad_group_id = pick(record, mapping["ad_group_id"])
    text = pick(record, ENTITY_TEXT_FIELDS)
    return MappedRecord(
        report_date=report_date,
        entity_id=str(entity_id),
        campaign_id=str(campaign_id) if campaign_id is not None else None,
        ad_group_id=str(ad_group_id) if ad_group_id is not None else None,
        entity_text=str(text)[:512] if text is not None else None,
        impressions=_number(pick(record, mapping["impressions"]), int),
        clicks=_number(pick(record, mapping["clicks"]), int),
        spend=round(_number(pick(record, mapping["spend"]), float), 2),
        sales=round(_number(pick(record, mapping["sales"]), float), 2),
        orders=_number(pick(record, mapping["orders"]), int),
    )
