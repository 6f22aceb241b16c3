"""Add report sync tables: credentials, accounts, campaigns, report jobs,
daily performance and per-account sync state.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def _metrics() -> list:
    return [
        sa.Column("spend", sa.Float(), nullable=True, server_default="0"),
        sa.Column("sales", sa.Float(), nullable=True, server_default="0"),
        sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("orders", sa.Integer(), nullable=True, server_default="0"),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "credentials" not in existing:
        op.create_table(
            "credentials",
            sa.Column("id", UUID, nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("client_id", sa.String(512), nullable=False),
            sa.Column("client_secret", sa.Text(), nullable=True),
            sa.Column("access_token", sa.Text(), nullable=False),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("token_expires_at", sa.DateTime(), nullable=True),
            sa.Column("region", sa.String(10), nullable=True, server_default="na"),
            sa.Column("status", sa.String(20), nullable=True, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_credentials_status", "credentials", ["status"])

    if "accounts" not in existing:
        op.create_table(
            "accounts",
            sa.Column("id", UUID, nullable=False),
            sa.Column("credential_id", UUID, nullable=False),
            sa.Column("amazon_account_id", sa.String(255), nullable=True),
            sa.Column("account_name", sa.String(512), nullable=True),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("marketplace", sa.String(100), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["credential_id"], ["credentials.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("credential_id", "profile_id", name="uq_account_profile_per_credential"),
        )
        op.create_index("ix_accounts_credential_id", "accounts", ["credential_id"])

    if "campaigns" not in existing:
        op.create_table(
            "campaigns",
            sa.Column("id", UUID, nullable=False),
            sa.Column("account_id", UUID, nullable=False),
            sa.Column("amazon_campaign_id", sa.String(255), nullable=False),
            sa.Column("campaign_name", sa.String(512), nullable=True),
            sa.Column("campaign_type", sa.String(100), nullable=True),
            sa.Column("state", sa.String(50), nullable=True),
            *_metrics(),
            sa.Column("synced_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("account_id", "amazon_campaign_id", name="uq_campaign_per_account"),
        )
        op.create_index("ix_campaigns_account_id", "campaigns", ["account_id"])

    if "report_jobs" not in existing:
        op.create_table(
            "report_jobs",
            sa.Column("id", UUID, nullable=False),
            sa.Column("account_id", UUID, nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("marketplace", sa.String(100), nullable=True),
            sa.Column("tier", sa.String(30), nullable=False),
            sa.Column("report_kind", sa.String(30), nullable=False),
            sa.Column("ad_product", sa.String(40), nullable=False),
            sa.Column("priority", sa.String(20), nullable=True, server_default="medium"),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
            sa.Column("report_id", sa.String(255), nullable=True),
            sa.Column("download_url", sa.Text(), nullable=True),
            sa.Column("records_processed", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("max_retries", sa.Integer(), nullable=True, server_default="3"),
            sa.Column("metadata", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("lease_owner", sa.String(64), nullable=True),
            sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("submitted_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.CheckConstraint("start_date <= end_date", name="ck_report_jobs_date_order"),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_report_jobs_status_created", "report_jobs", ["status", "created_at"])
        op.create_index("ix_report_jobs_account_status", "report_jobs", ["account_id", "status"])
        op.create_index(
            "ix_report_jobs_dedupe", "report_jobs",
            ["account_id", "report_kind", "ad_product", "start_date", "end_date"],
        )

    if "campaign_performance_daily" not in existing:
        op.create_table(
            "campaign_performance_daily",
            sa.Column("id", UUID, nullable=False),
            sa.Column("account_id", UUID, nullable=False),
            sa.Column("campaign_id", UUID, nullable=True),
            sa.Column("amazon_campaign_id", sa.String(255), nullable=False),
            sa.Column("report_date", sa.Date(), nullable=False),
            sa.Column("ad_product", sa.String(40), nullable=True),
            *_metrics(),
            sa.Column("acos", sa.Float(), nullable=True),
            sa.Column("roas", sa.Float(), nullable=True),
            sa.Column("source", sa.String(50), nullable=True, server_default="api"),
            sa.Column("synced_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("account_id", "amazon_campaign_id", "report_date", name="uq_campaign_perf_daily"),
        )
        op.create_index("ix_cpd_account_date", "campaign_performance_daily", ["account_id", "report_date"])

    if "entity_performance_daily" not in existing:
        op.create_table(
            "entity_performance_daily",
            sa.Column("id", UUID, nullable=False),
            sa.Column("account_id", UUID, nullable=False),
            sa.Column("report_kind", sa.String(30), nullable=False),
            sa.Column("entity_id", sa.String(255), nullable=False),
            sa.Column("amazon_campaign_id", sa.String(255), nullable=True),
            sa.Column("ad_group_id", sa.String(255), nullable=True),
            sa.Column("entity_text", sa.String(512), nullable=True),
            sa.Column("report_date", sa.Date(), nullable=False),
            sa.Column("ad_product", sa.String(40), nullable=True),
            *_metrics(),
            sa.Column("source", sa.String(50), nullable=True, server_default="api"),
            sa.Column("synced_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("account_id", "report_kind", "entity_id", "report_date", name="uq_entity_perf_daily"),
        )
        op.create_index("ix_epd_account_date", "entity_performance_daily", ["account_id", "report_date"])

    if "sync_states" not in existing:
        op.create_table(
            "sync_states",
            sa.Column("id", UUID, nullable=False),
            sa.Column("account_id", UUID, nullable=False),
            sa.Column("mode", sa.String(20), nullable=True, server_default="initialization"),
            sa.Column("backfill_policy", sa.String(20), nullable=True, server_default="tiered"),
            sa.Column("backfill_anchor_date", sa.Date(), nullable=True),
            sa.Column("backfill_completed", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("backfill_completed_at", sa.DateTime(), nullable=True),
            sa.Column("last_full_attribution_at", sa.DateTime(), nullable=True),
            sa.Column("last_pass_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("account_id"),
        )


def downgrade() -> None:
    for table in (
        "sync_states", "entity_performance_daily", "campaign_performance_daily",
        "report_jobs", "campaigns", "accounts", "credentials",
    ):
        op.drop_table(table)
