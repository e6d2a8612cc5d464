"""create normalized daily metric tables and period snapshots

Revision ID: 0005_normalized_daily_metrics
Revises: 0004_analytics_cache_and_sync_status
Create Date: 2026-10-19 09:40:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0005_normalized_daily_metrics"
down_revision: Union[str, None] = "0004_analytics_cache_and_sync_status"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

DAILY_COLUMNS = {
    "ga_daily_metrics": [
        ("total_users", sa.BigInteger),
        ("new_users", sa.BigInteger),
        ("sessions", sa.BigInteger),
        ("page_views", sa.BigInteger),
        ("avg_session_duration", sa.Float),
        ("bounce_rate", sa.Float),
        ("key_events", sa.BigInteger),
        ("user_key_event_rate", sa.Float),
    ],
    "gsc_daily_metrics": [
        ("impressions", sa.BigInteger),
        ("clicks", sa.BigInteger),
        ("avg_position", sa.Float),
        ("indexed_pages", sa.Integer),
        ("ranking_keywords", sa.Integer),
    ],
    "yt_daily_metrics": [
        ("views", sa.BigInteger),
        ("watch_time_seconds", sa.BigInteger),
        ("shares", sa.BigInteger),
        ("avg_view_duration", sa.Float),
        ("likes", sa.BigInteger),
        ("dislikes", sa.BigInteger),
        ("comments", sa.BigInteger),
        ("subscribers_gained", sa.BigInteger),
        ("subscribers_lost", sa.BigInteger),
    ],
    "li_daily_metrics": [
        ("page_views", sa.BigInteger),
        ("unique_visitors", sa.BigInteger),
        ("desktop_visitors", sa.BigInteger),
        ("mobile_visitors", sa.BigInteger),
        ("organic_follower_gain", sa.BigInteger),
        ("paid_follower_gain", sa.BigInteger),
        ("impressions", sa.BigInteger),
        ("clicks", sa.BigInteger),
        ("reactions", sa.BigInteger),
        ("comments", sa.BigInteger),
        ("reposts", sa.BigInteger),
    ],
}


def upgrade() -> None:
    for table, columns in DAILY_COLUMNS.items():
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("company_id", sa.String(64), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
            sa.Column("date", sa.Date(), nullable=False, index=True),
            *(sa.Column(name, type_(), nullable=False, server_default="0") for name, type_ in columns),
            sa.UniqueConstraint("company_id", "date", name=f"uq_{table}_company_date"),
        )

    op.create_table(
        "platform_period_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("company_id", sa.String(64), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_platform_period_snapshots_company_platform",
        "platform_period_snapshots",
        ["company_id", "platform", "snapshot_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_platform_period_snapshots_company_platform", table_name="platform_period_snapshots")
    op.drop_table("platform_period_snapshots")
    for table in reversed(list(DAILY_COLUMNS)):
        op.drop_table(table)
