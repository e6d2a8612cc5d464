"""create per-user portfolio cache

Revision ID: 0006_portfolio_cache
Revises: 0005_normalized_daily_metrics
Create Date: 2026-10-19 14:10:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0006_portfolio_cache"
down_revision: Union[str, None] = "0005_normalized_daily_metrics"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "portfolio_cache",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("cache_date", sa.Date(), nullable=False),
        sa.Column("companies_data", sa.JSON(), nullable=False),
        sa.Column("aggregate_metrics", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "cache_date", name="uq_portfolio_cache_user_date"),
    )
    op.create_index("ix_portfolio_cache_user_id", "portfolio_cache", ["user_id"])
    op.create_index("ix_portfolio_cache_cache_date", "portfolio_cache", ["cache_date"])


def downgrade() -> None:
    op.drop_index("ix_portfolio_cache_cache_date", table_name="portfolio_cache")
    op.drop_index("ix_portfolio_cache_user_id", table_name="portfolio_cache")
    op.drop_table("portfolio_cache")
