"""add identity columns to oauth_tokens

Stores created before this revision run with TOKEN_STORE_IDENTITY_COLUMNS=false.

Revision ID: 0003_oauth_token_identity
Revises: 0002_oauth_tokens
Create Date: 2026-10-19 09:20:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0003_oauth_token_identity"
down_revision: Union[str, None] = "0002_oauth_tokens"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("oauth_tokens", sa.Column("identity", sa.String(255), nullable=False, server_default="default"))
    op.add_column("oauth_tokens", sa.Column("identity_name", sa.String(255), nullable=True))
    op.add_column("oauth_tokens", sa.Column("linked_account_id", sa.String(255), nullable=True))
    op.create_index("ix_oauth_tokens_linked_account_id", "oauth_tokens", ["linked_account_id"])
    op.create_unique_constraint(
        "uq_oauth_tokens_user_provider_identity", "oauth_tokens", ["user_id", "provider", "identity"]
    )


def downgrade() -> None:
    op.drop_constraint("uq_oauth_tokens_user_provider_identity", "oauth_tokens", type_="unique")
    op.drop_index("ix_oauth_tokens_linked_account_id", table_name="oauth_tokens")
    op.drop_column("oauth_tokens", "linked_account_id")
    op.drop_column("oauth_tokens", "identity_name")
    op.drop_column("oauth_tokens", "identity")
