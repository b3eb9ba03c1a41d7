"""add transfers table

Revision ID: 7e3b9c2d4a10
Revises:
Create Date: 2026-09-14 11:02:17.481203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7e3b9c2d4a10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transfers",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("data", postgresql.JSONB(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_transfers_status", "transfers", ["status"])
    op.create_index("idx_transfers_status_updated", "transfers", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_index("idx_transfers_status_updated", table_name="transfers")
    op.drop_index("ix_transfers_status", table_name="transfers")
    op.drop_table("transfers")
