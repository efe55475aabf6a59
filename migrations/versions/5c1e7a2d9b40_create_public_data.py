"""create public_data

Revision ID: 5c1e7a2d9b40
Revises:
Create Date: 2026-10-19 09:12:44.310512

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c1e7a2d9b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the single-row raffle table and seed raffle 1."""
    public_data = op.create_table(
        "public_data",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("state", sa.Text(), nullable=False, server_default="WAITING"),
        sa.Column("winner", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "state IN ('WAITING', 'DRAWING', 'DRAWN', 'ERROR')",
            name="ck_public_data_state",
        ),
        sa.CheckConstraint(
            "(state = 'DRAWN' AND winner IS NOT NULL) OR (state <> 'DRAWN' AND winner IS NULL)",
            name="ck_public_data_winner",
        ),
    )
    op.bulk_insert(public_data, [{"id": 1, "state": "WAITING", "winner": None}])


def downgrade() -> None:
    """Drop the raffle table."""
    op.drop_table("public_data")
