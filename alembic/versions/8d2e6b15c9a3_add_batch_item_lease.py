"""add_batch_item_lease

Revision ID: 8d2e6b15c9a3
Revises: 3f9a1c2b7d40
Create Date: 2026-10-19 10:27:03.418552

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8d2e6b15c9a3"
down_revision: Union[str, Sequence[str], None] = "3f9a1c2b7d40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add lease_expires_at to batch_items."""
    # NULL lease (rows claimed before this revision) counts as expired
    op.add_column(
        "batch_items",
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Remove lease_expires_at from batch_items."""
    op.drop_column("batch_items", "lease_expires_at")
