"""initial_batch_and_ledger_schema

Revision ID: 3f9a1c2b7d40
Revises:
Create Date: 2026-10-18 09:12:41.205113

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2b7d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching SQLModel's mapping of str enums
batch_job_status = sa.Enum(
    "PENDING",
    "PROCESSING",
    "COMPLETED",
    "COMPLETED_WITH_FAILURES",
    "CANCELLED",
    "FAILED",
    name="batchjobstatus",
)
batch_item_status = sa.Enum(
    "QUEUED", "RESERVING", "DISPATCHING", "SUCCEEDED", "FAILED", "SKIPPED", name="batchitemstatus"
)
reservation_status = sa.Enum("PENDING", "COMMITTED", "REFUNDED", name="reservationstatus")
credit_transaction_type = sa.Enum("EARNED", "SPENT", "REFUNDED", name="credittransactiontype")


def upgrade() -> None:
    """Create accounts, credit ledger and batch job tables."""
    op.create_table(
        "accounts",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("type", credit_transaction_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("related_item_id", sa.Uuid(), nullable=True),
        sa.Column("reservation_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_type", "credit_transactions", ["type"])
    op.create_index(
        "ix_credit_transactions_related_item_id", "credit_transactions", ["related_item_id"]
    )
    op.create_index(
        "ix_credit_transactions_reservation_id", "credit_transactions", ["reservation_id"]
    )
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"])

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", reservation_status, nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("related_item_id", sa.Uuid(), nullable=True),
        sa.Column("spent_transaction_id", sa.Uuid(), nullable=False),
        sa.Column("refund_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_credit_reservations_user_id", "credit_reservations", ["user_id"])
    op.create_index("ix_credit_reservations_status", "credit_reservations", ["status"])
    op.create_index(
        "ix_credit_reservations_idempotency_key",
        "credit_reservations",
        ["idempotency_key"],
        unique=True,
    )
    op.create_index(
        "ix_credit_reservations_related_item_id", "credit_reservations", ["related_item_id"]
    )

    op.create_table(
        "batch_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("model_id", sa.String(length=100), nullable=False),
        sa.Column("status", batch_job_status, nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("completed_items", sa.Integer(), nullable=False),
        sa.Column("failed_items", sa.Integer(), nullable=False),
        sa.Column("credits_reserved", sa.Integer(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_batch_jobs_user_id", "batch_jobs", ["user_id"])
    op.create_index("ix_batch_jobs_status", "batch_jobs", ["status"])
    op.create_index("ix_batch_jobs_created_at", "batch_jobs", ["created_at"])

    op.create_table(
        "batch_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("batch_jobs.id"), nullable=False),
        sa.Column("sequence_index", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.String(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("status", batch_item_status, nullable=False),
        sa.Column("reservation_id", sa.Uuid(), nullable=True),
        sa.Column("result_ref", sa.String(), nullable=True),
        sa.Column("thumbnail_ref", sa.String(), nullable=True),
        sa.Column("result_metadata", sa.JSON(), nullable=True),
        sa.Column("error_kind", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("credits_charged", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("job_id", "sequence_index", name="uq_batch_items_job_seq"),
    )
    op.create_index("ix_batch_items_job_id", "batch_items", ["job_id"])
    op.create_index("ix_batch_items_status", "batch_items", ["status"])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table("batch_items")
    op.drop_table("batch_jobs")
    op.drop_table("credit_reservations")
    op.drop_table("credit_transactions")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum_type in (
        batch_item_status,
        batch_job_status,
        reservation_status,
        credit_transaction_type,
    ):
        enum_type.drop(bind, checkfirst=True)
