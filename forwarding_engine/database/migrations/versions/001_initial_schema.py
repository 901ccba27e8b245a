"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create payment_records table
    op.create_table(
        "payment_records",
        sa.Column("payment_hash", sa.String(length=128), nullable=False),
        sa.Column("invoice_ref", sa.Text(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("base_amount", sa.BigInteger(), nullable=False),
        sa.Column("tip_amount", sa.BigInteger(), nullable=False),
        sa.Column("merchant_account_ref", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("display_currency", sa.String(length=5), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_amount > 0", name="positive_total"),
        sa.CheckConstraint("base_amount > 0", name="positive_base"),
        sa.CheckConstraint("tip_amount >= 0", name="non_negative_tip"),
        sa.CheckConstraint("base_amount + tip_amount = total_amount", name="amounts_add_up"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'completed_with_exceptions', "
            "'failed', 'expired', 'cancelled')",
            name="valid_status",
        ),
        sa.PrimaryKeyConstraint("payment_hash"),
    )
    op.create_index(
        op.f("ix_payment_records_status"), "payment_records", ["status"], unique=False
    )
    op.create_index(
        "idx_payment_records_status_expires",
        "payment_records",
        ["status", "expires_at"],
        unique=False,
    )
    op.create_index(
        "idx_payment_records_status_processed",
        "payment_records",
        ["status", "processed_at"],
        unique=False,
    )
    op.create_index(
        "idx_payment_records_created_desc",
        "payment_records",
        [sa.text("created_at DESC")],
        unique=False,
    )

    # Create tip_recipients table
    op.create_table(
        "tip_recipients",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_hash", sa.String(length=128), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("destination", sa.String(length=255), nullable=False),
        sa.Column("share_percent", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="non_negative_tip_leg"),
        sa.CheckConstraint("share_percent BETWEEN 1 AND 100", name="valid_share"),
        sa.ForeignKeyConstraint(
            ["payment_hash"], ["payment_records.payment_hash"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_tip_recipients_payment_hash"), "tip_recipients", ["payment_hash"], unique=False
    )
    op.create_index(
        "uq_tip_recipients_position",
        "tip_recipients",
        ["payment_hash", "position"],
        unique=True,
    )

    # Create payment_events table
    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_hash", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("event_status", sa.String(length=20), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("event_status IN ('success', 'error')", name="valid_event_status"),
        sa.ForeignKeyConstraint(["payment_hash"], ["payment_records.payment_hash"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_payment_events_payment_hash",
        "payment_events",
        ["payment_hash", "id"],
        unique=False,
    )
    op.create_index("idx_payment_events_type", "payment_events", ["event_type"], unique=False)

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", sa.String(length=128), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
        unique=False,
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"), "outbox_events", ["published"], unique=False
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_index("idx_outbox_unpublished", table_name="outbox_events")
    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_table("outbox_events")

    op.drop_index("idx_payment_events_type", table_name="payment_events")
    op.drop_index("idx_payment_events_payment_hash", table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_index("uq_tip_recipients_position", table_name="tip_recipients")
    op.drop_index(op.f("ix_tip_recipients_payment_hash"), table_name="tip_recipients")
    op.drop_table("tip_recipients")

    op.drop_index("idx_payment_records_created_desc", table_name="payment_records")
    op.drop_index("idx_payment_records_status_processed", table_name="payment_records")
    op.drop_index("idx_payment_records_status_expires", table_name="payment_records")
    op.drop_index(op.f("ix_payment_records_status"), table_name="payment_records")
    op.drop_table("payment_records")
