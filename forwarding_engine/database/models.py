"""SQLAlchemy database models for the payment forwarding engine."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentRecord(Base):
    """
    Payment records table.

    One row per customer invoice issued against the funnel account. Amounts are
    frozen at creation time and never re-derived.
    """

    __tablename__ = "payment_records"

    payment_hash: Mapped[str] = mapped_column(String(128), primary_key=True)
    invoice_ref: Mapped[str] = mapped_column(Text, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    base_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tip_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    merchant_account_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    display_currency: Mapped[str] = mapped_column(String(5), nullable=False, default="BTC")
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    recipients: Mapped[List["TipRecipient"]] = relationship(
        back_populates="payment",
        order_by="TipRecipient.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="positive_total"),
        CheckConstraint("base_amount > 0", name="positive_base"),
        CheckConstraint("tip_amount >= 0", name="non_negative_tip"),
        CheckConstraint("base_amount + tip_amount = total_amount", name="amounts_add_up"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'completed_with_exceptions', "
            "'failed', 'expired', 'cancelled')",
            name="valid_status",
        ),
        Index("idx_payment_records_status_expires", "status", "expires_at"),
        Index("idx_payment_records_status_processed", "status", "processed_at"),
        Index(
            "idx_payment_records_created_desc",
            "created_at",
            postgresql_ops={"created_at": "DESC"},
        ),
    )

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return (
            f"<PaymentRecord(payment_hash={self.payment_hash}, "
            f"total={self.total_amount}, status={self.status})>"
        )


class TipRecipient(Base):
    """
    Tip recipients side table.

    Ordered legs of the tip split. Amounts for a payment sum exactly to
    its tip_amount.
    """

    __tablename__ = "tip_recipients"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    payment_hash: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("payment_records.payment_hash", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    share_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment: Mapped[PaymentRecord] = relationship(back_populates="recipients")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_tip_leg"),
        CheckConstraint("share_percent BETWEEN 1 AND 100", name="valid_share"),
        Index("uq_tip_recipients_position", "payment_hash", "position", unique=True),
    )

    def __repr__(self) -> str:
        """String representation of TipRecipient."""
        return (
            f"<TipRecipient(payment_hash={self.payment_hash}, position={self.position}, "
            f"destination={self.destination}, amount={self.amount})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every state change and transfer attempt for a payment.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    payment_hash: Mapped[str] = mapped_column(
        String(128), ForeignKey("payment_records.payment_hash"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("event_status IN ('success', 'error')", name="valid_event_status"),
        Index("idx_payment_events_payment_hash", "payment_hash", "id"),
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_hash={self.payment_hash}, "
            f"type={self.event_type}, status={self.event_status})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Completion signals are written in the same transaction as the terminal
    transition, then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(128), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
