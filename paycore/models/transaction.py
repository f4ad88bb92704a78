"""Transaction model - one payment attempt against the provider."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import String, DateTime, Integer, Numeric, JSON, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from paycore.clock import utcnow
from paycore.database import Base
from paycore.fsm.states import TransactionStatus


class Transaction(Base):
    """
    Payment attempt record.
    page_request_uid is the provider correlation key and is unique.
    Status only moves along the edges in TRANSACTION_TRANSITIONS.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_polling", "status", "polling_attempts", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Checkout session that created this attempt
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        default="ILS",
        nullable=False,
    )

    payment_method: Mapped[str] = mapped_column(
        String(50),
        default="payplus",
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=TransactionStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Provider correlation key issued at checkout creation
    page_request_uid: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    # Provider-side transaction id (reported by webhook / lookup)
    provider_transaction_uid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Raw provider payload that resolved this attempt
    provider_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    environment: Mapped[str] = mapped_column(
        String(20),
        default="production",
        nullable=False,
    )

    # webhook / polling / manual / abandoned_after_polling; set once
    resolution_method: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
    )

    # Polling fallback bookkeeping
    polling_attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    last_polled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    next_poll_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Bumped by every exclusive hold taken for resolution
    lock_version: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    refund_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.id} {self.status}>"

    @property
    def status_enum(self) -> TransactionStatus:
        return TransactionStatus(self.status)

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING.value
