"""CustomerToken model - tokenized payment method for recurring billing."""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import String, DateTime, Integer, Boolean, JSON, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from paycore.clock import utcnow
from paycore.database import Base


class CustomerToken(Base):
    """
    Stored provider token for a user's card.
    Many per user; at most one is_default per user (kept by CustomerTokenService).
    """

    __tablename__ = "customer_tokens"
    __table_args__ = (
        Index("ix_customer_tokens_user_active", "user_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    provider_customer_uid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    token_value: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Display only, e.g. ****1234
    card_mask: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )

    card_brand: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
    )

    expiry_month: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    expiry_year: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    is_default: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    provider_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    environment: Mapped[str] = mapped_column(
        String(20),
        default="production",
        nullable=False,
    )

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

    def __repr__(self) -> str:
        return f"<CustomerToken {self.card_brand} {self.card_mask}>"

    @property
    def masked_token(self) -> str:
        token = self.token_value or ""
        if len(token) <= 8:
            return "tok_****"
        return f"{token[:4]}****{token[-4:]}"
