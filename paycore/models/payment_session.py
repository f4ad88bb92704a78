"""PaymentSession model - the checkout unit shown to the user."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import String, DateTime, Numeric, JSON, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from paycore.clock import utcnow, as_utc
from paycore.database import Base
from paycore.fsm.states import SessionStatus


class PaymentSession(Base):
    """
    Groups purchase intents and coupon discounts into one provider checkout.
    Status is a projection of the transaction status plus expiry.
    """

    __tablename__ = "payment_sessions"

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

    # [{"entity_type": ..., "entity_id": ..., "amount": "..."}]
    purchase_intents: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    # Pending subscription activated on success (subscription checkouts only)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    # Amount before coupon discounts
    original_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0"),
        nullable=False,
    )

    applied_coupons: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        default="ILS",
        nullable=False,
    )

    session_status: Mapped[str] = mapped_column(
        String(20),
        default=SessionStatus.CREATED.value,
        nullable=False,
        index=True,
    )

    # Provider page reference and hosted URL
    page_request_uid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    payment_page_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    return_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    callback_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    environment: Mapped[str] = mapped_column(
        String(20),
        default="production",
        nullable=False,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
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
        return f"<PaymentSession {self.id} {self.session_status}>"

    @property
    def is_subscription(self) -> bool:
        return self.subscription_id is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Expired by status, or past expires_at while still open."""
        if self.session_status == SessionStatus.EXPIRED.value:
            return True
        if not SessionStatus(self.session_status).is_open:
            return False
        return as_utc(self.expires_at) <= (now or utcnow())
