"""WebhookLog model - append-only record of every provider notification."""

import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, DateTime, Integer, JSON, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from paycore.clock import utcnow
from paycore.database import Base
from paycore.fsm.states import WebhookProcessingStatus


class WebhookLog(Base):
    """
    Forensic log of a webhook delivery.
    Written before any state mutation; never deleted.
    """

    __tablename__ = "webhook_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    provider: Mapped[str] = mapped_column(
        String(50),
        default="payplus",
        nullable=False,
        index=True,
    )

    event_type: Mapped[str] = mapped_column(
        String(100),
        default="unknown",
        nullable=False,
    )

    # Provider correlation keys
    page_request_uid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    provider_transaction_uid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    # Request metadata
    request_method: Mapped[str] = mapped_column(
        String(10),
        default="POST",
        nullable=False,
    )

    request_headers: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    sender_ip: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    user_agent: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    raw_body: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )

    # Parsed body; None when the body was not valid JSON
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    # Status as reported by the provider
    status_code: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )

    status_name: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )

    processing_status: Mapped[str] = mapped_column(
        String(20),
        default=WebhookProcessingStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # [{"at": iso timestamp, "message": str}]
    process_log: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    error_stack: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )

    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    # applied / duplicate / rejected, when the arbiter was consulted
    resolution_outcome: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )

    processing_duration_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    # Earlier deliveries with the same key, provider uid and status
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<WebhookLog {self.id} {self.page_request_uid} {self.processing_status}>"

    def add_step(self, message: str) -> None:
        """Append a timestamped step to the processing trace."""
        # Reassign so the JSON column is flagged dirty
        self.process_log = [
            *(self.process_log or []),
            {"at": utcnow().isoformat(), "message": message},
        ]
