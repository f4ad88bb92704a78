"""
Session Cleanup Service - expires abandoned checkout sessions.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.clock import utcnow
from paycore.database import get_session_factory
from paycore.fsm.states import SessionStatus
from paycore.models.payment_session import PaymentSession

logger = logging.getLogger(__name__)


class SessionCleanupService:
    """Mark open sessions past expires_at as expired."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    async def expire_sessions(self, now: Optional[datetime] = None) -> int:
        """
        Expire created/pending sessions past their deadline.

        Their transactions stay pending: expiry stops polling but a late
        webhook can still settle them.
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(PaymentSession)
                .where(
                    PaymentSession.session_status.in_([
                        SessionStatus.CREATED.value,
                        SessionStatus.PENDING.value,
                    ]),
                    PaymentSession.expires_at <= now,
                )
                .values(session_status=SessionStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        count = result.rowcount or 0
        if count:
            logger.info(f"Expired {count} abandoned payment session(s)")
        return count
