"""
Transaction Store - persistence for payment attempts.

Lookups by id and correlation key, the polling selection query, the
exclusive row hold used by the resolution arbiter, and the administrative
refund edge.
"""

import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.clock import utcnow
from paycore.config import settings
from paycore.exceptions import TransactionNotFound, IllegalTransition
from paycore.fsm.states import TransactionStatus, SessionStatus, can_transition
from paycore.models.transaction import Transaction
from paycore.models.payment_session import PaymentSession
from paycore.models.purchase import Purchase

logger = logging.getLogger(__name__)


class TransactionStore:
    """Data access for Transaction rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_page_request_uid(self, page_request_uid: str) -> Optional[Transaction]:
        """Find a transaction by the provider correlation key."""
        result = await self.db.execute(
            select(Transaction).where(Transaction.page_request_uid == page_request_uid)
        )
        return result.scalar_one_or_none()

    async def get_session(self, session_id: uuid.UUID) -> Optional[PaymentSession]:
        result = await self.db.execute(
            select(PaymentSession).where(PaymentSession.id == session_id)
        )
        return result.scalar_one_or_none()

    async def mark_session_pending(self, transaction: Transaction) -> bool:
        """
        Project a non-terminal provider report onto the session:
        created -> pending once the user reached the hosted page.
        """
        result = await self.db.execute(
            update(PaymentSession)
            .where(
                PaymentSession.id == transaction.session_id,
                PaymentSession.session_status == SessionStatus.CREATED.value,
            )
            .values(session_status=SessionStatus.PENDING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def create_pending(
        self,
        session: PaymentSession,
        page_request_uid: str,
        amount: Decimal,
    ) -> Transaction:
        """Stage a pending transaction for a checkout session (caller commits)."""
        transaction = Transaction(
            session_id=session.id,
            user_id=session.user_id,
            amount=amount,
            currency=session.currency,
            payment_method="payplus",
            status=TransactionStatus.PENDING.value,
            page_request_uid=page_request_uid,
            environment=session.environment,
            polling_attempts=0,
            lock_version=0,
        )
        self.db.add(transaction)
        return transaction

    async def find_pollable_ids(
        self,
        now: datetime,
        grace_seconds: int,
        max_attempts: int,
        limit: int,
    ) -> List[uuid.UUID]:
        """
        Pending transactions due for a provider status check.

        Older than the grace period, under the attempt cap, due by
        next_poll_at, and not belonging to an expired session.
        """
        cutoff = now - timedelta(seconds=grace_seconds)
        stmt = (
            select(Transaction.id)
            .join(PaymentSession, PaymentSession.id == Transaction.session_id)
            .where(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.created_at <= cutoff,
                Transaction.polling_attempts < max_attempts,
                or_(Transaction.next_poll_at.is_(None), Transaction.next_poll_at <= now),
                PaymentSession.session_status != SessionStatus.EXPIRED.value,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def lock_for_update(self, transaction_id: uuid.UUID) -> Transaction:
        """
        Take an exclusive hold on the row for the current database transaction.

        The touch UPDATE acquires the write lock before anything is read, so
        two resolvers queue on it instead of both reading pending. The
        follow-up SELECT ... FOR UPDATE refreshes the identity map with the
        committed state.
        """
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(lock_version=Transaction.lock_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")

        locked = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return locked.scalar_one()

    async def mark_refunded(self, transaction_id: uuid.UUID, reason: str) -> Transaction:
        """
        Apply the completed -> refunded edge.

        Runs under the same row hold as resolution; the caller commits.
        """
        transaction = await self.lock_for_update(transaction_id)
        current = transaction.status_enum

        if not can_transition(current, TransactionStatus.REFUNDED):
            raise IllegalTransition(
                f"Cannot refund transaction {transaction_id} in status {current.value}"
            )

        now = utcnow()
        transaction.status = TransactionStatus.REFUNDED.value
        transaction.refund_reason = reason
        transaction.refunded_at = now

        # Revoke the access granted by this transaction
        await self.db.execute(
            update(Purchase)
            .where(Purchase.transaction_id == transaction_id)
            .values(payment_status="refunded", access_until=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()

        logger.info(f"Transaction {transaction_id} refunded: {reason}")
        return transaction

    @staticmethod
    def next_poll_time(attempts: int, now: datetime) -> datetime:
        """Exponential backoff: base * 2^(attempts-1), capped at the ceiling."""
        exponent = max(attempts - 1, 0)
        delay = min(
            settings.polling_backoff_base_seconds * (2 ** exponent),
            settings.polling_backoff_ceiling_seconds,
        )
        return now + timedelta(seconds=delay)
