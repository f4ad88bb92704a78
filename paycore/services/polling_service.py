"""
Polling Service - status lookups for transactions the webhook never settled.

Each pass picks pending transactions past the grace period whose backoff is
due, asks PayPlus for their status and routes terminal answers through the
resolution arbiter. A transaction that exhausts its attempts without a
terminal answer is failed as abandoned_after_polling.
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.clock import utcnow
from paycore.config import settings
from paycore.database import get_session_factory
from paycore.exceptions import PayPlusError
from paycore.fsm.states import TransactionStatus, ResolutionMethod, ResolutionOutcome
from paycore.services.alert_service import AlertService, AlertKind
from paycore.services.payplus_service import PayPlusService, ProviderStatus
from paycore.services.resolution_service import ResolutionArbiter
from paycore.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """Outcome of one poll attempt."""

    transaction_id: uuid.UUID
    attempts: int = 0
    reported_status: Optional[str] = None
    outcome: Optional[str] = None
    status: Optional[str] = None
    abandoned: bool = False
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class PollingSummary:
    """Counters for one reconciliation pass."""

    selected: int = 0
    polled: int = 0
    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    still_pending: int = 0
    abandoned: int = 0
    errors: int = 0

    def add(self, result: PollResult) -> None:
        if result.skipped:
            return
        self.polled += 1
        if result.error:
            self.errors += 1
        if result.abandoned:
            self.abandoned += 1
        elif result.outcome == ResolutionOutcome.APPLIED.value:
            self.applied += 1
        elif result.outcome == ResolutionOutcome.DUPLICATE.value:
            self.duplicates += 1
        elif result.outcome == ResolutionOutcome.REJECTED.value:
            self.rejected += 1
        else:
            self.still_pending += 1


class PollingService:
    """Fallback reconciliation against the PayPlus status API."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        payplus: Optional[PayPlusService] = None,
        arbiter: Optional[ResolutionArbiter] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.payplus = payplus or PayPlusService()
        self.alerts = alerts or AlertService()
        self.arbiter = arbiter or ResolutionArbiter(self.session_factory, self.alerts)
        self.max_attempts = settings.polling_max_attempts

    async def reconcile(self, now: Optional[datetime] = None) -> PollingSummary:
        """Run one polling pass. Per-transaction errors never stop the pass."""
        now = now or utcnow()
        summary = PollingSummary()

        async with self.session_factory() as db:
            transaction_ids = await TransactionStore(db).find_pollable_ids(
                now,
                grace_seconds=settings.polling_grace_seconds,
                max_attempts=self.max_attempts,
                limit=settings.polling_batch_size,
            )
        summary.selected = len(transaction_ids)

        for transaction_id in transaction_ids:
            try:
                result = await self.poll_transaction(transaction_id, now=now)
            except Exception as e:
                logger.error(f"Polling transaction {transaction_id} failed: {e}", exc_info=True)
                result = PollResult(transaction_id=transaction_id, error=str(e))
            summary.add(result)

        if summary.selected:
            logger.info(
                f"Polling pass: {summary.selected} selected, {summary.applied} applied, "
                f"{summary.still_pending} pending, {summary.abandoned} abandoned, {summary.errors} errors",
                extra={"extra": {"polling_summary": summary.__dict__}},
            )
        return summary

    async def poll_transaction(
        self,
        transaction_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> PollResult:
        """
        Poll one transaction.

        The attempt is counted in its own commit before the provider call,
        so failed calls still move the transaction toward exhaustion.
        """
        now = now or utcnow()
        result = PollResult(transaction_id=transaction_id)

        async with self.session_factory() as db:
            store = TransactionStore(db)
            transaction = await store.get(transaction_id)
            if transaction is None or not transaction.is_pending:
                result.skipped = True
                result.status = transaction.status if transaction else None
                return result

            attempts = transaction.polling_attempts + 1
            transaction.polling_attempts = attempts
            transaction.last_polled_at = now
            transaction.next_poll_at = TransactionStore.next_poll_time(attempts, now)
            page_request_uid = transaction.page_request_uid
            await db.commit()

        result.attempts = attempts
        logger.info(f"Polling transaction {transaction_id} (attempt {attempts}/{self.max_attempts})")

        provider: Optional[ProviderStatus] = None
        try:
            provider = await self.payplus.get_payment_status(page_request_uid)
        except PayPlusError as e:
            logger.warning(f"PayPlus lookup failed for transaction {transaction_id}: {e}")
            result.error = str(e)

        if provider is not None:
            result.reported_status = provider.reported_status

            if provider.is_terminal:
                resolution = await self.arbiter.resolve(
                    transaction_id,
                    provider.reported_status,
                    ResolutionMethod.POLLING,
                    provider_payload=provider.raw,
                    provider_transaction_uid=provider.transaction_uid,
                    failure_reason=provider.status_description,
                )
                result.outcome = resolution.outcome.value
                result.status = resolution.status
                if resolution.outcome != ResolutionOutcome.REJECTED:
                    return result
            elif provider.transaction:
                # Payment attempted on the hosted page but not settled yet
                async with self.session_factory() as db:
                    store = TransactionStore(db)
                    transaction = await store.get(transaction_id)
                    await store.mark_session_pending(transaction)
                    await db.commit()

        if attempts >= self.max_attempts:
            await self._abandon(result)

        return result

    async def _abandon(self, result: PollResult) -> None:
        """Fail a transaction that ran out of polling attempts."""
        reason = f"No terminal status after {result.attempts} polling attempts"
        if result.error:
            reason += f" (last error: {result.error})"

        resolution = await self.arbiter.resolve(
            result.transaction_id,
            TransactionStatus.FAILED.value,
            ResolutionMethod.ABANDONED_AFTER_POLLING,
            failure_reason=reason,
        )
        result.outcome = resolution.outcome.value
        result.status = resolution.status
        if resolution.outcome != ResolutionOutcome.APPLIED:
            return

        result.abandoned = True
        logger.warning(f"Transaction {result.transaction_id} abandoned: {reason}")
        await self.alerts.notify(
            AlertKind.POLLING_EXHAUSTED,
            str(result.transaction_id),
            reason,
            {"attempts": result.attempts, "last_reported_status": result.reported_status},
        )
