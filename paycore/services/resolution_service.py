"""
Resolution Arbiter - the single writer of terminal transaction statuses.

Webhook, polling and operator reports all funnel through resolve(). Each
call holds the transaction row exclusively, re-reads its status and then
either applies the report together with its side effects in one database
transaction, or classifies it as a duplicate or a rejection. Whichever
caller gets the row first wins; the other sees a terminal status.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.clock import utcnow
from paycore.config import settings
from paycore.database import get_session_factory
from paycore.exceptions import SideEffectError
from paycore.fsm.states import (
    TransactionStatus,
    SessionStatus,
    ResolutionMethod,
    ResolutionOutcome,
    can_transition,
)
from paycore.models.payment_session import PaymentSession
from paycore.models.transaction import Transaction
from paycore.services.alert_service import AlertService, AlertKind
from paycore.services.side_effects import SideEffectApplier
from paycore.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    """What a resolve() call did."""

    transaction_id: uuid.UUID
    outcome: ResolutionOutcome
    status: str
    resolution_method: Optional[str] = None
    detail: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == ResolutionOutcome.APPLIED


class ResolutionArbiter:
    """Serialize terminal status reports per transaction."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.alerts = alerts or AlertService()

    async def resolve(
        self,
        transaction_id: uuid.UUID,
        reported_status: str,
        source: Union[ResolutionMethod, str],
        provider_payload: Optional[Dict[str, Any]] = None,
        provider_transaction_uid: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> ResolutionResult:
        """
        Resolve a pending transaction to a reported terminal status.

        Raises TransactionNotFound for an unknown id and SideEffectError when
        granting access failed (the transaction is left pending).
        """
        method = ResolutionMethod(source)
        target = TransactionStatus.parse(reported_status)

        async with self.session_factory() as db:
            store = TransactionStore(db)
            transaction = await store.lock_for_update(transaction_id)
            session = await store.get_session(transaction.session_id)
            current = transaction.status_enum

            classified = self._classify(transaction, session, current, target, reported_status)
            if classified is not None:
                verdict, alert_kind = classified
                # Release the hold before alerting
                await db.commit()
                await self._report(verdict, alert_kind, method, reported_status)
                return verdict

            self._write(transaction, session, target, method, provider_payload,
                        provider_transaction_uid, failure_reason)

            try:
                await db.flush()
                await SideEffectApplier(db).apply(transaction, session, provider_payload)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(
                    f"Side effects failed for transaction {transaction_id}; left pending: {e}",
                    exc_info=True,
                )
                await self.alerts.notify(
                    AlertKind.SIDE_EFFECT_FAILED,
                    str(transaction_id),
                    f"Access grant failed after {method.value} reported {target.value}: {e}",
                    {"source": method.value, "reported_status": target.value},
                )
                raise SideEffectError(str(e)) from e

        logger.info(
            f"Transaction {transaction_id} resolved {current.value} -> {target.value} via {method.value}",
            extra={"extra": {
                "transaction_id": str(transaction_id),
                "status": target.value,
                "resolution_method": method.value,
                "outcome": ResolutionOutcome.APPLIED.value,
            }},
        )
        return ResolutionResult(
            transaction_id=transaction_id,
            outcome=ResolutionOutcome.APPLIED,
            status=target.value,
            resolution_method=method.value,
        )

    def _classify(
        self,
        transaction: Transaction,
        session: Optional[PaymentSession],
        current: TransactionStatus,
        target: Optional[TransactionStatus],
        reported_status: str,
    ) -> Optional[Tuple[ResolutionResult, Optional[str]]]:
        """Return the duplicate or rejected verdict with its alert kind, or None to apply."""

        def verdict(outcome, detail, alert_kind=AlertKind.REJECTED_RESOLUTION):
            result = ResolutionResult(
                transaction_id=transaction.id,
                outcome=outcome,
                status=current.value,
                resolution_method=transaction.resolution_method,
                detail=detail,
            )
            return result, alert_kind

        if current.is_terminal:
            if target == current:
                return verdict(ResolutionOutcome.DUPLICATE, f"Already {current.value}", None)
            return verdict(
                ResolutionOutcome.REJECTED,
                f"Conflicting report {reported_status!r} for {current.value} transaction",
            )

        if target is None or not can_transition(current, target):
            return verdict(
                ResolutionOutcome.REJECTED,
                f"Illegal transition {current.value} -> {reported_status!r}",
            )

        if session is None:
            return verdict(ResolutionOutcome.REJECTED, "Checkout session missing")

        if session.is_expired() and settings.late_resolution_policy == "manual_review":
            return verdict(
                ResolutionOutcome.REJECTED,
                f"Late {target.value} for expired session held for manual review",
                AlertKind.LATE_RESOLUTION,
            )

        return None

    def _write(
        self,
        transaction: Transaction,
        session: PaymentSession,
        target: TransactionStatus,
        method: ResolutionMethod,
        provider_payload: Optional[Dict[str, Any]],
        provider_transaction_uid: Optional[str],
        failure_reason: Optional[str],
    ) -> None:
        now = utcnow()

        if session.is_expired():
            logger.warning(
                f"Late {target.value} for transaction {transaction.id} after session "
                f"{session.id} expired; applying"
            )

        transaction.status = target.value
        transaction.resolution_method = method.value
        transaction.resolved_at = now
        transaction.next_poll_at = None
        if provider_payload is not None:
            transaction.provider_response = provider_payload
        if provider_transaction_uid:
            transaction.provider_transaction_uid = provider_transaction_uid

        if target == TransactionStatus.COMPLETED:
            transaction.completed_at = now
        else:
            transaction.failure_reason = failure_reason or f"Payment {target.value}"

        session.session_status = SessionStatus.for_transaction(target).value
        if target == TransactionStatus.COMPLETED:
            session.completed_at = now
        else:
            session.failed_at = now
            session.error_message = transaction.failure_reason

    async def _report(
        self,
        result: ResolutionResult,
        alert_kind: Optional[str],
        method: ResolutionMethod,
        reported_status: str,
    ) -> None:
        context = {
            "transaction_id": str(result.transaction_id),
            "status": result.status,
            "reported_status": reported_status,
            "source": method.value,
            "outcome": result.outcome.value,
        }

        if result.outcome == ResolutionOutcome.DUPLICATE:
            logger.info(
                f"Duplicate {reported_status} report for transaction {result.transaction_id} via {method.value}",
                extra={"extra": context},
            )
            return

        logger.warning(
            f"Rejected {reported_status!r} report for transaction {result.transaction_id} "
            f"via {method.value}: {result.detail}",
            extra={"extra": context},
        )
        await self.alerts.notify(alert_kind, str(result.transaction_id), result.detail or "Rejected report", context)
