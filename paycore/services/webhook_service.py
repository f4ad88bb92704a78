"""
Webhook Service - ingestion of PayPlus callbacks.

Every delivery is stored before anything else happens, then verified,
parsed, correlated to a transaction and handed to the resolution arbiter.
The log row records each step so a delivery can be audited or replayed.
"""

import asyncio
import json
import time
import uuid
import logging
import traceback
from dataclasses import dataclass
from typing import Optional, Mapping, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.clock import utcnow
from paycore.config import settings
from paycore.database import get_session_factory
from paycore.exceptions import MalformedWebhook
from paycore.fsm.states import (
    TransactionStatus,
    ResolutionMethod,
    WebhookProcessingStatus,
)
from paycore.models.webhook_log import WebhookLog
from paycore.services.alert_service import AlertService
from paycore.services.payplus_service import PayPlusService
from paycore.services.resolution_service import ResolutionArbiter
from paycore.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

# Never persisted with the log
REDACTED_HEADERS = {"authorization", "cookie", "api-key", "secret-key", "x-admin-key"}

# Processing that outlived the acknowledgment window
_background_tasks: Set[asyncio.Task] = set()


@dataclass
class WebhookReceipt:
    """What happened to one delivery."""

    log_id: uuid.UUID
    processing_status: str
    signature_valid: bool = True
    outcome: Optional[str] = None
    transaction_id: Optional[uuid.UUID] = None
    detail: Optional[str] = None


class WebhookService:
    """Store, verify and process provider callbacks."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        payplus: Optional[PayPlusService] = None,
        arbiter: Optional[ResolutionArbiter] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.payplus = payplus or PayPlusService()
        self.arbiter = arbiter or ResolutionArbiter(self.session_factory, alerts)

    async def record(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        sender_ip: Optional[str] = None,
        method: str = "POST",
    ) -> uuid.UUID:
        """Persist the raw delivery in its own commit and return the log id."""
        body_text = raw_body.decode("utf-8", errors="replace")
        try:
            payload = json.loads(body_text)
        except ValueError:
            payload = None

        kept_headers = {
            k.lower(): v for k, v in headers.items() if k.lower() not in REDACTED_HEADERS
        }

        async with self.session_factory() as db:
            log = WebhookLog(
                provider="payplus",
                request_method=method,
                request_headers=kept_headers,
                sender_ip=sender_ip,
                user_agent=kept_headers.get("user-agent"),
                raw_body=body_text,
                payload=payload,
                processing_status=WebhookProcessingStatus.PENDING.value,
                process_log=[],
            )
            log.add_step("Webhook received")
            db.add(log)
            await db.commit()
            log_id = log.id

        logger.info(f"PayPlus webhook stored as {log_id} from {sender_ip}")
        return log_id

    async def receive(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        sender_ip: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> WebhookReceipt:
        """
        Store a delivery and process it, waiting at most `timeout` seconds.

        When processing outlives the wait it continues in the background and
        a pending receipt is returned so the caller can acknowledge.
        """
        log_id = await self.record(raw_body, headers, sender_ip)
        return await self.settle(log_id, timeout)

    async def settle(self, log_id: uuid.UUID, timeout: Optional[float] = None) -> WebhookReceipt:
        """Process a stored delivery, handing it to the background after `timeout`."""
        if timeout is None:
            timeout = settings.webhook_processing_timeout_seconds

        task = asyncio.create_task(self.process(log_id))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()

        logger.warning(f"Webhook {log_id} still processing after {timeout}s; acknowledging")
        _background_tasks.add(task)
        task.add_done_callback(_finish_background)
        return WebhookReceipt(
            log_id=log_id,
            processing_status=WebhookProcessingStatus.PENDING.value,
            detail="Processing continues in background",
        )

    async def process(self, log_id: uuid.UUID) -> WebhookReceipt:
        """Verify, parse, correlate and resolve a stored delivery."""
        started = time.monotonic()

        async with self.session_factory() as db:
            log = await db.get(WebhookLog, log_id)
            if log is None:
                raise ValueError(f"Webhook log {log_id} not found")

            if not self.payplus.verify_webhook_signature(log.raw_body.encode("utf-8"), log.request_headers or {}):
                logger.warning(f"Invalid PayPlus webhook signature on {log_id}")
                self._finish(log, started, WebhookProcessingStatus.FAILED, "Invalid webhook signature")
                await db.commit()
                return WebhookReceipt(
                    log_id=log_id,
                    processing_status=log.processing_status,
                    signature_valid=False,
                    detail=log.error_message,
                )
            log.add_step("Signature verified")

            try:
                notification = PayPlusService.parse_webhook(log.payload)
            except MalformedWebhook as e:
                logger.warning(f"Malformed PayPlus webhook {log_id}: {e}")
                self._finish(log, started, WebhookProcessingStatus.FAILED, f"Malformed payload: {e}")
                await db.commit()
                return WebhookReceipt(log_id=log_id, processing_status=log.processing_status, detail=log.error_message)

            log.page_request_uid = notification.page_request_uid
            log.provider_transaction_uid = notification.provider_transaction_uid
            log.status_code = notification.status_code
            log.status_name = notification.status_name
            log.event_type = notification.event_type
            log.retry_count = await self._count_earlier_deliveries(db, log)
            log.add_step(f"Parsed status {notification.reported_status} for {notification.page_request_uid}")

            store = TransactionStore(db)
            transaction = await store.get_by_page_request_uid(notification.page_request_uid)
            if transaction is None:
                message = f"No transaction found for {notification.page_request_uid}"
                logger.info(message)
                self._finish(log, started, WebhookProcessingStatus.FAILED, message)
                await db.commit()
                return WebhookReceipt(log_id=log_id, processing_status=log.processing_status, detail=message)

            log.transaction_id = transaction.id
            log.session_id = transaction.session_id
            transaction_id = transaction.id
            provider_payload = log.payload

            if notification.reported_status == TransactionStatus.PENDING.value:
                if await store.mark_session_pending(transaction):
                    log.add_step("Session moved to pending")
                self._finish(log, started, WebhookProcessingStatus.COMPLETED)
                await db.commit()
                return WebhookReceipt(
                    log_id=log_id,
                    processing_status=log.processing_status,
                    transaction_id=transaction_id,
                    detail="Non-terminal status",
                )

            log.add_step("Handing off to resolution")
            await db.commit()

        try:
            result = await self.arbiter.resolve(
                transaction_id,
                notification.reported_status,
                ResolutionMethod.WEBHOOK,
                provider_payload=provider_payload,
                provider_transaction_uid=notification.provider_transaction_uid,
                failure_reason=notification.failure_reason,
            )
        except Exception as e:
            logger.error(f"Webhook {log_id} resolution failed: {e}", exc_info=True)
            stack = traceback.format_exc()
            async with self.session_factory() as db:
                log = await db.get(WebhookLog, log_id)
                self._finish(log, started, WebhookProcessingStatus.FAILED, str(e), stack)
                await db.commit()
            return WebhookReceipt(
                log_id=log_id,
                processing_status=WebhookProcessingStatus.FAILED.value,
                transaction_id=transaction_id,
                detail=str(e),
            )

        async with self.session_factory() as db:
            log = await db.get(WebhookLog, log_id)
            log.resolution_outcome = result.outcome.value
            log.add_step(f"Resolution {result.outcome.value}: transaction {result.status}")
            self._finish(log, started, WebhookProcessingStatus.COMPLETED)
            await db.commit()

        return WebhookReceipt(
            log_id=log_id,
            processing_status=WebhookProcessingStatus.COMPLETED.value,
            outcome=result.outcome.value,
            transaction_id=transaction_id,
            detail=result.detail,
        )

    async def replay(self, log_id: uuid.UUID) -> WebhookReceipt:
        """Re-run a stored delivery as a new delivery with its own log row."""
        async with self.session_factory() as db:
            original = await db.get(WebhookLog, log_id)
            if original is None:
                raise ValueError(f"Webhook log {log_id} not found")
            raw_body = original.raw_body.encode("utf-8")
            headers = dict(original.request_headers or {})
            sender_ip = original.sender_ip

        new_id = await self.record(raw_body, headers, sender_ip, method="REPLAY")
        logger.info(f"Replaying webhook {log_id} as {new_id}")
        return await self.process(new_id)

    @staticmethod
    async def _count_earlier_deliveries(db: AsyncSession, log: WebhookLog) -> int:
        result = await db.execute(
            select(func.count(WebhookLog.id)).where(
                WebhookLog.id != log.id,
                WebhookLog.created_at <= log.created_at,
                WebhookLog.page_request_uid == log.page_request_uid,
                WebhookLog.provider_transaction_uid.is_not_distinct_from(log.provider_transaction_uid),
                WebhookLog.status_code.is_not_distinct_from(log.status_code),
                WebhookLog.status_name.is_not_distinct_from(log.status_name),
            )
        )
        return int(result.scalar_one())

    @staticmethod
    def _finish(
        log: WebhookLog,
        started: float,
        status: WebhookProcessingStatus,
        error: Optional[str] = None,
        stack: Optional[str] = None,
    ) -> None:
        log.processing_status = status.value
        log.processing_duration_ms = int((time.monotonic() - started) * 1000)
        log.processed_at = utcnow()
        if error:
            log.error_message = error
            log.error_stack = stack
            log.add_step(f"Failed: {error}")
        else:
            log.add_step("Processing completed")


def _finish_background(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background webhook processing failed: {exc}", exc_info=exc)
