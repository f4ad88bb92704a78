"""
Admin Payment Endpoints.
Manual resolution, refunds, on-demand polling and webhook log inspection.
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.api.deps import (
    get_admin_user,
    get_session_factory,
    get_payplus_service,
    get_alert_service,
)
from paycore.exceptions import TransactionNotFound, IllegalTransition, SideEffectError
from paycore.fsm.states import ResolutionMethod, ResolutionOutcome
from paycore.models.webhook_log import WebhookLog
from paycore.services.alert_service import AlertService
from paycore.services.payplus_service import PayPlusService
from paycore.services.polling_service import PollingService
from paycore.services.resolution_service import ResolutionArbiter
from paycore.services.transaction_store import TransactionStore
from paycore.services.webhook_service import WebhookService

router = APIRouter(prefix="/payments", dependencies=[Depends(get_admin_user)])
logger = logging.getLogger(__name__)


class ResolveRequest(BaseModel):
    """Operator decision for a pending transaction."""
    status: str
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    """Request body for refunding a completed transaction."""
    reason: str


@router.post("/transactions/{transaction_id}/resolve")
async def resolve_transaction(
    transaction_id: uuid.UUID,
    request: ResolveRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    alerts: AlertService = Depends(get_alert_service),
):
    """
    Settle a pending transaction by hand.

    Goes through the same arbiter as webhook and polling, recorded as
    resolution_method=manual.
    """
    arbiter = ResolutionArbiter(session_factory, alerts)
    try:
        result = await arbiter.resolve(
            transaction_id,
            request.status,
            ResolutionMethod.MANUAL,
            failure_reason=request.reason,
        )
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except SideEffectError as e:
        raise HTTPException(status_code=500, detail=f"Access grant failed: {e}")

    if result.outcome == ResolutionOutcome.REJECTED:
        raise HTTPException(status_code=409, detail=result.detail)

    logger.info(f"Transaction {transaction_id} manually resolved: {result.outcome.value}")
    return {
        "status": "success",
        "outcome": result.outcome.value,
        "transaction_status": result.status,
        "resolution_method": result.resolution_method,
    }


@router.post("/transactions/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: uuid.UUID,
    request: RefundRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Record a refund issued in the PayPlus dashboard and revoke access."""
    async with session_factory() as db:
        try:
            transaction = await TransactionStore(db).mark_refunded(transaction_id, request.reason)
        except TransactionNotFound:
            raise HTTPException(status_code=404, detail="Transaction not found")
        except IllegalTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        await db.commit()

    return {
        "status": "success",
        "transaction_status": transaction.status,
        "refunded_at": transaction.refunded_at.isoformat(),
    }


@router.post("/poll")
async def run_polling_pass(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    payplus: PayPlusService = Depends(get_payplus_service),
    alerts: AlertService = Depends(get_alert_service),
):
    """Run one reconciliation pass now."""
    service = PollingService(session_factory, payplus=payplus, alerts=alerts)
    summary = await service.reconcile()
    return {"status": "success", "summary": summary.__dict__}


@router.post("/transactions/{transaction_id}/poll")
async def poll_single_transaction(
    transaction_id: uuid.UUID,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    payplus: PayPlusService = Depends(get_payplus_service),
    alerts: AlertService = Depends(get_alert_service),
):
    """Ask PayPlus about one transaction now."""
    service = PollingService(session_factory, payplus=payplus, alerts=alerts)
    result = await service.poll_transaction(transaction_id)
    if result.skipped and result.status is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"status": "success", "result": result.__dict__}


@router.get("/webhook-logs")
async def list_webhook_logs(
    page_request_uid: Optional[str] = None,
    processing_status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Recent webhook deliveries, newest first."""
    stmt = select(WebhookLog).order_by(WebhookLog.created_at.desc()).limit(limit)
    if page_request_uid:
        stmt = stmt.where(WebhookLog.page_request_uid == page_request_uid)
    if processing_status:
        stmt = stmt.where(WebhookLog.processing_status == processing_status)

    async with session_factory() as db:
        result = await db.execute(stmt)
        logs = result.scalars().all()

    return {
        "webhook_logs": [
            {
                "id": str(log.id),
                "page_request_uid": log.page_request_uid,
                "provider_transaction_uid": log.provider_transaction_uid,
                "status_code": log.status_code,
                "status_name": log.status_name,
                "processing_status": log.processing_status,
                "resolution_outcome": log.resolution_outcome,
                "retry_count": log.retry_count,
                "error_message": log.error_message,
                "process_log": log.process_log,
                "transaction_id": str(log.transaction_id) if log.transaction_id else None,
                "processing_duration_ms": log.processing_duration_ms,
                "created_at": log.created_at.isoformat(),
            }
            for log in logs
        ]
    }


@router.post("/webhook-logs/{log_id}/replay")
async def replay_webhook(
    log_id: uuid.UUID,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    payplus: PayPlusService = Depends(get_payplus_service),
    alerts: AlertService = Depends(get_alert_service),
):
    """Re-run a stored delivery as a new one."""
    service = WebhookService(session_factory, payplus=payplus, alerts=alerts)
    try:
        receipt = await service.replay(log_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Webhook log not found")

    return {
        "status": "success",
        "log_id": str(receipt.log_id),
        "processing_status": receipt.processing_status,
        "outcome": receipt.outcome,
        "detail": receipt.detail,
    }
