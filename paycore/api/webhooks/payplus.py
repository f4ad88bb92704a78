"""
PayPlus Webhook Handler.
Stores every callback, verifies its signature and settles the payment.
"""

import logging

from fastapi import APIRouter, Request, HTTPException, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.api.deps import get_session_factory, get_payplus_service, get_alert_service
from paycore.services.alert_service import AlertService
from paycore.services.payplus_service import PayPlusService
from paycore.services.webhook_service import WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/payplus")
async def payplus_webhook(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    payplus: PayPlusService = Depends(get_payplus_service),
    alerts: AlertService = Depends(get_alert_service),
):
    """
    Handle PayPlus payment callbacks.

    Acknowledges with 200 once the delivery is stored, so PayPlus does not
    retry it, except for an invalid signature (401). A delivery that could
    not be stored gets a 503 and PayPlus sends it again.
    """
    body = await request.body()
    sender_ip = request.client.host if request.client else None

    service = WebhookService(session_factory, payplus=payplus, alerts=alerts)

    try:
        log_id = await service.record(body, request.headers, sender_ip)
    except Exception as e:
        logger.error(f"Could not store PayPlus webhook: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Webhook could not be stored")

    try:
        receipt = await service.settle(log_id)
    except Exception as e:
        logger.error(f"Error processing PayPlus webhook: {e}", exc_info=True)
        # Return 200 to prevent excessive retries
        return {"status": "error", "message": str(e)}

    if not receipt.signature_valid:
        raise HTTPException(status_code=401, detail="Invalid signature")

    return {
        "status": "ok",
        "log_id": str(receipt.log_id),
        "processing_status": receipt.processing_status,
        "outcome": receipt.outcome,
    }
