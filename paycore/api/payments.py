"""
Checkout Endpoints.
Session creation, checkout status and stored payment methods.
"""

import uuid
import logging
from typing import Optional, List

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.api.deps import get_current_user_id, get_session_factory, get_payplus_service
from paycore.exceptions import InvalidPurchaseIntent, CouponRejected, ProviderUnavailable
from paycore.services.customer_token_service import CustomerTokenService
from paycore.services.payment_session_service import PaymentSessionService
from paycore.services.payplus_service import PayPlusService

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseIntentIn(BaseModel):
    """One item to buy."""
    entity_type: str
    entity_id: str


class CheckoutRequest(BaseModel):
    """Request body for opening a checkout."""
    purchase_intents: List[PurchaseIntentIn] = Field(..., min_length=1)
    coupon_codes: List[str] = Field(default_factory=list)
    return_url: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    payplus: PayPlusService = Depends(get_payplus_service),
):
    """
    Open a PayPlus checkout for the given items.

    Returns the hosted payment page URL the client redirects to.
    """
    customer = {}
    if request.customer_name:
        customer["customer_name"] = request.customer_name
    if request.customer_email:
        customer["email"] = request.customer_email

    service = PaymentSessionService(session_factory, payplus=payplus)
    try:
        session = await service.create_session(
            user_id=user_id,
            purchase_intents=[intent.model_dump() for intent in request.purchase_intents],
            coupon_codes=request.coupon_codes,
            return_url=request.return_url,
            customer=customer or None,
        )
    except (InvalidPurchaseIntent, CouponRejected) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderUnavailable as e:
        raise HTTPException(
            status_code=502,
            detail={"message": str(e), "session_id": e.session_id},
        )

    return {
        "status": "success",
        "session_id": str(session.id),
        "payment_page_url": session.payment_page_url,
        "total_amount": str(session.total_amount),
        "discount_amount": str(session.discount_amount),
        "currency": session.currency,
        "expires_at": session.expires_at.isoformat(),
    }


@router.get("/sessions/{session_id}")
async def get_checkout_status(
    session_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Checkout status for the payment result page."""
    service = PaymentSessionService(session_factory)
    session = await service.get_session_for_user(session_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("/methods")
async def list_payment_methods(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Stored cards of the current user."""
    async with session_factory() as db:
        tokens = await CustomerTokenService(db).list_for_user(user_id)

    return {
        "payment_methods": [
            {
                "id": str(token.id),
                "card_mask": token.card_mask,
                "card_brand": token.card_brand,
                "expiry_month": token.expiry_month,
                "expiry_year": token.expiry_year,
                "is_default": token.is_default,
            }
            for token in tokens
        ]
    }


@router.post("/methods/{token_id}/default")
async def set_default_payment_method(
    token_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    async with session_factory() as db:
        token = await CustomerTokenService(db).set_default(user_id, token_id)
        if token is None:
            raise HTTPException(status_code=404, detail="Payment method not found")
        await db.commit()

    return {"status": "success", "id": str(token_id), "is_default": True}


@router.delete("/methods/{token_id}")
async def delete_payment_method(
    token_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    async with session_factory() as db:
        removed = await CustomerTokenService(db).deactivate(user_id, token_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Payment method not found")
        await db.commit()

    logger.info(f"Payment method {token_id} removed by user {user_id}")
    return {"status": "success", "id": str(token_id)}
