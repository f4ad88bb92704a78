"""
Side Effect Applier - access grants for a resolved transaction.

Only called by the resolution arbiter, inside its database transaction, so
a failure here rolls back the status write as well.
"""

import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.clock import utcnow
from paycore.fsm.states import TransactionStatus
from paycore.models.catalog import Product
from paycore.models.payment_session import PaymentSession
from paycore.models.purchase import Purchase
from paycore.models.transaction import Transaction
from paycore.services.coupon_service import CouponService
from paycore.services.customer_token_service import CustomerTokenService
from paycore.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class SideEffectApplier:
    """Apply purchase and subscription effects of a terminal status."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply(
        self,
        transaction: Transaction,
        session: PaymentSession,
        provider_payload: Optional[Dict[str, Any]] = None,
    ) -> List[Purchase]:
        """Dispatch on the transaction's new status. Returns purchases created."""
        status = transaction.status_enum

        if status == TransactionStatus.COMPLETED:
            return await self._apply_completed(transaction, session, provider_payload)

        if status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            await self._apply_failed(transaction, session)

        return []

    async def _apply_completed(
        self,
        transaction: Transaction,
        session: PaymentSession,
        provider_payload: Optional[Dict[str, Any]],
    ) -> List[Purchase]:
        existing = await self.db.execute(
            select(Purchase.entity_type, Purchase.entity_id).where(
                Purchase.transaction_id == transaction.id
            )
        )
        granted = {(row.entity_type, row.entity_id) for row in existing}

        now = utcnow()
        created: List[Purchase] = []

        for intent in session.purchase_intents or []:
            entity_type = intent["entity_type"]
            entity_id = uuid.UUID(str(intent["entity_id"]))

            if (entity_type, entity_id) in granted:
                logger.info(
                    f"Purchase for {entity_type}:{entity_id} already exists on transaction {transaction.id}"
                )
                continue

            purchase = Purchase(
                user_id=transaction.user_id,
                transaction_id=transaction.id,
                session_id=session.id,
                entity_type=entity_type,
                entity_id=entity_id,
                amount=Decimal(str(intent.get("amount", "0"))),
                currency=transaction.currency,
                payment_status=TransactionStatus.COMPLETED.value,
                access_starts_at=now,
                access_until=await self._access_until(entity_id, now),
                polling_attempts=transaction.polling_attempts,
                last_polled_at=transaction.last_polled_at,
                resolution_method=transaction.resolution_method,
            )
            self.db.add(purchase)
            created.append(purchase)

        if created:
            await self.db.flush()
            # Coupon usage counts once per paid checkout
            await CouponService(self.db).record_usage(session.applied_coupons or [])
            logger.info(
                f"Granted {len(created)} purchase(s) for transaction {transaction.id} "
                f"via {transaction.resolution_method}"
            )

        if session.subscription_id:
            await SubscriptionService(self.db).activate(
                session.subscription_id,
                provider_status=TransactionStatus.COMPLETED.value,
            )
            await self._capture_token(transaction, provider_payload)

        return created

    async def _access_until(self, product_id: uuid.UUID, now: datetime) -> Optional[datetime]:
        result = await self.db.execute(
            select(Product.access_days).where(Product.id == product_id)
        )
        days = result.scalar_one_or_none()
        return now + timedelta(days=days) if days else None

    async def _capture_token(
        self,
        transaction: Transaction,
        provider_payload: Optional[Dict[str, Any]],
    ) -> None:
        """Token capture never blocks activation; it runs in a savepoint."""
        if not provider_payload:
            return
        try:
            async with self.db.begin_nested():
                await CustomerTokenService(self.db).capture_from_payload(
                    transaction.user_id, provider_payload
                )
        except Exception as e:
            logger.warning(
                f"Card token capture failed for transaction {transaction.id}: {e}",
                exc_info=True,
            )

    async def _apply_failed(self, transaction: Transaction, session: PaymentSession) -> None:
        if not session.subscription_id:
            return
        await SubscriptionService(self.db).handle_payment_failure(
            session.subscription_id,
            reason=transaction.failure_reason or f"Payment {transaction.status}",
        )
