"""
Payment Session Service - checkout creation.

Validates purchase intents and coupons, persists the session, opens a PayPlus
hosted page and records the pending transaction the webhook and polling
paths will later resolve.
"""

import uuid
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.clock import utcnow
from paycore.config import settings
from paycore.database import get_session_factory
from paycore.exceptions import InvalidPurchaseIntent, CouponRejected, ProviderUnavailable, PayPlusError
from paycore.fsm.states import EntityType, SessionStatus, TransactionStatus
from paycore.models.catalog import Product
from paycore.models.payment_session import PaymentSession
from paycore.models.purchase import Purchase
from paycore.models.transaction import Transaction
from paycore.services.coupon_service import CouponService
from paycore.services.payplus_service import PayPlusService
from paycore.services.subscription_service import SubscriptionService
from paycore.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


class PaymentSessionService:
    """Create and read checkout sessions."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        payplus: Optional[PayPlusService] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.payplus = payplus or PayPlusService()

    async def create_session(
        self,
        user_id: uuid.UUID,
        purchase_intents: Sequence[Dict[str, Any]],
        coupon_codes: Optional[Sequence[str]] = None,
        return_url: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
    ) -> PaymentSession:
        """
        Open a checkout.

        Raises InvalidPurchaseIntent or CouponRejected before anything is
        written, and ProviderUnavailable after persisting the session as
        failed when PayPlus could not create the page.
        """
        parsed = self._parse_intents(purchase_intents)
        return_url = return_url or settings.payment_result_url

        async with self.session_factory() as db:
            products = await self._load_products(db, user_id, parsed)

            intents = [
                {
                    "entity_type": entity_type.value,
                    "entity_id": str(entity_id),
                    "amount": str(products[entity_id].price),
                    "title": products[entity_id].title,
                }
                for entity_type, entity_id in parsed
            ]
            subtotal = sum((products[entity_id].price for _, entity_id in parsed), Decimal("0"))

            coupons = await CouponService(db).apply(
                coupon_codes or [],
                [entity_type.value for entity_type, _ in parsed],
                subtotal,
            )
            total = coupons.final_amount
            if total <= 0:
                raise CouponRejected("Discounted total must be greater than zero")

            now = utcnow()
            session = PaymentSession(
                id=uuid.uuid4(),
                user_id=user_id,
                purchase_intents=intents,
                total_amount=total,
                original_amount=subtotal,
                discount_amount=coupons.discount_amount,
                applied_coupons=coupons.applied_coupons,
                currency=settings.currency,
                session_status=SessionStatus.CREATED.value,
                return_url=return_url,
                callback_url=settings.payplus_webhook_url,
                environment=settings.environment_tag,
                expires_at=now + timedelta(minutes=settings.session_ttl_minutes),
            )

            entity_type, entity_id = parsed[0]
            if entity_type.is_subscription:
                subscription = SubscriptionService(db).create_pending(user_id, entity_id)
                session.subscription_id = subscription.id

            db.add(session)
            await db.commit()
            session_id = session.id

            try:
                page = await self.payplus.generate_payment_link(
                    amount=total,
                    session_id=str(session_id),
                    return_url=return_url,
                    items=self._format_items(intents),
                    customer=customer,
                )
            except PayPlusError as e:
                session.session_status = SessionStatus.FAILED.value
                session.error_message = str(e)
                session.failed_at = utcnow()
                if session.subscription_id:
                    await SubscriptionService(db).handle_payment_failure(
                        session.subscription_id, "Payment page could not be opened"
                    )
                await db.commit()
                logger.error(f"Checkout {session_id} failed: PayPlus unavailable: {e}")
                raise ProviderUnavailable(
                    "Could not open the payment page. Please try again later.",
                    session_id=str(session_id),
                ) from e

            session.page_request_uid = page.page_request_uid
            session.payment_page_url = page.payment_page_link
            TransactionStore(db).create_pending(session, page.page_request_uid, total)
            await db.commit()

        logger.info(
            f"Checkout {session_id} opened for user {user_id}: {total} {settings.currency}",
            extra={"extra": {"session_id": str(session_id), "page_request_uid": page.page_request_uid}},
        )
        return session

    @staticmethod
    def _parse_intents(purchase_intents: Sequence[Dict[str, Any]]) -> List[tuple]:
        if not purchase_intents:
            raise InvalidPurchaseIntent("At least one purchase intent is required")

        parsed = []
        for intent in purchase_intents:
            if not isinstance(intent, dict):
                raise InvalidPurchaseIntent("Purchase intent must be an object")
            try:
                entity_type = EntityType(intent.get("entity_type"))
            except ValueError:
                raise InvalidPurchaseIntent(f"Unknown entity type: {intent.get('entity_type')}")
            try:
                entity_id = uuid.UUID(str(intent.get("entity_id")))
            except ValueError:
                raise InvalidPurchaseIntent(f"Invalid entity id: {intent.get('entity_id')}")

            if (entity_type, entity_id) in parsed:
                raise InvalidPurchaseIntent(f"Duplicate purchase intent for {entity_type.value}:{entity_id}")
            parsed.append((entity_type, entity_id))

        if len(parsed) > 1 and any(t.is_subscription for t, _ in parsed):
            raise InvalidPurchaseIntent("A subscription plan must be purchased on its own")

        return parsed

    @staticmethod
    async def _load_products(db: AsyncSession, user_id: uuid.UUID, parsed: List[tuple]) -> Dict[uuid.UUID, Product]:
        """Check each intent against the catalog and the user's existing access."""
        ids = [entity_id for _, entity_id in parsed]
        result = await db.execute(select(Product).where(Product.id.in_(ids)))
        products = {p.id: p for p in result.scalars().all()}

        for entity_type, entity_id in parsed:
            product = products.get(entity_id)
            if product is None or product.product_type != entity_type.value:
                raise InvalidPurchaseIntent(f"{entity_type.value} {entity_id} not found")
            if not product.is_published:
                raise InvalidPurchaseIntent(f"{entity_type.value} {entity_id} is not available")

            if entity_type.is_subscription:
                if await SubscriptionService(db).has_active(user_id, entity_id):
                    raise InvalidPurchaseIntent("You already have an active subscription to this plan")
                continue

            owned = await db.execute(
                select(Purchase.id).where(
                    Purchase.user_id == user_id,
                    Purchase.entity_type == entity_type.value,
                    Purchase.entity_id == entity_id,
                    Purchase.payment_status == TransactionStatus.COMPLETED.value,
                )
            )
            if owned.first() is not None:
                raise InvalidPurchaseIntent(f"You already own {product.title}")

        return products

    @staticmethod
    def _format_items(intents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "name": intent.get("title") or "Product",
                "price": intent["amount"],
                "quantity": 1,
                "barcode": f"{intent['entity_type']}_{intent['entity_id']}",
            }
            for intent in intents
        ]

    async def get_session_for_user(
        self,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> Optional[Dict[str, Any]]:
        """
        Session status for the checkout page.

        A session whose transaction is not settled yet is simply reported
        as pending; the page keeps asking.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentSession).where(
                    PaymentSession.id == session_id,
                    PaymentSession.user_id == user_id,
                )
            )
            session = result.scalar_one_or_none()
            if session is None:
                return None

            tx_result = await db.execute(
                select(Transaction)
                .where(Transaction.session_id == session.id)
                .order_by(Transaction.created_at.desc())
            )
            transaction = tx_result.scalars().first()

        status = session.session_status
        if status != SessionStatus.EXPIRED.value and session.is_expired():
            status = SessionStatus.EXPIRED.value

        return {
            "session_id": str(session.id),
            "status": status,
            "total_amount": str(session.total_amount),
            "original_amount": str(session.original_amount),
            "discount_amount": str(session.discount_amount),
            "currency": session.currency,
            "payment_page_url": session.payment_page_url,
            "expires_at": session.expires_at.isoformat(),
            "transaction_status": transaction.status if transaction else None,
            "resolution_method": transaction.resolution_method if transaction else None,
            "error_message": session.error_message,
        }
