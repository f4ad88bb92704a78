"""
Subscription Service - status hand-off for subscription checkouts.

Checkout creates the subscription pending; payment resolution activates it
or marks it failed. Billing cycles and plan changes are handled elsewhere.
"""

import uuid
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.clock import utcnow
from paycore.fsm.states import SubscriptionStatus
from paycore.models.catalog import Subscription

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Move subscriptions through checkout-driven states."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def has_active(self, user_id: uuid.UUID, plan_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.user_id == user_id,
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        return result.first() is not None

    def create_pending(self, user_id: uuid.UUID, plan_id: uuid.UUID) -> Subscription:
        """Stage a pending subscription for a checkout (caller commits)."""
        subscription = Subscription(
            id=uuid.uuid4(),
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.PENDING.value,
        )
        self.db.add(subscription)
        return subscription

    async def activate(self, subscription_id: uuid.UUID, provider_status: Optional[str] = None) -> Subscription:
        """
        pending -> active.

        An already active subscription is left untouched; anything else
        that is not pending cannot be activated and raises ValueError.
        """
        subscription = await self.get(subscription_id)
        if not subscription:
            raise ValueError(f"Subscription {subscription_id} not found")

        if subscription.status == SubscriptionStatus.ACTIVE.value:
            logger.info(f"Subscription {subscription_id} already active")
            return subscription

        if subscription.status != SubscriptionStatus.PENDING.value:
            raise ValueError(
                f"Subscription {subscription_id} cannot be activated from {subscription.status}"
            )

        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.provider_status = provider_status
        subscription.activated_at = utcnow()
        await self.db.flush()

        logger.info(f"Subscription {subscription_id} activated")
        return subscription

    async def handle_payment_failure(self, subscription_id: uuid.UUID, reason: Optional[str]) -> Optional[Subscription]:
        """pending -> failed; other states are left alone."""
        subscription = await self.get(subscription_id)
        if not subscription:
            logger.warning(f"Subscription {subscription_id} not found for failure hand-off")
            return None

        if subscription.status != SubscriptionStatus.PENDING.value:
            logger.info(
                f"Subscription {subscription_id} is {subscription.status}; failure hand-off skipped"
            )
            return subscription

        subscription.status = SubscriptionStatus.FAILED.value
        subscription.failure_reason = reason
        subscription.failed_at = utcnow()
        await self.db.flush()

        logger.info(f"Subscription {subscription_id} marked failed: {reason}")
        return subscription
