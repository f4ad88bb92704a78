"""Services package."""

from paycore.services.transaction_store import TransactionStore
from paycore.services.payplus_service import PayPlusService
from paycore.services.alert_service import AlertService
from paycore.services.coupon_service import CouponService
from paycore.services.subscription_service import SubscriptionService
from paycore.services.customer_token_service import CustomerTokenService
from paycore.services.side_effects import SideEffectApplier
from paycore.services.resolution_service import ResolutionArbiter, ResolutionResult
from paycore.services.webhook_service import WebhookService
from paycore.services.polling_service import PollingService
from paycore.services.payment_session_service import PaymentSessionService
from paycore.services.session_cleanup_service import SessionCleanupService

__all__ = [
    "TransactionStore",
    "PayPlusService",
    "AlertService",
    "CouponService",
    "SubscriptionService",
    "CustomerTokenService",
    "SideEffectApplier",
    "ResolutionArbiter",
    "ResolutionResult",
    "WebhookService",
    "PollingService",
    "PaymentSessionService",
    "SessionCleanupService",
]
