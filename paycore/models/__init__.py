"""Models package for database models."""

from paycore.models.transaction import Transaction
from paycore.models.payment_session import PaymentSession
from paycore.models.purchase import Purchase
from paycore.models.webhook_log import WebhookLog
from paycore.models.customer_token import CustomerToken
from paycore.models.catalog import Product, Coupon, Subscription

__all__ = [
    "Transaction",
    "PaymentSession",
    "Purchase",
    "WebhookLog",
    "CustomerToken",
    "Product",
    "Coupon",
    "Subscription",
]
