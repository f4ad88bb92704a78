"""State definitions for payment reconciliation."""

from paycore.fsm.states import (
    TransactionStatus,
    SessionStatus,
    ResolutionMethod,
    ResolutionOutcome,
    WebhookProcessingStatus,
    SubscriptionStatus,
    EntityType,
    DiscountType,
    can_transition,
)

__all__ = [
    "TransactionStatus",
    "SessionStatus",
    "ResolutionMethod",
    "ResolutionOutcome",
    "WebhookProcessingStatus",
    "SubscriptionStatus",
    "EntityType",
    "DiscountType",
    "can_transition",
]
