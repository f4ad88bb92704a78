"""
Payment state definitions.
Transaction, checkout session and webhook processing states plus the
allowed transaction transitions.
"""

from enum import Enum
from typing import Optional


class TransactionStatus(str, Enum):
    """
    Status of a single payment attempt.
    Only the edges in TRANSACTION_TRANSITIONS are legal.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TransactionStatus"]:
        """Return the member for value, or None when unknown."""
        try:
            return cls(value)
        except ValueError:
            return None


TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.COMPLETED: {TransactionStatus.REFUNDED},
    TransactionStatus.FAILED: set(),
    TransactionStatus.CANCELLED: set(),
    TransactionStatus.REFUNDED: set(),
}

# Targets a provider or operator report may resolve a pending transaction to
RESOLVABLE_STATUSES = TRANSACTION_TRANSITIONS[TransactionStatus.PENDING]


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    """Check a transaction status edge against the transition table."""
    return target in TRANSACTION_TRANSITIONS.get(current, set())


class SessionStatus(str, Enum):
    """Status of a checkout session shown to the user."""

    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        return self in (SessionStatus.CREATED, SessionStatus.PENDING)

    @classmethod
    def for_transaction(cls, status: TransactionStatus) -> "SessionStatus":
        """Project a transaction status onto the coarser session status."""
        mapping = {
            TransactionStatus.PENDING: cls.PENDING,
            TransactionStatus.COMPLETED: cls.COMPLETED,
            TransactionStatus.FAILED: cls.FAILED,
            TransactionStatus.CANCELLED: cls.CANCELLED,
            TransactionStatus.REFUNDED: cls.COMPLETED,
        }
        return mapping[status]


class ResolutionMethod(str, Enum):
    """Channel that produced the final status of a transaction."""

    WEBHOOK = "webhook"
    POLLING = "polling"
    MANUAL = "manual"
    ABANDONED_AFTER_POLLING = "abandoned_after_polling"


class ResolutionOutcome(str, Enum):
    """Result of a resolution attempt."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class WebhookProcessingStatus(str, Enum):
    """Processing status of a stored webhook delivery."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle as far as checkout is concerned."""

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EntityType(str, Enum):
    """
    Purchasable entity types.
    Purchase intents reference a product of one of these types.
    """

    FILE = "file"
    COURSE = "course"
    WORKSHOP = "workshop"
    GAME = "game"
    LESSON_PLAN = "lesson_plan"
    BUNDLE = "bundle"
    SUBSCRIPTION_PLAN = "subscription_plan"

    @property
    def is_subscription(self) -> bool:
        return self is EntityType.SUBSCRIPTION_PLAN


class DiscountType(str, Enum):
    """Coupon discount kinds."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
