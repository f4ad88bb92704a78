"""Domain errors raised by the payment core."""

from typing import Optional


class PaymentError(Exception):
    """Base class for payment core errors."""


class InvalidPurchaseIntent(PaymentError):
    """A purchase intent is malformed, unknown, unpublished or already owned."""


class CouponRejected(PaymentError):
    """A coupon failed validation for this checkout."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ProviderUnavailable(PaymentError):
    """The provider checkout call failed; the session was persisted as failed."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


class PayPlusError(PaymentError):
    """Transport or protocol error talking to PayPlus."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


class TransactionNotFound(PaymentError):
    """No transaction for the given id or correlation key."""


class IllegalTransition(PaymentError):
    """A transaction status edge outside the transition table."""


class SideEffectError(PaymentError):
    """Granting access for a resolved transaction failed; the resolution was rolled back."""


class MalformedWebhook(PaymentError):
    """A webhook body that cannot be parsed into a provider notification."""
