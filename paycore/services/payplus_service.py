"""
PayPlus Service - hosted payment pages, status lookup and webhook parsing.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List, Dict, Any, Mapping

import httpx

from paycore.config import settings
from paycore.exceptions import PayPlusError, MalformedWebhook
from paycore.fsm.states import TransactionStatus

logger = logging.getLogger(__name__)

# PayPlus status_code for an approved charge
APPROVED_STATUS_CODE = "000"

# Immediate charge
CHARGE_METHOD_IMMEDIATE = 1

_STATUS_WORDS = {
    "success": TransactionStatus.COMPLETED,
    "approved": TransactionStatus.COMPLETED,
    "completed": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "failure": TransactionStatus.FAILED,
    "declined": TransactionStatus.FAILED,
    "rejected": TransactionStatus.FAILED,
    "error": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.CANCELLED,
    "canceled": TransactionStatus.CANCELLED,
    "pending": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "initiated": TransactionStatus.PENDING,
    "refunded": TransactionStatus.REFUNDED,
}


def map_provider_status(
    status: Optional[str] = None,
    status_code: Optional[str] = None,
) -> str:
    """
    Map a PayPlus status word or status code onto a transaction status value.

    The status word wins when present. Unrecognised words are returned
    lowercased as-is so the arbiter can reject and alert on them.
    """
    if status:
        word = str(status).strip().lower()
        mapped = _STATUS_WORDS.get(word)
        return mapped.value if mapped else word

    if status_code is not None and str(status_code).strip():
        if str(status_code).strip() == APPROVED_STATUS_CODE:
            return TransactionStatus.COMPLETED.value
        return TransactionStatus.FAILED.value

    return TransactionStatus.PENDING.value


@dataclass
class PaymentPageLink:
    """Hosted page created by generateLink."""

    page_request_uid: str
    payment_page_link: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatus:
    """Result of a Transactions/PaymentData lookup."""

    reported_status: str
    transaction_uid: Optional[str] = None
    status_code: Optional[str] = None
    status_description: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction(self) -> Dict[str, Any]:
        return (self.raw.get("data") or {}).get("transaction") or {}

    @property
    def is_terminal(self) -> bool:
        parsed = TransactionStatus.parse(self.reported_status)
        return parsed is None or parsed.is_terminal


@dataclass
class WebhookNotification:
    """Fields extracted from a PayPlus callback body."""

    page_request_uid: str
    reported_status: str
    provider_transaction_uid: Optional[str]
    status_code: Optional[str]
    status_name: Optional[str]
    event_type: str
    failure_reason: Optional[str] = None


class PayPlusService:
    """Client for the PayPlus REST API."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.payplus_api_url
        if not self.base_url.endswith("/"):
            self.base_url += "/"
        self.api_key = settings.payplus_api_key
        self.secret_key = settings.payplus_secret_key
        self.payment_page_uid = settings.payplus_payment_page_uid
        self.timeout = settings.payplus_request_timeout_seconds
        # Injected in tests (httpx.MockTransport)
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": self.api_key,
            "secret-key": self.secret_key,
        }

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST to PayPlus and return the decoded JSON body."""
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"PayPlus request to {path} failed: {e}")
            raise PayPlusError(f"PayPlus request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"PayPlus {path} HTTP {response.status_code}: {response.text[:500]}")
            raise PayPlusError(
                f"PayPlus HTTP {response.status_code}",
                http_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"PayPlus {path} returned invalid JSON: {response.text[:500]}")
            raise PayPlusError("Invalid PayPlus response") from e

        if not isinstance(data, dict):
            raise PayPlusError("Invalid PayPlus response")
        return data

    async def generate_payment_link(
        self,
        amount: Decimal,
        session_id: str,
        return_url: str,
        items: List[Dict[str, Any]],
        customer: Optional[Dict[str, Any]] = None,
    ) -> PaymentPageLink:
        """
        Create a hosted payment page.

        more_info carries the session id so a callback can always be
        traced back to its checkout.
        """
        if amount <= 0:
            raise PayPlusError("Total amount must be greater than 0 for PayPlus payment")

        request_body = {
            "payment_page_uid": self.payment_page_uid,
            "charge_method": CHARGE_METHOD_IMMEDIATE,
            "amount": float(amount),
            "currency_code": settings.currency,
            "language_code": "he",
            "sendEmailApproval": True,
            "sendEmailFailure": False,
            "customer": customer or {},
            "items": items,
            "refURL_success": return_url,
            "refURL_failure": return_url,
            "refURL_cancel": return_url,
            "refURL_callback": settings.payplus_webhook_url,
            "more_info": session_id,
            "payments": 1,
            "send_failure_callback": True,
            "create_token": True,
            "hide_payments_field": True,
        }

        data = await self._post("PaymentPages/generateLink", request_body)

        results = data.get("results") or {}
        if results.get("code") or results.get("status") != "success":
            logger.error(f"PayPlus generateLink error: {results}")
            raise PayPlusError(results.get("description") or "PayPlus rejected the payment page request")

        page = data.get("data") or {}
        page_request_uid = page.get("page_request_uid")
        payment_page_link = page.get("payment_page_link")
        if not page_request_uid or not payment_page_link:
            logger.error(f"PayPlus generateLink missing page data: {page}")
            raise PayPlusError("PayPlus response missing page_request_uid or payment_page_link")

        logger.info(f"PayPlus page created for session {session_id}: {page_request_uid}")
        return PaymentPageLink(
            page_request_uid=page_request_uid,
            payment_page_link=payment_page_link,
            raw=data,
        )

    async def get_payment_status(self, page_request_uid: str) -> ProviderStatus:
        """
        Look up the transaction behind a payment page.

        No transaction data means the page was not used yet, which is
        reported as pending.
        """
        data = await self._post("Transactions/PaymentData", {"page_request_uid": page_request_uid})

        results = data.get("results") or {}
        if results.get("status") != "success":
            raise PayPlusError(results.get("message") or results.get("description") or "PayPlus lookup error")

        transaction = (data.get("data") or {}).get("transaction")
        if not transaction:
            return ProviderStatus(reported_status=TransactionStatus.PENDING.value, raw=data)

        status_code = transaction.get("status_code")
        return ProviderStatus(
            reported_status=map_provider_status(transaction.get("status"), status_code),
            transaction_uid=transaction.get("uid"),
            status_code=status_code,
            status_description=transaction.get("status_description") or transaction.get("reason"),
            raw=data,
        )

    def sign(self, raw_body: bytes) -> str:
        """Base64 HMAC-SHA256 of the body, as PayPlus sends in the hash header."""
        digest = hmac.new(self.secret_key.encode(), raw_body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Verify the hash and user-agent headers of a callback."""
        if not settings.payplus_enforce_signature:
            return True

        if not self.secret_key:
            logger.warning("PayPlus secret key not configured; rejecting signed webhook")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        if lowered.get("user-agent") != "PayPlus":
            return False

        received = lowered.get("hash") or ""
        return hmac.compare_digest(self.sign(raw_body), received)

    @staticmethod
    def parse_webhook(payload: Any) -> WebhookNotification:
        """Extract the correlation key and reported status from a callback body."""
        if not isinstance(payload, dict):
            raise MalformedWebhook("Webhook payload is not a JSON object")

        transaction = payload.get("transaction") or {}
        if not isinstance(transaction, dict):
            raise MalformedWebhook("Webhook transaction field is not an object")

        page_request_uid = (
            payload.get("page_request_uid")
            or transaction.get("payment_page_request_uid")
        )
        if not page_request_uid:
            raise MalformedWebhook("Missing page_request_uid")

        status_name = payload.get("status") or transaction.get("status")
        status_code = transaction.get("status_code") or payload.get("status_code")
        if not status_name and not status_code:
            raise MalformedWebhook("Missing payment status")

        return WebhookNotification(
            page_request_uid=str(page_request_uid),
            reported_status=map_provider_status(status_name, status_code),
            provider_transaction_uid=payload.get("transaction_uid") or transaction.get("uid"),
            status_code=str(status_code) if status_code is not None else None,
            status_name=str(status_name) if status_name else None,
            event_type=payload.get("transaction_type") or transaction.get("type") or "payment",
            failure_reason=transaction.get("status_description") or payload.get("status_description"),
        )
