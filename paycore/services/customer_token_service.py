"""
Customer Token Service - capture and manage stored card tokens.
"""

import re
import uuid
import logging
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.clock import utcnow
from paycore.config import settings
from paycore.models.customer_token import CustomerToken

logger = logging.getLogger(__name__)

BRAND_ALIASES = {
    "visa": "visa",
    "mastercard": "mastercard",
    "master": "mastercard",
    "mc": "mastercard",
    "amex": "amex",
    "american_express": "amex",
    "american express": "amex",
    "diners": "diners",
    "discover": "discover",
    "jcb": "jcb",
    "isracard": "isracard",
}


def _dig(payload: Dict[str, Any], *path: str) -> Any:
    node: Any = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def extract_token(payload: Dict[str, Any]) -> Optional[str]:
    """Find the card token in the places PayPlus may put it."""
    candidates = (
        ("payment_method", "token"),
        ("token",),
        ("token_uid",),
        ("transaction", "token"),
        ("transaction", "token_uid"),
        ("transaction", "payment_method", "token"),
        ("data", "card_information", "token"),
        ("card_token",),
        ("customer_token",),
        ("payment_token",),
    )
    for path in candidates:
        value = _dig(payload, *path)
        if value:
            return str(value)
    return None


def normalize_brand(brand: Optional[str]) -> str:
    if not brand:
        return "unknown"
    normalized = str(brand).lower().strip()
    return BRAND_ALIASES.get(normalized, normalized)


def extract_card_info(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Card display details: last four digits, brand and expiry."""
    card = (
        _dig(payload, "payment_method", "card")
        or payload.get("card")
        or _dig(payload, "transaction", "card")
        or _dig(payload, "data", "card_information")
        or {}
    )

    raw_last4 = (
        card.get("last_4")
        or card.get("last4")
        or card.get("four_digits")
        or payload.get("card_last4")
        or _dig(payload, "transaction", "card_last4")
        or ""
    )
    digits = re.sub(r"\D", "", str(raw_last4))
    last4 = digits[-4:] if len(digits) >= 4 else "0000"

    def _int(value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    return {
        "last4": last4,
        "brand": normalize_brand(card.get("brand") or card.get("type") or card.get("card_brand")),
        "expiry_month": _int(card.get("exp_month") or card.get("expiry_month") or card.get("month")),
        "expiry_year": _int(card.get("exp_year") or card.get("expiry_year") or card.get("year")),
        "customer_uid": (
            payload.get("customer_uid")
            or _dig(payload, "customer", "customer_uid")
            or _dig(payload, "transaction", "customer_uid")
        ),
    }


class CustomerTokenService:
    """Stored payment methods per user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def capture_from_payload(
        self,
        user_id: uuid.UUID,
        payload: Optional[Dict[str, Any]],
    ) -> Optional[CustomerToken]:
        """
        Save the card token from a provider payload.

        Returns None when the payload carries no token. A token the user
        already has is refreshed instead of duplicated. The first active
        token becomes the default.
        """
        if not payload:
            return None

        token_value = extract_token(payload)
        if not token_value:
            logger.info(f"No card token in provider payload for user {user_id}")
            return None

        result = await self.db.execute(
            select(CustomerToken).where(
                CustomerToken.user_id == user_id,
                CustomerToken.token_value == token_value,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            existing.is_active = True
            existing.last_used_at = utcnow()
            await self.db.flush()
            return existing

        info = extract_card_info(payload)
        has_active = await self.db.execute(
            select(CustomerToken.id).where(
                CustomerToken.user_id == user_id,
                CustomerToken.is_active.is_(True),
            )
        )

        token = CustomerToken(
            user_id=user_id,
            provider_customer_uid=info["customer_uid"],
            token_value=token_value,
            card_mask=f"****{info['last4']}",
            card_brand=info["brand"],
            expiry_month=info["expiry_month"],
            expiry_year=info["expiry_year"],
            is_active=True,
            is_default=has_active.first() is None,
            last_used_at=utcnow(),
            provider_response=payload,
            environment=settings.environment_tag,
        )
        self.db.add(token)
        await self.db.flush()

        logger.info(f"Card token {token.masked_token} saved for user {user_id}")
        return token

    async def list_for_user(self, user_id: uuid.UUID) -> List[CustomerToken]:
        result = await self.db.execute(
            select(CustomerToken)
            .where(CustomerToken.user_id == user_id, CustomerToken.is_active.is_(True))
            .order_by(CustomerToken.is_default.desc(), CustomerToken.created_at.desc())
        )
        return list(result.scalars().all())

    async def _get_owned(self, user_id: uuid.UUID, token_id: uuid.UUID) -> Optional[CustomerToken]:
        result = await self.db.execute(
            select(CustomerToken).where(
                CustomerToken.id == token_id,
                CustomerToken.user_id == user_id,
                CustomerToken.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def set_default(self, user_id: uuid.UUID, token_id: uuid.UUID) -> Optional[CustomerToken]:
        """Make one token the default and clear the flag on the others."""
        token = await self._get_owned(user_id, token_id)
        if not token:
            return None

        await self.db.execute(
            update(CustomerToken)
            .where(CustomerToken.user_id == user_id, CustomerToken.id != token_id)
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        token.is_default = True
        await self.db.flush()
        return token

    async def deactivate(self, user_id: uuid.UUID, token_id: uuid.UUID) -> bool:
        """
        Soft-delete a token. If it was the default, the most recent
        remaining token takes over.
        """
        token = await self._get_owned(user_id, token_id)
        if not token:
            return False

        was_default = token.is_default
        token.is_active = False
        token.is_default = False
        await self.db.flush()

        if was_default:
            remaining = await self.list_for_user(user_id)
            if remaining:
                remaining[0].is_default = True
                await self.db.flush()

        logger.info(f"Card token {token.id} deactivated for user {user_id}")
        return True
