"""
Alert Service - operational alerts for reconciliation anomalies.

Every alert is logged at ERROR. Repeats of the same kind for the same
transaction are suppressed through Redis for alert_dedupe_ttl_seconds, and
an optional webhook receives a JSON copy.
"""

import logging
from typing import Optional, Dict, Any

import httpx

from paycore.clock import utcnow
from paycore.config import settings
from paycore.redis import get_redis, RedisNotConfigured

logger = logging.getLogger(__name__)


class AlertKind:
    """Alert kinds raised by the payment core."""

    REJECTED_RESOLUTION = "rejected_resolution"
    POLLING_EXHAUSTED = "polling_exhausted"
    LATE_RESOLUTION = "late_resolution"
    SIDE_EFFECT_FAILED = "side_effect_failed"


class AlertService:
    """Raise operational alerts."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = settings.alert_webhook_url
        self.dedupe_ttl = settings.alert_dedupe_ttl_seconds
        self.transport = transport

    async def _first_occurrence(self, key: str) -> bool:
        """SET NX on the dedupe key; Redis errors never suppress an alert."""
        try:
            redis = await get_redis()
            return bool(await redis.set(key, "1", nx=True, ex=self.dedupe_ttl))
        except RedisNotConfigured:
            logger.debug("Alert dedupe disabled: REDIS_URL not set")
            return True
        except Exception as e:
            logger.warning(f"Alert dedupe unavailable: {e}")
            return True

    async def notify(
        self,
        kind: str,
        transaction_id: Optional[str],
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Raise an alert.

        Returns True when the alert was emitted, False when it was a
        suppressed repeat.
        """
        details = details or {}
        key = f"paycore:alert:{kind}:{transaction_id or 'global'}"

        if not await self._first_occurrence(key):
            logger.info(f"Alert {kind} for {transaction_id} suppressed (repeat)")
            return False

        logger.error(
            f"ALERT [{kind}] transaction={transaction_id}: {message}",
            extra={"extra": {"alert_kind": kind, "transaction_id": transaction_id, **details}},
        )

        if self.webhook_url:
            body = {
                "kind": kind,
                "transaction_id": transaction_id,
                "message": message,
                "details": details,
                "environment": settings.app_env,
                "at": utcnow().isoformat(),
            }
            try:
                async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                    response = await client.post(self.webhook_url, json=body)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"Alert webhook delivery failed: {e}")

        return True
