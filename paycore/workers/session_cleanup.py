"""
Session Cleanup Worker.

Runs every minute to expire abandoned checkout sessions.
"""

import asyncio
import logging

from paycore.workers.celery_app import celery_app
from paycore.database import close_db
from paycore.redis import RedisClient

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def expire_payment_sessions(self):
    """Mark open sessions past their deadline as expired."""

    async def run():
        from paycore.services.session_cleanup_service import SessionCleanupService

        try:
            return await SessionCleanupService().expire_sessions()
        finally:
            await close_db()
            await RedisClient.close()

    try:
        count = asyncio.run(run())
        return {"success": True, "count": count}
    except Exception as e:
        logger.error(f"Session cleanup failed: {e}")
        raise self.retry(exc=e, countdown=60)
