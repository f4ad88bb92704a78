"""
Payment Polling Worker.

Runs every polling_pass_interval_seconds to settle pending transactions the
PayPlus webhook has not reported.
"""

import asyncio
import logging

from paycore.workers.celery_app import celery_app
from paycore.database import close_db
from paycore.redis import RedisClient

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=0)
def run_polling_pass(self):
    """
    Run one reconciliation pass.

    Not retried: the next scheduled pass picks up whatever this one missed.
    """
    try:
        summary = asyncio.run(_run_polling_pass())
        return {"success": True, **summary}
    except Exception as e:
        logger.error(f"Polling pass failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


@celery_app.task(bind=True, max_retries=3)
def poll_transaction(self, transaction_id: str):
    """Poll a single transaction on demand."""
    import uuid

    async def run():
        from paycore.services.polling_service import PollingService

        try:
            result = await PollingService().poll_transaction(uuid.UUID(transaction_id))
            return {
                "attempts": result.attempts,
                "reported_status": result.reported_status,
                "outcome": result.outcome,
                "error": result.error,
            }
        finally:
            await close_db()
            await RedisClient.close()

    try:
        return asyncio.run(run())
    except Exception as e:
        logger.error(f"Polling transaction {transaction_id} failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=30)


async def _run_polling_pass() -> dict:
    from paycore.services.polling_service import PollingService

    try:
        summary = await PollingService().reconcile()
        return dict(summary.__dict__)
    finally:
        # Pooled connections belong to this event loop
        await close_db()
        await RedisClient.close()
