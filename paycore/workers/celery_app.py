"""
Celery application configuration.
"""

from celery import Celery
from celery.schedules import schedule

from paycore.config import settings

# Create Celery app
celery_app = Celery(
    "paycore",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "paycore.workers.payment_polling",
        "paycore.workers.session_cleanup",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {}

if settings.polling_enabled:
    # Polling fallback for transactions the webhook has not settled
    celery_app.conf.beat_schedule["payment-polling-pass"] = {
        "task": "paycore.workers.payment_polling.run_polling_pass",
        "schedule": schedule(run_every=settings.polling_pass_interval_seconds),
        # A pass that misses its slot is superseded by the next one
        "options": {"expires": settings.polling_pass_interval_seconds},
    }

# Expire abandoned checkout sessions every minute
celery_app.conf.beat_schedule["expire-payment-sessions"] = {
    "task": "paycore.workers.session_cleanup.expire_payment_sessions",
    "schedule": schedule(run_every=60),
}
