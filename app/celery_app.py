"""Celery application instance shared across the backend.

Start a worker and the beat scheduler with:
    celery -A app.celery_app worker -Q escalation -l info --concurrency=2
    celery -A app.celery_app beat -l info
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("dose_escalation", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.confirmation.dispatch": {"queue": "escalation"},
    "app.workers.escalation.escalate": {"queue": "escalation"},
}

# Beat schedule: both server tiers run on a fixed cadence and rely on the
# per-dose guards, not on the schedule, for idempotency.
celery_app.conf.beat_schedule = {
    "send-confirmation-sms": {
        "task": "app.workers.confirmation.dispatch",
        "schedule": settings.CONFIRMATION_JOB_INTERVAL,
    },
    "escalate-caregivers": {
        "task": "app.workers.escalation.escalate",
        "schedule": settings.ESCALATION_JOB_INTERVAL,
    },
}

# --- Ensure tasks are registered ---
import app.workers.confirmation
import app.workers.escalation
