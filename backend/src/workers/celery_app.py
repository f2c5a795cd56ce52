"""Celery application and beat schedule for the integration workers."""

from celery import Celery
from celery.signals import setup_logging

from config import get_settings
from observability.logging_config import configure_logging

settings = get_settings()

celery_app = Celery(
    "integrations",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["workers.integration_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
)

celery_app.conf.beat_schedule = {
    "integrations-refresh-expiring-tokens": {
        "task": "integrations.refresh_expiring_tokens",
        "schedule": float(settings.TOKEN_REFRESH_SWEEP_INTERVAL_SECONDS),
        "options": {"expires": settings.TOKEN_REFRESH_SWEEP_INTERVAL_SECONDS},
    },
    "integrations-run-scheduled-syncs": {
        "task": "integrations.run_scheduled_syncs",
        "schedule": float(settings.SCHEDULED_SYNC_SWEEP_INTERVAL_SECONDS),
        "options": {"expires": settings.SCHEDULED_SYNC_SWEEP_INTERVAL_SECONDS},
    },
    "integrations-validate-pending-connections": {
        "task": "integrations.validate_pending_connections",
        "schedule": float(settings.PENDING_VALIDATION_SWEEP_INTERVAL_SECONDS),
        "options": {"expires": settings.PENDING_VALIDATION_SWEEP_INTERVAL_SECONDS},
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Replace Celery's logging setup with the JSON configuration."""
    configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
