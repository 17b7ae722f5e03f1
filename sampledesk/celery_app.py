"""
SampleDesk Celery Application Configuration

Configures Celery for background dataset processing with Redis as broker.

Usage:
    # Start worker
    celery -A sampledesk.celery_app.celery worker --loglevel=info -Q ingestion,default

    # Start beat (stale-run sweep)
    celery -A sampledesk.celery_app.celery beat --loglevel=info
"""

import logging

import structlog
from celery import Celery

from sampledesk.config import get_settings

settings = get_settings()

celery = Celery(
    "sampledesk",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["sampledesk.ingestion.tasks"],
)

celery.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,

    result_expires=86400,

    # Long-running embedding jobs: fetch one at a time
    worker_prefetch_multiplier=1,

    task_routes={
        "sampledesk.ingestion.tasks.process_dataset_task": {"queue": "ingestion"},
        "sampledesk.ingestion.tasks.fail_stale_runs_task": {"queue": "default"},
    },
    task_default_queue="default",

    # Bounds on a single run (seconds)
    task_soft_time_limit=1500,
    task_time_limit=1800,

    beat_schedule={
        "fail-stale-processing-runs": {
            "task": "sampledesk.ingestion.tasks.fail_stale_runs_task",
            "schedule": 600.0,  # 10 minutes
        },
    },
)


def configure_celery_logging():
    """Configure Celery workers to log through structlog as JSON."""
    logging.getLogger("celery").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_celery_sentry() -> None:
    """Initialize Sentry for workers if SENTRY_DSN is configured."""
    if not settings.SENTRY_DSN:
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.celery import CeleryIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[CeleryIntegration()],
            traces_sample_rate=0.1,
            environment="development" if settings.DEBUG else "production",
        )
    except Exception as e:
        structlog.get_logger(__name__).warning("sentry_init_failed", error=str(e))


configure_celery_logging()
configure_celery_sentry()
