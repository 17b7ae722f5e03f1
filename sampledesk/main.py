"""
SampleDesk Backend API

FastAPI application entry point for training-data ingestion and semantic
sample search.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from sampledesk.config import get_settings
from sampledesk.db.session import init_db

settings = get_settings()


# =============================================================================
# Structlog Configuration
# =============================================================================
def configure_logging() -> None:
    """
    Configure structlog for JSON logging with ISO timestamps.

    Every log line is a JSON object with timestamp, level, event and the
    bound context (dataset_id, sample_id, ...). Vectors are never logged.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.LOG_LEVEL.upper())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# Sentry Configuration
# =============================================================================
def configure_sentry() -> None:
    """Initialize Sentry error tracking if SENTRY_DSN is configured."""
    if settings.SENTRY_DSN:
        try:
            import sentry_sdk
            from sentry_sdk.integrations.fastapi import FastApiIntegration
            from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

            sentry_sdk.init(
                dsn=settings.SENTRY_DSN,
                integrations=[
                    FastApiIntegration(transaction_style="endpoint"),
                    SqlalchemyIntegration(),
                ],
                traces_sample_rate=0.1,
                environment="development" if settings.DEBUG else "production",
            )

            logger = structlog.get_logger()
            logger.info("sentry_initialized", dsn_prefix=settings.SENTRY_DSN[:20] + "...")
        except Exception as e:
            logger = structlog.get_logger()
            logger.warning("sentry_init_failed", error=str(e))


# =============================================================================
# Application Lifespan
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    configure_sentry()
    init_db()

    logger = structlog.get_logger()
    logger.info(
        "application_startup",
        app_name="SampleDesk API",
        debug=settings.DEBUG,
        embedding_model=settings.EMBEDDING_MODEL,
    )

    yield

    logger.info("application_shutdown")


# =============================================================================
# FastAPI Application
# =============================================================================
app = FastAPI(
    title="SampleDesk API",
    description="Training-data ingestion, embeddings and semantic sample search",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)


@app.get("/health", tags=["Health"])
async def health_check() -> JSONResponse:
    """Liveness check for load balancers and monitoring."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# =============================================================================
# API Routers
# =============================================================================
from sampledesk.api.v1.datasets import router as datasets_router  # noqa: E402
from sampledesk.api.v1.samples import router as samples_router  # noqa: E402

app.include_router(datasets_router, prefix="/api/v1")
app.include_router(samples_router, prefix="/api/v1")
