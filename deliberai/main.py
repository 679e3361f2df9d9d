from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from deliberai.core.logging_config import get_logger
from deliberai.core.config import settings
from deliberai.core.circuit_breaker import set_notification_callback
from deliberai.core.errors import ConfigurationError, capture_message, init_sentry
from deliberai.api import breakers, embeddings, issues, relationships
from deliberai.api.responses import describe_validation_errors, error_response
from deliberai.db import create_db_and_tables
from deliberai.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


def _on_breaker_change(name: str, old_state: str, new_state: str) -> None:
    level = "warning" if new_state == "open" else "info"
    capture_message(
        f"Circuit breaker {name}: {old_state} -> {new_state}",
        level=level,
        context={"operation": name, "old_state": old_state, "new_state": new_state},
        tags={"circuit_breaker": name},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Deliberai API starting", environment=settings.ENVIRONMENT)
    init_sentry(
        settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )
    create_db_and_tables()
    set_notification_callback(_on_breaker_change)
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; inference endpoints will answer 500")

    try:
        yield
    finally:
        set_notification_callback(None)


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))

# Permissive CORS; preflight is answered here before routing
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=86400,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(describe_validation_errors(list(exc.errors())), operation=request.url.path)


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(request: Request, exc: ConfigurationError):
    return error_response(
        str(exc),
        exc=exc,
        operation=request.url.path,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


app.include_router(relationships.router, prefix=f"{settings.API_V1_STR}/relationships", tags=["relationships"])
app.include_router(issues.router, prefix=f"{settings.API_V1_STR}/issues", tags=["issues"])
app.include_router(embeddings.router, prefix=f"{settings.API_V1_STR}/embeddings", tags=["embeddings"])
app.include_router(breakers.router, prefix=f"{settings.API_V1_STR}/breakers", tags=["breakers"])


@app.get("/health")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}
