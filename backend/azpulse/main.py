"""FastAPI Application Entry Point."""

import hashlib
import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from azpulse.core.config import settings
from azpulse.core.errors import (
    AuthError,
    AuthorizationError,
    AzPulseError,
    InvalidTransitionError,
    NotFoundError,
    RemoteError,
    SyncAlreadyRunningError,
    SyncEnqueueError,
    TenantDisabledError,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking
# Must be done before creating the FastAPI app
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.redis import RedisIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(),
        ],
        send_default_pii=False,
        release=f"azpulse-backend@{os.getenv('GIT_COMMIT', 'dev')}",
        attach_stacktrace=True,
        max_breadcrumbs=50,
    )
    logger.info(f"Sentry initialized (environment: {settings.SENTRY_ENVIRONMENT})")
else:
    logger.info("Sentry DSN not set - error tracking disabled")

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="AzPulse - Azure inventory, cost and performance sync with derived analytics",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-Requested-With",
    ],
    max_age=settings.CORS_MAX_AGE,
)


# Most specific first; the first matching class wins
ERROR_STATUS: tuple[tuple[type[AzPulseError], int], ...] = (
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SyncAlreadyRunningError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (TenantDisabledError, status.HTTP_409_CONFLICT),
    (SyncEnqueueError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AuthError, status.HTTP_400_BAD_REQUEST),
    (RemoteError, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: AzPulseError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(AzPulseError)
async def azpulse_error_handler(request: Request, exc: AzPulseError) -> JSONResponse:
    """Translate domain errors into HTTP responses."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# Encryption Key Validation
def validate_encryption_key() -> None:
    """
    Validate ENCRYPTION_KEY at startup.

    If the key changes, every stored tenant secret becomes unrecoverable,
    so the key hash is logged for the audit trail and placeholders are
    rejected.

    Raises:
        SystemExit: If ENCRYPTION_KEY is missing or a placeholder
    """
    logger.info("Validating ENCRYPTION_KEY...")

    if not settings.ENCRYPTION_KEY:
        logger.error("ENCRYPTION_KEY not set in environment")
        raise SystemExit(1)

    placeholder_keywords = ["your-", "change-", "example", "placeholder"]
    if any(keyword in settings.ENCRYPTION_KEY.lower() for keyword in placeholder_keywords):
        logger.error("ENCRYPTION_KEY appears to be a placeholder")
        logger.error("Generate a Fernet key with cryptography.fernet.Fernet.generate_key()")
        raise SystemExit(1)

    key_hash = hashlib.sha256(settings.ENCRYPTION_KEY.encode()).hexdigest()
    logger.info(f"ENCRYPTION_KEY validated (hash prefix: {key_hash[:16]})")


@app.on_event("startup")
async def startup_event() -> None:
    """Run validation checks on application startup."""
    validate_encryption_key()


@app.get("/api/v1/health", tags=["health"])
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": settings.APP_NAME,
            "environment": settings.APP_ENV,
        },
    )


# Include API v1 routers
from azpulse.api.v1 import api_router  # noqa: E402

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "azpulse.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
