"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import text

from api.middleware.rate_limiting import RateLimitMiddleware
from api.routes import conversations, messages, notification_preferences, realtime
from database.connection import get_async_session
from messaging.exceptions import MessagingError
from messaging.realtime.gateway import get_gateway
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.redis_client import close_redis_client, get_redis_client, with_timeout
from shared.startup_validator import StartupValidationError, validate_startup_config

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Salon Messaging API",
    version="1.0.0",
)

# Load settings for CORS configuration
settings = get_settings()
origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]

# Rate limiting added FIRST (executes LAST, closest to routes)
app.add_middleware(RateLimitMiddleware)

# CORS added LAST (executes FIRST, answers preflight OPTIONS before rate limiting)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(conversations.router)
app.include_router(messages.router)
app.include_router(notification_preferences.router)
app.include_router(realtime.router)


@app.on_event("startup")
async def startup() -> None:
    """
    Validate configuration, then start the realtime gateway's pub/sub listener.

    Raises:
        StartupValidationError: If critical configuration is invalid
    """
    logger.info("Running API startup configuration validation...")
    try:
        await validate_startup_config(require_email=False)
        logger.info("API startup configuration validation passed")
    except StartupValidationError as e:
        logger.critical(f"API startup blocked due to configuration errors: {e}")
        raise

    await get_gateway().start()


@app.on_event("shutdown")
async def shutdown() -> None:
    await get_gateway().stop()
    await close_redis_client()
    logger.info("API shutdown complete")


@app.exception_handler(MessagingError)
async def messaging_exception_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Render service failures with their HTTP status."""
    if exc.status_code >= 500:
        logger.error(
            f"Messaging request failed: {exc.message}",
            extra={"request_path": request.url.path},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.message},
    )


# Exception handlers for validation errors
@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 400 with validation error details."""
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": jsonable_errors(exc.errors())},
    )


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": jsonable_errors(exc.errors())},
    )


def jsonable_errors(errors) -> list[dict]:
    """Drop the `ctx`/`input` members pydantic fills with non-JSON values."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks:
    - Redis connectivity (PING command)
    - PostgreSQL connectivity (SELECT 1 query)

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    health_status = {
        "status": "healthy",
        "redis": "unknown",
        "postgres": "unknown",
        "realtime_connections": len(get_gateway().registry.all_connections()),
    }
    status_code = 200

    try:
        await with_timeout(get_redis_client().ping())
        health_status["redis"] = "connected"
    except Exception:
        health_status["redis"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    try:
        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))
            health_status["postgres"] = "connected"
    except Exception:
        health_status["postgres"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Salon messaging API - Use /health for health checks"}
