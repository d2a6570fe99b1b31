"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.routes import appointments, notifications
from booking.services.appointment_service import AppointmentNotFoundError
from booking.services.status_transitions import InvalidStatusTransitionError
from database.document_store import DocumentNotFoundError
from shared.circuit_breaker import get_breaker_status
from shared.config import get_settings
from shared.logging_config import configure_logging

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Salon Booking API",
    version="1.0.0",
)

# Load settings for CORS configuration
settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(appointments.router)
app.include_router(notifications.router)


# =========================================================================
# Exception handlers
# =========================================================================


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 400 with validation error details."""
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": exc.errors(include_url=False)},
    )


@app.exception_handler(AppointmentNotFoundError)
async def appointment_not_found_handler(
    request: Request, exc: AppointmentNotFoundError
) -> JSONResponse:
    logger.info(str(exc), extra={"request_path": request.url.path})
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(DocumentNotFoundError)
async def document_not_found_handler(request: Request, exc: DocumentNotFoundError) -> JSONResponse:
    logger.info(str(exc), extra={"request_path": request.url.path})
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(InvalidStatusTransitionError)
async def invalid_transition_handler(
    request: Request, exc: InvalidStatusTransitionError
) -> JSONResponse:
    logger.warning(str(exc), extra={"request_path": request.url.path})
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks (sql backend only):
    - Redis connectivity (PING command)
    - PostgreSQL connectivity (SELECT 1 query)

    Also reports the notification circuit breakers.

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    health_status = {
        "status": "healthy",
        "store": settings.STORE_BACKEND,
        "redis": "unknown",
        "postgres": "unknown",
        "circuit_breakers": get_breaker_status(),
    }
    status_code = 200

    if settings.STORE_BACKEND.lower() == "memory":
        health_status["redis"] = "not used"
        health_status["postgres"] = "not used"
        return JSONResponse(status_code=status_code, content=health_status)

    from sqlalchemy import text

    from database.connection import get_async_session
    from shared.redis_client import get_redis_client

    # Check Redis connectivity
    try:
        redis_client = get_redis_client()
        await redis_client.ping()
        health_status["redis"] = "connected"
    except Exception:
        health_status["redis"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    # Check PostgreSQL connectivity
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
    return {"message": "Salon Booking API - Use /health for health checks"}
