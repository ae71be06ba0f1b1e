"""Health check endpoints."""

from datetime import datetime

from fastapi import APIRouter, status
from pydantic import BaseModel

from app.config import settings
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection
from app.dependencies import ClinicClock, DatabaseSession
from app.services.delivery_service import DeliveryDispatcher

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str
    clinic_timezone: str
    clinic_time: datetime


class DetailedHealthResponse(HealthResponse):
    """Detailed health check response model."""

    database: str
    redis: str
    # Deliveries waiting for the worker; None when the database is down
    due_deliveries: int | None = None


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Basic health check",
)
async def health_check(clock: ClinicClock) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns:
        Basic health status and the clinic's current wall-clock time
    """
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
        clinic_timezone=settings.clinic_timezone,
        clinic_time=clock(),
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Detailed health check",
)
async def detailed_health_check(db: DatabaseSession, clock: ClinicClock) -> DetailedHealthResponse:
    """
    Detailed health check with database, Redis and dispatch backlog.

    A growing ``due_deliveries`` count means the reminder worker is not
    keeping up or not running.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()

    due = None
    if db_healthy:
        due = await DeliveryDispatcher(db, adapters={}, clock=clock).count_due()

    return DetailedHealthResponse(
        status="healthy" if db_healthy and redis_healthy else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        clinic_timezone=settings.clinic_timezone,
        clinic_time=clock(),
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        due_deliveries=due,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """Simple ping endpoint."""
    return {"message": "pong"}
