"""
arq worker for reminder delivery.

A cron job enqueues one dispatch job per due delivery every minute; each job
opens its own session, so jobs can run in parallel.

Run with: arq app.worker.WorkerSettings
"""

from typing import Any
from uuid import UUID

import httpx
import structlog
from arq import cron
from arq.connections import RedisSettings

from app.config import settings
from app.core.clock import clinic_now
from app.core.exceptions import NotFoundException
from app.core.firebase import initialize_firebase
from app.database import AsyncSessionLocal, engine
from app.middleware.logging import configure_logging
from app.services.channels import build_channel_adapters
from app.services.delivery_service import DeliveryDispatcher

logger = structlog.get_logger(__name__)


def get_redis_settings() -> RedisSettings:
    """Redis connection for the job queue, from the same settings as the cache."""
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        username=settings.redis_username or None,
        password=settings.redis_password or None,
        conn_timeout=15,
        conn_retry_delay=1,
    )


def delivery_job_id(delivery_id: UUID, retry_count: int) -> str:
    """Job id that collapses duplicate triggers for the same attempt."""
    return f"delivery:{delivery_id}:{retry_count}"


async def startup(ctx: dict[str, Any]) -> None:
    """Prepare shared resources for every job."""
    configure_logging(service="worker")
    try:
        initialize_firebase(
            settings.firebase_credentials_path or None,
            settings.firebase_config_json or None,
        )
    except Exception as e:
        logger.warning("firebase_initialization_failed", error=str(e))

    ctx.setdefault("session_factory", AsyncSessionLocal)
    ctx.setdefault("clock", clinic_now)
    ctx["http_client"] = httpx.AsyncClient()
    logger.info("worker_started", max_jobs=settings.worker_max_jobs)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Release shared resources."""
    client = ctx.get("http_client")
    if client is not None:
        await client.aclose()
    await engine.dispose()
    logger.info("worker_stopped")


async def enqueue_due_deliveries(ctx: dict[str, Any]) -> int:
    """
    Enqueue a dispatch job for every delivery whose next attempt is due.

    Args:
        ctx: arq context

    Returns:
        Number of jobs actually enqueued (duplicates collapse)
    """
    session_factory = ctx.get("session_factory", AsyncSessionLocal)
    clock = ctx.get("clock", clinic_now)

    async with session_factory() as db:
        dispatcher = DeliveryDispatcher(db, adapters={}, clock=clock)
        due = await dispatcher.find_due_ids(settings.dispatch_batch_size)

    enqueued = 0
    for delivery_id, retry_count in due:
        job = await ctx["redis"].enqueue_job(
            "dispatch_delivery",
            str(delivery_id),
            _job_id=delivery_job_id(delivery_id, retry_count),
        )
        if job is not None:
            enqueued += 1

    if due:
        logger.info("due_deliveries_enqueued", due=len(due), enqueued=enqueued)
    return enqueued


async def dispatch_delivery(ctx: dict[str, Any], delivery_id: str) -> str | None:
    """
    Attempt one delivery.

    Args:
        ctx: arq context
        delivery_id: Delivery to send

    Returns:
        The delivery's status after the attempt, or None if it no longer exists
    """
    session_factory = ctx.get("session_factory", AsyncSessionLocal)
    clock = ctx.get("clock", clinic_now)
    adapters = ctx.get("adapters") or build_channel_adapters(ctx.get("http_client"))

    with structlog.contextvars.bound_contextvars(
        delivery_id=delivery_id, job_id=ctx.get("job_id")
    ):
        async with session_factory() as db:
            dispatcher = DeliveryDispatcher(db, adapters, clock=clock)
            try:
                delivery = await dispatcher.dispatch(UUID(delivery_id))
            except NotFoundException:
                logger.warning("delivery_missing")
                return None

    return delivery.status.value


class WorkerSettings:
    """arq worker settings."""

    functions = [dispatch_delivery]
    cron_jobs = [
        # Every minute, at second 0
        cron(enqueue_due_deliveries, second=0, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()

    max_jobs = settings.worker_max_jobs
    job_timeout = settings.worker_job_timeout
    # Short result retention so a re-enqueued attempt is not blocked for long
    keep_result = 60
    # Dispatch records its own retries
    max_tries = 1
