"""Celery tasks that process export jobs."""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar
from uuid import UUID

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practicegate.core.database import get_session_context
from practicegate.core.exceptions import ConflictError, ExportNotFoundError
from practicegate.core.logging import bind_contextvars, clear_contextvars
from practicegate.exports.models import ExportJob, ExportType
from practicegate.exports.pipeline import ExportPipeline
from practicegate.services import build_export_pipeline, get_locks
from practicegate.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PROCESS_TASK_NAME = "practicegate.exports.process_export_job"
REASON_NO_GENERATOR = "no_generator"
REDISPATCH_AFTER = timedelta(minutes=10)


@dataclass(frozen=True)
class ExportArtifact:
    """Where a generated export was written."""

    location: str
    size: int | None = None


ExportGenerator = Callable[[ExportJob], Awaitable[ExportArtifact]]

_generators: dict[ExportType, ExportGenerator] = {}


def register_generator(
    export_type: ExportType,
) -> Callable[[ExportGenerator], ExportGenerator]:
    """Register the coroutine that produces artifacts for ``export_type``.

    Usage:
        @register_generator(ExportType.CLIENT_DATA)
        async def write_client_data(job: ExportJob) -> ExportArtifact:
            ...
    """

    def decorator(func: ExportGenerator) -> ExportGenerator:
        _generators[export_type] = func
        return func

    return decorator


def get_generator(export_type: ExportType) -> ExportGenerator | None:
    return _generators.get(export_type)


def unregister_generator(export_type: ExportType) -> None:
    _generators.pop(export_type, None)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async function in sync context for Celery."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def dispatch_export_job(job: ExportJob) -> None:
    """Enqueue processing of a committed job."""
    celery_app.send_task(PROCESS_TASK_NAME, args=[str(job.id)])


@shared_task(bind=True, name=PROCESS_TASK_NAME)  # type: ignore[untyped-decorator]
def process_export_job(self: Any, job_id: str) -> dict[str, Any]:
    """Claim and process one export job."""
    worker_id = f"{self.request.hostname or 'worker'}:{self.request.id}"
    return run_async(process_export_job_async(UUID(job_id), worker_id))


async def process_export_job_async(
    job_id: UUID,
    worker_id: str,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Claim, check, generate and settle an export job.

    A job that another worker already claimed is left alone. Generator
    errors fail the job with the error as reason.
    """
    bind_contextvars(export_id=str(job_id), worker_id=worker_id)
    try:
        async with get_session_context(session_factory) as session:
            pipeline = build_export_pipeline(session, await get_locks())
            return await _process(pipeline, job_id, worker_id)
    finally:
        clear_contextvars()


async def _process(pipeline: ExportPipeline, job_id: UUID, worker_id: str) -> dict[str, Any]:
    try:
        job = await pipeline.claim(job_id, worker_id)
    except ExportNotFoundError:
        logger.warning("export_job_missing")
        return {"export_id": str(job_id), "status": "missing"}
    except ConflictError as e:
        logger.info("export_job_already_claimed", current_state=e.details.get("current_state"))
        return {"export_id": str(job_id), "status": e.details.get("current_state")}

    if await pipeline.cancel_if_subscription_invalid(job_id):
        return {"export_id": str(job_id), "status": "failed"}

    generator = get_generator(job.export_type)
    if generator is None:
        logger.error("export_generator_missing", export_type=job.export_type.value)
        job = await pipeline.fail(job_id, REASON_NO_GENERATOR, worker_id=worker_id)
        return {"export_id": str(job_id), "status": job.status.value}

    try:
        artifact = await generator(job)
    except Exception as e:
        logger.exception("export_generation_failed", export_type=job.export_type.value)
        job = await pipeline.fail(job_id, f"generation_error: {e}", worker_id=worker_id)
        return {"export_id": str(job_id), "status": job.status.value}

    if await pipeline.cancel_if_subscription_invalid(job_id):
        return {"export_id": str(job_id), "status": "failed"}

    job = await pipeline.complete(job_id, worker_id, artifact.location, artifact.size)
    return {"export_id": str(job_id), "status": job.status.value}


@shared_task(bind=True, name="practicegate.exports.redispatch_queued")  # type: ignore[untyped-decorator]
def redispatch_queued(_self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Re-enqueue jobs stuck in queued, e.g. after a broker outage."""
    return run_async(redispatch_queued_async())


async def redispatch_queued_async(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    async with get_session_context(session_factory) as session:
        pipeline = build_export_pipeline(session, await get_locks())
        jobs = await pipeline.pending_jobs(REDISPATCH_AFTER)

    for job in jobs:
        dispatch_export_job(job)

    logger.info("export_jobs_redispatched", count=len(jobs))
    return {"redispatched": len(jobs)}
