from __future__ import annotations

from typing import Callable, Optional
from uuid import UUID

from fastapi import BackgroundTasks
from redis import Redis
from rq import Queue

from .config import Settings, settings
from .logging_utils import get_logger

TRIGGER_TASK = "brain_rag.ingest.process_triggered_job"

STATE_ENQUEUED = "enqueued"
STATE_SCHEDULED = "scheduled"
STATE_SKIPPED = "skipped"
STATE_FAILED = "failed"

logger = get_logger(__name__)


def resolve_trigger_mode(config: Settings) -> str:
    if config.ingest_trigger:
        return config.ingest_trigger
    # Mock services keep their vector index in process memory, which an rq
    # worker process would not share with the API.
    return "background" if config.development_mode else "rq"


def _redis() -> Redis:
    return Redis.from_url(settings.redis_url)


def enqueue_immediate(job_id: UUID) -> str:
    queue = Queue(settings.ingest_queue_name, connection=_redis())
    # Retries belong to the job table; rq only delivers the nudge.
    rq_job = queue.enqueue(TRIGGER_TASK, str(job_id), job_id=f"trigger-{job_id}")
    logger.info(
        "trigger.enqueued job_id=%s queue=%s rq_job_id=%s",
        job_id,
        settings.ingest_queue_name,
        rq_job.id,
    )
    return rq_job.id


def fire_immediate_trigger(
    job_id: UUID,
    *,
    mode: str,
    background_tasks: Optional[BackgroundTasks] = None,
    run_inline: Optional[Callable[[str], object]] = None,
) -> str:
    """Ask a worker to pick up ``job_id`` now. Never raises.

    The periodic poller processes the job anyway, so a failed trigger only
    delays ingestion.
    """
    if mode == "none":
        return STATE_SKIPPED
    if mode == "background":
        if background_tasks is None or run_inline is None:
            logger.warning("trigger.background_unavailable job_id=%s", job_id)
            return STATE_SKIPPED
        background_tasks.add_task(run_inline, str(job_id))
        return STATE_SCHEDULED
    try:
        enqueue_immediate(job_id)
    except Exception as exc:
        logger.warning("trigger.failed job_id=%s mode=%s error=%s", job_id, mode, exc)
        return STATE_FAILED
    return STATE_ENQUEUED
