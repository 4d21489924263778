from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine

from .artifacts import Artifact, ArtifactRepository
from .config import settings
from .db import engine
from .embeddings import EmbeddingResult
from .extractors import ExtractionError, extract_text
from .job_queue import JOB_TYPE_INGEST_ARTIFACT, Job, JobQueue
from .logging_utils import configure_logging, correlation_scope, get_logger
from .schemas import JobPayload
from .services import PipelineServices, get_default_services
from .vector_index import MODEL_PAYLOAD_KEY, VectorPoint

PAYLOAD_TEXT_CHARS = 1000
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_IDLE = "idle"

logger = get_logger(__name__)


class UnknownJobTypeError(ValueError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IngestionSummary:
    artifact_id: str
    content_length: int
    content_hash: str
    embedding_model: str
    embedding_dim: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "content_length": self.content_length,
            "content_hash": self.content_hash,
            "embedding_model": self.embedding_model,
            "embedding_dim": self.embedding_dim,
        }


@dataclass(frozen=True)
class WorkerOutcome:
    status: str
    job: Optional[Job] = None
    error: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.status == OUTCOME_IDLE:
            return "No jobs available"
        if self.status == OUTCOME_COMPLETED:
            return "Job processed successfully"
        return self.error or "Job processing failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "job_id": str(self.job.id) if self.job else None,
            "job_type": self.job.job_type if self.job else None,
            "error": self.error,
            "result": self.result,
        }


def build_point_payload(
    artifact: Artifact, text: str, embedding: EmbeddingResult
) -> Dict[str, Any]:
    return {
        "artifact_id": str(artifact.id),
        "name": artifact.name,
        "type": artifact.type,
        "text": text[:PAYLOAD_TEXT_CHARS],
        "url": artifact.url,
        "created_at": artifact.created_at.isoformat(),
        "metadata": artifact.metadata,
        MODEL_PAYLOAD_KEY: embedding.model,
    }


class IngestionPipeline:
    """Turns one artifact into one embedding stored in the vector index.

    Every step can be repeated: the point id is the artifact id and the
    artifact update overwrites, so a retried job converges on one result.
    """

    def __init__(self, repository: ArtifactRepository, services: PipelineServices) -> None:
        self.repository = repository
        self.services = services

    def extract(self, artifact: Artifact, payload: JobPayload) -> str:
        if artifact.type == "file":
            storage_path = payload.storage_path or artifact.storage_path
            if not storage_path:
                raise ExtractionError("Storage path is required for file artifacts")
            data = self.services.storage.download(storage_path)
            return extract_text(data, storage_path)
        if artifact.type == "note":
            return payload.content or artifact.content or ""
        if artifact.type == "link":
            url = payload.url or artifact.url
            if not url:
                raise ExtractionError("URL is required for link artifacts")
            return f"Link: {url}"
        raise ExtractionError(f"Unsupported artifact type: {artifact.type}")

    def process(self, job: Job, now: Optional[datetime] = None) -> IngestionSummary:
        now = now or _now_utc()
        payload = JobPayload.model_validate(job.payload)
        artifact = self.repository.get(payload.artifact_id)
        logger.info(
            "ingest.artifact_start artifact_id=%s type=%s name=%s",
            artifact.id,
            artifact.type,
            artifact.name,
        )

        text = self.extract(artifact, payload)
        if not text.strip():
            raise ExtractionError("No text content extracted from artifact")

        embedding = self.services.embedder.embed(text)
        self.services.vector_index.upsert(
            VectorPoint(
                id=str(artifact.id),
                vector=embedding.vector,
                payload=build_point_payload(artifact, text, embedding),
            )
        )

        digest = content_hash(text)
        self.repository.mark_indexed(
            artifact.id,
            embedding=embedding.vector,
            content_hash=digest,
            metadata={
                "content_length": len(text),
                "processed_at": now.isoformat(),
                "content_hash": digest,
                "embedding_model": embedding.model,
                "embedding_dim": embedding.dim,
            },
            now=now,
        )
        return IngestionSummary(
            artifact_id=str(artifact.id),
            content_length=len(text),
            content_hash=digest,
            embedding_model=embedding.model,
            embedding_dim=embedding.dim,
        )


def _claim_triggered(queue: JobQueue, job_id: str, now: datetime) -> Optional[Job]:
    candidate = queue.get_specific_job(job_id)
    if candidate is None:
        return None
    return queue.claim(candidate.id, candidate.status, now)


def run_worker_once(
    queue: JobQueue,
    pipeline: IngestionPipeline,
    *,
    trigger_job_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> WorkerOutcome:
    now = now or _now_utc()
    job = None
    if trigger_job_id:
        job = _claim_triggered(queue, trigger_job_id, now)
        if job is None:
            logger.info(
                "ingest_worker.trigger_unavailable job_id=%s falling_back=queue",
                trigger_job_id,
            )
    if job is None:
        job = queue.try_dequeue(now)
    if job is None:
        logger.info("ingest_worker.idle")
        return WorkerOutcome(status=OUTCOME_IDLE)

    with correlation_scope(f"job-{str(job.id)[:8]}"):
        logger.info(
            "ingest_job.start job_id=%s job_type=%s attempt=%s max_retries=%s",
            job.id,
            job.job_type,
            job.retry_count + 1,
            job.max_retries,
        )
        try:
            if job.job_type != JOB_TYPE_INGEST_ARTIFACT:
                raise UnknownJobTypeError(f"Unknown job type: {job.job_type}")
            summary = pipeline.process(job, now=now)
        except Exception as exc:
            queue.record_failure(job, exc, now=now)
            logger.exception("ingest_job.error job_id=%s error=%s", job.id, exc)
            return WorkerOutcome(status=OUTCOME_FAILED, job=job, error=str(exc))

        result = {"artifact": summary.to_dict(), "completed_at": now.isoformat()}
        queue.complete(job.id, result, now=now)
        logger.info(
            "ingest_job.complete job_id=%s artifact_id=%s content_length=%s model=%s",
            job.id,
            summary.artifact_id,
            summary.content_length,
            summary.embedding_model,
        )
        return WorkerOutcome(status=OUTCOME_COMPLETED, job=job, result=result)


def drain_queue(
    queue: JobQueue,
    pipeline: IngestionPipeline,
    *,
    max_jobs: int,
) -> List[WorkerOutcome]:
    outcomes: List[WorkerOutcome] = []
    for _ in range(max(0, max_jobs)):
        outcome = run_worker_once(queue, pipeline)
        if outcome.status == OUTCOME_IDLE:
            break
        outcomes.append(outcome)
    return outcomes


def build_worker(
    bind: Optional[Engine] = None,
    services: Optional[PipelineServices] = None,
) -> Tuple[JobQueue, IngestionPipeline]:
    bind = bind or engine
    services = services or get_default_services()
    return JobQueue(bind), IngestionPipeline(ArtifactRepository(bind), services)


def process_triggered_job(job_id: str) -> Dict[str, Any]:
    """Entry point for rq: process ``job_id`` now, or the next queued job."""
    configure_logging(settings.log_level)
    queue, pipeline = build_worker()
    return run_worker_once(queue, pipeline, trigger_job_id=job_id).to_dict()
