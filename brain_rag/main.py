from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.engine import Engine

from .artifacts import ArtifactRepository, reingest_artifact, submit_artifact
from .config import Settings, settings
from .db import engine, fetch_db_info, missing_tables
from .ingest import OUTCOME_COMPLETED, OUTCOME_IDLE, IngestionPipeline, run_worker_once
from .job_queue import JOB_STATUSES, JobQueue
from .logging_utils import configure_logging, correlation_scope, get_logger
from .query import QueryService, QueryValidationError
from .schemas import ArtifactCreateRequest, WorkerTriggerRequest
from .services import MODE_MOCK, PipelineServices, build_services
from .triggers import fire_immediate_trigger, resolve_trigger_mode

ARTIFACT_STATUSES = {"processing", "indexed", "failed"}
ARTIFACT_TYPES = {"document", "link", "file", "note"}
REQUEST_ID_HEADER = "X-Request-ID"

logger = get_logger(__name__)


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(
    bind: Optional[Engine] = None,
    services: Optional[PipelineServices] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    config = config or settings
    bind = bind or engine
    trigger_mode = resolve_trigger_mode(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config.log_level)
        if not config.skip_schema_check:
            missing = missing_tables(bind)
            if missing:
                raise RuntimeError(
                    f"database is missing tables {missing}; run `alembic upgrade head`"
                )
        if trigger_mode == "rq" and app.state.services.mode == MODE_MOCK:
            logger.warning(
                "startup.trigger_mismatch trigger=rq services=%s "
                "detail=rq workers build their own in-memory vector index",
                app.state.services.mode,
            )
        yield

    app = FastAPI(title="Brain RAG API", lifespan=lifespan)
    app.state.config = config
    app.state.services = services or build_services(config)
    app.state.queue = JobQueue(
        bind,
        lease_seconds=config.job_lease_seconds,
        retry_base_minutes=config.job_retry_base_minutes,
        default_priority=config.job_default_priority,
        default_max_retries=config.job_max_retries,
    )
    app.state.artifacts = ArtifactRepository(bind)
    app.state.pipeline = IngestionPipeline(app.state.artifacts, app.state.services)
    app.state.query_service = QueryService(app.state.services)

    def run_triggered(job_id: str) -> None:
        outcome = run_worker_once(app.state.queue, app.state.pipeline, trigger_job_id=job_id)
        logger.info(
            "trigger.background_done job_id=%s outcome=%s", job_id, outcome.status
        )

    def trigger(job_id: UUID, background_tasks: BackgroundTasks) -> str:
        return fire_immediate_trigger(
            job_id,
            mode=trigger_mode,
            background_tasks=background_tasks,
            run_inline=run_triggered,
        )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex[:12]
        with correlation_scope(request_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.get("/health")
    def health() -> dict:
        try:
            info = fetch_db_info(bind)
        except Exception as exc:  # pragma: no cover - safety
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": "ok", "mode": app.state.services.mode, "db": info}

    @app.post("/artifacts", status_code=202)
    def create_artifact_endpoint(
        payload: ArtifactCreateRequest, background_tasks: BackgroundTasks
    ) -> dict:
        artifact, job = submit_artifact(app.state.artifacts, app.state.queue, payload)
        trigger_state = trigger(job.id, background_tasks)
        return {
            "message": "Artifact queued for processing",
            "artifact": artifact.to_dict(),
            "job": job.to_dict(),
            "status": "processing",
            "trigger": trigger_state,
        }

    @app.get("/artifacts")
    def list_artifacts_endpoint(
        status: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
    ) -> dict:
        if status is not None and status not in ARTIFACT_STATUSES:
            raise HTTPException(status_code=400, detail="invalid artifact status filter")
        if type is not None and type not in ARTIFACT_TYPES:
            raise HTTPException(status_code=400, detail="invalid artifact type filter")
        items, count = app.state.artifacts.list_artifacts(
            status=status,
            artifact_type=type,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return {
            "data": [item.to_dict() for item in items],
            "count": count,
            "page": page,
            "limit": limit,
        }

    @app.get("/artifacts/{artifact_id}")
    def get_artifact_endpoint(artifact_id: UUID) -> dict:
        try:
            return app.state.artifacts.get(artifact_id).to_dict()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/artifacts/{artifact_id}/reingest", status_code=202)
    def reingest_artifact_endpoint(
        artifact_id: UUID, background_tasks: BackgroundTasks
    ) -> dict:
        try:
            artifact, job = reingest_artifact(
                app.state.artifacts, app.state.queue, artifact_id
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        trigger_state = trigger(job.id, background_tasks)
        return {
            "message": "Artifact queued for re-ingestion",
            "artifact": artifact.to_dict(),
            "job": job.to_dict(),
            "status": "processing",
            "trigger": trigger_state,
        }

    @app.get("/jobs")
    def list_jobs_endpoint(
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=200),
    ) -> dict:
        if status is not None and status not in JOB_STATUSES:
            raise HTTPException(status_code=400, detail="invalid job status filter")
        jobs = app.state.queue.list_jobs(status=status, limit=limit)
        return {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}

    @app.get("/jobs/{job_id}")
    def get_job_endpoint(job_id: UUID) -> dict:
        try:
            return app.state.queue.get_job(job_id).to_dict()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/ingestion-worker")
    async def ingestion_worker_endpoint(request: Request) -> JSONResponse:
        body = await _json_body(request)
        try:
            trigger_request = WorkerTriggerRequest.model_validate(
                body if isinstance(body, dict) else {}
            )
        except ValidationError as exc:
            return JSONResponse(status_code=400, content={"error": str(exc)})

        try:
            outcome = await run_in_threadpool(
                run_worker_once,
                app.state.queue,
                app.state.pipeline,
                trigger_job_id=trigger_request.immediate_job_id,
            )
        except Exception as exc:
            logger.exception("ingestion_worker.crashed error=%s", exc)
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

        if outcome.status == OUTCOME_IDLE:
            return JSONResponse(status_code=200, content={"message": outcome.message})
        content: Dict[str, Any] = {
            "jobId": str(outcome.job.id),
            "jobType": outcome.job.job_type,
        }
        if outcome.status == OUTCOME_COMPLETED:
            content["message"] = outcome.message
            return JSONResponse(status_code=200, content=content)
        content.update({"error": "Job processing failed", "message": outcome.error})
        return JSONResponse(status_code=500, content=content)

    @app.post("/query")
    async def query_endpoint(request: Request) -> JSONResponse:
        body = await _json_body(request)
        question = body.get("question") if isinstance(body, dict) else None
        try:
            result = await run_in_threadpool(app.state.query_service.answer, question)
        except QueryValidationError as exc:
            return JSONResponse(status_code=400, content={"error": str(exc)})
        except Exception as exc:
            logger.exception("query.failed error=%s", exc)
            content = {"error": "Query processing failed"}
            if config.development_mode:
                content["details"] = str(exc)
            return JSONResponse(status_code=500, content=content)
        return JSONResponse(status_code=200, content=result.to_dict())

    return app


app = create_app()
