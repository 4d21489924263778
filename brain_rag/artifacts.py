from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from .job_queue import JOB_TYPE_INGEST_ARTIFACT, Job, JobQueue, coerce_uuid
from .logging_utils import get_logger
from .schemas import ArtifactCreateRequest, JobPayload
from .tables import artifacts

STATUS_PROCESSING = "processing"
STATUS_INDEXED = "indexed"
STATUS_FAILED = "failed"

# Keys owned by the failure path; cleared whenever an artifact is indexed.
FAILURE_METADATA_KEYS = ("error", "failed_at")
STORAGE_PATH_KEY = "storage_path"

logger = get_logger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Artifact:
    id: UUID
    name: str
    type: str
    status: str
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    url: Optional[str] = None
    content: Optional[str] = None
    embedding: Optional[List[float]] = None
    content_hash: Optional[str] = None
    indexed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Artifact":
        return cls(
            id=coerce_uuid(row["id"]),
            name=row["name"],
            type=row["type"],
            status=row["status"],
            metadata=dict(row["metadata"] or {}),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
            description=row["description"],
            url=row["url"],
            content=row["content"],
            embedding=row["embedding"],
            content_hash=row["content_hash"],
            indexed_at=_as_utc(row["indexed_at"]),
        )

    @property
    def storage_path(self) -> Optional[str]:
        value = self.metadata.get(STORAGE_PATH_KEY)
        return str(value) if value else None

    def to_dict(self, *, include_embedding: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "url": self.url,
            "content": self.content,
            "status": self.status,
            "metadata": self.metadata,
            "content_hash": self.content_hash,
            "embedding_dim": len(self.embedding) if self.embedding else None,
            "indexed_at": self.indexed_at.isoformat() if self.indexed_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


def build_job_payload(artifact: Artifact, storage_path: Optional[str] = None) -> JobPayload:
    return JobPayload(
        artifact_id=str(artifact.id),
        type=artifact.type,
        name=artifact.name,
        storage_path=storage_path or artifact.storage_path,
        url=artifact.url,
        content=artifact.content,
    )


class ArtifactRepository:
    def __init__(self, bind: Engine) -> None:
        self.bind = bind

    def _fetch(self, conn: Connection, artifact_id: UUID) -> Optional[Artifact]:
        row = (
            conn.execute(select(artifacts).where(artifacts.c.id == artifact_id))
            .mappings()
            .first()
        )
        return Artifact.from_row(row) if row is not None else None

    def create(
        self,
        request: ArtifactCreateRequest,
        *,
        conn: Connection,
        now: Optional[datetime] = None,
    ) -> Artifact:
        now = now or _now_utc()
        metadata = dict(request.metadata or {})
        if request.storage_path:
            metadata[STORAGE_PATH_KEY] = request.storage_path
        row = (
            conn.execute(
                insert(artifacts)
                .values(
                    {
                        "id": uuid4(),
                        "name": request.name.strip(),
                        "description": request.description,
                        "type": request.type,
                        "url": request.url,
                        "content": request.content,
                        "status": STATUS_PROCESSING,
                        "metadata": metadata,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                .returning(*artifacts.c)
            )
            .mappings()
            .one()
        )
        return Artifact.from_row(row)

    def get(self, artifact_id: Any) -> Artifact:
        try:
            artifact_uuid = coerce_uuid(artifact_id)
        except ValueError as exc:
            raise KeyError(f"artifact not found: {artifact_id}") from exc
        with self.bind.connect() as conn:
            artifact = self._fetch(conn, artifact_uuid)
        if artifact is None:
            raise KeyError(f"artifact not found: {artifact_id}")
        return artifact

    def list_artifacts(
        self,
        *,
        status: Optional[str] = None,
        artifact_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Artifact], int]:
        filters = []
        if status:
            filters.append(artifacts.c.status == status)
        if artifact_type:
            filters.append(artifacts.c.type == artifact_type)

        stmt = (
            select(artifacts)
            .where(*filters)
            .order_by(artifacts.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        count_stmt = select(func.count()).select_from(artifacts).where(*filters)
        with self.bind.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
            total = int(conn.execute(count_stmt).scalar_one())
        return [Artifact.from_row(row) for row in rows], total

    def mark_indexed(
        self,
        artifact_id: Any,
        *,
        embedding: List[float],
        content_hash: str,
        metadata: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Artifact:
        """Store the embedding and ingestion bookkeeping, flipping to ``indexed``.

        A re-run of the same job overwrites the previous result. A ``failed``
        artifact is left alone; only re-ingestion moves it back to processing.
        """
        now = now or _now_utc()
        artifact_uuid = coerce_uuid(artifact_id)
        with self.bind.begin() as conn:
            current = self._fetch(conn, artifact_uuid)
            if current is None:
                raise KeyError(f"artifact not found: {artifact_id}")
            if current.status == STATUS_FAILED:
                logger.warning(
                    "artifact.index_skipped artifact_id=%s status=%s",
                    artifact_uuid,
                    current.status,
                )
                return current
            merged = dict(current.metadata)
            for key in FAILURE_METADATA_KEYS:
                merged.pop(key, None)
            merged.update(metadata)
            row = (
                conn.execute(
                    update(artifacts)
                    .where(artifacts.c.id == artifact_uuid, artifacts.c.status != STATUS_FAILED)
                    .values(
                        {
                            "status": STATUS_INDEXED,
                            "embedding": list(embedding),
                            "content_hash": content_hash,
                            "metadata": merged,
                            "indexed_at": now,
                            "updated_at": now,
                        }
                    )
                    .returning(*artifacts.c)
                )
                .mappings()
                .first()
            )
            if row is None:
                return self._fetch(conn, artifact_uuid)
        logger.info(
            "artifact.indexed artifact_id=%s content_hash=%s dim=%s",
            artifact_uuid,
            content_hash[:12],
            len(embedding),
        )
        return Artifact.from_row(row)

    def reset_for_reingest(
        self,
        artifact_id: UUID,
        *,
        conn: Connection,
        now: Optional[datetime] = None,
    ) -> Artifact:
        now = now or _now_utc()
        current = self._fetch(conn, artifact_id)
        if current is None:
            raise KeyError(f"artifact not found: {artifact_id}")
        merged = dict(current.metadata)
        for key in FAILURE_METADATA_KEYS:
            merged.pop(key, None)
        row = (
            conn.execute(
                update(artifacts)
                .where(artifacts.c.id == artifact_id)
                .values(
                    {"status": STATUS_PROCESSING, "metadata": merged, "updated_at": now}
                )
                .returning(*artifacts.c)
            )
            .mappings()
            .one()
        )
        return Artifact.from_row(row)


def submit_artifact(
    repo: ArtifactRepository,
    queue: JobQueue,
    request: ArtifactCreateRequest,
    *,
    now: Optional[datetime] = None,
) -> Tuple[Artifact, Job]:
    """Insert the artifact and its ingestion job in one transaction."""
    with repo.bind.begin() as conn:
        artifact = repo.create(request, conn=conn, now=now)
        payload = build_job_payload(artifact, request.storage_path)
        job = queue.enqueue(
            JOB_TYPE_INGEST_ARTIFACT,
            payload.to_json(),
            priority=request.priority,
            now=now,
            conn=conn,
        )
    logger.info(
        "artifact.submitted artifact_id=%s type=%s job_id=%s",
        artifact.id,
        artifact.type,
        job.id,
    )
    return artifact, job


def reingest_artifact(
    repo: ArtifactRepository,
    queue: JobQueue,
    artifact_id: Any,
    *,
    priority: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[Artifact, Job]:
    try:
        artifact_uuid = coerce_uuid(artifact_id)
    except ValueError as exc:
        raise KeyError(f"artifact not found: {artifact_id}") from exc
    with repo.bind.begin() as conn:
        artifact = repo.reset_for_reingest(artifact_uuid, conn=conn, now=now)
        job = queue.enqueue(
            JOB_TYPE_INGEST_ARTIFACT,
            build_job_payload(artifact).to_json(),
            priority=priority,
            now=now,
            conn=conn,
        )
    logger.info(
        "artifact.reingest_queued artifact_id=%s job_id=%s", artifact.id, job.id
    )
    return artifact, job
