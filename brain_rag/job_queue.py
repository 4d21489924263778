from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import UUID, uuid4

from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Connection, Engine

from .config import settings
from .logging_utils import get_logger
from .tables import artifacts, job_queue

JOB_STATUS = Literal["pending", "running", "completed", "failed", "retrying"]
STATUS_PENDING: JOB_STATUS = "pending"
STATUS_RUNNING: JOB_STATUS = "running"
STATUS_COMPLETED: JOB_STATUS = "completed"
STATUS_FAILED: JOB_STATUS = "failed"
STATUS_RETRYING: JOB_STATUS = "retrying"
JOB_STATUSES = (
    STATUS_PENDING,
    STATUS_RUNNING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RETRYING,
)
DEQUEUE_STATUSES = (STATUS_PENDING, STATUS_RETRYING)

JOB_TYPE_INGEST_ARTIFACT = "ingest_artifact"

logger = get_logger(__name__)

JobId = Union[UUID, str]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def coerce_uuid(value: JobId) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def compute_backoff(retry_count: int, base_minutes: Optional[int] = None) -> timedelta:
    """Delay before the next attempt once ``retry_count`` failures are recorded.

    The delay is ``base_minutes * 2 ** retry_count``: 10, 20, 40 ... minutes
    with the default base of 5.
    """
    base = settings.job_retry_base_minutes if base_minutes is None else base_minutes
    exponent = max(0, int(retry_count))
    return timedelta(minutes=max(1, int(base)) * (2**exponent))


@dataclass(frozen=True)
class Job:
    id: UUID
    job_type: str
    status: JOB_STATUS
    priority: int
    payload: Dict[str, Any]
    retry_count: int
    max_retries: int
    next_run_at: datetime
    created_at: datetime
    updated_at: datetime
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Job":
        return cls(
            id=coerce_uuid(row["id"]),
            job_type=row["job_type"],
            status=row["status"],
            priority=int(row["priority"]),
            payload=dict(row["payload"] or {}),
            retry_count=int(row["retry_count"]),
            max_retries=int(row["max_retries"]),
            next_run_at=_as_utc(row["next_run_at"]),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
            result=row["result"],
            error_message=row["error_message"],
            started_at=_as_utc(row["started_at"]),
            completed_at=_as_utc(row["completed_at"]),
        )

    @property
    def artifact_id(self) -> Optional[str]:
        value = self.payload.get("artifactId")
        return str(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "job_type": self.job_type,
            "status": self.status,
            "priority": self.priority,
            "payload": self.payload,
            "result": self.result,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_run_at": _isoformat(self.next_run_at),
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass
class JobQueue:
    """Durable ingestion queue on the ``job_queue`` table.

    Claims are single conditional ``UPDATE ... RETURNING`` statements so two
    workers racing for the same row cannot both win. A row stuck in
    ``running`` longer than ``lease_seconds`` is failed like any other attempt,
    so a job that keeps killing its worker still runs out of retries.
    """

    bind: Engine
    lease_seconds: int = field(default_factory=lambda: settings.job_lease_seconds)
    retry_base_minutes: int = field(
        default_factory=lambda: settings.job_retry_base_minutes
    )
    default_priority: int = field(default_factory=lambda: settings.job_default_priority)
    default_max_retries: int = field(default_factory=lambda: settings.job_max_retries)

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        *,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        run_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> Job:
        now = now or _now_utc()
        values = {
            "id": uuid4(),
            "job_type": job_type,
            "status": STATUS_PENDING,
            "priority": self.default_priority if priority is None else int(priority),
            "payload": dict(payload),
            "retry_count": 0,
            "max_retries": (
                self.default_max_retries if max_retries is None else int(max_retries)
            ),
            "next_run_at": run_at or now,
            "created_at": now,
            "updated_at": now,
        }
        stmt = insert(job_queue).values(**values).returning(*job_queue.c)
        if conn is not None:
            row = conn.execute(stmt).mappings().one()
        else:
            with self.bind.begin() as own_conn:
                row = own_conn.execute(stmt).mappings().one()
        job = Job.from_row(row)
        logger.info(
            "job_queue.enqueued job_id=%s job_type=%s priority=%s max_retries=%s",
            job.id,
            job.job_type,
            job.priority,
            job.max_retries,
        )
        return job

    def _eligible(self, table, now: datetime):
        return and_(table.c.status.in_(DEQUEUE_STATUSES), table.c.next_run_at <= now)

    def expire_leases(self, now: Optional[datetime] = None) -> List[Job]:
        """Record a failed attempt for every ``running`` job past its lease."""
        if self.lease_seconds <= 0:
            return []
        now = now or _now_utc()
        cutoff = now - timedelta(seconds=self.lease_seconds)
        stale = (
            job_queue.c.status == STATUS_RUNNING,
            job_queue.c.started_at.is_not(None),
            job_queue.c.started_at <= cutoff,
        )
        with self.bind.connect() as conn:
            rows = conn.execute(select(job_queue).where(*stale)).mappings().all()

        expired: List[Job] = []
        for row in rows:
            job = Job.from_row(row)
            message = f"lease expired after {self.lease_seconds}s"
            # Another worker may have reclaimed or finished the row since the select.
            updated = self._fail_attempt(job, message, now, *stale)
            if updated is not None:
                expired.append(updated)
        return expired

    def try_dequeue(self, now: Optional[datetime] = None) -> Optional[Job]:
        now = now or _now_utc()
        self.expire_leases(now)
        candidate_table = job_queue.alias("candidate")
        candidate = (
            select(candidate_table.c.id)
            .where(self._eligible(candidate_table, now))
            .order_by(candidate_table.c.priority.desc(), candidate_table.c.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        # Eligibility is re-checked on the outer row: on backends without
        # SKIP LOCKED a concurrent claim turns this into a zero-row update.
        stmt = (
            update(job_queue)
            .where(job_queue.c.id == candidate)
            .where(self._eligible(job_queue, now))
            .values(status=STATUS_RUNNING, started_at=now, updated_at=now)
            .returning(*job_queue.c)
        )
        with self.bind.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        job = Job.from_row(row)
        logger.info(
            "job_queue.dequeued job_id=%s job_type=%s priority=%s retry_count=%s",
            job.id,
            job.job_type,
            job.priority,
            job.retry_count,
        )
        return job

    def get_specific_job(self, job_id: JobId) -> Optional[Job]:
        try:
            job_uuid = coerce_uuid(job_id)
        except ValueError:
            logger.warning("job_queue.invalid_job_id job_id=%s", job_id)
            return None
        with self.bind.connect() as conn:
            row = (
                conn.execute(
                    select(job_queue).where(
                        job_queue.c.id == job_uuid,
                        job_queue.c.status.in_(DEQUEUE_STATUSES),
                    )
                )
                .mappings()
                .first()
            )
        if row is None:
            logger.info("job_queue.specific_unavailable job_id=%s", job_id)
            return None
        return Job.from_row(row)

    def claim(
        self,
        job_id: JobId,
        expected_status: JOB_STATUS,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        if expected_status not in DEQUEUE_STATUSES:
            raise ValueError(f"cannot claim a job in status {expected_status!r}")
        now = now or _now_utc()
        stmt = (
            update(job_queue)
            .where(
                job_queue.c.id == coerce_uuid(job_id),
                job_queue.c.status == expected_status,
            )
            .values(status=STATUS_RUNNING, started_at=now, updated_at=now)
            .returning(*job_queue.c)
        )
        with self.bind.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            logger.warning(
                "job_queue.claim_lost job_id=%s expected_status=%s",
                job_id,
                expected_status,
            )
            return None
        return Job.from_row(row)

    def update_status(
        self,
        job_id: JobId,
        status: JOB_STATUS,
        *,
        result: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or _now_utc()
        values: Dict[str, Any] = {
            "status": status,
            "completed_at": now if status == STATUS_COMPLETED else None,
            "updated_at": now,
        }
        if result is not None:
            values["result"] = result
        with self.bind.begin() as conn:
            updated = conn.execute(
                update(job_queue)
                .where(job_queue.c.id == coerce_uuid(job_id))
                .values(**values)
            ).rowcount
        if not updated:
            raise KeyError(f"job not found: {job_id}")

    def complete(
        self,
        job_id: JobId,
        result: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.update_status(job_id, STATUS_COMPLETED, result=result, now=now)

    def record_failure(
        self,
        job: Job,
        error: BaseException,
        now: Optional[datetime] = None,
    ) -> Job:
        now = now or _now_utc()
        message = str(error) or error.__class__.__name__
        updated = self._fail_attempt(job, message, now)
        if updated is None:
            raise KeyError(f"job not found: {job.id}")
        return updated

    def _fail_attempt(
        self,
        job: Job,
        message: str,
        now: datetime,
        *conditions,
    ) -> Optional[Job]:
        retry_count = job.retry_count + 1
        values: Dict[str, Any] = {
            "retry_count": retry_count,
            "error_message": message,
            "updated_at": now,
        }
        should_retry = retry_count < job.max_retries
        if should_retry:
            values["status"] = STATUS_RETRYING
            values["next_run_at"] = now + compute_backoff(
                retry_count, self.retry_base_minutes
            )
        else:
            values["status"] = STATUS_FAILED
            values["completed_at"] = now

        with self.bind.begin() as conn:
            row = (
                conn.execute(
                    update(job_queue)
                    .where(job_queue.c.id == job.id, *conditions)
                    .values(**values)
                    .returning(*job_queue.c)
                )
                .mappings()
                .first()
            )
            if row is None:
                return None
            if not should_retry and job.artifact_id:
                _fail_artifact(conn, job.artifact_id, message, now)

        updated = Job.from_row(row)
        if should_retry:
            logger.warning(
                "job_queue.retry_scheduled job_id=%s attempt=%s max_retries=%s next_run_at=%s error=%s",
                job.id,
                retry_count,
                job.max_retries,
                updated.next_run_at.isoformat(),
                message,
            )
        else:
            logger.error(
                "job_queue.failed job_id=%s attempts=%s artifact_id=%s error=%s",
                job.id,
                retry_count,
                job.artifact_id,
                message,
            )
        return updated

    def get_job(self, job_id: JobId) -> Job:
        try:
            job_uuid = coerce_uuid(job_id)
        except ValueError as exc:
            raise KeyError(f"job not found: {job_id}") from exc
        with self.bind.connect() as conn:
            row = (
                conn.execute(select(job_queue).where(job_queue.c.id == job_uuid))
                .mappings()
                .first()
            )
        if row is None:
            raise KeyError(f"job not found: {job_id}")
        return Job.from_row(row)

    def list_jobs(
        self,
        *,
        status: Optional[JOB_STATUS] = None,
        limit: int = 50,
    ) -> List[Job]:
        stmt = select(job_queue)
        if status is not None:
            stmt = stmt.where(job_queue.c.status == status)
        stmt = stmt.order_by(job_queue.c.created_at.desc()).limit(limit)
        with self.bind.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Job.from_row(row) for row in rows]


def _fail_artifact(conn: Connection, artifact_id: str, message: str, now: datetime) -> None:
    try:
        artifact_uuid = coerce_uuid(artifact_id)
    except ValueError:
        logger.warning("job_queue.artifact_id_invalid artifact_id=%s", artifact_id)
        return
    current = conn.execute(
        select(artifacts.c.status, artifacts.c["metadata"]).where(
            artifacts.c.id == artifact_uuid
        )
    ).first()
    if current is None:
        logger.warning("job_queue.artifact_missing artifact_id=%s", artifact_id)
        return
    # Only an artifact still waiting on ingestion may turn failed.
    if current[0] != "processing":
        logger.warning(
            "job_queue.artifact_not_failed artifact_id=%s status=%s", artifact_id, current[0]
        )
        return
    merged = dict(current[1] or {})
    merged.update({"error": message, "failed_at": now.isoformat()})
    conn.execute(
        update(artifacts)
        .where(artifacts.c.id == artifact_uuid, artifacts.c.status == "processing")
        .values({"status": "failed", "metadata": merged, "updated_at": now})
    )
