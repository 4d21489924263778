from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

# Mirrors alembic/versions/0001_initial_schema.py. Postgres gets JSONB; other
# dialects (SQLite in tests) fall back to JSON text.
JsonType = JSON().with_variant(JSONB(), "postgresql")

metadata = MetaData()

artifacts = Table(
    "artifacts",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", Text, nullable=False),
    Column("description", Text),
    Column("type", Text, nullable=False),
    Column("url", Text),
    Column("content", Text),
    Column("status", Text, nullable=False, default="processing"),
    Column("embedding", JsonType),
    Column("metadata", JsonType, nullable=False, default=dict),
    Column("content_hash", Text),
    Column("chunk_index", Integer),
    Column(
        "parent_artifact_id",
        Uuid,
        ForeignKey("artifacts.id", ondelete="CASCADE"),
    ),
    Column("indexed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
Index("artifacts_status_created_idx", artifacts.c.status, artifacts.c.created_at)

job_queue = Table(
    "job_queue",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("job_type", Text, nullable=False),
    Column("status", Text, nullable=False, default="pending"),
    Column("priority", Integer, nullable=False, default=0),
    Column("payload", JsonType, nullable=False, default=dict),
    Column("result", JsonType),
    Column("error_message", Text),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("max_retries", Integer, nullable=False, default=3),
    Column("next_run_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
Index(
    "job_queue_dequeue_idx",
    job_queue.c.status,
    job_queue.c.next_run_at,
    job_queue.c.priority,
    job_queue.c.created_at,
)
