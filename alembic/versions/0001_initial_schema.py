"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

"""
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS artifacts (
          id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          name                TEXT NOT NULL,
          description         TEXT,
          type                TEXT NOT NULL
                              CHECK (type IN ('document', 'link', 'file', 'note')),
          url                 TEXT,
          content             TEXT,
          status              TEXT NOT NULL DEFAULT 'processing'
                              CHECK (status IN ('processing', 'indexed', 'failed')),
          embedding           JSONB,
          metadata            JSONB NOT NULL DEFAULT '{}'::jsonb,
          content_hash        TEXT,
          chunk_index         INTEGER,
          parent_artifact_id  UUID REFERENCES artifacts(id) ON DELETE CASCADE,
          indexed_at          TIMESTAMPTZ,
          created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS artifacts_status_created_idx
          ON artifacts (status, created_at);
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS job_queue (
          id             UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          job_type       TEXT NOT NULL,
          status         TEXT NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'running', 'completed', 'failed', 'retrying')),
          priority       INTEGER NOT NULL DEFAULT 0,
          payload        JSONB NOT NULL DEFAULT '{}'::jsonb,
          result         JSONB,
          error_message  TEXT,
          retry_count    INTEGER NOT NULL DEFAULT 0,
          max_retries    INTEGER NOT NULL DEFAULT 3,
          next_run_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
          started_at     TIMESTAMPTZ,
          completed_at   TIMESTAMPTZ,
          created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS job_queue_dequeue_idx
          ON job_queue (status, next_run_at, priority, created_at);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS job_queue;")
    op.execute("DROP TABLE IF EXISTS artifacts;")
