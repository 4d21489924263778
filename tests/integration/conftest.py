from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterator
from urllib.parse import quote
from uuid import uuid4

import psycopg
import pytest
from alembic import command
from alembic.config import Config
from psycopg import sql
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

DEFAULT_SCHEMA_PREFIX = "brain_test"
SAFE_TEST_SCHEMA_RE = re.compile(r"^brain_test(?:_[a-z0-9]+)?$")


def _admin_url(url: str) -> str:
    if url.startswith("postgresql+psycopg://"):
        url = "postgresql://" + url.split("postgresql+psycopg://", 1)[1]
    return url.split("?", 1)[0]


def _resolve_test_schema() -> str:
    schema = os.getenv("TEST_SCHEMA") or f"{DEFAULT_SCHEMA_PREFIX}_{uuid4().hex[:8]}"
    if not SAFE_TEST_SCHEMA_RE.fullmatch(schema):
        raise ValueError(
            "TEST_SCHEMA must match 'brain_test' or 'brain_test_<suffix>' "
            "to prevent accidental destructive operations."
        )
    return schema


@pytest.fixture(scope="session")
def pg_database_url() -> Iterator[str]:
    base_url = os.getenv("TEST_DATABASE_URL")
    if not base_url:
        pytest.skip("TEST_DATABASE_URL is not set")

    schema = _resolve_test_schema()
    admin_url = _admin_url(base_url)
    with psycopg.connect(admin_url, autocommit=True) as conn:
        conn.execute(sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema)))
        conn.execute(sql.SQL("CREATE SCHEMA {}").format(sql.Identifier(schema)))

    separator = "&" if "?" in base_url else "?"
    search_path_option = quote(f"-c search_path={schema},public")
    db_url = f"{base_url}{separator}options={search_path_option}"

    previous = {key: os.environ.get(key) for key in ("DATABASE_URL", "ALEMBIC_VERSION_TABLE_SCHEMA")}
    os.environ["DATABASE_URL"] = db_url
    os.environ["ALEMBIC_VERSION_TABLE_SCHEMA"] = schema
    config = Config(str(Path(__file__).resolve().parents[2] / "alembic.ini"))
    command.upgrade(config, "head")
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value

    yield db_url

    if os.getenv("TEST_SCHEMA_KEEP", "false").lower() in {"1", "true", "yes"}:
        return
    with psycopg.connect(admin_url, autocommit=True) as conn:
        conn.execute(sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema)))


@pytest.fixture()
def pg_engine(pg_database_url: str) -> Iterator[Engine]:
    engine = create_engine(pg_database_url, pool_pre_ping=True)
    yield engine
    with engine.begin() as conn:
        conn.exec_driver_sql("TRUNCATE job_queue, artifacts")
    engine.dispose()
