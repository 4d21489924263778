from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from brain_rag.artifacts import ArtifactRepository
from brain_rag.config import Settings
from brain_rag.ingest import IngestionPipeline
from brain_rag.job_queue import JobQueue
from brain_rag.main import create_app
from brain_rag.services import PipelineServices, build_services
from brain_rag.tables import metadata


@pytest.fixture()
def engine() -> Iterator[Engine]:
    sqlite_engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(sqlite_engine)
    yield sqlite_engine
    sqlite_engine.dispose()


@pytest.fixture()
def dev_settings() -> Settings:
    return Settings(
        _env_file=None,
        development_mode=True,
        development_live_fallback=False,
        ingest_trigger="none",
        skip_schema_check=True,
        job_max_retries=3,
        job_retry_base_minutes=5,
        job_lease_seconds=900,
    )


@pytest.fixture()
def services(dev_settings: Settings) -> PipelineServices:
    return build_services(dev_settings)


@pytest.fixture()
def queue(engine: Engine) -> JobQueue:
    return JobQueue(
        engine,
        lease_seconds=900,
        retry_base_minutes=5,
        default_priority=1,
        default_max_retries=3,
    )


@pytest.fixture()
def repo(engine: Engine) -> ArtifactRepository:
    return ArtifactRepository(engine)


@pytest.fixture()
def pipeline(repo: ArtifactRepository, services: PipelineServices) -> IngestionPipeline:
    return IngestionPipeline(repo, services)


@pytest.fixture()
def client(
    engine: Engine, services: PipelineServices, dev_settings: Settings
) -> TestClient:
    app = create_app(bind=engine, services=services, config=dev_settings)
    return TestClient(app)
