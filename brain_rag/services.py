from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from .config import Settings, settings
from .embeddings import Embedder, FallbackEmbedder, MockEmbedder, OllamaEmbedder
from .generation import FallbackGenerator, Generator, MockGenerator, OllamaGenerator
from .logging_utils import get_logger
from .storage import FallbackObjectStorage, MockObjectStorage, ObjectStorage, SupabaseStorage
from .vector_index import (
    FallbackVectorIndex,
    InMemoryVectorIndex,
    QdrantVectorIndex,
    VectorIndex,
)

MODE_LIVE = "live"
MODE_MOCK = "mock"
MODE_FALLBACK = "live+mock-fallback"

logger = get_logger(__name__)


@dataclass(frozen=True)
class PipelineServices:
    embedder: Embedder
    vector_index: VectorIndex
    generator: Generator
    storage: ObjectStorage
    mode: str = MODE_LIVE


def _live_services(config: Settings) -> PipelineServices:
    return PipelineServices(
        embedder=OllamaEmbedder(
            config.ollama_base_url, config.ollama_embedding_model, config.ollama_timeout_s
        ),
        vector_index=QdrantVectorIndex(
            config.qdrant_collection,
            url=config.qdrant_url,
            api_key=config.qdrant_api_key,
            timeout_s=config.qdrant_timeout_s,
        ),
        generator=OllamaGenerator(
            config.ollama_base_url, config.ollama_chat_model, config.ollama_timeout_s
        ),
        storage=SupabaseStorage(
            config.supabase_url,
            config.supabase_service_role_key,
            config.storage_bucket,
            signed_url_ttl_s=config.storage_signed_url_ttl_s,
            timeout_s=config.storage_timeout_s,
        ),
        mode=MODE_LIVE,
    )


def _mock_services(config: Settings) -> PipelineServices:
    return PipelineServices(
        embedder=MockEmbedder(config.mock_embedding_dim),
        vector_index=InMemoryVectorIndex(),
        generator=MockGenerator(),
        storage=MockObjectStorage(),
        mode=MODE_MOCK,
    )


def build_services(config: Settings = settings) -> PipelineServices:
    """Pick live or mock clients once, at construction time.

    Development mode uses the mocks. With ``development_live_fallback`` it
    uses the live clients and drops to the mock for any call that fails.
    """
    if not config.development_mode:
        services = _live_services(config)
    elif not config.development_live_fallback:
        services = _mock_services(config)
    else:
        live = _live_services(config)
        mock = _mock_services(config)
        services = PipelineServices(
            embedder=FallbackEmbedder(live.embedder, mock.embedder),
            vector_index=FallbackVectorIndex(live.vector_index, mock.vector_index),
            generator=FallbackGenerator(live.generator, mock.generator),
            storage=FallbackObjectStorage(live.storage, mock.storage),
            mode=MODE_FALLBACK,
        )
    logger.info(
        "services.built mode=%s embedding_model=%s chat_model=%s",
        services.mode,
        services.embedder.model,
        services.generator.model,
    )
    return services


@lru_cache(maxsize=1)
def get_default_services() -> PipelineServices:
    return build_services(settings)
