from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Protocol, Sequence

import httpx

from .logging_utils import get_logger

logger = get_logger(__name__)

MOCK_EMBEDDING_DIM = 384


class EmbeddingClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class EmbeddingResult:
    vector: List[float]
    model: str

    @property
    def dim(self) -> int:
        return len(self.vector)


class Embedder(Protocol):
    model: str

    def embed(self, text: str) -> EmbeddingResult:
        ...


def _normalize_base_url(raw: str) -> str:
    return raw.rstrip("/")


def _validate_text(text: str) -> str:
    if not isinstance(text, str) or not text.strip():
        raise EmbeddingClientError("embedding request requires non-empty text")
    return text


def _validate_vector(raw: Sequence[float]) -> List[float]:
    if not isinstance(raw, list) or not raw:
        raise EmbeddingClientError("embedding response missing 'embedding' list")
    try:
        return [float(value) for value in raw]
    except (TypeError, ValueError) as exc:
        raise EmbeddingClientError("embedding response contains non-numeric values") from exc


class OllamaEmbedder:
    def __init__(self, base_url: str, model: str, timeout_s: float) -> None:
        self.base_url = _normalize_base_url(base_url)
        self.model = model
        self.timeout_s = timeout_s

    def embed(self, text: str) -> EmbeddingResult:
        payload = {"model": self.model, "prompt": _validate_text(text)}
        url = f"{self.base_url}/api/embeddings"
        timeout = httpx.Timeout(self.timeout_s)

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(f"embedding HTTP request failed: {exc}") from exc

        if response.status_code != 200:
            detail = response.text.strip()
            if len(detail) > 400:
                detail = detail[:400]
            raise EmbeddingClientError(
                f"embedding service returned {response.status_code}: {detail}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise EmbeddingClientError("embedding service returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise EmbeddingClientError("embedding response is not a JSON object")

        vector = _validate_vector(body.get("embedding"))
        return EmbeddingResult(vector=vector, model=self.model)


def mock_embedding(text: str, dim: int = MOCK_EMBEDDING_DIM) -> List[float]:
    """Deterministic stand-in vector: byte ``i % 32`` of the SHA-256 digest,
    rescaled from ``[0, 255]`` to ``[-1, 1)``."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[index % 32] - 128) / 128 for index in range(dim)]


class MockEmbedder:
    def __init__(self, dim: int = MOCK_EMBEDDING_DIM) -> None:
        self.dim = dim
        self.model = f"mock-sha256-{dim}"

    def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(
            vector=mock_embedding(_validate_text(text), self.dim), model=self.model
        )


class FallbackEmbedder:
    def __init__(self, primary: Embedder, fallback: Embedder) -> None:
        self.primary = primary
        self.fallback = fallback
        self.model = primary.model

    def embed(self, text: str) -> EmbeddingResult:
        try:
            return self.primary.embed(text)
        except EmbeddingClientError as exc:
            logger.warning(
                "embeddings.fallback model=%s fallback_model=%s error=%s",
                self.primary.model,
                self.fallback.model,
                exc,
            )
            return self.fallback.embed(text)
