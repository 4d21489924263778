from __future__ import annotations

import hashlib
from typing import Any

import httpx
import pytest

from brain_rag.embeddings import (
    EmbeddingClientError,
    FallbackEmbedder,
    MockEmbedder,
    OllamaEmbedder,
    mock_embedding,
)


class _FakeResponse:
    def __init__(self, status_code: int, body: dict[str, Any]) -> None:
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self) -> dict[str, Any]:
        return self._body


class _FakeClient:
    def __init__(self, response: _FakeResponse, recorder: list[dict[str, Any]]) -> None:
        self._response = response
        self._recorder = recorder

    def __enter__(self) -> "_FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def post(self, url: str, json: dict[str, Any]) -> _FakeResponse:
        self._recorder.append({"url": url, "payload": json})
        return self._response


def _patch_client(monkeypatch: pytest.MonkeyPatch, response: _FakeResponse) -> list:
    calls: list[dict[str, Any]] = []

    def fake_client(*args, **kwargs):
        return _FakeClient(response, calls)

    monkeypatch.setattr("brain_rag.embeddings.httpx.Client", fake_client)
    return calls


def test_ollama_embed_posts_model_and_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_client(monkeypatch, _FakeResponse(200, {"embedding": [1, 0.5, -0.25]}))
    embedder = OllamaEmbedder("http://ollama.local:11434/", "nomic-embed-text", 5)

    result = embedder.embed("hello world")

    assert result.vector == [1.0, 0.5, -0.25]
    assert result.model == "nomic-embed-text"
    assert result.dim == 3
    assert calls[0]["url"] == "http://ollama.local:11434/api/embeddings"
    assert calls[0]["payload"] == {"model": "nomic-embed-text", "prompt": "hello world"}


def test_ollama_embed_rejects_error_status(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _FakeResponse(500, {"error": "model not found"}))
    with pytest.raises(EmbeddingClientError, match="500"):
        OllamaEmbedder("http://ollama.local", "missing", 5).embed("hello")


def test_ollama_embed_rejects_missing_vector(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _FakeResponse(200, {"embedding": []}))
    with pytest.raises(EmbeddingClientError):
        OllamaEmbedder("http://ollama.local", "nomic-embed-text", 5).embed("hello")


def test_ollama_embed_wraps_transport_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    class _BrokenClient(_FakeClient):
        def post(self, url: str, json: dict[str, Any]) -> _FakeResponse:
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(
        "brain_rag.embeddings.httpx.Client",
        lambda *args, **kwargs: _BrokenClient(_FakeResponse(200, {}), []),
    )
    with pytest.raises(EmbeddingClientError, match="connection refused"):
        OllamaEmbedder("http://ollama.local", "nomic-embed-text", 5).embed("hello")


def test_empty_text_is_rejected_before_any_request() -> None:
    with pytest.raises(EmbeddingClientError):
        MockEmbedder().embed("   ")


def test_mock_embedding_is_deterministic_sha256_projection() -> None:
    digest = hashlib.sha256(b"The Brain").digest()
    vector = mock_embedding("The Brain")

    assert len(vector) == 384
    assert vector[0] == (digest[0] - 128) / 128
    assert vector[33] == (digest[1] - 128) / 128
    assert all(-1.0 <= value < 1.0 for value in vector)
    assert mock_embedding("The Brain") == vector
    assert mock_embedding("Another text") != vector


def test_fallback_embedder_uses_mock_when_live_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _FakeResponse(503, {"error": "busy"}))
    embedder = FallbackEmbedder(
        OllamaEmbedder("http://ollama.local", "nomic-embed-text", 5), MockEmbedder(8)
    )

    result = embedder.embed("hello")

    assert result.model == "mock-sha256-8"
    assert result.vector == mock_embedding("hello", 8)


class _HtmlResponse(_FakeResponse):
    def __init__(self) -> None:
        super().__init__(200, {})
        self.text = "<html>gateway</html>"

    def json(self) -> dict[str, Any]:
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_ollama_embed_rejects_non_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _HtmlResponse())
    with pytest.raises(EmbeddingClientError, match="non-JSON"):
        OllamaEmbedder("http://ollama.local", "nomic-embed-text", 5).embed("hello")


def test_fallback_embedder_handles_non_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _HtmlResponse())
    embedder = FallbackEmbedder(
        OllamaEmbedder("http://ollama.local", "nomic-embed-text", 5), MockEmbedder(8)
    )

    assert embedder.embed("hello").vector == mock_embedding("hello", 8)
