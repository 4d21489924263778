from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    VectorParams,
)

from .logging_utils import get_logger

logger = get_logger(__name__)

MODEL_PAYLOAD_KEY = "embedding_model"


class VectorIndexError(RuntimeError):
    pass


@dataclass(frozen=True)
class VectorPoint:
    id: str
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorHit:
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    def upsert(self, point: VectorPoint) -> None:
        ...

    def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float,
        model: Optional[str] = None,
    ) -> List[VectorHit]:
        ...


class QdrantVectorIndex:
    """Single-collection cosine index backed by Qdrant.

    The collection is created on the first upsert with the vector size of
    that point. An existing collection whose size differs from an incoming
    vector is rejected rather than silently mixing embedding spaces.
    """

    def __init__(
        self,
        collection: str,
        *,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: int = 30,
        client: Optional[QdrantClient] = None,
    ) -> None:
        self.collection = collection
        self.url = url
        self.api_key = api_key or None
        self.timeout_s = timeout_s
        self._client = client
        self._known_size: Optional[int] = None

    def _get_client(self) -> QdrantClient:
        if self._client is None:
            self._client = QdrantClient(
                url=self.url, api_key=self.api_key, timeout=self.timeout_s
            )
        return self._client

    def _existing_size(self, client: QdrantClient) -> Optional[int]:
        info = client.get_collection(self.collection)
        vectors = info.config.params.vectors
        return getattr(vectors, "size", None)

    def ensure_collection(self, vector_size: int) -> None:
        if self._known_size == vector_size:
            return
        client = self._get_client()
        try:
            if client.collection_exists(self.collection):
                existing = self._existing_size(client)
                if existing is not None and existing != vector_size:
                    raise VectorIndexError(
                        f"collection '{self.collection}' stores {existing}-dim vectors; "
                        f"got {vector_size}"
                    )
            else:
                logger.info(
                    "vector_index.create_collection collection=%s size=%s",
                    self.collection,
                    vector_size,
                )
                client.create_collection(
                    collection_name=self.collection,
                    vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
                )
        except VectorIndexError:
            raise
        except Exception as exc:
            raise VectorIndexError(f"collection setup failed: {exc}") from exc
        self._known_size = vector_size

    def upsert(self, point: VectorPoint) -> None:
        self.ensure_collection(len(point.vector))
        try:
            self._get_client().upsert(
                collection_name=self.collection,
                points=[PointStruct(id=point.id, vector=point.vector, payload=point.payload)],
                wait=True,
            )
        except Exception as exc:
            raise VectorIndexError(f"vector upsert failed: {exc}") from exc
        logger.info(
            "vector_index.upsert collection=%s point_id=%s dim=%s",
            self.collection,
            point.id,
            len(point.vector),
        )

    def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float,
        model: Optional[str] = None,
    ) -> List[VectorHit]:
        client = self._get_client()
        query_filter = None
        if model:
            query_filter = Filter(
                must=[FieldCondition(key=MODEL_PAYLOAD_KEY, match=MatchValue(value=model))]
            )
        try:
            if not client.collection_exists(self.collection):
                logger.info("vector_index.search_empty collection=%s", self.collection)
                return []
            response = client.query_points(
                collection_name=self.collection,
                query=list(vector),
                limit=limit,
                score_threshold=score_threshold,
                query_filter=query_filter,
                with_payload=True,
            )
        except Exception as exc:
            raise VectorIndexError(f"vector search failed: {exc}") from exc
        return [
            VectorHit(id=str(point.id), score=float(point.score), payload=dict(point.payload or {}))
            for point in response.points
        ]


MOCK_HITS = (
    VectorHit(
        id="mock-document-1",
        score=0.95,
        payload={
            "name": "Sample Document 1",
            "type": "document",
            "text": "This is a sample document about artificial intelligence and machine learning concepts.",
            "content_preview": "This is a sample document about artificial intelligence and machine learning concepts.",
        },
    ),
    VectorHit(
        id="mock-document-2",
        score=0.87,
        payload={
            "name": "Sample Document 2",
            "type": "note",
            "text": "Notes on knowledge management, personal knowledge graphs and linking ideas together.",
            "content_preview": "Notes on knowledge management, personal knowledge graphs and linking ideas together.",
        },
    ),
)


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if norm == 0:
        return 0.0
    return dot / norm


class InMemoryVectorIndex:
    """Process-local index used in development mode.

    While nothing has been upserted, searches answer with ``seed_hits`` so the
    query path can be exercised without ingesting first.
    """

    def __init__(self, seed_hits: Sequence[VectorHit] = MOCK_HITS) -> None:
        self.seed_hits = tuple(seed_hits)
        self._points: Dict[str, VectorPoint] = {}

    def __len__(self) -> int:
        return len(self._points)

    def get(self, point_id: str) -> Optional[VectorPoint]:
        return self._points.get(point_id)

    def upsert(self, point: VectorPoint) -> None:
        self._points[point.id] = VectorPoint(
            id=point.id, vector=list(point.vector), payload=dict(point.payload)
        )

    def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float,
        model: Optional[str] = None,
    ) -> List[VectorHit]:
        if not self._points:
            return list(self.seed_hits[:limit])

        hits: List[VectorHit] = []
        for point in self._points.values():
            if model and point.payload.get(MODEL_PAYLOAD_KEY) != model:
                continue
            if len(point.vector) != len(vector):
                continue
            score = cosine_similarity(vector, point.vector)
            if score < score_threshold:
                continue
            hits.append(VectorHit(id=point.id, score=score, payload=dict(point.payload)))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]


class FallbackVectorIndex:
    def __init__(self, primary: VectorIndex, fallback: VectorIndex) -> None:
        self.primary = primary
        self.fallback = fallback

    def upsert(self, point: VectorPoint) -> None:
        try:
            self.primary.upsert(point)
        except VectorIndexError as exc:
            logger.warning("vector_index.fallback op=upsert point_id=%s error=%s", point.id, exc)
            self.fallback.upsert(point)

    def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float,
        model: Optional[str] = None,
    ) -> List[VectorHit]:
        try:
            return self.primary.search(
                vector, limit=limit, score_threshold=score_threshold, model=model
            )
        except VectorIndexError as exc:
            logger.warning("vector_index.fallback op=search error=%s", exc)
            return self.fallback.search(
                vector, limit=limit, score_threshold=score_threshold, model=model
            )
