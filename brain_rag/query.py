from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from .logging_utils import get_logger
from .services import PipelineServices
from .vector_index import VectorHit

DEFAULT_TOP_K = 5
DEFAULT_SCORE_THRESHOLD = 0.7
DEFAULT_SNIPPET_CHARS = 500

QUESTION_REQUIRED = "Question is required and must be a non-empty string"
NO_KNOWLEDGE_ANSWER = (
    "I don't have enough information in my knowledge base to answer that question."
)
PROMPT_PREAMBLE = (
    "You are an intelligent assistant with access to The Brain knowledge base. "
    "Use the following snippets to answer the user's question. Be accurate, helpful, "
    "and cite the relevant snippets when appropriate."
)

logger = get_logger(__name__)


class QueryValidationError(ValueError):
    pass


class NoKnowledgeFoundError(LookupError):
    pass


@dataclass(frozen=True)
class QueryResult:
    answer: str
    sources: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"answer": self.answer, "sources": list(self.sources)}


def validate_question(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise QueryValidationError(QUESTION_REQUIRED)
    return raw.strip()


def snippet_for(hit: VectorHit, max_chars: int = DEFAULT_SNIPPET_CHARS) -> str:
    payload = hit.payload
    content = payload.get("content_preview") or payload.get("text") or payload.get("name") or ""
    content = str(content)
    if len(content) > max_chars:
        return content[:max_chars] + "..."
    return content


def build_prompt(
    question: str,
    hits: Sequence[VectorHit],
    snippet_chars: int = DEFAULT_SNIPPET_CHARS,
) -> str:
    if not hits:
        raise NoKnowledgeFoundError("no snippets to build a prompt from")
    parts = [PROMPT_PREAMBLE, "\n\n", "KNOWLEDGE SNIPPETS:\n"]
    for number, hit in enumerate(hits, start=1):
        name = hit.payload.get("name") or "Unknown"
        kind = hit.payload.get("type") or "unknown"
        parts.append(f"\nSnippet {number}: {snippet_for(hit, snippet_chars)}\n")
        parts.append(f"Source: {name} ({kind})\n")
    parts.append(f"\nQuestion: {question}\n\nAnswer: ")
    return "".join(parts)


class QueryService:
    def __init__(
        self,
        services: PipelineServices,
        *,
        top_k: int = DEFAULT_TOP_K,
        score_threshold: float = DEFAULT_SCORE_THRESHOLD,
        snippet_chars: int = DEFAULT_SNIPPET_CHARS,
    ) -> None:
        self.services = services
        self.top_k = top_k
        self.score_threshold = score_threshold
        self.snippet_chars = snippet_chars

    def search(self, question: str) -> List[VectorHit]:
        embedding = self.services.embedder.embed(question)
        hits = self.services.vector_index.search(
            embedding.vector,
            limit=self.top_k,
            score_threshold=self.score_threshold,
            model=embedding.model,
        )
        logger.info(
            "query.search hits=%s model=%s top_score=%s",
            len(hits),
            embedding.model,
            f"{hits[0].score:.3f}" if hits else None,
        )
        return hits

    def answer(self, raw_question: Any) -> QueryResult:
        """Answer ``raw_question`` from the knowledge base.

        Raises ``QueryValidationError`` for a missing or blank question.
        Zero matching snippets is not an error: the result carries the fixed
        no-knowledge answer and no sources.
        """
        question = validate_question(raw_question)
        hits = self.search(question)
        try:
            prompt = build_prompt(question, hits, self.snippet_chars)
        except NoKnowledgeFoundError:
            return QueryResult(answer=NO_KNOWLEDGE_ANSWER, sources=[])

        answer = self.services.generator.complete(prompt)
        sources = [{"id": hit.id, "snippet": snippet_for(hit, self.snippet_chars)} for hit in hits]
        logger.info("query.answered sources=%s answer_chars=%s", len(sources), len(answer))
        return QueryResult(answer=answer, sources=sources)
