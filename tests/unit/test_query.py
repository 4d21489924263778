from __future__ import annotations

import pytest

from brain_rag.embeddings import MockEmbedder
from brain_rag.generation import GenerationClientError, MockGenerator
from brain_rag.query import (
    NO_KNOWLEDGE_ANSWER,
    NoKnowledgeFoundError,
    QueryService,
    QueryValidationError,
    build_prompt,
    snippet_for,
    validate_question,
)
from brain_rag.services import PipelineServices
from brain_rag.storage import MockObjectStorage
from brain_rag.vector_index import InMemoryVectorIndex, VectorHit


class _RecordingGenerator(MockGenerator):
    def __init__(self) -> None:
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return "recorded answer"


class _FailingGenerator(MockGenerator):
    def complete(self, prompt: str) -> str:
        raise GenerationClientError("ollama unavailable")


def _services(index: InMemoryVectorIndex, generator: MockGenerator) -> PipelineServices:
    return PipelineServices(
        embedder=MockEmbedder(),
        vector_index=index,
        generator=generator,
        storage=MockObjectStorage(),
        mode="mock",
    )


@pytest.mark.parametrize("raw", [None, "", "   ", 42, ["why?"]])
def test_validate_question_rejects_blank_or_non_string(raw) -> None:
    with pytest.raises(QueryValidationError, match="Question is required"):
        validate_question(raw)


def test_snippet_prefers_preview_then_text_then_name() -> None:
    assert snippet_for(VectorHit("a", 0.9, {"content_preview": "p", "text": "t"})) == "p"
    assert snippet_for(VectorHit("a", 0.9, {"text": "t", "name": "n"})) == "t"
    assert snippet_for(VectorHit("a", 0.9, {"name": "n"})) == "n"


def test_snippet_truncates_to_500_chars_with_ellipsis() -> None:
    hit = VectorHit("a", 0.9, {"text": "x" * 501})
    snippet = snippet_for(hit)
    assert snippet == "x" * 500 + "..."
    assert snippet_for(VectorHit("a", 0.9, {"text": "y" * 500})) == "y" * 500


def test_build_prompt_layout() -> None:
    hits = [
        VectorHit("a1", 0.9, {"text": "Alpha facts", "name": "Alpha", "type": "note"}),
        VectorHit("a2", 0.8, {"text": "Beta facts", "name": "Beta", "type": "link"}),
    ]

    prompt = build_prompt("What is alpha?", hits)

    assert prompt.startswith(
        "You are an intelligent assistant with access to The Brain knowledge base."
    )
    assert "\n\nKNOWLEDGE SNIPPETS:\n" in prompt
    assert "\nSnippet 1: Alpha facts\nSource: Alpha (note)\n" in prompt
    assert "\nSnippet 2: Beta facts\nSource: Beta (link)\n" in prompt
    assert prompt.endswith("\nQuestion: What is alpha?\n\nAnswer: ")


def test_build_prompt_requires_hits() -> None:
    with pytest.raises(NoKnowledgeFoundError):
        build_prompt("anything", [])


def test_zero_hits_returns_fixed_answer_without_generation() -> None:
    index = InMemoryVectorIndex(seed_hits=())
    generator = _RecordingGenerator()

    result = QueryService(_services(index, generator)).answer("What is there?")

    assert result.answer == NO_KNOWLEDGE_ANSWER
    assert result.sources == []
    assert generator.prompts == []


def test_sources_match_prompt_snippets() -> None:
    generator = _RecordingGenerator()
    service = QueryService(_services(InMemoryVectorIndex(), generator))

    result = service.answer("  Tell me about AI  ")

    assert result.answer == "recorded answer"
    assert [source["id"] for source in result.sources] == ["mock-document-1", "mock-document-2"]
    for number, source in enumerate(result.sources, start=1):
        assert f"Snippet {number}: {source['snippet']}\n" in generator.prompts[0]
    assert "Question: Tell me about AI\n" in generator.prompts[0]


def test_generation_errors_propagate() -> None:
    service = QueryService(_services(InMemoryVectorIndex(), _FailingGenerator()))
    with pytest.raises(GenerationClientError):
        service.answer("Tell me about AI")
