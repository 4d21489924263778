from __future__ import annotations

import re
from typing import Any, Dict, Protocol

import httpx

from .logging_utils import get_logger

logger = get_logger(__name__)

# Ollama names the completion budget ``num_predict``.
SAMPLING_OPTIONS: Dict[str, Any] = {"temperature": 0.7, "top_p": 0.9, "num_predict": 1000}

_QUESTION_RE = re.compile(r"Question:\s*(?P<question>.*?)\s*\n\s*Answer:", re.DOTALL)
_SNIPPET_RE = re.compile(r"^Snippet \d+:", re.MULTILINE)


class GenerationClientError(RuntimeError):
    pass


class Generator(Protocol):
    model: str

    def complete(self, prompt: str) -> str:
        ...


class OllamaGenerator:
    def __init__(self, base_url: str, model: str, timeout_s: float) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s

    def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": dict(SAMPLING_OPTIONS),
        }
        url = f"{self.base_url}/api/generate"
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout_s)) as client:
                response = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise GenerationClientError(f"generation HTTP request failed: {exc}") from exc

        if response.status_code != 200:
            detail = response.text.strip()[:400]
            raise GenerationClientError(
                f"generation service returned {response.status_code}: {detail}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise GenerationClientError("generation service returned a non-JSON body") from exc

        answer = body.get("response") if isinstance(body, dict) else None
        if not isinstance(answer, str):
            raise GenerationClientError("generation response missing 'response' text")
        return answer.strip()


class MockGenerator:
    model = "mock-generator"

    def complete(self, prompt: str) -> str:
        match = _QUESTION_RE.search(prompt)
        question = match.group("question") if match else prompt.strip()[:200]
        snippets = len(_SNIPPET_RE.findall(prompt))
        return (
            f'Based on {snippets} snippet(s) from your knowledge base, here is what I found '
            f'about "{question}". This is a development-mode answer; connect Ollama for '
            "real completions."
        )


class FallbackGenerator:
    def __init__(self, primary: Generator, fallback: Generator) -> None:
        self.primary = primary
        self.fallback = fallback
        self.model = primary.model

    def complete(self, prompt: str) -> str:
        try:
            return self.primary.complete(prompt)
        except GenerationClientError as exc:
            logger.warning("generation.fallback model=%s error=%s", self.primary.model, exc)
            return self.fallback.complete(prompt)
