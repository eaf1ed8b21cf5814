"""Shared test fixtures."""

from __future__ import annotations

import json
import re
from typing import Callable

import pytest

from hcc_pipeline.errors import ProviderError
from hcc_pipeline.models import ProjectConfig
from hcc_pipeline.providers import CompletionRequest, CompletionResponse
from hcc_pipeline.store import JobStore


def words(n: int, word: str = "word") -> str:
    """*n* words ending on a full stop (never reads as truncated)."""
    return " ".join([word] * (n - 1) + ["end."])


def paragraph(index: int, sentences: int = 10) -> str:
    """Ten-word sentences; ``paragraph(i)`` is exactly ``10 * sentences`` words."""
    return " ".join(
        f"Paragraph {index} sentence {j} discusses the argument in careful detail."
        for j in range(sentences)
    )


def document(paragraphs: int = 10, sentences: int = 10) -> str:
    return "\n\n".join(paragraph(i, sentences) for i in range(paragraphs))


SKELETON_JSON = {
    "master_thesis": "Careful argument survives editing.",
    "major_divisions": [{"title": "Part 1", "summary": "The whole argument."}],
    "global_terms": [{"term": "argument", "definition": "the line of reasoning"}],
    "core_commitments": [
        {"type": "asserts", "claim": "Paragraph 0 sentence 1 discusses the argument in careful detail."},
        {"type": "asserts", "claim": "Paragraph 2 sentence 3 discusses the argument in careful detail."},
    ],
    "cross_references": [],
}


class FakeProvider:
    """CompletionProvider double.

    Replies come from *replies* in order, or from *handler(request)*.  A
    reply that is an exception instance is raised instead of returned.
    Every request is recorded.
    """

    def __init__(self, replies=None, handler: Callable[[CompletionRequest], object] | None = None,
                 name: str = "fake") -> None:
        self.replies = list(replies or [])
        self.handler = handler
        self.name = name
        self.requests: list[CompletionRequest] = []

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        reply = self.handler(request) if self.handler is not None else self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return CompletionResponse(text=str(reply), provider=self.name, model=self.name)

    @property
    def prompts(self) -> list[str]:
        return [r.prompt for r in self.requests]


_CHUNK_RE = re.compile(r"CHUNK TEXT:\n([\s\S]*?)\n\nRespond in this format:")
_STITCH_RE = re.compile(r"PROCESSED CHUNKS:\n([\s\S]*?)\n\nTASK:")
_REPAIR_RE = re.compile(r"MISSING COMMITMENTS[^\n]*\n([\s\S]*?)\n\nDOCUMENT:\n([\s\S]*?)\n\nReturn:")


class EchoEditor:
    """Deterministic stand-in for every model role.

    Chunks and chapters are echoed back unchanged, so a maintain-length pass
    reproduces its input.  Skeleton, claim, objection and enhancement calls
    get fixed JSON.  Set ``fail_on`` to a prompt substring, or
    ``fail_chunk_containing`` to a chunk-text substring, to make matching
    calls raise ``error``.
    """

    def __init__(self, skeleton: dict | None = None, claims: int = 3) -> None:
        self.skeleton = skeleton or SKELETON_JSON
        self.claims = claims
        self.fail_on: str | None = None
        self.fail_chunk_containing: str | None = None
        self.error: Exception = ProviderError(503, "service unavailable")

    def __call__(self, request: CompletionRequest) -> object:
        prompt = request.prompt
        if self.fail_on and self.fail_on in prompt:
            return self.error
        if "Extract and return as JSON" in prompt:
            return json.dumps(self.skeleton)
        if "Compress this skeleton" in prompt:
            return "Compressed skeleton context."
        m = _CHUNK_RE.search(prompt)
        if m:
            text = m.group(1)
            if self.fail_chunk_containing and self.fail_chunk_containing in text:
                return self.error
            return f"PROCESSED_TEXT:\n{text}\n\nWORD_COUNT: 0\n\nDELTA_REPORT:\n" + json.dumps(
                {"new_claims": [], "terms_used": ["argument"], "conflicts": [], "cross_refs": []}
            )
        m = _STITCH_RE.search(prompt)
        if m:
            body = re.sub(r"\[CHUNK \d+\]\n", "", m.group(1))
            return f"CHAPTER_OUTPUT:\n{body}\n\nCHAPTER_DELTA:\n" + json.dumps({"netContribution": "echo"})
        if "claims that could be objected to" in prompt:
            return json.dumps([
                {"claim_index": i + 1, "claim": f"Paragraph {i} sentence 0 discusses the argument",
                 "location": f"paragraph {i}", "reason": "central"}
                for i in range(self.claims)
            ])
        if "Generate objections and responses" in prompt:
            n = int(re.search(r"for these (\d+) claims", prompt).group(1))
            return json.dumps([
                {"claimTargeted": "Paragraph 0 sentence 0 discusses the argument", "type": "Empirical",
                 "objection": f"Objection text {k}.", "response": f"Response text {k}.", "severity": "serious"}
                for k in range(n)
            ])
        if "Enhance these responses" in prompt:
            indices = [int(i) for i in re.findall(r"Objection (\d+):", prompt)]
            return json.dumps([
                {"objection_index": i, "enhanced_response": f"Enhanced answer {i}. More detail.",
                 "enhancement_notes": "deeper"}
                for i in indices
            ])
        m = _REPAIR_RE.search(prompt)
        if m:
            restored = "\n".join(line[2:] for line in m.group(1).splitlines())
            return f"REPAIRED_OUTPUT:\n{m.group(2)}\n\n{restored}"
        return ""


@pytest.fixture
def config() -> ProjectConfig:
    """In-memory config with no pauses between calls."""
    return ProjectConfig(chunk_delay_ms=0, retry_delay_ms=0, store_dir=None)


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def echo_editor() -> EchoEditor:
    return EchoEditor()


@pytest.fixture
def echo_provider(echo_editor) -> FakeProvider:
    return FakeProvider(handler=echo_editor)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def record_sleep(sleeps) -> Callable[[float], None]:
    return sleeps.append
