"""Shared fakes for the completion and embedding APIs."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from threadreport.models import CategorizedMessage


class FakeCompleter:
    """Answers prompts with *handler(prompt)*; an exception return is raised."""

    def __init__(self, handler: Callable[[str], Any] | None = None) -> None:
        self._handler = handler or (lambda prompt: "not json")
        self.prompts: list[str] = []

    async def complete(self, messages, *, max_tokens: int, temperature: float) -> str:
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        result = self._handler(prompt)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, (dict, list)):
            return json.dumps(result, ensure_ascii=False)
        return result


class FakeEmbedder:
    """Deterministic embeddings that count how many texts were sent."""

    def __init__(self, rule: Callable[[str], list[float]] | None = None, dim: int = 8) -> None:
        self._rule = rule
        self._dim = dim
        self.calls: list[list[str]] = []

    @property
    def texts_embedded(self) -> int:
        return sum(len(c) for c in self.calls)

    async def __call__(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self._rule(t) if self._rule else self._hash_vector(t) for t in texts]

    def _hash_vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255 for b in digest[: self._dim]]


def make_message(
    msg_id: str,
    content: str,
    *,
    sentiment: str = "neutral",
    category: str = "question",
    is_substantive: bool = True,
    embedding: list[float] | None = None,
    day: int = 1,
) -> CategorizedMessage:
    return CategorizedMessage(
        id=msg_id,
        content=content,
        timestamp=datetime(2024, 5, day, 12, 0, tzinfo=UTC),
        category=category,
        sentiment=sentiment,
        is_substantive=is_substantive,
        embedding=embedding,
    )


@pytest.fixture
def completer() -> FakeCompleter:
    return FakeCompleter()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
