"""Async chat-completion client and helpers for JSON-returning prompts."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*")

ChatMessage = dict[str, str]


class Completer(Protocol):
    """Anything that turns a chat transcript into raw model text."""

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> str: ...


class LLMClient:
    """OpenAI-compatible completion client bound to one endpoint and model."""

    def __init__(self, api_url: str, api_key: str, model: str) -> None:
        self._api_url = api_url
        self._model = model
        self._client: Any = None

        if not api_key:
            logger.warning("LLM_API_KEY not set; every LLM stage will use its fallback.")
            return

        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=api_key, base_url=api_url)

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> str:
        """Send a chat-completion request and return the raw text."""
        if self._client is None:
            return ""

        resp = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return resp.choices[0].message.content or ""


def strip_code_fences(raw: str) -> str:
    """Remove Markdown code fences that models like to wrap JSON in."""
    text = raw.strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text)
    return text.strip()


def parse_json_response(raw: str) -> dict[str, Any]:
    """Parse a model response as a JSON object.

    Raises ``ValueError`` (``json.JSONDecodeError`` is a subclass) when the
    text is not JSON or is not an object.
    """
    parsed = json.loads(strip_code_fences(raw))
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


async def complete_json(
    completer: Completer,
    prompt: str,
    *,
    max_tokens: int,
    temperature: float,
) -> dict[str, Any]:
    """Single-turn prompt whose answer must be a JSON object."""
    raw = await completer.complete(
        [{"role": "user", "content": prompt}],
        max_tokens=max_tokens,
        temperature=temperature,
    )
    return parse_json_response(raw)


def language_instruction(language: str, what: str = "text content") -> str:
    if language == "ko":
        return f"IMPORTANT: Write ALL {what} in Korean."
    return f"Write all {what} in English."


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def coerce_text(value: Any) -> str:
    """Models sometimes return objects where strings were requested."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "name", "label", "opinion", "summary", "content"):
            if isinstance(value.get(key), str):
                return value[key]
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def as_list(value: Any) -> list[Any]:
    """The value when the model returned a JSON array, else an empty list."""
    return value if isinstance(value, list) else []
