"""Assign category, sentiment and a substantive flag to every message.

Two interchangeable strategies share the :class:`Categorizer` contract:

* :class:`LLMCategorizer` sends batches of messages to the completion API.
* :class:`EmbeddingCategorizer` compares message embeddings against a fixed
  taxonomy and uses keyword rules for sentiment. No per-message LLM calls.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import numpy as np
import yaml
from pydantic import BaseModel, Field

from threadreport import config
from threadreport.embedder import EmbedFunction
from threadreport.llm import Completer, as_list, complete_json
from threadreport.models import (
    CategorizedMessage,
    CategorizerResult,
    EmbeddedMessage,
    FilteringBreakdown,
    ParsedMessage,
)
from threadreport.store import KeyValueStore

logger = logging.getLogger(__name__)

_TAXONOMY_PATH = Path(__file__).with_name("categories.yml")

NON_SUBSTANTIVE_PATTERNS: dict[str, re.Pattern[str]] = {
    "greetings": re.compile(
        r"^(hi|hello|hey|안녕|하이|헬로|good\s*(morning|afternoon|evening)|greetings)[\s!.?]*$",
        re.IGNORECASE,
    ),
    "chitchat": re.compile(
        r"^(ok|okay|yes|no|yeah|yep|nope|thanks|thank you|thx|ty|ㅇㅇ|ㄴㄴ|ㅋ+|ㅎ+|lol|haha"
        r"|good|nice|cool|great|sure|alright|got it|i see|understood)[\s!.?]*$",
        re.IGNORECASE,
    ),
    "bot_questions": re.compile(
        r"^(who are you|what are you|누구|뭐야|너 뭐야|what is this)[\s?]*$",
        re.IGNORECASE,
    ),
}

_PUNCTUATION_RE = re.compile(r"[?!.\s]")
_LETTER_RE = re.compile(r"[a-zA-Z가-힣]")

# Substituted for a batch whose LLM call or response parsing failed.
DEFAULT_CATEGORIZATION: dict[str, Any] = {
    "category": "other",
    "sentiment": "neutral",
    "is_substantive": True,
}

_LLM_CATEGORIES = ("question", "request", "feedback", "complaint", "information", "greeting", "other")
_SENTIMENTS = ("positive", "negative", "neutral")


class CategoryDefinition(BaseModel):
    name: str
    description: str
    keywords: list[str] = Field(default_factory=list)
    non_substantive: bool = False

    def embedding_text(self) -> str:
        return f"{self.name}: {self.description}. Keywords: {', '.join(self.keywords)}"


class Taxonomy(BaseModel):
    categories: list[CategoryDefinition]
    negative_keywords: list[str]
    positive_keywords: list[str]


@lru_cache(maxsize=1)
def load_taxonomy(path: Path = _TAXONOMY_PATH) -> Taxonomy:
    """Read the packaged category and sentiment lexicon."""
    with open(path, encoding="utf-8") as fh:
        cfg: dict[str, Any] = yaml.safe_load(fh)
    sentiment = cfg.get("sentiment", {})
    return Taxonomy(
        categories=[CategoryDefinition(**c) for c in cfg.get("categories", [])],
        negative_keywords=[str(k) for k in sentiment.get("negative", [])],
        positive_keywords=[str(k) for k in sentiment.get("positive", [])],
    )


# ── Rule helpers ───────────────────────────────────────────────────────────


def cosine_similarity(a: list[float], b: list[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def detect_sentiment(content: str) -> str:
    """Keyword sentiment where any negative cue outranks positive cues.

    "좋아요 버튼이 안 눌려요" ("the like button doesn't work") is negative
    even though it contains "좋".
    """
    taxonomy = load_taxonomy()
    lower = content.lower()
    if any(kw in lower for kw in taxonomy.negative_keywords):
        return "negative"
    if any(kw in lower for kw in taxonomy.positive_keywords):
        return "positive"
    return "neutral"


def check_is_substantive(content: str, category: str) -> bool:
    """Whether a message carries analyzable intent."""
    trimmed = content.strip()

    if len(trimmed) < config.MIN_MESSAGE_LENGTH:
        return False
    if category in {c.name for c in load_taxonomy().categories if c.non_substantive}:
        return False
    if any(p.match(trimmed) for p in NON_SUBSTANTIVE_PATTERNS.values()):
        return False
    if len(trimmed) < 20 and not _LETTER_RE.search(_PUNCTUATION_RE.sub("", trimmed)):
        return False
    return True


def calculate_filtering_breakdown(messages: list[CategorizedMessage]) -> FilteringBreakdown:
    """Why non-substantive messages were dropped, re-derived from the text."""
    breakdown = FilteringBreakdown()
    for msg in messages:
        if msg.is_substantive:
            continue
        content = msg.content.strip()
        if len(content) < config.MIN_MESSAGE_LENGTH:
            breakdown.short_messages += 1
        elif NON_SUBSTANTIVE_PATTERNS["greetings"].match(content) or msg.category == "greeting":
            breakdown.greetings += 1
        elif NON_SUBSTANTIVE_PATTERNS["chitchat"].match(content):
            breakdown.chitchat += 1
        else:
            breakdown.other += 1
    return breakdown


def _log_result(messages: list[CategorizedMessage], breakdown: FilteringBreakdown) -> None:
    substantive = sum(1 for m in messages if m.is_substantive)
    logger.info(
        "Categorized %d messages: %d substantive, %d non-substantive "
        "(greetings=%d, chitchat=%d, short=%d, other=%d)",
        len(messages),
        substantive,
        len(messages) - substantive,
        breakdown.greetings,
        breakdown.chitchat,
        breakdown.short_messages,
        breakdown.other,
    )


# ── Strategies ─────────────────────────────────────────────────────────────


class Categorizer(abc.ABC):
    @abc.abstractmethod
    async def categorize(self, messages: list[ParsedMessage]) -> CategorizerResult:
        """Return one categorized message per input, in input order."""


class LLMCategorizer(Categorizer):
    """Batch prompt classification; failed batches get default labels."""

    def __init__(self, completer: Completer, batch_size: int = config.CATEGORIZER_BATCH_SIZE) -> None:
        self._completer = completer
        self._batch_size = batch_size

    async def categorize(self, messages: list[ParsedMessage]) -> CategorizerResult:
        batches = [
            messages[i : i + self._batch_size]
            for i in range(0, len(messages), self._batch_size)
        ]
        results = await asyncio.gather(*(self._categorize_batch(b) for b in batches))
        categorized = [m for batch in results for m in batch]

        breakdown = calculate_filtering_breakdown(categorized)
        _log_result(categorized, breakdown)
        return CategorizerResult(messages=categorized, filtering_breakdown=breakdown)

    async def _categorize_batch(self, batch: list[ParsedMessage]) -> list[CategorizedMessage]:
        try:
            parsed = await complete_json(
                self._completer,
                _build_prompt(batch),
                max_tokens=2000,
                temperature=0.3,
            )
            by_index = {
                r["index"]: r for r in as_list(parsed.get("results"))
                if isinstance(r, dict) and isinstance(r.get("index"), int)
            }
            return [_with_labels(msg, _labels_from(by_index.get(idx, {}))) for idx, msg in enumerate(batch)]
        except Exception:
            logger.exception("Error categorizing batch of %d messages", len(batch))
            return [_with_labels(msg, DEFAULT_CATEGORIZATION) for msg in batch]


def _build_prompt(batch: list[ParsedMessage]) -> str:
    payload = json.dumps(
        [{"index": i, "content": m.content} for i, m in enumerate(batch)],
        ensure_ascii=False,
        indent=2,
    )
    return f"""Analyze the following user messages and categorize each one.

Messages:
{payload}

For each message, determine:
1. category: Main category (one of: {", ".join(f'"{c}"' for c in _LLM_CATEGORIES)})
2. subCategory: More specific sub-category (e.g., "technical_question", "feature_request", "bug_report")
3. intent: What the user is trying to accomplish
4. sentiment: Overall sentiment ("positive", "negative", or "neutral")
5. isSubstantive: Boolean - Does this message have analytical value?
   - true: Meaningful questions, requests, feedback, complaints, or information that provides insight
   - false: Greetings, small talk, simple acknowledgments ("ok", "thanks"), identity questions ("who are you?"), or chitchat with no actionable content

Respond in JSON format only:
{{
  "results": [
    {{
      "index": 0,
      "category": "question",
      "subCategory": "technical_question",
      "intent": "Understanding how to use a feature",
      "sentiment": "neutral",
      "isSubstantive": true
    }}
  ]
}}"""


def _labels_from(result: dict[str, Any]) -> dict[str, Any]:
    def text_or_none(value: Any) -> str | None:
        return value if isinstance(value, str) and value else None

    sentiment = result.get("sentiment")
    return {
        "category": text_or_none(result.get("category")) or DEFAULT_CATEGORIZATION["category"],
        "sub_category": text_or_none(result.get("subCategory")),
        "intent": text_or_none(result.get("intent")),
        "sentiment": sentiment if sentiment in _SENTIMENTS else DEFAULT_CATEGORIZATION["sentiment"],
        # Anything but an explicit false counts as substantive
        "is_substantive": result.get("isSubstantive") is not False,
    }


def _with_labels(msg: ParsedMessage, labels: dict[str, Any]) -> CategorizedMessage:
    data = msg.model_dump()
    data.update(labels)
    return CategorizedMessage(**data)


class EmbeddingCategorizer(Categorizer):
    """Nearest-category by cosine similarity plus rule-based sentiment."""

    def __init__(self, embed_fn: EmbedFunction, store: KeyValueStore) -> None:
        self._embed_fn = embed_fn
        self._store = store
        self._category_embeddings: dict[str, list[float]] | None = None

    async def initialize(self) -> dict[str, list[float]]:
        """Load category embeddings from cache, or embed and cache them."""
        if self._category_embeddings is not None:
            return self._category_embeddings

        cached = await self._store.get(config.CATEGORY_EMBEDDING_CACHE_KEY)
        if cached:
            try:
                loaded = json.loads(cached)
                if isinstance(loaded, dict) and loaded:
                    self._category_embeddings = loaded
                    logger.info("Loaded category embeddings from cache")
                    return loaded
            except ValueError:
                logger.warning("Invalid category embedding cache entry; regenerating")

        logger.info("Generating category embeddings...")
        categories = load_taxonomy().categories
        vectors = await self._embed_fn([c.embedding_text() for c in categories])
        embeddings = {c.name: v for c, v in zip(categories, vectors)}
        await self._store.set(
            config.CATEGORY_EMBEDDING_CACHE_KEY,
            json.dumps(embeddings),
            ttl=config.CATEGORY_EMBEDDING_CACHE_TTL_SECONDS,
        )
        self._category_embeddings = embeddings
        return embeddings

    async def categorize(self, messages: list[ParsedMessage]) -> CategorizerResult:
        category_embeddings = await self.initialize()
        categorized = [self._categorize_one(m, category_embeddings) for m in messages]
        breakdown = calculate_filtering_breakdown(categorized)
        _log_result(categorized, breakdown)
        return CategorizerResult(messages=categorized, filtering_breakdown=breakdown)

    @staticmethod
    def _categorize_one(
        msg: ParsedMessage,
        category_embeddings: dict[str, list[float]],
    ) -> CategorizedMessage:
        if not isinstance(msg, EmbeddedMessage):
            raise ValueError(f"Message {msg.id} has no embedding; run the embedder first.")

        best_category, best_score = "other", -1.0
        for name, vector in category_embeddings.items():
            score = cosine_similarity(msg.embedding, vector)
            if score > best_score:
                best_category, best_score = name, score

        return _with_labels(
            msg,
            {
                "category": best_category,
                "sentiment": detect_sentiment(msg.content),
                "is_substantive": check_is_substantive(msg.content, best_category),
            },
        )
