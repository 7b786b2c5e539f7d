"""Message embeddings with a content-addressed cache.

Identical content hashes to the same key, so a message that has been embedded
once is never sent to the embedding API again while its cache entry lives.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Awaitable, Callable

from threadreport import config
from threadreport.models import EmbeddedMessage, EmbedderResult, ParsedMessage
from threadreport.store import KeyValueStore

logger = logging.getLogger(__name__)

EmbedFunction = Callable[[list[str]], Awaitable[list[list[float]]]]


class OpenAIEmbedder:
    """``EmbedFunction`` backed by the OpenAI embeddings endpoint."""

    def __init__(self, api_key: str, model: str = config.EMBEDDING_MODEL) -> None:
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for the embedding pipeline but was empty."
            )
        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model

    async def __call__(self, texts: list[str]) -> list[list[float]]:
        resp = await self._client.embeddings.create(model=self._model, input=texts)
        return [d.embedding for d in resp.data]


def hash_content(content: str) -> str:
    """First 16 hex chars of the SHA-256 digest of *content*."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def _cache_key(digest: str) -> str:
    return f"{config.EMBEDDING_CACHE_PREFIX}{digest}"


def _decode(cached: str | None) -> list[float] | None:
    if not cached:
        return None
    try:
        value = json.loads(cached)
    except ValueError:
        return None
    return value if isinstance(value, list) else None


async def embed_messages(
    messages: list[ParsedMessage],
    embed_fn: EmbedFunction,
    store: KeyValueStore,
    *,
    batch_size: int = config.EMBEDDING_BATCH_SIZE,
) -> EmbedderResult:
    """Attach an embedding to every message, reusing cached vectors.

    An error from *embed_fn* propagates; there is no partial-batch fallback.
    """
    if not messages:
        return EmbedderResult()

    digests = [hash_content(m.content) for m in messages]
    cached = await store.mget([_cache_key(d) for d in digests])

    vectors: list[list[float] | None] = [_decode(c) for c in cached]
    misses = [i for i, v in enumerate(vectors) if v is None]
    cache_hits = len(messages) - len(misses)

    # One API slot per distinct uncached text; duplicates share its vector
    sharing: dict[str, list[int]] = {}
    for i in misses:
        sharing.setdefault(digests[i], []).append(i)
    unique = [indices[0] for indices in sharing.values()]
    logger.info(
        "Cache: %d hits, %d misses (%d unique) of %d total",
        cache_hits,
        len(misses),
        len(unique),
        len(messages),
    )

    batches = [unique[i : i + batch_size] for i in range(0, len(unique), batch_size)]

    async def _embed_batch(batch_num: int, indices: list[int]) -> None:
        logger.info("Generating embeddings: batch %d/%d", batch_num, len(batches))
        embeddings = await embed_fn([messages[i].content for i in indices])
        if len(embeddings) != len(indices):
            raise ValueError(
                f"Embedding API returned {len(embeddings)} vectors for {len(indices)} texts"
            )
        writes: dict[str, str] = {}
        for idx, vector in zip(indices, embeddings):
            for same in sharing[digests[idx]]:
                vectors[same] = vector
            writes[_cache_key(digests[idx])] = json.dumps(vector)
        await store.set_many(writes, ttl=config.EMBEDDING_CACHE_TTL_SECONDS)

    await asyncio.gather(*(_embed_batch(n, b) for n, b in enumerate(batches, start=1)))

    embedded = [
        EmbeddedMessage(**msg.model_dump(), embedding=vector)
        for msg, vector in zip(messages, vectors)
    ]
    logger.info("Complete: %d cached, %d new embeddings", cache_hits, len(misses))
    return EmbedderResult(messages=embedded, cache_hits=cache_hits, new_embeddings=len(misses))
