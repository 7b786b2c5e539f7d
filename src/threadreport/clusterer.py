"""Group substantive messages into topic clusters.

Two interchangeable strategies share the :class:`Clusterer` contract:

* :class:`EmbeddingClusterer` projects embeddings to 2D with UMAP and
  partitions the points with deterministically seeded k-means.
* :class:`LLMTopicClusterer` asks the model for topic names, assigns messages
  to them in batches, then summarises each topic.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import random
import uuid
from collections import Counter, defaultdict
from collections.abc import Callable, Sequence
from typing import Any

import numpy as np

from threadreport import config
from threadreport.cluster_analyzer import fallback_analysis, parse_action_items, parse_summary
from threadreport.llm import Completer, as_list, coerce_text, complete_json, language_instruction
from threadreport.models import (
    CategorizedMessage,
    ClusterSummary,
    ClustererResult,
    MessageCluster,
    ProjectionPoint,
    opinions_from_texts,
)

logger = logging.getLogger(__name__)

Reducer = Callable[[np.ndarray], np.ndarray]


def calculate_cluster_sentiment(messages: Sequence[CategorizedMessage]) -> str:
    """Majority (>60%) sentiment, "mixed" when both poles appear, else neutral."""
    total = len(messages)
    if total == 0:
        return "neutral"

    counts = Counter(m.sentiment for m in messages)
    if counts["positive"] / total > 0.6:
        return "positive"
    if counts["negative"] / total > 0.6:
        return "negative"
    if counts["positive"] > 0 and counts["negative"] > 0:
        return "mixed"
    return "neutral"


def kmeans(
    points: Sequence[Sequence[float]] | np.ndarray,
    k: int,
    max_iterations: int = config.KMEANS_MAX_ITERATIONS,
) -> list[int]:
    """K-means with evenly spaced initial centroids.

    The same input always yields the same assignments.
    """
    data = np.asarray(points, dtype=float)
    n = len(data)
    if n == 0:
        return []
    if k >= n:
        return list(range(n))

    step = n // k
    centroids = np.array([data[i * step] for i in range(k)])
    assignments = np.zeros(n, dtype=int)

    for _ in range(max_iterations):
        distances = np.linalg.norm(data[:, None, :] - centroids[None, :, :], axis=2)
        new_assignments = distances.argmin(axis=1)
        if np.array_equal(assignments, new_assignments):
            break
        assignments = new_assignments

        for c in range(k):
            members = data[assignments == c]
            if len(members):
                centroids[c] = members.mean(axis=0)

    return [int(a) for a in assignments]


def reduce_to_2d(embeddings: np.ndarray) -> np.ndarray:
    """UMAP projection of *embeddings* onto two dimensions."""
    import umap

    reducer = umap.UMAP(
        n_components=2,
        n_neighbors=min(config.UMAP_N_NEIGHBORS, len(embeddings) - 1),
        min_dist=config.UMAP_MIN_DIST,
        spread=config.UMAP_SPREAD,
        random_state=config.UMAP_RANDOM_STATE,
    )
    return reducer.fit_transform(embeddings)


def _substantive_only(messages: list[CategorizedMessage]) -> list[CategorizedMessage]:
    kept = [m for m in messages if m.is_substantive]
    if len(kept) != len(messages):
        logger.warning("Dropped %d non-substantive messages before clustering", len(messages) - len(kept))
    return kept


class Clusterer(abc.ABC):
    @abc.abstractmethod
    async def cluster(self, messages: list[CategorizedMessage]) -> ClustererResult:
        """Return non-empty clusters covering the substantive input messages."""


# ── Strategy B: UMAP + k-means ─────────────────────────────────────────────


class EmbeddingClusterer(Clusterer):
    def __init__(
        self,
        num_clusters: int = config.DEFAULT_NUM_CLUSTERS,
        *,
        min_messages: int = config.MIN_MESSAGES_FOR_CLUSTERING,
        reducer: Reducer = reduce_to_2d,
    ) -> None:
        self._num_clusters = num_clusters
        self._min_messages = min_messages
        self._reducer = reducer

    async def cluster(self, messages: list[CategorizedMessage]) -> ClustererResult:
        messages = _substantive_only(messages)
        logger.info("Starting clustering: %d messages, target %d clusters", len(messages), self._num_clusters)

        if not messages:
            return ClustererResult(clusters=[], projection=[])
        if len(messages) < self._min_messages:
            logger.info("Too few messages (%d), creating single cluster", len(messages))
            return _single_cluster(messages)

        missing = [m.id for m in messages if m.embedding is None]
        if missing:
            raise ValueError(f"{len(missing)} messages have no embedding (first: {missing[0]})")

        k = min(self._num_clusters, len(messages) // 2)
        # CPU-bound; keep the event loop free for other jobs
        reduced = np.asarray(
            await asyncio.to_thread(self._reducer, np.array([m.embedding for m in messages]))
        )
        logger.info("Projection complete: %d points in 2D; running k-means with k=%d", len(reduced), k)
        assignments = await asyncio.to_thread(kmeans, reduced, k)

        groups: dict[int, list[CategorizedMessage]] = defaultdict(list)
        for msg, cluster_id in zip(messages, assignments):
            groups[cluster_id].append(msg)

        clusters = [
            MessageCluster(
                id=f"cluster-{cluster_id}",
                topic=f"Cluster {cluster_id + 1}",
                messages=members,
                summary=ClusterSummary(sentiment=calculate_cluster_sentiment(members)),
            )
            for cluster_id, members in sorted(groups.items())
            if members
        ]
        projection = [
            ProjectionPoint(id=m.id, x=float(xy[0]), y=float(xy[1]), cluster_id=cid)
            for m, xy, cid in zip(messages, reduced, assignments)
        ]

        logger.info(
            "Created %d clusters: %s",
            len(clusters),
            ", ".join(f"{c.topic}({len(c.messages)})" for c in clusters),
        )
        return ClustererResult(clusters=clusters, projection=projection)


def _single_cluster(messages: list[CategorizedMessage]) -> ClustererResult:
    cluster = MessageCluster(
        id="cluster-0",
        topic="All Messages",
        messages=messages,
        summary=ClusterSummary(sentiment=calculate_cluster_sentiment(messages)),
    )
    # Plain grid layout for small datasets
    projection = [
        ProjectionPoint(id=m.id, x=float(i % 10), y=float(i // 10), cluster_id=0)
        for i, m in enumerate(messages)
    ]
    return ClustererResult(clusters=[cluster], projection=projection)


# ── Strategy A: LLM topic assignment ───────────────────────────────────────


class LLMTopicClusterer(Clusterer):
    def __init__(
        self,
        completer: Completer,
        language: str = "en",
        *,
        batch_size: int = config.CLUSTERER_BATCH_SIZE,
        rng: random.Random | None = None,
    ) -> None:
        self._completer = completer
        self._language = language
        self._batch_size = batch_size
        self._rng = rng or random.Random()

    async def cluster(self, messages: list[CategorizedMessage]) -> ClustererResult:
        messages = _substantive_only(messages)
        if not messages:
            return ClustererResult()

        topics = await self.identify_topics(messages)
        if not topics:
            return ClustererResult()

        batches = [
            messages[i : i + self._batch_size]
            for i in range(0, len(messages), self._batch_size)
        ]
        results = await asyncio.gather(*(self._assign_batch(b, topics) for b in batches))

        assignments: dict[str, list[CategorizedMessage]] = {t: [] for t in topics}
        for batch_assignments in results:
            for topic, members in batch_assignments.items():
                assignments[topic].extend(members)

        non_empty = [(t, members) for t, members in assignments.items() if members]
        clusters = await asyncio.gather(
            *(self._summarize_topic(topic, members) for topic, members in non_empty)
        )
        ordered = sorted(clusters, key=lambda c: len(c.messages), reverse=True)
        logger.info("Created %d topic clusters from %d topics", len(ordered), len(topics))
        return ClustererResult(clusters=ordered)

    async def identify_topics(self, messages: list[CategorizedMessage]) -> list[str]:
        """Ask for 3-10 topic names; fall back to the distinct categories."""
        sample = self._rng.sample(messages, min(len(messages), config.SAMPLE_SIZE_FOR_TOPICS))
        contents = "\n---\n".join(m.content for m in sample)
        prompt = f"""Analyze the following user messages and identify the main topics/themes being discussed.

{language_instruction(self._language, "topic names and descriptions")}

Messages:
{contents}

Instructions:
1. Identify 3-10 main topics that emerge from these messages
2. Topics should be specific enough to be meaningful but broad enough to group multiple messages
3. Focus on what users are asking about or discussing

Respond in JSON format only:
{{
  "topics": [
    {{"name": "Topic name", "description": "Brief description of what this topic covers"}}
  ]
}}"""
        try:
            parsed = await complete_json(self._completer, prompt, max_tokens=1500, temperature=0.3)
            topics = [
                coerce_text(t.get("name") if isinstance(t, dict) else t)
                for t in as_list(parsed.get("topics"))
            ]
            topics = list(dict.fromkeys(t for t in topics if t))
        except Exception:
            logger.exception("Error identifying topics; using categories instead")
            topics = []

        if not topics:
            topics = list(dict.fromkeys(m.category for m in messages))
        return topics

    async def _assign_batch(
        self,
        batch: list[CategorizedMessage],
        topics: list[str],
    ) -> dict[str, list[CategorizedMessage]]:
        result: dict[str, list[CategorizedMessage]] = {t: [] for t in topics}
        payload = json.dumps(
            [{"index": i, "content": m.content} for i, m in enumerate(batch)],
            ensure_ascii=False,
            indent=2,
        )
        numbered = "\n".join(f"{i + 1}. {t}" for i, t in enumerate(topics))
        prompt = f"""Assign each message to the most relevant topic.

Topics:
{numbered}

Messages:
{payload}

Instructions:
- Assign each message to exactly one topic, using the topic number
- If a message doesn't fit any topic well, assign it to the closest match

Respond in JSON format only:
{{
  "assignments": [
    {{"index": 0, "topic": 1}}
  ]
}}"""
        try:
            parsed = await complete_json(self._completer, prompt, max_tokens=1500, temperature=0.3)
        except Exception:
            logger.exception("Error assigning batch to topics; using first topic")
            result[topics[0]] = list(batch)
            return result

        seen: set[int] = set()
        for entry in as_list(parsed.get("assignments")):
            if not isinstance(entry, dict):
                continue
            idx = entry.get("index")
            topic = _resolve_topic(entry.get("topic"), topics)
            if isinstance(idx, int) and 0 <= idx < len(batch) and idx not in seen and topic:
                seen.add(idx)
                result[topic].append(batch[idx])
        return result

    async def _summarize_topic(
        self,
        topic: str,
        members: list[CategorizedMessage],
    ) -> MessageCluster:
        cluster = MessageCluster(
            id=str(uuid.uuid4()),
            topic=topic,
            description=f'Messages related to "{topic}"',
            messages=members,
            summary=ClusterSummary(sentiment=calculate_cluster_sentiment(members)),
        )
        sample = self._rng.sample(members, min(len(members), config.MAX_SAMPLE_MESSAGES_PER_CLUSTER))
        contents = "\n---\n".join(m.content for m in sample)
        prompt = f"""Summarize the different opinions and perspectives expressed about "{topic}" in these messages.

{language_instruction(self._language, "opinion summaries and recommendations")}

Messages:
{contents}

Instructions:
1. Identify 3-7 distinct opinions or viewpoints and summarize each in 1-2 sentences
2. List the consensus points and any conflicting views
3. Give the overall sentiment ("positive", "negative", "mixed", "neutral")
4. Suggest 1-3 actionable next steps

Respond in JSON format only:
{{
  "opinions": ["Opinion summary 1", "Opinion summary 2"],
  "summary": {{"consensus": [], "conflicting": [], "sentiment": "mixed"}},
  "nextSteps": [{{"action": "...", "priority": "high", "rationale": "..."}}]
}}"""
        try:
            parsed = await complete_json(self._completer, prompt, max_tokens=1500, temperature=0.5)
            texts = [coerce_text(op) for op in as_list(parsed.get("opinions"))]
            return cluster.model_copy(
                update={
                    "opinions": opinions_from_texts(texts, cluster.id),
                    "summary": parse_summary(parsed.get("summary"), cluster.summary.sentiment),
                    "next_steps": parse_action_items(parsed.get("nextSteps")),
                }
            )
        except Exception:
            logger.exception("Error summarizing opinions for topic %r", topic)
            return fallback_analysis(cluster)


def _resolve_topic(value: Any, topics: list[str]) -> str | None:
    """Map a 1-based topic number (or a topic name) to a topic."""
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and not isinstance(value, bool):
        return topics[value - 1] if 1 <= value <= len(topics) else None
    if isinstance(value, str) and value in topics:
        return value
    return None
