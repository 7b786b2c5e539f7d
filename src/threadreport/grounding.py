"""Link each generated opinion back to the messages that support it."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from threadreport import config
from threadreport.llm import Completer, as_list, complete_json
from threadreport.models import CategorizedMessage, GroundingResult, MessageCluster, Opinion

logger = logging.getLogger(__name__)


async def ground_opinions(clusters: list[MessageCluster], completer: Completer) -> GroundingResult:
    """Ground every cluster concurrently and report the elapsed time."""
    start = time.monotonic()
    logger.info("Starting grounding for %d clusters", len(clusters))

    grounded = await asyncio.gather(*(_ground_cluster(c, completer) for c in clusters))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info("Completed grounding in %dms for %d clusters", elapsed_ms, len(clusters))
    return GroundingResult(clusters=list(grounded), performance_ms=elapsed_ms)


async def _ground_cluster(cluster: MessageCluster, completer: Completer) -> MessageCluster:
    if not cluster.opinions or not cluster.messages:
        logger.info("Skipping cluster %r: no opinions or messages", cluster.topic)
        return cluster

    try:
        parsed = await complete_json(
            completer,
            _build_prompt(cluster),
            max_tokens=2000,
            temperature=0.2,
        )
        groundings = [g for g in as_list(parsed.get("groundings")) if isinstance(g, dict)]
        opinions = apply_groundings(cluster.opinions, groundings, cluster.messages)
    except Exception:
        logger.exception("Error grounding cluster %r", cluster.topic)
        return cluster.model_copy(
            update={
                "opinions": [
                    op.model_copy(update={"supporting_messages": [], "mention_count": 0})
                    for op in cluster.opinions
                ]
            }
        )

    logger.info(
        "Grounded %d/%d opinions in cluster %r",
        sum(1 for op in opinions if op.supporting_messages),
        len(opinions),
        cluster.topic,
    )
    return cluster.model_copy(update={"opinions": opinions})


def apply_groundings(
    opinions: list[Opinion],
    groundings: list[dict[str, Any]],
    messages: list[CategorizedMessage],
) -> list[Opinion]:
    """Translate model grounding entries (index based) into opinion fields.

    Out-of-range or non-integer message indices are dropped. Opinions without
    a usable entry keep their existing support, which is normally empty.
    """
    by_opinion = {
        g["opinionIndex"]: g for g in groundings
        if isinstance(g.get("opinionIndex"), int) and not isinstance(g["opinionIndex"], bool)
    }

    grounded: list[Opinion] = []
    for idx, opinion in enumerate(opinions):
        entry = by_opinion.get(idx)
        if entry is None:
            grounded.append(opinion)
            continue

        indices = [
            i for i in as_list(entry.get("supportingMessageIndices"))
            if isinstance(i, int) and not isinstance(i, bool) and 0 <= i < len(messages)
        ]
        supporting = [messages[i].id for i in indices]
        mention_count = entry.get("mentionCount")
        if not isinstance(mention_count, int) or isinstance(mention_count, bool) or mention_count <= 0:
            mention_count = len(supporting)
        confidence = entry.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = None

        grounded.append(
            opinion.model_copy(
                update={
                    "supporting_messages": supporting,
                    "mention_count": mention_count,
                    "representative_quote": messages[indices[0]].content if indices else None,
                    "confidence": float(confidence) if confidence is not None else None,
                }
            )
        )
    return grounded


def _build_prompt(cluster: MessageCluster) -> str:
    opinions = json.dumps(
        [{"index": i, "id": op.id, "text": op.text, "type": op.type} for i, op in enumerate(cluster.opinions)],
        ensure_ascii=False,
        indent=2,
    )
    messages = json.dumps(
        [
            {"index": i, "id": m.id, "content": m.content[: config.GROUNDING_CONTENT_CHARS]}
            for i, m in enumerate(cluster.messages)
        ],
        ensure_ascii=False,
        indent=2,
    )
    return f"""You are analyzing a cluster of user messages to link opinions to supporting quotes.

Cluster Topic: "{cluster.topic}"

Opinions to ground:
{opinions}

Messages in this cluster:
{messages}

Instructions:
For each opinion, identify which messages support it:
1. Find messages that express or relate to the opinion (semantic similarity counts)
2. Select the 1-3 best representative messages
3. Count the total number of messages that support this opinion (mentionCount)
4. Rate your confidence (0-1) in how well the messages support the opinion

supportingMessageIndices uses the message "index" values. If an opinion has no
clear supporting messages, use an empty array and confidence 0.

Respond in JSON format only:
{{
  "groundings": [
    {{"opinionIndex": 0, "supportingMessageIndices": [2, 5, 8], "mentionCount": 12, "confidence": 0.9}}
  ]
}}"""
