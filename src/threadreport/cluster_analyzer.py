"""Label and summarise embedding clusters with contrastive prompting.

Each prompt shows the model examples from inside the cluster next to examples
from other clusters so that the topic label describes what sets the cluster
apart rather than what all messages have in common.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any

from threadreport.llm import (
    Completer,
    as_list,
    coerce_text,
    complete_json,
    language_instruction,
    truncate,
)
from threadreport.models import (
    ActionItem,
    CategorizedMessage,
    ClusterSummary,
    MessageCluster,
    Opinion,
)

logger = logging.getLogger(__name__)

MAX_INSIDE_EXAMPLES = 10
MAX_OUTSIDE_EXAMPLES = 5
MAX_CONTENT_LENGTH = 150
_PRIORITIES = ("high", "medium", "low")
_CLUSTER_SENTIMENTS = ("positive", "negative", "mixed", "neutral")


def fallback_analysis(cluster: MessageCluster) -> MessageCluster:
    """Minimal analysis used when the model call for *cluster* fails."""
    return cluster.model_copy(
        update={
            "opinions": [
                Opinion(
                    id=f"{cluster.id}-op-0",
                    text=f"{len(cluster.messages)} messages about this topic",
                )
            ],
            "summary": ClusterSummary(sentiment=cluster.summary.sentiment),
            "next_steps": [],
        }
    )


def parse_summary(raw: Any, default_sentiment: str = "neutral") -> ClusterSummary:
    raw = raw if isinstance(raw, dict) else {}
    sentiment = raw.get("sentiment")
    return ClusterSummary(
        consensus=[coerce_text(s) for s in as_list(raw.get("consensus"))],
        conflicting=[coerce_text(s) for s in as_list(raw.get("conflicting"))],
        sentiment=sentiment if sentiment in _CLUSTER_SENTIMENTS else default_sentiment,
    )


def parse_action_items(raw: Any) -> list[ActionItem]:
    """Build action items from model output, dropping entries without an action."""
    items: list[ActionItem] = []
    for step in as_list(raw):
        if not isinstance(step, dict) or not step.get("action"):
            continue
        priority = step.get("priority")
        items.append(
            ActionItem(
                action=str(step["action"]),
                priority=priority if priority in _PRIORITIES else "medium",
                rationale=str(step.get("rationale") or ""),
            )
        )
    return items


async def analyze_clusters(
    clusters: list[MessageCluster],
    completer: Completer,
    language: str = "en",
) -> list[MessageCluster]:
    """Analyze every cluster concurrently; order is preserved."""
    logger.info("Analyzing %d clusters", len(clusters))
    if not clusters:
        return []

    all_messages = [m for c in clusters for m in c.messages]
    analyzed = await asyncio.gather(
        *(_analyze_cluster(c, all_messages, completer, language) for c in clusters)
    )
    logger.info("Complete: %d clusters analyzed", len(analyzed))
    return list(analyzed)


async def _analyze_cluster(
    cluster: MessageCluster,
    all_messages: list[CategorizedMessage],
    completer: Completer,
    language: str,
) -> MessageCluster:
    try:
        parsed = await complete_json(
            completer,
            _build_prompt(cluster, all_messages, language),
            max_tokens=2000,
            temperature=0.3,
        )
        opinions = [
            Opinion(id=f"{cluster.id}-op-{idx}", text=coerce_text(op))
            for idx, op in enumerate(as_list(parsed.get("opinions")))
        ]
        return cluster.model_copy(
            update={
                "topic": coerce_text(parsed.get("topic") or "") or cluster.topic,
                "description": coerce_text(parsed.get("description") or "") or cluster.description,
                "opinions": opinions,
                "summary": parse_summary(parsed.get("summary"), cluster.summary.sentiment),
                "next_steps": parse_action_items(parsed.get("nextSteps")),
            }
        )
    except Exception:
        logger.exception("Error analyzing cluster %s", cluster.id)
        return fallback_analysis(cluster)


def _build_prompt(
    cluster: MessageCluster,
    all_messages: list[CategorizedMessage],
    language: str,
) -> str:
    inside = "\n".join(
        f'- "{truncate(m.content, MAX_CONTENT_LENGTH)}"'
        for m in cluster.messages[:MAX_INSIDE_EXAMPLES]
    )
    member_ids = {m.id for m in cluster.messages}
    outside_messages = [m for m in all_messages if m.id not in member_ids]
    outside = "\n".join(
        f'- "{truncate(m.content, int(MAX_CONTENT_LENGTH / 1.5))}"'
        for m in outside_messages[:MAX_OUTSIDE_EXAMPLES]
    )
    counts = Counter(m.sentiment for m in cluster.messages)

    return f"""You are analyzing a cluster of user feedback messages.

{language_instruction(language)}

## Context
Total messages in cluster: {len(cluster.messages)}
Sentiment distribution: {counts["positive"]} positive, {counts["negative"]} negative, {counts["neutral"]} neutral

## Examples OUTSIDE this cluster (for contrast):
{outside or "No outside examples available"}

## Examples INSIDE this cluster:
{inside}

## Tasks
Based on the contrast between messages inside and outside the cluster, provide:

1. **Topic Label**: A short, descriptive topic name (3-5 words)
2. **Description**: One sentence describing what this cluster is about
3. **Opinions**: 3-7 distinct opinions expressed by users in this cluster
4. **Summary**:
   - consensus: Common opinions shared by most users
   - conflicting: Conflicting opinions (if any)
   - sentiment: Overall sentiment ("positive", "negative", "mixed", "neutral")
5. **Next Steps**: 1-3 actionable recommendations based on the feedback

Respond in JSON format only:
{{
  "topic": "Topic label",
  "description": "What this cluster is about",
  "opinions": ["Opinion 1", "Opinion 2"],
  "summary": {{
    "consensus": ["Common opinion 1"],
    "conflicting": ["Some users want X while others prefer Y"],
    "sentiment": "mixed"
  }},
  "nextSteps": [
    {{"action": "Specific action to take", "priority": "high", "rationale": "Why this is important"}}
  ]
}}"""
