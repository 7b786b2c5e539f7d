"""Executive synthesis across all analyzed clusters."""

from __future__ import annotations

import json
import logging

from threadreport.cluster_analyzer import parse_action_items
from threadreport.llm import Completer, as_list, coerce_text, complete_json, language_instruction
from threadreport.models import MessageCluster, ReportStatistics, ReportSynthesis

logger = logging.getLogger(__name__)

EMPTY_SYNTHESIS = ReportSynthesis()

_OVERALL_SENTIMENTS = ("positive", "negative", "mixed", "neutral")


async def synthesize_report(
    clusters: list[MessageCluster],
    statistics: ReportStatistics,
    completer: Completer,
    language: str = "en",
) -> ReportSynthesis:
    """One model call summarising the clusters; never raises."""
    logger.info("Starting synthesis: %d clusters, language=%s", len(clusters), language)
    if not clusters:
        logger.warning("No clusters to synthesize")
        return EMPTY_SYNTHESIS.model_copy()

    try:
        parsed = await complete_json(
            completer,
            _build_prompt(clusters, statistics, language),
            max_tokens=2000,
            temperature=0.5,
        )
        sentiment = parsed.get("overallSentiment")
        synthesis = ReportSynthesis(
            overall_sentiment=sentiment if sentiment in _OVERALL_SENTIMENTS else "neutral",
            key_findings=[coerce_text(f) for f in as_list(parsed.get("keyFindings"))],
            top_priorities=parse_action_items(parsed.get("topPriorities")),
            executive_summary=coerce_text(parsed.get("executiveSummary") or ""),
        )
    except Exception:
        logger.exception("Error synthesizing report")
        return EMPTY_SYNTHESIS.model_copy()

    logger.info("Synthesis completed")
    return synthesis


def _build_prompt(clusters: list[MessageCluster], statistics: ReportStatistics, language: str) -> str:
    summaries = json.dumps(
        [
            {
                "topic": c.topic,
                "messageCount": len(c.messages),
                "sentiment": c.summary.sentiment,
                "consensus": c.summary.consensus,
                "conflicting": c.summary.conflicting,
                "nextSteps": [s.model_dump() for s in c.next_steps],
            }
            for c in clusters
        ],
        ensure_ascii=False,
        indent=2,
    )
    return f"""You are analyzing user feedback for a product/service. Synthesize the following topic analyses into an executive summary.

{language_instruction(language)}

Overall Statistics:
- Total messages analyzed: {statistics.total_messages}
- Total threads: {statistics.total_threads}
- Sentiment distribution: {json.dumps(statistics.sentiment_distribution)}

Topic Analyses:
{summaries}

Instructions:
1. Determine the overall sentiment across all topics
2. Identify 3-5 key findings that decision makers should know
3. Prioritize the top 3-5 action items from all topics (combine similar ones, rank by impact)
4. Write a 2-3 sentence executive summary for busy stakeholders

Respond in JSON format only:
{{
  "overallSentiment": "mixed",
  "keyFindings": ["Finding 1: ...", "Finding 2: ..."],
  "topPriorities": [{{"action": "Most important action", "priority": "high", "rationale": "Why this matters most"}}],
  "executiveSummary": "A concise 2-3 sentence summary."
}}"""
