"""Descriptive statistics over the categorized message set."""

from __future__ import annotations

import datetime as dt
from collections import Counter

from threadreport.models import (
    CategorizedMessage,
    DateRange,
    FilteringBreakdown,
    MessageCluster,
    ReportStatistics,
    TopicCount,
)

TOP_TOPICS_LIMIT = 10


def analyze_data(
    messages: list[CategorizedMessage],
    clusters: list[MessageCluster],
    thread_count: int,
    total_before_sampling: int,
    was_sampled: bool,
    non_substantive_count: int,
    filtering_breakdown: FilteringBreakdown | None = None,
) -> ReportStatistics:
    """Build report statistics. *messages* is the substantive set."""
    sentiments = {"positive": 0, "negative": 0, "neutral": 0}
    sentiments.update(Counter(m.sentiment for m in messages))

    return ReportStatistics(
        total_messages=len(messages),
        total_threads=thread_count,
        date_range=_date_range(messages),
        category_distribution=dict(Counter(m.category or "other" for m in messages)),
        sentiment_distribution=sentiments,
        top_topics=_top_topics(clusters),
        average_messages_per_thread=len(messages) / thread_count if thread_count > 0 else 0.0,
        total_messages_before_sampling=total_before_sampling,
        was_sampled=was_sampled,
        non_substantive_count=non_substantive_count,
        filtering_breakdown=filtering_breakdown,
    )


def _date_range(messages: list[CategorizedMessage]) -> DateRange:
    if not messages:
        now = dt.datetime.now(dt.UTC)
        return DateRange(start=now, end=now)
    timestamps = [m.timestamp for m in messages]
    return DateRange(start=min(timestamps), end=max(timestamps))


def _top_topics(clusters: list[MessageCluster]) -> list[TopicCount]:
    total = sum(len(c.messages) for c in clusters)
    topics = [
        TopicCount(
            topic=c.topic,
            count=len(c.messages),
            percentage=round(len(c.messages) / total * 100, 1) if total else 0.0,
        )
        for c in clusters
    ]
    topics.sort(key=lambda t: t.count, reverse=True)
    return topics[:TOP_TOPICS_LIMIT]
