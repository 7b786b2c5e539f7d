"""Chart-ready data: scatter plot, topic tree and distribution charts."""

from __future__ import annotations

import logging
import random
import time
from collections import Counter
from typing import Literal

from pydantic import BaseModel

from threadreport.config import VISUALIZATION_TARGET_MS
from threadreport.models import (
    Axis,
    CategorizedMessage,
    ChartData,
    ChartDatum,
    DateRange,
    MessageCluster,
    ProjectionPoint,
    ReportStatistics,
    ScatterPlotData,
    ScatterPoint,
    TopicTreeData,
    TreeLink,
    TreeNode,
    VisualizationData,
)

logger = logging.getLogger(__name__)

AxisKind = Literal["sentiment", "time", "priority", "custom"]

MAX_POINTS_PER_CLUSTER = 50
MAX_TREE_MESSAGES_PER_CLUSTER = 10

SENTIMENT_COLORS = {
    "positive": "#4CAF50",
    "negative": "#F44336",
    "neutral": "#9E9E9E",
    "mixed": "#FFC107",
}

CATEGORY_COLORS = {
    "question": "#2196F3",
    "request": "#4ECDC4",
    "feedback": "#95E1D3",
    "complaint": "#FF6B6B",
    "information": "#FFA07A",
    "other": "#9E9E9E",
}

_AXES = {
    "sentiment": Axis(label="Sentiment", min=-1, max=1),
    "time": Axis(label="Time", min=0, max=1),
    "priority": Axis(label="Priority", min=0, max=1),
    "custom": Axis(label="Custom", min=0, max=1),
}

_SENTIMENT_SCORES = {"positive": 0.7, "negative": -0.7, "neutral": 0.0, "mixed": 0.1}
_MESSAGE_PRIORITY = {"negative": 0.8, "positive": 0.3, "neutral": 0.5}


class ScatterPlotConfig(BaseModel):
    x_axis: AxisKind = "sentiment"
    y_axis: AxisKind = "priority"
    point_type: Literal["message", "topic", "both"] = "both"


def sentiment_color(sentiment: str | None) -> str:
    return SENTIMENT_COLORS.get(sentiment or "neutral", SENTIMENT_COLORS["neutral"])


def generate_visualization_data(
    clusters: list[MessageCluster],
    statistics: ReportStatistics,
    projection: list[ProjectionPoint] | None = None,
    *,
    config: ScatterPlotConfig | None = None,
    include_messages: bool = False,
    rng: random.Random | None = None,
) -> VisualizationData:
    """Assemble all visualization payloads for a report.

    The scatter plot uses the clustering projection when one is given and
    synthetic axis coordinates otherwise.
    """
    start = time.monotonic()
    config = config or ScatterPlotConfig()
    rng = rng or random.Random()
    logger.info("Generating visualization data for %d clusters", len(clusters))

    if projection:
        scatter = _scatter_from_projection(clusters, projection)
    else:
        scatter = _scatter_from_axes(clusters, statistics.date_range, config, rng)

    visualization = VisualizationData(
        scatter_plot=scatter,
        topic_tree=generate_topic_tree(clusters, include_messages=include_messages),
        charts=generate_charts(statistics, clusters),
    )

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Generated %d scatter points and %d tree nodes in %dms",
        len(scatter.points),
        len(visualization.topic_tree.nodes),
        elapsed_ms,
    )
    if elapsed_ms > VISUALIZATION_TARGET_MS:
        logger.warning(
            "Visualization generation took %dms, exceeding the %dms target",
            elapsed_ms,
            VISUALIZATION_TARGET_MS,
        )
    return visualization


# ── Scatter plot ───────────────────────────────────────────────────────────


def _label(content: str, length: int) -> str:
    return content[:length] + "..." if len(content) > length else content


def _topic_size(cluster: MessageCluster) -> float:
    return 0.2 + min(len(cluster.messages) / 100, 1) * 0.8


def _topic_point(cluster: MessageCluster, x: float, y: float) -> ScatterPoint:
    return ScatterPoint(
        id=cluster.id,
        type="topic",
        x=x,
        y=y,
        label=cluster.topic,
        size=_topic_size(cluster),
        color=sentiment_color(cluster.summary.sentiment),
        metadata={"sentiment": cluster.summary.sentiment, "messageCount": len(cluster.messages)},
    )


def _message_point(message: CategorizedMessage, cluster: MessageCluster, x: float, y: float) -> ScatterPoint:
    return ScatterPoint(
        id=message.id,
        type="message",
        x=x,
        y=y,
        label=_label(message.content, 50),
        size=0.3,
        color=sentiment_color(message.sentiment),
        metadata={"sentiment": message.sentiment, "category": message.category, "topicId": cluster.id},
    )


def _scatter_from_projection(
    clusters: list[MessageCluster],
    projection: list[ProjectionPoint],
) -> ScatterPlotData:
    coords = {p.id: p for p in projection}
    min_x = min(p.x for p in projection)
    min_y = min(p.y for p in projection)
    range_x = (max(p.x for p in projection) - min_x) or 1.0
    range_y = (max(p.y for p in projection) - min_y) or 1.0

    def norm(p: ProjectionPoint) -> tuple[float, float]:
        return (p.x - min_x) / range_x, (p.y - min_y) / range_y

    points: list[ScatterPoint] = []
    for cluster in clusters:
        placed = [m for m in cluster.messages if m.id in coords]
        if not placed:
            continue

        xs, ys = zip(*(norm(coords[m.id]) for m in placed))
        points.append(_topic_point(cluster, sum(xs) / len(xs), sum(ys) / len(ys)))

        for message in placed[:MAX_POINTS_PER_CLUSTER]:
            if message.is_substantive:
                points.append(_message_point(message, cluster, *norm(coords[message.id])))

    return ScatterPlotData(
        points=points,
        axes={
            "x": Axis(label="UMAP Dimension 1", min=0, max=1),
            "y": Axis(label="UMAP Dimension 2", min=0, max=1),
        },
    )


def _scatter_from_axes(
    clusters: list[MessageCluster],
    date_range: DateRange,
    config: ScatterPlotConfig,
    rng: random.Random,
) -> ScatterPlotData:
    points: list[ScatterPoint] = []
    for cluster in clusters:
        if config.point_type in ("topic", "both"):
            points.append(
                _topic_point(
                    cluster,
                    _topic_coordinate(cluster, config.x_axis, date_range, rng),
                    _topic_coordinate(cluster, config.y_axis, date_range, rng),
                )
            )
        if config.point_type in ("message", "both"):
            for message in cluster.messages[:MAX_POINTS_PER_CLUSTER]:
                if not message.is_substantive:
                    continue
                points.append(
                    _message_point(
                        message,
                        cluster,
                        _message_coordinate(message, config.x_axis, date_range, rng),
                        _message_coordinate(message, config.y_axis, date_range, rng),
                    )
                )

    return ScatterPlotData(points=points, axes={"x": _AXES[config.x_axis], "y": _AXES[config.y_axis]})


def _time_position(timestamp: float, date_range: DateRange) -> float:
    start = date_range.start.timestamp()
    span = date_range.end.timestamp() - start
    if span == 0:
        return 0.5
    return max(0.0, min(1.0, (timestamp - start) / span))


def _topic_coordinate(cluster: MessageCluster, axis: str, date_range: DateRange, rng: random.Random) -> float:
    if axis == "sentiment":
        return _SENTIMENT_SCORES.get(cluster.summary.sentiment, 0.0) + (rng.random() - 0.5) * 0.15
    if axis == "time":
        if not cluster.messages:
            return 0.5
        mean = sum(m.timestamp.timestamp() for m in cluster.messages) / len(cluster.messages)
        return _time_position(mean, date_range)
    if axis == "priority":
        jitter = (rng.random() - 0.5) * 0.1
        priorities = {s.priority for s in cluster.next_steps}
        if "high" in priorities:
            return 0.85 + jitter
        if "medium" in priorities:
            return 0.5 + jitter
        if "low" in priorities:
            return 0.2 + jitter
        return 0.3 + jitter
    return rng.random()


def _message_coordinate(message: CategorizedMessage, axis: str, date_range: DateRange, rng: random.Random) -> float:
    if axis == "sentiment":
        return _SENTIMENT_SCORES.get(message.sentiment, 0.0) + (rng.random() - 0.5) * 0.15
    if axis == "time":
        return _time_position(message.timestamp.timestamp(), date_range)
    if axis == "priority":
        # Negative messages read as more urgent
        return _MESSAGE_PRIORITY.get(message.sentiment, 0.5) + (rng.random() - 0.5) * 0.1
    return rng.random()


# ── Topic tree ─────────────────────────────────────────────────────────────


def generate_topic_tree(clusters: list[MessageCluster], *, include_messages: bool = False) -> TopicTreeData:
    nodes = [
        TreeNode(
            id="root",
            label="All Topics",
            type="topic",
            value=sum(len(c.messages) for c in clusters),
            metadata={"clusterCount": len(clusters)},
        )
    ]
    links: list[TreeLink] = []

    for cluster in clusters:
        nodes.append(
            TreeNode(
                id=cluster.id,
                label=cluster.topic,
                type="topic",
                parent_id="root",
                value=len(cluster.messages),
                metadata={
                    "sentiment": cluster.summary.sentiment,
                    "opinionCount": len(cluster.opinions),
                    "description": cluster.description,
                },
            )
        )
        links.append(TreeLink(source="root", target=cluster.id, weight=len(cluster.messages)))

        if not include_messages:
            continue
        leaves = [m for m in cluster.messages if m.is_substantive][:MAX_TREE_MESSAGES_PER_CLUSTER]
        for message in leaves:
            nodes.append(
                TreeNode(
                    id=message.id,
                    label=_label(message.content, 30),
                    type="message",
                    parent_id=cluster.id,
                    value=1,
                    metadata={
                        "sentiment": message.sentiment,
                        "category": message.category,
                        "timestamp": message.timestamp.isoformat(),
                    },
                )
            )
            links.append(TreeLink(source=cluster.id, target=message.id, weight=1))

    return TopicTreeData(nodes=nodes, links=links)


# ── Charts ─────────────────────────────────────────────────────────────────


def generate_charts(statistics: ReportStatistics, clusters: list[MessageCluster]) -> dict[str, ChartData]:
    dist = statistics.sentiment_distribution
    sentiment = [
        ChartDatum(label=s.capitalize(), value=dist.get(s, 0), color=SENTIMENT_COLORS[s])
        for s in ("positive", "negative", "neutral")
    ]

    categories = sorted(
        (
            ChartDatum(
                label=name.capitalize(),
                value=count,
                color=CATEGORY_COLORS.get(name.lower(), CATEGORY_COLORS["other"]),
            )
            for name, count in statistics.category_distribution.items()
        ),
        key=lambda d: d.value,
        reverse=True,
    )

    topics = sorted(
        (
            ChartDatum(
                label=c.topic,
                value=len(c.messages),
                color=sentiment_color(c.summary.sentiment),
                metadata={"topicId": c.id, "sentiment": c.summary.sentiment},
            )
            for c in clusters
        ),
        key=lambda d: d.value,
        reverse=True,
    )

    months = Counter(
        m.timestamp.strftime("%Y-%m")
        for c in clusters
        for m in c.messages
        if m.is_substantive
    )
    timeline = [ChartDatum(label=month, value=n, color="#2196F3") for month, n in sorted(months.items())]

    return {
        "sentiment": ChartData(type="pie", data=[d for d in sentiment if d.value > 0]),
        "categories": ChartData(type="bar", data=categories),
        "topics": ChartData(type="bar", data=topics),
        "timeline": ChartData(type="line", data=timeline),
    }
