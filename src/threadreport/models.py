"""Domain models used across the report pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Sentiment = Literal["positive", "negative", "neutral"]
ClusterSentiment = Literal["positive", "negative", "mixed", "neutral"]
Priority = Literal["high", "medium", "low"]
OpinionType = Literal["consensus", "conflicting", "general"]
ReportLanguage = Literal["ko", "en"]
JobStatus = Literal["pending", "processing", "completed", "failed"]


# ── Messages ───────────────────────────────────────────────────────────────


class ParsedMessage(BaseModel):
    id: str
    content: str
    timestamp: datetime


class EmbeddedMessage(ParsedMessage):
    embedding: list[float]


class CategorizedMessage(ParsedMessage):
    category: str = "other"
    sub_category: str | None = None
    intent: str | None = None
    sentiment: Sentiment = "neutral"
    is_substantive: bool = True
    embedding: list[float] | None = None


# ── Clusters ───────────────────────────────────────────────────────────────


class Opinion(BaseModel):
    id: str
    text: str
    type: OpinionType = "general"
    supporting_messages: list[str] = Field(default_factory=list)
    mention_count: int = 0
    representative_quote: str | None = None
    confidence: float | None = None


class ClusterSummary(BaseModel):
    consensus: list[str] = Field(default_factory=list)
    conflicting: list[str] = Field(default_factory=list)
    sentiment: ClusterSentiment = "neutral"


class ActionItem(BaseModel):
    action: str
    priority: Priority = "medium"
    rationale: str = ""


class MessageCluster(BaseModel):
    id: str
    topic: str
    description: str = ""
    messages: list[CategorizedMessage] = Field(default_factory=list)
    opinions: list[Opinion] = Field(default_factory=list)
    summary: ClusterSummary = Field(default_factory=ClusterSummary)
    next_steps: list[ActionItem] = Field(default_factory=list)


def opinions_from_texts(texts: list[str], cluster_id: str) -> list[Opinion]:
    """Convert a legacy plain-text opinion list into structured opinions."""
    return [
        Opinion(id=f"{cluster_id}-op-{idx}", text=text)
        for idx, text in enumerate(texts)
    ]


# ── Statistics & synthesis ─────────────────────────────────────────────────


class DateRange(BaseModel):
    start: datetime
    end: datetime


class TopicCount(BaseModel):
    topic: str
    count: int
    percentage: float


class FilteringBreakdown(BaseModel):
    greetings: int = 0
    chitchat: int = 0
    short_messages: int = 0
    other: int = 0


class ReportStatistics(BaseModel):
    total_messages: int
    total_threads: int
    date_range: DateRange
    category_distribution: dict[str, int] = Field(default_factory=dict)
    sentiment_distribution: dict[str, int] = Field(default_factory=dict)
    top_topics: list[TopicCount] = Field(default_factory=list)
    average_messages_per_thread: float = 0.0
    total_messages_before_sampling: int = 0
    was_sampled: bool = False
    non_substantive_count: int = 0
    filtering_breakdown: FilteringBreakdown | None = None


class ReportSynthesis(BaseModel):
    overall_sentiment: ClusterSentiment = "neutral"
    key_findings: list[str] = Field(default_factory=list)
    top_priorities: list[ActionItem] = Field(default_factory=list)
    executive_summary: str = ""


# ── Visualization ──────────────────────────────────────────────────────────


class ProjectionPoint(BaseModel):
    """A message position in the 2D projection produced by clustering."""

    id: str
    x: float
    y: float
    cluster_id: int


class ScatterPoint(BaseModel):
    id: str
    type: Literal["message", "topic", "cluster"]
    x: float
    y: float
    label: str
    size: float | None = None
    color: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Axis(BaseModel):
    label: str
    min: float
    max: float


class ScatterPlotData(BaseModel):
    points: list[ScatterPoint] = Field(default_factory=list)
    axes: dict[str, Axis] = Field(default_factory=dict)


class TreeNode(BaseModel):
    id: str
    label: str
    type: Literal["topic", "subtopic", "message"]
    parent_id: str | None = None
    value: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class TreeLink(BaseModel):
    source: str
    target: str
    weight: int | None = None


class TopicTreeData(BaseModel):
    nodes: list[TreeNode] = Field(default_factory=list)
    links: list[TreeLink] = Field(default_factory=list)


class ChartDatum(BaseModel):
    label: str
    value: int
    color: str | None = None
    metadata: dict[str, Any] | None = None


class ChartData(BaseModel):
    type: Literal["bar", "pie", "line", "area"]
    data: list[ChartDatum] = Field(default_factory=list)


class VisualizationData(BaseModel):
    scatter_plot: ScatterPlotData
    topic_tree: TopicTreeData
    charts: dict[str, ChartData] = Field(default_factory=dict)


# ── Report & jobs ──────────────────────────────────────────────────────────


class Report(BaseModel):
    id: str
    title: str
    created_at: datetime
    statistics: ReportStatistics
    clusters: list[MessageCluster] = Field(default_factory=list)
    synthesis: ReportSynthesis | None = None
    visualization: VisualizationData | None = None
    markdown: str = ""


class ReportRequestParams(BaseModel):
    thread_ids: list[str] | None = None
    agent_urls: list[str] | None = None
    agent_names: list[str] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    max_messages: int | None = Field(default=None, ge=1)
    timezone: str | None = None
    language: ReportLanguage | None = None
    title: str | None = None
    description: str | None = None
    tags: list[str] | None = None


class ReportJobProgress(BaseModel):
    step: int
    total_steps: int
    current_step: str
    percentage: int


class ReportJob(BaseModel):
    id: str
    status: JobStatus = "pending"
    progress: ReportJobProgress | None = None
    report: Report | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    cached_at: datetime | None = None
    params: ReportRequestParams
    title: str | None = None
    description: str | None = None
    tags: list[str] | None = None


# ── Stage results ──────────────────────────────────────────────────────────


class ParserResult(BaseModel):
    messages: list[ParsedMessage] = Field(default_factory=list)
    thread_count: int = 0
    total_messages_before_sampling: int = 0
    was_sampled: bool = False


class EmbedderResult(BaseModel):
    messages: list[EmbeddedMessage] = Field(default_factory=list)
    cache_hits: int = 0
    new_embeddings: int = 0


class CategorizerResult(BaseModel):
    messages: list[CategorizedMessage] = Field(default_factory=list)
    filtering_breakdown: FilteringBreakdown = Field(default_factory=FilteringBreakdown)


class ClustererResult(BaseModel):
    clusters: list[MessageCluster] = Field(default_factory=list)
    projection: list[ProjectionPoint] | None = None


class GroundingResult(BaseModel):
    clusters: list[MessageCluster] = Field(default_factory=list)
    performance_ms: int = 0


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
