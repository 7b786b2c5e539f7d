"""Unit tests for statistics, synthesis, visualization, rendering and validation."""

import asyncio
import random
from datetime import UTC, datetime

from threadreport.analyzer import analyze_data
from threadreport.models import (
    ActionItem,
    ClusterSummary,
    MessageCluster,
    Opinion,
    ProjectionPoint,
    Report,
    ReportSynthesis,
)
from threadreport.renderer import render_markdown, resolve_language
from threadreport.synthesizer import EMPTY_SYNTHESIS, synthesize_report
from threadreport.validator import validate_clusters, validate_report, validate_report_messages, validate_statistics
from threadreport.visualizer import ScatterPlotConfig, generate_visualization_data

from conftest import FakeCompleter, make_message

GENERATED = datetime(2024, 6, 1, 9, 30, tzinfo=UTC)


def _clusters() -> list[MessageCluster]:
    big = MessageCluster(
        id="c1",
        topic="Exports",
        messages=[
            make_message("m1", "Export keeps failing", sentiment="negative", category="complaint", day=3),
            make_message("m2", "How do I export to CSV?", category="question", day=5),
            make_message("m3", "Exports are great now", sentiment="positive", category="feedback", day=7),
        ],
        opinions=[Opinion(id="c1-op-0", text="Exports are unreliable", mention_count=2, representative_quote="Export keeps failing")],
        summary=ClusterSummary(consensus=["Exports matter"], sentiment="mixed"),
        next_steps=[ActionItem(action="Fix exporter", priority="high", rationale="Top complaint")],
    )
    small = MessageCluster(
        id="c2",
        topic="Billing",
        messages=[make_message("m4", "Why was I charged twice?", category="question", day=4)],
    )
    return [small, big]


def _messages(clusters: list[MessageCluster]):
    return [m for c in clusters for m in c.messages]


class TestAnalyzeData:
    def test_statistics(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 2, 6, False, 2)
        assert stats.total_messages == 4
        assert stats.average_messages_per_thread == 2.0
        assert stats.sentiment_distribution == {"positive": 1, "negative": 1, "neutral": 2}
        assert stats.category_distribution == {"complaint": 1, "question": 2, "feedback": 1}
        assert [t.topic for t in stats.top_topics] == ["Exports", "Billing"]
        assert stats.top_topics[0].percentage == 75.0
        assert stats.date_range.start.day == 3
        assert stats.date_range.end.day == 7

    def test_empty(self) -> None:
        stats = analyze_data([], [], 0, 0, False, 0)
        assert stats.date_range.start == stats.date_range.end
        assert stats.sentiment_distribution == {"positive": 0, "negative": 0, "neutral": 0}
        assert stats.average_messages_per_thread == 0.0


class TestSynthesize:
    def test_no_clusters(self, completer) -> None:
        stats = analyze_data([], [], 0, 0, False, 0)
        assert asyncio.run(synthesize_report([], stats, completer)) == EMPTY_SYNTHESIS
        assert completer.prompts == []

    def test_failure_returns_default(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        result = asyncio.run(synthesize_report(clusters, stats, FakeCompleter(lambda p: RuntimeError("x"))))
        assert result == EMPTY_SYNTHESIS

    def test_parsed(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        completer = FakeCompleter(
            lambda p: {
                "overallSentiment": "mixed",
                "keyFindings": ["Exports dominate"],
                "topPriorities": [{"action": "Fix exporter", "priority": "high", "rationale": "Volume"}],
                "executiveSummary": "Users mostly struggle with exports.",
            }
        )
        result = asyncio.run(synthesize_report(clusters, stats, completer, "ko"))
        assert result.overall_sentiment == "mixed"
        assert result.top_priorities[0].action == "Fix exporter"
        assert "Korean" in completer.prompts[0]

    def test_wrong_field_types(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        completer = FakeCompleter(
            lambda p: {
                "overallSentiment": ["mixed"],
                "keyFindings": 5,
                "topPriorities": "fix everything",
                "executiveSummary": {"text": "Exports dominate."},
            }
        )
        result = asyncio.run(synthesize_report(clusters, stats, completer))
        assert result.overall_sentiment == "neutral"
        assert result.key_findings == []
        assert result.top_priorities == []
        assert result.executive_summary == "Exports dominate."


class TestVisualization:
    def test_synthetic_axes(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        viz = generate_visualization_data(clusters, stats, rng=random.Random(3))
        topic_points = [p for p in viz.scatter_plot.points if p.type == "topic"]
        assert {p.id for p in topic_points} == {"c1", "c2"}
        assert len(viz.scatter_plot.points) == 6
        assert viz.scatter_plot.axes["x"].label == "Sentiment"
        assert viz.topic_tree.nodes[0].id == "root"
        assert viz.topic_tree.nodes[0].value == 4
        assert [d.label for d in viz.charts["topics"].data] == ["Exports", "Billing"]
        assert [d.label for d in viz.charts["timeline"].data] == ["2024-05"]

    def test_topic_points_only(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        viz = generate_visualization_data(clusters, stats, config=ScatterPlotConfig(point_type="topic"))
        assert all(p.type == "topic" for p in viz.scatter_plot.points)

    def test_projection_normalized(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        projection = [
            ProjectionPoint(id="m1", x=-4, y=10, cluster_id=0),
            ProjectionPoint(id="m2", x=6, y=20, cluster_id=0),
            ProjectionPoint(id="m3", x=0, y=15, cluster_id=0),
            ProjectionPoint(id="m4", x=1, y=12, cluster_id=1),
        ]
        viz = generate_visualization_data(clusters, stats, projection)
        assert all(0.0 <= p.x <= 1.0 and 0.0 <= p.y <= 1.0 for p in viz.scatter_plot.points)
        assert viz.scatter_plot.axes["x"].label == "UMAP Dimension 1"

    def test_tree_with_messages(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        viz = generate_visualization_data(clusters, stats, include_messages=True)
        leaves = [n for n in viz.topic_tree.nodes if n.type == "message"]
        assert len(leaves) == 4
        assert all(n.parent_id in {"c1", "c2"} for n in leaves)


class TestRenderer:
    def test_zero_clusters(self) -> None:
        stats = analyze_data([], [], 0, 0, False, 0)
        md = render_markdown(stats, [], None, title="Empty", generated_at=GENERATED)
        assert "No topics identified" in md
        assert "Sampled from" not in md
        assert "sampled from" not in md

    def test_sampling_note(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 40, True, 3)
        md = render_markdown(stats, clusters, None, title="T", generated_at=GENERATED)
        assert "Sampled from 40 total messages" in md
        assert "3 non-substantive messages" in md

    def test_full_report_sections(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        synthesis = ReportSynthesis(overall_sentiment="mixed", key_findings=["Exports dominate"], executive_summary="Short.")
        md = render_markdown(stats, clusters, synthesis, title="Weekly", generated_at=GENERATED)
        assert md.startswith("# Weekly")
        assert "## Executive Summary" in md
        assert "- Exports are unreliable (2 mentions)" in md
        assert '> "Export keeps failing"' in md
        assert "[High] Fix exporter: Top complaint" in md
        assert "### Methodology" in md

    def test_deterministic(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        first = render_markdown(stats, clusters, None, title="T", generated_at=GENERATED)
        assert first == render_markdown(stats, clusters, None, title="T", generated_at=GENERATED)

    def test_korean_and_timezone(self) -> None:
        stats = analyze_data([], [], 0, 0, False, 0)
        md = render_markdown(stats, [], None, title="T", language="ko", timezone="Asia/Seoul", generated_at=GENERATED)
        assert "식별된 주제 없음" in md
        assert "2024-06-01T18:30:00+09:00" in md

    def test_resolve_language(self) -> None:
        assert resolve_language("en", "Asia/Seoul") == "en"
        assert resolve_language(None, "Asia/Seoul") == "ko"
        assert resolve_language(None, None) in {"en", "ko"}


class TestValidator:
    def _report(self, clusters: list[MessageCluster]) -> Report:
        stats = analyze_data(_messages(clusters), clusters, 1, 4, False, 0)
        return Report(id="r", title="t", created_at=GENERATED, statistics=stats, clusters=clusters)

    def test_valid(self) -> None:
        result = validate_report(self._report(_clusters()))
        assert result.is_valid
        assert result.errors == []

    def test_non_substantive_is_error(self) -> None:
        clusters = _clusters()
        clusters[0].messages.append(make_message("bad", "hello", is_substantive=False))
        result = validate_report_messages(self._report(clusters))
        assert not result.is_valid
        assert "Non-substantive" in result.errors[0]

    def test_short_substantive_is_warning(self) -> None:
        clusters = _clusters()
        clusters[0].messages.append(make_message("short", "help me"))
        result = validate_report_messages(self._report(clusters))
        assert result.is_valid
        assert any("Suspiciously short" in w for w in result.warnings)

    def test_count_mismatch_is_warning(self) -> None:
        report = self._report(_clusters())
        report.statistics.total_messages = 10
        result = validate_report_messages(report)
        assert result.is_valid
        assert any("count mismatch" in w for w in result.warnings)

    def test_statistics_sampling_error(self) -> None:
        clusters = _clusters()
        stats = analyze_data(_messages(clusters), clusters, 1, 2, True, 0)
        assert not validate_statistics(stats).is_valid

    def test_duplicate_cluster_ids(self) -> None:
        clusters = _clusters()
        clusters[1] = clusters[1].model_copy(update={"id": "c2"})
        clusters[0] = clusters[0].model_copy(update={"id": "c2", "messages": []})
        result = validate_clusters(clusters)
        assert "Duplicate cluster IDs found" in result.errors
        assert any("empty clusters" in w for w in result.warnings)
