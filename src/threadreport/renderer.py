"""Markdown rendering of a finished report in English or Korean.

Rendering is deterministic: the same inputs (including ``generated_at``)
always produce the same document.
"""

from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from threadreport.config import DEFAULT_LANGUAGE
from threadreport.models import MessageCluster, ReportStatistics, ReportSynthesis

KOREAN_TIMEZONES = frozenset({"Asia/Seoul", "Asia/Pyongyang", "ROK"})

MAX_SAMPLE_QUOTES = 3
MAX_QUOTE_LENGTH = 200

_STRINGS: dict[str, dict[str, str]] = {
    "en": {
        "generated_at": "Generated at",
        "summary": "Summary",
        "total_messages": "Total Messages Analyzed",
        "sampled_from": "sampled from {total}",
        "total_threads": "Total Threads",
        "avg_per_thread": "Average Messages per Thread",
        "period": "Analysis Period",
        "note": "Note",
        "note_sampled": "Sampled from {total} total messages",
        "note_filtered": "{count} non-substantive messages (greetings/chitchat) excluded",
        "executive_summary": "Executive Summary",
        "overall_sentiment": "Overall Sentiment",
        "key_findings": "Key Findings",
        "top_priorities": "Top Priorities",
        "sentiment_overview": "Sentiment Overview",
        "category_distribution": "Category Distribution",
        "category": "Category",
        "count": "Count",
        "percentage": "Percentage",
        "top_topics": "Top Topics",
        "messages": "messages",
        "no_topics": "_No topics identified_",
        "topic_analysis": "Topic Analysis",
        "opinions": "Key Opinions & Insights",
        "mentions": " mentions",
        "consensus": "Consensus",
        "conflicting": "Conflicting Views",
        "next_steps": "Next Steps",
        "samples": "Sample Messages",
        "appendix": "Appendix",
        "methodology": "Methodology",
        "methodology_intro": "This report was generated using the following pipeline:",
        "step_parsing": "**Parsing**: User messages extracted from threads with PII anonymization",
        "step_categorization": "**Categorization**: Intent, sentiment and substantiveness classification",
        "step_clustering": "**Clustering**: Topic identification and message grouping",
        "step_analysis": "**Analysis**: Opinion summarization grounded in supporting messages",
        "step_synthesis": "**Synthesis**: Cross-topic findings and prioritized actions",
        "positive": "Positive",
        "negative": "Negative",
        "neutral": "Neutral",
        "mixed": "Mixed",
        "high": "High",
        "medium": "Medium",
        "low": "Low",
    },
    "ko": {
        "generated_at": "생성 시각",
        "summary": "요약",
        "total_messages": "분석된 메시지 수",
        "sampled_from": "전체 {total}건 중 샘플링",
        "total_threads": "스레드 수",
        "avg_per_thread": "스레드당 평균 메시지 수",
        "period": "분석 기간",
        "note": "참고",
        "note_sampled": "전체 {total}건의 메시지에서 샘플링됨",
        "note_filtered": "비실질적 메시지(인사/잡담) {count}건 제외",
        "executive_summary": "종합 요약",
        "overall_sentiment": "전체 감정",
        "key_findings": "주요 발견",
        "top_priorities": "우선 과제",
        "sentiment_overview": "감정 분포",
        "category_distribution": "카테고리 분포",
        "category": "카테고리",
        "count": "건수",
        "percentage": "비율",
        "top_topics": "주요 주제",
        "messages": "건",
        "no_topics": "_식별된 주제 없음_",
        "topic_analysis": "주제별 분석",
        "opinions": "주요 의견",
        "mentions": "회 언급",
        "consensus": "공통 의견",
        "conflicting": "상반된 의견",
        "next_steps": "다음 단계",
        "samples": "메시지 예시",
        "appendix": "부록",
        "methodology": "분석 방법",
        "methodology_intro": "이 리포트는 다음 파이프라인으로 생성되었습니다:",
        "step_parsing": "**파싱**: 스레드에서 사용자 메시지 추출 및 개인정보 익명화",
        "step_categorization": "**분류**: 의도, 감정, 실질성 분류",
        "step_clustering": "**클러스터링**: 주제 식별 및 메시지 그룹화",
        "step_analysis": "**분석**: 근거 메시지에 기반한 의견 요약",
        "step_synthesis": "**종합**: 주제 간 발견 사항과 우선순위 조치",
        "positive": "긍정",
        "negative": "부정",
        "neutral": "중립",
        "mixed": "혼합",
        "high": "높음",
        "medium": "보통",
        "low": "낮음",
    },
}

_SENTIMENT_MARKS = {"positive": "+", "negative": "-"}


def resolve_language(language: str | None, timezone: str | None) -> str:
    """Explicit language, else Korean for a Korean timezone, else the default."""
    if language in _STRINGS:
        return language
    if timezone in KOREAN_TIMEZONES:
        return "ko"
    return DEFAULT_LANGUAGE if DEFAULT_LANGUAGE in _STRINGS else "en"


def _zone(timezone: str | None) -> dt.tzinfo:
    if not timezone:
        return dt.UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return dt.UTC


def _format_date(value: dt.datetime, tz: dt.tzinfo) -> str:
    return value.astimezone(tz).strftime("%Y-%m-%d")


def _quote(text: str) -> str:
    if len(text) > MAX_QUOTE_LENGTH:
        text = text[:MAX_QUOTE_LENGTH] + "..."
    return text.replace("\n", " ")


def render_markdown(
    statistics: ReportStatistics,
    clusters: list[MessageCluster],
    synthesis: ReportSynthesis | None = None,
    *,
    title: str,
    language: str = "en",
    timezone: str | None = None,
    generated_at: dt.datetime | None = None,
) -> str:
    s = _STRINGS.get(language, _STRINGS["en"])
    tz = _zone(timezone)
    generated_at = generated_at or dt.datetime.now(dt.UTC)
    lines: list[str] = []
    add = lines.append

    add(f"# {title}")
    add("")
    add(f"> {s['generated_at']}: {generated_at.astimezone(tz).isoformat(timespec='seconds')}")
    add("")

    # ── Summary
    add(f"## {s['summary']}")
    add("")
    total = f"{statistics.total_messages}"
    if statistics.was_sampled:
        total += f" ({s['sampled_from'].format(total=statistics.total_messages_before_sampling)})"
    add(f"- **{s['total_messages']}**: {total}")
    add(f"- **{s['total_threads']}**: {statistics.total_threads}")
    add(f"- **{s['avg_per_thread']}**: {statistics.average_messages_per_thread:.1f}")
    start = _format_date(statistics.date_range.start, tz)
    end = _format_date(statistics.date_range.end, tz)
    add(f"- **{s['period']}**: {start if start == end else f'{start} ~ {end}'}")

    notes: list[str] = []
    if statistics.was_sampled:
        notes.append(s["note_sampled"].format(total=statistics.total_messages_before_sampling))
    if statistics.non_substantive_count > 0:
        notes.append(s["note_filtered"].format(count=statistics.non_substantive_count))
    if notes:
        add("")
        add(f"> **{s['note']}**: {'. '.join(notes)}.")
    add("")

    # ── Synthesis
    if synthesis and (synthesis.executive_summary or synthesis.key_findings or synthesis.top_priorities):
        add(f"## {s['executive_summary']}")
        add("")
        add(f"**{s['overall_sentiment']}**: {s.get(synthesis.overall_sentiment, synthesis.overall_sentiment)}")
        add("")
        if synthesis.executive_summary:
            add(synthesis.executive_summary)
            add("")
        if synthesis.key_findings:
            add(f"### {s['key_findings']}")
            add("")
            lines.extend(f"- {f}" for f in synthesis.key_findings)
            add("")
        if synthesis.top_priorities:
            add(f"### {s['top_priorities']}")
            add("")
            for i, item in enumerate(synthesis.top_priorities, start=1):
                add(f"{i}. **{item.action}** ({s[item.priority]})")
                if item.rationale:
                    add(f"   - {item.rationale}")
            add("")

    # ── Sentiment
    add(f"## {s['sentiment_overview']}")
    add("")
    sentiment_total = sum(statistics.sentiment_distribution.values())
    if sentiment_total > 0:
        for sentiment, count in statistics.sentiment_distribution.items():
            mark = _SENTIMENT_MARKS.get(sentiment, "~")
            add(f"- {mark} **{s.get(sentiment, sentiment)}**: {count} ({count / sentiment_total * 100:.1f}%)")
    add("")

    # ── Categories
    add(f"## {s['category_distribution']}")
    add("")
    add(f"| {s['category']} | {s['count']} | {s['percentage']} |")
    add("|----------|-------|------------|")
    for category, count in sorted(statistics.category_distribution.items(), key=lambda kv: kv[1], reverse=True):
        pct = count / statistics.total_messages * 100 if statistics.total_messages else 0.0
        add(f"| {category.capitalize()} | {count} | {pct:.1f}% |")
    add("")

    # ── Topics
    add(f"## {s['top_topics']}")
    add("")
    if statistics.top_topics:
        for i, topic in enumerate(statistics.top_topics, start=1):
            add(f"{i}. **{topic.topic}** - {topic.count} {s['messages']} ({topic.percentage}%)")
    else:
        add(s["no_topics"])
    add("")

    if clusters:
        add(f"## {s['topic_analysis']}")
        add("")
        for cluster in clusters:
            _render_cluster(cluster, s, add)

    # ── Appendix
    add(f"## {s['appendix']}")
    add("")
    add(f"### {s['methodology']}")
    add("")
    add(s["methodology_intro"])
    for i, key in enumerate(
        ("step_parsing", "step_categorization", "step_clustering", "step_analysis", "step_synthesis"),
        start=1,
    ):
        add(f"{i}. {s[key]}")
    add("")

    return "\n".join(lines)


def _render_cluster(cluster: MessageCluster, s: dict[str, str], add) -> None:
    add(f"### {cluster.topic}")
    add("")
    add(f"_{len(cluster.messages)} {s['messages']} · {s.get(cluster.summary.sentiment, cluster.summary.sentiment)}_")
    add("")
    if cluster.description:
        add(cluster.description)
        add("")

    if cluster.opinions:
        add(f"**{s['opinions']}:**")
        add("")
        for opinion in cluster.opinions:
            suffix = f" ({opinion.mention_count}{s['mentions']})" if opinion.mention_count else ""
            add(f"- {opinion.text}{suffix}")
            if opinion.representative_quote:
                add(f'  > "{_quote(opinion.representative_quote)}"')
        add("")

    for key, items in (("consensus", cluster.summary.consensus), ("conflicting", cluster.summary.conflicting)):
        if items:
            add(f"**{s[key]}:**")
            add("")
            for item in items:
                add(f"- {item}")
            add("")

    if cluster.next_steps:
        add(f"**{s['next_steps']}:**")
        add("")
        for step in cluster.next_steps:
            line = f"- [{s[step.priority]}] {step.action}"
            if step.rationale:
                line += f": {step.rationale}"
            add(line)
        add("")

    samples = cluster.messages[:MAX_SAMPLE_QUOTES]
    if samples:
        add(f"**{s['samples']}:**")
        add("")
        for msg in samples:
            add(f"> {_quote(msg.content)}")
            add("")

    add("---")
    add("")
