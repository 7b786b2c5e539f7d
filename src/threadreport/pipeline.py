"""Pipeline orchestration: parse → embed → categorize → cluster → analyze → ground → stats → synthesize → visualize → render."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import random
import sys
import uuid
from collections.abc import Callable
from pathlib import Path

from threadreport import config
from threadreport.analyzer import analyze_data
from threadreport.categorizer import Categorizer, EmbeddingCategorizer, LLMCategorizer
from threadreport.cluster_analyzer import analyze_clusters
from threadreport.clusterer import Clusterer, EmbeddingClusterer, LLMTopicClusterer
from threadreport.embedder import EmbedFunction, OpenAIEmbedder, embed_messages
from threadreport.grounding import ground_opinions
from threadreport.llm import Completer, LLMClient
from threadreport.models import (
    DateRange,
    ParsedMessage,
    Report,
    ReportJobProgress,
    ReportRequestParams,
    ReportStatistics,
)
from threadreport.parser import parse_threads
from threadreport.renderer import render_markdown, resolve_language
from threadreport.store import KeyValueStore, SQLiteStore
from threadreport.synthesizer import synthesize_report
from threadreport.threads import FileThreadStore, ThreadStore
from threadreport.validator import ReportValidationError, validate_report_messages, validate_statistics
from threadreport.visualizer import generate_visualization_data

logger = logging.getLogger(__name__)

STEPS = [
    "Parsing messages",
    "Generating embeddings",
    "Categorizing",
    "Clustering",
    "Analyzing clusters",
    "Grounding opinions",
    "Calculating statistics",
    "Synthesizing insights",
    "Generating visualization",
    "Rendering report",
]

PIPELINE_MODES = ("embedding", "llm")

ProgressCallback = Callable[[ReportJobProgress], None]


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def empty_report(title: str, thread_count: int) -> Report:
    """Report returned when there is nothing substantive to analyze."""
    now = dt.datetime.now(dt.UTC)
    return Report(
        id=str(uuid.uuid4()),
        title=title,
        created_at=now,
        statistics=ReportStatistics(
            total_messages=0,
            total_threads=thread_count,
            date_range=DateRange(start=now, end=now),
            sentiment_distribution={"positive": 0, "negative": 0, "neutral": 0},
        ),
        markdown=f"# {title}\n\nNo user messages found to analyze.",
    )


class ReportPipeline:
    """Runs the ten report stages for one request at a time.

    In ``embedding`` mode messages are embedded, categorized against the
    taxonomy and clustered with UMAP + k-means before the model labels the
    clusters. In ``llm`` mode categorization and topic clustering are done by
    prompting. Strategies can be injected to override either choice.
    """

    def __init__(
        self,
        thread_store: ThreadStore,
        store: KeyValueStore,
        completer: Completer,
        *,
        mode: str = config.PIPELINE_MODE,
        embed_fn: EmbedFunction | None = None,
        categorizer: Categorizer | None = None,
        clusterer: Clusterer | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if mode not in PIPELINE_MODES:
            raise ValueError(f"Unknown pipeline mode {mode!r}; expected one of {PIPELINE_MODES}")

        if mode == "embedding" and embed_fn is None:
            # Raises ValueError when OPENAI_API_KEY is missing
            embed_fn = OpenAIEmbedder(config.OPENAI_API_KEY)

        self._thread_store = thread_store
        self._store = store
        self._completer = completer
        self._mode = mode
        self._embed_fn = embed_fn
        self._rng = rng or random.Random()

        if categorizer is None:
            if mode == "embedding":
                categorizer = EmbeddingCategorizer(embed_fn, store)
            else:
                categorizer = LLMCategorizer(completer)
        self._categorizer = categorizer
        self._clusterer = clusterer

    @property
    def mode(self) -> str:
        return self._mode

    def _clusterer_for(self, language: str) -> Clusterer:
        if self._clusterer is not None:
            return self._clusterer
        if self._mode == "embedding":
            return EmbeddingClusterer()
        return LLMTopicClusterer(self._completer, language, rng=self._rng)

    async def generate_report(
        self,
        params: ReportRequestParams,
        on_progress: ProgressCallback | None = None,
    ) -> Report:
        title = params.title or config.DEFAULT_TITLE
        language = resolve_language(params.language, params.timezone)

        def step(n: int) -> None:
            logger.info("Step %d/%d: %s", n, len(STEPS), STEPS[n - 1])
            if on_progress is not None:
                on_progress(
                    ReportJobProgress(
                        step=n,
                        total_steps=len(STEPS),
                        current_step=STEPS[n - 1],
                        percentage=round(n / len(STEPS) * 100),
                    )
                )

        logger.info("=== report pipeline start [mode=%s, language=%s] ===", self._mode, language)

        # ── 1. Parse ──────────────────────────────────────────────────────
        step(1)
        parsed = parse_threads(params, self._thread_store, rng=self._rng)
        if not parsed.messages:
            logger.warning("No user messages found; returning empty report")
            return empty_report(title, parsed.thread_count)

        # ── 2. Embed ──────────────────────────────────────────────────────
        step(2)
        messages: list[ParsedMessage] = list(parsed.messages)
        if self._embed_fn is not None and self._mode == "embedding":
            embedded = await embed_messages(messages, self._embed_fn, self._store)
            logger.info("Embeddings: %d cached, %d new", embedded.cache_hits, embedded.new_embeddings)
            messages = list(embedded.messages)
        else:
            logger.info("Embedding skipped in %s mode", self._mode)

        # ── 3. Categorize ─────────────────────────────────────────────────
        step(3)
        categorized = await self._categorizer.categorize(messages)
        substantive = [m for m in categorized.messages if m.is_substantive]
        non_substantive_count = len(categorized.messages) - len(substantive)
        logger.info("Categorized: %d substantive, %d filtered", len(substantive), non_substantive_count)

        if not substantive:
            logger.warning("No substantive messages found; returning empty report")
            return empty_report(title, parsed.thread_count)

        # ── 4. Cluster ────────────────────────────────────────────────────
        step(4)
        clustered = await self._clusterer_for(language).cluster(substantive)
        logger.info("Created %d clusters", len(clustered.clusters))

        # ── 5. Analyze clusters ───────────────────────────────────────────
        step(5)
        clusters = clustered.clusters
        if self._mode == "embedding":
            clusters = await analyze_clusters(clusters, self._completer, language)
        else:
            logger.info("Topic clusters already summarised; skipping contrastive analysis")

        # ── 6. Ground opinions ────────────────────────────────────────────
        step(6)
        grounded = await ground_opinions(clusters, self._completer)
        clusters = grounded.clusters

        # ── 7. Statistics ─────────────────────────────────────────────────
        step(7)
        statistics = analyze_data(
            substantive,
            clusters,
            parsed.thread_count,
            parsed.total_messages_before_sampling,
            parsed.was_sampled,
            non_substantive_count,
            categorized.filtering_breakdown,
        )

        # ── 8. Synthesize ─────────────────────────────────────────────────
        step(8)
        synthesis = await synthesize_report(clusters, statistics, self._completer, language)
        logger.info("Synthesized %d key findings", len(synthesis.key_findings))

        # ── 9. Visualize ──────────────────────────────────────────────────
        step(9)
        visualization = generate_visualization_data(
            clusters, statistics, clustered.projection, rng=self._rng
        )

        # ── 10. Render ────────────────────────────────────────────────────
        step(10)
        created_at = dt.datetime.now(dt.UTC)
        markdown = render_markdown(
            statistics,
            clusters,
            synthesis,
            title=title,
            language=language,
            timezone=params.timezone,
            generated_at=created_at,
        )

        report = Report(
            id=str(uuid.uuid4()),
            title=title,
            created_at=created_at,
            statistics=statistics,
            clusters=clusters,
            synthesis=synthesis,
            visualization=visualization,
            markdown=markdown,
        )
        _check(report)
        logger.info(
            "=== report pipeline done: %d clusters, %d substantive messages ===",
            len(report.clusters),
            report.statistics.total_messages,
        )
        return report


def _check(report: Report) -> None:
    messages = validate_report_messages(report)
    stats = validate_statistics(report.statistics)

    if not messages.is_valid:
        for error in messages.errors:
            logger.error("Validation: %s", error)
        raise ReportValidationError(
            "Report validation failed: non-substantive messages found in output",
            messages.errors,
        )
    for warning in messages.warnings + stats.warnings:
        logger.warning("Validation: %s", warning)


# ── CLI runner ─────────────────────────────────────────────────────────────


def run_pipeline(
    threads_path: Path,
    params: ReportRequestParams,
    *,
    mode: str = config.PIPELINE_MODE,
    dry_run: bool = False,
    output_dir: Path = config.OUTPUT_DIR,
) -> Path | None:
    """Generate a report from a thread export file and write it to *output_dir*.

    Returns the Markdown path, or ``None`` on a dry run.
    """
    _setup_logging()
    logger.info("=== threadreport run [threads=%s, mode=%s] ===", threads_path, mode)

    thread_store = FileThreadStore(threads_path)

    if dry_run:
        parsed = parse_threads(params, thread_store)
        logger.info(
            "Dry-run mode: %d messages from %d threads; skipping embeddings, LLM stages and report write.",
            len(parsed.messages),
            parsed.thread_count,
        )
        for msg in parsed.messages[:10]:
            logger.info("  [%s] %s", msg.timestamp.isoformat(), msg.content[:100])
        return None

    store = SQLiteStore(db_path=config.STORE_PATH)
    completer = LLMClient(config.LLM_API_URL, config.LLM_API_KEY, config.LLM_MODEL)
    pipeline = ReportPipeline(thread_store, store, completer, mode=mode)
    report = asyncio.run(pipeline.generate_report(params))

    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = report.created_at.strftime("%Y%m%d-%H%M%S")
    md_path = output_dir / f"report-{stamp}.md"
    json_path = output_dir / f"report-{stamp}.json"
    md_path.write_text(report.markdown, encoding="utf-8")
    json_path.write_text(
        json.dumps(report.model_dump(mode="json"), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )

    logger.info("=== threadreport done: %s ===", md_path)
    return md_path
