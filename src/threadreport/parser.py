"""Extract anonymized user messages from thread history, with optional sampling."""

from __future__ import annotations

import logging
import random
import re
from datetime import UTC, datetime, timedelta

from threadreport import config
from threadreport.models import ParsedMessage, ParserResult, ReportRequestParams
from threadreport.threads import ThreadStore

logger = logging.getLogger(__name__)

# Order matters: generic phone runs before the digit-only ID/card patterns,
# otherwise those would swallow parts of phone numbers and vice versa.
_PII_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[EMAIL]"),
    (re.compile(r"(\+?\d{1,3}[-.\s]?)?\(?\d{2,4}\)?[-.\s]?\d{3,4}[-.\s]?\d{4}"), "[PHONE]"),
    (re.compile(r"01[0-9]-?\d{3,4}-?\d{4}"), "[PHONE]"),
    (re.compile(r"https?://[^\s]+"), "[URL]"),
    (re.compile(r"\d{6}-?[1-4]\d{6}"), "[ID_NUMBER]"),
    (re.compile(r"\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}"), "[CARD_NUMBER]"),
]


def anonymize_content(content: str) -> str:
    """Replace emails, phone numbers, URLs, ID and card numbers with placeholders."""
    for pattern, placeholder in _PII_PATTERNS:
        content = pattern.sub(placeholder, content)
    return content


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sample_messages(
    messages: list[ParsedMessage],
    max_count: int,
    *,
    recent_ratio: float = config.SAMPLING_RECENT_RATIO,
    rng: random.Random | None = None,
) -> list[ParsedMessage]:
    """Stratified sample: the newest share kept outright, the rest random.

    *messages* must be sorted newest first.
    """
    if len(messages) <= max_count:
        return list(messages)

    rng = rng or random.Random()
    recent_count = int(max_count * recent_ratio)
    random_count = max_count - recent_count

    recent = messages[:recent_count]
    older = messages[recent_count:]
    picked = rng.sample(range(len(older)), random_count)
    return recent + [older[i] for i in picked]


def parse_threads(
    params: ReportRequestParams,
    thread_store: ThreadStore,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
    recent_ratio: float = config.SAMPLING_RECENT_RATIO,
) -> ParserResult:
    """Collect user messages from matching threads inside the date range."""
    threads = thread_store.get_all_threads()
    logger.info("Found %d total threads", len(threads))

    if params.thread_ids:
        wanted = set(params.thread_ids)
        threads = [t for t in threads if t.id in wanted]
        logger.info("Filtered to %d threads by thread_ids", len(threads))

    if params.agent_urls:
        urls = set(params.agent_urls)
        threads = [t for t in threads if any(a.a2a_url in urls for a in t.agents)]
        logger.info("Filtered to %d threads by agent_urls", len(threads))

    if params.agent_names:
        names = set(params.agent_names)
        threads = [t for t in threads if any(a.name in names for a in t.agents)]
        logger.info("Filtered to %d threads by agent_names", len(threads))

    now = _as_utc(now or datetime.now(UTC))
    end = _as_utc(params.end_date) if params.end_date else now
    start = (
        _as_utc(params.start_date)
        if params.start_date
        else end - timedelta(days=config.DEFAULT_DATE_RANGE_DAYS)
    )
    max_messages = params.max_messages or config.DEFAULT_MAX_MESSAGES
    logger.info("Date range: %s ~ %s, max messages: %d", start.isoformat(), end.isoformat(), max_messages)

    parsed: list[ParsedMessage] = []
    threads_with_messages: set[str] = set()

    for thread in threads:
        world = thread_store.get_world(thread.id)
        if world is None:
            continue

        for msg in world.get_history():
            if msg.speaker != config.USER_SPEAKER:
                continue
            ts = _as_utc(msg.timestamp)
            if ts < start or ts > end:
                continue
            trimmed = msg.content.strip()
            if len(trimmed) < config.MIN_MESSAGE_LENGTH:
                continue

            parsed.append(
                ParsedMessage(id=msg.id, content=anonymize_content(trimmed), timestamp=ts)
            )
            threads_with_messages.add(thread.id)

    # Newest first so sampling favours recent messages
    parsed.sort(key=lambda m: m.timestamp, reverse=True)
    total_before = len(parsed)

    was_sampled = False
    final = parsed
    if total_before > max_messages:
        logger.info("Sampling %d from %d messages", max_messages, total_before)
        final = sample_messages(parsed, max_messages, recent_ratio=recent_ratio, rng=rng)
        was_sampled = True

    final.sort(key=lambda m: m.timestamp)

    logger.info(
        "Parsed %d messages from %d threads (%d empty threads excluded, sampled=%s)",
        len(final),
        len(threads_with_messages),
        len(threads) - len(threads_with_messages),
        was_sampled,
    )
    return ParserResult(
        messages=final,
        thread_count=len(threads_with_messages),
        total_messages_before_sampling=total_before,
        was_sampled=was_sampled,
    )
