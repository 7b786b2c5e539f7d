"""Consistency checks run on a finished report before it is returned."""

from __future__ import annotations

from threadreport.models import MessageCluster, Report, ReportStatistics, ValidationResult

SHORT_MESSAGE_WARNING_LENGTH = 10


class ReportValidationError(Exception):
    """A finished report violates a hard invariant and must not be delivered."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


def validate_report_messages(report: Report) -> ValidationResult:
    """Only substantive messages may appear inside clusters."""
    errors: list[str] = []
    warnings: list[str] = []

    for cluster in report.clusters:
        for message in cluster.messages:
            if not message.is_substantive:
                errors.append(
                    f'Non-substantive message found in cluster "{cluster.topic}": "{message.content[:50]}..."'
                )
            elif len(message.content) < SHORT_MESSAGE_WARNING_LENGTH:
                warnings.append(
                    f'Suspiciously short substantive message in cluster "{cluster.topic}": "{message.content}"'
                )

    in_clusters = sum(len(c.messages) for c in report.clusters)
    if in_clusters != report.statistics.total_messages:
        warnings.append(
            f"Message count mismatch: clusters have {in_clusters} messages, "
            f"statistics show {report.statistics.total_messages}"
        )

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def validate_statistics(statistics: ReportStatistics) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    if statistics.total_messages < 0:
        errors.append("total_messages cannot be negative")
    if statistics.non_substantive_count < 0:
        errors.append("non_substantive_count cannot be negative")

    if statistics.date_range.start > statistics.date_range.end:
        warnings.append(
            f"Date range is inverted: start ({statistics.date_range.start.isoformat()}) "
            f"is after end ({statistics.date_range.end.isoformat()})"
        )

    if statistics.was_sampled and statistics.total_messages > statistics.total_messages_before_sampling:
        errors.append(
            f"Total messages after sampling ({statistics.total_messages}) exceeds "
            f"original count ({statistics.total_messages_before_sampling})"
        )

    if statistics.total_messages > 0:
        for name, distribution in (
            ("Sentiment", statistics.sentiment_distribution),
            ("Category", statistics.category_distribution),
        ):
            total = sum(distribution.values())
            if total != statistics.total_messages:
                warnings.append(
                    f"{name} distribution total ({total}) doesn't match "
                    f"total messages ({statistics.total_messages})"
                )

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def validate_clusters(clusters: list[MessageCluster]) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    empty = [c.topic for c in clusters if not c.messages]
    if empty:
        warnings.append(f"Found {len(empty)} empty clusters: {', '.join(empty)}")

    ids = [c.id for c in clusters]
    if len(set(ids)) != len(ids):
        errors.append("Duplicate cluster IDs found")

    seen: set[str] = set()
    for cluster in clusters:
        if not cluster.topic.strip():
            errors.append(f"Cluster {cluster.id} has no topic name")
        for message in cluster.messages:
            if message.id in seen:
                errors.append(f'Duplicate message ID "{message.id}" found in cluster "{cluster.topic}"')
            seen.add(message.id)

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def validate_report(report: Report) -> ValidationResult:
    """All checks combined."""
    results = [
        validate_report_messages(report),
        validate_statistics(report.statistics),
        validate_clusters(report.clusters),
    ]
    return ValidationResult(
        is_valid=all(r.is_valid for r in results),
        errors=[e for r in results for e in r.errors],
        warnings=[w for r in results for w in r.warnings],
    )
