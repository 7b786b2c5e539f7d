"""CLI entry-point: ``python -m threadreport run --threads FILE``."""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import sys
from pathlib import Path

from threadreport import config
from threadreport.models import ReportRequestParams
from threadreport.pipeline import PIPELINE_MODES, run_pipeline
from threadreport.validator import ReportValidationError

logger = logging.getLogger(__name__)


def _date(value: str) -> dt.datetime:
    """Parse an ISO date or datetime; naive values are taken as UTC."""
    parsed = dt.datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.UTC)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="threadreport",
        description="Analytical reports from conversation threads.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── run ────────────────────────────────────────────────────────────
    run_parser = sub.add_parser("run", help="Generate a report from a thread export.")
    run_parser.add_argument(
        "--threads",
        type=Path,
        required=True,
        help="YAML or JSON file with threads and their messages.",
    )
    run_parser.add_argument(
        "--mode",
        choices=PIPELINE_MODES,
        default=config.PIPELINE_MODE,
        help=f"Categorization/clustering strategy (default: {config.PIPELINE_MODE}).",
    )
    run_parser.add_argument("--language", choices=["en", "ko"], help="Report language.")
    run_parser.add_argument("--timezone", help="IANA timezone used for dates and language inference.")
    run_parser.add_argument("--start-date", type=_date, help="Earliest message time (ISO 8601).")
    run_parser.add_argument("--end-date", type=_date, help="Latest message time (ISO 8601).")
    run_parser.add_argument(
        "--max-messages",
        type=int,
        help=f"Sample down to this many messages (default: {config.DEFAULT_MAX_MESSAGES}).",
    )
    run_parser.add_argument("--title", help="Report title.")
    run_parser.add_argument(
        "--output-dir",
        type=Path,
        default=config.OUTPUT_DIR,
        help="Where report-<timestamp>.md/.json are written.",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse threads only; skip embeddings, LLM stages and report write.",
    )

    args = parser.parse_args(argv)

    if args.command != "run":
        parser.print_help()
        sys.exit(1)

    try:
        params = ReportRequestParams(
            start_date=args.start_date,
            end_date=args.end_date,
            max_messages=args.max_messages,
            timezone=args.timezone,
            language=args.language,
            title=args.title,
        )
        run_pipeline(
            args.threads,
            params,
            mode=args.mode,
            dry_run=args.dry_run,
            output_dir=args.output_dir,
        )
    except (ValueError, ReportValidationError) as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
