"""Minimal CLI entry point for running Inbox Reports tasks by hand."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import UTC, datetime, time

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.budget import plan_or_fallback
from inbox_reports.core.models import DateRange, EmailFilter, TaskStatusReport
from inbox_reports.pipeline.engine import InboxReportsEngine
from inbox_reports.storage.email_store import SqliteEmailStore


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(status: TaskStatusReport) -> None:
    """Print task progress to stdout."""
    print(
        f"[{status.status}] "
        f"{status.processed_units}/{status.total_units} "
        f"({status.progress_percent:.0f}%)",
        end="\r",
        flush=True,
    )


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _add_participant_args(subparser: argparse.ArgumentParser) -> None:
    """Add repeatable --domain and --email client filters."""
    subparser.add_argument(
        "--domain",
        action="append",
        default=[],
        dest="domains",
        help="Client domain (repeatable)",
    )
    subparser.add_argument(
        "--email",
        action="append",
        default=[],
        dest="emails",
        help="Client email address (repeatable)",
    )


def _add_date_args(subparser: argparse.ArgumentParser, required: bool = True) -> None:
    subparser.add_argument("--start", required=required, help="Start date (YYYY-MM-DD)")
    subparser.add_argument("--end", required=required, help="End date (YYYY-MM-DD)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inbox Reports - budget, ingest, summarize and embed client email"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # plan command
    plan_parser = subparsers.add_parser("plan", help="Show the content budget for N emails")
    plan_parser.add_argument(
        "--emails", "-n", type=int, required=True, dest="total_emails", help="Corpus size"
    )
    plan_parser.add_argument("--model", "-m", help="Report model (default: from settings)")
    plan_parser.add_argument(
        "--reserve", type=int, default=None, help="Tokens reserved for the model's output"
    )

    # ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Fetch and store a client's emails")
    ingest_parser.add_argument("--client-id", dest="client_id", help="Client identifier")
    _add_date_args(ingest_parser)
    _add_participant_args(ingest_parser)
    ingest_parser.add_argument(
        "--max-results", type=int, default=1000, dest="max_results", help="Cap on emails fetched"
    )

    # summarize / embed commands
    summarize_parser = subparsers.add_parser("summarize", help="Summarize unsummarized emails")
    summarize_parser.add_argument("--limit", type=int, default=None, help="Max emails")
    embed_parser = subparsers.add_parser("embed", help="Embed emails not yet vectorized")
    embed_parser.add_argument("--limit", type=int, default=None, help="Max emails")

    # report command
    report_parser = subparsers.add_parser("report", help="Generate a report from stored emails")
    _add_date_args(report_parser)
    _add_participant_args(report_parser)

    # search command
    search_parser = subparsers.add_parser("search", help="Find stored emails similar to a query")
    search_parser.add_argument("query", help="Free-text search query")
    _add_date_args(search_parser, required=False)
    _add_participant_args(search_parser)
    search_parser.add_argument("--limit", type=int, default=10, help="Max matches")

    # status command
    subparsers.add_parser("status", help="Show stored email counts")

    return parser


def _validate_args(args: argparse.Namespace) -> None:
    """Reject counts and dates the commands cannot use."""
    if getattr(args, "total_emails", None) is not None and args.total_emails < 0:
        _fail("--emails must be non-negative")
    if getattr(args, "reserve", None) is not None and args.reserve < 0:
        _fail("--reserve must be non-negative")
    if getattr(args, "limit", None) is not None and args.limit <= 0:
        _fail("--limit must be positive")
    if getattr(args, "max_results", None) is not None and args.max_results <= 0:
        _fail("--max-results must be positive")
    start = getattr(args, "start", None)
    end = getattr(args, "end", None)
    if (start is None) != (end is None):
        _fail("--start and --end must be given together")
    if start is not None:
        try:
            date_range = _date_range(args)
        except ValueError as e:
            _fail(f"invalid date: {e}")
        else:
            if date_range.start > date_range.end:
                _fail("--start must not be after --end")


def _parse_date(value: str, *, end_of_day: bool = False) -> datetime:
    """Parse an ISO date or datetime as UTC; a bare end date runs to the end of that day."""
    parsed = datetime.fromisoformat(value)
    if end_of_day and len(value) == 10:
        parsed = datetime.combine(parsed.date(), time.max)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _date_range(args: argparse.Namespace) -> DateRange:
    return DateRange(
        start=_parse_date(args.start), end=_parse_date(args.end, end_of_day=True)
    )


def _run_task(engine: InboxReportsEngine, task_id: str) -> None:
    status = engine.wait(task_id, on_progress=on_progress)
    if status.is_failed:
        _fail(f"task {task_id} failed: {status.error_message}")
    print(f"\n\nComplete: {json.dumps(status.result, indent=2, default=str)}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    _validate_args(args)

    settings = InboxReportsSettings()
    setup_logging(settings.log_level)

    if args.command == "plan":
        plan = plan_or_fallback(
            args.total_emails,
            settings.output_reservation_tokens if args.reserve is None else args.reserve,
            args.model or settings.report_model,
            settings.budget_policy(),
        )
        print(json.dumps(plan.to_dict(), indent=2))
        return

    if args.command == "status":
        settings.ensure_directories()
        with SqliteEmailStore(settings.database_path) as store:
            counts = store.count_by_status()
        print("\nStored emails:")
        for name, count in counts.items():
            print(f"  {name}: {count}")
        return

    engine = InboxReportsEngine(settings)
    try:
        if args.command == "ingest":
            task_id = engine.queue_ingest(
                args.start,
                args.end,
                client_id=args.client_id,
                domains=args.domains,
                emails=args.emails,
                max_results=args.max_results,
            )
            _run_task(engine, task_id)

        elif args.command == "summarize":
            _run_task(engine, engine.queue_summaries(args.limit))

        elif args.command == "embed":
            _run_task(engine, engine.queue_embeddings(args.limit))

        elif args.command == "search":
            filters = EmailFilter(domains=tuple(args.domains), addresses=tuple(args.emails))
            date_range = _date_range(args) if args.start is not None else None
            matches = engine.search_similar(args.query, date_range, filters, limit=args.limit)
            if not matches:
                print("No similar emails found")
            for rank, match in enumerate(matches, start=1):
                email = match.email
                print(
                    f"{rank:>3}. [{match.similarity:.3f}] {email.date:%Y-%m-%d} "
                    f"{email.sender} - {email.subject}"
                )

        elif args.command == "report":
            filters = EmailFilter(domains=tuple(args.domains), addresses=tuple(args.emails))
            report = engine.build_report(_date_range(args), filters)
            print(report.report)
            if report.highlights:
                print("\nHighlights:")
                for highlight in report.highlights:
                    print(f"  - {highlight}")
            plan = report.plan
            print(
                f"\n{plan.total_emails_covered}/{plan.total_emails} emails covered "
                f"({plan.coverage_percent:.1f}%)"
            )

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        engine.close()


if __name__ == "__main__":
    main()
