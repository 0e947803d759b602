from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import asdict
from datetime import date
from typing import Any

from .config import ConfigError, load_config, load_sources_file
from .context import build_context
from .discovery.backfill import (
    BackfillRequest,
    cancel_backfill,
    ensure_backfill_allowed,
    list_backfill_sources,
    resume_backfill,
    run_backfill,
)
from .discovery.scheduled import run_scheduled_discovery
from .errors import BackfillDisabledError, InvalidTransitionError
from .health import health_snapshot, refresh_staleness
from .pipelines.release import retrieval_view
from .pipelines.review import apply_human_decision
from .queues import PIPELINE_QUEUES, queue_contracts, queue_snapshot
from .storage import get_backfill_run, init_db, list_backfill_runs, list_rules, list_sources, upsert_source
from .utils import configure_logging, json_dumps, log_event
from .worker import run_drain_loop, run_loop, run_until_idle


def _setup_logging() -> logging.Logger:
    return configure_logging("regtruth")


def _open(args: argparse.Namespace, logger: logging.Logger) -> tuple[Any, Any] | None:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    return config, init_db(config.paths.state_db)


def _emit(value: object) -> None:
    print(json_dumps(value))


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def _cmd_backfill_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    # Kill switch before anything is opened or written.
    try:
        ensure_backfill_allowed(args.dry_run)
    except BackfillDisabledError as exc:
        print(f"error: {exc}", file=sys.stderr)
        log_event(logger, logging.ERROR, "backfill_disabled", hint="RT_BACKFILL_ENABLED=true")
        return 2
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    request = BackfillRequest(
        sources=list(args.source),
        mode=args.mode.upper(),
        date_from=args.date_from,
        date_to=args.date_to,
        max_urls=args.max_urls if args.max_urls is not None else config.backfill.default_max_urls,
        max_per_source=(
            args.max_per_source if args.max_per_source is not None else config.backfill.default_max_per_source
        ),
        delay_ms=args.delay_ms if args.delay_ms is not None else config.backfill.default_delay_ms,
        dry_run=args.dry_run,
    )
    ctx = build_context(config, conn, logger)
    try:
        run = run_backfill(ctx, request)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    _emit(asdict(run))
    return 0 if run.status in ("COMPLETED", "CANCELLED") else 1


def _cmd_backfill_list_sources(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    _, conn = opened
    sources = list_backfill_sources(conn)
    if not sources:
        log_event(logger, logging.WARNING, "no_sources", hint="Import sources with `regtruth sources import`")
        return 1
    _emit(sources)
    return 0


def _cmd_backfill_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    _, conn = opened
    if args.run_id:
        run = get_backfill_run(conn, args.run_id)
        if run is None:
            print(f"error: backfill run not found: {args.run_id}", file=sys.stderr)
            return 1
        _emit(asdict(run))
        return 0
    _emit([asdict(run) for run in list_backfill_runs(conn, limit=args.limit)])
    return 0


def _cmd_backfill_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    _, conn = opened
    if not cancel_backfill(conn, args.run_id):
        print(f"error: run {args.run_id} is not pending or running", file=sys.stderr)
        return 1
    log_event(logger, logging.INFO, "backfill_cancel_requested", run_id=args.run_id)
    return 0


def _cmd_backfill_resume(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    previous = get_backfill_run(conn, args.run_id)
    if previous is None:
        print(f"error: backfill run not found: {args.run_id}", file=sys.stderr)
        return 1
    try:
        ensure_backfill_allowed(previous.dry_run)
    except BackfillDisabledError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    try:
        run = resume_backfill(build_context(config, conn, logger), args.run_id)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    _emit(asdict(run))
    return 0 if run.status in ("COMPLETED", "CANCELLED") else 1


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    sources_path = args.path or config.paths.sources_file
    if not os.path.exists(sources_path):
        log_event(logger, logging.ERROR, "sources_import_error", error="sources file not found", path=sources_path)
        return 1
    try:
        sources = load_sources_file(sources_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    if not sources:
        log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
        return 1
    with conn.transaction():
        for source in sources:
            upsert_source(conn, source)
    log_event(logger, logging.INFO, "sources_imported", count=len(sources), path=sources_path)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    _, conn = opened
    sources = list_sources(conn, enabled_only=False)
    if not sources:
        log_event(logger, logging.WARNING, "no_sources", hint="Import sources with `regtruth sources import`")
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            enabled=source.enabled,
            authority=source.authority_level,
            tier=source.priority_tier,
            listing=source.listing_kind,
            last_discovered_at=source.last_discovered_at,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_discover(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    result = run_scheduled_discovery(
        build_context(config, conn, logger),
        source_ids=args.source or None,
        force=args.force,
    )
    _emit(result)
    return 0


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    ctx = build_context(config, conn, logger, worker_id=args.worker_id)
    queues = _parse_queues(args.queues)
    if args.once:
        processed = run_until_idle(ctx, queues)
        log_event(logger, logging.INFO, "worker_idle", processed=processed)
        return 0
    return run_loop(ctx, args.sleep or config.jobs.poll_seconds, queues, args.concurrency)


def _parse_queues(value: str | None) -> list[str] | None:
    if not value:
        return None
    names = [item.strip() for item in value.split(",") if item.strip()]
    unknown = [name for name in names if name not in PIPELINE_QUEUES]
    if unknown:
        raise SystemExit(f"unknown queue(s): {', '.join(unknown)}")
    return names or None


def _cmd_drain(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    ctx = build_context(config, conn, logger, worker_id=args.worker_id)
    run_drain_loop(ctx, max_cycles=args.cycles)
    return 0


def _cmd_rules_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    if args.status == "PUBLISHED":
        _emit(retrieval_view(conn, config, args.concept))
        return 0
    rules = list_rules(conn, status=args.status, concept_id=args.concept, limit=args.limit, with_claims=True)
    _emit([asdict(rule) for rule in rules])
    return 0


def _cmd_rules_decide(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    ctx = build_context(config, conn, logger)
    try:
        rule = apply_human_decision(ctx, args.rule_id, args.decision, reviewer=args.reviewer, note=args.note)
    except (ValueError, InvalidTransitionError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    _emit({"rule_id": rule.id, "status": rule.status})
    return 0


def _cmd_health(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    snapshot = health_snapshot(conn, config)
    _emit(snapshot)
    return 0 if snapshot["gates"]["ok"] else 1


def _cmd_staleness(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    _emit(refresh_staleness(conn, config, logger))
    return 0


def _cmd_queues(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    _emit({"contracts": queue_contracts(config), "counts": queue_snapshot(conn)})
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("regtruth.api:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="regtruth", description="Regulatory-truth pipeline CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to RT_CONFIG)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    backfill_parser = subparsers.add_parser("backfill", help="Historical discovery runs")
    backfill_subparsers = backfill_parser.add_subparsers(dest="backfill_command", required=True)

    backfill_run = backfill_subparsers.add_parser(
        "run", help="Run a backfill (requires RT_BACKFILL_ENABLED=true unless --dry-run)"
    )
    backfill_run.add_argument("--source", action="append", required=True, help="Source id (repeatable)")
    backfill_run.add_argument(
        "--mode",
        default="sitemap",
        choices=["sitemap", "pagination", "archive"],
        help="Discovery mode",
    )
    backfill_run.add_argument("--max-urls", type=int, default=None, help="Global URL cap")
    backfill_run.add_argument("--max-per-source", type=int, default=None, help="Per-source URL cap")
    backfill_run.add_argument("--delay-ms", type=int, default=None, help="Minimum delay between requests")
    backfill_run.add_argument("--date-from", type=_parse_date, default=None, help="YYYY-MM-DD")
    backfill_run.add_argument("--date-to", type=_parse_date, default=None, help="YYYY-MM-DD")
    backfill_run.add_argument("--dry-run", action="store_true", help="Discover and count only")
    backfill_run.set_defaults(func=_cmd_backfill_run)

    backfill_list = backfill_subparsers.add_parser("list-sources", help="Sources available for backfill")
    backfill_list.set_defaults(func=_cmd_backfill_list_sources)

    backfill_status = backfill_subparsers.add_parser("status", help="Show a run, or recent runs")
    backfill_status.add_argument("run_id", nargs="?", help="Backfill run id")
    backfill_status.add_argument("--limit", type=int, default=10)
    backfill_status.set_defaults(func=_cmd_backfill_status)

    backfill_cancel = backfill_subparsers.add_parser("cancel", help="Request cooperative cancellation")
    backfill_cancel.add_argument("run_id", help="Backfill run id")
    backfill_cancel.set_defaults(func=_cmd_backfill_cancel)

    backfill_resume = backfill_subparsers.add_parser("resume", help="Resume a finished run from its last source")
    backfill_resume.add_argument("run_id", help="Backfill run id")
    backfill_resume.set_defaults(func=_cmd_backfill_resume)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)
    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", nargs="?", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)
    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    discover_parser = subparsers.add_parser("discover", help="Run scheduled discovery for due sources")
    discover_parser.add_argument("--source", action="append", default=[], help="Limit to source id (repeatable)")
    discover_parser.add_argument("--force", action="store_true", help="Ignore cadence")
    discover_parser.set_defaults(func=_cmd_discover)

    worker_parser = subparsers.add_parser("worker", help="Process pipeline jobs")
    worker_parser.add_argument("--once", action="store_true", help="Run until the queues are idle and exit")
    worker_parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between polls")
    worker_parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    worker_parser.add_argument("--queues", default=os.environ.get("RT_WORKER_QUEUES", ""))
    worker_parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("RT_WORKER_CONCURRENCY", "1")),
    )
    worker_parser.set_defaults(func=_cmd_worker)

    drain_parser = subparsers.add_parser("drain", help="Continuously advance pending backlog")
    drain_parser.add_argument("--cycles", type=int, default=None, help="Stop after N cycles")
    drain_parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "drainer"))
    drain_parser.set_defaults(func=_cmd_drain)

    rules_parser = subparsers.add_parser("rules", help="Inspect and decide rules")
    rules_subparsers = rules_parser.add_subparsers(dest="rules_command", required=True)
    rules_list = rules_subparsers.add_parser("list", help="List rules")
    rules_list.add_argument("--status", default=None, help="Filter by status")
    rules_list.add_argument("--concept", default=None, help="Filter by concept id")
    rules_list.add_argument("--limit", type=int, default=100)
    rules_list.set_defaults(func=_cmd_rules_list)
    rules_decide = rules_subparsers.add_parser("decide", help="Record a human review decision")
    rules_decide.add_argument("rule_id")
    rules_decide.add_argument("decision", choices=["approve", "reject"])
    rules_decide.add_argument("--reviewer", required=True)
    rules_decide.add_argument("--note", default=None)
    rules_decide.set_defaults(func=_cmd_rules_decide)

    health_parser = subparsers.add_parser("health", help="Print health snapshot; non-zero when a gate fails")
    health_parser.set_defaults(func=_cmd_health)

    staleness_parser = subparsers.add_parser("staleness", help="Recompute evidence staleness")
    staleness_parser.set_defaults(func=_cmd_staleness)

    queues_parser = subparsers.add_parser("queues", help="Queue contracts and counts")
    queues_parser.set_defaults(func=_cmd_queues)

    serve_parser = subparsers.add_parser("serve", help="Run the read-only HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.set_defaults(func=_cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
