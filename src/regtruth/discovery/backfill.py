from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from ..canonical import canonicalize_url
from ..config import is_backfill_enabled
from ..errors import BackfillDisabledError, FetchError, ValidationError
from ..models import BACKFILL_MODES, BackfillRun, Source
from ..storage import (
    get_backfill_run,
    get_backfill_status,
    get_source,
    insert_backfill_run,
    list_sources,
    request_backfill_cancel,
    update_backfill_run,
)
from ..utils import json_dumps, log_event, utc_now_iso
from .listings import ListingEntry, pagination_urls, parse_html_listing, parse_rss
from .sitemap import walk_sitemap
from .surface import Candidate, DiscoveryQueue

if TYPE_CHECKING:
    from ..context import PipelineContext

KILL_SWITCH_MESSAGE = (
    "Backfill is disabled. Set RT_BACKFILL_ENABLED=true to run a real backfill, "
    "or use --dry-run to preview discovery without side effects."
)


@dataclass(frozen=True)
class BackfillRequest:
    sources: list[str]
    mode: str = "SITEMAP"
    date_from: date | None = None
    date_to: date | None = None
    max_urls: int = 500
    max_per_source: int = 200
    delay_ms: int = 5000
    dry_run: bool = False
    resumed_from: str | None = None
    start_at_source: str | None = None


@dataclass
class _Counters:
    discovered: int = 0
    queued: int = 0
    skipped: int = 0
    would_queue: int = 0
    would_skip: int = 0
    errors: list[dict[str, object]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.queued + self.skipped + self.would_queue + self.would_skip

    def as_fields(self) -> dict[str, object]:
        return {
            "discovered_count": self.discovered,
            "queued_count": self.queued,
            "skipped_count": self.skipped,
            "would_queue_count": self.would_queue,
            "would_skip_count": self.would_skip,
            "error_count": len(self.errors),
            "errors_json": json_dumps(self.errors),
        }


class BackfillCancelled(Exception):
    pass


def ensure_backfill_allowed(dry_run: bool) -> None:
    if not dry_run and not is_backfill_enabled():
        raise BackfillDisabledError(KILL_SWITCH_MESSAGE)


def run_backfill(ctx: "PipelineContext", request: BackfillRequest) -> BackfillRun:
    """Historical crawl of the requested sources into the shared discovery surface.

    The kill switch is checked before anything is written. A dry run performs
    full discovery and only writes its own run record. Cancellation is checked
    before every batch.
    """
    ensure_backfill_allowed(request.dry_run)
    mode = request.mode.upper()
    if mode not in BACKFILL_MODES:
        raise ValueError(f"unknown backfill mode: {request.mode}")
    if not request.sources:
        raise ValueError("at least one source is required")
    conn = ctx.conn
    sources = []
    missing = []
    for source_id in request.sources:
        source = get_source(conn, source_id)
        if source is None:
            missing.append(source_id)
        else:
            sources.append(source)
    if missing:
        raise ValueError(f"unknown source(s): {', '.join(missing)}")

    run_id = insert_backfill_run(
        conn,
        sources=list(request.sources),
        mode=mode,
        dry_run=request.dry_run,
        date_from=request.date_from.isoformat() if request.date_from else None,
        date_to=request.date_to.isoformat() if request.date_to else None,
        max_urls=request.max_urls,
        max_per_source=request.max_per_source,
        delay_ms=request.delay_ms,
        resumed_from=request.resumed_from,
    )
    update_backfill_run(conn, run_id, status="RUNNING", started_at=utc_now_iso())
    log_event(
        ctx.logger,
        logging.INFO,
        "backfill_started",
        run_id=run_id,
        sources=",".join(request.sources),
        mode=mode,
        dry_run=request.dry_run,
        max_urls=request.max_urls,
    )

    counters = _Counters()
    run_ctx = ctx.with_run(run_id)
    status = "COMPLETED"
    started = request.start_at_source is None
    try:
        for source in sources:
            if not started:
                if source.id != request.start_at_source:
                    continue
                started = True
            if counters.processed >= request.max_urls:
                break
            _backfill_source(run_ctx, run_id, source, mode, request, counters)
    except BackfillCancelled:
        status = "CANCELLED"
    except Exception as exc:  # noqa: BLE001
        counters.errors.append(_error_entry(None, None, f"unexpected: {exc}"))
        update_backfill_run(conn, run_id, status="FAILED", finished_at=utc_now_iso(), **counters.as_fields())
        log_event(ctx.logger, logging.ERROR, "backfill_failed", run_id=run_id, error=str(exc))
        raise
    if status == "COMPLETED" and get_backfill_status(conn, run_id) == "CANCELLED":
        status = "CANCELLED"
    elif status == "COMPLETED" and counters.errors and counters.discovered == 0:
        status = "FAILED"
    update_backfill_run(conn, run_id, status=status, finished_at=utc_now_iso(), **counters.as_fields())
    log_event(
        ctx.logger,
        logging.INFO,
        "backfill_finished",
        run_id=run_id,
        status=status,
        discovered=counters.discovered,
        queued=counters.queued,
        skipped=counters.skipped,
        would_queue=counters.would_queue,
        would_skip=counters.would_skip,
        errors=len(counters.errors),
    )
    run = get_backfill_run(conn, run_id)
    if run is None:
        raise RuntimeError(f"backfill run vanished: {run_id}")
    return run


def _backfill_source(
    ctx: "PipelineContext",
    run_id: str,
    source: Source,
    mode: str,
    request: BackfillRequest,
    counters: _Counters,
) -> None:
    conn = ctx.conn
    _raise_if_cancelled(conn, run_id)
    paced = replace(
        source,
        min_delay_ms=max(source.min_delay_ms or 0, request.delay_ms),
        max_delay_ms=max(source.max_delay_ms or 0, request.delay_ms),
    )
    try:
        candidates = discover_backfill_candidates(
            ctx, paced, mode, request.date_from, request.date_to, counters.errors
        )
    except (FetchError, ValidationError) as exc:
        counters.errors.append(_error_entry(source.id, getattr(exc, "url", None), str(exc)))
        log_event(ctx.logger, logging.WARNING, "backfill_source_failed", run_id=run_id, source_id=source.id, error=str(exc))
        update_backfill_run(conn, run_id, last_processed_source=source.id, **counters.as_fields())
        return
    counters.discovered += len(candidates)
    surface = DiscoveryQueue(ctx)
    batch_size = max(1, ctx.config.backfill.batch_size)
    per_source = 0
    for start in range(0, len(candidates), batch_size):
        _raise_if_cancelled(conn, run_id)
        last_url = None
        for candidate in candidates[start : start + batch_size]:
            if counters.processed >= request.max_urls or per_source >= request.max_per_source:
                break
            result = surface.offer(
                source,
                candidate,
                "BACKFILL",
                backfill_run_id=run_id,
                dry_run=request.dry_run,
            )
            if result.outcome == "queued":
                counters.queued += 1
            elif result.outcome == "skipped":
                counters.skipped += 1
            elif result.outcome == "would_queue":
                counters.would_queue += 1
            elif result.outcome == "rejected":
                counters.errors.append(_error_entry(source.id, candidate.url, str(result.reason)))
                continue
            else:
                counters.would_skip += 1
            per_source += 1
            last_url = result.canonical_url
        progress = counters.as_fields()
        if last_url is not None:
            progress["last_processed_url"] = last_url
        update_backfill_run(conn, run_id, last_processed_source=source.id, **progress)
        if counters.processed >= request.max_urls or per_source >= request.max_per_source:
            break
    if not candidates:
        update_backfill_run(conn, run_id, last_processed_source=source.id, **counters.as_fields())


def _raise_if_cancelled(conn: Any, run_id: str) -> None:
    if get_backfill_status(conn, run_id) == "CANCELLED":
        raise BackfillCancelled(run_id)


def discover_backfill_candidates(
    ctx: "PipelineContext",
    source: Source,
    mode: str,
    date_from: date | None,
    date_to: date | None,
    errors: list[dict[str, object]],
) -> list[Candidate]:
    """Full historical listing of a source, date-filtered and de-duplicated by canonical URL."""
    if mode == "SITEMAP":
        sitemap_url = source.sitemap_url or source.listing_url
        if not sitemap_url:
            raise ValidationError(f"source {source.id} has no sitemap url", stage="backfill")
        since = datetime(date_from.year, date_from.month, date_from.day, tzinfo=timezone.utc) if date_from else None
        child_errors: list[dict[str, object]] = []
        entries = walk_sitemap(
            ctx.fetcher,
            source,
            sitemap_url,
            ctx.logger,
            max_depth=ctx.config.discovery.max_sitemap_depth,
            since=since,
            errors=child_errors,
        )
        for failure in child_errors:
            errors.append(_error_entry(source.id, failure.get("url"), str(failure.get("message"))))
        raw = [Candidate(url=entry.url, published_at=entry.lastmod) for entry in entries]
    elif mode == "PAGINATION":
        raw = _paginate(ctx, source, date_from, errors)
    else:
        raw = _crawl_archive(ctx, source, errors)

    extra = ctx.config.canonical.tracking_params
    seen: set[str] = set()
    candidates = []
    for candidate in raw:
        if not _within_dates(candidate, date_from, date_to):
            continue
        try:
            canonical = canonicalize_url(candidate.url, extra)
        except ValueError as exc:
            errors.append(_error_entry(source.id, candidate.url, str(exc)))
            continue
        if canonical in seen:
            continue
        seen.add(canonical)
        candidates.append(candidate)
    return candidates


def _paginate(
    ctx: "PipelineContext",
    source: Source,
    date_from: date | None,
    errors: list[dict[str, object]],
) -> list[Candidate]:
    candidates: list[Candidate] = []
    seen_urls: set[str] = set()
    for page_url in pagination_urls(source, ctx.config.backfill.max_pages):
        try:
            response = ctx.fetcher.get(page_url, source)
        except FetchError as exc:
            errors.append(_error_entry(source.id, page_url, str(exc)))
            break
        entries = _parse_listing(source, response.body, response.url)
        fresh = [entry for entry in entries if entry.url not in seen_urls]
        if not fresh:
            break
        for entry in fresh:
            seen_urls.add(entry.url)
            candidates.append(Candidate(url=entry.url, published_at=entry.published_at))
        dated = [entry.published_at for entry in fresh if entry.published_at is not None]
        # Listings run newest first; a page entirely before date_from ends the walk.
        if date_from and dated and all(value.date() < date_from for value in dated):
            break
    return candidates


def _crawl_archive(
    ctx: "PipelineContext",
    source: Source,
    errors: list[dict[str, object]],
) -> list[Candidate]:
    archive_url = source.archive_url or source.listing_url
    if not archive_url:
        raise ValidationError(f"source {source.id} has no archive url", stage="backfill")
    response = ctx.fetcher.get(archive_url, source)
    archive_path = urlsplit(response.url).path.rstrip("/")
    documents: list[Candidate] = []
    sub_pages: list[str] = []
    for entry in parse_html_listing(response.body, response.url):
        if _is_document(source, entry.url):
            documents.append(Candidate(url=entry.url, published_at=entry.published_at))
        elif urlsplit(entry.url).path.startswith(archive_path + "/"):
            sub_pages.append(entry.url)
    for page_url in sub_pages[: ctx.config.backfill.max_pages]:
        try:
            page = ctx.fetcher.get(page_url, source)
        except FetchError as exc:
            errors.append(_error_entry(source.id, page_url, str(exc)))
            continue
        for entry in parse_html_listing(page.body, page.url, source.url_pattern):
            documents.append(Candidate(url=entry.url, published_at=entry.published_at, crawl_depth=1))
    return documents


def _is_document(source: Source, url: str) -> bool:
    if source.url_pattern:
        return re.search(source.url_pattern, url) is not None
    return urlsplit(url).path.lower().endswith((".pdf", ".html", ".htm"))


def _parse_listing(source: Source, body: bytes, url: str) -> list[ListingEntry]:
    if source.listing_kind == "RSS":
        return parse_rss(body)
    return parse_html_listing(body, url, source.url_pattern)


def _within_dates(candidate: Candidate, date_from: date | None, date_to: date | None) -> bool:
    if candidate.published_at is None:
        return True
    day = candidate.published_at.date()
    if date_from and day < date_from:
        return False
    if date_to and day > date_to:
        return False
    return True


def _error_entry(source_id: str | None, url: object, message: str) -> dict[str, object]:
    return {"timestamp": utc_now_iso(), "source": source_id, "url": url, "message": message}


def cancel_backfill(conn: Any, run_id: str) -> bool:
    return request_backfill_cancel(conn, run_id)


def resume_backfill(ctx: "PipelineContext", run_id: str) -> BackfillRun:
    """Start a new run with the parameters of ``run_id``, from its last processed source."""
    previous = get_backfill_run(ctx.conn, run_id)
    if previous is None:
        raise ValueError(f"backfill run not found: {run_id}")
    if previous.status in ("PENDING", "RUNNING"):
        raise ValueError(f"backfill run {run_id} is still {previous.status}")
    request = BackfillRequest(
        sources=previous.sources,
        mode=previous.mode,
        date_from=date.fromisoformat(previous.date_from) if previous.date_from else None,
        date_to=date.fromisoformat(previous.date_to) if previous.date_to else None,
        max_urls=previous.max_urls,
        max_per_source=previous.max_per_source,
        delay_ms=previous.delay_ms,
        dry_run=previous.dry_run,
        resumed_from=previous.id,
        start_at_source=previous.last_processed_source,
    )
    return run_backfill(ctx, request)


def list_backfill_sources(conn: Any) -> list[dict[str, object]]:
    rows = []
    for source in list_sources(conn, enabled_only=False):
        modes = []
        if source.sitemap_url or (source.listing_kind == "SITEMAP" and source.listing_url):
            modes.append("SITEMAP")
        if source.pagination_pattern or source.listing_url:
            modes.append("PAGINATION")
        if source.archive_url:
            modes.append("ARCHIVE")
        rows.append(
            {
                "id": source.id,
                "name": source.name,
                "domain": source.domain,
                "authority_level": source.authority_level,
                "priority_tier": source.priority_tier,
                "enabled": source.enabled,
                "modes": modes,
            }
        )
    return rows
