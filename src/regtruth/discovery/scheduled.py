from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from ..errors import FetchError, ValidationError
from ..models import Source
from ..storage import get_setting, list_sources, set_setting, update_source_discovery
from ..utils import log_event, parse_date_value, utc_now
from .classify import is_source_due, next_scan_at
from .listings import parse_html_listing, parse_rss
from .sitemap import walk_sitemap
from .surface import Candidate, DiscoveryQueue

if TYPE_CHECKING:
    from ..context import PipelineContext

NEXT_SCAN_KEY = "discovery.next_scan_at.{source_id}"


def list_forward_candidates(
    ctx: "PipelineContext",
    source: Source,
    errors: list[dict[str, object]],
) -> tuple[list[Candidate], datetime | None]:
    """Newest entries of a source's listing, newer than its checkpoint.

    Returns the candidates and the new checkpoint (latest date seen).
    """
    since = parse_date_value(source.checkpoint)
    entries: list[tuple[str, datetime | None]] = []
    if source.listing_kind == "SITEMAP":
        sitemap_url = source.sitemap_url or source.listing_url
        if not sitemap_url:
            raise ValidationError(f"source {source.id} has no sitemap url", stage="discovery")
        found = walk_sitemap(
            ctx.fetcher,
            source,
            sitemap_url,
            ctx.logger,
            max_depth=ctx.config.discovery.max_sitemap_depth,
            since=since,
            errors=errors,
        )
        entries = [(entry.url, entry.lastmod) for entry in found]
    elif source.listing_kind == "RSS":
        if not source.listing_url:
            raise ValidationError(f"source {source.id} has no listing url", stage="discovery")
        response = ctx.fetcher.get(source.listing_url, source)
        entries = [(entry.url, entry.published_at) for entry in parse_rss(response.body)]
    else:
        if not source.listing_url:
            raise ValidationError(f"source {source.id} has no listing url", stage="discovery")
        # Forward-only: the first listing page carries everything new.
        response = ctx.fetcher.get(source.listing_url, source)
        entries = [
            (entry.url, entry.published_at)
            for entry in parse_html_listing(response.body, response.url, source.url_pattern)
        ]

    candidates = []
    checkpoint = since
    for url, published_at in entries:
        if since is not None and published_at is not None and published_at <= since:
            continue
        if published_at is not None and (checkpoint is None or published_at > checkpoint):
            checkpoint = published_at
        candidates.append(Candidate(url=url, published_at=published_at))
    return candidates, checkpoint


def run_scheduled_discovery(
    ctx: "PipelineContext",
    *,
    source_ids: list[str] | None = None,
    now: datetime | None = None,
    force: bool = False,
) -> dict[str, object]:
    now = now or utc_now()
    conn = ctx.conn
    surface = DiscoveryQueue(ctx)
    sources = [
        source
        for source in list_sources(conn, enabled_only=True)
        if not source_ids or source.id in source_ids
    ]
    checked = due = discovered = queued_total = skipped_total = 0
    errors: list[dict[str, object]] = []
    for source in sources:
        checked += 1
        next_scan = get_setting(conn, NEXT_SCAN_KEY.format(source_id=source.id), None)
        if not force and not is_source_due(source, ctx.config.discovery, now, next_scan):
            continue
        due += 1
        try:
            candidates, checkpoint = list_forward_candidates(ctx, source, errors)
        except (FetchError, ValidationError) as exc:
            errors.append({"source": source.id, "message": str(exc)})
            log_event(ctx.logger, logging.WARNING, "scheduled_discovery_failed", source_id=source.id, error=str(exc))
            continue
        queued = skipped = 0
        for candidate in candidates:
            result = surface.offer(source, candidate, "SCHEDULED")
            if result.outcome == "rejected":
                errors.append({"source": source.id, "url": result.canonical_url, "message": result.reason})
            elif result.queued:
                queued += 1
            else:
                skipped += 1
        update_source_discovery(conn, source.id, now.isoformat(), checkpoint.isoformat() if checkpoint else None)
        set_setting(
            conn,
            NEXT_SCAN_KEY.format(source_id=source.id),
            next_scan_at(source, ctx.config.discovery, now).isoformat(),
        )
        discovered += len(candidates)
        queued_total += queued
        skipped_total += skipped
        log_event(
            ctx.logger,
            logging.INFO,
            "scheduled_discovery",
            source_id=source.id,
            tier=source.priority_tier,
            discovered=len(candidates),
            queued=queued,
            skipped=skipped,
        )
    return {
        "sources_checked": checked,
        "sources_due": due,
        "discovered": discovered,
        "queued": queued_total,
        "skipped": skipped_total,
        "errors": errors,
    }
