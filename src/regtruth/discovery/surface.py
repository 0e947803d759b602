from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from ..canonical import canonicalize_url, job_id
from ..models import DISCOVERY_METHODS, PendingState, Source
from ..queues import enqueue
from ..storage import discovered_item_exists, insert_discovered_item_if_absent
from ..utils import iso_or_none, log_event
from .classify import classify_url, tier_priority

if TYPE_CHECKING:
    from ..context import PipelineContext


@dataclass(frozen=True)
class Candidate:
    url: str
    published_at: datetime | None = None
    crawl_depth: int = 0


@dataclass(frozen=True)
class OfferResult:
    outcome: str
    canonical_url: str
    item_id: int | None
    job_id: str
    reason: str | None = None

    @property
    def queued(self) -> bool:
        return self.outcome in ("queued", "would_queue")


class DiscoveryQueue:
    """The single discovery surface shared by the scheduled and backfill producers.

    Items are created with upsert-if-absent on (source, canonical url) and
    tagged with the producing method; a fetch job is enqueued under the
    deterministic job id only when the item is new.
    """

    def __init__(self, ctx: "PipelineContext") -> None:
        self._ctx = ctx

    def offer(
        self,
        source: Source,
        candidate: Candidate,
        method: str,
        *,
        backfill_run_id: str | None = None,
        dry_run: bool = False,
    ) -> OfferResult:
        if method not in DISCOVERY_METHODS:
            raise ValueError(f"unknown discovery method: {method}")
        config = self._ctx.config
        extra = config.canonical.tracking_params
        try:
            canonical = canonicalize_url(candidate.url, extra)
            fetch_job_id = job_id(source.id, candidate.url, extra)
        except ValueError as exc:
            log_event(
                self._ctx.logger,
                logging.WARNING,
                "candidate_rejected",
                source_id=source.id,
                url=candidate.url,
                error=str(exc),
            )
            return OfferResult("rejected", candidate.url, None, "", reason=str(exc))
        conn = self._ctx.conn

        if dry_run:
            exists = discovered_item_exists(conn, source.id, canonical)
            return OfferResult(
                outcome="would_skip" if exists else "would_queue",
                canonical_url=canonical,
                item_id=None,
                job_id=fetch_job_id,
            )

        freshness_risk, change_frequency = classify_url(canonical, source)
        with conn.transaction():
            item_id = insert_discovered_item_if_absent(
                conn,
                source_id=source.id,
                url=candidate.url,
                canonical_url=canonical,
                discovery_method=method,
                state=PendingState(),
                crawl_depth=candidate.crawl_depth,
                change_frequency=change_frequency,
                freshness_risk=freshness_risk,
                backfill_run_id=backfill_run_id,
                published_at=iso_or_none(candidate.published_at),
            )
            if item_id is None:
                return OfferResult("skipped", canonical, None, fetch_job_id)
            enqueue(
                conn,
                config,
                "fetch",
                fetch_job_id,
                {"item_id": item_id, "source_id": source.id, "url": canonical},
                priority=tier_priority(source, config.discovery),
            )
        log_event(
            self._ctx.logger,
            logging.DEBUG,
            "item_discovered",
            source_id=source.id,
            url=canonical,
            method=method,
            job_id=fetch_job_id,
        )
        return OfferResult("queued", canonical, item_id, fetch_job_id)
