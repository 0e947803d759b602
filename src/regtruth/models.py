from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Union

from .errors import InvalidTransitionError

ITEM_STATUSES = ("PENDING", "FETCHED", "PROCESSED", "SKIPPED", "FAILED")
DISCOVERY_METHODS = ("SCHEDULED", "BACKFILL")
BACKFILL_MODES = ("SITEMAP", "PAGINATION", "ARCHIVE")
BACKFILL_STATUSES = ("PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED")
CONTENT_CLASSES = ("HTML", "PDF_TEXT", "PDF_SCANNED", "OTHER")
STALENESS_STATUSES = ("FRESH", "AGING", "STALE", "EXPIRED", "UNAVAILABLE")
ARTIFACT_KINDS = ("HTML_TEXT", "PDF_TEXT", "OCR_TEXT")
VALUE_TYPES = ("DATE", "NUMERIC", "PERCENTAGE", "CURRENCY", "TEXT", "REFERENCE")
AUTHORITY_LEVELS = ("LAW", "GUIDANCE", "PROCEDURE", "PRACTICE")
PRIORITY_TIERS = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
LISTING_KINDS = ("SITEMAP", "RSS", "HTML")
RULE_STATUSES = ("DRAFT", "PENDING_REVIEW", "APPROVED", "PUBLISHED", "DEPRECATED", "REJECTED")
CONFLICT_STATUSES = ("OPEN", "RESOLVED")
CONFLICT_TYPES = ("VALUE_MISMATCH", "CROSS_SLUG_DUPLICATE")
CLAIM_ROLES = ("GROUNDING", "CORROBORATING")
EDGE_RELATIONS = ("SUPERSEDES", "REFERENCES")

# Forward lifecycle plus the DEPRECATED/REJECTED branches taken by
# arbitration and human override.
RULE_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "DRAFT": ("APPROVED", "PENDING_REVIEW", "DEPRECATED", "REJECTED"),
    "PENDING_REVIEW": ("APPROVED", "DEPRECATED", "REJECTED"),
    "APPROVED": ("PUBLISHED", "DEPRECATED", "REJECTED"),
    "PUBLISHED": ("DEPRECATED",),
    "DEPRECATED": (),
    "REJECTED": (),
}


def check_rule_transition(current: str, target: str) -> None:
    if target not in RULE_TRANSITIONS.get(current, ()):
        raise InvalidTransitionError(f"rule transition {current} -> {target} is not allowed")


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    domain: str
    authority_level: str
    priority_tier: str
    listing_kind: str
    listing_url: str | None
    sitemap_url: str | None
    archive_url: str | None
    pagination_pattern: str | None
    url_pattern: str | None
    max_pages: int
    min_delay_ms: int | None
    max_delay_ms: int | None
    max_concurrent: int | None
    enabled: bool
    last_discovered_at: str | None = None
    checkpoint: str | None = None


@dataclass(frozen=True)
class PendingState:
    status = "PENDING"


@dataclass(frozen=True)
class FetchedState:
    evidence_id: str
    content_hash: str
    content_class: str
    status = "FETCHED"


@dataclass(frozen=True)
class ProcessedState:
    evidence_id: str
    claim_count: int
    status = "PROCESSED"


@dataclass(frozen=True)
class SkippedState:
    reason: str
    status = "SKIPPED"


@dataclass(frozen=True)
class FailedState:
    error: str
    permanent: bool
    status = "FAILED"


ItemState = Union[PendingState, FetchedState, ProcessedState, SkippedState, FailedState]

_STATE_TYPES: dict[str, type] = {
    "PENDING": PendingState,
    "FETCHED": FetchedState,
    "PROCESSED": ProcessedState,
    "SKIPPED": SkippedState,
    "FAILED": FailedState,
}


def state_to_record(state: ItemState) -> tuple[str, str]:
    return state.status, json.dumps(asdict(state), sort_keys=True)


def state_from_record(status: str, payload_json: str | None) -> ItemState:
    state_type = _STATE_TYPES.get(status)
    if state_type is None:
        raise ValueError(f"unknown pipeline state: {status}")
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    return state_type(**payload)


@dataclass(frozen=True)
class DiscoveredItem:
    id: int
    source_id: str
    url: str
    canonical_url: str
    state: ItemState
    discovery_method: str
    content_hash: str | None
    evidence_id: str | None
    retry_count: int
    crawl_depth: int
    change_frequency: str | None
    freshness_risk: str | None
    backfill_run_id: str | None
    published_at: str | None
    created_at: str

    @property
    def status(self) -> str:
        return self.state.status


@dataclass(frozen=True)
class Evidence:
    id: str
    source_id: str
    url: str
    content_hash: str
    raw_content: bytes
    content_type: str | None
    content_class: str
    fetched_at: str
    last_verified_at: str
    staleness_status: str
    verify_failures: int
    pipeline_state: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class EvidenceArtifact:
    id: int
    evidence_id: str
    kind: str
    content: str
    content_hash: str
    created_at: str


@dataclass(frozen=True)
class AtomicClaim:
    id: str
    evidence_id: str
    concept_id: str
    exact_quote: str
    normalized_value: str
    value_type: str
    confidence: float
    article_ref: str | None
    effective_from: str | None
    extractor: str
    created_at: str


@dataclass(frozen=True)
class RuleClaim:
    claim_id: str
    role: str
    evidence_id: str
    url: str
    exact_quote: str


@dataclass(frozen=True)
class Rule:
    id: str
    concept_id: str
    value: str
    value_type: str
    status: str
    authority_level: str
    confidence: float
    effective_from: str
    effective_until: str | None
    supersedes_id: str | None
    article_ref: str | None
    created_at: str
    updated_at: str
    published_at: str | None = None
    claims: list[RuleClaim] = field(default_factory=list)


@dataclass(frozen=True)
class Conflict:
    id: str
    concept_id: str
    effective_from: str
    conflict_type: str
    status: str
    rule_ids: list[str]
    description: str
    created_at: str
    resolved_at: str | None
    resolution: dict[str, object] | None


@dataclass(frozen=True)
class BackfillRun:
    id: str
    sources: list[str]
    mode: str
    dry_run: bool
    status: str
    date_from: str | None
    date_to: str | None
    max_urls: int
    max_per_source: int
    delay_ms: int
    discovered_count: int
    queued_count: int
    skipped_count: int
    would_queue_count: int
    would_skip_count: int
    error_count: int
    errors: list[dict[str, object]]
    last_processed_source: str | None
    last_processed_url: str | None
    resumed_from: str | None
    created_at: str
    started_at: str | None
    finished_at: str | None


@dataclass(frozen=True)
class GraphEdge:
    from_id: str
    to_id: str
    relation: str
    created_at: str


@dataclass(frozen=True)
class Job:
    id: str
    queue: str
    status: str
    priority: int
    payload: dict[str, object]
    result: dict[str, object] | None
    attempts: int
    max_attempts: int
    not_before: str | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
