from __future__ import annotations

import json
from typing import Any, Iterable

from .db import DBConn, connect_db
from .models import (
    ARTIFACT_KINDS,
    BACKFILL_STATUSES,
    CLAIM_ROLES,
    CONFLICT_STATUSES,
    CONFLICT_TYPES,
    CONTENT_CLASSES,
    EDGE_RELATIONS,
    STALENESS_STATUSES,
    AtomicClaim,
    BackfillRun,
    Conflict,
    DiscoveredItem,
    Evidence,
    EvidenceArtifact,
    GraphEdge,
    ItemState,
    Job,
    Rule,
    RuleClaim,
    Source,
    check_rule_transition,
    state_from_record,
    state_to_record,
)
from .utils import json_dumps, json_loads, new_id, sha256_hex, utc_now_iso

LIVE_RULE_EXCLUDED = ("DEPRECATED", "REJECTED")
ARTIFACT_PRIORITY = ("OCR_TEXT", "PDF_TEXT", "HTML_TEXT")


def _require_member(value: str, allowed: tuple[str, ...], field: str) -> None:
    if value not in allowed:
        raise ValueError(f"{field} must be one of {', '.join(allowed)}, got {value!r}")


def init_db(path: str) -> DBConn:
    return connect_db(path)


# Sources


def upsert_source(conn: Any, source_dict: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, domain, authority_level, priority_tier, listing_kind, listing_url,
             sitemap_url, archive_url, pagination_pattern, url_pattern, max_pages,
             min_delay_ms, max_delay_ms, max_concurrent, enabled, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            domain = excluded.domain,
            authority_level = excluded.authority_level,
            priority_tier = excluded.priority_tier,
            listing_kind = excluded.listing_kind,
            listing_url = excluded.listing_url,
            sitemap_url = excluded.sitemap_url,
            archive_url = excluded.archive_url,
            pagination_pattern = excluded.pagination_pattern,
            url_pattern = excluded.url_pattern,
            max_pages = excluded.max_pages,
            min_delay_ms = excluded.min_delay_ms,
            max_delay_ms = excluded.max_delay_ms,
            max_concurrent = excluded.max_concurrent,
            enabled = excluded.enabled,
            updated_at = excluded.updated_at
        """,
        (
            source_dict["id"],
            source_dict["name"],
            source_dict["domain"],
            source_dict["authority_level"],
            source_dict.get("priority_tier") or "MEDIUM",
            source_dict.get("listing_kind") or "SITEMAP",
            source_dict.get("listing_url"),
            source_dict.get("sitemap_url"),
            source_dict.get("archive_url"),
            source_dict.get("pagination_pattern"),
            source_dict.get("url_pattern"),
            int(source_dict.get("max_pages") or 10),
            source_dict.get("min_delay_ms"),
            source_dict.get("max_delay_ms"),
            source_dict.get("max_concurrent"),
            1 if source_dict.get("enabled", True) else 0,
            now,
            now,
        ),
    )


_SOURCE_COLUMNS = """
    id, name, domain, authority_level, priority_tier, listing_kind, listing_url, sitemap_url,
    archive_url, pagination_pattern, url_pattern, max_pages, min_delay_ms, max_delay_ms,
    max_concurrent, enabled, last_discovered_at, checkpoint
"""


def get_source(conn: Any, source_id: str) -> Source | None:
    row = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?",
        (source_id,),
    ).fetchone()
    return _row_to_source(row) if row else None


def list_sources(conn: Any, enabled_only: bool = True) -> list[Source]:
    sql = f"SELECT {_SOURCE_COLUMNS} FROM sources"
    if enabled_only:
        sql += " WHERE enabled = 1"
    sql += " ORDER BY id"
    return [_row_to_source(row) for row in conn.execute(sql).fetchall()]


def update_source_discovery(
    conn: Any, source_id: str, discovered_at: str, checkpoint: str | None
) -> None:
    conn.execute(
        """
        UPDATE sources
        SET last_discovered_at = ?, checkpoint = COALESCE(?, checkpoint), updated_at = ?
        WHERE id = ?
        """,
        (discovered_at, checkpoint, utc_now_iso(), source_id),
    )


def _row_to_source(row: tuple) -> Source:
    return Source(
        id=row[0],
        name=row[1],
        domain=row[2],
        authority_level=row[3],
        priority_tier=row[4],
        listing_kind=row[5],
        listing_url=row[6],
        sitemap_url=row[7],
        archive_url=row[8],
        pagination_pattern=row[9],
        url_pattern=row[10],
        max_pages=int(row[11]),
        min_delay_ms=row[12],
        max_delay_ms=row[13],
        max_concurrent=row[14],
        enabled=bool(row[15]),
        last_discovered_at=row[16],
        checkpoint=row[17],
    )


# Discovered items


_ITEM_COLUMNS = """
    id, source_id, url, canonical_url, status, state_json, discovery_method, content_hash,
    evidence_id, retry_count, crawl_depth, change_frequency, freshness_risk, backfill_run_id,
    published_at, created_at
"""


def insert_discovered_item_if_absent(
    conn: Any,
    *,
    source_id: str,
    url: str,
    canonical_url: str,
    discovery_method: str,
    state: ItemState,
    crawl_depth: int = 0,
    change_frequency: str | None = None,
    freshness_risk: str | None = None,
    backfill_run_id: str | None = None,
    published_at: str | None = None,
) -> int | None:
    """Insert a new item; an existing (source, canonical url) row is never overwritten."""
    status, state_json = state_to_record(state)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO discovered_items
            (source_id, url, canonical_url, status, state_json, discovery_method, retry_count,
             crawl_depth, change_frequency, freshness_risk, backfill_run_id, published_at,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            url,
            canonical_url,
            status,
            state_json,
            discovery_method,
            crawl_depth,
            change_frequency,
            freshness_risk,
            backfill_run_id,
            published_at,
            now,
            now,
        ),
    )
    if cursor.rowcount != 1:
        return None
    return int(cursor.lastrowid)


def discovered_item_exists(conn: Any, source_id: str, canonical_url: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM discovered_items WHERE source_id = ? AND canonical_url = ?",
        (source_id, canonical_url),
    ).fetchone()
    return row is not None


def get_discovered_item(conn: Any, item_id: int) -> DiscoveredItem | None:
    row = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM discovered_items WHERE id = ?",
        (item_id,),
    ).fetchone()
    return _row_to_item(row) if row else None


def get_discovered_item_by_url(
    conn: Any, source_id: str, canonical_url: str
) -> DiscoveredItem | None:
    row = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM discovered_items WHERE source_id = ? AND canonical_url = ?",
        (source_id, canonical_url),
    ).fetchone()
    return _row_to_item(row) if row else None


def update_item_state(
    conn: Any,
    item_id: int,
    state: ItemState,
    *,
    content_hash: str | None = None,
    evidence_id: str | None = None,
) -> None:
    status, state_json = state_to_record(state)
    conn.execute(
        """
        UPDATE discovered_items
        SET status = ?, state_json = ?,
            content_hash = COALESCE(?, content_hash),
            evidence_id = COALESCE(?, evidence_id),
            updated_at = ?
        WHERE id = ?
        """,
        (status, state_json, content_hash, evidence_id, utc_now_iso(), item_id),
    )


def increment_item_retry(conn: Any, item_id: int) -> int:
    conn.execute(
        "UPDATE discovered_items SET retry_count = retry_count + 1, updated_at = ? WHERE id = ?",
        (utc_now_iso(), item_id),
    )
    row = conn.execute("SELECT retry_count FROM discovered_items WHERE id = ?", (item_id,)).fetchone()
    return int(row[0]) if row else 0


def list_items_by_status(
    conn: Any, status: str, limit: int = 50, max_retries: int | None = None
) -> list[DiscoveredItem]:
    params: list[object] = [status]
    retry_clause = ""
    if max_retries is not None:
        retry_clause = " AND retry_count < ?"
        params.append(max_retries)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT {_ITEM_COLUMNS} FROM discovered_items
        WHERE status = ?{retry_clause}
        ORDER BY id ASC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_item(row) for row in rows]


def list_items_for_evidence(conn: Any, evidence_id: str) -> list[DiscoveredItem]:
    rows = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM discovered_items WHERE evidence_id = ? ORDER BY id",
        (evidence_id,),
    ).fetchall()
    return [_row_to_item(row) for row in rows]


def count_items_by_status(conn: Any) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) FROM discovered_items GROUP BY status"
    ).fetchall()
    return {row[0]: int(row[1]) for row in rows}


def count_discovered_items(conn: Any, source_id: str | None = None) -> int:
    if source_id:
        row = conn.execute(
            "SELECT COUNT(*) FROM discovered_items WHERE source_id = ?", (source_id,)
        ).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM discovered_items").fetchone()
    return int(row[0])


def _row_to_item(row: tuple) -> DiscoveredItem:
    return DiscoveredItem(
        id=int(row[0]),
        source_id=row[1],
        url=row[2],
        canonical_url=row[3],
        state=state_from_record(row[4], row[5]),
        discovery_method=row[6],
        content_hash=row[7],
        evidence_id=row[8],
        retry_count=int(row[9]),
        crawl_depth=int(row[10]),
        change_frequency=row[11],
        freshness_risk=row[12],
        backfill_run_id=row[13],
        published_at=row[14],
        created_at=row[15],
    )


# Evidence


_EVIDENCE_COLUMNS = """
    id, source_id, url, content_hash, raw_content, content_type, content_class, fetched_at,
    last_verified_at, staleness_status, verify_failures, pipeline_state_json
"""


def upsert_evidence(
    conn: Any,
    *,
    source_id: str,
    url: str,
    content_hash: str,
    raw_content: bytes,
    content_type: str | None,
    content_class: str,
    fetched_at: str,
) -> tuple[Evidence, bool]:
    """Insert a capture keyed on (url, content_hash).

    Returns ``(evidence, created)``. Unchanged content only refreshes
    ``last_verified_at`` on the existing row.
    """
    _require_member(content_class, CONTENT_CLASSES, "content_class")
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO evidence
            (id, source_id, url, content_hash, raw_content, content_type, content_class,
             fetched_at, last_verified_at, staleness_status, verify_failures, pipeline_state_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'FRESH', 0, ?)
        """,
        (
            new_id(),
            source_id,
            url,
            content_hash,
            raw_content,
            content_type,
            content_class,
            fetched_at,
            fetched_at,
            json_dumps({}),
        ),
    )
    created = cursor.rowcount == 1
    if not created:
        conn.execute(
            """
            UPDATE evidence
            SET last_verified_at = ?, staleness_status = 'FRESH', verify_failures = 0
            WHERE url = ? AND content_hash = ?
            """,
            (fetched_at, url, content_hash),
        )
    evidence = get_evidence_by_hash(conn, url, content_hash)
    if evidence is None:
        raise RuntimeError(f"evidence upsert lost row for {url}")
    return evidence, created


def get_evidence(conn: Any, evidence_id: str) -> Evidence | None:
    row = conn.execute(
        f"SELECT {_EVIDENCE_COLUMNS} FROM evidence WHERE id = ?",
        (evidence_id,),
    ).fetchone()
    return _row_to_evidence(row) if row else None


def get_evidence_by_hash(conn: Any, url: str, content_hash: str) -> Evidence | None:
    row = conn.execute(
        f"SELECT {_EVIDENCE_COLUMNS} FROM evidence WHERE url = ? AND content_hash = ?",
        (url, content_hash),
    ).fetchone()
    return _row_to_evidence(row) if row else None


def list_evidence_for_url(conn: Any, url: str) -> list[Evidence]:
    rows = conn.execute(
        f"SELECT {_EVIDENCE_COLUMNS} FROM evidence WHERE url = ? ORDER BY fetched_at ASC",
        (url,),
    ).fetchall()
    return [_row_to_evidence(row) for row in rows]


def list_evidence(conn: Any, limit: int = 1000) -> list[Evidence]:
    rows = conn.execute(
        f"SELECT {_EVIDENCE_COLUMNS} FROM evidence ORDER BY fetched_at ASC LIMIT ?",
        (limit,),
    ).fetchall()
    return [_row_to_evidence(row) for row in rows]


def merge_evidence_pipeline_state(conn: Any, evidence_id: str, updates: dict[str, object]) -> None:
    row = conn.execute(
        "SELECT pipeline_state_json FROM evidence WHERE id = ?", (evidence_id,)
    ).fetchone()
    if not row:
        return
    state = json_loads(row[0], {}) or {}
    state.update(updates)
    conn.execute(
        "UPDATE evidence SET pipeline_state_json = ? WHERE id = ?",
        (json_dumps(state), evidence_id),
    )


def set_evidence_staleness(conn: Any, evidence_id: str, status: str) -> None:
    _require_member(status, STALENESS_STATUSES, "staleness_status")
    conn.execute(
        "UPDATE evidence SET staleness_status = ? WHERE id = ?",
        (status, evidence_id),
    )


def record_evidence_verify_failure(conn: Any, url: str) -> int:
    conn.execute(
        "UPDATE evidence SET verify_failures = verify_failures + 1 WHERE url = ?",
        (url,),
    )
    row = conn.execute(
        "SELECT MAX(verify_failures) FROM evidence WHERE url = ?", (url,)
    ).fetchone()
    return int(row[0] or 0)


def count_evidence_by_staleness(conn: Any) -> dict[str, int]:
    rows = conn.execute(
        "SELECT staleness_status, COUNT(*) FROM evidence GROUP BY staleness_status"
    ).fetchall()
    return {row[0]: int(row[1]) for row in rows}


def _row_to_evidence(row: tuple) -> Evidence:
    raw = row[4]
    if isinstance(raw, memoryview):
        raw = raw.tobytes()
    elif isinstance(raw, str):
        raw = raw.encode("utf-8")
    return Evidence(
        id=row[0],
        source_id=row[1],
        url=row[2],
        content_hash=row[3],
        raw_content=raw,
        content_type=row[5],
        content_class=row[6],
        fetched_at=row[7],
        last_verified_at=row[8],
        staleness_status=row[9],
        verify_failures=int(row[10]),
        pipeline_state=json_loads(row[11], {}) or {},
    )


# Evidence artifacts


def insert_artifact(conn: Any, evidence_id: str, kind: str, content: str) -> bool:
    _require_member(kind, ARTIFACT_KINDS, "artifact kind")
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO evidence_artifacts
            (evidence_id, kind, content, content_hash, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (evidence_id, kind, content, sha256_hex(content), utc_now_iso()),
    )
    return cursor.rowcount == 1


def list_artifacts(conn: Any, evidence_id: str) -> list[EvidenceArtifact]:
    rows = conn.execute(
        """
        SELECT id, evidence_id, kind, content, content_hash, created_at
        FROM evidence_artifacts WHERE evidence_id = ?
        ORDER BY id ASC
        """,
        (evidence_id,),
    ).fetchall()
    return [
        EvidenceArtifact(
            id=int(row[0]),
            evidence_id=row[1],
            kind=row[2],
            content=row[3],
            content_hash=row[4],
            created_at=row[5],
        )
        for row in rows
    ]


def get_primary_artifact(conn: Any, evidence_id: str) -> EvidenceArtifact | None:
    artifacts = list_artifacts(conn, evidence_id)
    for kind in ARTIFACT_PRIORITY:
        matching = [artifact for artifact in artifacts if artifact.kind == kind]
        if matching:
            return matching[-1]
    return None


# Claims


def claim_identity(evidence_id: str, concept_id: str, exact_quote: str, normalized_value: str) -> str:
    return sha256_hex("|".join([evidence_id, concept_id, exact_quote, normalized_value]))[:32]


def insert_claim(
    conn: Any,
    *,
    evidence_id: str,
    concept_id: str,
    exact_quote: str,
    normalized_value: str,
    value_type: str,
    confidence: float,
    article_ref: str | None,
    effective_from: str | None,
    extractor: str,
) -> str | None:
    claim_id = claim_identity(evidence_id, concept_id, exact_quote, normalized_value)
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO claims
            (id, evidence_id, concept_id, exact_quote, normalized_value, value_type, confidence,
             article_ref, effective_from, extractor, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            claim_id,
            evidence_id,
            concept_id,
            exact_quote,
            normalized_value,
            value_type,
            float(confidence),
            article_ref,
            effective_from,
            extractor,
            utc_now_iso(),
        ),
    )
    return claim_id if cursor.rowcount == 1 else None


_CLAIM_COLUMNS = """
    id, evidence_id, concept_id, exact_quote, normalized_value, value_type, confidence,
    article_ref, effective_from, extractor, created_at
"""


def list_claims_for_evidence(conn: Any, evidence_id: str) -> list[AtomicClaim]:
    rows = conn.execute(
        f"SELECT {_CLAIM_COLUMNS} FROM claims WHERE evidence_id = ? ORDER BY created_at, id",
        (evidence_id,),
    ).fetchall()
    return [_row_to_claim(row) for row in rows]


def count_claims(conn: Any) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM claims").fetchone()[0])


def list_unlinked_claim_ids(conn: Any, concept_id: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT c.id FROM claims c
        WHERE c.concept_id = ?
          AND NOT EXISTS (SELECT 1 FROM rule_claims rc WHERE rc.claim_id = c.id)
        ORDER BY c.id
        """,
        (concept_id,),
    ).fetchall()
    return [row[0] for row in rows]


def list_claim_candidates(conn: Any, claim_ids: Iterable[str]) -> list[dict[str, object]]:
    """Claims joined with their evidence capture time, url and source authority."""
    ids = list(claim_ids)
    if not ids:
        return []
    placeholders = ",".join(["?"] * len(ids))
    rows = conn.execute(
        f"""
        SELECT c.id, c.evidence_id, c.concept_id, c.exact_quote, c.normalized_value, c.value_type,
               c.confidence, c.article_ref, c.effective_from, c.extractor, c.created_at,
               e.fetched_at, e.url, COALESCE(s.authority_level, 'PRACTICE')
        FROM claims c
        JOIN evidence e ON e.id = c.evidence_id
        LEFT JOIN sources s ON s.id = e.source_id
        WHERE c.id IN ({placeholders})
        ORDER BY c.id
        """,
        tuple(ids),
    ).fetchall()
    return [
        {
            "claim": _row_to_claim(row[:11]),
            "fetched_at": row[11],
            "url": row[12],
            "authority_level": row[13],
        }
        for row in rows
    ]


def _row_to_claim(row: tuple) -> AtomicClaim:
    return AtomicClaim(
        id=row[0],
        evidence_id=row[1],
        concept_id=row[2],
        exact_quote=row[3],
        normalized_value=row[4],
        value_type=row[5],
        confidence=float(row[6]),
        article_ref=row[7],
        effective_from=row[8],
        extractor=row[9],
        created_at=row[10],
    )


# Rules


_RULE_COLUMNS = """
    id, concept_id, value, value_type, status, authority_level, confidence, effective_from,
    effective_until, supersedes_id, article_ref, created_at, updated_at, published_at
"""


def insert_rule(
    conn: Any,
    *,
    concept_id: str,
    value: str,
    value_type: str,
    authority_level: str,
    confidence: float,
    effective_from: str,
    article_ref: str | None = None,
    supersedes_id: str | None = None,
    status: str = "DRAFT",
) -> str:
    rule_id = new_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO rules
            (id, concept_id, value, value_type, status, authority_level, confidence,
             effective_from, effective_until, supersedes_id, article_ref, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)
        """,
        (
            rule_id,
            concept_id,
            value,
            value_type,
            status,
            authority_level,
            float(confidence),
            effective_from,
            supersedes_id,
            article_ref,
            now,
            now,
        ),
    )
    insert_audit_event(conn, "rule", rule_id, "created", {"status": status, "concept_id": concept_id})
    return rule_id


def get_rule(conn: Any, rule_id: str, with_claims: bool = True) -> Rule | None:
    row = conn.execute(f"SELECT {_RULE_COLUMNS} FROM rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        return None
    claims = list_rule_claims(conn, rule_id) if with_claims else []
    return _row_to_rule(row, claims)


def list_rules(
    conn: Any,
    status: str | None = None,
    concept_id: str | None = None,
    limit: int = 500,
    with_claims: bool = False,
) -> list[Rule]:
    clauses = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if concept_id:
        clauses.append("concept_id = ?")
        params.append(concept_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"SELECT {_RULE_COLUMNS} FROM rules {where} ORDER BY created_at ASC, id ASC LIMIT ?",
        tuple(params),
    ).fetchall()
    return [
        _row_to_rule(row, list_rule_claims(conn, row[0]) if with_claims else [])
        for row in rows
    ]


def list_live_rules(conn: Any, concept_id: str, effective_from: str | None = None) -> list[Rule]:
    params: list[object] = [concept_id, *LIVE_RULE_EXCLUDED]
    period_clause = ""
    if effective_from is not None:
        period_clause = " AND effective_from = ?"
        params.append(effective_from)
    rows = conn.execute(
        f"""
        SELECT {_RULE_COLUMNS} FROM rules
        WHERE concept_id = ? AND status NOT IN (?, ?){period_clause}
        ORDER BY effective_from ASC, id ASC
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_rule(row, list_rule_claims(conn, row[0])) for row in rows]


def list_live_rules_in_period(conn: Any, effective_from: str) -> list[Rule]:
    rows = conn.execute(
        f"""
        SELECT {_RULE_COLUMNS} FROM rules
        WHERE effective_from = ? AND status NOT IN (?, ?)
        ORDER BY concept_id ASC, id ASC
        """,
        (effective_from, *LIVE_RULE_EXCLUDED),
    ).fetchall()
    return [_row_to_rule(row, list_rule_claims(conn, row[0])) for row in rows]


def latest_published_rule(conn: Any, concept_id: str, before: str) -> Rule | None:
    row = conn.execute(
        f"""
        SELECT {_RULE_COLUMNS} FROM rules
        WHERE concept_id = ? AND status = 'PUBLISHED' AND effective_from < ?
        ORDER BY effective_from DESC, id DESC
        LIMIT 1
        """,
        (concept_id, before),
    ).fetchone()
    return _row_to_rule(row, []) if row else None


def link_rule_claim(conn: Any, rule_id: str, claim_id: str, role: str) -> bool:
    _require_member(role, CLAIM_ROLES, "role")
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO rule_claims (rule_id, claim_id, role, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (rule_id, claim_id, role, utc_now_iso()),
    )
    return cursor.rowcount == 1


def list_rule_claims(conn: Any, rule_id: str) -> list[RuleClaim]:
    rows = conn.execute(
        """
        SELECT rc.claim_id, rc.role, c.evidence_id, e.url, c.exact_quote
        FROM rule_claims rc
        JOIN claims c ON c.id = rc.claim_id
        JOIN evidence e ON e.id = c.evidence_id
        WHERE rc.rule_id = ?
        ORDER BY CASE rc.role WHEN 'GROUNDING' THEN 0 ELSE 1 END, rc.claim_id
        """,
        (rule_id,),
    ).fetchall()
    return [
        RuleClaim(claim_id=row[0], role=row[1], evidence_id=row[2], url=row[3], exact_quote=row[4])
        for row in rows
    ]


def update_rule_status(
    conn: Any,
    rule_id: str,
    status: str,
    *,
    reason: str | None = None,
    actor: str = "pipeline",
) -> Rule:
    rule = get_rule(conn, rule_id, with_claims=False)
    if rule is None:
        raise ValueError(f"rule not found: {rule_id}")
    check_rule_transition(rule.status, status)
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE rules
        SET status = ?, updated_at = ?,
            approved_at = CASE WHEN ? = 'APPROVED' THEN ? ELSE approved_at END,
            published_at = CASE WHEN ? = 'PUBLISHED' THEN ? ELSE published_at END
        WHERE id = ? AND status = ?
        """,
        (status, now, status, now, status, now, rule_id, rule.status),
    )
    insert_audit_event(
        conn,
        "rule",
        rule_id,
        "status_changed",
        {"from": rule.status, "to": status, "reason": reason, "actor": actor},
    )
    return get_rule(conn, rule_id)  # type: ignore[return-value]


def update_rule_confidence(conn: Any, rule_id: str, confidence: float) -> None:
    conn.execute(
        """
        UPDATE rules SET confidence = ?, updated_at = ?
        WHERE id = ? AND status NOT IN ('PUBLISHED', 'DEPRECATED', 'REJECTED')
        """,
        (float(confidence), utc_now_iso(), rule_id),
    )


def set_rule_supersedes(conn: Any, rule_id: str, supersedes_id: str) -> None:
    conn.execute(
        """
        UPDATE rules SET supersedes_id = ?, updated_at = ?
        WHERE id = ? AND supersedes_id IS NULL AND status <> 'PUBLISHED'
        """,
        (supersedes_id, utc_now_iso(), rule_id),
    )


def count_rules_by_status(conn: Any) -> dict[str, int]:
    rows = conn.execute("SELECT status, COUNT(*) FROM rules GROUP BY status").fetchall()
    return {row[0]: int(row[1]) for row in rows}


def list_published_rules(conn: Any, concept_id: str | None = None, limit: int = 500) -> list[Rule]:
    params: list[object] = []
    concept_clause = ""
    if concept_id:
        concept_clause = " AND concept_id = ?"
        params.append(concept_id)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT {_RULE_COLUMNS} FROM rules
        WHERE status = 'PUBLISHED'{concept_clause}
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_rule(row, list_rule_claims(conn, row[0])) for row in rows]


def list_published_without_grounding(conn: Any) -> list[str]:
    rows = conn.execute(
        """
        SELECT r.id FROM rules r
        WHERE r.status = 'PUBLISHED'
          AND NOT EXISTS (
              SELECT 1 FROM rule_claims rc WHERE rc.rule_id = r.id AND rc.role = 'GROUNDING'
          )
        """
    ).fetchall()
    return [row[0] for row in rows]


def _row_to_rule(row: tuple, claims: list[RuleClaim]) -> Rule:
    return Rule(
        id=row[0],
        concept_id=row[1],
        value=row[2],
        value_type=row[3],
        status=row[4],
        authority_level=row[5],
        confidence=float(row[6]),
        effective_from=row[7],
        effective_until=row[8],
        supersedes_id=row[9],
        article_ref=row[10],
        created_at=row[11],
        updated_at=row[12],
        published_at=row[13],
        claims=claims,
    )


# Conflicts


_CONFLICT_COLUMNS = """
    id, concept_id, effective_from, conflict_type, status, rule_ids_json, description,
    created_at, resolved_at, resolution_json
"""


def open_or_extend_conflict(
    conn: Any,
    *,
    concept_id: str,
    effective_from: str,
    conflict_type: str,
    rule_ids: list[str],
    description: str,
) -> tuple[Conflict, bool]:
    """Return the single open conflict for the concept/period, creating it if needed."""
    _require_member(conflict_type, CONFLICT_TYPES, "conflict_type")
    existing = get_open_conflict(conn, concept_id, effective_from, conflict_type)
    if existing is not None:
        merged = sorted(set(existing.rule_ids) | set(rule_ids))
        if merged != sorted(existing.rule_ids):
            conn.execute(
                "UPDATE conflicts SET rule_ids_json = ? WHERE id = ?",
                (json_dumps(merged), existing.id),
            )
            insert_audit_event(conn, "conflict", existing.id, "extended", {"rule_ids": merged})
        return get_conflict(conn, existing.id), False  # type: ignore[return-value]
    conflict_id = new_id()
    conn.execute(
        """
        INSERT INTO conflicts
            (id, concept_id, effective_from, conflict_type, status, rule_ids_json, description,
             created_at)
        VALUES (?, ?, ?, ?, 'OPEN', ?, ?, ?)
        """,
        (
            conflict_id,
            concept_id,
            effective_from,
            conflict_type,
            json_dumps(sorted(set(rule_ids))),
            description,
            utc_now_iso(),
        ),
    )
    insert_audit_event(conn, "conflict", conflict_id, "opened", {"rule_ids": sorted(set(rule_ids))})
    return get_conflict(conn, conflict_id), True  # type: ignore[return-value]


def get_conflict(conn: Any, conflict_id: str) -> Conflict | None:
    row = conn.execute(
        f"SELECT {_CONFLICT_COLUMNS} FROM conflicts WHERE id = ?", (conflict_id,)
    ).fetchone()
    return _row_to_conflict(row) if row else None


def get_open_conflict(
    conn: Any, concept_id: str, effective_from: str, conflict_type: str
) -> Conflict | None:
    row = conn.execute(
        f"""
        SELECT {_CONFLICT_COLUMNS} FROM conflicts
        WHERE concept_id = ? AND effective_from = ? AND conflict_type = ? AND status = 'OPEN'
        """,
        (concept_id, effective_from, conflict_type),
    ).fetchone()
    return _row_to_conflict(row) if row else None


def list_conflicts(conn: Any, status: str | None = None, limit: int = 200) -> list[Conflict]:
    params: list[object] = []
    where = ""
    if status:
        _require_member(status, CONFLICT_STATUSES, "conflict status")
        where = "WHERE status = ?"
        params.append(status)
    params.append(limit)
    rows = conn.execute(
        f"SELECT {_CONFLICT_COLUMNS} FROM conflicts {where} ORDER BY created_at ASC LIMIT ?",
        tuple(params),
    ).fetchall()
    return [_row_to_conflict(row) for row in rows]


def open_conflicts_for_rule(conn: Any, rule_id: str) -> list[Conflict]:
    rows = conn.execute(
        f"""
        SELECT {_CONFLICT_COLUMNS} FROM conflicts
        WHERE status = 'OPEN'
          AND EXISTS (SELECT 1 FROM json_each(conflicts.rule_ids_json) j WHERE j.value = ?)
        """,
        (rule_id,),
    ).fetchall()
    return [_row_to_conflict(row) for row in rows]


def resolve_conflict(
    conn: Any,
    conflict_id: str,
    *,
    winner_rule_id: str,
    loser_rule_ids: list[str],
    reason: str,
    inputs: dict[str, object],
) -> bool:
    now = utc_now_iso()
    resolution = {"winner": winner_rule_id, "losers": loser_rule_ids, "reason": reason}
    cursor = conn.execute(
        """
        UPDATE conflicts SET status = 'RESOLVED', resolved_at = ?, resolution_json = ?
        WHERE id = ? AND status = 'OPEN'
        """,
        (now, json_dumps(resolution), conflict_id),
    )
    if cursor.rowcount != 1:
        return False
    conn.execute(
        """
        INSERT INTO conflict_resolutions
            (conflict_id, winner_rule_id, loser_rule_ids_json, reason, inputs_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (conflict_id, winner_rule_id, json_dumps(loser_rule_ids), reason, json_dumps(inputs), now),
    )
    insert_audit_event(conn, "conflict", conflict_id, "resolved", resolution)
    return True


def get_conflict_resolution(conn: Any, conflict_id: str) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT conflict_id, winner_rule_id, loser_rule_ids_json, reason, inputs_json, created_at
        FROM conflict_resolutions WHERE conflict_id = ?
        """,
        (conflict_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "conflict_id": row[0],
        "winner_rule_id": row[1],
        "loser_rule_ids": json_loads(row[2], []),
        "reason": row[3],
        "inputs": json_loads(row[4], {}),
        "created_at": row[5],
    }


def _row_to_conflict(row: tuple) -> Conflict:
    return Conflict(
        id=row[0],
        concept_id=row[1],
        effective_from=row[2],
        conflict_type=row[3],
        status=row[4],
        rule_ids=json_loads(row[5], []) or [],
        description=row[6],
        created_at=row[7],
        resolved_at=row[8],
        resolution=json_loads(row[9], None),
    )


# Graph edges


def insert_edge(conn: Any, from_id: str, to_id: str, relation: str) -> bool:
    _require_member(relation, EDGE_RELATIONS, "relation")
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO graph_edges (from_id, to_id, relation, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (from_id, to_id, relation, utc_now_iso()),
    )
    return cursor.rowcount == 1


def list_edges(conn: Any, relation: str | None = None, from_id: str | None = None) -> list[GraphEdge]:
    clauses = []
    params: list[object] = []
    if relation:
        clauses.append("relation = ?")
        params.append(relation)
    if from_id:
        clauses.append("from_id = ?")
        params.append(from_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT from_id, to_id, relation, created_at FROM graph_edges {where} ORDER BY created_at, from_id",
        tuple(params),
    ).fetchall()
    return [GraphEdge(from_id=row[0], to_id=row[1], relation=row[2], created_at=row[3]) for row in rows]


# Backfill runs


_BACKFILL_COLUMNS = """
    id, sources_json, mode, dry_run, status, date_from, date_to, max_urls, max_per_source,
    delay_ms, discovered_count, queued_count, skipped_count, would_queue_count, would_skip_count,
    error_count, errors_json, last_processed_source, last_processed_url, resumed_from,
    created_at, started_at, finished_at
"""

_BACKFILL_UPDATABLE = {
    "status",
    "discovered_count",
    "queued_count",
    "skipped_count",
    "would_queue_count",
    "would_skip_count",
    "error_count",
    "errors_json",
    "last_processed_source",
    "last_processed_url",
    "started_at",
    "finished_at",
}


def insert_backfill_run(
    conn: Any,
    *,
    sources: list[str],
    mode: str,
    dry_run: bool,
    date_from: str | None,
    date_to: str | None,
    max_urls: int,
    max_per_source: int,
    delay_ms: int,
    resumed_from: str | None = None,
) -> str:
    run_id = new_id()
    conn.execute(
        """
        INSERT INTO backfill_runs
            (id, sources_json, mode, dry_run, status, date_from, date_to, max_urls,
             max_per_source, delay_ms, resumed_from, created_at)
        VALUES (?, ?, ?, ?, 'PENDING', ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run_id,
            json_dumps(sources),
            mode,
            1 if dry_run else 0,
            date_from,
            date_to,
            max_urls,
            max_per_source,
            delay_ms,
            resumed_from,
            utc_now_iso(),
        ),
    )
    return run_id


def update_backfill_run(conn: Any, run_id: str, **fields: object) -> None:
    unknown = set(fields) - _BACKFILL_UPDATABLE
    if unknown:
        raise ValueError(f"unknown backfill_runs fields: {', '.join(sorted(unknown))}")
    if "status" in fields:
        _require_member(str(fields["status"]), BACKFILL_STATUSES, "backfill status")
    if not fields:
        return
    assignments = ", ".join(f"{key} = ?" for key in fields)
    conn.execute(
        f"UPDATE backfill_runs SET {assignments} WHERE id = ?",
        (*fields.values(), run_id),
    )


def request_backfill_cancel(conn: Any, run_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE backfill_runs SET status = 'CANCELLED', finished_at = COALESCE(finished_at, ?)
        WHERE id = ? AND status IN ('PENDING', 'RUNNING')
        """,
        (utc_now_iso(), run_id),
    )
    return cursor.rowcount == 1


def get_backfill_status(conn: Any, run_id: str) -> str | None:
    row = conn.execute("SELECT status FROM backfill_runs WHERE id = ?", (run_id,)).fetchone()
    return row[0] if row else None


def get_backfill_run(conn: Any, run_id: str) -> BackfillRun | None:
    row = conn.execute(
        f"SELECT {_BACKFILL_COLUMNS} FROM backfill_runs WHERE id = ?", (run_id,)
    ).fetchone()
    return _row_to_backfill_run(row) if row else None


def list_backfill_runs(conn: Any, limit: int = 20) -> list[BackfillRun]:
    rows = conn.execute(
        f"SELECT {_BACKFILL_COLUMNS} FROM backfill_runs ORDER BY created_at DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [_row_to_backfill_run(row) for row in rows]


def _row_to_backfill_run(row: tuple) -> BackfillRun:
    return BackfillRun(
        id=row[0],
        sources=json_loads(row[1], []) or [],
        mode=row[2],
        dry_run=bool(row[3]),
        status=row[4],
        date_from=row[5],
        date_to=row[6],
        max_urls=int(row[7]),
        max_per_source=int(row[8]),
        delay_ms=int(row[9]),
        discovered_count=int(row[10]),
        queued_count=int(row[11]),
        skipped_count=int(row[12]),
        would_queue_count=int(row[13]),
        would_skip_count=int(row[14]),
        error_count=int(row[15]),
        errors=json_loads(row[16], []) or [],
        last_processed_source=row[17],
        last_processed_url=row[18],
        resumed_from=row[19],
        created_at=row[20],
        started_at=row[21],
        finished_at=row[22],
    )


# Jobs


_JOB_COLUMNS = """
    id, queue, status, priority, payload_json, result_json, attempts, max_attempts, not_before,
    requested_at, started_at, finished_at, locked_by, locked_at, error
"""


def insert_job_if_absent(
    conn: Any,
    job_id: str,
    queue: str,
    payload: dict[str, object] | None,
    *,
    priority: int = 100,
    max_attempts: int = 3,
    not_before: str | None = None,
) -> bool:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO jobs
            (id, queue, status, priority, payload_json, attempts, max_attempts, not_before,
             requested_at)
        VALUES (?, ?, 'waiting', ?, ?, 0, ?, ?, ?)
        """,
        (
            job_id,
            queue,
            priority,
            json_dumps(payload) if payload else None,
            max_attempts,
            not_before,
            utc_now_iso(),
        ),
    )
    return cursor.rowcount == 1


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any, queue: str | None = None, status: str | None = None, limit: int = 50
) -> list[Job]:
    clauses = []
    params: list[object] = []
    if queue:
        clauses.append("queue = ?")
        params.append(queue)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY requested_at DESC, id LIMIT ?",
        tuple(params),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


def requeue_stale_jobs(conn: Any, cutoff_iso: str) -> int:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'waiting', locked_by = NULL, locked_at = NULL, started_at = NULL,
            error = 'stale_lock_requeued'
        WHERE status = 'active' AND locked_at IS NOT NULL AND locked_at < ?
        """,
        (cutoff_iso,),
    )
    return cursor.rowcount


def count_active_jobs(conn: Any, queue: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM jobs WHERE queue = ? AND status = 'active'", (queue,)
    ).fetchone()
    return int(row[0])


def count_jobs_started_since(conn: Any, queue: str, since_iso: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM jobs WHERE queue = ? AND started_at IS NOT NULL AND started_at >= ?",
        (queue, since_iso),
    ).fetchone()
    return int(row[0])


def next_waiting_job_id(conn: Any, queue: str, now_iso: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM jobs
        WHERE queue = ? AND status = 'waiting' AND (not_before IS NULL OR not_before <= ?)
        ORDER BY priority ASC, requested_at ASC, id ASC
        LIMIT 1
        """,
        (queue, now_iso),
    ).fetchone()
    return row[0] if row else None


def mark_job_active(conn: Any, job_id: str, worker_id: str, now_iso: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'active', started_at = ?, locked_by = ?, locked_at = ?, attempts = attempts + 1
        WHERE id = ? AND status = 'waiting'
        """,
        (now_iso, worker_id, now_iso, job_id),
    )
    return cursor.rowcount == 1


def complete_job(conn: Any, job_id: str, result: dict[str, object] | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', finished_at = ?, error = NULL, result_json = ?,
            locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'active'
        """,
        (utc_now_iso(), json_dumps(result) if result else None, job_id),
    )
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?, locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'active'
        """,
        (utc_now_iso(), error, job_id),
    )
    return cursor.rowcount == 1


def retry_job(conn: Any, job_id: str, error: str, not_before: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'waiting', not_before = ?, error = ?, started_at = NULL,
            locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'active'
        """,
        (not_before, error, job_id),
    )
    return cursor.rowcount == 1


def insert_dead_letter(conn: Any, job: Job, error: str) -> None:
    conn.execute(
        """
        INSERT INTO dead_letters (job_id, queue, payload_json, error, attempts, failed_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (job.id, job.queue, json_dumps(job.payload), error, job.attempts, utc_now_iso()),
    )


def list_dead_letters(conn: Any, queue: str | None = None, limit: int = 100) -> list[dict[str, object]]:
    params: list[object] = []
    where = ""
    if queue:
        where = "WHERE queue = ?"
        params.append(queue)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, job_id, queue, payload_json, error, attempts, failed_at
        FROM dead_letters {where}
        ORDER BY id DESC LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [
        {
            "id": row[0],
            "job_id": row[1],
            "queue": row[2],
            "payload": json_loads(row[3], {}),
            "error": row[4],
            "attempts": row[5],
            "failed_at": row[6],
        }
        for row in rows
    ]


def count_dead_letters(conn: Any) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM dead_letters").fetchone()[0])


def prune_jobs(conn: Any, queue: str, status: str, keep: int) -> int:
    cursor = conn.execute(
        """
        DELETE FROM jobs
        WHERE queue = ? AND status = ? AND id NOT IN (
            SELECT id FROM jobs WHERE queue = ? AND status = ?
            ORDER BY finished_at DESC, id DESC
            LIMIT ?
        )
        """,
        (queue, status, queue, status, keep),
    )
    return cursor.rowcount


def count_jobs_by_queue(conn: Any) -> dict[str, dict[str, int]]:
    rows = conn.execute(
        "SELECT queue, status, COUNT(*) FROM jobs GROUP BY queue, status"
    ).fetchall()
    counts: dict[str, dict[str, int]] = {}
    for queue, status, count in rows:
        counts.setdefault(queue, {})[status] = int(count)
    return counts


def _row_to_job(row: tuple) -> Job:
    return Job(
        id=row[0],
        queue=row[1],
        status=row[2],
        priority=int(row[3]),
        payload=json_loads(row[4], {}) or {},
        result=json_loads(row[5], None),
        attempts=int(row[6]),
        max_attempts=int(row[7]),
        not_before=row[8],
        requested_at=row[9],
        started_at=row[10],
        finished_at=row[11],
        locked_by=row[12],
        locked_at=row[13],
        error=row[14],
    )


# Rejections, audit, sync outbox, settings


def insert_rejection(
    conn: Any, stage: str, subject_id: str | None, reason: str, payload: object
) -> None:
    conn.execute(
        """
        INSERT INTO rejections (stage, subject_id, reason, payload_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (stage, subject_id, reason, json_dumps(payload), utc_now_iso()),
    )


def list_rejections(conn: Any, stage: str | None = None, limit: int = 100) -> list[dict[str, object]]:
    params: list[object] = []
    where = ""
    if stage:
        where = "WHERE stage = ?"
        params.append(stage)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, stage, subject_id, reason, payload_json, created_at
        FROM rejections {where} ORDER BY id DESC LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [
        {
            "id": row[0],
            "stage": row[1],
            "subject_id": row[2],
            "reason": row[3],
            "payload": json_loads(row[4], None),
            "created_at": row[5],
        }
        for row in rows
    ]


def insert_audit_event(
    conn: Any, entity_type: str, entity_id: str, action: str, details: dict[str, object] | None = None
) -> None:
    conn.execute(
        """
        INSERT INTO audit_events (entity_type, entity_id, action, details_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (entity_type, entity_id, action, json_dumps(details or {}), utc_now_iso()),
    )


def list_audit_events(
    conn: Any, entity_type: str | None = None, entity_id: str | None = None, limit: int = 200
) -> list[dict[str, object]]:
    clauses = []
    params: list[object] = []
    if entity_type:
        clauses.append("entity_type = ?")
        params.append(entity_type)
    if entity_id:
        clauses.append("entity_id = ?")
        params.append(entity_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, entity_type, entity_id, action, details_json, created_at
        FROM audit_events {where} ORDER BY id ASC LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [
        {
            "id": row[0],
            "entity_type": row[1],
            "entity_id": row[2],
            "action": row[3],
            "details": json_loads(row[4], {}),
            "created_at": row[5],
        }
        for row in rows
    ]


def insert_sync_event(
    conn: Any, rule_id: str, event_type: str, payload: dict[str, object]
) -> bool:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO sync_events (rule_id, event_type, payload_json, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (rule_id, event_type, json_dumps(payload), utc_now_iso()),
    )
    return cursor.rowcount == 1


def list_sync_events(conn: Any, undelivered_only: bool = False) -> list[dict[str, object]]:
    where = "WHERE delivered_at IS NULL" if undelivered_only else ""
    rows = conn.execute(
        f"""
        SELECT id, rule_id, event_type, payload_json, created_at, delivered_at
        FROM sync_events {where} ORDER BY id ASC
        """
    ).fetchall()
    return [
        {
            "id": row[0],
            "rule_id": row[1],
            "event_type": row[2],
            "payload": json_loads(row[3], {}),
            "created_at": row[4],
            "delivered_at": row[5],
        }
        for row in rows
    ]


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
