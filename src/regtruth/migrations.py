from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("regtruth.migrations")
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            domain TEXT NOT NULL,
            authority_level TEXT NOT NULL,
            priority_tier TEXT NOT NULL DEFAULT 'MEDIUM',
            listing_kind TEXT NOT NULL DEFAULT 'SITEMAP',
            listing_url TEXT NULL,
            sitemap_url TEXT NULL,
            archive_url TEXT NULL,
            pagination_pattern TEXT NULL,
            url_pattern TEXT NULL,
            max_pages INTEGER NOT NULL DEFAULT 10,
            min_delay_ms INTEGER NULL,
            max_delay_ms INTEGER NULL,
            max_concurrent INTEGER NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_discovered_at TEXT NULL,
            checkpoint TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS discovered_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id TEXT NOT NULL REFERENCES sources(id),
            url TEXT NOT NULL,
            canonical_url TEXT NOT NULL,
            status TEXT NOT NULL,
            state_json TEXT NOT NULL,
            discovery_method TEXT NOT NULL,
            content_hash TEXT NULL,
            evidence_id TEXT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            crawl_depth INTEGER NOT NULL DEFAULT 0,
            change_frequency TEXT NULL,
            freshness_risk TEXT NULL,
            backfill_run_id TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(source_id, canonical_url)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_discovered_items_status ON discovered_items(status, retry_count)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS evidence (
            id TEXT PRIMARY KEY,
            source_id TEXT NOT NULL,
            url TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            raw_content BLOB NOT NULL,
            content_type TEXT NULL,
            content_class TEXT NOT NULL,
            fetched_at TEXT NOT NULL,
            last_verified_at TEXT NOT NULL,
            staleness_status TEXT NOT NULL DEFAULT 'FRESH',
            verify_failures INTEGER NOT NULL DEFAULT 0,
            pipeline_state_json TEXT NULL,
            UNIQUE(url, content_hash)
        )
        """
    )
    # Capture rows are write-once on their core fields and never deleted.
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS evidence_core_immutable
        BEFORE UPDATE OF source_id, url, content_hash, raw_content, fetched_at ON evidence
        BEGIN
            SELECT RAISE(ABORT, 'evidence core fields are immutable');
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS evidence_no_delete
        BEFORE DELETE ON evidence
        BEGIN
            SELECT RAISE(ABORT, 'evidence is append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS evidence_artifacts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            evidence_id TEXT NOT NULL REFERENCES evidence(id),
            kind TEXT NOT NULL,
            content TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(evidence_id, kind, content_hash)
        )
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS evidence_artifacts_immutable
        BEFORE UPDATE ON evidence_artifacts
        BEGIN
            SELECT RAISE(ABORT, 'evidence artifacts are append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS claims (
            id TEXT PRIMARY KEY,
            evidence_id TEXT NOT NULL REFERENCES evidence(id),
            concept_id TEXT NOT NULL,
            exact_quote TEXT NOT NULL,
            normalized_value TEXT NOT NULL,
            value_type TEXT NOT NULL,
            confidence REAL NOT NULL,
            article_ref TEXT NULL,
            effective_from TEXT NULL,
            extractor TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(evidence_id, concept_id, exact_quote, normalized_value)
        )
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS claims_immutable
        BEFORE UPDATE ON claims
        BEGIN
            SELECT RAISE(ABORT, 'claims are append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rules (
            id TEXT PRIMARY KEY,
            concept_id TEXT NOT NULL,
            value TEXT NOT NULL,
            value_type TEXT NOT NULL,
            status TEXT NOT NULL,
            authority_level TEXT NOT NULL,
            confidence REAL NOT NULL,
            effective_from TEXT NOT NULL,
            effective_until TEXT NULL,
            supersedes_id TEXT NULL REFERENCES rules(id),
            article_ref TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            approved_at TEXT NULL,
            published_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_rules_live_value
        ON rules(concept_id, effective_from, value)
        WHERE status NOT IN ('DEPRECATED', 'REJECTED')
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rule_claims (
            rule_id TEXT NOT NULL REFERENCES rules(id),
            claim_id TEXT NOT NULL REFERENCES claims(id),
            role TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY(rule_id, claim_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS rules_published_frozen
        BEFORE UPDATE OF concept_id, value, value_type, effective_from, supersedes_id ON rules
        WHEN OLD.status = 'PUBLISHED'
        BEGIN
            SELECT RAISE(ABORT, 'published rules are immutable');
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS rule_grounding_frozen
        BEFORE INSERT ON rule_claims
        WHEN NEW.role = 'GROUNDING'
          AND (SELECT status FROM rules WHERE id = NEW.rule_id) = 'PUBLISHED'
        BEGIN
            SELECT RAISE(ABORT, 'grounding of a published rule is immutable');
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS rule_claims_no_delete
        BEFORE DELETE ON rule_claims
        BEGIN
            SELECT RAISE(ABORT, 'rule provenance is append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS conflicts (
            id TEXT PRIMARY KEY,
            concept_id TEXT NOT NULL,
            effective_from TEXT NOT NULL,
            conflict_type TEXT NOT NULL,
            status TEXT NOT NULL,
            rule_ids_json TEXT NOT NULL,
            description TEXT NOT NULL,
            created_at TEXT NOT NULL,
            resolved_at TEXT NULL,
            resolution_json TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_conflicts_open
        ON conflicts(concept_id, effective_from, conflict_type)
        WHERE status = 'OPEN'
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS conflict_resolutions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conflict_id TEXT NOT NULL UNIQUE REFERENCES conflicts(id),
            winner_rule_id TEXT NOT NULL,
            loser_rule_ids_json TEXT NOT NULL,
            reason TEXT NOT NULL,
            inputs_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS graph_edges (
            from_id TEXT NOT NULL,
            to_id TEXT NOT NULL,
            relation TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY(from_id, to_id, relation)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS backfill_runs (
            id TEXT PRIMARY KEY,
            sources_json TEXT NOT NULL,
            mode TEXT NOT NULL,
            dry_run INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            date_from TEXT NULL,
            date_to TEXT NULL,
            max_urls INTEGER NOT NULL,
            max_per_source INTEGER NOT NULL,
            delay_ms INTEGER NOT NULL,
            discovered_count INTEGER NOT NULL DEFAULT 0,
            queued_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            would_queue_count INTEGER NOT NULL DEFAULT 0,
            would_skip_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            errors_json TEXT NOT NULL DEFAULT '[]',
            last_processed_source TEXT NULL,
            last_processed_url TEXT NULL,
            resumed_from TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            status TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 100,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            not_before TEXT NULL,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs(queue, status, priority)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS dead_letters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            queue TEXT NOT NULL,
            payload_json TEXT NULL,
            error TEXT NULL,
            attempts INTEGER NOT NULL,
            failed_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rejections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            stage TEXT NOT NULL,
            subject_id TEXT NULL,
            reason TEXT NOT NULL,
            payload_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rule_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload_json TEXT NULL,
            created_at TEXT NOT NULL,
            delivered_at TEXT NULL,
            UNIQUE(rule_id, event_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
    ]
