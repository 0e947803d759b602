import logging
from datetime import datetime, timedelta, timezone

from regtruth.config import build_config
from regtruth.health import health_gates, health_snapshot, refresh_staleness, staleness_status
from regtruth.models import Evidence
from regtruth.queues import claim_next, enqueue, finish_failure
from regtruth.storage import insert_rule, record_evidence_verify_failure, upsert_evidence

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _evidence(days_old: float, failures: int = 0) -> Evidence:
    verified = (NOW - timedelta(days=days_old)).isoformat()
    return Evidence(
        id="e1",
        source_id="tax-authority",
        url="https://gov.example/vat",
        content_hash="h",
        raw_content=b"x",
        content_type="text/html",
        content_class="HTML",
        fetched_at=verified,
        last_verified_at=verified,
        staleness_status="FRESH",
        verify_failures=failures,
    )


def test_staleness_bands_scale_with_authority(config):
    assert staleness_status(_evidence(10), "LAW", config, NOW) == "FRESH"
    assert staleness_status(_evidence(20), "LAW", config, NOW) == "AGING"
    assert staleness_status(_evidence(45), "LAW", config, NOW) == "STALE"
    assert staleness_status(_evidence(70), "LAW", config, NOW) == "EXPIRED"
    assert staleness_status(_evidence(10), "PRACTICE", config, NOW) == "STALE"


def test_repeated_verify_failures_mark_unavailable(config):
    assert staleness_status(_evidence(1, failures=3), "LAW", config, NOW) == "UNAVAILABLE"


def test_refresh_staleness_updates_counts(conn, config, add_source):
    add_source("tax-authority", authority_level="LAW")
    for index, days in enumerate([1, 20, 90]):
        fetched = (NOW - timedelta(days=days)).isoformat()
        upsert_evidence(
            conn,
            source_id="tax-authority",
            url=f"https://gov.example/doc-{index}",
            content_hash=f"h{index}",
            raw_content=b"x",
            content_type="text/html",
            content_class="HTML",
            fetched_at=fetched,
        )
    for _ in range(3):
        record_evidence_verify_failure(conn, "https://gov.example/doc-0")

    counts = refresh_staleness(conn, config, logging.getLogger("regtruth.test"), now=NOW)

    assert counts == {"UNAVAILABLE": 1, "AGING": 1, "EXPIRED": 1}


def test_gates_pass_on_an_empty_store(conn, config):
    gates = health_gates(conn, config)
    assert gates["ok"] is True
    assert [check["name"] for check in gates["checks"]] == [
        "published_rules_grounded",
        "dead_letter_backlog",
        "stale_evidence_ratio",
    ]


def test_ungrounded_published_rule_fails_the_gate(conn, config):
    rule_id = insert_rule(
        conn,
        concept_id="vat-standard-rate",
        value="25",
        value_type="PERCENTAGE",
        authority_level="LAW",
        confidence=0.99,
        effective_from="2024-01-01",
        status="PUBLISHED",
    )

    gates = health_gates(conn, config)

    assert gates["ok"] is False
    assert gates["checks"][0]["detail"] == {"ungrounded_rule_ids": [rule_id]}


def test_dead_letter_backlog_gate(conn):
    config = build_config({"health": {"max_dead_letters": 1}})
    for index in range(2):
        enqueue(conn, config, "fetch", f"src:{index}", {"item_id": index})
        job = claim_next(conn, config, "worker-1", ["fetch"])
        finish_failure(conn, config, job, "HTTP 404", permanent=True)

    check = health_gates(conn, config)["checks"][1]

    assert check["ok"] is False
    assert check["detail"] == {"count": 2, "max": 1}


def test_snapshot_reports_pipeline_state(conn, config):
    enqueue(conn, config, "extract", "extract:e1", {"evidence_id": "e1"})

    snapshot = health_snapshot(conn, config)

    assert snapshot["queues"]["extract"] == {"waiting": 1}
    assert snapshot["dead_letters"] == 0
    assert snapshot["open_conflicts"] == 0
    assert snapshot["drain_heartbeat"] is None
    assert snapshot["gates"]["ok"] is True
