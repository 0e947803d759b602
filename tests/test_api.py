from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from regtruth.api import app
from regtruth.storage import init_db, insert_rule, list_audit_events, list_jobs


@pytest.fixture
def state_db(tmp_path, monkeypatch) -> Path:
    monkeypatch.delenv("RT_CONFIG", raising=False)
    monkeypatch.delenv("RT_ADMIN_TOKEN", raising=False)
    monkeypatch.setenv("RT_DATA_DIR", str(tmp_path))
    return tmp_path / "state.sqlite3"


def _insert(state_db: Path, **fields) -> str:
    conn = init_db(str(state_db))
    try:
        return insert_rule(
            conn,
            concept_id="vat-standard-rate",
            value=fields.pop("value", "25"),
            value_type="PERCENTAGE",
            authority_level="LAW",
            confidence=0.85,
            effective_from=fields.pop("effective_from", "2024-01-01"),
            **fields,
        )
    finally:
        conn.close()


def test_health_endpoints(state_db):
    client = TestClient(app)

    assert client.get("/health").json()["ok"] is True
    snapshot = client.get("/health/snapshot").json()
    assert snapshot["gates"]["ok"] is True
    assert snapshot["dead_letters"] == 0


def test_queue_contracts(state_db):
    client = TestClient(app)

    body = client.get("/queues").json()

    fetch = body["contracts"][0]
    assert fetch["name"] == "fetch"
    assert fetch["backoff"]["type"] == "exponential"
    assert body["counts"]["human-review"] == {}


def test_backfill_runs(state_db):
    client = TestClient(app)

    assert client.get("/backfill/runs").json() == []
    assert client.get("/backfill/runs/missing").status_code == 404


def test_published_rules(state_db):
    published = _insert(state_db, status="PUBLISHED")
    _insert(state_db, value="26", effective_from="2025-01-01")
    client = TestClient(app)

    rules = client.get("/rules/published", params={"concept_id": "vat-standard-rate"}).json()

    assert [rule["rule_id"] for rule in rules] == [published]
    assert client.get("/rules/published", params={"concept_id": "vat-reduced-rate"}).json() == []


def test_decision_requires_admin_token(state_db, monkeypatch):
    rule_id = _insert(state_db, status="PENDING_REVIEW")
    monkeypatch.setenv("RT_ADMIN_TOKEN", "secret")
    client = TestClient(app)
    body = {"decision": "approve", "reviewer": "analyst", "note": "checked"}

    assert client.post(f"/rules/{rule_id}/decision", json=body).status_code == 401

    response = client.post(f"/rules/{rule_id}/decision", json=body, headers={"X-Admin-Token": "secret"})

    assert response.status_code == 200
    assert response.json() == {"rule_id": rule_id, "status": "APPROVED"}
    conn = init_db(str(state_db))
    try:
        assert [job.payload for job in list_jobs(conn, queue="release")] == [{"rule_id": rule_id}]
        decisions = [event for event in list_audit_events(conn, "rule", rule_id) if event["action"] == "human_decision"]
        assert decisions[0]["details"] == {"decision": "approve", "reviewer": "analyst", "note": "checked"}
    finally:
        conn.close()


def test_decision_errors(state_db):
    draft = _insert(state_db)
    client = TestClient(app)

    assert client.post("/rules/missing/decision", json={"decision": "approve", "reviewer": "a"}).status_code == 404
    assert client.post(f"/rules/{draft}/decision", json={"decision": "approve", "reviewer": "a"}).status_code == 409
    assert client.post(f"/rules/{draft}/decision", json={"decision": "maybe", "reviewer": "a"}).status_code == 400
