from dataclasses import replace

import pytest

from regtruth.config import build_config
from regtruth.errors import InvalidTransitionError
from regtruth.pipelines.compose import compose_concept
from regtruth.pipelines.extract import extract_evidence
from regtruth.pipelines.review import apply_human_decision, review_rule
from regtruth.storage import get_rule, insert_rule, list_audit_events, list_jobs


def _draft(ctx, capture, source, sentence, url="https://gov.example/vat"):
    extract_evidence(ctx, capture(source, url, sentence))
    return compose_concept(ctx, "vat-standard-rate")["created_rules"][0]


def test_confident_grounded_rule_is_auto_approved(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).")

    result = review_rule(ctx, rule_id)

    assert result["status"] == "approved"
    assert get_rule(conn, rule_id).status == "APPROVED"
    assert [job.payload for job in list_jobs(conn, queue="release")] == [{"rule_id": rule_id}]


def test_threshold_is_exclusive(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% under Article 38(1).")
    assert get_rule(conn, rule_id).confidence == 0.9

    assert review_rule(ctx, rule_id)["status"] == "pending_review"


def test_low_confidence_rule_goes_to_human_review(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024.")

    result = review_rule(ctx, rule_id)

    assert result["status"] == "pending_review"
    assert result["reason"] == "confidence 0.85 <= 0.9"
    assert list_jobs(conn, queue="release") == []
    job = list_jobs(conn, queue="human-review")[0]
    assert job.payload["rule_id"] == rule_id
    assert job.payload["value"] == "25"
    assert job.payload["sources"] == [
        {"url": "https://gov.example/vat", "quote": "The standard VAT rate is 25% from 1 January 2024."}
    ]


def test_threshold_comes_from_config(ctx, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024.")
    lenient = replace(ctx, config=build_config({"review": {"auto_approve_threshold": 0.5}}))

    assert review_rule(lenient, rule_id)["status"] == "approved"


def test_rule_without_grounding_is_never_auto_approved(ctx, conn):
    rule_id = insert_rule(
        conn,
        concept_id="vat-standard-rate",
        value="25",
        value_type="PERCENTAGE",
        authority_level="LAW",
        confidence=0.99,
        effective_from="2024-01-01",
    )

    result = review_rule(ctx, rule_id)

    assert result["status"] == "pending_review"
    assert result["reason"] == "no grounded source pointer"


def test_review_only_touches_drafts(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).")
    review_rule(ctx, rule_id)
    assert review_rule(ctx, rule_id)["status"] == "noop"
    assert review_rule(ctx, "missing")["status"] == "missing"


def test_human_approval_releases_and_is_audited(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024.")
    review_rule(ctx, rule_id)

    rule = apply_human_decision(ctx, rule_id, "approve", reviewer="alex", note="checked the gazette")

    assert rule.status == "APPROVED"
    assert [job.payload for job in list_jobs(conn, queue="release")] == [{"rule_id": rule_id}]
    decisions = [event for event in list_audit_events(conn, "rule", rule_id) if event["action"] == "human_decision"]
    assert decisions[0]["details"] == {"decision": "approve", "reviewer": "alex", "note": "checked the gazette"}


def test_human_rejection(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024.")
    review_rule(ctx, rule_id)

    assert apply_human_decision(ctx, rule_id, "reject", reviewer="alex").status == "REJECTED"
    assert list_jobs(conn, queue="release") == []


def test_human_decision_requires_pending_review(ctx, conn, add_source, capture):
    rule_id = _draft(ctx, capture, add_source(), "The standard VAT rate is 25% from 1 January 2024.")

    with pytest.raises(InvalidTransitionError):
        apply_human_decision(ctx, rule_id, "approve", reviewer="alex")
    with pytest.raises(ValueError):
        apply_human_decision(ctx, rule_id, "maybe", reviewer="alex")
    with pytest.raises(ValueError):
        apply_human_decision(ctx, "missing", "approve", reviewer="alex")
