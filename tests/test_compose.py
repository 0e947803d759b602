import sqlite3

import pytest

from regtruth.pipelines.compose import compose_concept
from regtruth.pipelines.extract import extract_evidence
from regtruth.pipelines.release import publish_rule
from regtruth.pipelines.review import review_rule
from regtruth.storage import get_rule, link_rule_claim, list_conflicts, list_jobs, list_rules

CONCEPT = "vat-standard-rate"


@pytest.fixture
def sources(add_source):
    return {
        "guidance": add_source("tax-authority"),
        "law": add_source(
            "official-journal",
            domain="law.example",
            authority_level="LAW",
            sitemap_url="https://law.example/sitemap.xml",
        ),
    }


def _ingest(ctx, capture, source, url, *sentences):
    evidence_id = capture(source, url, *sentences)
    extract_evidence(ctx, evidence_id)
    return evidence_id


def test_competing_values_open_one_conflict_and_publish_nothing(ctx, conn, sources, capture):
    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024.")
    _ingest(ctx, capture, sources["law"], "https://law.example/act", "The standard VAT rate is 24% from 1 January 2024.")

    result = compose_concept(ctx, CONCEPT)

    assert len(result["created_rules"]) == 2
    assert len(result["new_conflicts"]) == 1
    conflicts = list_conflicts(conn, status="OPEN")
    assert len(conflicts) == 1
    assert conflicts[0].conflict_type == "VALUE_MISMATCH"
    assert conflicts[0].effective_from == "2024-01-01"
    assert sorted(conflicts[0].rule_ids) == sorted(result["created_rules"])
    assert [job.payload for job in list_jobs(conn, queue="arbiter")] == [{"conflict_id": conflicts[0].id}]
    for rule_id in result["created_rules"]:
        assert review_rule(ctx, rule_id)["status"] == "blocked"
        assert publish_rule(ctx, rule_id)["status"] == "not_approved"
    assert list_rules(conn, status="PUBLISHED") == []


def test_differently_dated_values_overlap_and_conflict(ctx, conn, sources, capture):
    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024.")
    _ingest(ctx, capture, sources["law"], "https://law.example/act", "The standard VAT rate is 24% from 1 March 2024.")

    result = compose_concept(ctx, CONCEPT)

    created = result["created_rules"]
    assert sorted(get_rule(conn, rule_id).effective_from for rule_id in created) == ["2024-01-01", "2024-03-01"]
    conflicts = list_conflicts(conn, status="OPEN")
    assert len(conflicts) == 1
    assert conflicts[0].conflict_type == "VALUE_MISMATCH"
    assert conflicts[0].effective_from == "2024-01-01"
    assert sorted(conflicts[0].rule_ids) == sorted(created)
    for rule_id in created:
        assert get_rule(conn, rule_id).supersedes_id is None
        assert review_rule(ctx, rule_id)["status"] == "blocked"
    assert list_rules(conn, status="PUBLISHED") == []


def test_undated_disagreement_with_published_rule_conflicts(ctx, conn, sources, capture):
    _ingest(
        ctx,
        capture,
        sources["law"],
        "https://law.example/act",
        "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).",
    )
    published = compose_concept(ctx, CONCEPT)["created_rules"]
    _publish_all(ctx, published)

    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 24% under Article 38(1).")
    result = compose_concept(ctx, CONCEPT)

    undated = get_rule(conn, result["created_rules"][0])
    assert undated.supersedes_id is None
    conflicts = list_conflicts(conn, status="OPEN")
    assert len(conflicts) == 1
    assert sorted(conflicts[0].rule_ids) == sorted(published + [undated.id])


def test_third_value_extends_the_open_conflict(ctx, conn, sources, capture):
    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024.")
    _ingest(ctx, capture, sources["law"], "https://law.example/act", "The standard VAT rate is 24% from 1 January 2024.")
    compose_concept(ctx, CONCEPT)
    _ingest(ctx, capture, sources["guidance"], "https://gov.example/faq", "The standard VAT rate is 23% from 1 January 2024.")

    result = compose_concept(ctx, CONCEPT)

    assert result["new_conflicts"] == []
    conflicts = list_conflicts(conn, status="OPEN")
    assert len(conflicts) == 1
    assert len(conflicts[0].rule_ids) == 3


def test_same_value_from_two_sources_corroborates_one_rule(ctx, conn, sources, capture):
    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024.")
    _ingest(
        ctx,
        capture,
        sources["law"],
        "https://law.example/act",
        "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).",
    )

    result = compose_concept(ctx, CONCEPT)

    assert len(result["created_rules"]) == 1
    assert list_conflicts(conn) == []
    rule = get_rule(conn, result["created_rules"][0])
    assert rule.value == "25"
    assert rule.authority_level == "LAW"
    assert rule.confidence == 0.95
    assert sorted(claim.role for claim in rule.claims) == ["CORROBORATING", "GROUNDING"]
    grounding = [claim for claim in rule.claims if claim.role == "GROUNDING"][0]
    assert grounding.url == "https://law.example/act"


def test_compose_without_new_claims_is_noop(ctx, sources, capture):
    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024.")
    compose_concept(ctx, CONCEPT)
    assert compose_concept(ctx, CONCEPT)["status"] == "noop"


def _publish_all(ctx, rule_ids):
    for rule_id in rule_ids:
        assert review_rule(ctx, rule_id)["status"] == "approved"
        assert publish_rule(ctx, rule_id)["status"] == "published"


def test_amendment_supersedes_published_rule(ctx, conn, sources, capture):
    _ingest(
        ctx,
        capture,
        sources["law"],
        "https://law.example/act-2024",
        "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).",
    )
    first = compose_concept(ctx, CONCEPT)["created_rules"]
    _publish_all(ctx, first)

    _ingest(
        ctx,
        capture,
        sources["law"],
        "https://law.example/act-2025",
        "The standard VAT rate is 26% from 1 July 2025 under Article 38(1).",
    )
    second = compose_concept(ctx, CONCEPT)

    assert list_conflicts(conn) == []
    amendment = get_rule(conn, second["created_rules"][0])
    assert amendment.effective_from == "2025-07-01"
    assert amendment.supersedes_id == first[0]


def test_undated_recapture_corroborates_current_rule(ctx, conn, sources, capture):
    _ingest(
        ctx,
        capture,
        sources["law"],
        "https://law.example/act",
        "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).",
    )
    published = compose_concept(ctx, CONCEPT)["created_rules"]
    _publish_all(ctx, published)

    _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% under Article 38(1).")
    result = compose_concept(ctx, CONCEPT)

    assert result["created_rules"] == []
    assert result["corroborated_rules"] == published
    rule = get_rule(conn, published[0])
    assert rule.status == "PUBLISHED"
    assert [claim.role for claim in rule.claims] == ["GROUNDING", "CORROBORATING"]


def test_same_quote_under_two_concepts_is_flagged(ctx, conn, sources, capture):
    _ingest(
        ctx,
        capture,
        sources["guidance"],
        "https://gov.example/rates",
        "The standard VAT rate and the reduced VAT rate are both 25% from 1 January 2024.",
    )
    standard = compose_concept(ctx, CONCEPT)["created_rules"]
    reduced = compose_concept(ctx, "vat-reduced-rate")

    conflicts = list_conflicts(conn, status="OPEN")
    assert len(conflicts) == 1
    assert conflicts[0].conflict_type == "CROSS_SLUG_DUPLICATE"
    assert sorted(conflicts[0].rule_ids) == sorted(standard + reduced["created_rules"])
    assert reduced["new_conflicts"] == [conflicts[0].id]


def test_published_rule_cannot_be_rewritten(ctx, conn, sources, capture):
    _ingest(
        ctx,
        capture,
        sources["law"],
        "https://law.example/act",
        "The standard VAT rate is 25% from 1 January 2024 under Article 38(1).",
    )
    published = compose_concept(ctx, CONCEPT)["created_rules"]
    _publish_all(ctx, published)

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE rules SET value = '30' WHERE id = ?", (published[0],))
    other = _ingest(ctx, capture, sources["guidance"], "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024.")
    claim_id = conn.execute("SELECT id FROM claims WHERE evidence_id = ?", (other,)).fetchone()[0]
    with pytest.raises(sqlite3.IntegrityError):
        link_rule_claim(conn, published[0], claim_id, "GROUNDING")
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("DELETE FROM rule_claims WHERE rule_id = ?", (published[0],))
