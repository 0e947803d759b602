import pytest

from regtruth.pipelines.arbiter import arbitrate_conflict
from regtruth.pipelines.compose import compose_concept
from regtruth.pipelines.extract import extract_evidence
from regtruth.pipelines.release import publish_rule
from regtruth.pipelines.review import review_rule
from regtruth.storage import get_conflict, get_conflict_resolution, get_rule, list_conflicts, list_jobs

CONCEPT = "vat-standard-rate"


@pytest.fixture
def conflict(ctx, add_source, capture):
    guidance = add_source("tax-authority")
    law = add_source("official-journal", domain="law.example", authority_level="LAW", sitemap_url="https://law.example/sitemap.xml")
    extract_evidence(ctx, capture(guidance, "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024 under Article 38(1)."))
    extract_evidence(ctx, capture(law, "https://law.example/act", "The standard VAT rate is 24% from 1 January 2024 under Article 38(1)."))
    compose_concept(ctx, CONCEPT)
    return list_conflicts(ctx.conn, status="OPEN")[0]


def _rule_by_value(conn, conflict, value):
    return [rule for rule in (get_rule(conn, rule_id) for rule_id in conflict.rule_ids) if rule.value == value][0]


def test_higher_authority_wins_and_loser_is_deprecated(ctx, conn, conflict):
    law_rule = _rule_by_value(conn, conflict, "24")
    guidance_rule = _rule_by_value(conn, conflict, "25")

    result = arbitrate_conflict(ctx, conflict.id)

    assert result["status"] == "resolved"
    assert result["winner"] == law_rule.id
    assert result["losers"] == [guidance_rule.id]
    assert result["reason"] == "won on authority"
    assert get_rule(conn, guidance_rule.id).status == "DEPRECATED"
    assert get_rule(conn, law_rule.id).status == "DRAFT"
    assert get_conflict(conn, conflict.id).status == "RESOLVED"
    resolution = get_conflict_resolution(conn, conflict.id)
    assert resolution["winner_rule_id"] == law_rule.id
    assert {snapshot["id"] for snapshot in resolution["inputs"]["snapshots"]} == set(conflict.rule_ids)


def test_winner_proceeds_to_review_and_release(ctx, conn, conflict):
    result = arbitrate_conflict(ctx, conflict.id)
    winner = result["winner"]

    assert {"rule_id": winner} in [job.payload for job in list_jobs(conn, queue="review", limit=100)]
    assert review_rule(ctx, winner)["status"] == "approved"
    assert publish_rule(ctx, winner)["status"] == "published"


def test_resolved_conflict_is_not_arbitrated_again(ctx, conn, conflict):
    first = arbitrate_conflict(ctx, conflict.id)
    second = arbitrate_conflict(ctx, conflict.id)

    assert second["status"] == "noop"
    assert second["resolution"]["winner"] == first["winner"]
    assert arbitrate_conflict(ctx, "missing")["status"] == "missing"


def test_winner_supersedes_a_published_loser(ctx, conn, add_source, capture):
    guidance = add_source("tax-authority")
    law = add_source("official-journal", domain="law.example", authority_level="LAW", sitemap_url="https://law.example/sitemap.xml")
    extract_evidence(ctx, capture(guidance, "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024 under Article 38(1)."))
    published = compose_concept(ctx, CONCEPT)["created_rules"][0]
    review_rule(ctx, published)
    publish_rule(ctx, published)

    extract_evidence(ctx, capture(law, "https://law.example/act", "The standard VAT rate is 24% from 1 January 2024 under Article 38(1)."))
    compose_concept(ctx, CONCEPT)
    conflict = list_conflicts(conn, status="OPEN")[0]
    result = arbitrate_conflict(ctx, conflict.id)

    assert result["losers"] == [published]
    old = get_rule(conn, published)
    assert old.status == "DEPRECATED"
    assert old.value == "25"
    assert get_rule(conn, result["winner"]).supersedes_id == published
