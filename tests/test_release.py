import pytest

from regtruth.errors import GraphCycleError
from regtruth.pipelines.compose import compose_concept
from regtruth.pipelines.extract import extract_evidence
from regtruth.pipelines.release import add_edge, article_node_id, publish_rule, retrieval_view
from regtruth.pipelines.review import review_rule
from regtruth.storage import get_rule, insert_rule, list_edges, list_jobs, list_sync_events

CONCEPT = "vat-standard-rate"


def _approved(ctx, capture, source, url, sentence):
    extract_evidence(ctx, capture(source, url, sentence))
    rule_id = compose_concept(ctx, CONCEPT)["created_rules"][0]
    assert review_rule(ctx, rule_id)["status"] == "approved"
    return rule_id


def test_publish_links_article_and_signals_sync(ctx, conn, add_source, capture):
    rule_id = _approved(
        ctx, capture, add_source(), "https://gov.example/vat", "The standard VAT rate is 25% from 1 January 2024 under Article 38(1)."
    )

    result = publish_rule(ctx, rule_id)

    assert result == {"status": "published", "rule_id": rule_id, "supersedes": None}
    rule = get_rule(conn, rule_id)
    assert rule.status == "PUBLISHED"
    assert rule.published_at is not None
    assert [(edge.to_id, edge.relation) for edge in list_edges(conn, from_id=rule_id)] == [
        ("article:article-38(1)", "REFERENCES")
    ]
    events = list_sync_events(conn)
    assert [(event["rule_id"], event["event_type"]) for event in events] == [(rule_id, "PUBLISHED")]
    assert events[0]["payload"]["sources"][0]["url"] == "https://gov.example/vat"
    assert [job.payload for job in list_jobs(conn, queue="content-sync")] == [
        {"rule_id": rule_id, "event": "PUBLISHED"}
    ]
    assert publish_rule(ctx, rule_id)["status"] == "noop"
    assert len(list_sync_events(conn)) == 1


def test_amendment_keeps_previous_version_published(ctx, conn, add_source, capture):
    source = add_source()
    first = _approved(
        ctx, capture, source, "https://gov.example/vat-2024", "The standard VAT rate is 25% from 1 January 2024 under Article 38(1)."
    )
    publish_rule(ctx, first)
    second = _approved(
        ctx, capture, source, "https://gov.example/vat-2025", "The standard VAT rate is 26% from 1 July 2025 under Article 38(1)."
    )

    result = publish_rule(ctx, second)

    assert result == {"status": "published", "rule_id": second, "supersedes": first}
    previous = get_rule(conn, first)
    assert previous.status == "PUBLISHED"
    assert previous.effective_until is None
    assert [(edge.from_id, edge.to_id) for edge in list_edges(conn, relation="SUPERSEDES")] == [(second, first)]
    assert [(event["rule_id"], event["event_type"]) for event in list_sync_events(conn)] == [
        (first, "PUBLISHED"),
        (second, "PUBLISHED"),
    ]
    view = retrieval_view(conn, ctx.config, CONCEPT)
    assert [(row["rule_id"], row["superseded_by"]) for row in view] == [(second, None), (first, second)]


def test_only_approved_grounded_rules_publish(ctx, conn):
    draft = insert_rule(
        conn,
        concept_id=CONCEPT,
        value="25",
        value_type="PERCENTAGE",
        authority_level="LAW",
        confidence=0.99,
        effective_from="2024-01-01",
    )
    ungrounded = insert_rule(
        conn,
        concept_id=CONCEPT,
        value="26",
        value_type="PERCENTAGE",
        authority_level="LAW",
        confidence=0.99,
        effective_from="2025-01-01",
        status="APPROVED",
    )

    assert publish_rule(ctx, draft)["status"] == "not_approved"
    assert publish_rule(ctx, ungrounded)["status"] == "ungrounded"
    assert publish_rule(ctx, "missing")["status"] == "missing"
    assert list_sync_events(conn) == []


def test_supersedes_graph_rejects_cycles(conn):
    assert add_edge(conn, "rule-c", "rule-b", "SUPERSEDES") is True
    assert add_edge(conn, "rule-b", "rule-a", "SUPERSEDES") is True
    with pytest.raises(GraphCycleError):
        add_edge(conn, "rule-a", "rule-c", "SUPERSEDES")
    with pytest.raises(GraphCycleError):
        add_edge(conn, "rule-a", "rule-a", "SUPERSEDES")
    assert add_edge(conn, "rule-a", "rule-c", "REFERENCES") is True
    assert add_edge(conn, "rule-c", "rule-b", "SUPERSEDES") is False


def test_article_node_id():
    assert article_node_id(" Article 38 (1) ") == "article:article-38-(1)"


def test_retrieval_view_orders_by_authority_confidence_recency(ctx, conn):
    def published(concept_id, value, authority, confidence, effective_from):
        return insert_rule(
            conn,
            concept_id=concept_id,
            value=value,
            value_type="PERCENTAGE",
            authority_level=authority,
            confidence=confidence,
            effective_from=effective_from,
            status="PUBLISHED",
        )

    guidance = published("vat-reduced-rate", "10", "GUIDANCE", 0.99, "2024-01-01")
    law_old = published("vat-standard-rate", "25", "LAW", 0.9, "2023-01-01")
    law_new = published("late-payment-interest-rate", "8", "LAW", 0.9, "2024-06-01")
    law_low = published("vat-registration-threshold", "5", "LAW", 0.7, "2024-01-01")
    insert_rule(
        conn,
        concept_id=CONCEPT,
        value="26",
        value_type="PERCENTAGE",
        authority_level="LAW",
        confidence=1.0,
        effective_from="2025-01-01",
    )

    view = retrieval_view(conn, ctx.config)

    assert [row["rule_id"] for row in view] == [law_new, law_old, law_low, guidance]
    assert [row["rule_id"] for row in retrieval_view(conn, ctx.config, "vat-reduced-rate")] == [guidance]
