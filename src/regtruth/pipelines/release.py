from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from ..canonical import stage_job_id
from ..config import Config
from ..errors import GraphCycleError
from ..models import Rule
from ..queues import enqueue
from ..storage import (
    get_rule,
    insert_edge,
    insert_sync_event,
    list_edges,
    list_published_rules,
    open_conflicts_for_rule,
    update_rule_status,
)
from ..utils import log_event

if TYPE_CHECKING:
    from ..context import PipelineContext


def article_node_id(article_ref: str) -> str:
    return "article:" + re.sub(r"\s+", "-", article_ref.strip().lower())


def would_create_cycle(conn: Any, from_id: str, to_id: str, relation: str) -> bool:
    """True when ``to_id`` already reaches ``from_id`` through edges of ``relation``."""
    if from_id == to_id:
        return True
    stack = [to_id]
    seen: set[str] = set()
    while stack:
        node = stack.pop()
        if node == from_id:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edge.to_id for edge in list_edges(conn, relation=relation, from_id=node))
    return False


def add_edge(conn: Any, from_id: str, to_id: str, relation: str) -> bool:
    if would_create_cycle(conn, from_id, to_id, relation):
        raise GraphCycleError(f"{relation} edge {from_id} -> {to_id} would create a cycle")
    return insert_edge(conn, from_id, to_id, relation)


def rule_payload(rule: Rule) -> dict[str, object]:
    return {
        "rule_id": rule.id,
        "concept_id": rule.concept_id,
        "value": rule.value,
        "value_type": rule.value_type,
        "status": rule.status,
        "authority_level": rule.authority_level,
        "confidence": rule.confidence,
        "effective_from": rule.effective_from,
        "effective_until": rule.effective_until,
        "supersedes_id": rule.supersedes_id,
        "article_ref": rule.article_ref,
        "sources": [
            {"claim_id": claim.claim_id, "role": claim.role, "url": claim.url, "quote": claim.exact_quote}
            for claim in rule.claims
        ],
    }


def publish_rule(ctx: "PipelineContext", rule_id: str) -> dict[str, object]:
    """Move an APPROVED rule to PUBLISHED, link it into the graph and signal downstream sync."""
    conn = ctx.conn
    config = ctx.config
    rule = get_rule(conn, rule_id)
    if rule is None:
        return {"status": "missing", "rule_id": rule_id}
    if rule.status == "PUBLISHED":
        return {"status": "noop", "rule_id": rule_id}
    if rule.status != "APPROVED":
        return {"status": "not_approved", "rule_id": rule_id, "rule_status": rule.status}
    if open_conflicts_for_rule(conn, rule_id):
        log_event(ctx.logger, logging.INFO, "release_blocked", rule_id=rule_id, reason="open_conflict")
        return {"status": "blocked", "rule_id": rule_id}
    if not any(claim.role == "GROUNDING" for claim in rule.claims):
        log_event(ctx.logger, logging.WARNING, "release_blocked", rule_id=rule_id, reason="ungrounded")
        return {"status": "ungrounded", "rule_id": rule_id}

    with conn.transaction():
        published = update_rule_status(conn, rule_id, "PUBLISHED", reason="released", actor="release")
        # The superseded version stays PUBLISHED and unchanged; only the edge records the amendment.
        if rule.supersedes_id:
            add_edge(conn, rule_id, rule.supersedes_id, "SUPERSEDES")
        if rule.article_ref:
            add_edge(conn, rule_id, article_node_id(rule.article_ref), "REFERENCES")
        _emit_sync(conn, config, published, "PUBLISHED")

    log_event(
        ctx.logger,
        logging.INFO,
        "rule_published",
        rule_id=rule_id,
        concept_id=rule.concept_id,
        value=rule.value,
        supersedes=rule.supersedes_id,
    )
    return {"status": "published", "rule_id": rule_id, "supersedes": rule.supersedes_id}


def _emit_sync(conn: Any, config: Config, rule: Rule, event_type: str) -> None:
    payload = rule_payload(rule)
    if insert_sync_event(conn, rule.id, event_type, payload):
        enqueue(
            conn,
            config,
            "content-sync",
            stage_job_id("content-sync", rule.id, event_type),
            {"rule_id": rule.id, "event": event_type},
        )


def retrieval_view(conn: Any, config: Config, concept_id: str | None = None) -> list[dict[str, object]]:
    """PUBLISHED rules with source pointers.

    Current versions come before the versions they supersede; within each tier
    the order is authority, then confidence, then recency.
    """
    ranks = config.policy.authority_ranks
    rules = list_published_rules(conn, concept_id=concept_id)
    published_ids = {rule.id for rule in rules}
    superseded_by: dict[str, str] = {}
    for edge in list_edges(conn, relation="SUPERSEDES"):
        if edge.from_id in published_ids:
            superseded_by.setdefault(edge.to_id, edge.from_id)
    ordered = sorted(rules, key=lambda rule: rule.id)
    ordered.sort(key=lambda rule: (rule.effective_from, rule.published_at or ""), reverse=True)
    ordered.sort(key=lambda rule: rule.confidence, reverse=True)
    ordered.sort(key=lambda rule: ranks.get(rule.authority_level, len(ranks) + 1))
    ordered.sort(key=lambda rule: rule.id in superseded_by)
    return [{**rule_payload(rule), "superseded_by": superseded_by.get(rule.id)} for rule in ordered]
