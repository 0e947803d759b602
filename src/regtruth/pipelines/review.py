from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..canonical import stage_job_id
from ..errors import InvalidTransitionError
from ..models import Rule
from ..queues import enqueue
from ..storage import (
    get_primary_artifact,
    get_rule,
    insert_audit_event,
    open_conflicts_for_rule,
    update_rule_status,
)
from ..utils import log_event
from .text import quote_in_text

if TYPE_CHECKING:
    from ..context import PipelineContext

HUMAN_DECISIONS = ("approve", "reject")


def grounded_claim_ids(conn: Any, rule: Rule) -> list[str]:
    """Grounding claims whose quote is still found in the captured evidence text."""
    grounded = []
    for claim in rule.claims:
        if claim.role != "GROUNDING":
            continue
        artifact = get_primary_artifact(conn, claim.evidence_id)
        if artifact is not None and quote_in_text(claim.exact_quote, artifact.content):
            grounded.append(claim.claim_id)
    return grounded


def review_rule(ctx: "PipelineContext", rule_id: str) -> dict[str, object]:
    conn = ctx.conn
    config = ctx.config
    rule = get_rule(conn, rule_id)
    if rule is None:
        return {"status": "missing", "rule_id": rule_id}
    if rule.status != "DRAFT":
        return {"status": "noop", "rule_id": rule_id, "rule_status": rule.status}
    conflicts = open_conflicts_for_rule(conn, rule_id)
    if conflicts:
        log_event(ctx.logger, logging.INFO, "review_blocked", rule_id=rule_id, conflicts=len(conflicts))
        return {"status": "blocked", "rule_id": rule_id, "conflicts": [conflict.id for conflict in conflicts]}

    grounded = grounded_claim_ids(conn, rule) if config.review.require_grounding else ["unchecked"]
    threshold = config.review.auto_approve_threshold
    with conn.transaction():
        if rule.confidence > threshold and grounded:
            update_rule_status(conn, rule_id, "APPROVED", reason="auto-approved", actor="review")
            enqueue(conn, config, "release", stage_job_id("release", rule_id), {"rule_id": rule_id})
            outcome = "APPROVED"
            reason = "auto-approved"
        else:
            reason = "no grounded source pointer" if not grounded else f"confidence {rule.confidence} <= {threshold}"
            update_rule_status(conn, rule_id, "PENDING_REVIEW", reason=reason, actor="review")
            enqueue(
                conn,
                config,
                "human-review",
                stage_job_id("human-review", rule_id),
                {
                    "rule_id": rule_id,
                    "concept_id": rule.concept_id,
                    "value": rule.value,
                    "confidence": rule.confidence,
                    "reason": reason,
                    "sources": [{"url": claim.url, "quote": claim.exact_quote} for claim in rule.claims],
                },
            )
            outcome = "PENDING_REVIEW"
    log_event(
        ctx.logger,
        logging.INFO,
        "rule_reviewed",
        rule_id=rule_id,
        concept_id=rule.concept_id,
        outcome=outcome,
        confidence=rule.confidence,
    )
    return {"status": outcome.lower(), "rule_id": rule_id, "reason": reason}


def apply_human_decision(
    ctx: "PipelineContext",
    rule_id: str,
    decision: str,
    *,
    reviewer: str,
    note: str | None = None,
) -> Rule:
    """Record an external reviewer's disposition of a PENDING_REVIEW rule."""
    if decision not in HUMAN_DECISIONS:
        raise ValueError(f"decision must be one of {', '.join(HUMAN_DECISIONS)}")
    conn = ctx.conn
    rule = get_rule(conn, rule_id)
    if rule is None:
        raise ValueError(f"rule not found: {rule_id}")
    if rule.status != "PENDING_REVIEW":
        raise InvalidTransitionError(f"rule {rule_id} is {rule.status}, not PENDING_REVIEW")
    with conn.transaction():
        if decision == "approve":
            if open_conflicts_for_rule(conn, rule_id):
                raise InvalidTransitionError(f"rule {rule_id} is referenced by an open conflict")
            updated = update_rule_status(conn, rule_id, "APPROVED", reason=note, actor=f"human:{reviewer}")
            enqueue(ctx.conn, ctx.config, "release", stage_job_id("release", rule_id), {"rule_id": rule_id})
        else:
            updated = update_rule_status(conn, rule_id, "REJECTED", reason=note, actor=f"human:{reviewer}")
        insert_audit_event(conn, "rule", rule_id, "human_decision", {"decision": decision, "reviewer": reviewer, "note": note})
    log_event(ctx.logger, logging.INFO, "human_decision", rule_id=rule_id, decision=decision, reviewer=reviewer)
    return updated
