from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..canonical import stage_job_id
from ..models import Rule
from ..queues import enqueue
from ..storage import (
    get_conflict,
    get_rule,
    open_conflicts_for_rule,
    resolve_conflict,
    set_rule_supersedes,
    update_rule_status,
)
from ..utils import log_event
from .policy import Snapshot, arbitrate

if TYPE_CHECKING:
    from ..context import PipelineContext


def rule_snapshot(rule: Rule) -> Snapshot:
    return Snapshot(
        id=rule.id,
        value=rule.value,
        authority_level=rule.authority_level,
        confidence=rule.confidence,
        effective_from=rule.effective_from,
        captured_at=rule.created_at,
    )


def arbitrate_conflict(ctx: "PipelineContext", conflict_id: str) -> dict[str, object]:
    conn = ctx.conn
    conflict = get_conflict(conn, conflict_id)
    if conflict is None:
        return {"status": "missing", "conflict_id": conflict_id}
    if conflict.status != "OPEN":
        return {"status": "noop", "conflict_id": conflict_id, "resolution": conflict.resolution}

    rules = [rule for rule in (get_rule(conn, rule_id, with_claims=False) for rule_id in conflict.rule_ids) if rule]
    live = [rule for rule in rules if rule.status not in ("DEPRECATED", "REJECTED")]
    if not live:
        return {"status": "empty", "conflict_id": conflict_id}
    decision = arbitrate([rule_snapshot(rule) for rule in live], ctx.config.policy)
    by_id = {rule.id: rule for rule in live}
    winner = by_id[decision.winner_id]

    with conn.transaction():
        published_loser = None
        for loser_id in decision.loser_ids:
            loser = by_id[loser_id]
            if loser.status == "PUBLISHED":
                published_loser = loser
            update_rule_status(
                conn,
                loser_id,
                "DEPRECATED",
                reason=f"lost conflict {conflict_id}: {decision.reason}",
                actor="arbiter",
            )
        if not resolve_conflict(
            conn,
            conflict_id,
            winner_rule_id=decision.winner_id,
            loser_rule_ids=decision.loser_ids,
            reason=decision.reason,
            inputs=decision.inputs,
        ):
            raise RuntimeError(f"conflict {conflict_id} was resolved concurrently")
        if published_loser is not None and winner.status != "PUBLISHED":
            set_rule_supersedes(conn, winner.id, published_loser.id)
        follow_up = _follow_up(ctx, winner, conflict_id)

    log_event(
        ctx.logger,
        logging.INFO,
        "conflict_resolved",
        conflict_id=conflict_id,
        winner=decision.winner_id,
        losers=",".join(decision.loser_ids),
        reason=decision.reason,
        follow_up=follow_up,
    )
    return {
        "status": "resolved",
        "conflict_id": conflict_id,
        "winner": decision.winner_id,
        "losers": decision.loser_ids,
        "reason": decision.reason,
    }


def _follow_up(ctx: "PipelineContext", winner: Rule, conflict_id: str) -> str:
    if open_conflicts_for_rule(ctx.conn, winner.id):
        return "blocked"
    if winner.status == "DRAFT":
        enqueue(
            ctx.conn,
            ctx.config,
            "review",
            stage_job_id("review", winner.id, "conflict", conflict_id),
            {"rule_id": winner.id},
        )
        return "review"
    if winner.status == "APPROVED":
        enqueue(ctx.conn, ctx.config, "release", stage_job_id("release", winner.id, "conflict", conflict_id), {"rule_id": winner.id})
        return "release"
    return "none"
