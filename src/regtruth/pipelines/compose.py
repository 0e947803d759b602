from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..canonical import stage_job_id
from ..config import Config
from ..models import AtomicClaim, Rule
from ..queues import enqueue
from ..storage import (
    get_conflict,
    get_rule,
    insert_rule,
    latest_published_rule,
    link_rule_claim,
    list_claim_candidates,
    list_live_rules,
    list_live_rules_in_period,
    list_unlinked_claim_ids,
    open_conflicts_for_rule,
    open_or_extend_conflict,
    update_rule_confidence,
)
from ..utils import log_event
from .policy import Snapshot, rank

if TYPE_CHECKING:
    from ..context import PipelineContext


@dataclass(frozen=True)
class ClaimCandidate:
    claim: AtomicClaim
    authority_level: str
    fetched_at: str
    url: str

    @property
    def period(self) -> str:
        return self.claim.effective_from or self.fetched_at[:10]

    def snapshot(self) -> Snapshot:
        return Snapshot(
            id=self.claim.id,
            value=self.claim.normalized_value,
            authority_level=self.authority_level,
            confidence=self.claim.confidence,
            effective_from=self.period,
            captured_at=self.fetched_at,
        )


@dataclass
class ComposeResult:
    concept_id: str
    created_rules: list[str] = field(default_factory=list)
    corroborated_rules: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    new_conflicts: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "status": "composed",
            "concept_id": self.concept_id,
            "created_rules": self.created_rules,
            "corroborated_rules": self.corroborated_rules,
            "conflicts": self.conflicts,
            "new_conflicts": self.new_conflicts,
        }


def group_candidates(candidates: list[ClaimCandidate]) -> dict[str, dict[str, list[ClaimCandidate]]]:
    """``{period: {value: [candidates]}}`` for one concept."""
    grouped: dict[str, dict[str, list[ClaimCandidate]]] = defaultdict(lambda: defaultdict(list))
    for candidate in candidates:
        grouped[candidate.period][candidate.claim.normalized_value].append(candidate)
    return grouped


def best_candidate(candidates: list[ClaimCandidate], config: Config) -> ClaimCandidate:
    by_id = {candidate.claim.id: candidate for candidate in candidates}
    ordered = rank([candidate.snapshot() for candidate in candidates], config.policy)
    return by_id[ordered[0].id]


def compose_concept(ctx: "PipelineContext", concept_id: str) -> dict[str, object]:
    """Fold every unlinked claim of a concept (and its aliases) into rules.

    Same value in the same period corroborates one rule. Distinct values whose
    effective periods overlap open a single conflict over all of them. A new
    explicitly dated value after the latest published rule is an amendment
    that supersedes it and closes its period.
    """
    conn = ctx.conn
    config = ctx.config
    canonical = config.canonical_concept_id(concept_id)
    concept = config.concept(canonical)
    family = [canonical] + (list(concept.aliases) if concept else [])
    claim_ids = sorted({claim_id for member in family for claim_id in list_unlinked_claim_ids(conn, member)})
    result = ComposeResult(concept_id=canonical)
    if not claim_ids:
        return {**result.as_dict(), "status": "noop"}

    candidates = [
        ClaimCandidate(
            claim=row["claim"],
            authority_level=str(row["authority_level"]),
            fetched_at=str(row["fetched_at"]),
            url=str(row["url"]),
        )
        for row in list_claim_candidates(conn, claim_ids)
    ]
    review_ids: set[str] = set()
    grouped = group_candidates(candidates)
    with conn.transaction():
        for period, by_value in sorted(grouped.items()):
            for value, group in sorted(by_value.items()):
                rule_id, created = _fold_group(conn, config, canonical, period, value, group)
                (result.created_rules if created else result.corroborated_rules).append(rule_id)
                review_ids.add(rule_id)
        _detect_value_conflicts(conn, canonical, review_ids, result)
        for period in sorted(grouped):
            _detect_cross_concept(conn, config, canonical, period, result)
        for rule_id in sorted(review_ids):
            rule = get_rule(conn, rule_id, with_claims=False)
            if rule is not None and rule.status == "DRAFT":
                enqueue(conn, config, "review", stage_job_id("review", rule.id, rule.updated_at), {"rule_id": rule.id})
        for conflict_id in result.conflicts:
            conflict = get_conflict(conn, conflict_id)
            conflict_rules = len(conflict.rule_ids) if conflict else 0
            enqueue(
                conn,
                config,
                "arbiter",
                stage_job_id("arbiter", conflict_id, conflict_rules),
                {"conflict_id": conflict_id},
            )
    log_event(
        ctx.logger,
        logging.INFO,
        "concept_composed",
        concept_id=canonical,
        claims=len(candidates),
        created=len(result.created_rules),
        corroborated=len(result.corroborated_rules),
        conflicts=len(result.conflicts),
    )
    return result.as_dict()


def _fold_group(
    conn: Any,
    config: Config,
    concept_id: str,
    period: str,
    value: str,
    group: list[ClaimCandidate],
) -> tuple[str, bool]:
    best = best_candidate(group, config)
    live = [rule for rule in list_live_rules(conn, concept_id, period) if rule.value == value]
    target: Rule | None = live[0] if live else None
    if target is None and not _has_explicit_date(group):
        # An undated recapture repeating the current value only adds provenance.
        earlier = [rule for rule in list_live_rules(conn, concept_id) if rule.effective_from <= period]
        if earlier and earlier[-1].value == value:
            target = earlier[-1]
    if target is not None:
        for candidate in group:
            link_rule_claim(conn, target.id, candidate.claim.id, "CORROBORATING")
        if best.claim.confidence > target.confidence:
            update_rule_confidence(conn, target.id, best.claim.confidence)
        return target.id, False

    prior = latest_published_rule(conn, concept_id, before=period)
    supersedes_id = None
    if prior is not None and prior.value != value and _has_explicit_date(group):
        supersedes_id = prior.id
    rule_id = insert_rule(
        conn,
        concept_id=concept_id,
        value=value,
        value_type=best.claim.value_type,
        authority_level=best.authority_level,
        confidence=best.claim.confidence,
        effective_from=period,
        article_ref=best.claim.article_ref,
        supersedes_id=supersedes_id,
    )
    link_rule_claim(conn, rule_id, best.claim.id, "GROUNDING")
    for candidate in group:
        if candidate.claim.id != best.claim.id:
            link_rule_claim(conn, rule_id, candidate.claim.id, "CORROBORATING")
    return rule_id, True


def _has_explicit_date(group: list[ClaimCandidate]) -> bool:
    return any(candidate.claim.effective_from for candidate in group)


def period_ends(rules: list[Rule]) -> dict[str, str | None]:
    """Exclusive end of each rule's period; ``None`` is open-ended.

    A period closes at its own ``effective_until`` or where a live rule that
    supersedes it takes effect, whichever comes first.
    """
    ends: dict[str, str | None] = {}
    for rule in rules:
        bounds = [rule.effective_until] if rule.effective_until else []
        bounds.extend(
            other.effective_from
            for other in rules
            if other.supersedes_id == rule.id and other.effective_from > rule.effective_from
        )
        ends[rule.id] = min(bounds) if bounds else None
    return ends


def periods_overlap(first: Rule, second: Rule, ends: dict[str, str | None]) -> bool:
    first_end = ends.get(first.id)
    second_end = ends.get(second.id)
    return (first_end is None or second.effective_from < first_end) and (
        second_end is None or first.effective_from < second_end
    )


def overlapping_groups(rules: list[Rule]) -> list[list[Rule]]:
    """Connected groups of rules linked by a differing value over an overlapping period."""
    ends = period_ends(rules)
    parent = {rule.id: rule.id for rule in rules}

    def find(rule_id: str) -> str:
        while parent[rule_id] != rule_id:
            parent[rule_id] = parent[parent[rule_id]]
            rule_id = parent[rule_id]
        return rule_id

    linked: set[str] = set()
    for index, first in enumerate(rules):
        for second in rules[index + 1 :]:
            if first.value == second.value or not periods_overlap(first, second, ends):
                continue
            parent[find(first.id)] = find(second.id)
            linked.update((first.id, second.id))
    groups: dict[str, list[Rule]] = defaultdict(list)
    for rule in rules:
        if rule.id in linked:
            groups[find(rule.id)].append(rule)
    return sorted(groups.values(), key=lambda group: min(rule.effective_from for rule in group))


def _detect_value_conflicts(conn: Any, concept_id: str, touched: set[str], result: ComposeResult) -> None:
    for group in overlapping_groups(list_live_rules(conn, concept_id)):
        rule_ids = [rule.id for rule in group]
        if not touched.intersection(rule_ids):
            continue
        # Reuse the key of an open mismatch so a growing group extends one conflict.
        existing = [
            conflict
            for rule_id in rule_ids
            for conflict in open_conflicts_for_rule(conn, rule_id)
            if conflict.conflict_type == "VALUE_MISMATCH" and conflict.concept_id == concept_id
        ]
        start = existing[0].effective_from if existing else min(rule.effective_from for rule in group)
        values = ", ".join(sorted({rule.value for rule in group}))
        conflict, created = open_or_extend_conflict(
            conn,
            concept_id=concept_id,
            effective_from=start,
            conflict_type="VALUE_MISMATCH",
            rule_ids=rule_ids,
            description=f"{concept_id} has competing values over overlapping periods from {start}: {values}",
        )
        if conflict.id not in result.conflicts:
            result.conflicts.append(conflict.id)
        if created:
            result.new_conflicts.append(conflict.id)


def _detect_cross_concept(
    conn: Any, config: Config, concept_id: str, period: str, result: ComposeResult
) -> None:
    """Flag one quote asserting the same value under two different concepts."""
    live = list_live_rules(conn, concept_id, period)
    quotes = {
        (claim.evidence_id, claim.exact_quote): rule
        for rule in live
        for claim in rule.claims
    }
    if not quotes:
        return
    for other in list_live_rules_in_period(conn, period):
        if config.canonical_concept_id(other.concept_id) == concept_id:
            continue
        for claim in other.claims:
            mine = quotes.get((claim.evidence_id, claim.exact_quote))
            if mine is None or mine.value != other.value:
                continue
            conflict, created = open_or_extend_conflict(
                conn,
                concept_id=concept_id,
                effective_from=period,
                conflict_type="CROSS_SLUG_DUPLICATE",
                rule_ids=[mine.id, other.id],
                description=(
                    f"the same quote asserts {mine.value} for both {concept_id} and {other.concept_id}"
                ),
            )
            if conflict.id not in result.conflicts:
                result.conflicts.append(conflict.id)
            if created:
                result.new_conflicts.append(conflict.id)
            break

