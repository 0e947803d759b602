from __future__ import annotations

from dataclasses import asdict, dataclass
from functools import cmp_to_key

from ..config import PolicyConfig


@dataclass(frozen=True)
class Snapshot:
    """What the tie-break policy sees of a rule or claim candidate."""

    id: str
    value: str
    authority_level: str
    confidence: float
    effective_from: str
    captured_at: str = ""


@dataclass(frozen=True)
class Decision:
    winner_id: str
    loser_ids: list[str]
    reason: str
    inputs: dict[str, object]


def _authority_rank(snapshot: Snapshot, policy: PolicyConfig) -> int:
    return policy.authority_ranks.get(snapshot.authority_level, len(policy.authority_ranks) + 1)


def _compare_on(criterion: str, a: Snapshot, b: Snapshot, policy: PolicyConfig) -> int:
    # Negative when ``a`` is preferred.
    if criterion == "authority":
        return _authority_rank(a, policy) - _authority_rank(b, policy)
    if criterion == "confidence":
        if abs(a.confidence - b.confidence) <= policy.confidence_epsilon:
            return 0
        return -1 if a.confidence > b.confidence else 1
    if criterion == "recency":
        left = (a.effective_from, a.captured_at)
        right = (b.effective_from, b.captured_at)
        if left == right:
            return 0
        return -1 if left > right else 1
    raise ValueError(f"unknown tie-break criterion: {criterion}")


def compare(a: Snapshot, b: Snapshot, policy: PolicyConfig) -> tuple[int, str]:
    for criterion in policy.tiebreak:
        result = _compare_on(criterion, a, b, policy)
        if result:
            return result, criterion
    if a.id == b.id:
        return 0, "identical"
    return (-1 if a.id < b.id else 1), "id"


def rank(snapshots: list[Snapshot], policy: PolicyConfig) -> list[Snapshot]:
    ordered = sorted(snapshots, key=lambda snapshot: snapshot.id)
    return sorted(ordered, key=cmp_to_key(lambda a, b: compare(a, b, policy)[0]))


def arbitrate(snapshots: list[Snapshot], policy: PolicyConfig) -> Decision:
    """Pick a winner among competing snapshots.

    Depends only on the snapshots and the policy, so replaying it on the same
    inputs always yields the same decision.
    """
    if not snapshots:
        raise ValueError("nothing to arbitrate")
    ordered = rank(snapshots, policy)
    winner = ordered[0]
    if len(ordered) > 1:
        _, criterion = compare(winner, ordered[1], policy)
        reason = f"won on {criterion}"
    else:
        reason = "sole remaining candidate"
    inputs = {
        "snapshots": [asdict(snapshot) for snapshot in sorted(snapshots, key=lambda s: s.id)],
        "policy": {
            "tiebreak": list(policy.tiebreak),
            "authority_ranks": dict(policy.authority_ranks),
            "confidence_epsilon": policy.confidence_epsilon,
        },
    }
    return Decision(
        winner_id=winner.id,
        loser_ids=[snapshot.id for snapshot in ordered[1:]],
        reason=reason,
        inputs=inputs,
    )
