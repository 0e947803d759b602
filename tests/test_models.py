import pytest

from regtruth.errors import InvalidTransitionError
from regtruth.models import (
    ITEM_STATUSES,
    RULE_STATUSES,
    RULE_TRANSITIONS,
    FailedState,
    FetchedState,
    PendingState,
    check_rule_transition,
    state_from_record,
    state_to_record,
)
from regtruth.storage import insert_edge, list_conflicts


def test_rule_transitions_cover_every_status():
    assert set(RULE_TRANSITIONS) == set(RULE_STATUSES)
    for targets in RULE_TRANSITIONS.values():
        assert set(targets) <= set(RULE_STATUSES)


def test_rules_only_move_forward():
    check_rule_transition("DRAFT", "APPROVED")
    check_rule_transition("PUBLISHED", "DEPRECATED")
    with pytest.raises(InvalidTransitionError):
        check_rule_transition("PUBLISHED", "DRAFT")
    with pytest.raises(InvalidTransitionError):
        check_rule_transition("REJECTED", "APPROVED")


def test_item_state_records():
    status, payload = state_to_record(FetchedState(evidence_id="e1", content_hash="h", content_class="HTML"))
    assert status == "FETCHED"
    assert state_from_record(status, payload) == FetchedState(evidence_id="e1", content_hash="h", content_class="HTML")
    assert state_from_record("PENDING", None) == PendingState()
    assert state_from_record("FAILED", '{"error": "HTTP 404", "permanent": true}') == FailedState(
        error="HTTP 404", permanent=True
    )
    assert [state.status for state in (PendingState, FetchedState, FailedState)] == ["PENDING", "FETCHED", "FAILED"]
    assert set(ITEM_STATUSES) >= {"PENDING", "FETCHED", "FAILED"}
    with pytest.raises(ValueError):
        state_from_record("ARCHIVED", None)


def test_storage_rejects_unknown_vocabulary(conn):
    with pytest.raises(ValueError, match="relation must be one of SUPERSEDES, REFERENCES"):
        insert_edge(conn, "rule-a", "rule-b", "CITES")
    with pytest.raises(ValueError, match="conflict status"):
        list_conflicts(conn, status="CLOSED")
