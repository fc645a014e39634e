from datetime import datetime, timezone
from uuid import uuid4

import pytest

from app.onboarding.services.errors import IllegalTransition
from app.onboarding.services.onboarding_state_machine import (
    EVENT_REQUIRED_FIELDS,
    ActorRole,
    SessionStatus,
    WorkflowAction,
    all_states,
    already_reviewed,
    can_transition,
    resolve_transition,
    state_machine_map,
    transition_event,
)


def test_state_list_contains_core_lifecycle_states():
    states = all_states()
    assert "pending" in states
    assert "in_progress" in states
    assert "submitted" in states
    assert "manager_approved" in states
    assert "requires_changes" in states
    assert "completed" in states
    assert "expired" in states


def test_can_transition_for_valid_path():
    assert can_transition("pending", "start") is True
    assert can_transition("in_progress", "submit", "applicant") is True
    assert can_transition("submitted", "approve", "manager") is True
    assert can_transition("manager_approved", "approve", "hr") is True
    assert can_transition("approved", "complete", "system") is True


def test_can_transition_respects_roles():
    assert can_transition("submitted", "approve", "hr") is False
    assert can_transition("manager_approved", "approve", "manager") is False
    assert can_transition("in_progress", "submit", "manager") is False


def test_resolve_transition_rejects_invalid_path():
    with pytest.raises(IllegalTransition, match="not allowed from status 'pending'"):
        resolve_transition("pending", "approve", "manager")


def test_resolve_transition_names_allowed_roles():
    with pytest.raises(IllegalTransition, match="Allowed roles: hr"):
        resolve_transition(SessionStatus.MANAGER_APPROVED, WorkflowAction.REJECT, ActorRole.MANAGER)


def test_unknown_state_or_action_is_illegal():
    with pytest.raises(IllegalTransition, match="Unknown onboarding status"):
        resolve_transition("archived", "start", "applicant")
    with pytest.raises(IllegalTransition, match="Unknown onboarding action"):
        resolve_transition("pending", "teleport", "applicant")


def test_only_open_sessions_can_expire():
    for state in ("pending", "in_progress", "requires_changes"):
        assert resolve_transition(state, "expire", "system") == SessionStatus.EXPIRED
    for state in ("submitted", "manager_approved", "approved", "completed", "rejected", "expired"):
        assert can_transition(state, "expire") is False


def test_request_changes_from_either_stage_returns_to_applicant():
    assert resolve_transition("submitted", "request_changes", "manager") == SessionStatus.REQUIRES_CHANGES
    assert resolve_transition("manager_approved", "request_changes", "hr") == SessionStatus.REQUIRES_CHANGES
    assert resolve_transition("requires_changes", "resubmit", "applicant") == SessionStatus.SUBMITTED


def test_terminal_states_have_no_outgoing_transitions():
    machine = state_machine_map()
    assert machine["completed"] == {}
    assert machine["rejected"] == {}
    assert machine["expired"] == {}
    assert machine["submitted"]["approve"] == {"to": "manager_approved", "actors": ["manager"]}


def test_transition_event_carries_required_fields():
    session_id = uuid4()
    event = transition_event(
        session_id=session_id,
        action="submit",
        state_from="in_progress",
        state_to="submitted",
        occurred_at=datetime(2026, 3, 2, 17, 0, tzinfo=timezone.utc),
        actor_role="applicant",
    )
    for field in EVENT_REQUIRED_FIELDS:
        assert field in event
    assert event["event_name"] == "onboarding.session.transitioned"
    assert event["session_id"] == str(session_id)
    assert event["occurred_at"] == "2026-03-02T17:00:00+00:00"
    assert event["actor_id"] is None
    assert event["metadata"] == {}


def test_already_reviewed_only_covers_sessions_past_the_reviewers_stage():
    assert already_reviewed(SessionStatus.MANAGER_APPROVED, WorkflowAction.APPROVE, ActorRole.MANAGER)
    assert already_reviewed(SessionStatus.REQUIRES_CHANGES, WorkflowAction.APPROVE, ActorRole.MANAGER)
    assert already_reviewed(SessionStatus.COMPLETED, WorkflowAction.APPROVE, ActorRole.HR)
    assert already_reviewed("rejected", "reject", "hr")

    assert not already_reviewed(SessionStatus.SUBMITTED, WorkflowAction.APPROVE, ActorRole.HR)
    assert not already_reviewed(SessionStatus.IN_PROGRESS, WorkflowAction.APPROVE, ActorRole.MANAGER)
    assert not already_reviewed(SessionStatus.EXPIRED, WorkflowAction.REJECT, ActorRole.MANAGER)
    assert not already_reviewed(SessionStatus.SUBMITTED, WorkflowAction.SUBMIT, ActorRole.APPLICANT)
