"""Canonical onboarding session state machine and transition event contract."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from .errors import IllegalTransition


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    MANAGER_APPROVED = "manager_approved"
    REQUIRES_CHANGES = "requires_changes"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    EXPIRED = "expired"


class WorkflowAction(str, Enum):
    START = "start"
    ADVANCE = "advance"
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    REJECT = "reject"
    COMPLETE = "complete"
    EXPIRE = "expire"


class ActorRole(str, Enum):
    APPLICANT = "applicant"
    MANAGER = "manager"
    HR = "hr"
    SYSTEM = "system"


_APPLICANT = frozenset({ActorRole.APPLICANT})
_MANAGER = frozenset({ActorRole.MANAGER})
_HR = frozenset({ActorRole.HR})
_SYSTEM = frozenset({ActorRole.SYSTEM})
_OPERATORS = frozenset({ActorRole.SYSTEM, ActorRole.MANAGER, ActorRole.HR})

_TRANSITIONS: dict[tuple[SessionStatus, WorkflowAction], tuple[SessionStatus, frozenset[ActorRole]]] = {
    (SessionStatus.PENDING, WorkflowAction.START): (SessionStatus.IN_PROGRESS, _APPLICANT),
    (SessionStatus.IN_PROGRESS, WorkflowAction.ADVANCE): (SessionStatus.IN_PROGRESS, _APPLICANT),
    (SessionStatus.REQUIRES_CHANGES, WorkflowAction.ADVANCE): (SessionStatus.REQUIRES_CHANGES, _APPLICANT),
    (SessionStatus.IN_PROGRESS, WorkflowAction.SUBMIT): (SessionStatus.SUBMITTED, _APPLICANT),
    (SessionStatus.REQUIRES_CHANGES, WorkflowAction.RESUBMIT): (SessionStatus.SUBMITTED, _APPLICANT),
    # Manager stage
    (SessionStatus.SUBMITTED, WorkflowAction.APPROVE): (SessionStatus.MANAGER_APPROVED, _MANAGER),
    (SessionStatus.SUBMITTED, WorkflowAction.REQUEST_CHANGES): (SessionStatus.REQUIRES_CHANGES, _MANAGER),
    (SessionStatus.SUBMITTED, WorkflowAction.REJECT): (SessionStatus.REJECTED, _MANAGER),
    # HR stage
    (SessionStatus.MANAGER_APPROVED, WorkflowAction.APPROVE): (SessionStatus.APPROVED, _HR),
    (SessionStatus.MANAGER_APPROVED, WorkflowAction.REQUEST_CHANGES): (SessionStatus.REQUIRES_CHANGES, _HR),
    (SessionStatus.MANAGER_APPROVED, WorkflowAction.REJECT): (SessionStatus.REJECTED, _HR),
    # Materialization
    (SessionStatus.APPROVED, WorkflowAction.COMPLETE): (SessionStatus.COMPLETED, _SYSTEM),
    # Expiry / cancellation of sessions still in the applicant's hands
    (SessionStatus.PENDING, WorkflowAction.EXPIRE): (SessionStatus.EXPIRED, _OPERATORS),
    (SessionStatus.IN_PROGRESS, WorkflowAction.EXPIRE): (SessionStatus.EXPIRED, _OPERATORS),
    (SessionStatus.REQUIRES_CHANGES, WorkflowAction.EXPIRE): (SessionStatus.EXPIRED, _OPERATORS),
}

EDITABLE_STATES: frozenset[SessionStatus] = frozenset({
    SessionStatus.PENDING,
    SessionStatus.IN_PROGRESS,
    SessionStatus.REQUIRES_CHANGES,
})

TERMINAL_STATES: frozenset[SessionStatus] = frozenset({
    SessionStatus.REJECTED,
    SessionStatus.COMPLETED,
    SessionStatus.EXPIRED,
})

# Every status reachable only after the applicant has submitted at least once
# and not been sent back for changes.
SUBMITTED_OR_LATER: frozenset[SessionStatus] = frozenset({
    SessionStatus.SUBMITTED,
    SessionStatus.MANAGER_APPROVED,
    SessionStatus.APPROVED,
    SessionStatus.COMPLETED,
    SessionStatus.REJECTED,
})

EVENT_SCHEMA_VERSION = "1.0"
EVENT_REQUIRED_FIELDS: tuple[str, ...] = (
    "event_name",
    "session_id",
    "occurred_at",
    "action",
    "state_from",
    "state_to",
)


def _coerce_state(value: str | SessionStatus) -> SessionStatus:
    if isinstance(value, SessionStatus):
        return value
    try:
        return SessionStatus(value)
    except ValueError as exc:
        raise IllegalTransition(f"Unknown onboarding status '{value}'") from exc


def _coerce_action(value: str | WorkflowAction) -> WorkflowAction:
    if isinstance(value, WorkflowAction):
        return value
    try:
        return WorkflowAction(value)
    except ValueError as exc:
        raise IllegalTransition(f"Unknown onboarding action '{value}'") from exc


def all_states() -> list[str]:
    return [state.value for state in SessionStatus]


def state_machine_map() -> dict[str, dict[str, dict[str, Any]]]:
    result: dict[str, dict[str, dict[str, Any]]] = {state.value: {} for state in SessionStatus}
    for (source, action), (target, roles) in _TRANSITIONS.items():
        result[source.value][action.value] = {
            "to": target.value,
            "actors": sorted(role.value for role in roles),
        }
    return result


def can_transition(
    state_from: str | SessionStatus,
    action: str | WorkflowAction,
    role: Optional[str | ActorRole] = None,
) -> bool:
    source = _coerce_state(state_from)
    act = _coerce_action(action)
    entry = _TRANSITIONS.get((source, act))
    if entry is None:
        return False
    if role is None:
        return True
    return ActorRole(role) in entry[1]


def resolve_transition(
    state_from: str | SessionStatus,
    action: str | WorkflowAction,
    role: str | ActorRole,
) -> SessionStatus:
    """Return the target status, or raise IllegalTransition without side effects."""
    source = _coerce_state(state_from)
    act = _coerce_action(action)
    actor = ActorRole(role)

    entry = _TRANSITIONS.get((source, act))
    if entry is None:
        allowed = ", ".join(a.value for (s, a) in _TRANSITIONS if s == source) or "none"
        raise IllegalTransition(
            f"Action '{act.value}' is not allowed from status '{source.value}'. "
            f"Allowed actions: {allowed}."
        )

    target, roles = entry
    if actor not in roles:
        allowed_roles = ", ".join(sorted(r.value for r in roles))
        raise IllegalTransition(
            f"Role '{actor.value}' cannot '{act.value}' a session in status '{source.value}'. "
            f"Allowed roles: {allowed_roles}."
        )
    return target


_REVIEW_ACTIONS = frozenset({
    WorkflowAction.APPROVE,
    WorkflowAction.REQUEST_CHANGES,
    WorkflowAction.REJECT,
    WorkflowAction.COMPLETE,
})


def _review_outcomes(source: SessionStatus) -> set[SessionStatus]:
    """Statuses a session can reach from ``source`` through review decisions alone."""
    reached: set[SessionStatus] = set()
    frontier = [source]
    while frontier:
        state = frontier.pop()
        for (s, act), (target, _) in _TRANSITIONS.items():
            if s == state and act in _REVIEW_ACTIONS and target not in reached:
                reached.add(target)
                frontier.append(target)
    return reached


def already_reviewed(
    state_from: str | SessionStatus,
    action: str | WorkflowAction,
    role: str | ActorRole,
) -> bool:
    """True when ``role`` could have taken ``action`` earlier and the session has since moved on.

    A reviewer acting on a stale page lands here: the decision was already
    made at their stage and the request lost the race.
    """
    current = _coerce_state(state_from)
    act = _coerce_action(action)
    if act not in _REVIEW_ACTIONS:
        return False
    actor = ActorRole(role)
    for (source, a), (_, roles) in _TRANSITIONS.items():
        if a == act and actor in roles and source != current and current in _review_outcomes(source):
            return True
    return False


def transition_event(
    *,
    session_id: UUID,
    action: str | WorkflowAction,
    state_from: str | SessionStatus,
    state_to: str | SessionStatus,
    occurred_at: datetime,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str | ActorRole] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build the transition event payload attached to every notification."""
    return {
        "event_name": "onboarding.session.transitioned",
        "schema_version": EVENT_SCHEMA_VERSION,
        "session_id": str(session_id),
        "occurred_at": occurred_at.isoformat(),
        "action": _coerce_action(action).value,
        "state_from": _coerce_state(state_from).value,
        "state_to": _coerce_state(state_to).value,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": ActorRole(actor_role).value if actor_role else None,
        "metadata": metadata or {},
    }
