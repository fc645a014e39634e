import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from app.onboarding.models.session import CandidateSubject, EditRequest, WalkInSessionCreate
from app.onboarding.services.errors import (
    Conflict,
    IllegalTransition,
    StepValidationFailed,
    TokenExpired,
    TokenInvalid,
    ValidationFailed,
)
from app.onboarding.services.notification_relay import NotificationKind
from app.onboarding.services.onboarding_state_machine import ActorRole, SessionStatus, WorkflowAction
from app.onboarding.services.onboarding_steps import progress_percentage
from app.onboarding.services.onboarding_workflow import OnboardingWorkflow
from app.onboarding.services.token_issuer import ACCESS_CODE_ALPHABET, ExpiryPolicy, TokenKind

from conftest import MANAGER_ID, ORG_ID


def _create(workflow, walk_in_request):
    return asyncio.run(workflow.create_walk_in(ORG_ID, MANAGER_ID, walk_in_request))


def test_create_walk_in_issues_access_code_and_notifies_applicant(workflow, relay, walk_in_request, clock):
    session = _create(workflow, walk_in_request)

    assert session.status == SessionStatus.PENDING
    assert session.token_kind == TokenKind.ACCESS_CODE
    assert len(session.token) == 6
    assert all(ch in ACCESS_CODE_ALPHABET for ch in session.token)
    assert session.expires_at == clock() + timedelta(hours=120)
    assert session.manager_id == MANAGER_ID
    assert session.current_step == "language"

    recipient, kind, payload = relay.sent[-1]
    assert kind == NotificationKind.ACCESS_CODE_DELIVERY
    assert recipient.email == "maria.lopez@example.com"
    assert payload["token"] == session.token


def test_create_walk_in_rejects_pay_below_floor(workflow, walk_in_request):
    request = walk_in_request.model_copy(update={"hourly_rate": Decimal("5.00")})
    with pytest.raises(ValidationFailed) as exc:
        _create(workflow, request)
    assert "hourly_rate" in exc.value.errors


def test_walk_in_start_date_defaults_to_today(workflow, walk_in_request, clock):
    request = walk_in_request.model_copy(update={"start_date": None})
    session = _create(workflow, request)
    assert session.subject.start_date == clock().date()


def test_first_step_moves_pending_session_in_progress(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    updated = asyncio.run(workflow.submit_step(session.token.lower(), "language", step_payloads["language"]))

    assert updated.status == SessionStatus.IN_PROGRESS
    assert updated.step_status["language"] == "completed"
    assert updated.current_step == "identity"
    assert updated.version == session.version + 1


def test_full_walk_in_reaches_submitted_and_alerts_manager(workflow, relay, walk_in_request, fill_all_steps):
    session = _create(workflow, walk_in_request)
    filled = asyncio.run(fill_all_steps(session.token))

    assert filled.status == SessionStatus.IN_PROGRESS
    assert progress_percentage(filled) < 100
    assert filled.current_step == "review"

    submitted = asyncio.run(workflow.submit(session.token))
    assert submitted.status == SessionStatus.SUBMITTED
    assert submitted.submitted_at is not None
    assert progress_percentage(submitted) == 100
    assert submitted.review_history[-1].action == "submit"

    recipient, kind, payload = relay.sent[-1]
    assert kind == NotificationKind.NEW_HIRE_ALERT
    assert recipient.user_id == MANAGER_ID
    assert payload["event"]["state_to"] == "submitted"


def test_submit_with_missing_steps_lists_them(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))

    with pytest.raises(StepValidationFailed) as exc:
        asyncio.run(workflow.submit(session.token))
    assert exc.value.step == "review"
    assert "identity" in exc.value.errors
    assert "emergency_contact" in exc.value.errors


def test_submitting_review_step_is_the_same_as_submit(workflow, walk_in_request, fill_all_steps):
    session = _create(workflow, walk_in_request)
    asyncio.run(fill_all_steps(session.token))
    submitted = asyncio.run(workflow.submit_step(session.token, "review", {}))
    assert submitted.status == SessionStatus.SUBMITTED


def test_step_validation_errors_leave_session_unchanged(workflow, store, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))
    before = store.sessions[session.id].model_copy(deep=True)

    with pytest.raises(StepValidationFailed) as exc:
        asyncio.run(workflow.submit_step(session.token, "identity", {"email": "someone@else.com", "last_name": "Lopez"}))

    assert exc.value.errors == {"email": "Does not match our records"}
    assert store.sessions[session.id] == before


def test_unknown_section_field_is_rejected(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))
    asyncio.run(workflow.submit_step(session.token, "identity", step_payloads["identity"]))

    payload = dict(step_payloads["personal"], favorite_color="teal")
    with pytest.raises(StepValidationFailed) as exc:
        asyncio.run(workflow.submit_step(session.token, "personal", payload))
    assert "favorite_color" in exc.value.errors


def test_form_data_round_trips_only_what_was_entered(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    for key in ("language", "identity", "personal"):
        session = asyncio.run(workflow.submit_step(session.token, key, step_payloads[key]))

    reopened = asyncio.run(workflow.open_session(session.token))
    stored = reopened.form_data.to_storage()
    assert stored["personal"] == step_payloads["personal"]
    assert "middle_name" not in stored["personal"]
    assert "address" not in stored


def test_w4_amounts_keep_their_json_types(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    for key in ("language", "identity", "personal", "address", "emergency_contact"):
        asyncio.run(workflow.submit_step(session.token, key, step_payloads[key]))
    asyncio.run(workflow.attach_document(session.token, b"\xff\xd8\xff", "license.jpg", "image/jpeg", "drivers_license"))
    asyncio.run(workflow.submit_step(session.token, "documents", {}))
    asyncio.run(workflow.submit_step(session.token, "i9", step_payloads["i9"]))

    sent = {"filing_status": "single", "dependents_amount": 2000, "extra_withholding": 25.5}
    asyncio.run(workflow.submit_step(session.token, "w4", sent))

    reopened = asyncio.run(workflow.open_session(session.token))
    assert reopened.form_data.section("w4") == sent
    assert isinstance(reopened.form_data.section("w4")["dependents_amount"], int)


def test_cannot_jump_past_incomplete_steps(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    with pytest.raises(IllegalTransition, match="before completing 'language'"):
        asyncio.run(workflow.go_to_step(session.token, "w4"))
    with pytest.raises(IllegalTransition):
        asyncio.run(workflow.submit_step(session.token, "address", step_payloads["address"]))

    asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))
    moved = asyncio.run(workflow.go_to_step(session.token, "identity"))
    assert moved.current_step == "identity"
    back = asyncio.run(workflow.go_to_step(session.token, "language"))
    assert back.current_step == "language"


def test_unknown_step_is_a_validation_error(workflow, walk_in_request):
    session = _create(workflow, walk_in_request)
    with pytest.raises(ValidationFailed) as exc:
        asyncio.run(workflow.submit_step(session.token, "favorite_snacks", {}))
    assert "step" in exc.value.errors


def test_only_optional_steps_can_be_skipped(workflow, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    for key in ("language", "identity", "personal", "address"):
        asyncio.run(workflow.submit_step(session.token, key, step_payloads[key]))

    with pytest.raises(IllegalTransition, match="required"):
        asyncio.run(workflow.skip_step(session.token, "i9"))

    skipped = asyncio.run(workflow.skip_step(session.token, "emergency_contact"))
    assert skipped.step_status["emergency_contact"] == "completed"
    assert "emergency_contact" in skipped.skipped_steps
    assert skipped.current_step == "documents"


def test_documents_step_requires_identity_document(workflow, documents, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    for key in ("language", "identity", "personal", "address"):
        asyncio.run(workflow.submit_step(session.token, key, step_payloads[key]))
    asyncio.run(workflow.skip_step(session.token, "emergency_contact"))

    asyncio.run(workflow.attach_document(session.token, b"%PDF", "lease.pdf", "application/pdf", "other"))
    with pytest.raises(StepValidationFailed) as exc:
        asyncio.run(workflow.submit_step(session.token, "documents", {}))
    assert "documents" in exc.value.errors

    asyncio.run(workflow.attach_document(session.token, b"\xff\xd8", "passport.jpg", "image/jpeg", "passport"))
    done = asyncio.run(workflow.submit_step(session.token, "documents", {}))
    assert done.step_status["documents"] == "completed"
    assert len(done.documents) == 2
    assert documents.discarded == []


def test_signature_values_must_be_text(workflow, walk_in_request):
    session = _create(workflow, walk_in_request)
    stored = workflow.store.sessions[session.id]
    for key in stored.step_status:
        if key not in ("signature", "review"):
            stored.step_status[key] = "completed"

    with pytest.raises(StepValidationFailed) as exc:
        asyncio.run(workflow.submit_step(session.token, "signature", {"employee": 42}))
    assert exc.value.errors == {"employee": "Signature must be text"}


def test_expired_token_marks_session_expired_then_reads_as_invalid(workflow, store, clock, walk_in_request):
    session = _create(workflow, walk_in_request)

    clock.advance(hours=120)
    assert asyncio.run(workflow.open_session(session.token)).id == session.id

    clock.advance(seconds=1)
    with pytest.raises(TokenExpired):
        asyncio.run(workflow.open_session(session.token))
    assert store.sessions[session.id].status == SessionStatus.EXPIRED
    assert store.sessions[session.id].review_history[-1].action == "expired"

    with pytest.raises(TokenInvalid) as exc:
        asyncio.run(workflow.open_session(session.token))
    assert not isinstance(exc.value, TokenExpired)


def test_emailed_offer_link_expires_after_three_days(workflow, store, settings, clock):
    subject = CandidateSubject(
        first_name="Maria",
        last_name="Lopez",
        email="maria.lopez@example.com",
        position="Night Auditor",
        department="Front Office",
        pay_rate=Decimal("17.00"),
    )
    session = asyncio.run(workflow.issue_session(
        organization_id=ORG_ID,
        subject=subject,
        policy=ExpiryPolicy.for_offer(settings),
        created_by=MANAGER_ID,
    ))
    assert session.token_kind == TokenKind.BEARER
    assert session.expires_at == clock() + timedelta(hours=72)

    clock.advance(hours=73)
    with pytest.raises(TokenInvalid):
        asyncio.run(workflow.open_session(session.token))
    assert store.sessions[session.id].status == SessionStatus.EXPIRED


def test_malformed_and_unknown_tokens_are_invalid(workflow):
    with pytest.raises(TokenInvalid):
        asyncio.run(workflow.open_session("not a token!"))
    with pytest.raises(TokenInvalid):
        asyncio.run(workflow.open_session("ZZZZZZ"))


def test_new_session_supersedes_open_session_for_same_candidate(workflow, store, walk_in_request):
    first = _create(workflow, walk_in_request)
    second = _create(workflow, walk_in_request)

    assert first.token != second.token
    assert store.sessions[first.id].status == SessionStatus.EXPIRED
    assert store.sessions[first.id].review_history[-1].action == "superseded"
    assert store.sessions[second.id].status == SessionStatus.PENDING


def test_reissue_carries_answers_forward(workflow, store, walk_in_request, step_payloads):
    original = _create(workflow, walk_in_request)
    for key in ("language", "identity", "personal"):
        asyncio.run(workflow.submit_step(original.token, key, step_payloads[key]))

    fresh = asyncio.run(workflow.reissue(original.id, ORG_ID, MANAGER_ID, ActorRole.MANAGER))

    assert fresh.id != original.id
    assert fresh.token != original.token
    assert fresh.status == SessionStatus.PENDING
    assert fresh.form_data.section("personal") == step_payloads["personal"]
    assert store.sessions[original.id].status == SessionStatus.EXPIRED
    assert store.sessions[original.id].review_history[-1].action == "reissued"


def test_reissue_keeps_outstanding_edit_requests(
    workflow, pipeline, store, relay, manager, walk_in_request, fill_all_steps
):
    original = _create(workflow, walk_in_request)
    asyncio.run(fill_all_steps(original.token))
    asyncio.run(workflow.submit(original.token))
    request = EditRequest(
        section="address",
        field="zip_code",
        current_value="77550",
        requested_change="Use the mailing ZIP",
        reason="ZIP does not match the lease",
    )
    asyncio.run(pipeline.review(original.id, manager, WorkflowAction.REQUEST_CHANGES, edit_requests=[request]))

    fresh = asyncio.run(workflow.reissue(original.id, ORG_ID, MANAGER_ID, ActorRole.MANAGER))
    assert fresh.status == SessionStatus.REQUIRES_CHANGES
    assert [r.field for r in fresh.edit_requests] == ["zip_code"]
    assert fresh.current_step == "address"
    assert fresh.step_status["personal"] == "completed"
    assert store.sessions[original.id].status == SessionStatus.EXPIRED

    new_address = {"street": "PO Box 88", "city": "Galveston", "state": "TX", "zip_code": "77553"}
    asyncio.run(workflow.submit_step(fresh.token, "address", new_address))
    resubmitted = asyncio.run(workflow.submit(fresh.token))

    assert resubmitted.status == SessionStatus.SUBMITTED
    assert resubmitted.review_history[-1].action == "resubmit"
    assert relay.sent[-1][1] == NotificationKind.RESUBMISSION


def test_reissue_refuses_submitted_session(workflow, make_session):
    session = make_session(status=SessionStatus.SUBMITTED)
    with pytest.raises(IllegalTransition):
        asyncio.run(workflow.reissue(session.id, ORG_ID, MANAGER_ID, ActorRole.MANAGER))


def test_cancel_expires_open_session(workflow, store, make_session):
    session = make_session(status=SessionStatus.IN_PROGRESS)
    cancelled = asyncio.run(workflow.cancel(session.id, ORG_ID, MANAGER_ID, ActorRole.MANAGER, "No-show"))

    assert cancelled.status == SessionStatus.EXPIRED
    event = cancelled.review_history[-1]
    assert event.action == "cancelled"
    assert event.notes == "No-show"
    assert event.actor_role == "manager"


def test_write_retries_after_conflict(workflow, store, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    store.forced_conflicts = 1
    store.save_calls = 0

    updated = asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))
    assert updated.step_status["language"] == "completed"
    assert store.save_calls == 2


def test_write_gives_up_after_repeated_conflicts(workflow, store, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    store.forced_conflicts = 5

    with pytest.raises(Conflict):
        asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))
    assert store.sessions[session.id].step_status["language"] == "pending"


def test_concurrent_step_writes_both_land(workflow, store, walk_in_request, step_payloads):
    session = _create(workflow, walk_in_request)
    asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))

    async def _race():
        return await asyncio.gather(
            workflow.submit_step(session.token, "identity", step_payloads["identity"]),
            workflow.attach_document(session.token, b"\xff\xd8", "id.jpg", "image/jpeg", "state_id"),
        )

    asyncio.run(_race())
    stored = store.sessions[session.id]
    assert stored.step_status["identity"] == "completed"
    assert len(stored.documents) == 1


def test_failed_notification_does_not_undo_submission(store, broken_relay, settings, documents, clock,
                                                      walk_in_request, step_payloads):
    workflow = OnboardingWorkflow(store, broken_relay, settings, documents=documents, clock=clock)
    session = asyncio.run(workflow.create_walk_in(ORG_ID, MANAGER_ID, walk_in_request))
    assert store.sessions[session.id].status == SessionStatus.PENDING

    updated = asyncio.run(workflow.submit_step(session.token, "language", step_payloads["language"]))
    assert updated.status == SessionStatus.IN_PROGRESS


def test_active_walk_in_sessions_excludes_expired(workflow, clock, walk_in_request):
    first = _create(workflow, walk_in_request)
    other = WalkInSessionCreate(**dict(walk_in_request.model_dump(), email="jamal.reed@example.com"))
    clock.advance(hours=100)
    second = _create(workflow, other)
    clock.advance(hours=30)

    active = asyncio.run(workflow.active_walk_in_sessions(ORG_ID))
    assert [s.id for s in active] == [second.id]
    assert first.id not in [s.id for s in active]
