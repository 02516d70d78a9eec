"""
End-to-end certification scenarios through WorkflowEngine.

A: happy path to certificate_issued.
B: triple rejection, paid third review, fourth rejection closes.
C: inconclusive audit escalates to a field audit.
D: a second completed payment for the same milestone is refused.
E: an actor without the required role is refused and admins are told.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from gacp_kernel.domain.application import Actor, PaymentStatus, TransitionType
from gacp_kernel.domain.outcomes import FailureCode, RuleCode
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, Stage, WorkflowState
from gacp_kernel.exceptions import DuplicatePaymentError
from gacp_kernel.services.repository import ApplicationChanges
from gacp_services.collaborators import ADMINISTRATORS


def _assert_history_chain(application):
    history = application.workflow_history
    assert [e.sequence for e in history] == list(range(1, len(history) + 1))
    for previous, entry in zip(history, history[1:]):
        assert entry.from_state == previous.to_state
    assert history[-1].to_state == application.current_state


class TestHappyPath:

    def test_reaches_certificate_issued(self, workflow, engine, certificate_issuer, clock):
        app = workflow.new_application()
        workflow.to_approval_pending(app.application_id)
        workflow.approve(app.application_id)

        outcome = workflow.move(app.application_id, WorkflowState.CERTIFICATE_ISSUED)

        final = outcome.application
        assert final.current_state == WorkflowState.CERTIFICATE_ISSUED
        assert outcome.record.to_stage == Stage.COMPLETED
        assert certificate_issuer.generated == [app.application_id]
        assert final.certificate.certificate_id == f"CERT-{app.application_number}"
        assert final.certificate.issued_at == clock.now()
        assert final.certificate.expires_at == datetime(2027, 3, 1, 9, 0, tzinfo=timezone.utc)
        _assert_history_chain(final)

    def test_fees_charged(self, workflow, repository):
        app = workflow.new_application()
        workflow.to_approval_pending(app.application_id)

        loaded = repository.load(app.application_id)
        assert loaded.current_state == WorkflowState.APPROVAL_PENDING
        completed = {
            p.milestone: p.amount.amount for p in loaded.payments
            if p.status == PaymentStatus.COMPLETED
        }
        assert completed == {
            PaymentMilestone.INITIAL: Decimal("5000.00"),
            PaymentMilestone.AUDIT: Decimal("25000.00"),
        }

    def test_every_commit_appends_one_history_entry(self, workflow, engine):
        app = workflow.new_application()
        assert app.workflow_history == ()

        first = workflow.move(app.application_id, WorkflowState.SUBMITTED, workflow.farmer)
        second = workflow.move(app.application_id, WorkflowState.PAYMENT_PENDING_INITIAL)

        assert len(first.application.workflow_history) == 1
        assert len(second.application.workflow_history) == 2
        assert second.application.version == first.application.version + 1
        assert first.application.submitted_at is not None


class TestTripleRejection:

    def test_third_rejection_requires_fee_and_fourth_closes(self, workflow, engine):
        app_id = workflow.new_application().application_id
        workflow.to_reviewing(app_id)

        for expected_count in (1, 2):
            rejected = workflow.reject(app_id)
            assert rejected.success
            assert rejected.application.rejection_count == expected_count
            workflow.move(app_id, WorkflowState.REVIEWING, workflow.farmer)

        third = workflow.reject(app_id)
        assert third.application.rejection_count == 3

        free = engine.transition(app_id, WorkflowState.REVIEWING, workflow.farmer)
        assert not free.success
        assert free.failure.code == FailureCode.CONDITION_NOT_MET
        assert free.failure.guard == "free_resubmission_allowed"

        workflow.move(app_id, WorkflowState.PAYMENT_PENDING_RESUBMISSION, workflow.farmer)
        paid = workflow.pay(app_id, PaymentMilestone.THIRD_REVIEW)
        assert paid.payment.amount.amount == Decimal("5000.00")
        workflow.move(app_id, WorkflowState.REVIEWING)

        fourth = workflow.reject(app_id)

        assert fourth.success
        assert fourth.recovered
        assert fourth.recovered_from.rule == RuleCode.MAX_REJECTIONS_REACHED
        assert fourth.state == WorkflowState.REJECTED_FINAL
        assert fourth.record.transition_type == TransitionType.ALTERNATIVE
        assert fourth.record.recovery_flow == "max_rejections_reached"
        assert fourth.application.rejection_count == 0
        assert len(fourth.application.reviews) == 4
        entry = fourth.record.history_entry
        assert entry.actor_role == ActorRole.SYSTEM
        assert entry.metadata["alternative_flow"] == "max_rejections_reached"
        _assert_history_chain(fourth.application)

    def test_approved_review_resets_counter(self, workflow):
        app_id = workflow.new_application().application_id
        workflow.to_reviewing(app_id)
        workflow.reject(app_id)
        workflow.move(app_id, WorkflowState.REVIEWING, workflow.farmer)

        approved = workflow.approve_review(app_id)
        assert approved.application.rejection_count == 0


class TestAuditDoubt:

    def test_field_audit_path(self, workflow, engine):
        app_id = workflow.new_application().application_id
        workflow.to_auditing(app_id)

        doubt = workflow.record_audit(app_id, WorkflowState.AUDIT_DOUBT, "doubt", 65)
        assert doubt.success
        assert doubt.application.last_audit.overall_score == Decimal("65.00")

        requirement = engine.get_status(app_id).payment_required
        assert requirement.milestone == PaymentMilestone.FIELD_AUDIT
        assert requirement.amount.amount == Decimal("25000.00")
        assert requirement.payment_round == 2

        workflow.pay(app_id, PaymentMilestone.FIELD_AUDIT)
        workflow.move(app_id, WorkflowState.FIELD_AUDITING)
        passed = workflow.record_audit(app_id, WorkflowState.APPROVAL_PENDING, "pass", 90)

        assert passed.success
        assert passed.state == WorkflowState.APPROVAL_PENDING
        assert [a.audit_round for a in passed.application.audits] == [1, 2]

    def test_failed_audit_needs_re_audit_fee(self, workflow, engine):
        app_id = workflow.new_application().application_id
        workflow.to_auditing(app_id)
        workflow.record_audit(app_id, WorkflowState.AUDIT_FAILED, "fail", 50)

        unpaid = engine.transition(app_id, WorkflowState.RE_AUDITING, workflow.system)
        assert unpaid.failure.rule == RuleCode.PAYMENT_REQUIRED
        assert unpaid.failure.milestone == PaymentMilestone.AUDIT_FAIL

        workflow.pay(app_id, PaymentMilestone.AUDIT_FAIL)
        workflow.move(app_id, WorkflowState.RE_AUDITING)
        again = workflow.record_audit(app_id, WorkflowState.AUDIT_FAILED, "fail", 40)

        assert again.success
        status = engine.get_status(app_id)
        assert status.payment_required.milestone == PaymentMilestone.AUDIT_FAIL
        assert status.payment_required.payment_round == 3

    def test_verdict_must_match_scores(self, workflow, engine):
        app_id = workflow.new_application().application_id
        workflow.to_auditing(app_id)

        outcome = workflow.record_audit(app_id, WorkflowState.APPROVAL_PENDING, "pass", 70)

        assert not outcome.success
        assert outcome.failure.guard == "audit_passed"
        assert outcome.application.audits == ()


class TestDuplicatePayment:

    def test_second_request_for_paid_milestone_refused(self, workflow, engine):
        app_id = workflow.new_application().application_id
        workflow.submit(app_id)
        workflow.pay(app_id, PaymentMilestone.INITIAL)

        again = engine.request_payment(app_id, PaymentMilestone.INITIAL, workflow.farmer)

        assert not again.success
        assert again.failure.code == FailureCode.DUPLICATE_PAYMENT
        assert again.failure.rule == RuleCode.COMPLETED_PAYMENT_EXISTS

    def test_repository_refuses_second_completed_record(self, workflow, repository):
        app_id = workflow.new_application().application_id
        workflow.submit(app_id)
        paid = workflow.pay(app_id, PaymentMilestone.INITIAL)
        current = repository.load(app_id)

        duplicate = replace(paid.payment, payment_id=uuid4())
        entry = replace(
            current.workflow_history[-1],
            sequence=len(current.workflow_history) + 1,
            action="payment_completed",
        )
        with pytest.raises(DuplicatePaymentError) as exc_info:
            repository.commit(
                app_id,
                current.current_state,
                current.version,
                entry,
                ApplicationChanges(
                    new_state=current.current_state,
                    rejection_count=current.rejection_count,
                    new_payments=(duplicate,),
                ),
            )
        assert exc_info.value.milestone == "initial"
        assert len(repository.load(app_id).payments) == len(current.payments)


class TestUnauthorizedActor:

    def test_reviewer_cannot_submit(self, workflow, engine, reviewer, notifications):
        app = workflow.new_application()

        outcome = engine.transition(app.application_id, WorkflowState.SUBMITTED, reviewer)

        assert not outcome.success
        assert outcome.failure.code == FailureCode.UNAUTHORIZED_ROLE
        assert outcome.state == WorkflowState.DRAFT
        assert engine.get_status(app.application_id).state == WorkflowState.DRAFT
        alerts = notifications.events("unauthorized_transition_attempt", ADMINISTRATORS)
        assert len(alerts) == 1
        assert alerts[0][2]["actor_role"] == "reviewer"

    def test_other_farmer_cannot_submit(self, workflow, engine):
        app = workflow.new_application()
        stranger = Actor(uuid4(), ActorRole.FARMER)

        outcome = engine.transition(app.application_id, WorkflowState.SUBMITTED, stranger)

        assert outcome.failure.code == FailureCode.UNAUTHORIZED_ROLE
        assert outcome.failure.rule == RuleCode.NOT_APPLICANT
