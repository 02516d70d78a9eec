"""
WorkflowEngine.request_payment / confirm_payment.

Payments are same-state commits: a request appends a PENDING record, a
confirmation appends the gateway's resolution.  Gateway outages go through
the payment_gateway_error alternative flow.
"""

from uuid import uuid4

import pytest

from gacp_kernel.domain.application import Actor, PaymentStatus, TransitionType
from gacp_kernel.domain.outcomes import FailureCode, RuleCode
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, WorkflowState
from gacp_kernel.exceptions import WorkflowSystemError
from gacp_services.collaborators import ADMINISTRATORS, actor_recipient


@pytest.fixture
def awaiting_initial(workflow):
    app_id = workflow.new_application().application_id
    workflow.submit(app_id)
    return app_id


class TestRequestPayment:

    def test_opens_pending_request(self, workflow, engine, awaiting_initial, payment_gateway):
        outcome = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)

        assert outcome.success
        assert outcome.payment.status == PaymentStatus.PENDING
        assert outcome.payment.payment_round == 1
        assert outcome.payment.gateway_reference == "PG-00001"
        assert payment_gateway.requests[0].amount == outcome.payment.amount
        assert outcome.application.current_state == WorkflowState.PAYMENT_PENDING_INITIAL
        entry = outcome.record.history_entry
        assert entry.action == "request_payment"
        assert entry.from_state == entry.to_state
        assert entry.metadata["milestone"] == "initial"

    def test_farmer_notified_with_license_flag(self, workflow, engine, notifications):
        app_id = workflow.new_application(herbs=("cannabis",)).application_id
        workflow.submit(app_id)

        engine.request_payment(app_id, PaymentMilestone.INITIAL, workflow.farmer)

        sent = notifications.events("payment_requested", actor_recipient(workflow.farmer.actor_id))
        assert len(sent) == 1
        assert sent[0][2]["amount"] == "10000.00"
        assert sent[0][2]["special_license_required"] is True

    def test_not_due_in_draft(self, workflow, engine):
        app_id = workflow.new_application().application_id

        outcome = engine.request_payment(app_id, PaymentMilestone.INITIAL, workflow.farmer)

        assert outcome.failure.code == FailureCode.BUSINESS_RULE_VIOLATION
        assert outcome.failure.rule == RuleCode.PAYMENT_NOT_DUE

    def test_unknown_milestone_not_due(self, workflow, engine, awaiting_initial, payment_gateway):
        outcome = engine.request_payment(awaiting_initial, "membership", workflow.farmer)

        assert not outcome.success
        assert outcome.failure.code == FailureCode.BUSINESS_RULE_VIOLATION
        assert outcome.failure.rule == RuleCode.PAYMENT_NOT_DUE
        assert not payment_gateway.requests

    def test_second_request_while_pending(self, workflow, engine, awaiting_initial):
        engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)

        outcome = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)

        assert outcome.failure.rule == RuleCode.PAYMENT_ALREADY_REQUESTED

    def test_staff_cannot_pay(self, workflow, engine, awaiting_initial):
        outcome = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.reviewer)
        assert outcome.failure.code == FailureCode.UNAUTHORIZED_ROLE

    def test_other_farmer_cannot_pay(self, engine, awaiting_initial):
        stranger = Actor(uuid4(), ActorRole.FARMER)
        outcome = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, stranger)
        assert outcome.failure.rule == RuleCode.NOT_APPLICANT

    def test_system_may_request(self, workflow, engine, awaiting_initial):
        outcome = engine.request_payment(awaiting_initial, "initial", workflow.system)
        assert outcome.success


class TestConfirmPayment:

    def test_completed_unlocks_review(self, workflow, engine, awaiting_initial):
        requested = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)

        confirmed = engine.confirm_payment(
            awaiting_initial, requested.payment.payment_id, workflow.farmer,
        )

        assert confirmed.success
        assert confirmed.payment.status == PaymentStatus.COMPLETED
        assert confirmed.record.history_entry.action == "payment_completed"
        assert engine.payment_gate.is_satisfied(PaymentMilestone.INITIAL, confirmed.application)
        assert workflow.move(awaiting_initial, WorkflowState.REVIEWING).success

    def test_still_pending_changes_nothing(
        self, workflow, engine, awaiting_initial, payment_gateway,
    ):
        requested = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)
        payment_gateway.next_status = PaymentStatus.PENDING

        outcome = engine.confirm_payment(
            awaiting_initial, requested.payment.payment_id, workflow.farmer,
        )

        assert outcome.success
        assert outcome.record is None
        assert outcome.application.version == requested.application.version

    def test_failed_payment_can_be_retried(
        self, workflow, engine, awaiting_initial, payment_gateway,
    ):
        first = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)
        payment_gateway.statuses[first.payment.payment_id] = PaymentStatus.FAILED

        failed = engine.confirm_payment(awaiting_initial, first.payment.payment_id, workflow.farmer)
        assert failed.payment.status == PaymentStatus.FAILED
        assert failed.record.history_entry.action == "payment_failed"

        retry = workflow.pay(awaiting_initial, PaymentMilestone.INITIAL)
        assert retry.payment.payment_id != first.payment.payment_id

    def test_already_resolved(self, workflow, engine, awaiting_initial):
        paid = workflow.pay(awaiting_initial, PaymentMilestone.INITIAL)

        outcome = engine.confirm_payment(awaiting_initial, paid.payment.payment_id, workflow.farmer)

        assert outcome.failure.rule == RuleCode.PAYMENT_ALREADY_RESOLVED

    def test_unknown_payment(self, workflow, engine, awaiting_initial):
        outcome = engine.confirm_payment(awaiting_initial, uuid4(), workflow.farmer)
        assert outcome.failure.rule == RuleCode.PAYMENT_NOT_FOUND

    def test_resolution_notifies_farmer(self, workflow, engine, awaiting_initial, notifications):
        workflow.pay(awaiting_initial, PaymentMilestone.INITIAL)

        resolved = notifications.events("payment_resolved")
        assert resolved[0][2]["payment_status"] == "completed"


class TestGatewayOutage:

    def test_create_failure_recorded_as_alternative_flow(
        self, workflow, engine, awaiting_initial, payment_gateway, notifications,
    ):
        payment_gateway.fail_create = True

        outcome = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)

        assert not outcome.success
        assert outcome.failure.rule == RuleCode.GATEWAY_UNAVAILABLE
        assert outcome.application.current_state == WorkflowState.PAYMENT_PENDING_INITIAL
        entry = outcome.record.history_entry
        assert entry.transition_type == TransitionType.ALTERNATIVE
        assert entry.action == "payment_gateway_failure"
        assert entry.metadata["operation"] == "create_request"
        assert notifications.events("alternative_flow_applied", ADMINISTRATORS)

    def test_status_check_failure(self, workflow, engine, awaiting_initial, payment_gateway):
        requested = engine.request_payment(awaiting_initial, PaymentMilestone.INITIAL, workflow.farmer)
        payment_gateway.fail_check = True

        outcome = engine.confirm_payment(
            awaiting_initial, requested.payment.payment_id, workflow.farmer,
        )

        assert outcome.failure.rule == RuleCode.GATEWAY_UNAVAILABLE
        latest = outcome.application.latest_payment_record(requested.payment.payment_id)
        assert latest.status == PaymentStatus.PENDING

    def test_outage_without_flow_raises(self, workflow, engine, payment_gateway, notifications):
        app_id = workflow.new_application().application_id
        workflow.move(app_id, WorkflowState.SUBMITTED, workflow.farmer)
        payment_gateway.fail_create = True

        with pytest.raises(WorkflowSystemError) as exc_info:
            engine.request_payment(app_id, PaymentMilestone.INITIAL, workflow.farmer)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert notifications.events("payment_gateway_error", ADMINISTRATORS)
