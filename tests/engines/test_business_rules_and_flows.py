"""
BusinessRules checks and AlternativeFlowResolver matching.
"""

from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from gacp_engines.alternative_flows import AlternativeFlowResolver
from gacp_engines.audit_escalation import AuditEscalationPolicy
from gacp_engines.business_rules import BusinessRules
from gacp_engines.fees import HerbCatalog, PaymentGate
from gacp_engines.rejection import RejectionPolicy
from gacp_kernel.domain.application import (
    Application,
    ApprovalDecision,
    ApprovalRecord,
    AuditRecord,
    PaymentRecord,
    PaymentStatus,
    ReviewRecord,
)
from gacp_kernel.domain.outcomes import RuleCode
from gacp_kernel.domain.states import PaymentMilestone, WorkflowState
from gacp_kernel.domain.values import Money
from gacp_kernel.domain.workflow import (
    AlternativeFlow,
    FailureTrigger,
    RecoveryKind,
)
from tests.conftest import review_payload

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def gate(workflow_config):
    return PaymentGate(workflow_config.fee_rules, HerbCatalog(workflow_config.herbs))


def _rules(workflow_config, gate, max_audit_rounds=None):
    return BusinessRules(
        states=workflow_config.states,
        payment_gate=gate,
        rejection_policy=RejectionPolicy(),
        audit_policy=AuditEscalationPolicy(max_audit_rounds=max_audit_rounds),
    )


@pytest.fixture
def rules(workflow_config, gate):
    return _rules(workflow_config, gate)


def _application(state, **overrides):
    values = dict(
        application_id=uuid4(),
        application_number="GACP-2024-000001",
        farmer_id=uuid4(),
        current_state=state,
    )
    values.update(overrides)
    return Application(**values)


def _review(status):
    payload = review_payload(status, 85 if status == "approved" else 40)
    return ReviewRecord.create(
        review_round=1,
        reviewer_id=uuid4(),
        status=payload["status"],
        checklist=payload["checklist"],
        reviewed_at=NOW,
    )


def _failed_audit():
    return AuditRecord.create(
        audit_round=1,
        auditor_id=uuid4(),
        audit_type="onsite",
        result="fail",
        checklist={
            "gmp_compliance": 40,
            "facility_standards": 40,
            "documentation_accuracy": 40,
            "staff_competency": 40,
            "quality_control": 40,
        },
        audited_at=NOW,
    )


def _completed(milestone, payment_round=1):
    return PaymentRecord(
        payment_id=uuid4(),
        milestone=milestone,
        payment_round=payment_round,
        amount=Money.of("5000"),
        status=PaymentStatus.COMPLETED,
        created_at=NOW,
    )


def _spec(workflow_config, from_state, to_state):
    spec = workflow_config.table.lookup(from_state, to_state)
    assert spec, f"{from_state} -> {to_state} missing from table"
    return spec


class TestTransitionRules:

    def test_audit_requires_approved_review(self, workflow_config, rules):
        app = _application(WorkflowState.PAYMENT_PENDING_AUDIT, reviews=(_review("rejected"),))
        spec = _spec(workflow_config, WorkflowState.PAYMENT_PENDING_AUDIT, WorkflowState.AUDITING)
        violation = rules.check_transition(app, app, spec)
        assert violation.rule == RuleCode.REVIEW_NOT_APPROVED

    def test_fourth_rejection_blocked(self, workflow_config, rules):
        app = _application(WorkflowState.REVIEWING, rejection_count=3)
        view = replace(app, reviews=(_review("rejected"),))
        spec = _spec(workflow_config, WorkflowState.REVIEWING, WorkflowState.REJECTED)
        violation = rules.check_transition(app, view, spec)
        assert violation.rule == RuleCode.MAX_REJECTIONS_REACHED

    def test_third_rejection_allowed(self, workflow_config, rules):
        app = _application(WorkflowState.REVIEWING, rejection_count=2)
        view = replace(app, reviews=(_review("rejected"),))
        spec = _spec(workflow_config, WorkflowState.REVIEWING, WorkflowState.REJECTED)
        assert rules.check_transition(app, view, spec) is None

    def test_approval_recorded_once(self, workflow_config, rules):
        approval = ApprovalRecord(uuid4(), ApprovalDecision.APPROVED, NOW)
        app = _application(WorkflowState.APPROVAL_PENDING, approval=approval)
        spec = _spec(workflow_config, WorkflowState.APPROVAL_PENDING, WorkflowState.APPROVED)
        assert rules.check_transition(app, app, spec).rule == RuleCode.APPROVAL_ALREADY_RECORDED

    def test_entering_paid_payment_state_is_duplicate(self, workflow_config, rules):
        app = _application(
            WorkflowState.SUBMITTED, payments=(_completed(PaymentMilestone.INITIAL),),
        )
        spec = _spec(workflow_config, WorkflowState.SUBMITTED, WorkflowState.PAYMENT_PENDING_INITIAL)
        violation = rules.check_transition(app, app, spec)
        assert violation.rule == RuleCode.COMPLETED_PAYMENT_EXISTS
        assert violation.duplicate_payment

    def test_audit_round_cap(self, workflow_config, gate):
        capped = _rules(workflow_config, gate, max_audit_rounds=1)
        app = _application(
            WorkflowState.AUDIT_FAILED,
            reviews=(_review("approved"),),
            audits=(_failed_audit(),),
            payments=(_completed(PaymentMilestone.AUDIT_FAIL, payment_round=2),),
        )
        spec = _spec(workflow_config, WorkflowState.AUDIT_FAILED, WorkflowState.RE_AUDITING)
        assert capped.check_transition(app, app, spec).rule == RuleCode.AUDIT_ROUNDS_EXHAUSTED


class TestPaymentRequestRules:

    def test_milestone_not_due(self, rules):
        app = _application(WorkflowState.REVIEWING)
        violation = rules.check_payment_request(
            app, PaymentMilestone.AUDIT, frozenset(), NOW,
        )
        assert violation.rule == RuleCode.PAYMENT_NOT_DUE

    def test_audit_fee_before_review_approval(self, rules):
        app = _application(WorkflowState.PAYMENT_PENDING_AUDIT)
        violation = rules.check_payment_request(
            app, PaymentMilestone.AUDIT, frozenset({PaymentMilestone.AUDIT}), NOW,
        )
        assert violation.rule == RuleCode.REVIEW_NOT_APPROVED

    def test_already_paid(self, rules):
        app = _application(
            WorkflowState.PAYMENT_PENDING_INITIAL,
            payments=(_completed(PaymentMilestone.INITIAL),),
        )
        violation = rules.check_payment_request(
            app, PaymentMilestone.INITIAL, frozenset({PaymentMilestone.INITIAL}), NOW,
        )
        assert violation.rule == RuleCode.COMPLETED_PAYMENT_EXISTS

    def test_pending_request_blocks_another(self, rules):
        pending = replace(_completed(PaymentMilestone.INITIAL), status=PaymentStatus.PENDING)
        app = _application(WorkflowState.PAYMENT_PENDING_INITIAL, payments=(pending,))
        violation = rules.check_payment_request(
            app, PaymentMilestone.INITIAL, frozenset({PaymentMilestone.INITIAL}), NOW,
        )
        assert violation.rule == RuleCode.PAYMENT_ALREADY_REQUESTED

    def test_failed_payment_can_be_retried(self, rules):
        failed = replace(_completed(PaymentMilestone.INITIAL), status=PaymentStatus.FAILED)
        app = _application(WorkflowState.PAYMENT_PENDING_INITIAL, payments=(failed,))
        assert rules.check_payment_request(
            app, PaymentMilestone.INITIAL, frozenset({PaymentMilestone.INITIAL}), NOW,
        ) is None


class TestAlternativeFlowResolver:

    @pytest.fixture
    def resolver(self, workflow_config):
        return AlternativeFlowResolver(
            workflow_config.alternative_flows, workflow_config.states.terminal_states,
        )

    def test_documents_incomplete_returns_to_draft(self, resolver):
        action = resolver.resolve(WorkflowState.SUBMITTED, FailureTrigger.DOCUMENTS_INCOMPLETE)
        assert action.target_state == WorkflowState.DRAFT
        assert not action.same_state

    def test_same_state_retry_targets_current_state(self, resolver):
        action = resolver.resolve(WorkflowState.AUDIT_DOUBT, FailureTrigger.PAYMENT_GATEWAY_ERROR)
        assert action.same_state
        assert action.target_state == WorkflowState.AUDIT_DOUBT
        assert action.flow_name == "payment_gateway_failure"

    def test_staff_flow_chosen_by_state(self, resolver):
        action = resolver.resolve(WorkflowState.RE_AUDITING, FailureTrigger.NO_STAFF_AVAILABLE)
        assert action.flow_name == "auditor_unavailable"

    def test_wildcard_flow_skips_terminal_states(self, resolver):
        assert resolver.resolve(WorkflowState.REVIEWING, FailureTrigger.SYSTEM_DOWNTIME) is not None
        assert resolver.resolve(WorkflowState.CANCELLED, FailureTrigger.SYSTEM_DOWNTIME) is None

    def test_no_match(self, resolver):
        assert resolver.resolve(WorkflowState.DRAFT, FailureTrigger.REMOTE_AUDIT_IMPOSSIBLE) is None

    def test_first_declared_flow_wins(self):
        flows = (
            AlternativeFlow("first", FailureTrigger.SYSTEM_DOWNTIME, RecoveryKind.RETRY_SAME_STATE),
            AlternativeFlow(
                "second",
                FailureTrigger.SYSTEM_DOWNTIME,
                RecoveryKind.FORCE_STATE,
                frozenset({WorkflowState.REVIEWING}),
                WorkflowState.CANCELLED,
            ),
        )
        resolver = AlternativeFlowResolver(flows, frozenset({WorkflowState.CANCELLED}))
        assert resolver.resolve(WorkflowState.REVIEWING, FailureTrigger.SYSTEM_DOWNTIME).flow_name == "first"
