"""
Module: gacp_engines.business_rules
Responsibility:
    Cross-cutting rules checked after the guard and payment gate pass:
    audit only after an approved review, the rejection limit, the single
    approval, the optional audit-round cap and duplicate milestone
    payments.  Also the admission rules for a new payment request.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - At most one completed payment per (application, milestone, round);
      a violation is flagged ``duplicate_payment`` so the engine reports
      DUPLICATE_PAYMENT rather than a generic rule violation.
    - Rules run against the prospective snapshot (decision records from
      the transition context already attached).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from gacp_engines.audit_escalation import AuditEscalationPolicy
from gacp_engines.fees import PaymentGate
from gacp_engines.rejection import RejectionOutcome, RejectionPolicy
from gacp_kernel.domain.application import Application, ReviewStatus
from gacp_kernel.domain.outcomes import RuleCode
from gacp_kernel.domain.states import PaymentMilestone, WorkflowState
from gacp_kernel.domain.workflow import RecordKind, StateCatalog, TransitionSpec

_AUDIT_ENTRY_STATES = frozenset({
    WorkflowState.PAYMENT_PENDING_AUDIT,
    WorkflowState.AUDITING,
})
_EXTRA_ROUND_STATES = frozenset({
    WorkflowState.RE_AUDITING,
    WorkflowState.FIELD_AUDITING,
})
_RESUBMISSION_TARGETS = frozenset({
    WorkflowState.REVIEWING,
    WorkflowState.PAYMENT_PENDING_RESUBMISSION,
})
_AUDIT_FEES = frozenset({
    PaymentMilestone.AUDIT,
    PaymentMilestone.AUDIT_FAIL,
    PaymentMilestone.FIELD_AUDIT,
})


@dataclass(frozen=True)
class RuleViolation:
    rule: RuleCode
    reason: str
    milestone: PaymentMilestone | None = None
    duplicate_payment: bool = False


class BusinessRules:

    def __init__(
        self,
        *,
        states: StateCatalog,
        payment_gate: PaymentGate,
        rejection_policy: RejectionPolicy,
        audit_policy: AuditEscalationPolicy,
    ):
        self._states = states
        self._gate = payment_gate
        self._rejections = rejection_policy
        self._audits = audit_policy

    def check_transition(
        self,
        current: Application,
        prospective: Application,
        spec: TransitionSpec,
    ) -> RuleViolation | None:
        """First violated rule for committing ``spec``, or None."""
        to_state = spec.to_state

        if to_state in _AUDIT_ENTRY_STATES:
            review = prospective.last_review
            if review is None or review.status != ReviewStatus.APPROVED:
                return RuleViolation(
                    RuleCode.REVIEW_NOT_APPROVED,
                    "Audit cannot start without an approved review on record",
                )

        if spec.from_state == WorkflowState.REVIEWING and to_state == WorkflowState.REJECTED:
            outcome = self._rejections.classify(count_before=current.rejection_count)
            if outcome == RejectionOutcome.MAX_REJECTIONS_REACHED:
                return RuleViolation(
                    RuleCode.MAX_REJECTIONS_REACHED,
                    f"Application already rejected {current.rejection_count} times",
                )

        if spec.from_state == WorkflowState.REJECTED and to_state in _RESUBMISSION_TARGETS:
            if current.rejection_count > self._rejections.max_rejections:
                return RuleViolation(
                    RuleCode.MAX_REJECTIONS_REACHED,
                    "Resubmission is not allowed beyond the rejection limit",
                )

        if spec.records == RecordKind.APPROVAL and current.approval is not None:
            return RuleViolation(
                RuleCode.APPROVAL_ALREADY_RECORDED,
                "Final approval has already been recorded",
            )

        if to_state in _EXTRA_ROUND_STATES and self._audits.rounds_exhausted(len(current.audits)):
            return RuleViolation(
                RuleCode.AUDIT_ROUNDS_EXHAUSTED,
                f"Audit round limit of {self._audits.max_audit_rounds} reached",
            )

        requested = self._states.requested_milestone(to_state)
        if requested is not None and self._gate.is_satisfied(requested, prospective):
            return RuleViolation(
                RuleCode.COMPLETED_PAYMENT_EXISTS,
                f"A completed {requested.value} payment already exists",
                milestone=requested,
                duplicate_payment=True,
            )
        return None

    def check_payment_request(
        self,
        application: Application,
        milestone: PaymentMilestone,
        due: frozenset[PaymentMilestone],
        now: datetime,
    ) -> RuleViolation | None:
        if milestone not in due:
            return RuleViolation(
                RuleCode.PAYMENT_NOT_DUE,
                f"No {milestone.value} payment is due in state "
                f"{application.current_state.value}",
                milestone=milestone,
            )
        if milestone in _AUDIT_FEES and not application.has_approved_review:
            return RuleViolation(
                RuleCode.REVIEW_NOT_APPROVED,
                "Audit fees cannot be requested before a review is approved",
                milestone=milestone,
            )
        if self._gate.is_satisfied(milestone, application):
            return RuleViolation(
                RuleCode.COMPLETED_PAYMENT_EXISTS,
                f"A completed {milestone.value} payment already exists",
                milestone=milestone,
                duplicate_payment=True,
            )
        if self._gate.open_request(milestone, application, now) is not None:
            return RuleViolation(
                RuleCode.PAYMENT_ALREADY_REQUESTED,
                f"A {milestone.value} payment request is already pending",
                milestone=milestone,
            )
        return None
