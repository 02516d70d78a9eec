"""
Module: gacp_engines.audit_escalation
Responsibility:
    Maps an audit result and its overall score to the next workflow state,
    and an escalation state to the paid round it unlocks.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``fail`` or a score below the fail threshold always escalates to
      ``audit_failed``, even when the auditor marked the audit as passed.
    - ``doubt`` or a score between the thresholds escalates to
      ``audit_doubt``.
    - Only ``pass`` at or above the pass score reaches ``approval_pending``.
    - Re-audit and field-audit rounds use the same evaluation.
"""

from __future__ import annotations

from decimal import Decimal

from gacp_engines.tracer import traced_engine
from gacp_kernel.domain.application import AuditRecord, AuditResult
from gacp_kernel.domain.states import PaymentMilestone, WorkflowState

_ESCALATIONS: dict[WorkflowState, tuple[PaymentMilestone, WorkflowState]] = {
    WorkflowState.AUDIT_FAILED: (PaymentMilestone.AUDIT_FAIL, WorkflowState.RE_AUDITING),
    WorkflowState.AUDIT_DOUBT: (PaymentMilestone.FIELD_AUDIT, WorkflowState.FIELD_AUDITING),
}


class AuditEscalationPolicy:

    def __init__(
        self,
        pass_score: Decimal = Decimal("80"),
        fail_below: Decimal = Decimal("60"),
        max_audit_rounds: int | None = None,
    ):
        if fail_below > pass_score:
            raise ValueError("fail_below must not exceed pass_score")
        self.pass_score = Decimal(pass_score)
        self.fail_below = Decimal(fail_below)
        self.max_audit_rounds = max_audit_rounds

    @traced_engine("audit_escalation", "1.0", fingerprint_fields=("result", "score"))
    def next_state(self, *, result: AuditResult, score: Decimal) -> WorkflowState:
        if result == AuditResult.FAIL or score < self.fail_below:
            return WorkflowState.AUDIT_FAILED
        if result == AuditResult.DOUBT or score < self.pass_score:
            return WorkflowState.AUDIT_DOUBT
        return WorkflowState.APPROVAL_PENDING

    def verdict(self, audit: AuditRecord) -> WorkflowState:
        return self.next_state(result=audit.result, score=audit.overall_score)

    def escalation_milestone(self, state: WorkflowState) -> PaymentMilestone | None:
        entry = _ESCALATIONS.get(state)
        return entry[0] if entry else None

    def next_round_state(self, state: WorkflowState) -> WorkflowState | None:
        entry = _ESCALATIONS.get(state)
        return entry[1] if entry else None

    def rounds_exhausted(self, audits_completed: int) -> bool:
        """True when a cap is configured and no further round may start."""
        return self.max_audit_rounds is not None and audits_completed >= self.max_audit_rounds
