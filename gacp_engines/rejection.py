"""
Module: gacp_engines.rejection
Responsibility:
    Interprets the application's rejection counter: how a reviewer
    rejection is routed, whether a resubmission is free or must be paid,
    and how the counter changes across a transition.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - The counter increments exactly once per rejection transition
      (``reviewing -> rejected``), never on resubmission.
    - The counter resets only on an approved review (leaving ``reviewing``
      towards audit) or on entering a terminal state.
    - With the default thresholds the first two rejections allow a free
      resubmission, the third requires the 3rd_review fee, and a rejection
      once the counter reached ``max_rejections`` ends in ``rejected_final``.
"""

from __future__ import annotations

from enum import Enum

from gacp_engines.tracer import traced_engine
from gacp_kernel.domain.states import PaymentMilestone, WorkflowState

_REVIEW_APPROVED_TARGETS = frozenset({
    WorkflowState.PAYMENT_PENDING_AUDIT,
    WorkflowState.AUDITING,
})


class RejectionOutcome(str, Enum):
    FREE_RESUBMISSION = "free_resubmission"
    PAID_RESUBMISSION = "paid_resubmission"
    MAX_REJECTIONS_REACHED = "max_rejections_reached"


class RejectionPolicy:
    """Rejection-counter state machine.

    Contract:
        ``free_rejections`` < ``max_rejections``.  Counts are the value
        stored on the application.
    """

    def __init__(self, free_rejections: int = 2, max_rejections: int = 3):
        if not 0 <= free_rejections < max_rejections:
            raise ValueError(
                f"free_rejections ({free_rejections}) must be below "
                f"max_rejections ({max_rejections})"
            )
        self.free_rejections = free_rejections
        self.max_rejections = max_rejections

    @traced_engine("rejection_policy", "1.0", fingerprint_fields=("count_before",))
    def classify(self, *, count_before: int) -> RejectionOutcome:
        """Route a reviewer rejection given the counter before it."""
        if count_before >= self.max_rejections:
            return RejectionOutcome.MAX_REJECTIONS_REACHED
        if count_before < self.free_rejections:
            return RejectionOutcome.FREE_RESUBMISSION
        return RejectionOutcome.PAID_RESUBMISSION

    def max_reached(self, count: int) -> bool:
        return count >= self.max_rejections

    def free_resubmission_allowed(self, count: int) -> bool:
        return 1 <= count <= self.free_rejections

    def paid_resubmission_required(self, count: int) -> bool:
        return self.free_rejections < count <= self.max_rejections

    def resubmission_target(self, count: int) -> WorkflowState | None:
        """State a farmer resubmission leads to, or None past the limit."""
        if self.free_resubmission_allowed(count):
            return WorkflowState.REVIEWING
        if self.paid_resubmission_required(count):
            return WorkflowState.PAYMENT_PENDING_RESUBMISSION
        return None

    def resubmission_milestone(self, count: int) -> PaymentMilestone | None:
        if self.paid_resubmission_required(count):
            return PaymentMilestone.THIRD_REVIEW
        return None

    def count_after(
        self,
        from_state: WorkflowState,
        to_state: WorkflowState,
        count: int,
        terminal_states: frozenset[WorkflowState],
    ) -> int:
        """Counter value once ``from_state -> to_state`` commits."""
        if to_state in terminal_states:
            return 0
        if from_state == WorkflowState.REVIEWING:
            if to_state == WorkflowState.REJECTED:
                return count + 1
            if to_state in _REVIEW_APPROVED_TARGETS:
                return 0
        return count
