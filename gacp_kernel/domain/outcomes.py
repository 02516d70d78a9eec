"""
Workflow outcome types (``gacp_kernel.domain.outcomes``).

Responsibility
--------------
Structured results returned by the workflow engine.  Expected failures
(invalid transition, role mismatch, unmet condition, business-rule
violation, duplicate payment, concurrent modification) are values the
caller renders directly; they are never raised.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from gacp_kernel.domain.application import (
    Application,
    PaymentRecord,
    TransitionType,
    WorkflowHistoryEntry,
)
from gacp_kernel.domain.states import (
    ActorRole,
    PaymentMilestone,
    Stage,
    WorkflowState,
)
from gacp_kernel.domain.values import Money


class FailureCode(str, Enum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNAUTHORIZED_ROLE = "UNAUTHORIZED_ROLE"
    CONDITION_NOT_MET = "CONDITION_NOT_MET"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class RuleCode(str, Enum):
    """Sub-codes carried by BUSINESS_RULE_VIOLATION and CONDITION_NOT_MET."""

    GUARD_FAILED = "GUARD_FAILED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    NOT_APPLICANT = "NOT_APPLICANT"
    REVIEW_NOT_APPROVED = "REVIEW_NOT_APPROVED"
    MAX_REJECTIONS_REACHED = "MAX_REJECTIONS_REACHED"
    APPROVAL_ALREADY_RECORDED = "APPROVAL_ALREADY_RECORDED"
    AUDIT_ROUNDS_EXHAUSTED = "AUDIT_ROUNDS_EXHAUSTED"
    DECISION_RECORD_MISSING = "DECISION_RECORD_MISSING"
    INVALID_DECISION_RECORD = "INVALID_DECISION_RECORD"
    PAYMENT_NOT_DUE = "PAYMENT_NOT_DUE"
    PAYMENT_ALREADY_REQUESTED = "PAYMENT_ALREADY_REQUESTED"
    PAYMENT_ALREADY_RESOLVED = "PAYMENT_ALREADY_RESOLVED"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    COMPLETED_PAYMENT_EXISTS = "COMPLETED_PAYMENT_EXISTS"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"


@dataclass(frozen=True)
class TransitionFailure:
    """Why a transition or payment operation did not commit."""

    code: FailureCode
    reason: str
    from_state: WorkflowState
    to_state: WorkflowState | None = None
    rule: RuleCode | None = None
    guard: str | None = None
    milestone: PaymentMilestone | None = None

    @property
    def retryable(self) -> bool:
        return self.code == FailureCode.CONCURRENT_MODIFICATION


@dataclass(frozen=True)
class TransitionRecord:
    """Description of a committed state change."""

    application_id: UUID
    from_state: WorkflowState
    to_state: WorkflowState
    from_stage: Stage
    to_stage: Stage
    action: str
    transition_type: TransitionType
    history_entry: WorkflowHistoryEntry
    recovery_flow: str | None = None


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of ``WorkflowEngine.transition`` / ``recover``.

    When an alternative flow recovered a failed attempt, ``success`` is
    True, ``record.transition_type`` is ALTERNATIVE and ``recovered_from``
    holds the original failure.
    """

    success: bool
    application: Application
    record: TransitionRecord | None = None
    failure: TransitionFailure | None = None
    recovered_from: TransitionFailure | None = None

    @property
    def state(self) -> WorkflowState:
        return self.application.current_state

    @property
    def recovered(self) -> bool:
        return self.recovered_from is not None

    @classmethod
    def committed(
        cls,
        application: Application,
        record: TransitionRecord,
        recovered_from: TransitionFailure | None = None,
    ) -> TransitionOutcome:
        return cls(
            success=True,
            application=application,
            record=record,
            recovered_from=recovered_from,
        )

    @classmethod
    def failed(cls, application: Application, failure: TransitionFailure) -> TransitionOutcome:
        return cls(success=False, application=application, failure=failure)


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of ``request_payment`` / ``confirm_payment``."""

    success: bool
    application: Application
    payment: PaymentRecord | None = None
    failure: TransitionFailure | None = None
    record: TransitionRecord | None = None


@dataclass(frozen=True)
class PaymentRequirement:
    milestone: PaymentMilestone
    payment_round: int
    amount: Money
    satisfied_already: bool
    special_license_required: bool = False
    blocking_reason: str | None = None


@dataclass(frozen=True)
class NextAction:
    """A transition currently available from the application's state.

    ``requires_record`` marks decision edges whose guard is evaluated
    against the review/audit/approval the actor will attach.
    """

    to_state: WorkflowState
    action: str
    required_role: ActorRole
    description: str = ""
    payment_milestone: PaymentMilestone | None = None
    payment_satisfied: bool | None = None
    requires_record: str | None = None


@dataclass(frozen=True)
class WorkflowStatus:
    application_id: UUID
    state: WorkflowState
    stage: Stage
    payment_required: PaymentRequirement | None
    next_steps: tuple[str, ...]
    progress_percentage: int
    rejection_count: int = 0
    terminal: bool = False
