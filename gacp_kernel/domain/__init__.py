"""
Pure domain layer.

Data transfer objects and vocabularies with NO dependencies on the ORM,
the database, the clock or any I/O.  All domain objects are immutable.
"""

from gacp_kernel.domain.application import (
    Actor,
    Application,
    ApprovalDecision,
    ApprovalRecord,
    AuditRecord,
    AuditResult,
    AuditType,
    CertificateInfo,
    DocumentRef,
    DocumentType,
    PaymentRecord,
    PaymentStatus,
    ReviewRecord,
    ReviewStatus,
    TransitionType,
    WorkflowHistoryEntry,
    format_application_number,
)
from gacp_kernel.domain.clock import (
    Clock,
    DeterministicClock,
    SequentialClock,
    SystemClock,
)
from gacp_kernel.domain.outcomes import (
    FailureCode,
    NextAction,
    PaymentOutcome,
    PaymentRequirement,
    RuleCode,
    TransitionFailure,
    TransitionOutcome,
    TransitionRecord,
    WorkflowStatus,
)
from gacp_kernel.domain.states import (
    ActorRole,
    PaymentMilestone,
    Stage,
    WorkflowState,
)
from gacp_kernel.domain.values import Money
from gacp_kernel.domain.workflow import (
    NOT_FOUND,
    AlternativeFlow,
    FailureTrigger,
    GuardName,
    RecordKind,
    RecoveryKind,
    StateCatalog,
    StateDefinition,
    TransitionSpec,
    TransitionTable,
)

__all__ = [
    "Actor",
    "ActorRole",
    "AlternativeFlow",
    "Application",
    "ApprovalDecision",
    "ApprovalRecord",
    "AuditRecord",
    "AuditResult",
    "AuditType",
    "CertificateInfo",
    "Clock",
    "DeterministicClock",
    "DocumentRef",
    "DocumentType",
    "FailureCode",
    "FailureTrigger",
    "GuardName",
    "Money",
    "NOT_FOUND",
    "NextAction",
    "PaymentMilestone",
    "PaymentOutcome",
    "PaymentRecord",
    "PaymentRequirement",
    "PaymentStatus",
    "RecordKind",
    "RecoveryKind",
    "ReviewRecord",
    "ReviewStatus",
    "RuleCode",
    "SequentialClock",
    "Stage",
    "StateCatalog",
    "StateDefinition",
    "SystemClock",
    "TransitionFailure",
    "TransitionOutcome",
    "TransitionRecord",
    "TransitionSpec",
    "TransitionTable",
    "TransitionType",
    "WorkflowHistoryEntry",
    "WorkflowState",
    "WorkflowStatus",
    "format_application_number",
]
