"""
Canonical workflow-table types (``gacp_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects describing the certification state machine: the closed
guard vocabulary, transition specs, the transition table, the state catalog
and alternative-flow definitions.  Instances are produced once by the
configuration compiler and are immutable afterwards.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* ``TransitionTable.lookup`` never raises; a missing edge is the
  ``NOT_FOUND`` sentinel.
* Tables and catalogs are read-only mappings after construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Final, Mapping

from gacp_kernel.domain.states import (
    ActorRole,
    PaymentMilestone,
    Stage,
    WorkflowState,
)


class GuardName(str, Enum):
    """Closed set of guard identifiers usable in the transition table."""

    HAS_REQUIRED_DOCUMENTS = "has_required_documents"
    DOCUMENTS_VALIDATED = "documents_validated"
    DOCUMENTS_INCOMPLETE = "documents_incomplete"
    FARMER_CANCELLED = "farmer_cancelled"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_EXPIRED = "payment_expired"
    REVIEW_APPROVED = "review_approved"
    REVIEW_REJECTED = "review_rejected"
    MAX_REJECTIONS_REACHED = "max_rejections_reached"
    FREE_RESUBMISSION_ALLOWED = "free_resubmission_allowed"
    PAID_RESUBMISSION_REQUIRED = "paid_resubmission_required"
    AUDIT_PASSED = "audit_passed"
    AUDIT_FAILED = "audit_failed"
    AUDIT_DOUBTFUL = "audit_doubtful"
    APPROVER_APPROVED = "approver_approved"
    APPROVER_RETURNED = "approver_returned"
    APPROVAL_GRANTED = "approval_granted"


class RecordKind(str, Enum):
    """Decision record a transition must attach from its context."""

    REVIEW = "review"
    AUDIT = "audit"
    APPROVAL = "approval"


class FailureTrigger(str, Enum):
    """Operational failures the alternative-flow layer knows how to recover."""

    PAYMENT_GATEWAY_ERROR = "payment_gateway_error"
    NO_STAFF_AVAILABLE = "no_staff_available"
    SYSTEM_DOWNTIME = "system_downtime"
    REMOTE_AUDIT_IMPOSSIBLE = "remote_audit_impossible"
    DOCUMENTS_INCOMPLETE = "documents_incomplete"
    MAX_REJECTIONS_REACHED = "max_rejections_reached"


class RecoveryKind(str, Enum):
    RETRY_SAME_STATE = "retry_same_state"
    FORCE_STATE = "force_state"


@dataclass(frozen=True)
class TransitionSpec:
    """One edge of the transition table.

    Contract: frozen.  ``required_role == ActorRole.SYSTEM`` authorizes any
    actor.  ``records`` names the decision record the edge attaches;
    ``issues_certificate`` marks the certificate-generation edge.
    """

    from_state: WorkflowState
    to_state: WorkflowState
    required_role: ActorRole
    action: str
    guard: GuardName | None = None
    payment_milestone: PaymentMilestone | None = None
    records: RecordKind | None = None
    issues_certificate: bool = False
    description: str = ""


class _NotFound:
    """Sentinel returned by ``TransitionTable.lookup`` for a missing edge."""

    _instance: _NotFound | None = None

    def __new__(cls) -> _NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND: Final = _NotFound()


class TransitionTable:
    """Directed graph of allowed transitions.

    Contract: ``lookup`` returns a ``TransitionSpec`` or ``NOT_FOUND``; it is
    the single source of "invalid transition" outcomes.
    Guarantees: read-only after construction.
    """

    __slots__ = ("_edges",)

    def __init__(self, specs: tuple[TransitionSpec, ...]):
        edges: dict[WorkflowState, dict[WorkflowState, TransitionSpec]] = {}
        for spec in specs:
            targets = edges.setdefault(spec.from_state, {})
            if spec.to_state in targets:
                raise ValueError(
                    f"Duplicate transition {spec.from_state.value} -> {spec.to_state.value}"
                )
            targets[spec.to_state] = spec
        self._edges: Mapping[WorkflowState, Mapping[WorkflowState, TransitionSpec]] = (
            MappingProxyType({k: MappingProxyType(v) for k, v in edges.items()})
        )

    def lookup(
        self, from_state: WorkflowState, to_state: WorkflowState,
    ) -> TransitionSpec | _NotFound:
        return self._edges.get(from_state, {}).get(to_state, NOT_FOUND)

    def outgoing(self, from_state: WorkflowState) -> tuple[TransitionSpec, ...]:
        return tuple(self._edges.get(from_state, {}).values())

    def specs(self) -> tuple[TransitionSpec, ...]:
        return tuple(s for targets in self._edges.values() for s in targets.values())

    def __len__(self) -> int:
        return sum(len(t) for t in self._edges.values())


@dataclass(frozen=True)
class StateDefinition:
    state: WorkflowState
    stage: Stage
    progress_steps: Decimal
    terminal: bool = False
    requests_milestone: PaymentMilestone | None = None
    description: str = ""


@dataclass(frozen=True)
class StateCatalog:
    """Closed set of states with their stage, progress and payment request.

    Contract: every ``WorkflowState`` has exactly one definition.
    """

    definitions: Mapping[WorkflowState, StateDefinition]
    initial_state: WorkflowState = WorkflowState.DRAFT
    total_steps: Decimal = Decimal("8")

    def stage_for(self, state: WorkflowState) -> Stage:
        return self.definitions[state].stage

    def is_terminal(self, state: WorkflowState) -> bool:
        return self.definitions[state].terminal

    def requested_milestone(self, state: WorkflowState) -> PaymentMilestone | None:
        return self.definitions[state].requests_milestone

    def progress_steps(self, state: WorkflowState) -> Decimal:
        return self.definitions[state].progress_steps

    @property
    def terminal_states(self) -> frozenset[WorkflowState]:
        return frozenset(s for s, d in self.definitions.items() if d.terminal)

    @property
    def payment_states(self) -> frozenset[WorkflowState]:
        return frozenset(
            s for s, d in self.definitions.items() if d.requests_milestone is not None
        )


@dataclass(frozen=True)
class AlternativeFlow:
    """A predefined recovery for an operational failure.

    ``from_states`` empty means every non-terminal state.  ``target_state``
    is None for a same-state retry.
    """

    name: str
    trigger: FailureTrigger
    kind: RecoveryKind
    from_states: frozenset[WorkflowState] = field(default_factory=frozenset)
    target_state: WorkflowState | None = None
    description: str = ""

    @property
    def any_state(self) -> bool:
        return not self.from_states
