"""
Application snapshot and its append-only records.

Responsibility
--------------
Frozen value objects for a certification application as the workflow
engine sees it: documents, payments, review and audit rounds, the single
approval, the issued certificate and the workflow history.  A snapshot is
never mutated; the engine derives a prospective snapshot with
``dataclasses.replace`` and the repository persists the difference.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Review/audit ``round`` is 1-based; a new record uses previous max + 1.
* ``overall_score`` is the mean of checklist components, 0-100.
* Payment records are append-only; a payment's effective status is its
  latest record.
* ``current_stage`` is derived from ``current_state``, never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

from gacp_kernel.domain.states import ActorRole, PaymentMilestone, WorkflowState
from gacp_kernel.domain.values import Money

_SCORE_PLACES = Decimal("0.01")
_MIN_SCORE = Decimal("0")
_MAX_SCORE = Decimal("100")


class DocumentType(str, Enum):
    SOP = "sop"
    COA = "coa"
    LAND_RIGHTS = "land_rights"
    FARM_MAP = "farm_map"
    ORGANIC_CERTIFICATE = "organic_certificate"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ReviewStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditType(str, Enum):
    ONLINE = "online"
    ONSITE = "onsite"
    FIELD = "field"


class AuditResult(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    DOUBT = "doubt"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class TransitionType(str, Enum):
    NORMAL = "normal"
    ALTERNATIVE = "alternative"


REVIEW_CHECKLIST_ITEMS: tuple[str, ...] = (
    "document_completeness",
    "sop_compliance",
    "coa_validity",
    "land_rights_valid",
)

AUDIT_CHECKLIST_ITEMS: tuple[str, ...] = (
    "gmp_compliance",
    "facility_standards",
    "documentation_accuracy",
    "staff_competency",
    "quality_control",
)


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def normalize_checklist(
    checklist: Mapping[str, Any], required_items: tuple[str, ...],
) -> Mapping[str, Decimal]:
    """Validate checklist scores and coerce them to Decimal.

    Raises:
        ValueError: missing item, non-numeric score, or score outside 0-100.
    """
    missing = [item for item in required_items if item not in checklist]
    if missing:
        raise ValueError(f"Checklist missing items: {', '.join(missing)}")
    scores: dict[str, Decimal] = {}
    for name, raw in checklist.items():
        if isinstance(raw, bool):
            raise ValueError(f"Checklist score {name}={raw!r} is not numeric")
        try:
            score = Decimal(str(raw))
        except InvalidOperation as e:
            raise ValueError(f"Checklist score {name}={raw!r} is not numeric") from e
        if not _MIN_SCORE <= score <= _MAX_SCORE:
            raise ValueError(f"Checklist score {name}={score} outside 0-100")
        scores[name] = score
    return MappingProxyType(scores)


def mean_score(checklist: Mapping[str, Decimal]) -> Decimal:
    """Arithmetic mean of checklist components, two decimal places."""
    if not checklist:
        raise ValueError("Checklist is empty")
    total = sum(checklist.values(), Decimal("0"))
    return (total / len(checklist)).quantize(_SCORE_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Actor:
    actor_id: UUID
    role: ActorRole
    name: str | None = None


@dataclass(frozen=True)
class DocumentRef:
    """Reference to an uploaded document; storage is external."""

    document_id: UUID
    document_type: DocumentType
    file_name: str
    mime_type: str
    size_bytes: int
    active: bool = True
    uploaded_at: datetime | None = None


@dataclass(frozen=True)
class PaymentRecord:
    """One append-only payment status record.

    Several records share a ``payment_id`` as the payment moves from
    pending to a resolved status.
    """

    payment_id: UUID
    milestone: PaymentMilestone
    payment_round: int
    amount: Money
    status: PaymentStatus
    created_at: datetime
    gateway_reference: str | None = None


@dataclass(frozen=True)
class ReviewRecord:
    review_round: int
    reviewer_id: UUID
    status: ReviewStatus
    checklist: Mapping[str, Decimal]
    overall_score: Decimal
    reviewed_at: datetime
    comments: str = ""

    @classmethod
    def create(
        cls,
        *,
        review_round: int,
        reviewer_id: UUID,
        status: ReviewStatus | str,
        checklist: Mapping[str, Any],
        reviewed_at: datetime,
        comments: str = "",
    ) -> ReviewRecord:
        scores = normalize_checklist(checklist, REVIEW_CHECKLIST_ITEMS)
        return cls(
            review_round=review_round,
            reviewer_id=reviewer_id,
            status=ReviewStatus(status),
            checklist=scores,
            overall_score=mean_score(scores),
            reviewed_at=reviewed_at,
            comments=comments,
        )


@dataclass(frozen=True)
class AuditRecord:
    audit_round: int
    auditor_id: UUID
    audit_type: AuditType
    result: AuditResult
    checklist: Mapping[str, Decimal]
    overall_score: Decimal
    audited_at: datetime
    findings: str = ""

    @classmethod
    def create(
        cls,
        *,
        audit_round: int,
        auditor_id: UUID,
        audit_type: AuditType | str,
        result: AuditResult | str,
        checklist: Mapping[str, Any],
        audited_at: datetime,
        findings: str = "",
    ) -> AuditRecord:
        scores = normalize_checklist(checklist, AUDIT_CHECKLIST_ITEMS)
        return cls(
            audit_round=audit_round,
            auditor_id=auditor_id,
            audit_type=AuditType(audit_type),
            result=AuditResult(result),
            checklist=scores,
            overall_score=mean_score(scores),
            audited_at=audited_at,
            findings=findings,
        )


@dataclass(frozen=True)
class ApprovalRecord:
    approver_id: UUID
    decision: ApprovalDecision
    decided_at: datetime
    comments: str = ""


@dataclass(frozen=True)
class CertificateInfo:
    certificate_id: str
    path: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class WorkflowHistoryEntry:
    """Immutable record of one committed transition."""

    sequence: int
    from_state: WorkflowState
    to_state: WorkflowState
    actor_id: UUID
    actor_role: ActorRole
    action: str
    timestamp: datetime
    transition_type: TransitionType = TransitionType.NORMAL
    comments: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))


@dataclass(frozen=True)
class Application:
    """Immutable snapshot of a certification application."""

    application_id: UUID
    application_number: str
    farmer_id: UUID
    current_state: WorkflowState
    version: int = 0
    rejection_count: int = 0
    herbs: tuple[str, ...] = ()
    documents: tuple[DocumentRef, ...] = ()
    payments: tuple[PaymentRecord, ...] = ()
    reviews: tuple[ReviewRecord, ...] = ()
    audits: tuple[AuditRecord, ...] = ()
    approval: ApprovalRecord | None = None
    certificate: CertificateInfo | None = None
    workflow_history: tuple[WorkflowHistoryEntry, ...] = ()
    created_at: datetime | None = None
    submitted_at: datetime | None = None

    @property
    def active_documents(self) -> tuple[DocumentRef, ...]:
        return tuple(d for d in self.documents if d.active)

    @property
    def last_review(self) -> ReviewRecord | None:
        return self.reviews[-1] if self.reviews else None

    @property
    def last_audit(self) -> AuditRecord | None:
        return self.audits[-1] if self.audits else None

    @property
    def next_review_round(self) -> int:
        return max((r.review_round for r in self.reviews), default=0) + 1

    @property
    def next_audit_round(self) -> int:
        return max((a.audit_round for a in self.audits), default=0) + 1

    @property
    def has_approved_review(self) -> bool:
        return any(r.status == ReviewStatus.APPROVED for r in self.reviews)

    def payments_for(
        self, milestone: PaymentMilestone, payment_round: int,
    ) -> tuple[PaymentRecord, ...]:
        return tuple(
            p for p in self.payments
            if p.milestone == milestone and p.payment_round == payment_round
        )

    def latest_payment_record(self, payment_id: UUID) -> PaymentRecord | None:
        records = [p for p in self.payments if p.payment_id == payment_id]
        return records[-1] if records else None

    def effective_payments(
        self, milestone: PaymentMilestone, payment_round: int,
    ) -> tuple[PaymentRecord, ...]:
        """Latest record per payment id for the milestone and round, oldest first."""
        latest: dict[UUID, PaymentRecord] = {}
        for record in self.payments_for(milestone, payment_round):
            latest.pop(record.payment_id, None)
            latest[record.payment_id] = record
        return tuple(latest.values())


def format_application_number(year: int, serial: int) -> str:
    """``GACP-YYYY-NNNNNN``; serials past 999999 widen instead of wrapping."""
    return f"GACP-{year:04d}-{serial:06d}"
