"""
Module: gacp_kernel.models.application
Responsibility: ORM persistence for certification applications, their
    documents and the append-only workflow records (history, payments,
    reviews, audits, approval).

Architecture position: Kernel > Models.  May import db/base.py, the domain
    DTOs and kernel exceptions only.

Invariants enforced:
    - (application_id, sequence) is unique for history entries.
    - At most one completed payment row per (application, milestone, round):
      partial unique index ``uq_gacp_payments_completed``.
    - Review and audit rounds are unique per application.
    - At most one approval row per application.
    - History, payment, review, audit and approval rows are append-only:
      ORM ``before_update``/``before_delete`` listeners raise
      ImmutabilityViolationError.

Failure modes:
    - IntegrityError on a second completed payment for the same milestone
      and round (mapped to DuplicatePaymentError by the repository).
    - ImmutabilityViolationError on UPDATE/DELETE of an append-only row.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from gacp_kernel.db.base import Base, UUIDString
from gacp_kernel.domain.application import (
    ApprovalDecision,
    ApprovalRecord,
    AuditRecord,
    AuditResult,
    AuditType,
    DocumentRef,
    DocumentType,
    PaymentRecord,
    PaymentStatus,
    ReviewRecord,
    ReviewStatus,
    TransitionType,
    WorkflowHistoryEntry,
)
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, WorkflowState
from gacp_kernel.domain.values import Money
from gacp_kernel.exceptions import ImmutabilityViolationError


def _checklist_to_json(checklist) -> dict[str, str]:
    return {name: str(score) for name, score in checklist.items()}


def _checklist_from_json(data: dict[str, str]) -> dict[str, Decimal]:
    return {name: Decimal(score) for name, score in (data or {}).items()}


class ApplicationModel(Base):
    """Mutable application header; the only row a transition updates.

    ``version`` increments on every commit and together with
    ``current_state`` forms the compare-and-set key.
    """

    __tablename__ = "gacp_applications"

    application_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    farmer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, index=True)
    current_state: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejection_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    herbs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime | None]
    submitted_at: Mapped[datetime | None]
    certificate_id: Mapped[str | None] = mapped_column(String(64))
    certificate_path: Mapped[str | None] = mapped_column(String(500))
    certificate_issued_at: Mapped[datetime | None]
    certificate_expires_at: Mapped[datetime | None]


class DocumentModel(Base):
    __tablename__ = "gacp_documents"
    __table_args__ = (
        UniqueConstraint("application_id", "document_id", name="uq_gacp_documents_document"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("gacp_applications.id"), nullable=False, index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    document_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_type: Mapped[str] = mapped_column(String(40), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    uploaded_at: Mapped[datetime | None]

    def to_dto(self) -> DocumentRef:
        return DocumentRef(
            document_id=self.document_id,
            document_type=DocumentType(self.document_type),
            file_name=self.file_name,
            mime_type=self.mime_type,
            size_bytes=self.size_bytes,
            active=self.active,
            uploaded_at=self.uploaded_at,
        )

    @classmethod
    def from_dto(cls, application_id: UUID, position: int, dto: DocumentRef) -> DocumentModel:
        return cls(
            application_id=application_id,
            position=position,
            document_id=dto.document_id,
            document_type=dto.document_type.value,
            file_name=dto.file_name,
            mime_type=dto.mime_type,
            size_bytes=dto.size_bytes,
            active=dto.active,
            uploaded_at=dto.uploaded_at,
        )


class WorkflowHistoryModel(Base):
    """Workflow history entry. Append-only."""

    __tablename__ = "gacp_workflow_history"
    __table_args__ = (
        UniqueConstraint("application_id", "sequence", name="uq_gacp_history_sequence"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("gacp_applications.id"), nullable=False, index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_state: Mapped[str] = mapped_column(String(50), nullable=False)
    to_state: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    transition_type: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str] = mapped_column(Text, nullable=False, default="")
    entry_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime]

    def to_dto(self) -> WorkflowHistoryEntry:
        return WorkflowHistoryEntry(
            sequence=self.sequence,
            from_state=WorkflowState(self.from_state),
            to_state=WorkflowState(self.to_state),
            actor_id=self.actor_id,
            actor_role=ActorRole(self.actor_role),
            action=self.action,
            timestamp=self.occurred_at,
            transition_type=TransitionType(self.transition_type),
            comments=self.comments,
            metadata=self.entry_metadata or {},
        )

    @classmethod
    def from_dto(cls, application_id: UUID, dto: WorkflowHistoryEntry) -> WorkflowHistoryModel:
        return cls(
            application_id=application_id,
            sequence=dto.sequence,
            from_state=dto.from_state.value,
            to_state=dto.to_state.value,
            actor_id=dto.actor_id,
            actor_role=dto.actor_role.value,
            action=dto.action,
            transition_type=dto.transition_type.value,
            comments=dto.comments,
            entry_metadata=dict(dto.metadata),
            occurred_at=dto.timestamp,
        )


class PaymentRecordModel(Base):
    """Payment status record. Append-only; a status change is a new row."""

    __tablename__ = "gacp_payments"
    __table_args__ = (
        UniqueConstraint("application_id", "position", name="uq_gacp_payments_position"),
        Index(
            "uq_gacp_payments_completed",
            "application_id",
            "milestone",
            "payment_round",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("gacp_applications.id"), nullable=False, index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, index=True)
    milestone: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_round: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal]
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime]

    def to_dto(self) -> PaymentRecord:
        return PaymentRecord(
            payment_id=self.payment_id,
            milestone=PaymentMilestone(self.milestone),
            payment_round=self.payment_round,
            amount=Money(self.amount, self.currency),
            status=PaymentStatus(self.status),
            created_at=self.created_at,
            gateway_reference=self.gateway_reference,
        )

    @classmethod
    def from_dto(cls, application_id: UUID, position: int, dto: PaymentRecord) -> PaymentRecordModel:
        return cls(
            application_id=application_id,
            position=position,
            payment_id=dto.payment_id,
            milestone=dto.milestone.value,
            payment_round=dto.payment_round,
            amount=dto.amount.amount,
            currency=dto.amount.currency,
            status=dto.status.value,
            gateway_reference=dto.gateway_reference,
            created_at=dto.created_at,
        )


class ReviewRecordModel(Base):
    __tablename__ = "gacp_reviews"
    __table_args__ = (
        UniqueConstraint("application_id", "review_round", name="uq_gacp_reviews_round"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("gacp_applications.id"), nullable=False, index=True,
    )
    review_round: Mapped[int] = mapped_column(Integer, nullable=False)
    reviewer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    checklist: Mapped[dict] = mapped_column(JSON, nullable=False)
    overall_score: Mapped[Decimal]
    comments: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reviewed_at: Mapped[datetime]

    def to_dto(self) -> ReviewRecord:
        return ReviewRecord(
            review_round=self.review_round,
            reviewer_id=self.reviewer_id,
            status=ReviewStatus(self.status),
            checklist=_checklist_from_json(self.checklist),
            overall_score=self.overall_score,
            reviewed_at=self.reviewed_at,
            comments=self.comments,
        )

    @classmethod
    def from_dto(cls, application_id: UUID, dto: ReviewRecord) -> ReviewRecordModel:
        return cls(
            application_id=application_id,
            review_round=dto.review_round,
            reviewer_id=dto.reviewer_id,
            status=dto.status.value,
            checklist=_checklist_to_json(dto.checklist),
            overall_score=dto.overall_score,
            comments=dto.comments,
            reviewed_at=dto.reviewed_at,
        )


class AuditRecordModel(Base):
    __tablename__ = "gacp_audits"
    __table_args__ = (
        UniqueConstraint("application_id", "audit_round", name="uq_gacp_audits_round"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("gacp_applications.id"), nullable=False, index=True,
    )
    audit_round: Mapped[int] = mapped_column(Integer, nullable=False)
    auditor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    audit_type: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    checklist: Mapped[dict] = mapped_column(JSON, nullable=False)
    overall_score: Mapped[Decimal]
    findings: Mapped[str] = mapped_column(Text, nullable=False, default="")
    audited_at: Mapped[datetime]

    def to_dto(self) -> AuditRecord:
        return AuditRecord(
            audit_round=self.audit_round,
            auditor_id=self.auditor_id,
            audit_type=AuditType(self.audit_type),
            result=AuditResult(self.result),
            checklist=_checklist_from_json(self.checklist),
            overall_score=self.overall_score,
            audited_at=self.audited_at,
            findings=self.findings,
        )

    @classmethod
    def from_dto(cls, application_id: UUID, dto: AuditRecord) -> AuditRecordModel:
        return cls(
            application_id=application_id,
            audit_round=dto.audit_round,
            auditor_id=dto.auditor_id,
            audit_type=dto.audit_type.value,
            result=dto.result.value,
            checklist=_checklist_to_json(dto.checklist),
            overall_score=dto.overall_score,
            findings=dto.findings,
            audited_at=dto.audited_at,
        )


class ApprovalModel(Base):
    __tablename__ = "gacp_approvals"

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("gacp_applications.id"), nullable=False, unique=True,
    )
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime]

    def to_dto(self) -> ApprovalRecord:
        return ApprovalRecord(
            approver_id=self.approver_id,
            decision=ApprovalDecision(self.decision),
            decided_at=self.decided_at,
            comments=self.comments,
        )

    @classmethod
    def from_dto(cls, application_id: UUID, dto: ApprovalRecord) -> ApprovalModel:
        return cls(
            application_id=application_id,
            approver_id=dto.approver_id,
            decision=dto.decision.value,
            comments=dto.comments,
            decided_at=dto.decided_at,
        )


# ---------------------------------------------------------------------------
# Append-only enforcement
# ---------------------------------------------------------------------------

_APPEND_ONLY_MODELS = (
    (WorkflowHistoryModel, "WorkflowHistoryEntry"),
    (PaymentRecordModel, "PaymentRecord"),
    (ReviewRecordModel, "ReviewRecord"),
    (AuditRecordModel, "AuditRecord"),
    (ApprovalModel, "ApprovalRecord"),
)


def _register_append_only(model: type[Base], entity_type: str) -> None:
    @event.listens_for(model, "before_update")
    def prevent_update(mapper, connection, target):
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} rows are append-only -- cannot modify",
        )

    @event.listens_for(model, "before_delete")
    def prevent_delete(mapper, connection, target):
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} rows are append-only -- cannot delete",
        )


for _model, _entity_type in _APPEND_ONLY_MODELS:
    _register_append_only(_model, _entity_type)
