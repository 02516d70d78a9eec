"""ORM models for the GACP workflow kernel."""

from gacp_kernel.models.application import (
    ApplicationModel,
    ApprovalModel,
    AuditRecordModel,
    DocumentModel,
    PaymentRecordModel,
    ReviewRecordModel,
    WorkflowHistoryModel,
)
from gacp_kernel.models.sequence import SequenceCounterModel

__all__ = [
    "ApplicationModel",
    "ApprovalModel",
    "AuditRecordModel",
    "DocumentModel",
    "PaymentRecordModel",
    "ReviewRecordModel",
    "SequenceCounterModel",
    "WorkflowHistoryModel",
]
