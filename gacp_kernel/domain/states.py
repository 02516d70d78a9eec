"""
Closed vocabularies for the certification workflow.

Responsibility
--------------
Enumerates every workflow state, stage, actor role and payment milestone.
The stage each state belongs to, its progress weight and the milestone it
requests are configuration data compiled into a ``StateCatalog``
(``gacp_kernel.domain.workflow``); the identifiers themselves are closed
here so that configuration can only refer to known names.

Architecture position
---------------------
**Kernel domain layer** -- pure enums.  ZERO I/O.
"""

from __future__ import annotations

from enum import Enum


class WorkflowState(str, Enum):
    """Every state an application can occupy."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    PAYMENT_PENDING_INITIAL = "payment_pending_initial"
    REVIEWING = "reviewing"
    REJECTED = "rejected"
    PAYMENT_PENDING_RESUBMISSION = "payment_pending_resubmission"
    PAYMENT_PENDING_AUDIT = "payment_pending_audit"
    AUDITING = "auditing"
    AUDIT_FAILED = "audit_failed"
    AUDIT_DOUBT = "audit_doubt"
    RE_AUDITING = "re_auditing"
    FIELD_AUDITING = "field_auditing"
    APPROVAL_PENDING = "approval_pending"
    APPROVED = "approved"
    CERTIFICATE_ISSUED = "certificate_issued"
    REJECTED_FINAL = "rejected_final"
    CANCELLED = "cancelled"


AUDIT_ROUND_STATES: frozenset[WorkflowState] = frozenset({
    WorkflowState.AUDITING,
    WorkflowState.RE_AUDITING,
    WorkflowState.FIELD_AUDITING,
})


class Stage(str, Enum):
    """Coarse grouping of states shown to applicants."""

    DOCUMENT_SUBMISSION = "document_submission"
    PAYMENT_PROCESSING = "payment_processing"
    DOCUMENT_REVIEW = "document_review"
    AUDIT_SCHEDULING = "audit_scheduling"
    AUDIT_EXECUTION = "audit_execution"
    FINAL_APPROVAL = "final_approval"
    CERTIFICATE_GENERATION = "certificate_generation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    """Roles that may trigger transitions.

    ``SYSTEM`` as a required role means any actor may trigger the edge.
    """

    FARMER = "farmer"
    REVIEWER = "reviewer"
    AUDITOR = "auditor"
    APPROVER = "approver"
    SYSTEM = "system"


class PaymentMilestone(str, Enum):
    """Named payment checkpoints."""

    INITIAL = "initial"
    THIRD_REVIEW = "3rd_review"
    AUDIT = "audit"
    AUDIT_FAIL = "audit_fail"
    FIELD_AUDIT = "field_audit"


# Milestones that unlock an additional audit round; their payment round is
# the audit round they pay for rather than a fixed 1.
PER_AUDIT_ROUND_MILESTONES: frozenset[PaymentMilestone] = frozenset({
    PaymentMilestone.AUDIT_FAIL,
    PaymentMilestone.FIELD_AUDIT,
})
