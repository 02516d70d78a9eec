"""
Module: gacp_engines.guards
Responsibility:
    The guard catalogue: one pure predicate per ``GuardName`` over an
    application snapshot and a ``GuardContext``, held in an exhaustive
    function table.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The current time arrives
    in ``GuardContext.now``; predicates read nothing else outside their
    arguments.

Invariants enforced:
    - ``GuardEvaluator`` refuses construction unless every ``GuardName``
      has a predicate, so an unregistered name cannot reach evaluation.
    - A predicate that raises is reported as ``GuardEvaluationError``,
      never as ``False``.

Failure modes:
    - UnknownGuardError for a name outside ``GuardName``.
    - GuardEvaluationError wrapping any exception raised by a predicate.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from gacp_engines.audit_escalation import AuditEscalationPolicy
from gacp_engines.fees import PaymentGate
from gacp_engines.rejection import RejectionPolicy
from gacp_kernel.domain.application import (
    Actor,
    Application,
    ApprovalDecision,
    ReviewStatus,
)
from gacp_kernel.domain.policy_types import DocumentRules, WorkflowThresholds
from gacp_kernel.domain.states import PaymentMilestone, WorkflowState
from gacp_kernel.domain.workflow import GuardName
from gacp_kernel.exceptions import GuardEvaluationError, UnknownGuardError


@dataclass(frozen=True)
class GuardContext:
    """Inputs a guard may read besides the snapshot."""

    actor: Actor
    now: datetime
    values: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


GuardFn = Callable[[Application, GuardContext], bool]


class GuardEvaluator:
    """Evaluates named guards through an exhaustive function table."""

    def __init__(self, functions: Mapping[GuardName, GuardFn]):
        missing = [g.value for g in GuardName if g not in functions]
        if missing:
            raise ValueError(f"Guards without a predicate: {', '.join(missing)}")
        self._functions: Mapping[GuardName, GuardFn] = dict(functions)

    def evaluate(
        self,
        guard: GuardName | str,
        application: Application,
        context: GuardContext,
    ) -> bool:
        try:
            name = GuardName(guard)
        except ValueError:
            raise UnknownGuardError(str(guard)) from None
        fn = self._functions[name]
        try:
            return bool(fn(application, context))
        except Exception as exc:
            raise GuardEvaluationError(
                name.value, str(application.application_id), f"{type(exc).__name__}: {exc}",
            ) from exc

    @property
    def names(self) -> frozenset[GuardName]:
        return frozenset(self._functions)


# ---------------------------------------------------------------------------
# Predicate factories
# ---------------------------------------------------------------------------


def _file_type(mime_type: str) -> str:
    return mime_type.rsplit("/", 1)[-1].strip().lower()


def has_required_documents(rules: DocumentRules) -> GuardFn:
    def _check(app: Application, ctx: GuardContext) -> bool:
        uploaded = {d.document_type for d in app.active_documents}
        return rules.required_types <= uploaded
    return _check


def documents_validated(rules: DocumentRules) -> GuardFn:
    required = has_required_documents(rules)

    def _check(app: Application, ctx: GuardContext) -> bool:
        if not required(app, ctx):
            return False
        return all(
            0 < d.size_bytes <= rules.max_file_size_bytes
            and _file_type(d.mime_type) in rules.allowed_file_types
            for d in app.active_documents
        )
    return _check


def _non_empty(ctx: GuardContext, key: str) -> bool:
    value = ctx.get(key)
    return isinstance(value, str) and bool(value.strip())


def _last_review_status(app: Application) -> ReviewStatus | None:
    review = app.last_review
    return review.status if review else None


def build_guard_evaluator(
    *,
    thresholds: WorkflowThresholds,
    documents: DocumentRules,
    payment_gate: PaymentGate,
    rejection_policy: RejectionPolicy,
    audit_policy: AuditEscalationPolicy,
    requested_milestones: Mapping[WorkflowState, PaymentMilestone],
) -> GuardEvaluator:
    """Wire every ``GuardName`` to its predicate."""
    validated = documents_validated(documents)

    def payment_completed(app: Application, ctx: GuardContext) -> bool:
        milestone = ctx.get("milestone")
        if milestone is None:
            return False
        return payment_gate.is_satisfied(PaymentMilestone(milestone), app)

    def payment_expired(app: Application, ctx: GuardContext) -> bool:
        milestone = requested_milestones.get(app.current_state)
        if milestone is None:
            return False
        return payment_gate.is_expired(milestone, app, ctx.now)

    def review_approved(app: Application, ctx: GuardContext) -> bool:
        review = app.last_review
        return (
            review is not None
            and review.status == ReviewStatus.APPROVED
            and review.overall_score >= thresholds.review_pass_score
        )

    def audit_verdict(expected: WorkflowState) -> GuardFn:
        def _check(app: Application, ctx: GuardContext) -> bool:
            audit = app.last_audit
            return audit is not None and audit_policy.verdict(audit) == expected
        return _check

    def approval_is(decision: ApprovalDecision) -> GuardFn:
        def _check(app: Application, ctx: GuardContext) -> bool:
            return app.approval is not None and app.approval.decision == decision
        return _check

    def approver_returned(app: Application, ctx: GuardContext) -> bool:
        return ctx.get("decision") == ApprovalDecision.REJECTED.value and _non_empty(ctx, "comments")

    def resubmission_fee_paid(app: Application) -> bool:
        milestone = rejection_policy.resubmission_milestone(app.rejection_count)
        return milestone is not None and payment_gate.is_satisfied(milestone, app)

    table: dict[GuardName, GuardFn] = {
        GuardName.HAS_REQUIRED_DOCUMENTS: has_required_documents(documents),
        GuardName.DOCUMENTS_VALIDATED: validated,
        GuardName.DOCUMENTS_INCOMPLETE: lambda app, ctx: not validated(app, ctx),
        GuardName.FARMER_CANCELLED: lambda app, ctx: _non_empty(ctx, "reason"),
        GuardName.PAYMENT_COMPLETED: payment_completed,
        GuardName.PAYMENT_EXPIRED: payment_expired,
        GuardName.REVIEW_APPROVED: review_approved,
        GuardName.REVIEW_REJECTED: lambda app, ctx: _last_review_status(app) == ReviewStatus.REJECTED,
        GuardName.MAX_REJECTIONS_REACHED: lambda app, ctx: (
            _last_review_status(app) == ReviewStatus.REJECTED
            and rejection_policy.max_reached(app.rejection_count)
        ),
        GuardName.FREE_RESUBMISSION_ALLOWED: lambda app, ctx: (
            rejection_policy.free_resubmission_allowed(app.rejection_count)
            or resubmission_fee_paid(app)
        ),
        GuardName.PAID_RESUBMISSION_REQUIRED: lambda app, ctx: (
            rejection_policy.paid_resubmission_required(app.rejection_count)
            and not resubmission_fee_paid(app)
        ),
        GuardName.AUDIT_PASSED: audit_verdict(WorkflowState.APPROVAL_PENDING),
        GuardName.AUDIT_FAILED: audit_verdict(WorkflowState.AUDIT_FAILED),
        GuardName.AUDIT_DOUBTFUL: audit_verdict(WorkflowState.AUDIT_DOUBT),
        GuardName.APPROVER_APPROVED: approval_is(ApprovalDecision.APPROVED),
        GuardName.APPROVER_RETURNED: approver_returned,
        GuardName.APPROVAL_GRANTED: approval_is(ApprovalDecision.APPROVED),
    }
    return GuardEvaluator(table)
