"""
gacp_services.workflow_engine -- the certification workflow orchestrator.

Responsibility:
    The only public entry point that changes an application.  Loads the
    snapshot, resolves the transition spec, authorizes the actor, attaches
    the decision record the edge requires, evaluates guard, payment gate
    and business rules, commits state and history through the repository's
    compare-and-set, then dispatches side effects.  Failed attempts are
    offered once to the alternative-flow resolver.

Architecture position:
    Services layer.  Composes gacp_engines (pure policies) with the
    compiled gacp_config.WorkflowConfig and the kernel repository.  Thin
    coordinator: no fee arithmetic, no guard logic, no SQL.

Invariants enforced:
    - Expected failures are returned as ``TransitionOutcome`` values; only
      unknown ids (ApplicationNotFoundError) and collaborator failures
      (WorkflowSystemError) are raised.
    - Exactly one history entry per committed call; recovery commits are
      tagged ``alternative`` and recorded with actor role ``system``.
    - Side effects run after the commit and cannot undo it.
    - Guards see the current snapshot plus the decision record being
      attached; state and counter changes apply only at commit.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from gacp_config import WorkflowConfig
from gacp_engines.alternative_flows import AlternativeFlowResolver, RecoveryAction
from gacp_engines.audit_escalation import AuditEscalationPolicy
from gacp_engines.business_rules import BusinessRules, RuleViolation
from gacp_engines.fees import HerbCatalog, PaymentGate
from gacp_engines.guards import GuardContext, build_guard_evaluator
from gacp_engines.rejection import RejectionPolicy
from gacp_kernel.domain.application import (
    Actor,
    Application,
    ApprovalDecision,
    ApprovalRecord,
    AuditRecord,
    CertificateInfo,
    DocumentRef,
    PaymentRecord,
    PaymentStatus,
    ReviewRecord,
    TransitionType,
    WorkflowHistoryEntry,
    format_application_number,
)
from gacp_kernel.domain.clock import Clock, SystemClock
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
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, WorkflowState
from gacp_kernel.domain.workflow import (
    FailureTrigger,
    GuardName,
    RecordKind,
    TransitionSpec,
)
from gacp_kernel.exceptions import (
    ApplicationNotFoundError,
    ConcurrentModificationError,
    DuplicatePaymentError,
    GuardEvaluationError,
    WorkflowSystemError,
)
from gacp_kernel.logging_config import LogContext, get_logger
from gacp_kernel.services.repository import (
    ApplicationChanges,
    ApplicationRepository,
    find_duplicate_completed,
)
from gacp_services.collaborators import (
    ADMINISTRATORS,
    SYSTEM_ACTOR,
    AssignmentService,
    CertificateIssuer,
    LoggingNotificationService,
    NotificationService,
    PaymentGateway,
    PaymentHandle,
    actor_recipient,
    role_recipient,
)
from gacp_services.side_effects import SideEffect, SideEffectDispatcher

logger = get_logger("services.workflow_engine")

TRACE_TYPE_WORKFLOW_TRANSITION = "WORKFLOW_TRANSITION"
WORKFLOW_NAME = "gacp_certification"
OUTCOME_SUCCESS = "success"
OUTCOME_RECOVERED = "recovered"

# Guards that read caller input; get_next_actions cannot evaluate them ahead.
_INPUT_GUARDS = frozenset({
    GuardName.FARMER_CANCELLED,
    GuardName.APPROVER_RETURNED,
    GuardName.PAYMENT_COMPLETED,
})

_DECISION_KEYS = frozenset(kind.value for kind in RecordKind)

_ASSIGNMENT_ROLES: dict[WorkflowState, ActorRole] = {
    WorkflowState.REVIEWING: ActorRole.REVIEWER,
    WorkflowState.AUDITING: ActorRole.AUDITOR,
    WorkflowState.RE_AUDITING: ActorRole.AUDITOR,
    WorkflowState.FIELD_AUDITING: ActorRole.AUDITOR,
    WorkflowState.APPROVAL_PENDING: ActorRole.APPROVER,
}

_AUDIT_FEES = frozenset({
    PaymentMilestone.AUDIT,
    PaymentMilestone.AUDIT_FAIL,
    PaymentMilestone.FIELD_AUDIT,
})

_PERCENT = Decimal("100")


def _json_safe(value: Any) -> Any:
    """Coerce a context value into something a JSON column accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return str(value)


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


@dataclass(frozen=True)
class _Decision:
    review: ReviewRecord | None = None
    audit: AuditRecord | None = None
    approval: ApprovalRecord | None = None

    def attach(self, application: Application) -> Application:
        if self.review is None and self.audit is None and self.approval is None:
            return application
        return replace(
            application,
            reviews=application.reviews + ((self.review,) if self.review else ()),
            audits=application.audits + ((self.audit,) if self.audit else ()),
            approval=self.approval or application.approval,
        )


class _Rejected(Exception):
    """Internal short-circuit carrying an expected failure."""

    def __init__(self, failure: TransitionFailure):
        super().__init__(failure.reason)
        self.failure = failure


class WorkflowEngine:
    """Certification workflow orchestrator.

    Contract:
        ``transition``, ``recover``, ``request_payment`` and
        ``confirm_payment`` are the only writers.  ``get_status``,
        ``get_next_actions`` and ``get_payment_requirements`` are pure
        reads.  One engine instance is safe to share between threads: it
        holds only immutable policies and collaborator references.

    Guarantees:
        - Two concurrent calls that read the same state cannot both
          commit; the loser gets CONCURRENT_MODIFICATION (retryable).
        - Every commit appends exactly one history entry.

    Non-goals:
        - No background timers: payment expiry is evaluated lazily by the
          ``payment_expired`` guard.
        - No automatic retries of CONCURRENT_MODIFICATION.
    """

    def __init__(
        self,
        config: WorkflowConfig,
        repository: ApplicationRepository,
        *,
        payment_gateway: PaymentGateway,
        certificate_issuer: CertificateIssuer,
        notifications: NotificationService | None = None,
        assignments: AssignmentService | None = None,
        clock: Clock | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        outcome_sink: Callable[[dict], None] | None = None,
    ):
        self._config = config
        self._repository = repository
        self._gateway = payment_gateway
        self._issuer = certificate_issuer
        self._notifications = notifications or LoggingNotificationService()
        self._assignments = assignments
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher or SideEffectDispatcher()
        self._outcome_sink = outcome_sink

        thresholds = config.thresholds
        self._states = config.states
        self._table = config.table
        self._gate = PaymentGate(
            config.fee_rules, HerbCatalog(config.herbs), thresholds.payment_expiry_days,
        )
        self._rejections = RejectionPolicy(thresholds.free_rejections, thresholds.max_rejections)
        self._audits = AuditEscalationPolicy(
            thresholds.audit_pass_score, thresholds.audit_fail_below, thresholds.max_audit_rounds,
        )
        self._guards = build_guard_evaluator(
            thresholds=thresholds,
            documents=config.documents,
            payment_gate=self._gate,
            rejection_policy=self._rejections,
            audit_policy=self._audits,
            requested_milestones=config.requested_milestones,
        )
        self._rules = BusinessRules(
            states=self._states,
            payment_gate=self._gate,
            rejection_policy=self._rejections,
            audit_policy=self._audits,
        )
        self._flows = AlternativeFlowResolver(
            config.alternative_flows, self._states.terminal_states,
        )
        logger.info(
            "workflow_engine_initialized",
            extra={
                "config_id": config.config_id,
                "config_version": config.config_version,
                "checksum": config.checksum,
            },
        )

    @property
    def payment_gate(self) -> PaymentGate:
        return self._gate

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def open_application(
        self,
        *,
        farmer_id: UUID,
        herbs: tuple[str, ...] = (),
        documents: tuple[DocumentRef, ...] = (),
        application_number: str | None = None,
        application_id: UUID | None = None,
    ) -> Application:
        """Create and store a draft application.

        Without an explicit number, the repository hands out the next
        serial for the current year: ``GACP-<year>-<serial>``.

        Raises:
            DuplicateApplicationNumberError: the explicit number is taken.
        """
        app_id = application_id or uuid4()
        now = self._clock.now()
        application = Application(
            application_id=app_id,
            application_number=(
                application_number
                or format_application_number(
                    now.year, self._repository.next_application_serial(now.year),
                )
            ),
            farmer_id=farmer_id,
            current_state=self._states.initial_state,
            herbs=tuple(herbs),
            documents=tuple(documents),
            created_at=now,
        )
        unknown = self._gate.herbs.unknown(application.herbs)
        if unknown:
            logger.warning("unknown_herbs_on_application", extra={"herbs": list(unknown)})
        return self._repository.add(application)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        application_id: UUID,
        to_state: WorkflowState | str,
        actor: Actor,
        context: Mapping[str, Any] | None = None,
    ) -> TransitionOutcome:
        """Attempt ``current_state -> to_state`` on behalf of ``actor``.

        Context keys read by the engine: ``review``/``audit``/``approval``
        (decision payloads), ``reason`` (cancellation), ``decision`` and
        ``comments`` (approver return), ``correlation_id``.

        Raises:
            ApplicationNotFoundError: unknown id.
            WorkflowSystemError: a collaborator or guard raised.
        """
        ctx = dict(context or {})
        start = time.monotonic()
        with LogContext.bind(
            application_id=application_id,
            actor_id=actor.actor_id,
            correlation_id=ctx.get("correlation_id"),
        ):
            application = self._load(application_id, "transition")
            try:
                target = WorkflowState(to_state)
            except ValueError:
                logger.warning(
                    "workflow_transition_unknown_state",
                    extra={
                        "from_state": application.current_state.value,
                        "to_state": str(to_state),
                    },
                )
                return TransitionOutcome.failed(application, TransitionFailure(
                    FailureCode.INVALID_TRANSITION,
                    f"Unknown target state {to_state!r}",
                    application.current_state,
                ))
            logger.info(
                "workflow_transition_started",
                extra={
                    "from_state": application.current_state.value,
                    "to_state": target.value,
                    "actor_role": actor.role.value,
                },
            )
            outcome = self._attempt(application, target, actor, ctx)

            if not outcome.success and not outcome.failure.retryable:
                trigger = self._derive_trigger(outcome.failure)
                if trigger is not None:
                    action = self._flows.resolve(application.current_state, trigger)
                    if action is not None:
                        outcome = self._apply_recovery(
                            application, action, actor, ctx, recovered_from=outcome.failure,
                        )

            if not outcome.success and outcome.failure.code == FailureCode.UNAUTHORIZED_ROLE:
                self._notify_admins(
                    application_id,
                    "unauthorized_transition_attempt",
                    {
                        "actor_id": actor.actor_id,
                        "actor_role": actor.role,
                        "from_state": application.current_state,
                        "to_state": target,
                        "reason": outcome.failure.reason,
                    },
                )

            self._emit_trace(application, target, outcome, start)
            return outcome

    def recover(
        self,
        application_id: UUID,
        trigger: FailureTrigger | str,
        actor: Actor = SYSTEM_ACTOR,
        context: Mapping[str, Any] | None = None,
    ) -> TransitionOutcome:
        """Apply the alternative flow registered for ``trigger``.

        Collaborators call this for operational failures the engine cannot
        observe itself (gateway outage, staff shortage, downtime, remote
        audit impossible).

        Raises:
            WorkflowSystemError: no flow matches the trigger in the current
                state; administrators are notified first.
        """
        ctx = dict(context or {})
        start = time.monotonic()
        with LogContext.bind(application_id=application_id, actor_id=actor.actor_id):
            application = self._load(application_id, "recover")
            try:
                trigger = FailureTrigger(trigger)
            except ValueError:
                action = None
            else:
                action = self._flows.resolve(application.current_state, trigger)
            if action is None:
                trigger_name = getattr(trigger, "value", str(trigger))
                reason = (
                    f"No alternative flow for {trigger_name} "
                    f"in state {application.current_state.value}"
                )
                logger.error(
                    "alternative_flow_unmatched",
                    extra={"trigger": trigger_name, "from_state": application.current_state.value},
                )
                self._notify_admins(
                    application_id,
                    "unrecoverable_failure",
                    {"trigger": trigger, "state": application.current_state, "reason": reason},
                )
                raise WorkflowSystemError(str(application_id), "recover", reason)
            outcome = self._apply_recovery(application, action, actor, ctx)
            self._emit_trace(application, action.target_state, outcome, start)
            return outcome

    def _attempt(
        self,
        application: Application,
        to_state: WorkflowState,
        actor: Actor,
        ctx: dict[str, Any],
    ) -> TransitionOutcome:
        from_state = application.current_state
        now = self._clock.now()

        def fail(code: FailureCode, reason: str, **kwargs: Any) -> TransitionOutcome:
            return TransitionOutcome.failed(
                application,
                TransitionFailure(code, reason, from_state, to_state, **kwargs),
            )

        spec = self._table.lookup(from_state, to_state)
        if not spec:
            return fail(
                FailureCode.INVALID_TRANSITION,
                f"No transition from {from_state.value} to {to_state.value}",
            )

        denial = self._authorize(application, spec, actor)
        if denial is not None:
            return TransitionOutcome.failed(application, denial)

        try:
            decision = self._decision_for(spec, application, actor, ctx, now)
        except _Rejected as rejected:
            return TransitionOutcome.failed(application, rejected.failure)
        view = decision.attach(application)

        if spec.guard is not None:
            passed = self._evaluate_guard(spec.guard, view, GuardContext(actor, now, ctx))
            if not passed:
                return fail(
                    FailureCode.CONDITION_NOT_MET,
                    f"Guard {spec.guard.value} is not satisfied",
                    rule=RuleCode.GUARD_FAILED,
                    guard=spec.guard.value,
                )

        if spec.payment_milestone is not None and not self._gate.is_satisfied(
            spec.payment_milestone, view,
        ):
            return fail(
                FailureCode.CONDITION_NOT_MET,
                f"Payment {spec.payment_milestone.value} has not been completed",
                rule=RuleCode.PAYMENT_REQUIRED,
                milestone=spec.payment_milestone,
            )

        violation = self._rules.check_transition(application, view, spec)
        if violation is not None:
            return TransitionOutcome.failed(
                application, self._violation_failure(violation, from_state, to_state),
            )

        certificate = None
        if spec.issues_certificate:
            certificate = self._issue_certificate(view, now)

        changes = ApplicationChanges(
            new_state=to_state,
            rejection_count=self._rejections.count_after(
                from_state, to_state, application.rejection_count, self._states.terminal_states,
            ),
            submitted_at=now if to_state == WorkflowState.SUBMITTED else None,
            new_review=decision.review,
            new_audit=decision.audit,
            new_approval=decision.approval,
            certificate=certificate,
        )
        return self._commit(
            application,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            action=spec.action,
            changes=changes,
            ctx=ctx,
            now=now,
        )

    def _authorize(
        self, application: Application, spec: TransitionSpec, actor: Actor,
    ) -> TransitionFailure | None:
        if spec.required_role == ActorRole.SYSTEM:
            return None
        if actor.role != spec.required_role:
            return TransitionFailure(
                FailureCode.UNAUTHORIZED_ROLE,
                f"Transition {spec.action} requires role {spec.required_role.value}, "
                f"actor has {actor.role.value}",
                spec.from_state,
                spec.to_state,
            )
        if spec.required_role == ActorRole.FARMER and actor.actor_id != application.farmer_id:
            return TransitionFailure(
                FailureCode.UNAUTHORIZED_ROLE,
                "Only the applicant farmer may perform this transition",
                spec.from_state,
                spec.to_state,
                rule=RuleCode.NOT_APPLICANT,
            )
        return None

    def _decision_for(
        self,
        spec: TransitionSpec,
        application: Application,
        actor: Actor,
        ctx: Mapping[str, Any],
        now: datetime,
        *,
        required: bool = True,
    ) -> _Decision:
        """Parse the decision payload the edge records.

        Raises:
            _Rejected: payload missing (when ``required``) or invalid.
        """
        if spec.records is None:
            return _Decision()
        payload = ctx.get(spec.records.value)
        if payload is None:
            if not required:
                return _Decision()
            raise _Rejected(TransitionFailure(
                FailureCode.BUSINESS_RULE_VIOLATION,
                f"Transition {spec.action} requires a {spec.records.value} record",
                spec.from_state,
                spec.to_state,
                rule=RuleCode.DECISION_RECORD_MISSING,
            ))
        try:
            if spec.records == RecordKind.REVIEW:
                return _Decision(review=ReviewRecord.create(
                    review_round=application.next_review_round,
                    reviewer_id=actor.actor_id,
                    status=payload["status"],
                    checklist=payload["checklist"],
                    reviewed_at=now,
                    comments=str(payload.get("comments", "")),
                ))
            if spec.records == RecordKind.AUDIT:
                return _Decision(audit=AuditRecord.create(
                    audit_round=application.next_audit_round,
                    auditor_id=actor.actor_id,
                    audit_type=payload["audit_type"],
                    result=payload["result"],
                    checklist=payload["checklist"],
                    audited_at=now,
                    findings=str(payload.get("findings", "")),
                ))
            return _Decision(approval=ApprovalRecord(
                approver_id=actor.actor_id,
                decision=ApprovalDecision(payload.get("decision", ApprovalDecision.APPROVED)),
                decided_at=now,
                comments=str(payload.get("comments", "")),
            ))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise _Rejected(TransitionFailure(
                FailureCode.BUSINESS_RULE_VIOLATION,
                f"Invalid {spec.records.value} record: {exc}",
                spec.from_state,
                spec.to_state,
                rule=RuleCode.INVALID_DECISION_RECORD,
            )) from exc

    @staticmethod
    def _violation_failure(
        violation: RuleViolation, from_state: WorkflowState, to_state: WorkflowState,
    ) -> TransitionFailure:
        code = (
            FailureCode.DUPLICATE_PAYMENT if violation.duplicate_payment
            else FailureCode.BUSINESS_RULE_VIOLATION
        )
        return TransitionFailure(
            code,
            violation.reason,
            from_state,
            to_state,
            rule=violation.rule,
            milestone=violation.milestone,
        )

    @staticmethod
    def _derive_trigger(failure: TransitionFailure) -> FailureTrigger | None:
        if (
            failure.code == FailureCode.CONDITION_NOT_MET
            and failure.guard == GuardName.DOCUMENTS_VALIDATED.value
            and failure.from_state == WorkflowState.SUBMITTED
        ):
            return FailureTrigger.DOCUMENTS_INCOMPLETE
        if failure.rule == RuleCode.MAX_REJECTIONS_REACHED:
            return FailureTrigger.MAX_REJECTIONS_REACHED
        return None

    def _apply_recovery(
        self,
        application: Application,
        action: RecoveryAction,
        actor: Actor,
        ctx: dict[str, Any],
        recovered_from: TransitionFailure | None = None,
    ) -> TransitionOutcome:
        """Commit a recovery; role, guard and payment gate are not checked."""
        from_state = application.current_state
        now = self._clock.now()
        metadata = {"alternative_flow": action.flow_name, "trigger": action.trigger.value}
        if recovered_from is not None:
            metadata["recovered_from"] = recovered_from.code.value

        if action.same_state:
            changes = ApplicationChanges(
                new_state=from_state,
                rejection_count=application.rejection_count,
            )
            action_name = action.flow_name
        else:
            spec = self._table.lookup(from_state, action.target_state)
            try:
                decision = (
                    self._decision_for(spec, application, actor, ctx, now, required=False)
                    if spec else _Decision()
                )
            except _Rejected:
                decision = _Decision()
            changes = ApplicationChanges(
                new_state=action.target_state,
                rejection_count=self._rejections.count_after(
                    from_state,
                    action.target_state,
                    application.rejection_count,
                    self._states.terminal_states,
                ),
                new_review=decision.review,
                new_audit=decision.audit,
                new_approval=decision.approval,
            )
            action_name = spec.action if spec else action.flow_name

        outcome = self._commit(
            application,
            actor_id=actor.actor_id,
            actor_role=ActorRole.SYSTEM,
            action=action_name,
            changes=changes,
            ctx=ctx,
            now=now,
            transition_type=TransitionType.ALTERNATIVE,
            extra_metadata=metadata,
            recovery_flow=action.flow_name,
            recovered_from=recovered_from,
        )
        if outcome.success:
            logger.info(
                "alternative_flow_applied",
                extra={
                    "flow": action.flow_name,
                    "trigger": action.trigger.value,
                    "from_state": from_state.value,
                    "to_state": changes.new_state.value,
                },
            )
        return outcome

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def request_payment(
        self,
        application_id: UUID,
        milestone: PaymentMilestone | str,
        actor: Actor,
    ) -> PaymentOutcome:
        """Open a payment request for a milestone due in the current state."""
        with LogContext.bind(application_id=application_id, actor_id=actor.actor_id):
            application = self._load(application_id, "request_payment")
            now = self._clock.now()
            try:
                milestone = PaymentMilestone(milestone)
            except ValueError:
                return PaymentOutcome(
                    success=False,
                    application=application,
                    failure=TransitionFailure(
                        FailureCode.BUSINESS_RULE_VIOLATION,
                        f"Unknown payment milestone {milestone!r}",
                        application.current_state,
                        application.current_state,
                        rule=RuleCode.PAYMENT_NOT_DUE,
                    ),
                )

            denial = self._authorize_payment(application, actor)
            if denial is not None:
                return PaymentOutcome(success=False, application=application, failure=denial)

            violation = self._rules.check_payment_request(
                application, milestone, self._due_milestones(application), now,
            )
            if violation is not None:
                failure = self._violation_failure(
                    violation, application.current_state, application.current_state,
                )
                return PaymentOutcome(success=False, application=application, failure=failure)

            quote = self._gate.quote(milestone=milestone, application=application)
            try:
                handle = self._gateway.create_request(milestone, quote.amount, application_id)
            except Exception as exc:
                return self._gateway_failure(application, "create_request", exc)

            record = PaymentRecord(
                payment_id=handle.payment_id,
                milestone=milestone,
                payment_round=quote.payment_round,
                amount=quote.amount,
                status=PaymentStatus.PENDING,
                created_at=now,
                gateway_reference=handle.gateway_reference,
            )
            outcome = self._commit(
                application,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action="request_payment",
                changes=ApplicationChanges(
                    new_state=application.current_state,
                    rejection_count=application.rejection_count,
                    new_payments=(record,),
                ),
                ctx={},
                now=now,
                extra_metadata=self._payment_metadata(record),
                notify_state_change=False,
            )
            if not outcome.success:
                return PaymentOutcome(
                    success=False, application=outcome.application, failure=outcome.failure,
                )
            logger.info("payment_requested", extra=self._payment_metadata(record))
            self._dispatcher.dispatch([self._notify_effect(
                application_id,
                actor_recipient(application.farmer_id),
                "payment_requested",
                {
                    **self._payment_metadata(record),
                    "special_license_required": quote.special_license_required,
                },
            )])
            return PaymentOutcome(
                success=True, application=outcome.application, payment=record, record=outcome.record,
            )

    def confirm_payment(
        self,
        application_id: UUID,
        payment_id: UUID,
        actor: Actor,
    ) -> PaymentOutcome:
        """Ask the gateway for the payment's status and record a resolution.

        A payment the gateway still reports as pending leaves the
        application untouched.
        """
        with LogContext.bind(application_id=application_id, actor_id=actor.actor_id):
            application = self._load(application_id, "confirm_payment")
            now = self._clock.now()
            state = application.current_state

            def fail(code: FailureCode, rule: RuleCode, reason: str, **kw: Any) -> PaymentOutcome:
                return PaymentOutcome(
                    success=False,
                    application=application,
                    failure=TransitionFailure(code, reason, state, state, rule=rule, **kw),
                )

            denial = self._authorize_payment(application, actor)
            if denial is not None:
                return PaymentOutcome(success=False, application=application, failure=denial)

            latest = application.latest_payment_record(payment_id)
            if latest is None:
                return fail(
                    FailureCode.BUSINESS_RULE_VIOLATION,
                    RuleCode.PAYMENT_NOT_FOUND,
                    f"Payment {payment_id} does not belong to this application",
                )
            if latest.status != PaymentStatus.PENDING:
                return fail(
                    FailureCode.BUSINESS_RULE_VIOLATION,
                    RuleCode.PAYMENT_ALREADY_RESOLVED,
                    f"Payment {payment_id} is already {latest.status.value}",
                    milestone=latest.milestone,
                )

            handle = PaymentHandle(
                payment_id=latest.payment_id,
                application_id=application_id,
                milestone=latest.milestone,
                amount=latest.amount,
                gateway_reference=latest.gateway_reference,
            )
            try:
                status = PaymentStatus(self._gateway.check_status(handle))
            except Exception as exc:
                return self._gateway_failure(application, "check_status", exc)

            if status == PaymentStatus.PENDING:
                return PaymentOutcome(success=True, application=application, payment=latest)

            resolved = replace(latest, status=status, created_at=now)
            if find_duplicate_completed(application.payments, (resolved,)) is not None:
                return fail(
                    FailureCode.DUPLICATE_PAYMENT,
                    RuleCode.COMPLETED_PAYMENT_EXISTS,
                    f"A completed {resolved.milestone.value} payment already exists",
                    milestone=resolved.milestone,
                )

            outcome = self._commit(
                application,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action=f"payment_{status.value}",
                changes=ApplicationChanges(
                    new_state=state,
                    rejection_count=application.rejection_count,
                    new_payments=(resolved,),
                ),
                ctx={},
                now=now,
                extra_metadata=self._payment_metadata(resolved),
                notify_state_change=False,
            )
            if not outcome.success:
                return PaymentOutcome(
                    success=False, application=outcome.application, failure=outcome.failure,
                )
            logger.info("payment_resolved", extra=self._payment_metadata(resolved))
            self._dispatcher.dispatch([self._notify_effect(
                application_id,
                actor_recipient(application.farmer_id),
                "payment_resolved",
                self._payment_metadata(resolved),
            )])
            return PaymentOutcome(
                success=True,
                application=outcome.application,
                payment=resolved,
                record=outcome.record,
            )

    def _authorize_payment(
        self, application: Application, actor: Actor,
    ) -> TransitionFailure | None:
        state = application.current_state
        if actor.role == ActorRole.SYSTEM:
            return None
        if actor.role != ActorRole.FARMER:
            return TransitionFailure(
                FailureCode.UNAUTHORIZED_ROLE,
                f"Payments are handled by the applicant, not {actor.role.value}",
                state,
                state,
            )
        if actor.actor_id != application.farmer_id:
            return TransitionFailure(
                FailureCode.UNAUTHORIZED_ROLE,
                "Only the applicant farmer may pay for this application",
                state,
                state,
                rule=RuleCode.NOT_APPLICANT,
            )
        return None

    def _gateway_failure(
        self, application: Application, operation: str, exc: Exception,
    ) -> PaymentOutcome:
        """Record a gateway outage through the payment_gateway_error flow."""
        logger.warning(
            "payment_gateway_error",
            extra={"operation": operation, "error": f"{type(exc).__name__}: {exc}"},
            exc_info=True,
        )
        state = application.current_state
        failure = TransitionFailure(
            FailureCode.CONDITION_NOT_MET,
            f"Payment gateway {operation} failed: {exc}",
            state,
            state,
            rule=RuleCode.GATEWAY_UNAVAILABLE,
        )
        action = self._flows.resolve(state, FailureTrigger.PAYMENT_GATEWAY_ERROR)
        if action is None:
            self._notify_admins(
                application.application_id,
                "payment_gateway_error",
                {"operation": operation, "state": state, "error": str(exc)},
            )
            raise WorkflowSystemError(
                str(application.application_id), operation, f"{type(exc).__name__}: {exc}",
            ) from exc
        recovery = self._apply_recovery(
            application, action, SYSTEM_ACTOR, {"operation": operation}, recovered_from=failure,
        )
        return PaymentOutcome(
            success=False,
            application=recovery.application,
            failure=failure if recovery.success else recovery.failure,
            record=recovery.record,
        )

    @staticmethod
    def _payment_metadata(record: PaymentRecord) -> dict[str, Any]:
        return {
            "payment_id": str(record.payment_id),
            "milestone": record.milestone.value,
            "payment_round": record.payment_round,
            "amount": str(record.amount.amount),
            "currency": record.amount.currency,
            "payment_status": record.status.value,
        }

    def _due_milestones(self, application: Application) -> frozenset[PaymentMilestone]:
        return frozenset(self._relevant_milestones(application))

    def _relevant_milestones(self, application: Application) -> tuple[PaymentMilestone, ...]:
        """Milestone requested by the current state, then edge milestones."""
        ordered: dict[PaymentMilestone, None] = {}
        requested = self._states.requested_milestone(application.current_state)
        if requested is not None:
            ordered[requested] = None
        for spec in self._table.outgoing(application.current_state):
            if spec.payment_milestone is not None:
                ordered[spec.payment_milestone] = None
        return tuple(ordered)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, application_id: UUID) -> WorkflowStatus:
        application = self._load(application_id, "get_status")
        state = application.current_state
        requested = self._states.requested_milestone(state)
        payment_required = next(
            (
                r for r in self._payment_requirements(application)
                if r.milestone == requested and not r.satisfied_already
            ),
            None,
        )
        actions = self._next_actions(application, None)
        progress = (
            self._states.progress_steps(state) / self._states.total_steps * _PERCENT
        ).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return WorkflowStatus(
            application_id=application.application_id,
            state=state,
            stage=self._states.stage_for(state),
            payment_required=payment_required,
            next_steps=tuple(dict.fromkeys(a.action for a in actions)),
            progress_percentage=int(progress),
            rejection_count=application.rejection_count,
            terminal=self._states.is_terminal(state),
        )

    def get_next_actions(
        self, application_id: UUID, actor: Actor | None = None,
    ) -> tuple[NextAction, ...]:
        """Transitions whose guard currently holds.

        Decision edges and edges guarded by caller input are listed without
        evaluation; ``requires_record`` names the record to attach.
        """
        application = self._load(application_id, "get_next_actions")
        return self._next_actions(application, actor)

    def _next_actions(
        self, application: Application, actor: Actor | None,
    ) -> tuple[NextAction, ...]:
        now = self._clock.now()
        probe = actor or Actor(actor_id=application.farmer_id, role=ActorRole.SYSTEM)
        context = GuardContext(probe, now, {})
        actions = []
        for spec in self._table.outgoing(application.current_state):
            deferred = spec.records is not None or spec.guard in _INPUT_GUARDS
            if spec.guard is not None and not deferred:
                if not self._evaluate_guard(spec.guard, application, context):
                    continue
            actions.append(NextAction(
                to_state=spec.to_state,
                action=spec.action,
                required_role=spec.required_role,
                description=spec.description,
                payment_milestone=spec.payment_milestone,
                payment_satisfied=(
                    self._gate.is_satisfied(spec.payment_milestone, application)
                    if spec.payment_milestone is not None else None
                ),
                requires_record=spec.records.value if spec.records else None,
            ))
        return tuple(actions)

    def get_payment_requirements(self, application_id: UUID) -> tuple[PaymentRequirement, ...]:
        application = self._load(application_id, "get_payment_requirements")
        return self._payment_requirements(application)

    def _payment_requirements(self, application: Application) -> tuple[PaymentRequirement, ...]:
        now = self._clock.now()
        requirements = []
        for milestone in self._relevant_milestones(application):
            quote = self._gate.quote(milestone=milestone, application=application)
            satisfied = self._gate.is_satisfied(milestone, application)
            if satisfied:
                blocking = None
            elif milestone in _AUDIT_FEES and not application.has_approved_review:
                blocking = "review_not_approved"
            else:
                blocking = self._gate.blocking_reason(milestone, application, now)
            requirements.append(PaymentRequirement(
                milestone=milestone,
                payment_round=quote.payment_round,
                amount=quote.amount,
                satisfied_already=satisfied,
                special_license_required=quote.special_license_required,
                blocking_reason=blocking,
            ))
        return tuple(requirements)

    # ------------------------------------------------------------------
    # Commit path
    # ------------------------------------------------------------------

    def _commit(
        self,
        application: Application,
        *,
        actor_id: UUID,
        actor_role: ActorRole,
        action: str,
        changes: ApplicationChanges,
        ctx: Mapping[str, Any],
        now: datetime,
        transition_type: TransitionType = TransitionType.NORMAL,
        extra_metadata: Mapping[str, Any] | None = None,
        recovery_flow: str | None = None,
        recovered_from: TransitionFailure | None = None,
        notify_state_change: bool = True,
    ) -> TransitionOutcome:
        from_state = application.current_state
        to_state = changes.new_state
        metadata = {k: v for k, v in ctx.items() if k not in _DECISION_KEYS}
        metadata.update(extra_metadata or {})
        if changes.new_review is not None:
            metadata["review_round"] = changes.new_review.review_round
            metadata["review_score"] = changes.new_review.overall_score
        if changes.new_audit is not None:
            metadata["audit_round"] = changes.new_audit.audit_round
            metadata["audit_score"] = changes.new_audit.overall_score
        if changes.certificate is not None:
            metadata["certificate_id"] = changes.certificate.certificate_id

        entry = WorkflowHistoryEntry(
            sequence=len(application.workflow_history) + 1,
            from_state=from_state,
            to_state=to_state,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            timestamp=now,
            transition_type=transition_type,
            comments=str(ctx.get("comments", "") or ""),
            metadata=_json_safe(metadata),
        )
        try:
            committed = self._repository.commit(
                application.application_id,
                from_state,
                application.version,
                entry,
                changes,
            )
        except ConcurrentModificationError as exc:
            logger.warning(
                "workflow_commit_conflict",
                extra={"from_state": from_state.value, "to_state": to_state.value},
            )
            if changes.certificate is not None:
                logger.error(
                    "certificate_orphaned",
                    extra={
                        "certificate_id": changes.certificate.certificate_id,
                        "certificate_path": changes.certificate.path,
                    },
                )
                self._notify_admins(
                    application.application_id,
                    "certificate_orphaned",
                    {"certificate_id": changes.certificate.certificate_id},
                )
            return TransitionOutcome.failed(application, TransitionFailure(
                FailureCode.CONCURRENT_MODIFICATION, str(exc), from_state, to_state,
            ))
        except DuplicatePaymentError as exc:
            return TransitionOutcome.failed(application, TransitionFailure(
                FailureCode.DUPLICATE_PAYMENT,
                str(exc),
                from_state,
                to_state,
                rule=RuleCode.COMPLETED_PAYMENT_EXISTS,
                milestone=PaymentMilestone(exc.milestone),
            ))
        except ApplicationNotFoundError:
            raise
        except Exception as exc:
            raise self._system_error(application.application_id, "commit", exc) from exc

        record = TransitionRecord(
            application_id=application.application_id,
            from_state=from_state,
            to_state=to_state,
            from_stage=self._states.stage_for(from_state),
            to_stage=self._states.stage_for(to_state),
            action=action,
            transition_type=transition_type,
            history_entry=entry,
            recovery_flow=recovery_flow,
        )
        if notify_state_change:
            self._dispatcher.dispatch(self._side_effects(committed, record))
        return TransitionOutcome.committed(committed, record, recovered_from=recovered_from)

    def _issue_certificate(self, application: Application, now: datetime) -> CertificateInfo:
        try:
            generated = self._issuer.generate(application)
        except Exception as exc:
            raise self._system_error(
                application.application_id, "generate_certificate", exc,
            ) from exc
        return CertificateInfo(
            certificate_id=generated.certificate_id,
            path=generated.path,
            issued_at=now,
            expires_at=_add_years(now, self._config.thresholds.certificate_validity_years),
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _side_effects(
        self, application: Application, record: TransitionRecord,
    ) -> list[SideEffect]:
        app_id = application.application_id
        effects: list[SideEffect] = []
        state_changed = record.from_state != record.to_state
        if state_changed:
            effects.append(self._notify_effect(
                app_id,
                actor_recipient(application.farmer_id),
                "state_changed",
                {
                    "application_number": application.application_number,
                    "from_state": record.from_state,
                    "to_state": record.to_state,
                    "stage": record.to_stage,
                    "action": record.action,
                },
            ))
            milestone = self._states.requested_milestone(record.to_state)
            if milestone is not None:
                quote = self._gate.quote(milestone=milestone, application=application)
                effects.append(self._notify_effect(
                    app_id,
                    actor_recipient(application.farmer_id),
                    "payment_due",
                    {
                        "milestone": milestone,
                        "payment_round": quote.payment_round,
                        "amount": quote.amount.amount,
                        "currency": quote.amount.currency,
                    },
                ))
            role = _ASSIGNMENT_ROLES.get(record.to_state)
            if role is not None:
                effects.append(self._notify_effect(
                    app_id, role_recipient(role), "application_ready", {"state": record.to_state},
                ))
                if self._assignments is not None:
                    effects.append(SideEffect(
                        name=f"assign_{role.value}",
                        application_id=app_id,
                        run=lambda: self._assign(app_id, role, record.to_state),
                    ))
        if record.transition_type == TransitionType.ALTERNATIVE:
            effects.append(self._notify_effect(
                app_id,
                ADMINISTRATORS,
                "alternative_flow_applied",
                {
                    "flow": record.recovery_flow,
                    "from_state": record.from_state,
                    "to_state": record.to_state,
                },
            ))
        return effects

    def _assign(self, application_id: UUID, role: ActorRole, state: WorkflowState) -> None:
        assign = {
            ActorRole.REVIEWER: self._assignments.assign_reviewer,
            ActorRole.AUDITOR: self._assignments.assign_auditor,
            ActorRole.APPROVER: self._assignments.assign_approver,
        }[role]
        staff_id = assign(application_id)
        if staff_id is None:
            logger.warning(
                "no_staff_available",
                extra={"application_id": str(application_id), "role": role.value},
            )
            self.recover(
                application_id,
                FailureTrigger.NO_STAFF_AVAILABLE,
                SYSTEM_ACTOR,
                {"role": role.value},
            )
            return
        self._notifications.notify(
            actor_recipient(staff_id),
            "assignment",
            _json_safe({"application_id": application_id, "role": role, "state": state}),
        )

    def _notify_effect(
        self,
        application_id: UUID,
        recipient: str,
        event_type: str,
        payload: Mapping[str, Any],
    ) -> SideEffect:
        body = _json_safe({"application_id": application_id, **payload})
        return SideEffect(
            name=f"notify_{event_type}",
            application_id=application_id,
            run=lambda: self._notifications.notify(recipient, event_type, body),
        )

    def _notify_admins(
        self, application_id: UUID, event_type: str, payload: Mapping[str, Any],
    ) -> None:
        self._dispatcher.dispatch([
            self._notify_effect(application_id, ADMINISTRATORS, event_type, payload),
        ])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, application_id: UUID, operation: str) -> Application:
        try:
            return self._repository.load(application_id)
        except ApplicationNotFoundError:
            raise
        except Exception as exc:
            raise self._system_error(application_id, operation, exc) from exc

    def _evaluate_guard(
        self, guard: GuardName, application: Application, context: GuardContext,
    ) -> bool:
        try:
            return self._guards.evaluate(guard, application, context)
        except GuardEvaluationError as exc:
            raise self._system_error(application.application_id, "evaluate_guard", exc) from exc

    def _system_error(
        self, application_id: UUID, operation: str, exc: Exception,
    ) -> WorkflowSystemError:
        logger.error(
            "workflow_system_error",
            extra={"operation": operation, "error": f"{type(exc).__name__}: {exc}"},
            exc_info=exc,
        )
        self._notify_admins(
            application_id,
            "system_error",
            {"operation": operation, "error": f"{type(exc).__name__}: {exc}"},
        )
        return WorkflowSystemError(str(application_id), operation, f"{type(exc).__name__}: {exc}")

    def _emit_trace(
        self,
        application: Application,
        to_state: WorkflowState,
        outcome: TransitionOutcome,
        start: float,
    ) -> None:
        """Emit a structured WORKFLOW_TRANSITION record for lookback."""
        if outcome.success:
            label = OUTCOME_RECOVERED if outcome.recovered else OUTCOME_SUCCESS
            reason = outcome.record.action
        else:
            label = outcome.failure.code.value.lower()
            reason = outcome.failure.reason
        record: dict[str, Any] = {
            "trace_type": TRACE_TYPE_WORKFLOW_TRANSITION,
            "ts": self._clock.now().isoformat(),
            "workflow": WORKFLOW_NAME,
            "entity_id": str(application.application_id),
            "from_state": application.current_state.value,
            "to_state": to_state.value,
            "outcome": label,
            "reason": reason,
            "duration_ms": round((time.monotonic() - start) * 1000, 3),
        }
        if outcome.record is not None:
            record["transition_type"] = outcome.record.transition_type.value
            record["committed_to_state"] = outcome.record.to_state.value
            if outcome.record.recovery_flow:
                record["recovery_flow"] = outcome.record.recovery_flow
        if outcome.failure is not None:
            record["failure_code"] = outcome.failure.code.value
            if outcome.failure.rule is not None:
                record["rule"] = outcome.failure.rule.value
        record.update(LogContext.get_all())
        logger.info("workflow_transition", extra=record)
        if self._outcome_sink is not None:
            self._outcome_sink({**record, "message": "workflow_transition"})
