"""
Configuration Validator (``gacp_config.validator``).

Responsibility
--------------
Validates a ``WorkflowConfigurationSet`` before compilation so that a
broken transition graph never reaches the engine.

Invariants enforced
-------------------
* Vocabulary -- every state, stage, role, guard, milestone, record kind,
  document type and failure trigger named in YAML exists in the kernel
  enums; every ``WorkflowState`` is defined exactly once.
* Graph shape -- no duplicate ``(from, to)`` edge, terminal states have no
  outgoing edges, every non-terminal state has one (no dead states), every
  state is reachable from the initial state and can reach a terminal state.
* Recovery safety -- a forced alternative-flow target is an edge of the
  table from every source state the flow lists.
* Fees and thresholds -- one fee per milestone, multipliers within
  1.0-2.0, score thresholds ordered, ``free_rejections < max_rejections``.

Failure modes
-------------
* Errors (``ConfigValidationResult.errors``)  -> configuration MUST NOT be
  compiled.
* Warnings  -> configuration may be compiled but should be reviewed.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from gacp_config.schema import ANY_STATE, SAME_STATE, WorkflowConfigurationSet
from gacp_kernel.domain.application import DocumentType
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, Stage, WorkflowState
from gacp_kernel.domain.workflow import FailureTrigger, GuardName, RecordKind

_MIN_MULTIPLIER = Decimal("1.0")
_MAX_MULTIPLIER = Decimal("2.0")


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block compilation.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: WorkflowConfigurationSet) -> ConfigValidationResult:
    """Validate a configuration set; a set with errors MUST NOT be compiled."""
    result = ConfigValidationResult()

    _validate_states(config, result)
    _validate_fees(config, result)
    _validate_herbs(config, result)
    _validate_thresholds(config, result)
    _validate_documents(config, result)
    edges = _validate_transitions(config, result)
    _validate_graph(config, edges, result)
    _validate_alternative_flows(config, edges, result)

    return result


def _known(enum_cls: type[Enum], value: str | None) -> bool:
    if value is None:
        return True
    try:
        enum_cls(value)
    except ValueError:
        return False
    return True


def _validate_states(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    seen: set[str] = set()
    for state in config.states:
        if not _known(WorkflowState, state.name):
            result.add_error(f"Unknown state '{state.name}'")
        if state.name in seen:
            result.add_error(f"State '{state.name}' defined more than once")
        seen.add(state.name)
        if not _known(Stage, state.stage):
            result.add_error(f"State '{state.name}' has unknown stage '{state.stage}'")
        if not _known(PaymentMilestone, state.requests_milestone):
            result.add_error(
                f"State '{state.name}' requests unknown milestone '{state.requests_milestone}'"
            )
        if not Decimal("0") <= state.progress <= config.total_progress_steps:
            result.add_error(
                f"State '{state.name}' progress {state.progress} outside "
                f"0-{config.total_progress_steps}"
            )
    for state in WorkflowState:
        if state.value not in seen:
            result.add_error(f"State '{state.value}' has no definition")
    if config.initial_state not in seen:
        result.add_error(f"Initial state '{config.initial_state}' is not defined")
    if not any(s.terminal for s in config.states):
        result.add_error("No terminal state defined")


def _validate_fees(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    seen: set[str] = set()
    for fee in config.fees:
        if not _known(PaymentMilestone, fee.milestone):
            result.add_error(f"Fee for unknown milestone '{fee.milestone}'")
        if fee.milestone in seen:
            result.add_error(f"Duplicate fee for milestone '{fee.milestone}'")
        seen.add(fee.milestone)
        if fee.amount <= 0:
            result.add_error(f"Fee for '{fee.milestone}' must be positive")
    for milestone in PaymentMilestone:
        if milestone.value not in seen:
            result.add_error(f"Milestone '{milestone.value}' has no fee")


def _validate_herbs(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    if not config.herbs:
        result.add_warning("No herbs configured; every fee uses multiplier 1.0")
    keys: set[str] = set()
    for herb in config.herbs:
        if not _MIN_MULTIPLIER <= herb.multiplier <= _MAX_MULTIPLIER:
            result.add_error(
                f"Herb '{herb.herb_id}' multiplier {herb.multiplier} outside "
                f"{_MIN_MULTIPLIER}-{_MAX_MULTIPLIER}"
            )
        for key in (herb.herb_id, *herb.aliases):
            folded = key.strip().casefold()
            if folded in keys:
                result.add_error(f"Herb name or alias '{key}' used more than once")
            keys.add(folded)


def _validate_thresholds(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    t = config.thresholds
    for name, score in (
        ("review_pass_score", t.review_pass_score),
        ("audit_pass_score", t.audit_pass_score),
        ("audit_fail_below", t.audit_fail_below),
    ):
        if not Decimal("0") <= score <= Decimal("100"):
            result.add_error(f"Threshold {name}={score} outside 0-100")
    if t.audit_fail_below > t.audit_pass_score:
        result.add_error("audit_fail_below must not exceed audit_pass_score")
    if not 0 <= t.free_rejections < t.max_rejections:
        result.add_error("free_rejections must be non-negative and below max_rejections")
    if t.payment_expiry_days <= 0:
        result.add_error("payment_expiry_days must be positive")
    if t.max_audit_rounds is not None and t.max_audit_rounds < 1:
        result.add_error("max_audit_rounds must be at least 1 when set")
    if t.certificate_validity_years <= 0:
        result.add_error("certificate_validity_years must be positive")


def _validate_documents(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    docs = config.documents
    for doc_type in docs.required_types:
        if not _known(DocumentType, doc_type):
            result.add_error(f"Unknown required document type '{doc_type}'")
    if not docs.allowed_file_types:
        result.add_error("No allowed document file types")
    if docs.max_file_size_bytes <= 0:
        result.add_error("max_file_size_bytes must be positive")


def _validate_transitions(
    config: WorkflowConfigurationSet, result: ConfigValidationResult,
) -> dict[str, set[str]]:
    """Check every edge and return the adjacency map of well-formed edges."""
    state_names = {s.name for s in config.states}
    terminal = {s.name for s in config.states if s.terminal}
    edges: dict[str, set[str]] = {name: set() for name in state_names}
    certificate_edges = 0

    for t in config.transitions:
        if not t.from_states:
            result.add_error(f"Transition to '{t.to_state}' has no source state")
        if t.to_state not in state_names:
            result.add_error(f"Transition targets unknown state '{t.to_state}'")
        if not _known(ActorRole, t.role):
            result.add_error(f"Transition to '{t.to_state}' has unknown role '{t.role}'")
        if not _known(GuardName, t.guard):
            result.add_error(f"Transition to '{t.to_state}' has unknown guard '{t.guard}'")
        if not _known(PaymentMilestone, t.payment_milestone):
            result.add_error(
                f"Transition to '{t.to_state}' has unknown milestone '{t.payment_milestone}'"
            )
        if not _known(RecordKind, t.records):
            result.add_error(f"Transition to '{t.to_state}' has unknown record kind '{t.records}'")
        if t.issues_certificate:
            certificate_edges += 1

        for source in t.from_states:
            if source not in state_names:
                result.add_error(f"Transition from unknown state '{source}'")
                continue
            if source in terminal:
                result.add_error(f"Terminal state '{source}' has an outgoing transition")
            if t.to_state in edges[source]:
                result.add_error(f"Duplicate transition {source} -> {t.to_state}")
            if t.to_state in state_names:
                edges[source].add(t.to_state)

    if certificate_edges != 1:
        result.add_error(
            f"Exactly one transition must issue the certificate, found {certificate_edges}"
        )
    return edges


def _reachable(start: str, edges: dict[str, set[str]]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        for target in edges.get(queue.popleft(), ()):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def _validate_graph(
    config: WorkflowConfigurationSet,
    edges: dict[str, set[str]],
    result: ConfigValidationResult,
) -> None:
    terminal = {s.name for s in config.states if s.terminal}
    for state in config.states:
        if not state.terminal and not edges.get(state.name):
            result.add_error(f"Dead state '{state.name}' has no outgoing transition")

    if config.initial_state in edges:
        unreachable = set(edges) - _reachable(config.initial_state, edges)
        for name in sorted(unreachable):
            result.add_error(f"State '{name}' is unreachable from '{config.initial_state}'")

    for name in sorted(edges):
        if name not in terminal and not (_reachable(name, edges) & terminal):
            result.add_error(f"No terminal state is reachable from '{name}'")


def _validate_alternative_flows(
    config: WorkflowConfigurationSet,
    edges: dict[str, set[str]],
    result: ConfigValidationResult,
) -> None:
    names: set[str] = set()
    for flow in config.alternative_flows:
        if flow.name in names:
            result.add_error(f"Alternative flow '{flow.name}' defined more than once")
        names.add(flow.name)
        if not _known(FailureTrigger, flow.trigger):
            result.add_error(f"Alternative flow '{flow.name}' has unknown trigger '{flow.trigger}'")

        if flow.any_state:
            if flow.target != SAME_STATE:
                result.add_error(
                    f"Alternative flow '{flow.name}' applies to any state and must "
                    "retry in the same state"
                )
            continue

        for source in flow.from_states:
            if source == ANY_STATE or source not in edges:
                result.add_error(f"Alternative flow '{flow.name}' lists unknown state '{source}'")
                continue
            if flow.target != SAME_STATE and flow.target not in edges[source]:
                result.add_error(
                    f"Alternative flow '{flow.name}' forces {source} -> {flow.target}, "
                    "which is not a transition"
                )
