"""
Configuration Compiler (``gacp_config.compiler``).

Responsibility
--------------
Turns a validated ``WorkflowConfigurationSet`` into the frozen runtime
artifact ``WorkflowConfig``: kernel enums instead of strings, a
``TransitionTable``, a ``StateCatalog`` and the policy parameter objects
the engines consume.

Invariants enforced
-------------------
* Compilation is deterministic; the compiled checksum equals the source
  checksum.
* The result is immutable; engines share it across threads.

Failure modes
-------------
* ``ValueError``/``KeyError`` when fed an unvalidated set with unknown
  names (callers validate first).
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from gacp_config.schema import SAME_STATE, WorkflowConfigurationSet
from gacp_kernel.domain.application import DocumentType
from gacp_kernel.domain.policy_types import (
    DocumentRules,
    FeeRule,
    HerbDefinition,
    WorkflowThresholds,
)
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, Stage, WorkflowState
from gacp_kernel.domain.values import Money
from gacp_kernel.domain.workflow import (
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


@dataclass(frozen=True)
class WorkflowConfig:
    """Compiled, immutable workflow configuration.

    Contract: produced only by ``compile_workflow_config``.
    Guarantees: safe to share between threads; never mutated.
    """

    config_id: str
    config_version: int
    checksum: str
    currency: str
    states: StateCatalog
    table: TransitionTable
    fee_rules: Mapping[PaymentMilestone, FeeRule]
    herbs: tuple[HerbDefinition, ...]
    thresholds: WorkflowThresholds
    documents: DocumentRules
    alternative_flows: tuple[AlternativeFlow, ...]

    @property
    def requested_milestones(self) -> Mapping[WorkflowState, PaymentMilestone]:
        return MappingProxyType({
            state: d.requests_milestone
            for state, d in self.states.definitions.items()
            if d.requests_milestone is not None
        })


def _compile_states(config: WorkflowConfigurationSet) -> StateCatalog:
    definitions = {
        WorkflowState(s.name): StateDefinition(
            state=WorkflowState(s.name),
            stage=Stage(s.stage),
            progress_steps=s.progress,
            terminal=s.terminal,
            requests_milestone=(
                PaymentMilestone(s.requests_milestone) if s.requests_milestone else None
            ),
            description=s.description,
        )
        for s in config.states
    }
    return StateCatalog(
        definitions=MappingProxyType(definitions),
        initial_state=WorkflowState(config.initial_state),
        total_steps=config.total_progress_steps,
    )


def _compile_table(config: WorkflowConfigurationSet) -> TransitionTable:
    specs = []
    for t in config.transitions:
        for source in t.from_states:
            specs.append(TransitionSpec(
                from_state=WorkflowState(source),
                to_state=WorkflowState(t.to_state),
                required_role=ActorRole(t.role),
                action=t.action,
                guard=GuardName(t.guard) if t.guard else None,
                payment_milestone=(
                    PaymentMilestone(t.payment_milestone) if t.payment_milestone else None
                ),
                records=RecordKind(t.records) if t.records else None,
                issues_certificate=t.issues_certificate,
                description=t.description,
            ))
    return TransitionTable(tuple(specs))


def _compile_flows(config: WorkflowConfigurationSet) -> tuple[AlternativeFlow, ...]:
    flows = []
    for f in config.alternative_flows:
        same_state = f.target == SAME_STATE
        flows.append(AlternativeFlow(
            name=f.name,
            trigger=FailureTrigger(f.trigger),
            kind=RecoveryKind.RETRY_SAME_STATE if same_state else RecoveryKind.FORCE_STATE,
            from_states=(
                frozenset() if f.any_state
                else frozenset(WorkflowState(s) for s in f.from_states)
            ),
            target_state=None if same_state else WorkflowState(f.target),
            description=f.description,
        ))
    return tuple(flows)


def compile_workflow_config(config: WorkflowConfigurationSet) -> WorkflowConfig:
    t = config.thresholds
    return WorkflowConfig(
        config_id=config.config_id,
        config_version=config.version,
        checksum=config.checksum,
        currency=config.currency,
        states=_compile_states(config),
        table=_compile_table(config),
        fee_rules=MappingProxyType({
            PaymentMilestone(f.milestone): FeeRule(
                milestone=PaymentMilestone(f.milestone),
                base_amount=Money(f.amount, config.currency),
                apply_herb_multiplier=f.apply_herb_multiplier,
                description=f.description,
            )
            for f in config.fees
        }),
        herbs=tuple(
            HerbDefinition(
                herb_id=h.herb_id,
                multiplier=h.multiplier,
                special_license=h.special_license,
                aliases=h.aliases,
                display_name=h.display_name,
            )
            for h in config.herbs
        ),
        thresholds=WorkflowThresholds(
            review_pass_score=t.review_pass_score,
            audit_pass_score=t.audit_pass_score,
            audit_fail_below=t.audit_fail_below,
            free_rejections=t.free_rejections,
            max_rejections=t.max_rejections,
            payment_expiry_days=t.payment_expiry_days,
            max_audit_rounds=t.max_audit_rounds,
            certificate_validity_years=t.certificate_validity_years,
        ),
        documents=DocumentRules(
            required_types=frozenset(DocumentType(d) for d in config.documents.required_types),
            allowed_file_types=frozenset(config.documents.allowed_file_types),
            max_file_size_bytes=config.documents.max_file_size_bytes,
        ),
        alternative_flows=_compile_flows(config),
    )
