"""
Module: gacp_engines.alternative_flows
Responsibility:
    Maps an operational failure trigger raised in a given state to a
    predefined recovery: retry in the same state or force a specific
    next state.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The engine executes the
    returned action through its ordinary commit path.

Invariants enforced:
    - Flows are matched in declaration order; the first flow whose trigger
      and source state match wins.
    - "Any state" flows never match a terminal state.
    - Forced targets are edges of the transition table (checked when the
      configuration is validated).
"""

from __future__ import annotations

from dataclasses import dataclass

from gacp_kernel.domain.states import WorkflowState
from gacp_kernel.domain.workflow import (
    AlternativeFlow,
    FailureTrigger,
    RecoveryKind,
)


@dataclass(frozen=True)
class RecoveryAction:
    flow_name: str
    trigger: FailureTrigger
    kind: RecoveryKind
    target_state: WorkflowState
    description: str = ""

    @property
    def same_state(self) -> bool:
        return self.kind == RecoveryKind.RETRY_SAME_STATE


class AlternativeFlowResolver:

    def __init__(
        self,
        flows: tuple[AlternativeFlow, ...],
        terminal_states: frozenset[WorkflowState],
    ):
        self._flows = flows
        self._terminal = terminal_states

    @property
    def flows(self) -> tuple[AlternativeFlow, ...]:
        return self._flows

    def _matches(self, flow: AlternativeFlow, state: WorkflowState) -> bool:
        if flow.any_state:
            return state not in self._terminal
        return state in flow.from_states

    def resolve(
        self,
        from_state: WorkflowState,
        trigger: FailureTrigger,
    ) -> RecoveryAction | None:
        for flow in self._flows:
            if flow.trigger != trigger or not self._matches(flow, from_state):
                continue
            target = (
                from_state if flow.kind == RecoveryKind.RETRY_SAME_STATE
                else flow.target_state
            )
            return RecoveryAction(
                flow_name=flow.name,
                trigger=trigger,
                kind=flow.kind,
                target_state=target,
                description=flow.description,
            )
        return None
