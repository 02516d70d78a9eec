"""
WorkflowConfigurationSet schema.

The human-authored, reviewable source artifact for the certification
workflow.  The YAML set is parsed into these types by the loader, checked
by the validator and compiled into a ``WorkflowConfig`` by the compiler.

Names stay plain strings here; the validator checks them against the
kernel vocabularies before compilation turns them into enums.

  WorkflowConfigurationSet = source artifact (human-authored, versioned)
  WorkflowConfig           = runtime artifact (validated, frozen)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

ANY_STATE = "*"
SAME_STATE = "same_state"


@dataclass(frozen=True)
class ThresholdsDef:
    review_pass_score: Decimal
    audit_pass_score: Decimal
    audit_fail_below: Decimal
    free_rejections: int
    max_rejections: int
    payment_expiry_days: int
    max_audit_rounds: int | None = None
    certificate_validity_years: int = 3


@dataclass(frozen=True)
class DocumentRulesDef:
    required_types: tuple[str, ...]
    allowed_file_types: tuple[str, ...]
    max_file_size_bytes: int


@dataclass(frozen=True)
class FeeDef:
    milestone: str
    amount: Decimal
    apply_herb_multiplier: bool = True
    description: str = ""


@dataclass(frozen=True)
class HerbDef:
    herb_id: str
    multiplier: Decimal
    special_license: bool = False
    aliases: tuple[str, ...] = ()
    display_name: str = ""


@dataclass(frozen=True)
class StateDef:
    name: str
    stage: str
    progress: Decimal
    terminal: bool = False
    requests_milestone: str | None = None
    description: str = ""


@dataclass(frozen=True)
class TransitionDef:
    """One YAML transition entry; ``from_states`` may list several sources."""

    from_states: tuple[str, ...]
    to_state: str
    role: str
    action: str
    guard: str | None = None
    payment_milestone: str | None = None
    records: str | None = None
    issues_certificate: bool = False
    description: str = ""


@dataclass(frozen=True)
class AlternativeFlowDef:
    name: str
    trigger: str
    from_states: tuple[str, ...]
    target: str
    description: str = ""

    @property
    def any_state(self) -> bool:
        return self.from_states == (ANY_STATE,)


@dataclass(frozen=True)
class WorkflowConfigurationSet:
    config_id: str
    version: int
    currency: str
    initial_state: str
    total_progress_steps: Decimal
    thresholds: ThresholdsDef
    documents: DocumentRulesDef
    fees: tuple[FeeDef, ...]
    herbs: tuple[HerbDef, ...]
    states: tuple[StateDef, ...]
    transitions: tuple[TransitionDef, ...]
    alternative_flows: tuple[AlternativeFlowDef, ...]
    checksum: str = ""
