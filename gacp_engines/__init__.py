"""
Module: gacp_engines
Responsibility:
    Re-exports the pure certification policies: guard catalogue, payment
    gate and herb catalogue, rejection and audit-escalation policies,
    business rules and the alternative-flow resolver.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  May import only
    ``gacp_kernel.domain`` and ``gacp_kernel.exceptions``.  MUST NOT
    import gacp_config or gacp_services.

Invariants enforced:
    - Engines never read the clock; ``now`` is passed in by callers.
    - Decimal-only fee arithmetic.
"""

from gacp_engines.alternative_flows import AlternativeFlowResolver, RecoveryAction
from gacp_engines.audit_escalation import AuditEscalationPolicy
from gacp_engines.business_rules import BusinessRules, RuleViolation
from gacp_engines.fees import FeeQuote, HerbCatalog, PaymentGate
from gacp_engines.guards import (
    GuardContext,
    GuardEvaluator,
    build_guard_evaluator,
)
from gacp_engines.rejection import RejectionOutcome, RejectionPolicy

__all__ = [
    "AlternativeFlowResolver",
    "AuditEscalationPolicy",
    "BusinessRules",
    "FeeQuote",
    "GuardContext",
    "GuardEvaluator",
    "HerbCatalog",
    "PaymentGate",
    "RecoveryAction",
    "RejectionOutcome",
    "RejectionPolicy",
    "RuleViolation",
    "build_guard_evaluator",
]
