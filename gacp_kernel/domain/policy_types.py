"""
Policy parameter types shared by configuration and engines.

Responsibility
--------------
Frozen parameter objects compiled from the YAML configuration set and
consumed by the pure engines: thresholds, fee rules, herb definitions and
document rules.  Living in the kernel lets engines stay independent of the
configuration package.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from gacp_kernel.domain.application import DocumentType
from gacp_kernel.domain.states import PaymentMilestone
from gacp_kernel.domain.values import Money


@dataclass(frozen=True)
class WorkflowThresholds:
    """Numeric cut-offs for review, audit, rejection and payment expiry."""

    review_pass_score: Decimal = Decimal("70")
    audit_pass_score: Decimal = Decimal("80")
    audit_fail_below: Decimal = Decimal("60")
    free_rejections: int = 2
    max_rejections: int = 3
    payment_expiry_days: int = 7
    max_audit_rounds: int | None = None
    certificate_validity_years: int = 3


@dataclass(frozen=True)
class FeeRule:
    milestone: PaymentMilestone
    base_amount: Money
    apply_herb_multiplier: bool = True
    description: str = ""


@dataclass(frozen=True)
class HerbDefinition:
    herb_id: str
    multiplier: Decimal = Decimal("1.0")
    special_license: bool = False
    aliases: tuple[str, ...] = ()
    display_name: str = ""


@dataclass(frozen=True)
class DocumentRules:
    required_types: frozenset[DocumentType]
    allowed_file_types: frozenset[str]
    max_file_size_bytes: int
