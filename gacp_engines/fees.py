"""
Module: gacp_engines.fees
Responsibility:
    Certification fee computation and payment-gate evaluation.  Computes the
    fee due for a milestone (base fee scaled by the highest herb multiplier
    on the application) and decides whether a completed payment exists for
    the milestone's current round.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Callers pass ``now``
    explicitly wherever expiry matters.

Invariants enforced:
    - The herb multiplier is the maximum across all herbs, never a sum.
    - Any herb flagged for a special license flags the whole application.
    - Only a ``completed`` record satisfies the gate; pending, failed and
      expired records never do.
    - Payment round is 1 for initial, 3rd_review and audit; re-audit and
      field-audit fees are paid per audit round.

Failure modes:
    - KeyError if a milestone has no fee rule (prevented by config validation).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping

from gacp_engines.tracer import traced_engine
from gacp_kernel.domain.application import Application, PaymentRecord, PaymentStatus
from gacp_kernel.domain.policy_types import FeeRule, HerbDefinition
from gacp_kernel.domain.states import PER_AUDIT_ROUND_MILESTONES, PaymentMilestone
from gacp_kernel.domain.values import Money

logger = logging.getLogger("gacp.engines.fees")

_DEFAULT_MULTIPLIER = Decimal("1.0")


class HerbCatalog:
    """Herb definitions looked up by id or any alias (case-insensitive)."""

    def __init__(self, herbs: tuple[HerbDefinition, ...]):
        self._herbs = herbs
        index: dict[str, HerbDefinition] = {}
        for herb in herbs:
            for key in (herb.herb_id, *herb.aliases):
                index[key.strip().casefold()] = herb
        self._index = index

    def lookup(self, name: str) -> HerbDefinition | None:
        return self._index.get(name.strip().casefold())

    def unknown(self, names: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(n for n in names if self.lookup(n) is None)

    def max_multiplier(self, names: tuple[str, ...]) -> Decimal:
        """Highest multiplier among the named herbs; unknown herbs count as 1.0."""
        multipliers = []
        for name in names:
            herb = self.lookup(name)
            if herb is None:
                logger.warning("unknown_herb_default_multiplier", extra={"herb": name})
                multipliers.append(_DEFAULT_MULTIPLIER)
            else:
                multipliers.append(herb.multiplier)
        return max(multipliers, default=_DEFAULT_MULTIPLIER)

    def special_license_required(self, names: tuple[str, ...]) -> bool:
        return any(
            herb is not None and herb.special_license
            for herb in (self.lookup(n) for n in names)
        )

    def __iter__(self):
        return iter(self._herbs)


@dataclass(frozen=True)
class FeeQuote:
    milestone: PaymentMilestone
    payment_round: int
    base_amount: Money
    multiplier: Decimal
    amount: Money
    special_license_required: bool


class PaymentGate:
    """Fee schedule plus completed-payment lookup.

    Contract:
        ``fee_for`` and ``is_satisfied`` are pure reads of the snapshot.
        Payment creation belongs to the payment gateway collaborator.
    """

    def __init__(
        self,
        fee_rules: Mapping[PaymentMilestone, FeeRule],
        herbs: HerbCatalog,
        payment_expiry_days: int = 7,
    ):
        self._fee_rules = dict(fee_rules)
        self._herbs = herbs
        self._expiry = timedelta(days=payment_expiry_days)

    @property
    def herbs(self) -> HerbCatalog:
        return self._herbs

    def fee_for(self, milestone: PaymentMilestone, application: Application) -> Money:
        return self.quote(milestone=milestone, application=application).amount

    @traced_engine("payment_gate", "1.0", fingerprint_fields=("milestone",))
    def quote(self, *, milestone: PaymentMilestone, application: Application) -> FeeQuote:
        rule = self._fee_rules[milestone]
        multiplier = (
            self._herbs.max_multiplier(application.herbs)
            if rule.apply_herb_multiplier else _DEFAULT_MULTIPLIER
        )
        return FeeQuote(
            milestone=milestone,
            payment_round=self.required_round(milestone, application),
            base_amount=rule.base_amount,
            multiplier=multiplier,
            amount=(rule.base_amount * multiplier).rounded(),
            special_license_required=self._herbs.special_license_required(application.herbs),
        )

    def required_round(self, milestone: PaymentMilestone, application: Application) -> int:
        if milestone in PER_AUDIT_ROUND_MILESTONES:
            return application.next_audit_round
        return 1

    def completed_payment(
        self, milestone: PaymentMilestone, application: Application,
    ) -> PaymentRecord | None:
        payment_round = self.required_round(milestone, application)
        for record in application.payments_for(milestone, payment_round):
            if record.status == PaymentStatus.COMPLETED:
                return record
        return None

    def is_satisfied(self, milestone: PaymentMilestone, application: Application) -> bool:
        return self.completed_payment(milestone, application) is not None

    def latest_attempt(
        self, milestone: PaymentMilestone, application: Application,
    ) -> PaymentRecord | None:
        """Effective record of the most recently requested payment, if any."""
        payment_round = self.required_round(milestone, application)
        attempts = application.effective_payments(milestone, payment_round)
        if not attempts:
            return None
        return max(attempts, key=lambda r: r.created_at)

    def _is_stale(self, record: PaymentRecord, now: datetime) -> bool:
        return now - record.created_at > self._expiry

    def open_request(
        self, milestone: PaymentMilestone, application: Application, now: datetime,
    ) -> PaymentRecord | None:
        """Pending request still inside the expiry window."""
        latest = self.latest_attempt(milestone, application)
        if latest is None or latest.status != PaymentStatus.PENDING:
            return None
        return None if self._is_stale(latest, now) else latest

    def is_expired(
        self, milestone: PaymentMilestone, application: Application, now: datetime,
    ) -> bool:
        """Unsatisfied, and the expiry window elapsed since the last pending
        request for the milestone or, without one, since submission."""
        if self.is_satisfied(milestone, application):
            return False
        pending = [
            r for r in application.effective_payments(
                milestone, self.required_round(milestone, application),
            )
            if r.status == PaymentStatus.PENDING
        ]
        if pending:
            reference = max(r.created_at for r in pending)
        else:
            reference = application.submitted_at or application.created_at
        if reference is None:
            return False
        return now - reference > self._expiry

    def blocking_reason(
        self, milestone: PaymentMilestone, application: Application, now: datetime,
    ) -> str | None:
        if self.is_satisfied(milestone, application):
            return None
        latest = self.latest_attempt(milestone, application)
        if latest is None:
            return "payment_expired" if self.is_expired(milestone, application, now) else "payment_not_started"
        if latest.status == PaymentStatus.PENDING:
            return "payment_expired" if self._is_stale(latest, now) else "payment_pending"
        if latest.status == PaymentStatus.FAILED:
            return "payment_failed"
        return "payment_expired"
