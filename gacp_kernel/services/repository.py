"""
ApplicationRepository -- persistence port for application snapshots.

Responsibility:
    Defines the contract the workflow engine uses to load an application
    and to commit one transition atomically, plus an in-memory
    implementation used by tests and single-process deployments.

Architecture position:
    Kernel > Services -- imperative shell.  The engine depends on the
    ``ApplicationRepository`` protocol only; SQL and in-memory backends
    are interchangeable.

Invariants enforced:
    - Compare-and-set: a commit lands only if the persisted state and
      version equal the ones the engine read.  Otherwise
      ConcurrentModificationError and nothing changes.
    - State change, history entry and new records land together or not
      at all.
    - At most one completed payment per (application, milestone, round).

Failure modes:
    - ApplicationNotFoundError: unknown id.
    - ApplicationAlreadyExistsError: ``add`` with an id already stored.
    - DuplicateApplicationNumberError: ``add`` with a number already stored.
    - ConcurrentModificationError: lost compare-and-set race.
    - DuplicatePaymentError: second completed payment for a milestone.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from gacp_kernel.domain.application import (
    Application,
    ApprovalRecord,
    AuditRecord,
    CertificateInfo,
    PaymentRecord,
    PaymentStatus,
    ReviewRecord,
    WorkflowHistoryEntry,
)
from gacp_kernel.domain.states import WorkflowState
from gacp_kernel.exceptions import (
    ApplicationAlreadyExistsError,
    ApplicationNotFoundError,
    ConcurrentModificationError,
    DuplicateApplicationNumberError,
    DuplicatePaymentError,
)
from gacp_kernel.logging_config import get_logger

logger = get_logger("services.repository")


@dataclass(frozen=True)
class ApplicationChanges:
    """Everything one commit adds to an application besides history.

    ``new_state`` and ``rejection_count`` always overwrite; every other
    field only appends (payments, review, audit, approval) or sets a value
    that was previously empty (``submitted_at``, ``certificate``).
    """

    new_state: WorkflowState
    rejection_count: int
    submitted_at: datetime | None = None
    new_payments: tuple[PaymentRecord, ...] = ()
    new_review: ReviewRecord | None = None
    new_audit: AuditRecord | None = None
    new_approval: ApprovalRecord | None = None
    certificate: CertificateInfo | None = None

    def apply(
        self,
        application: Application,
        history_entry: WorkflowHistoryEntry | None = None,
    ) -> Application:
        """Snapshot with the changes applied; version is left untouched."""
        return replace(
            application,
            current_state=self.new_state,
            rejection_count=self.rejection_count,
            submitted_at=self.submitted_at or application.submitted_at,
            payments=application.payments + self.new_payments,
            reviews=application.reviews + ((self.new_review,) if self.new_review else ()),
            audits=application.audits + ((self.new_audit,) if self.new_audit else ()),
            approval=self.new_approval or application.approval,
            certificate=self.certificate or application.certificate,
            workflow_history=(
                application.workflow_history + ((history_entry,) if history_entry else ())
            ),
        )


@runtime_checkable
class ApplicationRepository(Protocol):
    """Persistence port consumed by the workflow engine."""

    def add(self, application: Application) -> Application:
        ...

    def load(self, application_id: UUID) -> Application:
        ...

    def next_application_serial(self, year: int) -> int:
        """Next unused serial for application numbers issued in ``year``."""
        ...

    def commit(
        self,
        application_id: UUID,
        expected_state: WorkflowState,
        expected_version: int,
        history_entry: WorkflowHistoryEntry,
        changes: ApplicationChanges,
    ) -> Application:
        ...


def find_duplicate_completed(
    existing: tuple[PaymentRecord, ...],
    new_payments: tuple[PaymentRecord, ...],
) -> PaymentRecord | None:
    """First new completed record whose (milestone, round) is already paid."""
    paid = {
        (p.milestone, p.payment_round)
        for p in existing
        if p.status == PaymentStatus.COMPLETED
    }
    for record in new_payments:
        if record.status != PaymentStatus.COMPLETED:
            continue
        key = (record.milestone, record.payment_round)
        if key in paid:
            return record
        paid.add(key)
    return None


class InMemoryApplicationRepository:
    """Lock-guarded dict of immutable snapshots.

    Contract:
        Implements ``ApplicationRepository``.  Snapshots are frozen, so
        ``load`` hands out the stored object without copying.

    Guarantees:
        ``commit`` is atomic with respect to every other call on the same
        instance.

    Non-goals:
        No durability; a process restart loses everything.
    """

    def __init__(self) -> None:
        self._applications: dict[UUID, Application] = {}
        self._serials: dict[int, int] = {}
        self._lock = threading.Lock()

    def add(self, application: Application) -> Application:
        with self._lock:
            if application.application_id in self._applications:
                raise ApplicationAlreadyExistsError(str(application.application_id))
            if any(
                a.application_number == application.application_number
                for a in self._applications.values()
            ):
                raise DuplicateApplicationNumberError(application.application_number)
            self._applications[application.application_id] = application
        logger.debug(
            "application_added",
            extra={"application_id": str(application.application_id)},
        )
        return application

    def load(self, application_id: UUID) -> Application:
        with self._lock:
            application = self._applications.get(application_id)
        if application is None:
            raise ApplicationNotFoundError(str(application_id))
        return application

    def next_application_serial(self, year: int) -> int:
        with self._lock:
            self._serials[year] = self._serials.get(year, 0) + 1
            return self._serials[year]

    def commit(
        self,
        application_id: UUID,
        expected_state: WorkflowState,
        expected_version: int,
        history_entry: WorkflowHistoryEntry,
        changes: ApplicationChanges,
    ) -> Application:
        with self._lock:
            current = self._applications.get(application_id)
            if current is None:
                raise ApplicationNotFoundError(str(application_id))
            if current.current_state != expected_state or current.version != expected_version:
                raise ConcurrentModificationError(
                    str(application_id), expected_state.value, expected_version,
                )
            duplicate = find_duplicate_completed(current.payments, changes.new_payments)
            if duplicate is not None:
                raise DuplicatePaymentError(
                    str(application_id), duplicate.milestone.value, duplicate.payment_round,
                )
            updated = replace(
                changes.apply(current, history_entry),
                version=expected_version + 1,
            )
            self._applications[application_id] = updated
        return updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._applications)
