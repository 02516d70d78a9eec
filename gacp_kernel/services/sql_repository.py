"""
SqlAlchemyApplicationRepository -- relational ApplicationRepository.

Responsibility:
    Stores application snapshots in the ``gacp_*`` tables and commits a
    transition as one database transaction: a compare-and-set UPDATE of
    the application header followed by INSERTs of the history entry and
    any new payment, review, audit or approval rows.

Architecture position:
    Kernel > Services -- imperative shell.  Uses ``gacp_kernel.models``
    for mapping and a ``sessionmaker`` supplied by the caller (see
    ``gacp_kernel.db.engine.get_session_factory``).

Invariants enforced:
    - ``UPDATE ... WHERE id = :id AND current_state = :state AND
      version = :version``; any other rowcount than 1 rolls back.
    - The returned snapshot is read inside the committing transaction.
    - Append-only rows are only ever INSERTed.

Failure modes:
    - ApplicationNotFoundError, ConcurrentModificationError,
      DuplicatePaymentError (from the partial unique index).
    - DuplicateApplicationNumberError: ``add`` with a number another
      application already holds.
    - Other SQLAlchemy errors propagate unchanged after rollback.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from gacp_kernel.domain.application import (
    Application,
    CertificateInfo,
    PaymentStatus,
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
from gacp_kernel.models.application import (
    ApplicationModel,
    ApprovalModel,
    AuditRecordModel,
    DocumentModel,
    PaymentRecordModel,
    ReviewRecordModel,
    WorkflowHistoryModel,
)
from gacp_kernel.models.sequence import SequenceCounterModel
from gacp_kernel.services.repository import ApplicationChanges

logger = get_logger("services.sql_repository")


class SqlAlchemyApplicationRepository:
    """ApplicationRepository backed by SQLAlchemy 2.0 ORM.

    Contract:
        One session per call, opened from ``session_factory``.

    Guarantees:
        A commit either lands completely or leaves the database untouched.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, application_id: UUID) -> Application:
        with self._session_factory() as session:
            return self._read(session, application_id)

    def _read(self, session: Session, application_id: UUID) -> Application:
        header = session.get(ApplicationModel, application_id, populate_existing=True)
        if header is None:
            raise ApplicationNotFoundError(str(application_id))

        def children(model, order_by):
            return session.scalars(
                select(model).where(model.application_id == application_id).order_by(order_by)
            ).all()

        approval = session.scalars(
            select(ApprovalModel).where(ApprovalModel.application_id == application_id)
        ).one_or_none()

        certificate = None
        if header.certificate_id is not None:
            certificate = CertificateInfo(
                certificate_id=header.certificate_id,
                path=header.certificate_path or "",
                issued_at=header.certificate_issued_at,
                expires_at=header.certificate_expires_at,
            )

        return Application(
            application_id=header.id,
            application_number=header.application_number,
            farmer_id=header.farmer_id,
            current_state=WorkflowState(header.current_state),
            version=header.version,
            rejection_count=header.rejection_count,
            herbs=tuple(header.herbs or ()),
            documents=tuple(d.to_dto() for d in children(DocumentModel, DocumentModel.position)),
            payments=tuple(
                p.to_dto() for p in children(PaymentRecordModel, PaymentRecordModel.position)
            ),
            reviews=tuple(
                r.to_dto() for r in children(ReviewRecordModel, ReviewRecordModel.review_round)
            ),
            audits=tuple(
                a.to_dto() for a in children(AuditRecordModel, AuditRecordModel.audit_round)
            ),
            approval=approval.to_dto() if approval else None,
            certificate=certificate,
            workflow_history=tuple(
                h.to_dto() for h in children(WorkflowHistoryModel, WorkflowHistoryModel.sequence)
            ),
            created_at=header.created_at,
            submitted_at=header.submitted_at,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, application: Application) -> Application:
        app_id = application.application_id
        with self._session_factory() as session, session.begin():
            if session.get(ApplicationModel, app_id) is not None:
                raise ApplicationAlreadyExistsError(str(app_id))
            taken = session.scalar(
                select(ApplicationModel.id).where(
                    ApplicationModel.application_number == application.application_number,
                )
            )
            if taken is not None:
                raise DuplicateApplicationNumberError(application.application_number)
            cert = application.certificate
            session.add(ApplicationModel(
                id=app_id,
                application_number=application.application_number,
                farmer_id=application.farmer_id,
                current_state=application.current_state.value,
                version=application.version,
                rejection_count=application.rejection_count,
                herbs=list(application.herbs),
                created_at=application.created_at,
                submitted_at=application.submitted_at,
                certificate_id=cert.certificate_id if cert else None,
                certificate_path=cert.path if cert else None,
                certificate_issued_at=cert.issued_at if cert else None,
                certificate_expires_at=cert.expires_at if cert else None,
            ))
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateApplicationNumberError(application.application_number) from exc
            for position, doc in enumerate(application.documents):
                session.add(DocumentModel.from_dto(app_id, position, doc))
            for position, payment in enumerate(application.payments):
                session.add(PaymentRecordModel.from_dto(app_id, position, payment))
            for review in application.reviews:
                session.add(ReviewRecordModel.from_dto(app_id, review))
            for audit in application.audits:
                session.add(AuditRecordModel.from_dto(app_id, audit))
            if application.approval is not None:
                session.add(ApprovalModel.from_dto(app_id, application.approval))
            for entry in application.workflow_history:
                session.add(WorkflowHistoryModel.from_dto(app_id, entry))
        logger.debug("application_added", extra={"application_id": str(app_id)})
        return application

    def next_application_serial(self, year: int) -> int:
        """Next per-year application serial from a locked counter row.

        Runs in its own transaction, so a value handed out and then not
        used by ``add`` leaves a gap; values are never reused.
        """
        name = f"application_number:{year}"
        self._ensure_counter(name)
        with self._session_factory() as session, session.begin():
            counter = self._lock_counter(session, name)
            counter.current_value += 1
            value = counter.current_value
        logger.debug("sequence_allocated", extra={"sequence_name": name, "value": value})
        return value

    def _ensure_counter(self, name: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                if self._lock_counter(session, name) is None:
                    session.add(SequenceCounterModel(name=name, current_value=0))
        except IntegrityError:
            # created concurrently by another allocator
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": name})

    def _lock_counter(self, session: Session, name: str) -> SequenceCounterModel | None:
        return session.execute(
            select(SequenceCounterModel)
            .where(SequenceCounterModel.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def commit(
        self,
        application_id: UUID,
        expected_state: WorkflowState,
        expected_version: int,
        history_entry: WorkflowHistoryEntry,
        changes: ApplicationChanges,
    ) -> Application:
        try:
            with self._session_factory() as session, session.begin():
                self._compare_and_set(
                    session, application_id, expected_state, expected_version, changes,
                )
                self._append(session, application_id, history_entry, changes)
                session.flush()
                updated = self._read(session, application_id)
        except IntegrityError as exc:
            completed = next(
                (p for p in changes.new_payments if p.status == PaymentStatus.COMPLETED),
                None,
            )
            if completed is not None:
                raise DuplicatePaymentError(
                    str(application_id), completed.milestone.value, completed.payment_round,
                ) from exc
            raise
        logger.debug(
            "application_committed",
            extra={
                "application_id": str(application_id),
                "to_state": changes.new_state.value,
                "version": updated.version,
            },
        )
        return updated

    def _compare_and_set(
        self,
        session: Session,
        application_id: UUID,
        expected_state: WorkflowState,
        expected_version: int,
        changes: ApplicationChanges,
    ) -> None:
        values: dict = {
            "current_state": changes.new_state.value,
            "rejection_count": changes.rejection_count,
            "version": expected_version + 1,
        }
        if changes.submitted_at is not None:
            values["submitted_at"] = changes.submitted_at
        if changes.certificate is not None:
            values.update(
                certificate_id=changes.certificate.certificate_id,
                certificate_path=changes.certificate.path,
                certificate_issued_at=changes.certificate.issued_at,
                certificate_expires_at=changes.certificate.expires_at,
            )
        result = session.execute(
            update(ApplicationModel)
            .where(
                ApplicationModel.id == application_id,
                ApplicationModel.current_state == expected_state.value,
                ApplicationModel.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        exists = session.scalar(
            select(func.count()).select_from(ApplicationModel).where(
                ApplicationModel.id == application_id,
            )
        )
        if not exists:
            raise ApplicationNotFoundError(str(application_id))
        raise ConcurrentModificationError(
            str(application_id), expected_state.value, expected_version,
        )

    def _append(
        self,
        session: Session,
        application_id: UUID,
        history_entry: WorkflowHistoryEntry,
        changes: ApplicationChanges,
    ) -> None:
        session.add(WorkflowHistoryModel.from_dto(application_id, history_entry))
        if changes.new_payments:
            position = session.scalar(
                select(func.count()).select_from(PaymentRecordModel).where(
                    PaymentRecordModel.application_id == application_id,
                )
            ) or 0
            for offset, payment in enumerate(changes.new_payments):
                session.add(PaymentRecordModel.from_dto(application_id, position + offset, payment))
        if changes.new_review is not None:
            session.add(ReviewRecordModel.from_dto(application_id, changes.new_review))
        if changes.new_audit is not None:
            session.add(AuditRecordModel.from_dto(application_id, changes.new_audit))
        if changes.new_approval is not None:
            session.add(ApprovalModel.from_dto(application_id, changes.new_approval))
