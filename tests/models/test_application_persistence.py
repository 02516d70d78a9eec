"""
SqlAlchemyApplicationRepository and the gacp_* ORM models.

Runs against SQLite in-memory by default, or DATABASE_URL when set.
"""

from dataclasses import replace
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

from gacp_kernel.domain.application import PaymentStatus, TransitionType
from gacp_kernel.domain.states import PaymentMilestone, WorkflowState
from gacp_kernel.exceptions import (
    ApplicationAlreadyExistsError,
    ApplicationNotFoundError,
    ConcurrentModificationError,
    DuplicateApplicationNumberError,
    DuplicatePaymentError,
    ImmutabilityViolationError,
)
from gacp_kernel.models.application import PaymentRecordModel, WorkflowHistoryModel
from gacp_kernel.services.repository import ApplicationChanges


def _next_entry(application, **overrides):
    entry = replace(
        application.workflow_history[-1],
        sequence=len(application.workflow_history) + 1,
        from_state=application.current_state,
        to_state=application.current_state,
        transition_type=TransitionType.NORMAL,
    )
    return replace(entry, **overrides)


class TestRoundTrip:

    def test_draft_round_trip(self, sql_workflow, sql_repository):
        app = sql_workflow.new_application(herbs=("turmeric", "kratom"))

        loaded = sql_repository.load(app.application_id)

        assert loaded.application_number == app.application_number
        assert loaded.herbs == ("turmeric", "kratom")
        assert [d.document_type for d in loaded.documents] == [
            d.document_type for d in app.documents
        ]
        assert loaded.version == 0
        assert loaded.workflow_history == ()

    def test_commits_visible_after_reload(self, sql_workflow, sql_repository):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.to_reviewing(app_id)
        sql_workflow.approve_review(app_id)

        loaded = sql_repository.load(app_id)

        assert loaded.current_state == WorkflowState.PAYMENT_PENDING_AUDIT
        assert loaded.submitted_at is not None
        assert [p.status for p in loaded.payments] == [
            PaymentStatus.PENDING, PaymentStatus.COMPLETED,
        ]
        assert loaded.reviews[0].overall_score == Decimal("85")
        assert loaded.reviews[0].checklist["coa_validity"] == Decimal("85")
        assert loaded.workflow_history[-1].metadata["review_round"] == 1
        assert [e.sequence for e in loaded.workflow_history] == list(
            range(1, len(loaded.workflow_history) + 1)
        )

    def test_add_twice(self, sql_workflow, sql_repository):
        app = sql_workflow.new_application()
        with pytest.raises(ApplicationAlreadyExistsError):
            sql_repository.add(app)

    def test_unknown_id(self, sql_repository):
        with pytest.raises(ApplicationNotFoundError):
            sql_repository.load(uuid4())


class TestApplicationNumbers:

    def test_ids_sharing_low_digits_get_distinct_numbers(self, sql_engine, farmer):
        first = sql_engine.open_application(
            farmer_id=farmer.actor_id, application_id=UUID(int=10**30 + 123456),
        )
        second = sql_engine.open_application(
            farmer_id=farmer.actor_id, application_id=UUID(int=2 * 10**30 + 123456),
        )

        assert first.application_number == "GACP-2024-000001"
        assert second.application_number == "GACP-2024-000002"

    def test_serials_are_per_year(self, sql_repository):
        assert sql_repository.next_application_serial(2024) == 1
        assert sql_repository.next_application_serial(2024) == 2
        assert sql_repository.next_application_serial(2025) == 1

    def test_explicit_number_taken(self, sql_engine, farmer):
        sql_engine.open_application(farmer_id=farmer.actor_id, application_number="GACP-2024-000777")

        with pytest.raises(DuplicateApplicationNumberError) as exc_info:
            sql_engine.open_application(
                farmer_id=farmer.actor_id, application_number="GACP-2024-000777",
            )

        assert exc_info.value.application_number == "GACP-2024-000777"

    def test_in_memory_repository_matches(self, engine, repository, farmer):
        first = engine.open_application(farmer_id=farmer.actor_id)
        assert first.application_number == "GACP-2024-000001"

        with pytest.raises(DuplicateApplicationNumberError):
            engine.open_application(
                farmer_id=farmer.actor_id, application_number=first.application_number,
            )
        assert len(repository) == 1


class TestCompareAndSet:

    def test_stale_version_rejected(self, sql_workflow, sql_repository):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.move(app_id, WorkflowState.SUBMITTED, sql_workflow.farmer)
        stale = sql_repository.load(app_id)
        sql_workflow.move(app_id, WorkflowState.PAYMENT_PENDING_INITIAL)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            sql_repository.commit(
                app_id,
                stale.current_state,
                stale.version,
                _next_entry(stale, to_state=WorkflowState.DRAFT),
                ApplicationChanges(new_state=WorkflowState.DRAFT, rejection_count=0),
            )

        assert exc_info.value.code == "CONCURRENT_MODIFICATION"
        current = sql_repository.load(app_id)
        assert current.current_state == WorkflowState.PAYMENT_PENDING_INITIAL
        assert len(current.workflow_history) == 2

    def test_unknown_application_on_commit(self, sql_workflow, sql_repository):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.move(app_id, WorkflowState.SUBMITTED, sql_workflow.farmer)
        current = sql_repository.load(app_id)

        with pytest.raises(ApplicationNotFoundError):
            sql_repository.commit(
                uuid4(),
                current.current_state,
                current.version,
                _next_entry(current),
                ApplicationChanges(new_state=current.current_state, rejection_count=0),
            )


class TestDuplicatePaymentIndex:

    def test_second_completed_row_rolls_back(self, sql_workflow, sql_repository):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.submit(app_id)
        paid = sql_workflow.pay(app_id, PaymentMilestone.INITIAL)
        current = sql_repository.load(app_id)

        with pytest.raises(DuplicatePaymentError) as exc_info:
            sql_repository.commit(
                app_id,
                current.current_state,
                current.version,
                _next_entry(current, action="payment_completed"),
                ApplicationChanges(
                    new_state=current.current_state,
                    rejection_count=current.rejection_count,
                    new_payments=(replace(paid.payment, payment_id=uuid4()),),
                ),
            )

        assert exc_info.value.milestone == "initial"
        after = sql_repository.load(app_id)
        assert after.version == current.version
        assert len(after.workflow_history) == len(current.workflow_history)


class TestAppendOnlyRows:

    def test_history_update_refused(self, sql_workflow, sql_session_factory):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.move(app_id, WorkflowState.SUBMITTED, sql_workflow.farmer)

        with sql_session_factory() as session:
            row = session.scalars(
                select(WorkflowHistoryModel).where(WorkflowHistoryModel.application_id == app_id)
            ).first()
            row.action = "rewritten"
            with pytest.raises(ImmutabilityViolationError) as exc_info:
                session.flush()
            session.rollback()

        assert "append-only" in str(exc_info.value)
        assert exc_info.value.entity_type == "WorkflowHistoryEntry"

    def test_payment_delete_refused(self, sql_workflow, sql_session_factory):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.submit(app_id)
        sql_workflow.pay(app_id, PaymentMilestone.INITIAL)

        with sql_session_factory() as session:
            row = session.scalars(
                select(PaymentRecordModel).where(PaymentRecordModel.application_id == app_id)
            ).first()
            session.delete(row)
            with pytest.raises(ImmutabilityViolationError) as exc_info:
                session.flush()
            session.rollback()

        assert "cannot delete" in str(exc_info.value)


class TestSqlCertification:

    def test_happy_path_on_sql(self, sql_workflow, sql_repository):
        app_id = sql_workflow.new_application().application_id
        sql_workflow.to_approval_pending(app_id)
        sql_workflow.approve(app_id)
        sql_workflow.move(app_id, WorkflowState.CERTIFICATE_ISSUED)

        loaded = sql_repository.load(app_id)

        assert loaded.current_state == WorkflowState.CERTIFICATE_ISSUED
        assert loaded.certificate.certificate_id == f"CERT-{loaded.application_number}"
        assert loaded.approval is not None
        assert len(loaded.audits) == 1
