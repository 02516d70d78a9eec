"""
Pytest fixtures for the GACP workflow test suite.

Provides:
- Structured logging configured once per session, plus log capture
- A deterministic clock and the compiled default configuration
- In-memory and SQLAlchemy repositories (SQLite in-memory by default,
  PostgreSQL when DATABASE_URL is set)
- Recording fakes for the payment gateway, notifications, staff
  assignment and certificate issuer
- ``workflow``: a driver that walks an application through the common
  steps with valid decision payloads

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL for the tests marked ``postgres``.
"""

import itertools
import json
import logging
import os
import threading
from datetime import datetime, timezone
from io import StringIO
from uuid import UUID, uuid4

import pytest

from gacp_config import clear_config_cache, get_active_config
from gacp_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from gacp_kernel.domain.application import (
    Actor,
    DocumentRef,
    DocumentType,
    PaymentStatus,
)
from gacp_kernel.domain.clock import DeterministicClock
from gacp_kernel.domain.states import ActorRole, PaymentMilestone, WorkflowState
from gacp_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from gacp_kernel.services.repository import InMemoryApplicationRepository
from gacp_kernel.services.sql_repository import SqlAlchemyApplicationRepository
from gacp_services.collaborators import GeneratedCertificate, PaymentHandle
from gacp_services.workflow_engine import WorkflowEngine

SQLITE_MEMORY_URL = "sqlite://"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture gacp logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, engine):
            engine.transition(...)
            logs = captured_logs()
            assert any(r["message"] == "workflow_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("gacp")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Configuration and time
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def workflow_config():
    clear_config_cache()
    return get_active_config()


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakePaymentGateway:
    """Gateway whose payments resolve to ``next_status`` unless overridden."""

    def __init__(self):
        self.next_status = PaymentStatus.COMPLETED
        self.statuses: dict[UUID, PaymentStatus] = {}
        self.requests: list[PaymentHandle] = []
        self.fail_create = False
        self.fail_check = False
        self._refs = itertools.count(1)

    def create_request(self, milestone, amount, application_id):
        if self.fail_create:
            raise ConnectionError("gateway unreachable")
        handle = PaymentHandle(
            payment_id=uuid4(),
            application_id=application_id,
            milestone=milestone,
            amount=amount,
            gateway_reference=f"PG-{next(self._refs):05d}",
        )
        self.requests.append(handle)
        return handle

    def check_status(self, handle):
        if self.fail_check:
            raise ConnectionError("gateway timeout")
        return self.statuses.get(handle.payment_id, self.next_status)


class RecordingNotifications:

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def notify(self, recipient, event_type, payload):
        with self._lock:
            self.sent.append((recipient, event_type, dict(payload)))

    def events(self, event_type=None, recipient=None):
        return [
            entry for entry in self.sent
            if (event_type is None or entry[1] == event_type)
            and (recipient is None or entry[0] == recipient)
        ]


class FakeAssignments:
    """Returns a fixed staff id per role; ``None`` marks the role as unstaffed."""

    def __init__(self):
        self.staff: dict[ActorRole, UUID | None] = {
            ActorRole.REVIEWER: uuid4(),
            ActorRole.AUDITOR: uuid4(),
            ActorRole.APPROVER: uuid4(),
        }
        self.calls: list[tuple[ActorRole, UUID]] = []

    def _assign(self, role, application_id):
        self.calls.append((role, application_id))
        return self.staff[role]

    def assign_reviewer(self, application_id):
        return self._assign(ActorRole.REVIEWER, application_id)

    def assign_auditor(self, application_id):
        return self._assign(ActorRole.AUDITOR, application_id)

    def assign_approver(self, application_id):
        return self._assign(ActorRole.APPROVER, application_id)


class FakeCertificateIssuer:

    def __init__(self):
        self.generated: list[UUID] = []
        self.fail = False

    def generate(self, application):
        if self.fail:
            raise OSError("certificate template missing")
        self.generated.append(application.application_id)
        return GeneratedCertificate(
            certificate_id=f"CERT-{application.application_number}",
            path=f"/certificates/{application.application_id}.pdf",
        )


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def assignments():
    return FakeAssignments()


@pytest.fixture
def certificate_issuer():
    return FakeCertificateIssuer()


# =============================================================================
# Repositories and engine
# =============================================================================


@pytest.fixture
def repository():
    return InMemoryApplicationRepository()


@pytest.fixture
def sql_session_factory():
    """Fresh schema on SQLite in-memory, or on DATABASE_URL when set."""
    init_engine_from_url(os.environ.get("DATABASE_URL", SQLITE_MEMORY_URL))
    drop_tables()
    create_tables()
    yield get_session_factory()
    drop_tables()
    reset_engine()


@pytest.fixture
def sql_repository(sql_session_factory):
    return SqlAlchemyApplicationRepository(sql_session_factory)


def _build_engine(config, repository, clock, gateway, issuer, notifications, assignments):
    return WorkflowEngine(
        config,
        repository,
        payment_gateway=gateway,
        certificate_issuer=issuer,
        notifications=notifications,
        assignments=assignments,
        clock=clock,
    )


@pytest.fixture
def engine(
    workflow_config, repository, clock, payment_gateway, certificate_issuer,
    notifications, assignments,
):
    return _build_engine(
        workflow_config, repository, clock, payment_gateway, certificate_issuer,
        notifications, assignments,
    )


@pytest.fixture
def sql_engine(
    workflow_config, sql_repository, clock, payment_gateway, certificate_issuer,
    notifications, assignments,
):
    return _build_engine(
        workflow_config, sql_repository, clock, payment_gateway, certificate_issuer,
        notifications, assignments,
    )


# =============================================================================
# Actors and payloads
# =============================================================================


@pytest.fixture
def farmer():
    return Actor(actor_id=uuid4(), role=ActorRole.FARMER, name="Somchai")


@pytest.fixture
def reviewer():
    return Actor(actor_id=uuid4(), role=ActorRole.REVIEWER)


@pytest.fixture
def auditor():
    return Actor(actor_id=uuid4(), role=ActorRole.AUDITOR)


@pytest.fixture
def approver():
    return Actor(actor_id=uuid4(), role=ActorRole.APPROVER)


@pytest.fixture
def system_actor():
    return Actor(actor_id=uuid4(), role=ActorRole.SYSTEM)


def make_document(document_type, mime_type="application/pdf", size_bytes=250_000, active=True):
    return DocumentRef(
        document_id=uuid4(),
        document_type=document_type,
        file_name=f"{document_type.value}.pdf",
        mime_type=mime_type,
        size_bytes=size_bytes,
        active=active,
    )


def required_documents():
    return tuple(
        make_document(t) for t in (DocumentType.SOP, DocumentType.COA, DocumentType.LAND_RIGHTS)
    )


def review_payload(status="approved", score=85, comments=""):
    return {
        "status": status,
        "checklist": {
            "document_completeness": score,
            "sop_compliance": score,
            "coa_validity": score,
            "land_rights_valid": score,
        },
        "comments": comments,
    }


def audit_payload(result="pass", score=90, audit_type="onsite", findings=""):
    return {
        "audit_type": audit_type,
        "result": result,
        "checklist": {
            "gmp_compliance": score,
            "facility_standards": score,
            "documentation_accuracy": score,
            "staff_competency": score,
            "quality_control": score,
        },
        "findings": findings,
    }


@pytest.fixture
def documents():
    return required_documents


@pytest.fixture
def payloads():
    """Decision payload builders: ``payloads.review(...)``, ``payloads.audit(...)``."""

    class _Payloads:
        review = staticmethod(review_payload)
        audit = staticmethod(audit_payload)
        document = staticmethod(make_document)

    return _Payloads


# =============================================================================
# Workflow driver
# =============================================================================


class WorkflowDriver:
    """Walks an application through common steps, asserting each commits."""

    def __init__(self, engine, farmer, reviewer, auditor, approver, system_actor):
        self.engine = engine
        self.farmer = farmer
        self.reviewer = reviewer
        self.auditor = auditor
        self.approver = approver
        self.system = system_actor

    def _ok(self, outcome):
        assert outcome.success, outcome.failure
        return outcome

    def new_application(self, herbs=("turmeric",), documents=None):
        return self.engine.open_application(
            farmer_id=self.farmer.actor_id,
            herbs=tuple(herbs),
            documents=required_documents() if documents is None else documents,
        )

    def move(self, app_id, to_state, actor=None, **context):
        return self._ok(self.engine.transition(app_id, to_state, actor or self.system, context))

    def pay(self, app_id, milestone):
        requested = self.engine.request_payment(app_id, milestone, self.farmer)
        assert requested.success, requested.failure
        confirmed = self.engine.confirm_payment(app_id, requested.payment.payment_id, self.farmer)
        assert confirmed.success, confirmed.failure
        return confirmed

    def submit(self, app_id):
        self.move(app_id, WorkflowState.SUBMITTED, self.farmer)
        return self.move(app_id, WorkflowState.PAYMENT_PENDING_INITIAL)

    def to_reviewing(self, app_id):
        self.submit(app_id)
        self.pay(app_id, PaymentMilestone.INITIAL)
        return self.move(app_id, WorkflowState.REVIEWING)

    def reject(self, app_id):
        return self.engine.transition(
            app_id, WorkflowState.REJECTED, self.reviewer,
            {"review": review_payload("rejected", 40, "missing COA signatures")},
        )

    def approve_review(self, app_id, score=85):
        return self.move(
            app_id, WorkflowState.PAYMENT_PENDING_AUDIT, self.reviewer,
            review=review_payload("approved", score),
        )

    def to_auditing(self, app_id):
        self.to_reviewing(app_id)
        self.approve_review(app_id)
        self.pay(app_id, PaymentMilestone.AUDIT)
        return self.move(app_id, WorkflowState.AUDITING)

    def record_audit(self, app_id, to_state, result, score):
        return self.engine.transition(
            app_id, to_state, self.auditor, {"audit": audit_payload(result, score)},
        )

    def to_approval_pending(self, app_id):
        self.to_auditing(app_id)
        return self._ok(self.record_audit(app_id, WorkflowState.APPROVAL_PENDING, "pass", 90))

    def approve(self, app_id):
        return self.move(
            app_id, WorkflowState.APPROVED, self.approver,
            approval={"decision": "approved", "comments": "meets GACP standard"},
        )


@pytest.fixture
def workflow(engine, farmer, reviewer, auditor, approver, system_actor):
    return WorkflowDriver(engine, farmer, reviewer, auditor, approver, system_actor)


@pytest.fixture
def sql_workflow(sql_engine, farmer, reviewer, auditor, approver, system_actor):
    return WorkflowDriver(sql_engine, farmer, reviewer, auditor, approver, system_actor)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
