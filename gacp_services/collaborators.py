"""
gacp_services.collaborators -- ports to the systems the engine drives.

Responsibility:
    Structural protocols for the payment gateway, notification service,
    staff assignment service and certificate issuer, plus the recipient
    addressing used for notifications.  Implementations live outside this
    package; ``LoggingNotificationService`` is the only one shipped.

Architecture position:
    Services layer.  The engine depends on these protocols only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, runtime_checkable
from uuid import UUID

from gacp_kernel.domain.application import Actor, Application, PaymentStatus
from gacp_kernel.domain.states import ActorRole, PaymentMilestone
from gacp_kernel.domain.values import Money
from gacp_kernel.logging_config import get_logger

logger = get_logger("services.notifications")

ADMINISTRATORS = "role:admin"

# Actor used for engine-initiated recoveries (staff shortage, downtime).
SYSTEM_ACTOR = Actor(actor_id=UUID(int=0), role=ActorRole.SYSTEM, name="gacp-workflow")


def role_recipient(role: ActorRole) -> str:
    return f"role:{role.value}"


def actor_recipient(actor_id: UUID) -> str:
    return f"actor:{actor_id}"


@dataclass(frozen=True)
class PaymentHandle:
    """Gateway-side reference to one payment request."""

    payment_id: UUID
    application_id: UUID
    milestone: PaymentMilestone
    amount: Money
    gateway_reference: str | None = None


@dataclass(frozen=True)
class GeneratedCertificate:
    certificate_id: str
    path: str


@runtime_checkable
class PaymentGateway(Protocol):
    def create_request(
        self, milestone: PaymentMilestone, amount: Money, application_id: UUID,
    ) -> PaymentHandle:
        ...

    def check_status(self, handle: PaymentHandle) -> PaymentStatus:
        ...


@runtime_checkable
class NotificationService(Protocol):
    """Fire-and-forget delivery to an actor (``actor:<id>``) or a role
    (``role:<name>``)."""

    def notify(self, recipient: str, event_type: str, payload: Mapping[str, Any]) -> None:
        ...


@runtime_checkable
class AssignmentService(Protocol):
    """Each method returns the assigned staff id or None when nobody is free."""

    def assign_reviewer(self, application_id: UUID) -> UUID | None:
        ...

    def assign_auditor(self, application_id: UUID) -> UUID | None:
        ...

    def assign_approver(self, application_id: UUID) -> UUID | None:
        ...


@runtime_checkable
class CertificateIssuer(Protocol):
    """Called before the commit; a lost race leaves the generated certificate
    unrecorded (logged as ``certificate_orphaned``), so implementations should
    return the same certificate when asked again for the same application."""

    def generate(self, application: Application) -> GeneratedCertificate:
        ...


class LoggingNotificationService:
    """Writes every notification to the ``gacp.services.notifications`` log."""

    def notify(self, recipient: str, event_type: str, payload: Mapping[str, Any]) -> None:
        logger.info(
            "notification",
            extra={
                "recipient": recipient,
                "event_type": event_type,
                "payload": dict(payload),
            },
        )
