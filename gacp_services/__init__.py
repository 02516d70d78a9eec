"""
gacp_services -- orchestration layer.

Responsibility:
    ``WorkflowEngine`` and the ports it drives: payment gateway,
    notifications, staff assignment, certificate issuer, plus the
    best-effort side-effect dispatcher.

Architecture position:
    Top layer.  May import gacp_kernel, gacp_engines and gacp_config.
"""

from gacp_services.collaborators import (
    ADMINISTRATORS,
    SYSTEM_ACTOR,
    AssignmentService,
    CertificateIssuer,
    GeneratedCertificate,
    LoggingNotificationService,
    NotificationService,
    PaymentGateway,
    PaymentHandle,
    actor_recipient,
    role_recipient,
)
from gacp_services.side_effects import SideEffect, SideEffectDispatcher
from gacp_services.workflow_engine import WorkflowEngine

__all__ = [
    "ADMINISTRATORS",
    "AssignmentService",
    "CertificateIssuer",
    "GeneratedCertificate",
    "LoggingNotificationService",
    "NotificationService",
    "PaymentGateway",
    "PaymentHandle",
    "SYSTEM_ACTOR",
    "SideEffect",
    "SideEffectDispatcher",
    "WorkflowEngine",
    "actor_recipient",
    "role_recipient",
]
