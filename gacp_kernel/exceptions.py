"""
Typed exception hierarchy for the GACP workflow kernel.

Every exception carries a class-level machine-readable ``code`` and stores
its context as attributes, so callers catch by type and read structured
data instead of parsing messages.

Only genuinely exceptional conditions are raised.  Expected workflow
outcomes (invalid transition, role mismatch, unmet guard, business-rule
violation, duplicate payment, concurrent modification) are returned to the
caller as ``TransitionOutcome`` values; see ``gacp_kernel.domain.outcomes``.

Hierarchy:

    GacpKernelError (base)
    |
    +-- ApplicationError
    |   +-- ApplicationNotFoundError
    |   +-- ApplicationAlreadyExistsError
    |
    +-- WorkflowConfigError
    |
    +-- GuardError
    |   +-- UnknownGuardError
    |   +-- GuardEvaluationError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- PaymentError
    |   +-- DuplicatePaymentError
    |   +-- PaymentGatewayError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- WorkflowSystemError

Codes:

    APPLICATION_NOT_FOUND        Application id unknown to the repository
    APPLICATION_ALREADY_EXISTS   Intake added the same id twice
    WORKFLOW_CONFIG_INVALID      Configuration set failed validation
    UNKNOWN_GUARD                Guard name has no registered predicate
    GUARD_EVALUATION_FAILED      Guard predicate raised
    CONCURRENT_MODIFICATION      Compare-and-set commit lost a race
    DUPLICATE_PAYMENT            Second completed payment for a milestone
    PAYMENT_GATEWAY_ERROR        Payment collaborator failed
    IMMUTABILITY_VIOLATION       Append-only row updated or deleted
    WORKFLOW_SYSTEM_ERROR        Unexpected collaborator failure
"""


class GacpKernelError(Exception):
    """Base exception for all GACP kernel errors."""

    code: str = "GACP_KERNEL_ERROR"


# Application-related exceptions


class ApplicationError(GacpKernelError):
    code: str = "APPLICATION_ERROR"


class ApplicationNotFoundError(ApplicationError):
    """Application with the given id was not found."""

    code: str = "APPLICATION_NOT_FOUND"

    def __init__(self, application_id: str):
        self.application_id = str(application_id)
        super().__init__(f"Application not found: {application_id}")


class ApplicationAlreadyExistsError(ApplicationError):
    code: str = "APPLICATION_ALREADY_EXISTS"

    def __init__(self, application_id: str):
        self.application_id = str(application_id)
        super().__init__(f"Application already exists: {application_id}")


class DuplicateApplicationNumberError(ApplicationError):
    """Another application already holds this application number."""

    code: str = "DUPLICATE_APPLICATION_NUMBER"

    def __init__(self, application_number: str):
        self.application_number = application_number
        super().__init__(f"Application number already in use: {application_number}")


# Configuration


class WorkflowConfigError(GacpKernelError):
    """A workflow configuration set could not be loaded or failed validation."""

    code: str = "WORKFLOW_CONFIG_INVALID"

    def __init__(self, config_id: str, errors: list[str]):
        self.config_id = config_id
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        more = f" (+{len(self.errors) - 5} more)" if len(self.errors) > 5 else ""
        super().__init__(f"Configuration {config_id} is invalid: {summary}{more}")


# Guard-related exceptions


class GuardError(GacpKernelError):
    code: str = "GUARD_ERROR"


class UnknownGuardError(GuardError):
    """Guard name is not part of the registered catalogue."""

    code: str = "UNKNOWN_GUARD"

    def __init__(self, guard_name: str):
        self.guard_name = str(guard_name)
        super().__init__(f"Unknown guard: {guard_name}")


class GuardEvaluationError(GuardError):
    """A guard predicate raised while evaluating an application snapshot."""

    code: str = "GUARD_EVALUATION_FAILED"

    def __init__(self, guard_name: str, application_id: str, cause: str):
        self.guard_name = str(guard_name)
        self.application_id = str(application_id)
        self.cause = cause
        super().__init__(
            f"Guard {guard_name} failed for application {application_id}: {cause}"
        )


# Concurrency-related exceptions


class ConcurrencyError(GacpKernelError):
    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """Compare-and-set commit found a different persisted state or version."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, application_id: str, expected_state: str, expected_version: int):
        self.application_id = str(application_id)
        self.expected_state = expected_state
        self.expected_version = expected_version
        super().__init__(
            f"Application {application_id} was modified concurrently: "
            f"expected state {expected_state} at version {expected_version}"
        )


# Payment-related exceptions


class PaymentError(GacpKernelError):
    code: str = "PAYMENT_ERROR"


class DuplicatePaymentError(PaymentError):
    """A completed payment already exists for this milestone and round."""

    code: str = "DUPLICATE_PAYMENT"

    def __init__(self, application_id: str, milestone: str, payment_round: int):
        self.application_id = str(application_id)
        self.milestone = milestone
        self.payment_round = payment_round
        super().__init__(
            f"Application {application_id} already has a completed "
            f"{milestone} payment for round {payment_round}"
        )


class PaymentGatewayError(PaymentError):
    """The payment gateway collaborator failed."""

    code: str = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, application_id: str, operation: str, cause: str):
        self.application_id = str(application_id)
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Payment gateway {operation} failed for application {application_id}: {cause}"
        )


# Immutability-related exceptions


class ImmutabilityError(GacpKernelError):
    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Workflow history, payment, review, audit and approval rows are never
    updated or deleted once written.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# System errors


class WorkflowSystemError(GacpKernelError):
    """
    Unexpected failure surfaced to the caller as a genuine exception.

    Raised after administrators were notified.  The original exception is
    chained as ``__cause__``.
    """

    code: str = "WORKFLOW_SYSTEM_ERROR"

    def __init__(self, application_id: str, operation: str, cause: str):
        self.application_id = str(application_id)
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"System error during {operation} for application {application_id}: {cause}"
        )
