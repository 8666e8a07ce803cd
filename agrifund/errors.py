"""
Error kinds raised by the lifecycle, reconciliation and statistics services.

Every error carries a stable ``kind`` string plus a human-readable message,
so the HTTP layer can register one handler and callers can render the reason
directly.

Usage:
    from agrifund.errors import NotFoundError, PolicyError

    raise NotFoundError("Project", project_id)
    raise PolicyError("Only submitted projects can be edited", current_status="active")
"""
from typing import Optional


class AgrifundError(Exception):
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AgrifundError):
    """Malformed or missing input (no payout address, goal below minimum, bad amount)."""

    kind = "validation_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(AgrifundError):
    kind = "not_found"

    def __init__(self, resource: str, resource_id=None):
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource} not found"
        if resource_id is not None:
            msg = f"{resource} {resource_id} not found"
        super().__init__(msg)


class ConflictError(AgrifundError):
    """A unique value already exists, or the record is already in the requested state."""

    kind = "conflict"

    def __init__(self, resource: str, field: str, value=None, message: Optional[str] = None):
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class AuthorizationError(AgrifundError):
    kind = "authorization_error"


class PolicyError(AgrifundError):
    """The action is not allowed for the record's current lifecycle state."""

    kind = "policy_error"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class ExternalDependencyError(AgrifundError):
    """A ledger call failed or timed out."""

    kind = "external_dependency_error"

    def __init__(self, operation: str, reason: str, retryable: bool = True):
        self.operation = operation
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"{operation} failed: {reason}")
