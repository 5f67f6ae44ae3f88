"""
Core Exceptions
================

Custom exceptions for the tracking engine.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Per-instance failures are
isolated by the engine; only the catalog-level failure is treated as fatal for
event intake.
"""

from typing import Optional, Any


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class InvalidCalendar(DomainException):
    """Malformed working-hours configuration on a tracking policy."""


class InvalidRule(ValidationException):
    """A stored rule tree could not be parsed."""


class ConditionEvaluationMismatch(DomainException):
    """
    A rule leaf referenced a missing field or mixed incompatible types.

    Never raised to callers; the evaluator builds one for its debug log and
    treats the leaf as false.
    """

    def __init__(self, field: str, operator: str, reason: str, value: Any = None):
        self.field = field
        self.operator = operator
        self.reason = reason
        super().__init__(
            f"Condition {field} {operator} not evaluable: {reason}",
            {"field": field, "operator": operator, "value": repr(value)}
        )


class InvalidTransition(DomainException):
    """A timer was asked to make a move its state machine forbids."""

    def __init__(self, timer_id: str, status: str, action: str):
        self.timer_id = timer_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} timer {timer_id} in status {status}",
            {"timer_id": timer_id, "status": status, "action": action}
        )


class PersistenceFailure(RepositoryException):
    """Writing a timer snapshot, event or violation failed."""


class DispatchFailure(ExternalServiceException):
    """Delivering an escalation command failed."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Escalation Dispatch", message, details)


class PolicyCatalogUnavailable(ExternalServiceException):
    """The policy catalog cannot be queried at all."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Policy Catalog", message, details)
