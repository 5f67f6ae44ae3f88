"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from sla_engine.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    InvalidCalendar,
    InvalidRule,
    ConditionEvaluationMismatch,
    InvalidTransition,
    PersistenceFailure,
    DispatchFailure,
    PolicyCatalogUnavailable,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "InvalidCalendar",
    "InvalidRule",
    "ConditionEvaluationMismatch",
    "InvalidTransition",
    "PersistenceFailure",
    "DispatchFailure",
    "PolicyCatalogUnavailable",
]
