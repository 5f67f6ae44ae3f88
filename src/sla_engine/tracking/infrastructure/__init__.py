"""
Tracking Infrastructure Layer
=============================

Infrastructure implementations for the tracking module:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and policy catalogs
- External: Webhook sink, catalog watcher, sweep scheduler
"""

from sla_engine.tracking.infrastructure.models import (
    TimerEventModel,
    TimerInstanceModel,
    ViolationModel,
)
from sla_engine.tracking.infrastructure.repositories import (
    InMemoryPolicyCatalog,
    InMemoryTimerEventRepository,
    InMemoryTimerRepository,
    InMemoryViolationRepository,
    SQLAlchemyTimerEventRepository,
    SQLAlchemyTimerRepository,
    SQLAlchemyViolationRepository,
    YAMLPolicyCatalog,
)
from sla_engine.tracking.infrastructure.external import (
    CircuitBreaker,
    LoggingEscalationSink,
    PolicyCatalogWatcher,
    TrackingScheduler,
    WebhookEscalationSink,
)

__all__ = [
    "TimerInstanceModel",
    "TimerEventModel",
    "ViolationModel",
    "SQLAlchemyTimerRepository",
    "SQLAlchemyTimerEventRepository",
    "SQLAlchemyViolationRepository",
    "InMemoryTimerRepository",
    "InMemoryTimerEventRepository",
    "InMemoryViolationRepository",
    "InMemoryPolicyCatalog",
    "YAMLPolicyCatalog",
    "CircuitBreaker",
    "WebhookEscalationSink",
    "LoggingEscalationSink",
    "PolicyCatalogWatcher",
    "TrackingScheduler",
]
