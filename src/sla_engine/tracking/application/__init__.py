"""
Tracking Application Layer
==========================

Application layer for the tracking module.

Contains:
- Services: Timer state machine, escalation checks, reporting
- Engine: Event intake, sweeps, per-timer serialization and delivery
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and collaborator interfaces,
but not on concrete infrastructure implementations.
"""

from sla_engine.tracking.application.dto import (
    CancelRequest,
    CancelResponse,
    CaseEventDTO,
    ComplianceResponse,
    EventIngestRequest,
    EventOutcome,
    IngestResponse,
    SweepResponse,
    TimerEventResponse,
    TimerResponse,
    ViolationAnnotationRequest,
    ViolationResponse,
)
from sla_engine.tracking.application.engine import (
    DeadLetter,
    IntakeResult,
    KeyedLockRegistry,
    OutboundQueue,
    SweepResult,
    TrackingEngine,
)
from sla_engine.tracking.application.services import (
    ComplianceService,
    ComplianceSummary,
    EscalationDispatcher,
    IClock,
    IEscalationSink,
    IPolicyCatalog,
    ITimerEventRepository,
    ITimerRepository,
    IViolationRepository,
    SystemClock,
    TimerInstanceManager,
    TimerUpdate,
    ViolationReviewService,
)

__all__ = [
    # DTOs
    "CaseEventDTO",
    "EventIngestRequest",
    "ViolationAnnotationRequest",
    "CancelRequest",
    "EventOutcome",
    "IngestResponse",
    "TimerResponse",
    "TimerEventResponse",
    "ViolationResponse",
    "SweepResponse",
    "CancelResponse",
    "ComplianceResponse",
    # Engine
    "TrackingEngine",
    "KeyedLockRegistry",
    "OutboundQueue",
    "DeadLetter",
    "IntakeResult",
    "SweepResult",
    # Services
    "TimerInstanceManager",
    "TimerUpdate",
    "EscalationDispatcher",
    "ComplianceService",
    "ComplianceSummary",
    "ViolationReviewService",
    "SystemClock",
    # Interfaces
    "IClock",
    "IPolicyCatalog",
    "ITimerRepository",
    "ITimerEventRepository",
    "IViolationRepository",
    "IEscalationSink",
]
