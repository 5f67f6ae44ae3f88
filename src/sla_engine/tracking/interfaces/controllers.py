"""
Tracking Controllers (API Routes)
=================================

FastAPI routes for the tracking engine.

Controllers are thin - they delegate to the engine and application services.
The engine, repositories and clock are built once at startup and read from
app.state.
"""

import time
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from sla_engine.config import Severity
from sla_engine.core import PolicyCatalogUnavailable
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.tracking.application import (
    CancelRequest,
    CancelResponse,
    ComplianceResponse,
    ComplianceService,
    EventIngestRequest,
    EventOutcome,
    IClock,
    IngestResponse,
    ITimerRepository,
    IViolationRepository,
    SweepResponse,
    TimerEventResponse,
    TimerResponse,
    TrackingEngine,
    ViolationAnnotationRequest,
    ViolationResponse,
    ViolationReviewService,
)
from sla_engine.tracking.application.dto import SeverityStr
from sla_engine.tracking.domain import ensure_utc

logger = get_logger(__name__)
router = APIRouter(prefix="/tracking", tags=["Commitment Tracking"])


# ========== Example payloads for Swagger ==========

CASE_EVENT_EXAMPLE = {
    "case_id": "CASE-001",
    "tenant_id": "default",
    "event_type": "created",
    "timestamp": "2024-01-15T10:00:00Z",
    "snapshot": {
        "priority": "high",
        "status": "open",
        "category": "network"
    },
    "actor_id": None
}

INGEST_RESPONSE_EXAMPLE = {
    "processed": 1,
    "failed": 0,
    "outcomes": [
        {
            "case_id": "CASE-001",
            "started": 2,
            "transitions": 0,
            "violations": 0,
            "escalations": 0,
            "failed": 0,
            "error": None
        }
    ]
}

TIMER_RESPONSE_EXAMPLE = {
    "id": "5b0c6f7e-3f1a-4a57-9a59-5f3f3c1f8f0e",
    "case_id": "CASE-001",
    "tenant_id": "default",
    "metric": "response_time",
    "policy_id": "high-priority",
    "policy_version": 1,
    "status": "running",
    "target_minutes": 240,
    "elapsed_minutes": 60,
    "remaining_minutes": 180,
    "paused_minutes": 0,
    "progress_percent": 25.0,
    "is_breached": False,
    "breach_minutes": 0,
    "breach_percentage": 0.0,
    "escalation_level": 0,
    "started_at": "2024-01-15T10:00:00Z",
    "due_at": "2024-01-15T14:00:00Z"
}


# ========== Dependencies ==========

def get_engine(request: Request) -> TrackingEngine:
    """Tracking engine built at startup."""
    return request.app.state.engine


def get_violation_repository(request: Request) -> IViolationRepository:
    return request.app.state.violation_repository


def get_compliance_service(request: Request) -> ComplianceService:
    timer_repo: ITimerRepository = request.app.state.timer_repository
    return ComplianceService(timer_repo)


def get_review_service(request: Request) -> ViolationReviewService:
    clock: IClock = request.app.state.clock
    return ViolationReviewService(request.app.state.violation_repository, clock)


# ========== Route Handlers ==========

@router.post(
    "/events",
    response_model=IngestResponse,
    summary="Ingest case lifecycle events",
    description="""
    Apply a batch of case events, in order, to the case timers.

    Each event may start timers for newly applicable policies and may pause,
    resume, complete or violate the running ones.

    **Catalog outages**: when the policy catalog cannot be reached, existing
    timers are still updated but no timer is started. The event is reported
    as failed so the case system can redeliver it.

    **Event Types**: `created`, `assigned`, `status_changed`, `priority_changed`,
    `category_changed`, `commented`, `agent_response`, `customer_response`,
    `resolved`, `closed`, `deleted`

    **Example Request**:
    ```json
    {
        "events": [
            {
                "case_id": "CASE-001",
                "event_type": "created",
                "timestamp": "2024-01-15T10:00:00Z",
                "snapshot": {"priority": "high", "status": "open"}
            }
        ]
    }
    ```
    """,
    responses={
        200: {
            "description": "Events applied",
            "content": {
                "application/json": {
                    "example": INGEST_RESPONSE_EXAMPLE
                }
            }
        }
    }
)
async def ingest_events(
    payload: EventIngestRequest,
    wait: bool = Query(False, description="Return only after records and dispatches are delivered"),
    engine: TrackingEngine = Depends(get_engine)
):
    start_time = time.perf_counter()
    outcomes: List[EventOutcome] = []
    processed = 0
    failed = 0

    for dto in payload.events:
        try:
            result = await engine.handle_event(dto.to_domain())
        except PolicyCatalogUnavailable as e:
            failed += 1
            outcomes.append(EventOutcome(case_id=dto.case_id, failed=1, error=e.message))
            continue

        processed += 1
        outcomes.append(EventOutcome(
            case_id=result.case_id,
            started=result.started,
            transitions=result.transitions,
            violations=result.violations,
            escalations=result.escalations,
            failed=result.failed
        ))

    if wait:
        await engine.flush()

    logger.info(
        "Case event ingestion complete",
        extra={
            "events_processed": processed,
            "events_failed": failed,
            "processing_time_ms": int((time.perf_counter() - start_time) * 1000)
        }
    )
    return IngestResponse(processed=processed, failed=failed, outcomes=outcomes)


@router.get(
    "/cases/{case_id}/timers",
    response_model=List[TimerResponse],
    summary="Get case timers",
    description="""
    Current state of every timer of a case, one per tracked metric.

    Running timers carry `due_at`, the projected violation instant on the
    policy's business calendar.
    """,
    responses={
        200: {
            "description": "Case timers",
            "content": {
                "application/json": {
                    "example": [TIMER_RESPONSE_EXAMPLE]
                }
            }
        }
    }
)
async def get_case_timers(
    case_id: str,
    engine: TrackingEngine = Depends(get_engine)
):
    timers = await engine.case_timers(case_id)
    return [TimerResponse.from_domain(t, engine.due_at(t)) for t in timers]


@router.get(
    "/cases/{case_id}/events",
    response_model=List[TimerEventResponse],
    summary="Get case timer audit log",
    description="Append-only log of every timer transition of a case, oldest first."
)
async def get_case_events(
    case_id: str,
    engine: TrackingEngine = Depends(get_engine)
):
    events = await engine.events_for_case(case_id)
    return [TimerEventResponse.from_domain(e) for e in events]


@router.delete(
    "/cases/{case_id}/timers",
    response_model=CancelResponse,
    summary="Cancel case timers",
    description="""
    Complete every running or paused timer of the case with reason
    `cancelled`. Cancelled timers are excluded from compliance.
    """
)
async def cancel_case_timers(
    case_id: str,
    triggered_by: Optional[str] = Query(None, description="User id; defaults to system"),
    engine: TrackingEngine = Depends(get_engine)
):
    if triggered_by:
        result = await engine.cancel_case(case_id, triggered_by=triggered_by)
    else:
        result = await engine.cancel_case(case_id)
    return CancelResponse(cancelled=result.transitions)


@router.post(
    "/policies/{policy_id}/deactivate",
    response_model=CancelResponse,
    summary="Deactivate a tracking policy",
    description="""
    Publish an inactive version of the policy and cancel its live timers.

    Completed and violated timers keep their results.
    """,
    responses={
        404: {
            "description": "Policy not found"
        }
    }
)
async def deactivate_policy(
    policy_id: str,
    payload: Optional[CancelRequest] = None,
    engine: TrackingEngine = Depends(get_engine)
):
    if payload is not None and payload.triggered_by:
        cancelled = await engine.deactivate_policy(policy_id, triggered_by=payload.triggered_by)
    else:
        cancelled = await engine.deactivate_policy(policy_id)
    return CancelResponse(cancelled=cancelled)


@router.get(
    "/violations",
    response_model=List[ViolationResponse],
    summary="List violations",
    description="Violation records, most recent first."
)
async def list_violations(
    case_id: Optional[str] = Query(None, description="Filter by case"),
    severity: Optional[SeverityStr] = Query(None, description="Filter by severity"),
    unresolved_only: bool = Query(False, description="Hide resolved violations"),
    violation_repo: IViolationRepository = Depends(get_violation_repository)
):
    records = await violation_repo.list(
        case_id=case_id,
        severity=Severity(severity) if severity else None,
        unresolved_only=unresolved_only
    )
    return [ViolationResponse.from_domain(r) for r in records]


@router.patch(
    "/violations/{violation_id}",
    response_model=ViolationResponse,
    summary="Annotate a violation",
    description="""
    Review workflow: acknowledge or resolve a violation and record its root
    cause, preventive actions and business impact.
    """,
    responses={
        404: {
            "description": "Violation not found"
        }
    }
)
async def annotate_violation(
    violation_id: str,
    payload: ViolationAnnotationRequest,
    review_service: ViolationReviewService = Depends(get_review_service)
):
    record = await review_service.annotate(
        violation_id,
        payload.reviewer,
        acknowledged=payload.acknowledged,
        resolved=payload.resolved,
        resolution_notes=payload.resolution_notes,
        root_cause=payload.root_cause,
        preventive_actions=payload.preventive_actions,
        business_impact=payload.business_impact
    )
    return ViolationResponse.from_domain(record)


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run a recompute sweep",
    description="""
    Recompute every running timer now, or at `at` when given. The scheduler
    runs the same sweep periodically.
    """
)
async def run_sweep(
    at: Optional[datetime] = Query(None, description="Instant to recompute at (default: now)"),
    wait: bool = Query(False, description="Return only after records and dispatches are delivered"),
    engine: TrackingEngine = Depends(get_engine)
):
    result = await engine.sweep(ensure_utc(at) if at else None)
    if wait:
        await engine.flush()
    return SweepResponse(
        at=result.at,
        recomputed=result.recomputed,
        violated=result.violated,
        escalated=result.escalated,
        failed=result.failed
    )


@router.get(
    "/compliance",
    response_model=ComplianceResponse,
    summary="Get compliance summary",
    description="""
    Compliance over timers started in [start, end): met / (met + violated).

    Running, paused and cancelled timers are counted but do not affect the
    compliance percentage.
    """
)
async def get_compliance(
    tenant_id: Optional[str] = Query(None, description="Filter by tenant"),
    start: Optional[datetime] = Query(None, description="Earliest timer start (inclusive)"),
    end: Optional[datetime] = Query(None, description="Latest timer start (exclusive)"),
    compliance_service: ComplianceService = Depends(get_compliance_service)
):
    summary = await compliance_service.summarize(
        tenant_id=tenant_id,
        start=ensure_utc(start) if start else None,
        end=ensure_utc(end) if end else None
    )
    return ComplianceResponse(**asdict(summary))


tracking_router = router
