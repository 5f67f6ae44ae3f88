"""
SLA Timer Engine - Main Application
===================================

Service-level commitment tracking for support cases.

Startup wires the tracking engine from settings:
- Persistence: SQLAlchemy when DATABASE_URL is set, in-memory otherwise
- Policies: YAML catalog, hot reloaded with watchdog
- Escalations: webhook delivery when configured, logged otherwise
- Sweep: APScheduler job recomputing running timers

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Engine, services and DTOs
- Domain: Calendars, rule trees, policies, timers
- Infrastructure: Database, catalogs, webhook, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sla_engine.config import Settings, get_settings
from sla_engine.core import ApplicationException, PolicyCatalogUnavailable
from sla_engine.infrastructure.database import (
    close_database,
    create_tables,
    init_database,
    is_initialized,
)
from sla_engine.shared.api import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from sla_engine.shared.infrastructure.logging import get_logger, setup_logging
from sla_engine.tracking.application import SystemClock, TrackingEngine
from sla_engine.tracking.infrastructure import (
    InMemoryTimerEventRepository,
    InMemoryTimerRepository,
    InMemoryViolationRepository,
    LoggingEscalationSink,
    PolicyCatalogWatcher,
    SQLAlchemyTimerEventRepository,
    SQLAlchemyTimerRepository,
    SQLAlchemyViolationRepository,
    TrackingScheduler,
    WebhookEscalationSink,
    YAMLPolicyCatalog,
)
from sla_engine.tracking.interfaces import tracking_router

logger = get_logger(__name__)


async def _build_engine(app: FastAPI, settings: Settings) -> None:
    """Create repositories, catalog, sink and engine and store them in app state."""
    if settings.database_url:
        logger.info("Initializing database")
        init_database(settings=settings)
        # Development convenience; production should use migrations
        await create_tables()
        timer_repo = SQLAlchemyTimerRepository()
        event_repo = SQLAlchemyTimerEventRepository()
        violation_repo = SQLAlchemyViolationRepository()
    else:
        logger.warning("DATABASE_URL not set - timers, events and violations are kept in memory")
        timer_repo = InMemoryTimerRepository()
        event_repo = InMemoryTimerEventRepository()
        violation_repo = InMemoryViolationRepository()

    logger.info("Loading policy catalog", extra={"path": str(settings.policy_catalog_path)})
    catalog = YAMLPolicyCatalog(settings.policy_catalog_path)
    try:
        catalog.load()
    except PolicyCatalogUnavailable as e:
        # Intake reports failed events until a valid file is written
        logger.error(f"Policy catalog not loaded: {e.message}", extra=e.details)

    if settings.escalation_webhook_url:
        sink = WebhookEscalationSink(
            settings.escalation_webhook_url,
            timeout_seconds=settings.escalation_timeout_seconds
        )
    else:
        sink = LoggingEscalationSink()

    clock = SystemClock()
    app.state.catalog = catalog
    app.state.clock = clock
    app.state.timer_repository = timer_repo
    app.state.event_repository = event_repo
    app.state.violation_repository = violation_repo
    app.state.escalation_sink = sink
    app.state.engine = TrackingEngine(
        catalog=catalog,
        clock=clock,
        timer_repository=timer_repo,
        event_repository=event_repo,
        violation_repository=violation_repo,
        escalation_sink=sink,
        max_retries=settings.delivery_max_retries,
        backoff_seconds=settings.delivery_backoff_seconds
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Build the engine (unless one was injected into app.state)
    3. Start watching the policy catalog
    4. Restore active timers and start delivery workers
    5. Start the sweep scheduler

    SHUTDOWN:
    1. Stop the sweep scheduler
    2. Stop the catalog watcher
    3. Drain delivery queues
    4. Close the webhook client and database connections
    """
    settings: Settings = app.state.settings

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA Timer Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    if getattr(app.state, "engine", None) is None:
        await _build_engine(app, settings)
    engine: TrackingEngine = app.state.engine

    watcher = None
    catalog = getattr(app.state, "catalog", None)
    if settings.policy_watch and isinstance(catalog, YAMLPolicyCatalog):
        watcher = PolicyCatalogWatcher(catalog)
        watcher.start_watching()

    await engine.start()

    scheduler = None
    if settings.sweep_interval_seconds > 0:
        scheduler = TrackingScheduler(interval_seconds=settings.sweep_interval_seconds)
        await scheduler.start(engine.sweep)
    app.state.scheduler = scheduler

    logger.info("SLA Timer Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Timer Engine")

    if scheduler:
        await scheduler.stop()

    if watcher:
        watcher.stop_watching()

    await engine.stop()

    sink = getattr(app.state, "escalation_sink", None)
    if isinstance(sink, WebhookEscalationSink):
        await sink.close()

    if is_initialized():
        await close_database()

    logger.info("SLA Timer Engine shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Tests inject their own engine and repositories into app.state before
    the lifespan runs; the lifespan then only starts and stops them.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="SLA Timer Engine API",
        description="""
    ## Service-Level Commitment Tracking

    Business-hours timers for support cases with rule-driven pauses,
    violation records and threshold escalations.

    **Endpoints:**
    - `POST /tracking/events` - Ingest case lifecycle events
    - `GET /tracking/cases/{id}/timers` - Timer state of a case
    - `GET /tracking/cases/{id}/events` - Timer audit log of a case
    - `DELETE /tracking/cases/{id}/timers` - Cancel a case's timers
    - `POST /tracking/policies/{id}/deactivate` - Deactivate a policy
    - `GET /tracking/violations` - List violations
    - `PATCH /tracking/violations/{id}` - Review workflow annotations
    - `POST /tracking/sweep` - Recompute running timers
    - `GET /tracking/compliance` - Compliance summary
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.settings = settings

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(tracking_router)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Health check endpoint for load balancers and orchestrators.

        Reports storage mode, catalog size, scheduler state and the number
        of dead-lettered deliveries.
        """
        state = request.app.state
        engine: Optional[TrackingEngine] = getattr(state, "engine", None)
        scheduler = getattr(state, "scheduler", None)
        catalog = getattr(state, "catalog", None)

        checks = {
            "database": "connected" if is_initialized() else "in_memory",
            "policy_catalog": f"loaded ({len(catalog.policies())} policies)"
            if isinstance(catalog, YAMLPolicyCatalog) else "injected",
            "sweep_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
            "active_timers": len(engine.manager.active_timers()) if engine else 0,
            "dead_letters": (
                len(engine.records.dead_letters) + len(engine.dispatches.dead_letters)
            ) if engine else 0,
        }
        return {
            "status": "healthy" if engine else "starting",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "tracking": {
                    "prefix": "/tracking"
                }
            }
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sla_engine.main:app",
        host=get_settings().host,
        port=get_settings().port,
        reload=get_settings().environment == "development",
        log_level="info"
    )
