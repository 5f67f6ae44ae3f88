"""
Tracking External Service Integrations
======================================

External services for the tracking engine:
- Escalation webhook delivery (httpx, circuit breaker)
- Policy catalog file watcher (watchdog)
- APScheduler for the periodic sweep
"""

import time
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from sla_engine.core import DispatchFailure
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.tracking.application.services import IEscalationSink
from sla_engine.tracking.domain import EscalationCommand
from sla_engine.tracking.infrastructure.repositories import YAMLPolicyCatalog

logger = get_logger(__name__)


class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for policy catalog file changes."""

    def __init__(self, catalog: YAMLPolicyCatalog):
        self.catalog = catalog
        super().__init__()

    def _matches(self, path: Any) -> bool:
        return Path(str(path)).resolve() == self.catalog.path.resolve()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory or not self._matches(event.src_path):
            return
        logger.info(f"Policy catalog changed: {event.src_path}")
        self.catalog.reload()

    def on_created(self, event):
        # Editors that save by rename surface as a create
        self.on_modified(event)


class PolicyCatalogWatcher:
    """
    Hot reload for the YAML policy catalog.

    Skips watching when the file does not exist or the platform does not
    support file notifications.
    """

    def __init__(self, catalog: YAMLPolicyCatalog):
        self._catalog = catalog
        self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def start_watching(self) -> None:
        path = self._catalog.path
        if not path.exists():
            logger.info(f"Policy catalog file doesn't exist, skipping file watch: {path}")
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                PolicyFileHandler(self._catalog),
                str(path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info(f"Started watching policy catalog: {path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static catalog: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the escalation webhook.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._monotonic = monotonic
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._monotonic()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookEscalationSink(IEscalationSink):
    """
    Posts escalation commands to the workflow collaborator's webhook.

    One attempt per call; the engine's outbound queue owns retries.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 5.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def dispatch(self, command: EscalationCommand) -> None:
        """
        Deliver one command.

        Raises:
            DispatchFailure: On an open circuit, a transport error or a
                non-2xx response
        """
        if not self._circuit_breaker.allow_request():
            raise DispatchFailure(
                "Circuit breaker open",
                {"case_id": command.case_id, "timer_id": command.timer_id}
            )

        try:
            client = await self._get_client()
            response = await client.post(self._webhook_url, json=command.to_dict())
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise DispatchFailure(
                f"Webhook request failed: {e}",
                {"case_id": command.case_id, "timer_id": command.timer_id}
            ) from e

        if not response.is_success:
            self._circuit_breaker.record_failure()
            raise DispatchFailure(
                f"Webhook returned {response.status_code}",
                {"case_id": command.case_id, "status_code": response.status_code}
            )

        self._circuit_breaker.record_success()
        logger.info(
            "Escalation delivered",
            extra={
                "case_id": command.case_id,
                "timer_id": command.timer_id,
                "escalation_level": command.escalation_level
            }
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class LoggingEscalationSink(IEscalationSink):
    """Sink used when no webhook is configured: commands are only logged."""

    def __init__(self):
        self.dispatched: List[EscalationCommand] = []

    async def dispatch(self, command: EscalationCommand) -> None:
        self.dispatched.append(command)
        logger.info(
            "Escalation command issued (no webhook configured)",
            extra={
                "case_id": command.case_id,
                "timer_id": command.timer_id,
                "metric": command.metric.value,
                "escalation_level": command.escalation_level,
                "action": command.action_payload.get("type"),
            }
        )


class TrackingScheduler:
    """
    Wrapper for APScheduler running the periodic sweep.

    Manages the lifecycle of the scheduler and its job.
    """

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Tracking scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="tracking_sweep",
            name="Timer Sweep Job",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Tracking scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Tracking scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
