"""Per-service health polling with hysteresis."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from stack_alarms.config import MonitorSettings
from stack_alarms.models import ACTIVE, DEGRADED, HealthTransition, Service
from stack_alarms.notifications.dispatcher import NotificationDispatcher
from stack_alarms.platform import TRANSIENT_ERRORS, PlatformClient, service_containers_path
from stack_alarms.state_buffer import StateRingBuffer

logger = structlog.get_logger(__name__)

CrashCallback = Callable[["ServiceStateMonitor", BaseException], None]


class MonitorCrashedError(RuntimeError):
    """A monitor task died from an unexpected error."""


class ServiceStateMonitor:
    """Polls one service and decides when it is really unhealthy or recovered.

    The raw state of each poll is pushed into two windows: one sized by the
    unhealthy threshold, one by the healthy threshold. The monitor flips to
    unhealthy only when the whole unhealthy window reads ``degraded``, and back
    to healthy only when the whole healthy window reads ``active``. Windows are
    never reset on a flip.
    """

    def __init__(
        self,
        service: Service,
        stack_name: str,
        client: PlatformClient,
        dispatcher: NotificationDispatcher,
        settings: MonitorSettings,
        *,
        on_crash: Optional[CrashCallback] = None,
    ) -> None:
        self.service = service
        self.stack_name = stack_name
        self.settings = settings
        self._client = client
        self._dispatcher = dispatcher
        self._on_crash = on_crash

        healthcheck = settings.healthcheck
        self._unhealthy_buffer = StateRingBuffer(healthcheck.unhealthy_threshold)
        self._healthy_buffer = StateRingBuffer(healthcheck.healthy_threshold)
        self._is_healthy = True
        self._state: str | None = None

        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._log = logger.bind(service=self.qualified_name, service_id=service.id)

    @property
    def qualified_name(self) -> str:
        return f"{self.stack_name}/{self.service.name}"

    @property
    def is_healthy(self) -> bool:
        return self._is_healthy

    @property
    def state(self) -> str | None:
        return self._state

    @property
    def running(self) -> bool:
        return self._stop_event is not None and self._task is not None and not self._task.done()

    def observe(self, state: str) -> HealthTransition | None:
        """Record one sample and return the health flip it causes, if any."""
        previous = self._state
        self._unhealthy_buffer.push(state)
        self._healthy_buffer.push(state)
        if state != previous:
            self._log.info("Service state changed", from_state=previous, to_state=state)
        self._state = state

        if self._is_healthy and self._unhealthy_buffer.all_equal(DEGRADED):
            self._is_healthy = False
            self._log.warning("Service became unhealthy", state=state)
            return self._transition(previous, state)
        if not self._is_healthy and self._healthy_buffer.all_equal(ACTIVE):
            self._is_healthy = True
            self._log.info("Service recovered", state=state)
            return self._transition(previous, state)
        return None

    def _transition(self, previous: str | None, state: str) -> HealthTransition:
        return HealthTransition(
            service=self.service,
            stack_name=self.stack_name,
            previous_state=previous,
            state=state,
            healthy=self._is_healthy,
        )

    async def _observe_state(self, service: Service) -> str:
        if service.state != ACTIVE:
            return service.state
        if not service.has_health_check:
            return ACTIVE
        containers = await self._client.get_service_containers(service.id)
        for container in containers:
            if container.running and container.health_state != "healthy":
                return DEGRADED
        return ACTIVE

    async def tick(self) -> HealthTransition | None:
        """Poll once. A failed poll is logged and produces no sample."""
        try:
            service = await self._client.get_service(self.service.id)
            state = await self._observe_state(service)
        except TRANSIENT_ERRORS as exc:
            self._log.warning("Health poll failed; sample skipped", error=f"{type(exc).__name__}: {exc}")
            return None

        self.service = service
        transition = self.observe(state)
        if transition is not None and (not transition.healthy or self.settings.notify_recovery):
            url = self._client.build_link(service_containers_path(service))
            await self._dispatcher.notify(transition, url)
        return transition

    def start(self) -> None:
        """Start polling now. Calling it on a running monitor restarts the loop."""
        previous = self._task
        self.stop()
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._task = asyncio.create_task(self._run(stop_event, previous), name=f"monitor:{self.service.id}")
        self._task.add_done_callback(self._task_done)

    def stop(self) -> None:
        """Ask the loop to exit at its next safe point; an in-flight tick completes."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        self._stop_event = None

    async def aclose(self) -> None:
        self.stop()
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _run(self, stop_event: asyncio.Event, previous: asyncio.Task[None] | None) -> None:
        # Never overlap with the loop this one replaces.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        interval = self.settings.healthcheck.poll_interval
        self._log.info(
            "Monitor started",
            poll_interval=interval,
            healthy_threshold=self._healthy_buffer.capacity,
            unhealthy_threshold=self._unhealthy_buffer.capacity,
        )
        # The first tick always runs, even if a stop arrives before the task is scheduled.
        await self.tick()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.tick()
        self._log.info("Monitor stopped")

    def _task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self._log.error("Monitor crashed", error=f"{type(exc).__name__}: {exc}")
        if self._on_crash is not None:
            self._on_crash(self, exc)
