"""Keeps the set of per-service monitors in sync with the cluster."""

from __future__ import annotations

import asyncio
import re
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

import httpx
import structlog

from stack_alarms.config import AlarmsConfig, MonitorSettings
from stack_alarms.models import Service, Stack
from stack_alarms.notifications.dispatcher import NotificationDispatcher
from stack_alarms.platform import TRANSIENT_ERRORS, PlatformClient
from stack_alarms.service_monitor import MonitorCrashedError, ServiceStateMonitor

logger = structlog.get_logger(__name__)

DispatcherFactory = Callable[[MonitorSettings], NotificationDispatcher]


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class DiscoveryManager:
    """Creates and destroys ServiceStateMonitors as services come and go.

    Owns the stack-name cache and the ignore-list of services that belong to
    system stacks. Both only grow for the lifetime of the process. Only this
    class adds monitors to or removes them from the tracked mapping.
    """

    def __init__(
        self,
        client: PlatformClient,
        config: AlarmsConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        dispatcher_factory: Optional[DispatcherFactory] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._filters: list[re.Pattern[str]] = config.compiled_filter()
        if dispatcher_factory is None:

            def dispatcher_factory(settings: MonitorSettings) -> NotificationDispatcher:
                return NotificationDispatcher.from_settings(settings, http_client)

        self._dispatcher_factory = dispatcher_factory

        self._stack_names: dict[str, str] = {}
        self._system_stack_ids: set[str] = set()
        self._system_service_ids: set[str] = set()
        self._monitors: dict[str, ServiceStateMonitor] = {}

        self._crashed = asyncio.Event()
        self._crash: BaseException | None = None

    @property
    def tracked(self) -> Mapping[str, ServiceStateMonitor]:
        return MappingProxyType(self._monitors)

    @property
    def ignored_service_ids(self) -> frozenset[str]:
        return frozenset(self._system_service_ids)

    @property
    def stack_names(self) -> Mapping[str, str]:
        return MappingProxyType(self._stack_names)

    def passes_filter(self, qualified_name: str) -> bool:
        if not self._filters:
            return True
        return any(p.search(qualified_name) for p in self._filters)

    def _cache_stacks(self, stacks: Iterable[Stack]) -> None:
        for stack in stacks:
            if stack.system:
                self._system_stack_ids.add(stack.id)
            elif stack.id and stack.name:
                self._stack_names[stack.id] = stack.name

    async def start(self) -> None:
        """Initial enumeration: one monitor per running, complete, filter-passing service."""
        try:
            self._cache_stacks(await self._client.list_stacks())
        except TRANSIENT_ERRORS as exc:
            # Stacks will be resolved lazily by the next discovery pass.
            logger.warning("Failed to list stacks", error=_error_text(exc))

        try:
            services = await self._client.list_services()
        except TRANSIENT_ERRORS as exc:
            logger.warning("Failed to list services; waiting for next discovery pass", error=_error_text(exc))
            return

        monitors: list[ServiceStateMonitor] = []
        for service in services:
            stack_name = self._stack_names.get(service.environment_id or "")
            if not service.name or stack_name is None:
                continue
            if not service.running or not self.passes_filter(f"{stack_name}/{service.name}"):
                continue
            if service.id in self._monitors:
                continue
            monitors.append(self._build_monitor(service, stack_name))

        # All monitors are built before any starts, so a bad binding fails before polling begins.
        for monitor in monitors:
            self._register(monitor)
        logger.info("Discovery started", services=len(services), tracked=len(self._monitors))

    async def _resolve_stack_name(self, service: Service) -> str | None:
        stack_id = service.environment_id
        if not stack_id:
            return None
        if stack_id in self._stack_names:
            return self._stack_names[stack_id]
        if stack_id in self._system_stack_ids:
            self._system_service_ids.add(service.id)
            return None

        try:
            stack = await self._client.get_stack(stack_id)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Stack lookup failed", stack_id=stack_id, service_id=service.id, error=_error_text(exc))
            return None

        if stack.system:
            self._system_stack_ids.add(stack_id)
            self._system_service_ids.add(service.id)
            logger.info("Ignoring system service", service_id=service.id, stack=stack.name)
            return None
        if not stack.name:
            return None
        self._stack_names[stack_id] = stack.name
        return stack.name

    async def reconcile(self) -> None:
        """One steady-state discovery pass."""
        try:
            services = await self._client.list_services()
        except TRANSIENT_ERRORS as exc:
            logger.warning("Failed to list services; skipping discovery pass", error=_error_text(exc))
            return

        seen: set[str] = set()
        for service in services:
            seen.add(service.id)
            if not service.name or not service.environment_id:
                continue

            if not service.running:
                if service.id in self._monitors:
                    self._untrack(service.id, reason=service.state)
                continue

            if service.id in self._monitors or service.id in self._system_service_ids:
                continue
            stack_name = await self._resolve_stack_name(service)
            if stack_name is None:
                continue
            if not self.passes_filter(f"{stack_name}/{service.name}"):
                continue
            self._register(self._build_monitor(service, stack_name))

        for service_id in [sid for sid in self._monitors if sid not in seen]:
            self._untrack(service_id, reason="missing")

    def _build_monitor(self, service: Service, stack_name: str) -> ServiceStateMonitor:
        settings = self._config.resolve(f"{stack_name}/{service.name}")
        return ServiceStateMonitor(
            service,
            stack_name,
            self._client,
            self._dispatcher_factory(settings),
            settings,
            on_crash=self._monitor_crashed,
        )

    def _register(self, monitor: ServiceStateMonitor) -> None:
        self._monitors[monitor.service.id] = monitor
        monitor.start()
        logger.info("Tracking service", service=monitor.qualified_name, service_id=monitor.service.id)

    def _untrack(self, service_id: str, *, reason: str) -> None:
        monitor = self._monitors.pop(service_id)
        monitor.stop()
        logger.info("Stopped tracking service", service=monitor.qualified_name, service_id=service_id, reason=reason)

    def _monitor_crashed(self, monitor: ServiceStateMonitor, exc: BaseException) -> None:
        if self._crash is None:
            self._crash = exc
        self._crashed.set()

    def _raise_if_crashed(self) -> None:
        if self._crash is not None:
            raise MonitorCrashedError(f"service monitor crashed: {_error_text(self._crash)}") from self._crash

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._crashed.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self._raise_if_crashed()

    async def run(self) -> None:
        """Start up, then reconcile every ``poll_services_interval`` until a monitor crashes."""
        await self.start()
        while True:
            await self._sleep(self._config.poll_services_interval)
            self._raise_if_crashed()
            await self.reconcile()

    async def aclose(self) -> None:
        monitors = list(self._monitors.values())
        self._monitors.clear()
        await asyncio.gather(*(m.aclose() for m in monitors))
