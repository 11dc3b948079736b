from __future__ import annotations

from collections import deque
from typing import Any

import pytest

from stack_alarms.models import Container, Service, Stack
from stack_alarms.notifications.targets import NotificationTarget
from stack_alarms.platform import PlatformAPIError


class FakePlatform:
    """In-memory stand-in for the Rancher API with call recording and scripted failures."""

    base_url = "http://rancher.local"

    def __init__(self) -> None:
        self.stacks: dict[str, Stack] = {}
        self.services: dict[str, Service] = {}
        self.containers: dict[str, list[Container]] = {}
        self.failures: dict[str, deque[BaseException]] = {}
        self.calls: list[tuple[str, Any]] = []

    def add_stack(self, stack_id: str, name: str, *, system: bool = False) -> Stack:
        stack = Stack(id=stack_id, name=name, system=system)
        self.stacks[stack_id] = stack
        return stack

    def add_service(
        self,
        service_id: str,
        name: str,
        stack_id: str | None,
        state: str = "active",
        *,
        health_check: bool = False,
    ) -> Service:
        service = Service(
            id=service_id,
            name=name,
            environment_id=stack_id,
            state=state,
            health_check={"port": 80} if health_check else None,
        )
        self.services[service_id] = service
        return service

    def set_state(self, service_id: str, state: str) -> None:
        old = self.services[service_id]
        self.services[service_id] = Service(
            id=old.id,
            name=old.name,
            environment_id=old.environment_id,
            state=state,
            health_check=old.health_check,
            launch_config=old.launch_config,
        )

    def set_container_health(self, service_id: str, *health_states: str, state: str = "running") -> None:
        self.containers[service_id] = [
            Container(id=f"{service_id}-c{i}", name=f"c{i}", state=state, health_state=h)
            for i, h in enumerate(health_states)
        ]

    def fail(self, method: str, exc: BaseException) -> None:
        self.failures.setdefault(method, deque()).append(exc)

    def calls_to(self, method: str) -> list[Any]:
        return [arg for name, arg in self.calls if name == method]

    def _record(self, method: str, arg: Any = None) -> None:
        self.calls.append((method, arg))
        queued = self.failures.get(method)
        if queued:
            raise queued.popleft()

    async def list_stacks(self) -> list[Stack]:
        self._record("list_stacks")
        return list(self.stacks.values())

    async def get_stack(self, stack_id: str) -> Stack:
        self._record("get_stack", stack_id)
        if stack_id not in self.stacks:
            raise PlatformAPIError(f"stack {stack_id} not found", status_code=404)
        return self.stacks[stack_id]

    async def list_services(self) -> list[Service]:
        self._record("list_services")
        return list(self.services.values())

    async def get_service(self, service_id: str) -> Service:
        self._record("get_service", service_id)
        if service_id not in self.services:
            raise PlatformAPIError(f"service {service_id} not found", status_code=404)
        return self.services[service_id]

    async def get_service_containers(self, service_id: str) -> list[Container]:
        self._record("get_service_containers", service_id)
        return list(self.containers.get(service_id, []))

    def build_link(self, path: str) -> str:
        return f"{self.base_url}{path}"


class RecordingTarget(NotificationTarget):
    kind = "recording"

    def __init__(self, name: str, config: dict[str, Any] | None = None, *, fail_with: BaseException | None = None):
        super().__init__(name, config or {})
        self.messages: list[str] = []
        self.fail_with = fail_with

    async def _send(self, message: str) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append(message)
        return True


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def recording_target() -> RecordingTarget:
    return RecordingTarget("recorder")


@pytest.fixture
def make_target():
    return RecordingTarget
