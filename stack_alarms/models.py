from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Service lifecycle states that mean the service is deployed and expected to serve.
RUNNING_STATES = frozenset({"active", "upgraded", "upgrading", "updating-active"})

ACTIVE = "active"
DEGRADED = "degraded"


@dataclass(frozen=True)
class Stack:
    id: str
    name: str
    system: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Stack":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            system=bool(data.get("system")),
        )


@dataclass(frozen=True)
class Container:
    id: str
    name: str
    state: str
    health_state: str | None = None

    @property
    def running(self) -> bool:
        return self.state == "running"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Container":
        health = data.get("healthState")
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            state=str(data.get("state") or ""),
            health_state=str(health) if health else None,
        )


@dataclass(frozen=True)
class Service:
    id: str
    name: str
    environment_id: str | None
    state: str
    health_check: dict[str, Any] | None = None
    launch_config: dict[str, Any] = field(default_factory=dict)

    @property
    def has_health_check(self) -> bool:
        return bool(self.health_check) or bool(self.launch_config.get("healthCheck"))

    @property
    def running(self) -> bool:
        return self.state in RUNNING_STATES

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Service":
        # Rancher reports the owning stack as stackId; older payloads used environmentId.
        env_id = data.get("stackId") or data.get("environmentId")
        launch_config = data.get("launchConfig")
        health_check = data.get("healthCheck")
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            environment_id=str(env_id) if env_id else None,
            state=str(data.get("state") or ""),
            health_check=health_check if isinstance(health_check, dict) else None,
            launch_config=launch_config if isinstance(launch_config, dict) else {},
        )


@dataclass(frozen=True)
class HealthTransition:
    """A flip of a monitor's effective health, handed to the notification layer."""

    service: Service
    stack_name: str
    previous_state: str | None
    state: str
    healthy: bool

    @property
    def qualified_name(self) -> str:
        return f"{self.stack_name}/{self.service.name}"
