"""Configuration management for stack-alarms."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_CONFIG_PATH = "config/stack-alarms.yaml"
GLOBAL_RULE = "*"


class ConfigError(ValueError):
    """Raised when the process configuration is missing, malformed or invalid."""


class RancherConfig(BaseModel):
    """Connection settings for the orchestration platform API."""
    url: str = Field(default="http://localhost:8080", description="Base URL of the Rancher server")
    access_key: Optional[str] = Field(default=None, description="API access key")
    secret_key: Optional[str] = Field(default=None, description="API secret key")
    project_id: Optional[str] = Field(default=None, description="Environment (project) id, e.g. 1a5")
    timeout: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds")


class HealthCheckConfig(BaseModel):
    """Effective polling and hysteresis settings for one service."""
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between health polls")
    healthy_threshold: int = Field(default=3, ge=1, description="Consecutive active samples to recover")
    unhealthy_threshold: int = Field(default=3, ge=1, description="Consecutive degraded samples to alert")


class HealthCheckOverride(BaseModel):
    poll_interval: Optional[float] = Field(default=None, gt=0)
    healthy_threshold: Optional[int] = Field(default=None, ge=1)
    unhealthy_threshold: Optional[int] = Field(default=None, ge=1)


class NotificationRule(BaseModel):
    """Notification settings bound to ``*`` or to a single ``stack/service``."""
    targets: dict[str, dict[str, Any]] = Field(default_factory=dict, description="Target bindings by name")
    healthcheck: HealthCheckOverride = Field(default_factory=HealthCheckOverride)
    notify_recovery: Optional[bool] = Field(default=None, description="Also notify when a service recovers")

    @field_validator("targets", mode="before")
    @classmethod
    def _normalize_targets(cls, value: Any) -> Any:
        # Allow `targets: [slack, email]` as shorthand for bindings without overrides.
        if value is None:
            return {}
        if isinstance(value, list):
            return {str(name): {} for name in value}
        if isinstance(value, dict):
            return {str(name): (cfg if cfg is not None else {}) for name, cfg in value.items()}
        return value


class AlarmsConfig(BaseModel):
    """Main configuration for the alarms daemon."""

    rancher: RancherConfig = Field(default_factory=RancherConfig)
    poll_services_interval: float = Field(..., gt=0, description="Seconds between discovery passes")
    filter: list[str] = Field(default_factory=list, description="Regexes matched against stack/service")
    log_level: str = Field(default="INFO", description="Logging level")

    notifications: dict[str, NotificationRule] = Field(default_factory=dict)
    targets: dict[str, dict[str, Any]] = Field(default_factory=dict, description="Base config per target")

    @field_validator("filter", mode="before")
    @classmethod
    def _normalize_filter(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("filter")
    @classmethod
    def _check_filter_patterns(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid filter pattern {pattern!r}: {exc}") from exc
        return value

    @field_validator("targets", mode="before")
    @classmethod
    def _normalize_base_targets(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(name): (cfg if cfg is not None else {}) for name, cfg in value.items()}
        return value

    def compiled_filter(self) -> list[re.Pattern[str]]:
        return [re.compile(p) for p in self.filter]

    def resolve(self, qualified_name: str) -> "MonitorSettings":
        """Resolve the layered settings for one ``stack/service``.

        Precedence, lowest first: target base config, ``*`` rule, service rule.
        """
        default_rule = self.notifications.get(GLOBAL_RULE) or NotificationRule()
        service_rule = self.notifications.get(qualified_name) or NotificationRule()

        healthcheck = HealthCheckConfig(
            **deep_merge(
                default_rule.healthcheck.model_dump(exclude_none=True),
                service_rule.healthcheck.model_dump(exclude_none=True),
            )
        )

        targets: dict[str, dict[str, Any]] = {}
        for name in [*default_rule.targets, *service_rule.targets]:
            if name in targets:
                continue
            targets[name] = deep_merge(
                self.targets.get(name) or {},
                default_rule.targets.get(name) or {},
                service_rule.targets.get(name) or {},
            )

        notify_recovery = service_rule.notify_recovery
        if notify_recovery is None:
            notify_recovery = bool(default_rule.notify_recovery)

        return MonitorSettings(healthcheck=healthcheck, targets=targets, notify_recovery=notify_recovery)


@dataclass(frozen=True)
class MonitorSettings:
    healthcheck: HealthCheckConfig
    targets: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    notify_recovery: bool = False


def deep_merge(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """Merge mappings left to right; later layers win per key, nested mappings merge."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in (layer or {}).items():
            current = merged.get(key)
            if isinstance(current, Mapping) and isinstance(value, Mapping):
                merged[key] = deep_merge(current, value)
            elif isinstance(value, Mapping):
                merged[key] = deep_merge(value)
            else:
                merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> AlarmsConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    explicit = config_path is not None
    if config_path is None:
        config_path = os.getenv("STACK_ALARMS_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to read config {path}: {exc}") from exc
        if not isinstance(config_data, dict):
            raise ConfigError(f"Config {path} must be a YAML mapping")
    elif explicit:
        raise ConfigError(f"Config file not found: {path}")

    rancher_data = config_data.get("rancher") or {}
    if not isinstance(rancher_data, dict):
        raise ConfigError("'rancher' must be a mapping")

    # Override with environment variables
    rancher_overrides = {
        "url": os.getenv("RANCHER_URL"),
        "access_key": os.getenv("RANCHER_ACCESS_KEY"),
        "secret_key": os.getenv("RANCHER_SECRET_KEY"),
        "project_id": os.getenv("RANCHER_PROJECT_ID"),
    }
    for key, value in rancher_overrides.items():
        if value is not None:
            rancher_data[key] = value
    config_data["rancher"] = rancher_data

    env_overrides = {
        "poll_services_interval": os.getenv("POLL_SERVICES_INTERVAL"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            config_data[key] = value

    try:
        return AlarmsConfig(**config_data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration:\n{exc}") from exc
