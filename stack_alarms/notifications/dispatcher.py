from __future__ import annotations

import asyncio
from typing import Iterable, Mapping

import httpx
import structlog

from stack_alarms.config import MonitorSettings
from stack_alarms.models import HealthTransition
from stack_alarms.notifications.messages import render_message
from stack_alarms.notifications.targets import NotificationTarget, build_target

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Fans one health transition out to every target bound to a service."""

    def __init__(self, targets: Iterable[NotificationTarget]) -> None:
        self.targets: tuple[NotificationTarget, ...] = tuple(targets)

    @classmethod
    def from_settings(
        cls, settings: MonitorSettings, client: httpx.AsyncClient | None = None
    ) -> "NotificationDispatcher":
        return cls(build_target(name, cfg, client) for name, cfg in settings.targets.items())

    async def _deliver_one(self, target: NotificationTarget, transition: HealthTransition, url: str) -> bool:
        message = render_message(transition, url, target.template)
        return await target.deliver(message)

    async def notify(self, transition: HealthTransition, url: str) -> Mapping[str, bool]:
        if not self.targets:
            logger.info("No notification targets bound", service=transition.qualified_name)
            return {}

        results = await asyncio.gather(
            *(self._deliver_one(t, transition, url) for t in self.targets),
            return_exceptions=True,
        )

        outcome: dict[str, bool] = {}
        for target, result in zip(self.targets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning(
                    "Notification delivery crashed",
                    target=target.name,
                    service=transition.qualified_name,
                    error=f"{type(result).__name__}: {result}",
                )
                outcome[target.name] = False
                continue
            outcome[target.name] = bool(result)
            if not result:
                logger.warning("Notification not delivered", target=target.name, service=transition.qualified_name)

        logger.info(
            "Notification dispatched",
            service=transition.qualified_name,
            state=transition.state,
            delivered=sum(outcome.values()),
            targets=len(outcome),
        )
        return outcome
