from __future__ import annotations

import asyncio

import httpx
import pytest

from stack_alarms.config import HealthCheckConfig, MonitorSettings
from stack_alarms.notifications.dispatcher import NotificationDispatcher
from stack_alarms.platform import PlatformAPIError
from stack_alarms.service_monitor import ServiceStateMonitor


def _settings(*, unhealthy: int = 3, healthy: int = 2, interval: float = 5.0, notify_recovery: bool = False):
    return MonitorSettings(
        healthcheck=HealthCheckConfig(
            poll_interval=interval, healthy_threshold=healthy, unhealthy_threshold=unhealthy
        ),
        notify_recovery=notify_recovery,
    )


def _monitor(platform, targets=(), **kwargs) -> ServiceStateMonitor:
    service = platform.services["1s1"]
    return ServiceStateMonitor(
        service,
        "web",
        platform,
        NotificationDispatcher(targets),
        _settings(**kwargs),
    )


@pytest.fixture
def web_service(platform):
    platform.add_stack("1st1", "web")
    return platform.add_service("1s1", "frontend", "1st1", health_check=True)


def test_health_sequence_with_hysteresis(platform, web_service) -> None:
    monitor = _monitor(platform, unhealthy=3, healthy=2)
    observed = ["active", "degraded", "degraded", "degraded", "active", "active"]

    health = []
    transitions = []
    for state in observed:
        transition = monitor.observe(state)
        health.append("Healthy" if monitor.is_healthy else "Unhealthy")
        if transition is not None:
            transitions.append((len(health) - 1, transition))

    assert health == ["Healthy", "Healthy", "Healthy", "Unhealthy", "Unhealthy", "Healthy"]
    unhealthy = [(i, t) for i, t in transitions if not t.healthy]
    assert [i for i, _ in unhealthy] == [3]
    assert unhealthy[0][1].state == "degraded"
    assert unhealthy[0][1].qualified_name == "web/frontend"


def test_flips_unhealthy_exactly_on_third_degraded_sample(platform, web_service) -> None:
    monitor = _monitor(platform, unhealthy=3)
    assert monitor.observe("degraded") is None
    assert monitor.observe("degraded") is None
    assert monitor.is_healthy is True
    transition = monitor.observe("degraded")
    assert transition is not None and transition.healthy is False
    assert monitor.is_healthy is False


def test_recovers_exactly_on_second_active_sample(platform, web_service) -> None:
    monitor = _monitor(platform, unhealthy=1, healthy=2)
    monitor.observe("degraded")
    assert monitor.is_healthy is False
    assert monitor.observe("active") is None
    assert monitor.is_healthy is False
    transition = monitor.observe("active")
    assert transition is not None and transition.healthy is True


def test_non_degraded_raw_state_does_not_alert(platform, web_service) -> None:
    monitor = _monitor(platform, unhealthy=1)
    assert monitor.observe("upgrading") is None
    assert monitor.is_healthy is True
    assert monitor.state == "upgrading"


def test_second_alert_needs_a_fresh_run(platform, web_service) -> None:
    monitor = _monitor(platform, unhealthy=2, healthy=1)
    monitor.observe("degraded")
    assert monitor.observe("degraded") is not None
    assert monitor.observe("active") is not None
    # Buffers were not reset on the flip; one degraded sample is not enough.
    assert monitor.observe("degraded") is None
    assert monitor.observe("degraded") is not None


@pytest.mark.asyncio
async def test_tick_degraded_container_fires_notification(platform, web_service, recording_target) -> None:
    platform.set_container_health("1s1", "healthy", "unhealthy")
    monitor = _monitor(platform, [recording_target], unhealthy=2)

    assert await monitor.tick() is None
    assert monitor.state == "degraded"
    transition = await monitor.tick()

    assert transition is not None and transition.healthy is False
    assert len(recording_target.messages) == 1
    message = recording_target.messages[0]
    assert "web/frontend" in message
    assert "degraded" in message
    assert "http://rancher.local/apps/stacks/1st1/services/1s1/containers" in message


@pytest.mark.asyncio
async def test_tick_ignores_stopped_containers(platform, web_service) -> None:
    platform.set_container_health("1s1", "unhealthy", state="stopped")
    monitor = _monitor(platform)
    await monitor.tick()
    assert monitor.state == "active"


@pytest.mark.asyncio
async def test_tick_without_health_check_skips_container_fetch(platform) -> None:
    platform.add_stack("1st1", "web")
    platform.add_service("1s1", "frontend", "1st1", health_check=False)
    monitor = _monitor(platform)
    await monitor.tick()
    assert monitor.state == "active"
    assert platform.calls_to("get_service_containers") == []


@pytest.mark.asyncio
async def test_tick_uses_raw_state_when_not_active(platform, web_service) -> None:
    platform.set_state("1s1", "upgrading")
    monitor = _monitor(platform)
    await monitor.tick()
    assert monitor.state == "upgrading"
    assert platform.calls_to("get_service_containers") == []


@pytest.mark.asyncio
async def test_failed_tick_produces_no_sample(platform, web_service, recording_target) -> None:
    platform.set_container_health("1s1", "unhealthy")
    monitor = _monitor(platform, [recording_target], unhealthy=2)

    await monitor.tick()
    platform.fail("get_service", httpx.ConnectError("boom"))
    assert await monitor.tick() is None
    platform.fail("get_service_containers", PlatformAPIError("bad gateway", status_code=502))
    assert await monitor.tick() is None
    assert monitor.is_healthy is True
    assert recording_target.messages == []

    # The run continues from the one good sample.
    transition = await monitor.tick()
    assert transition is not None and transition.healthy is False


@pytest.mark.asyncio
async def test_recovery_is_silent_by_default(platform, web_service, recording_target) -> None:
    platform.set_container_health("1s1", "unhealthy")
    monitor = _monitor(platform, [recording_target], unhealthy=1, healthy=1)
    await monitor.tick()
    platform.set_container_health("1s1", "healthy")
    transition = await monitor.tick()
    assert transition is not None and transition.healthy is True
    assert len(recording_target.messages) == 1


@pytest.mark.asyncio
async def test_recovery_notifies_when_enabled(platform, web_service, recording_target) -> None:
    platform.set_container_health("1s1", "unhealthy")
    monitor = _monitor(platform, [recording_target], unhealthy=1, healthy=1, notify_recovery=True)
    await monitor.tick()
    platform.set_container_health("1s1", "healthy")
    await monitor.tick()
    assert len(recording_target.messages) == 2
    assert "recovered" in recording_target.messages[1]


@pytest.mark.asyncio
async def test_unexpected_error_crashes_monitor(platform, web_service) -> None:
    crashes = []
    monitor = ServiceStateMonitor(
        web_service,
        "web",
        platform,
        NotificationDispatcher([]),
        _settings(interval=0.01),
        on_crash=lambda m, exc: crashes.append(exc),
    )
    platform.fail("get_service", KeyError("unexpected"))
    monitor.start()
    await monitor.aclose()
    assert len(crashes) == 1
    assert isinstance(crashes[0], KeyError)


class _SlowPlatform:
    """Wraps a platform and tracks how many get_service calls are in flight at once."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.in_flight = 0
        self.max_in_flight = 0
        self.polls = 0

    async def get_service(self, service_id: str):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.polls += 1
        try:
            await asyncio.sleep(0.01)
            return await self.inner.get_service(service_id)
        finally:
            self.in_flight -= 1

    async def get_service_containers(self, service_id: str):
        return await self.inner.get_service_containers(service_id)

    def build_link(self, path: str) -> str:
        return self.inner.build_link(path)


@pytest.mark.asyncio
async def test_stop_then_start_leaves_one_loop(platform, web_service) -> None:
    slow = _SlowPlatform(platform)
    monitor = ServiceStateMonitor(web_service, "web", slow, NotificationDispatcher([]), _settings(interval=0.01))

    monitor.start()
    await asyncio.sleep(0.03)
    first_task = monitor._task
    monitor.stop()
    monitor.start()
    second_task = monitor._task
    await asyncio.sleep(0.1)

    assert first_task is not second_task
    assert first_task.done()
    assert not second_task.done()
    assert monitor.running is True
    assert slow.max_in_flight == 1

    await monitor.aclose()
    assert monitor.running is False
    assert second_task.done()


@pytest.mark.asyncio
async def test_start_while_running_restarts_without_overlap(platform, web_service) -> None:
    slow = _SlowPlatform(platform)
    monitor = ServiceStateMonitor(web_service, "web", slow, NotificationDispatcher([]), _settings(interval=0.01))

    monitor.start()
    await asyncio.sleep(0.005)
    monitor.start()
    monitor.start()
    await asyncio.sleep(0.08)

    assert slow.max_in_flight == 1
    assert slow.polls >= 2
    await monitor.aclose()


@pytest.mark.asyncio
async def test_stop_is_idempotent(platform, web_service) -> None:
    monitor = _monitor(platform, interval=0.01)
    monitor.stop()
    monitor.start()
    await asyncio.sleep(0.02)
    monitor.stop()
    monitor.stop()
    await monitor.aclose()
    assert monitor.running is False
