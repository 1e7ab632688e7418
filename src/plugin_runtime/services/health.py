"""Periodic health checks for registered plugins and other components.

The monitor runs as an asyncio background task, following the same
start/stop pattern as the other runtime loops::

    monitor = HealthMonitor(controller, breakers, recovery)
    await monitor.start()
    ...
    await monitor.stop()

A plugin that fails ``max_consecutive_failures`` checks in a row is reported
as a HIGH/SYSTEM error and reloaded through the registration controller with
the metadata it already holds.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from plugin_runtime.domain.plugins import REGISTRATION_REGISTERED
from plugin_runtime.domain.recovery import (
    CATEGORY_SYSTEM,
    SEVERITY_HIGH,
    HealthCheck,
    HealthCheckResult,
)
from plugin_runtime.events.event_bus import (
    EVENT_HEALTH_CHECK_COMPLETED,
    EVENT_HEALTH_CHECK_FAILED,
    EventBus,
)
from plugin_runtime.services.circuit_breaker import CircuitBreakerRegistry, plugin_component

logger = logging.getLogger(__name__)

Probe = Callable[[], Union[Any, Awaitable[Any]]]

_PLUGIN_PREFIX = "plugin:"
CIRCUIT_OPEN_MESSAGE = "circuit open"


@dataclass(frozen=True)
class HealthOptions:
    enabled: bool = True
    interval_ms: int = 30000
    timeout_ms: int = 5000
    max_consecutive_failures: int = 3


class HealthMonitor:
    def __init__(
        self,
        controller: Any,
        breakers: Optional[CircuitBreakerRegistry] = None,
        recovery: Any = None,
        options: Optional[HealthOptions] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self._controller = controller
        self._breakers = breakers
        self._recovery = recovery
        self._options = options or HealthOptions()
        self._events = events
        self._checks: Dict[str, HealthCheck] = {}
        self._probes: Dict[str, Probe] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def add_check(
        self,
        component: str,
        probe: Optional[Probe] = None,
        interval_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        max_consecutive_failures: Optional[int] = None,
    ) -> HealthCheck:
        if probe is None:
            if not component.startswith(_PLUGIN_PREFIX):
                raise ValueError(f"A probe is required for non-plugin component {component}")
            probe = self._plugin_probe(component[len(_PLUGIN_PREFIX) :])
        check = HealthCheck(
            id=component,
            component=component,
            interval_ms=int(interval_ms or self._options.interval_ms),
            timeout_ms=int(timeout_ms or self._options.timeout_ms),
            max_consecutive_failures=max(1, int(max_consecutive_failures or self._options.max_consecutive_failures)),
        )
        self._checks[check.id] = check
        self._probes[check.id] = probe
        if self._breakers is not None:
            self._breakers.ensure(component)
        return check

    def remove_check(self, check_id: str) -> bool:
        self._probes.pop(check_id, None)
        return self._checks.pop(check_id, None) is not None

    def get_check(self, check_id: str) -> Optional[HealthCheck]:
        return self._checks.get(check_id)

    def list_checks(self) -> List[HealthCheck]:
        return [self._checks[key] for key in sorted(self._checks)]

    def sync_with_registrations(self) -> None:
        """One check per registered plugin; checks for departed plugins are dropped."""
        registered = {r.plugin_name for r in self._controller.by_status(REGISTRATION_REGISTERED)}
        for name in registered:
            component = plugin_component(name)
            if component not in self._checks:
                self.add_check(component)
        for check_id in list(self._checks):
            if check_id.startswith(_PLUGIN_PREFIX) and check_id[len(_PLUGIN_PREFIX) :] not in registered:
                self.remove_check(check_id)

    async def run_check(self, check_id: str) -> HealthCheckResult:
        check = self._checks.get(check_id)
        if check is None:
            raise KeyError(check_id)
        probe = self._probes[check_id]
        if self._breakers is not None and not self._breakers.allow_request(check.component):
            return self._circuit_open_result(check)
        started = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(_call_probe(probe), timeout=check.timeout_ms / 1000.0)
            healthy = bool(outcome)
            message = "" if healthy else "unhealthy"
        except asyncio.TimeoutError:
            healthy, message = False, "timeout"
        except Exception as exc:
            healthy, message = False, str(exc) or exc.__class__.__name__
        now = datetime.now(timezone.utc)
        result = HealthCheckResult(
            healthy=healthy,
            response_time_ms=(time.perf_counter() - started) * 1000.0,
            timestamp=now,
            message=message,
        )
        check.last_check = now
        check.last_result = result
        if healthy:
            check.consecutive_failures = 0
            if self._breakers is not None:
                self._breakers.record_success(check.component)
            self._publish(EVENT_HEALTH_CHECK_COMPLETED, check, result)
            return result

        check.consecutive_failures += 1
        if self._breakers is not None:
            self._breakers.record_failure(check.component)
        logger.warning(
            "health: %s failed (%d/%d): %s",
            check.component,
            check.consecutive_failures,
            check.max_consecutive_failures,
            message,
        )
        self._publish(EVENT_HEALTH_CHECK_FAILED, check, result)
        if check.consecutive_failures >= check.max_consecutive_failures:
            await self._handle_unhealthy(check, result)
            check.consecutive_failures = 0
        return result

    async def run_all_once(self) -> Dict[str, HealthCheckResult]:
        self.sync_with_registrations()
        results: Dict[str, HealthCheckResult] = {}
        for check in self.list_checks():
            if check.enabled:
                results[check.id] = await self.run_check(check.id)
        return results

    async def start(self) -> None:
        if self._running or not self._options.enabled:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="health-monitor")
        logger.info("health: started (interval=%dms timeout=%dms)", self._options.interval_ms, self._options.timeout_ms)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        while self._running:
            try:
                self.sync_with_registrations()
                await self._run_due_checks()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("health: tick failed")
            try:
                await asyncio.sleep(self._tick_sec())
            except asyncio.CancelledError:
                break

    async def _run_due_checks(self) -> None:
        now = datetime.now(timezone.utc)
        for check in self.list_checks():
            if not check.enabled:
                continue
            if check.last_check is not None and (now - check.last_check).total_seconds() * 1000.0 < check.interval_ms:
                continue
            await self.run_check(check.id)

    def _tick_sec(self) -> float:
        intervals = [c.interval_ms for c in self._checks.values() if c.enabled]
        return max(0.05, min(intervals or [self._options.interval_ms]) / 1000.0)

    async def _handle_unhealthy(self, check: HealthCheck, result: HealthCheckResult) -> None:
        plugin_name = check.component[len(_PLUGIN_PREFIX) :] if check.component.startswith(_PLUGIN_PREFIX) else None
        if self._recovery is not None:
            await self._recovery.report_error(
                severity=SEVERITY_HIGH,
                category=CATEGORY_SYSTEM,
                message=f"Health check failed {check.consecutive_failures} consecutive times: {result.message}",
                source="health-monitor",
                context={"check_id": check.id, "consecutive_failures": check.consecutive_failures},
                component=check.component,
                plugin=plugin_name,
            )
        if plugin_name is None:
            return
        logger.warning("health: %s unhealthy, reloading", plugin_name)
        outcome = await self._controller.reload_plugin(plugin_name)
        if not outcome.success:
            logger.warning("health: reload of %s failed: %s", plugin_name, outcome.error)

    def _circuit_open_result(self, check: HealthCheck) -> HealthCheckResult:
        # Rejected without calling the probe; the breaker already counts the failures that opened it.
        now = datetime.now(timezone.utc)
        result = HealthCheckResult(healthy=False, response_time_ms=0.0, timestamp=now, message=CIRCUIT_OPEN_MESSAGE)
        check.last_check = now
        check.last_result = result
        logger.debug("health: %s skipped, circuit open", check.component)
        self._publish(EVENT_HEALTH_CHECK_FAILED, check, result)
        return result

    def _plugin_probe(self, name: str) -> Probe:
        async def _probe() -> bool:
            record = self._controller.get_registration(name)
            if record is None or record.status != REGISTRATION_REGISTERED:
                return False
            handle = record.handle
            health_check = getattr(handle, "health_check", None)
            if callable(health_check):
                return bool(await _call_probe(health_check))
            return bool(getattr(handle, "is_loaded", False))

        return _probe

    def _publish(self, event_type: str, check: HealthCheck, result: HealthCheckResult) -> None:
        if self._events is None:
            return
        self._events.publish(
            event_type,
            {
                "check_id": check.id,
                "component": check.component,
                "healthy": result.healthy,
                "message": result.message,
                "response_time_ms": result.response_time_ms,
                "consecutive_failures": check.consecutive_failures,
            },
        )


async def _call_probe(probe: Probe) -> Any:
    outcome = probe()
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome
