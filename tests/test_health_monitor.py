import asyncio
import unittest
from datetime import datetime, timezone

from plugin_runtime.domain.plugins import (
    REGISTRATION_REGISTERED,
    Manifest,
    PluginMetadata,
    RegistrationInfo,
    RegistrationResult,
)
from plugin_runtime.domain.recovery import CATEGORY_SYSTEM, CIRCUIT_CLOSED, CIRCUIT_OPEN, SEVERITY_HIGH
from plugin_runtime.events.event_bus import EVENT_HEALTH_CHECK_COMPLETED, EVENT_HEALTH_CHECK_FAILED, EventBus
from plugin_runtime.services.circuit_breaker import CircuitBreakerRegistry
from plugin_runtime.services.health import CIRCUIT_OPEN_MESSAGE, HealthMonitor, HealthOptions
from plugin_runtime.services.recovery import ErrorRecoveryManager, RecoveryOptions, breaker_key


class _Handle:
    def __init__(self, healthy=True, delay=0.0):
        self.healthy = healthy
        self.delay = delay
        self.is_loaded = True

    async def health_check(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.healthy


class _FakeController:
    def __init__(self):
        self.records = {}
        self.reloads = []

    def add(self, name, handle):
        metadata = PluginMetadata(
            manifest=Manifest(name=name, version="1.0.0", description="", entrypoint="x:y"),
            path=f"/plugins/{name}",
            manifest_path=f"/plugins/{name}/plugin.json",
            is_valid=True,
            validation_errors=(),
            last_modified=datetime.now(timezone.utc),
            file_size=1,
            checksum=name,
        )
        self.records[name] = RegistrationInfo(
            plugin_name=name,
            status=REGISTRATION_REGISTERED,
            metadata=metadata,
            last_updated=datetime.now(timezone.utc),
            handle=handle,
        )

    def by_status(self, status):
        return [r for r in self.records.values() if r.status == status]

    def get_registration(self, name):
        return self.records.get(name)

    async def reload_plugin(self, name):
        self.reloads.append(name)
        return RegistrationResult(success=True, plugin_name=name, status=REGISTRATION_REGISTERED)


class TestHealthMonitor(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.bus = EventBus()
        self.seen = []
        self.bus.subscribe(self.seen.append)
        self.controller = _FakeController()
        self.breakers = CircuitBreakerRegistry(failure_threshold=10)
        self.recovery = ErrorRecoveryManager(self.bus, self.breakers, RecoveryOptions(auto_recovery=False))

    def _monitor(self, **options):
        return HealthMonitor(
            self.controller,
            self.breakers,
            self.recovery,
            HealthOptions(**options),
            events=self.bus,
        )

    async def test_sync_adds_and_removes_plugin_checks(self):
        self.controller.add("seo", _Handle())
        monitor = self._monitor()
        monitor.sync_with_registrations()
        self.assertEqual([c.id for c in monitor.list_checks()], ["plugin:seo"])

        del self.controller.records["seo"]
        monitor.sync_with_registrations()
        self.assertEqual(monitor.list_checks(), [])

    async def test_healthy_check_publishes_completed(self):
        self.controller.add("seo", _Handle())
        monitor = self._monitor()
        monitor.sync_with_registrations()
        result = await monitor.run_check("plugin:seo")
        self.assertTrue(result.healthy)
        self.assertEqual(len([e for e in self.seen if e.event_type == EVENT_HEALTH_CHECK_COMPLETED]), 1)
        self.assertEqual(monitor.get_check("plugin:seo").consecutive_failures, 0)

    async def test_timeout_counts_as_failure(self):
        self.controller.add("slow", _Handle(delay=1.0))
        monitor = self._monitor(timeout_ms=20)
        monitor.sync_with_registrations()
        result = await monitor.run_check("plugin:slow")
        self.assertFalse(result.healthy)
        self.assertEqual(result.message, "timeout")
        self.assertEqual(monitor.get_check("plugin:slow").consecutive_failures, 1)

    async def test_threshold_reports_error_and_reloads(self):
        self.controller.add("seo", _Handle(healthy=False))
        monitor = self._monitor(max_consecutive_failures=3)
        monitor.sync_with_registrations()

        for _ in range(2):
            await monitor.run_check("plugin:seo")
        self.assertEqual(self.controller.reloads, [])

        await monitor.run_check("plugin:seo")

        self.assertEqual(self.controller.reloads, ["seo"])
        errors = self.recovery.list_errors()
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].severity, SEVERITY_HIGH)
        self.assertEqual(errors[0].category, CATEGORY_SYSTEM)
        self.assertEqual(errors[0].plugin, "seo")
        self.assertEqual(monitor.get_check("plugin:seo").consecutive_failures, 0)
        self.assertEqual(len([e for e in self.seen if e.event_type == EVENT_HEALTH_CHECK_FAILED]), 3)

    async def test_failures_feed_component_breaker(self):
        breakers = CircuitBreakerRegistry(failure_threshold=2)
        monitor = HealthMonitor(self.controller, breakers, None, HealthOptions(max_consecutive_failures=10))
        monitor.add_check("database", lambda: False)
        await monitor.run_check("database")
        await monitor.run_check("database")
        self.assertEqual(breakers.get("database").state, CIRCUIT_OPEN)

    async def test_open_breaker_skips_check_until_recovery_timeout(self):
        now = [0.0]
        breakers = CircuitBreakerRegistry(clock=lambda: now[0], failure_threshold=1, recovery_timeout_ms=1000)
        monitor = HealthMonitor(self.controller, breakers, None, HealthOptions(max_consecutive_failures=10))
        calls = []
        outcomes = [False]

        def _probe():
            calls.append(now[0])
            return outcomes[0]

        monitor.add_check("db", _probe)
        await monitor.run_check("db")
        self.assertEqual(breakers.get("db").state, CIRCUIT_OPEN)
        opened_until = breakers.get("db").next_attempt_time

        for _ in range(2):
            result = await monitor.run_check("db")
            self.assertFalse(result.healthy)
            self.assertEqual(result.message, CIRCUIT_OPEN_MESSAGE)
        self.assertEqual(len(calls), 1)
        self.assertEqual(breakers.get("db").failure_count, 1)
        self.assertEqual(breakers.get("db").next_attempt_time, opened_until)
        self.assertEqual(monitor.get_check("db").consecutive_failures, 1)

        now[0] = 2.0
        outcomes[0] = True
        result = await monitor.run_check("db")
        self.assertTrue(result.healthy)
        self.assertEqual(len(calls), 2)
        self.assertEqual(breakers.get("db").state, CIRCUIT_CLOSED)

    async def test_component_failure_report_uses_monitor_breaker(self):
        breakers = CircuitBreakerRegistry(failure_threshold=5)
        recovery = ErrorRecoveryManager(self.bus, breakers, RecoveryOptions(auto_recovery=False))
        monitor = HealthMonitor(self.controller, breakers, recovery, HealthOptions(max_consecutive_failures=1))
        monitor.add_check("db", lambda: False)

        await monitor.run_check("db")

        error = recovery.list_errors()[0]
        self.assertEqual(error.component, "db")
        self.assertIs(breakers.get(breaker_key(error)), breakers.get("db"))

    async def test_component_check_requires_probe(self):
        monitor = self._monitor()
        with self.assertRaises(ValueError):
            monitor.add_check("database")
        check = monitor.add_check("database", lambda: True, interval_ms=100)
        self.assertEqual(check.interval_ms, 100)
        self.assertTrue(monitor.remove_check("database"))

    async def test_probe_exception_is_a_failure(self):
        def _broken():
            raise ConnectionError("refused")

        monitor = self._monitor()
        monitor.add_check("cache", _broken)
        result = await monitor.run_check("cache")
        self.assertFalse(result.healthy)
        self.assertEqual(result.message, "refused")

    async def test_background_loop_runs_checks(self):
        self.controller.add("seo", _Handle())
        monitor = self._monitor(interval_ms=10)
        await monitor.start()
        for _ in range(100):
            check = monitor.get_check("plugin:seo")
            if check is not None and check.last_check is not None:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()
        self.assertIsNotNone(monitor.get_check("plugin:seo").last_check)

    async def test_disabled_monitor_does_not_start(self):
        monitor = self._monitor(enabled=False)
        await monitor.start()
        await monitor.stop()
        self.assertEqual(monitor.list_checks(), [])


if __name__ == "__main__":
    unittest.main()
