import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Optional, Set

from plugin_runtime.config import RuntimeConfig
from plugin_runtime.domain.recovery import CATEGORY_PLUGIN_LOAD, SEVERITY_MEDIUM, ErrorRecord, RecoveryAction
from plugin_runtime.events.event_bus import (
    EVENT_REGISTERED,
    EVENT_REGISTRATION_FAILED,
    EVENT_UNREGISTERED,
    EventBus,
    RuntimeEvent,
)
from plugin_runtime.observability.alerts import AlertDispatcher, AlertManager
from plugin_runtime.observability.structured_log import event_logger
from plugin_runtime.plugins.factory import PluginFactory
from plugin_runtime.services.circuit_breaker import CircuitBreakerRegistry
from plugin_runtime.services.health import HealthMonitor, HealthOptions
from plugin_runtime.services.loader import LoaderOptions, PluginLoader
from plugin_runtime.services.name_locks import NameLocks
from plugin_runtime.services.plugin_lifecycle import LifecycleOptions, PluginLifecycleManager
from plugin_runtime.services.recovery import ErrorRecoveryManager, RecoveryOptions, resolve_action_target
from plugin_runtime.services.registration import AutoRegistrationController, RegistrationOptions
from plugin_runtime.services.registry import PluginRegistry
from plugin_runtime.services.scanner import ManifestScanner, ScanOptions

logger = logging.getLogger(__name__)
event_log = logging.getLogger("plugin_runtime.events")


@dataclass
class PluginRuntime:
    """Every runtime component, constructed once and passed around explicitly."""

    config: RuntimeConfig
    events: EventBus
    scanner: ManifestScanner
    registry: PluginRegistry
    loader: PluginLoader
    controller: AutoRegistrationController
    breakers: CircuitBreakerRegistry
    recovery: ErrorRecoveryManager
    health: HealthMonitor
    lifecycle: PluginLifecycleManager
    alerts: AlertManager
    _pending: Set[asyncio.Task] = field(default_factory=set, repr=False)
    # Plugins currently being reloaded or disabled by a recovery action.
    _recovering: Set[str] = field(default_factory=set, repr=False)

    async def start(self) -> None:
        await self.controller.initialize()
        self.health.sync_with_registrations()
        await self.health.start()
        logger.info("runtime: started with %d registered plugin(s)", self.controller.statistics()["registered"])

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def shutdown(self) -> None:
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.health.stop()
        await self.controller.shutdown()
        self.alerts.detach()
        logger.info("runtime: shut down")

    def statistics(self) -> dict:
        return {
            "registry": self.registry.statistics(),
            "loader": self.loader.statistics(),
            "registrations": self.controller.statistics(),
            "recovery": self.recovery.statistics(),
            "circuit_breakers": self.breakers.statistics(),
            "lifecycle": self.lifecycle.statistics(),
            "alerts": self.alerts.statistics(),
        }


def build_runtime(config: RuntimeConfig, factory: Optional[PluginFactory] = None) -> PluginRuntime:
    events = EventBus()
    events.subscribe(event_logger(event_log))

    scanner = ManifestScanner(
        ScanOptions(
            directories=tuple(config.plugin_dirs),
            recursive=config.scan_recursive,
            exclude_patterns=tuple(config.scan_exclude),
            max_depth=config.scan_max_depth,
            watch=config.watch,
            watch_interval_sec=float(config.watch_interval_sec),
        ),
        events=events,
    )
    registry = PluginRegistry()
    # Controller and lifecycle manager serialize on the same per-name locks; the loader keeps its own.
    plugin_locks = NameLocks()
    loader = PluginLoader(
        factory or PluginFactory(),
        LoaderOptions(
            max_load_ms=config.max_load_ms,
            concurrency=config.load_concurrency,
            runtime_version=config.runtime_version,
        ),
    )
    controller = AutoRegistrationController(
        scanner,
        registry,
        loader,
        events,
        RegistrationOptions(
            auto_register_on_discovery=config.auto_register,
            auto_retry_failed=config.auto_retry,
            max_retry_attempts=config.max_retry_attempts,
            retry_delay_ms=config.retry_delay_ms,
            hot_reload=config.watch,
        ),
        locks=plugin_locks,
    )
    breakers = CircuitBreakerRegistry(
        failure_threshold=config.circuit_failure_threshold,
        recovery_timeout_ms=config.circuit_recovery_ms,
    )
    recovery = ErrorRecoveryManager(
        events,
        breakers,
        RecoveryOptions(
            base_delay_ms=config.recovery_base_delay_ms,
            recovery_timeout_ms=config.recovery_timeout_ms,
            retention_sec=config.error_retention_sec,
        ),
    )
    health = HealthMonitor(
        controller,
        breakers,
        recovery,
        HealthOptions(
            enabled=config.health_checks,
            interval_ms=config.health_interval_ms,
            timeout_ms=config.health_timeout_ms,
            max_consecutive_failures=config.health_max_failures,
        ),
        events=events,
    )
    lifecycle = PluginLifecycleManager(
        registry,
        events,
        LifecycleOptions(max_rollback_points=config.max_rollback_points),
        audit_dir=Path(config.config_dir) / "lifecycle",
        locks=plugin_locks,
    )
    dispatcher = AlertDispatcher(
        webhook_url=config.alert_webhook_url,
        min_severity=config.alert_min_severity,
        timeout_sec=config.alert_timeout_sec,
        dedup_window_sec=config.alert_dedup_window_sec,
        max_retries=config.alert_retry_count,
        max_dead_letters=config.alert_dead_letter_max,
    )
    alerts = AlertManager(events, dispatcher)
    alerts.attach()

    runtime = PluginRuntime(
        config=config,
        events=events,
        scanner=scanner,
        registry=registry,
        loader=loader,
        controller=controller,
        breakers=breakers,
        recovery=recovery,
        health=health,
        lifecycle=lifecycle,
        alerts=alerts,
    )
    _wire_recovery_actions(runtime)
    _wire_registration_events(runtime)
    return runtime


def _wire_recovery_actions(runtime: PluginRuntime) -> None:
    async def _reload(error: ErrorRecord, action: RecoveryAction) -> bool:
        name = resolve_action_target(error, action)
        runtime._recovering.add(name)
        try:
            result = await runtime.controller.reload_plugin(name)
        finally:
            runtime._recovering.discard(name)
        return result.success

    async def _disable(error: ErrorRecord, action: RecoveryAction) -> bool:
        name = resolve_action_target(error, action)
        runtime._recovering.add(name)
        try:
            result = await runtime.controller.unregister_plugin(name)
        finally:
            runtime._recovering.discard(name)
        return result.success

    async def _rollback(error: ErrorRecord, action: RecoveryAction) -> bool:
        version = action.parameters.get("version")
        target_version = None if version in (None, "", "previous") else str(version)
        result = await runtime.lifecycle.downgrade_plugin(resolve_action_target(error, action), target_version)
        return result.success

    for action_type in ("reload", "restart", "retry"):
        runtime.recovery.register_action_handler(action_type, _reload)
    runtime.recovery.register_action_handler("disable", _disable)
    runtime.recovery.register_action_handler("rollback", _rollback)


def _wire_registration_events(runtime: PluginRuntime) -> None:
    def _on_registered(event: RuntimeEvent) -> None:
        name = str(event.payload.get("plugin_name") or "")
        record = runtime.controller.get_registration(name)
        if record is None or record.handle is None:
            return
        if runtime.lifecycle.get_current_version(name) is None:
            install = runtime.lifecycle.install_plugin(record.metadata.path)
            if not install.success:
                logger.warning("runtime: could not record version for %s: %s", name, install.error)
        runtime.lifecycle.attach_handle(name, record.handle)

    def _on_unregistered(event: RuntimeEvent) -> None:
        runtime.lifecycle.detach_handle(str(event.payload.get("plugin_name") or ""))

    def _on_failed(event: RuntimeEvent) -> None:
        name = str(event.payload.get("plugin_name") or "")
        # Only report once the controller has stopped retrying on its own.
        if event.payload.get("retry_scheduled") or name in runtime._recovering:
            return
        runtime.spawn(
            runtime.recovery.report_error(
                severity=SEVERITY_MEDIUM,
                category=CATEGORY_PLUGIN_LOAD,
                message=str(event.payload.get("error") or "registration failed"),
                source="registration",
                context={"retry_count": event.payload.get("retry_count", 0)},
                plugin=name,
            )
        )

    runtime.events.subscribe(_on_registered, [EVENT_REGISTERED])
    runtime.events.subscribe(_on_unregistered, [EVENT_UNREGISTERED])
    runtime.events.subscribe(_on_failed, [EVENT_REGISTRATION_FAILED])
