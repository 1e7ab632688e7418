"""Auto-registration controller.

Drives discover -> resolve -> load -> register and owns the per-plugin
``RegistrationInfo`` records. Every transition and every load/unload for a
given plugin name happens while holding that name's lock, so a register and an
unregister for the same plugin can never interleave.

Usage::

    controller = AutoRegistrationController(scanner, registry, loader, events)
    await controller.initialize()
    ...
    await controller.shutdown()
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from plugin_runtime.domain.plugins import (
    REGISTRATION_FAILED,
    REGISTRATION_NOT_REGISTERED,
    REGISTRATION_REGISTERED,
    REGISTRATION_REGISTERING,
    REGISTRATION_UNREGISTERING,
    PluginMetadata,
    RegistrationInfo,
    RegistrationResult,
    validate_registration_transition,
)
from plugin_runtime.events.event_bus import (
    EVENT_REGISTERED,
    EVENT_REGISTRATION_FAILED,
    EVENT_UNREGISTERED,
    EventBus,
)
from plugin_runtime.services.loader import PluginLoader
from plugin_runtime.services.name_locks import NameLocks
from plugin_runtime.services.registry import PluginRegistry
from plugin_runtime.services.scanner import CHANGE_REMOVED, ManifestChange, ManifestScanner

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RegistrationOptions:
    auto_register_on_discovery: bool = True
    auto_retry_failed: bool = True
    max_retry_attempts: int = 3
    retry_delay_ms: int = 5000
    hot_reload: bool = False


class AutoRegistrationController:
    def __init__(
        self,
        scanner: ManifestScanner,
        registry: PluginRegistry,
        loader: PluginLoader,
        events: Optional[EventBus] = None,
        options: Optional[RegistrationOptions] = None,
        locks: Optional[NameLocks] = None,
    ) -> None:
        self._scanner = scanner
        self._registry = registry
        self._loader = loader
        self._events = events or EventBus()
        self._options = options or RegistrationOptions()
        self._records: Dict[str, RegistrationInfo] = {}
        self._locks = locks or NameLocks()
        self._retry_tasks: Set[asyncio.Task] = set()
        self._retries_scheduled = 0
        self._watching = False

    @property
    def options(self) -> RegistrationOptions:
        return self._options

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def initialize(self) -> List[RegistrationResult]:
        self._registry.refresh(self._scanner)
        results: List[RegistrationResult] = []
        if self._options.auto_register_on_discovery:
            for metadata in dependency_order(self._registry.list_all()):
                results.append(await self.register_plugin(metadata))
        if self._options.hot_reload and not self._watching:
            self._scanner.on_change(self.handle_manifest_change)
            await self._scanner.start_watching()
            self._watching = True
        registered = sum(1 for r in results if r.success)
        logger.info("registration: initialized, %d/%d plugin(s) registered", registered, len(results))
        return results

    async def register_plugin(self, metadata: PluginMetadata) -> RegistrationResult:
        async with self._locks.get(metadata.name):
            return await self._register_locked(metadata)

    async def unregister_plugin(self, name: str) -> RegistrationResult:
        async with self._locks.get(name):
            return await self._unregister_locked(name)

    async def reload_plugin(self, name: str, metadata: Optional[PluginMetadata] = None) -> RegistrationResult:
        """Unregister then register under a single hold of the name lock."""
        async with self._locks.get(name):
            record = self._records.get(name)
            target = metadata or self._registry.get(name) or (record.metadata if record else None)
            if target is None:
                return RegistrationResult(
                    success=False,
                    plugin_name=name,
                    status=REGISTRATION_NOT_REGISTERED,
                    error=f"Plugin {name} is not known to the registry",
                )
            # A failed record is re-registered in place so its retry count carries over.
            if record is not None and record.status == REGISTRATION_REGISTERED:
                removed = await self._unregister_locked(name)
                if not removed.success:
                    return removed
            logger.info("registration: reloading %s", name)
            return await self._register_locked(target)

    async def handle_manifest_change(self, change: ManifestChange) -> None:
        if change.change == CHANGE_REMOVED:
            for record in list(self._records.values()):
                if record.metadata.manifest_path != change.manifest_path:
                    continue
                await self.unregister_plugin(record.plugin_name)
                self._registry.remove(record.plugin_name)
            return
        for metadata in change.plugins:
            self._registry.upsert(metadata)
            record = self._records.get(metadata.name)
            if record is None:
                if self._options.auto_register_on_discovery:
                    await self.register_plugin(metadata)
                continue
            if record.status == REGISTRATION_REGISTERED and record.metadata.checksum == metadata.checksum:
                continue
            await self.reload_plugin(metadata.name, metadata)

    # ------------------------------------------------------------------
    # Locked bodies
    # ------------------------------------------------------------------

    async def _register_locked(self, metadata: PluginMetadata) -> RegistrationResult:
        name = metadata.name
        current = self._records.get(name)
        if current is not None and current.status == REGISTRATION_REGISTERED:
            return RegistrationResult(
                success=True,
                plugin_name=name,
                status=REGISTRATION_REGISTERED,
                handle=current.handle,
            )
        previous_retries = current.retry_count if current else 0
        self._store(name, REGISTRATION_REGISTERING, metadata=metadata, retry_count=previous_retries, error="")

        result = await self._loader.load(metadata)
        if result.success:
            now = _utc_now()
            self._store(
                name,
                REGISTRATION_REGISTERED,
                handle=result.handle,
                registered_at=now,
                load_time_ms=result.load_time_ms,
                retry_count=0,
            )
            self._events.publish(
                EVENT_REGISTERED,
                {
                    "plugin_name": name,
                    "version": metadata.manifest.version,
                    "load_time_ms": result.load_time_ms,
                    "warnings": list(result.warnings),
                },
            )
            return RegistrationResult(success=True, plugin_name=name, status=REGISTRATION_REGISTERED, handle=result.handle)

        retry_count = previous_retries + 1
        self._store(
            name,
            REGISTRATION_FAILED,
            error=result.error,
            load_time_ms=result.load_time_ms,
            retry_count=retry_count,
        )
        retry_scheduled = self._should_retry(metadata, previous_retries)
        if retry_scheduled:
            self._schedule_retry(name)
        self._events.publish(
            EVENT_REGISTRATION_FAILED,
            {
                "plugin_name": name,
                "error": result.error,
                "retry_count": retry_count,
                "retry_scheduled": retry_scheduled,
            },
        )
        return RegistrationResult(success=False, plugin_name=name, status=REGISTRATION_FAILED, error=result.error)

    async def _unregister_locked(self, name: str) -> RegistrationResult:
        current = self._records.get(name)
        if current is None:
            return RegistrationResult(
                success=False,
                plugin_name=name,
                status=REGISTRATION_NOT_REGISTERED,
                error=f"Plugin {name} is not registered",
            )
        if current.status not in (REGISTRATION_REGISTERED, REGISTRATION_FAILED):
            return RegistrationResult(
                success=False,
                plugin_name=name,
                status=current.status,
                error=f"Plugin {name} is {current.status}",
            )
        prior_status = current.status
        self._store(name, REGISTRATION_UNREGISTERING)

        unloaded = True
        if self._loader.is_loaded(name) or current.handle is not None:
            unloaded = await self._loader.unload(name, handle=current.handle)
        if not unloaded:
            error = self._loader.load_error(name) or "Plugin unload failed"
            self._store(name, prior_status, error=error)
            logger.warning("registration: unregister of %s failed, reverted to %s: %s", name, prior_status, error)
            return RegistrationResult(
                success=False,
                plugin_name=name,
                status=prior_status,
                handle=current.handle,
                error=error,
            )

        validate_registration_transition(REGISTRATION_UNREGISTERING, REGISTRATION_NOT_REGISTERED)
        del self._records[name]
        self._events.publish(EVENT_UNREGISTERED, {"plugin_name": name, "previous_status": prior_status})
        return RegistrationResult(success=True, plugin_name=name, status=REGISTRATION_NOT_REGISTERED)

    def _store(self, name: str, status: str, **changes: Any) -> RegistrationInfo:
        current = self._records.get(name)
        from_status = current.status if current else REGISTRATION_NOT_REGISTERED
        validate_registration_transition(from_status, status)
        now = _utc_now()
        if current is None:
            record = RegistrationInfo(
                plugin_name=name,
                status=status,
                metadata=changes.pop("metadata"),
                last_updated=now,
            )
            record = dataclasses.replace(record, **changes)
        else:
            record = dataclasses.replace(current, status=status, last_updated=now, **changes)
        self._records[name] = record
        return record

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    def _should_retry(self, metadata: PluginMetadata, previous_retries: int) -> bool:
        if not self._options.auto_retry_failed:
            return False
        # A broken manifest cannot succeed until it changes on disk.
        if not metadata.is_valid:
            return False
        return previous_retries < self._options.max_retry_attempts

    def _schedule_retry(self, name: str) -> None:
        delay_sec = max(0, self._options.retry_delay_ms) / 1000.0
        task = asyncio.create_task(self._retry_later(name, delay_sec), name=f"plugin-retry:{name}")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        self._retries_scheduled += 1
        logger.info("registration: retry for %s scheduled in %.1fs", name, delay_sec)

    async def _retry_later(self, name: str, delay_sec: float) -> None:
        await asyncio.sleep(delay_sec)
        async with self._locks.get(name):
            record = self._records.get(name)
            if record is None or record.status != REGISTRATION_FAILED:
                return
            metadata = self._registry.get(name) or record.metadata
            logger.info("registration: retrying %s (attempt %d)", name, record.retry_count)
            await self._register_locked(metadata)

    def pending_retries(self) -> int:
        return sum(1 for t in self._retry_tasks if not t.done())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_registration(self, name: str) -> Optional[RegistrationInfo]:
        return self._records.get(name)

    def all_registrations(self) -> List[RegistrationInfo]:
        return [self._records[name] for name in sorted(self._records)]

    def by_status(self, status: str) -> List[RegistrationInfo]:
        return [r for r in self.all_registrations() if r.status == status]

    def statistics(self) -> Dict[str, Any]:
        rows = self.all_registrations()
        counts = {
            REGISTRATION_REGISTERED: 0,
            REGISTRATION_FAILED: 0,
            REGISTRATION_REGISTERING: 0,
            REGISTRATION_UNREGISTERING: 0,
        }
        for record in rows:
            counts[record.status] = counts.get(record.status, 0) + 1
        load_times = [r.load_time_ms for r in rows if r.status == REGISTRATION_REGISTERED and r.load_time_ms is not None]
        retried = sum(1 for r in rows if r.retry_count > 0)
        return {
            "total": len(rows),
            "registered": counts[REGISTRATION_REGISTERED],
            "failed": counts[REGISTRATION_FAILED],
            "registering": counts[REGISTRATION_REGISTERING],
            "unregistering": counts[REGISTRATION_UNREGISTERING],
            "average_load_time_ms": (sum(load_times) / len(load_times)) if load_times else 0.0,
            "retry_rate": (retried / len(rows)) if rows else 0.0,
            "retries_scheduled": self._retries_scheduled,
            "pending_retries": self.pending_retries(),
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        tasks = list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()
        if self._watching:
            self._scanner.off_change(self.handle_manifest_change)
            await self._scanner.stop_watching()
            self._watching = False
        for record in self.by_status(REGISTRATION_REGISTERED):
            result = await self.unregister_plugin(record.plugin_name)
            if not result.success:
                logger.warning("registration: shutdown could not unregister %s: %s", record.plugin_name, result.error)
        self._records.clear()
        logger.info("registration: shutdown complete")


def dependency_order(metadatas: List[PluginMetadata]) -> List[PluginMetadata]:
    """Dependencies first; discovery order is kept otherwise and for cycles."""
    by_name = {m.name: m for m in metadatas}
    ordered: List[PluginMetadata] = []
    placed: Set[str] = set()
    remaining = list(metadatas)
    while remaining:
        progressed = False
        for metadata in list(remaining):
            deps = [d for d in metadata.manifest.dependencies if d in by_name and d != metadata.name]
            if all(d in placed for d in deps):
                ordered.append(metadata)
                placed.add(metadata.name)
                remaining.remove(metadata)
                progressed = True
        if not progressed:
            logger.warning(
                "registration: dependency cycle among %s, using discovery order",
                ", ".join(m.name for m in remaining),
            )
            ordered.extend(remaining)
            break
    return ordered
