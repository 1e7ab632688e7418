"""Dependency-gated plugin loading.

``PluginLoader.load`` runs five gates in order: handle cache, manifest and
runtime-version validation, loaded-dependency check, instantiation through the
factory, and ``load()`` under a hard deadline. Any gate failure returns a
failed ``LoadResult``; nothing raises past the loader.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from plugin_runtime.domain.plugins import PluginMetadata
from plugin_runtime.plugins.factory import PluginFactory
from plugin_runtime.plugins.manifest import compare_versions
from plugin_runtime.services.name_locks import NameLocks

logger = logging.getLogger(__name__)

CACHE_REUSE_WARNING = "Plugin was already loaded from cache"


@dataclass(frozen=True)
class LoaderOptions:
    max_load_ms: int = 30000
    concurrency: int = 3
    dependency_resolution: bool = True
    cache_loaded: bool = True
    runtime_version: str = "1.0.0"


@dataclass(frozen=True)
class LoadResult:
    success: bool
    plugin_name: str
    handle: Any = None
    error: str = ""
    load_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BulkLoadResult:
    successful: List[LoadResult]
    failed: List[LoadResult]
    total_load_time_ms: float


class PluginLoader:
    def __init__(self, factory: Optional[PluginFactory] = None, options: Optional[LoaderOptions] = None) -> None:
        self._factory = factory or PluginFactory()
        self._options = options or LoaderOptions()
        self._handles: Dict[str, Any] = {}
        self._load_times: Dict[str, float] = {}
        self._errors: Dict[str, str] = {}
        self._locks = NameLocks()
        self._attempts = 0
        self._cache_hits = 0

    @property
    def factory(self) -> PluginFactory:
        return self._factory

    @property
    def options(self) -> LoaderOptions:
        return self._options

    async def load(self, metadata: PluginMetadata) -> LoadResult:
        name = metadata.name
        async with self._locks.get(name):
            self._attempts += 1
            cached = self._handles.get(name)
            if cached is not None:
                self._cache_hits += 1
                return LoadResult(
                    success=True,
                    plugin_name=name,
                    handle=cached,
                    load_time_ms=0.0,
                    warnings=[CACHE_REUSE_WARNING],
                )
            started = time.perf_counter()
            result = await self._load_uncached(metadata, started)
            self._load_times[name] = result.load_time_ms
            if result.success:
                self._errors.pop(name, None)
                if self._options.cache_loaded:
                    self._handles[name] = result.handle
                logger.info("loader: loaded %s in %.1fms", name, result.load_time_ms)
            else:
                self._errors[name] = result.error
                logger.warning("loader: failed to load %s: %s", name, result.error)
            return result

    async def _load_uncached(self, metadata: PluginMetadata, started: float) -> LoadResult:
        name = metadata.name

        def _failed(error: str) -> LoadResult:
            return LoadResult(success=False, plugin_name=name, error=error, load_time_ms=_elapsed_ms(started))

        if not metadata.is_valid:
            return _failed("Invalid plugin manifest: " + "; ".join(metadata.validation_errors))
        version_error = self._check_runtime_bounds(metadata)
        if version_error:
            return _failed(version_error)

        if self._options.dependency_resolution:
            missing = [dep for dep in metadata.manifest.dependencies if dep not in self._handles]
            if missing:
                return _failed("Missing loaded dependencies: " + ", ".join(missing))

        try:
            handle = self._factory.create(metadata)
        except Exception as exc:
            return _failed(f"Failed to instantiate plugin: {exc}")

        timeout_sec = self._options.max_load_ms / 1000.0
        try:
            outcome = await asyncio.wait_for(_maybe_await(handle.load()), timeout=timeout_sec)
        except asyncio.TimeoutError:
            # The handle is discarded; side effects of the abandoned load() are not undone.
            return _failed(f"Plugin load timeout after {self._options.max_load_ms}ms")
        except Exception as exc:
            return _failed(f"Plugin load failed: {exc}")
        if outcome is False:
            return _failed("Plugin load() reported failure")

        warnings: List[str] = []
        if getattr(handle, "is_loaded", True) is False:
            warnings.append("Plugin did not report itself as loaded")
        if not self._options.cache_loaded:
            warnings.append("Handle caching disabled; caller owns the handle")
        return LoadResult(
            success=True,
            plugin_name=name,
            handle=handle,
            load_time_ms=_elapsed_ms(started),
            warnings=warnings,
        )

    def _check_runtime_bounds(self, metadata: PluginMetadata) -> str:
        runtime = self._options.runtime_version
        minimum = metadata.manifest.minimum_runtime_version
        maximum = metadata.manifest.maximum_runtime_version
        if minimum and compare_versions(runtime, minimum) < 0:
            return f"Plugin requires runtime version >= {minimum} (current {runtime})"
        if maximum and compare_versions(runtime, maximum) > 0:
            return f"Plugin requires runtime version <= {maximum} (current {runtime})"
        return ""

    async def unload(self, name: str, handle: Any = None) -> bool:
        """Unload the cached handle for ``name``, else ``handle`` when caching left it with the caller."""
        async with self._locks.get(name):
            handle = self._handles.get(name, handle)
            if handle is None:
                return False
            timeout_sec = self._options.max_load_ms / 1000.0
            try:
                outcome = await asyncio.wait_for(_maybe_await(handle.unload()), timeout=timeout_sec)
            except asyncio.TimeoutError:
                self._errors[name] = f"Plugin unload timeout after {self._options.max_load_ms}ms"
                logger.warning("loader: unload of %s timed out", name)
                return False
            except Exception as exc:
                self._errors[name] = f"Plugin unload failed: {exc}"
                logger.warning("loader: unload of %s failed: %s", name, exc)
                return False
            if outcome is False:
                self._errors[name] = "Plugin unload() reported failure"
                return False
            self._handles.pop(name, None)
            self._load_times.pop(name, None)
            self._errors.pop(name, None)
            logger.info("loader: unloaded %s", name)
            return True

    async def load_many(self, metadatas: Iterable[PluginMetadata]) -> BulkLoadResult:
        rows = list(metadatas)
        started = time.perf_counter()
        successful: List[LoadResult] = []
        failed: List[LoadResult] = []
        size = max(1, int(self._options.concurrency))
        for offset in range(0, len(rows), size):
            chunk = rows[offset : offset + size]
            outcomes = await asyncio.gather(*(self.load(m) for m in chunk), return_exceptions=True)
            for metadata, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    failed.append(LoadResult(success=False, plugin_name=metadata.name, error=str(outcome)))
                elif outcome.success:
                    successful.append(outcome)
                else:
                    failed.append(outcome)
        return BulkLoadResult(successful=successful, failed=failed, total_load_time_ms=_elapsed_ms(started))

    def get_loaded(self, name: str) -> Any:
        return self._handles.get(name)

    def loaded_names(self) -> List[str]:
        return sorted(self._handles)

    def is_loaded(self, name: str) -> bool:
        return name in self._handles

    def load_time(self, name: str) -> Optional[float]:
        return self._load_times.get(name)

    def load_error(self, name: str) -> str:
        return self._errors.get(name, "")

    def statistics(self) -> Dict[str, Any]:
        loaded_times = [self._load_times[n] for n in self._handles if n in self._load_times]
        total = sum(loaded_times)
        return {
            "loaded_count": len(self._handles),
            "total_load_time_ms": total,
            "average_load_time_ms": (total / len(loaded_times)) if loaded_times else 0.0,
            "error_count": len(self._errors),
            "attempts": self._attempts,
            "cache_hits": self._cache_hits,
            "cache_hit_rate": (self._cache_hits / self._attempts) if self._attempts else 0.0,
        }

    async def clear_all(self) -> None:
        for name in list(self._handles):
            if not await self.unload(name):
                logger.warning("loader: dropping %s after failed unload", name)
                self._handles.pop(name, None)
        self._load_times.clear()
        self._errors.clear()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
