"""Manifest discovery.

The scanner walks configured roots for ``plugin.json`` files and turns each one
into a ``PluginMetadata`` record. Bad manifests are reported as invalid records
rather than aborting the walk. With watch mode on, a polling task compares
per-manifest checksums and notifies subscribers about the affected subtree.
"""
from __future__ import annotations

import asyncio
import dataclasses
import fnmatch
import inspect
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from plugin_runtime.domain.plugins import PluginMetadata
from plugin_runtime.events.event_bus import EVENT_MANIFEST_CHANGED, EventBus
from plugin_runtime.plugins.manifest import (
    MANIFEST_FILENAME,
    ManifestError,
    manifest_checksum,
    parse_manifest,
    parse_manifest_bytes,
    validate_manifest,
)

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATTERNS: Tuple[str, ...] = (
    "*.test.*",
    "*.spec.*",
    "__tests__",
    "node_modules",
    "__pycache__",
)
REGISTRY_EXPORT_VERSION = "1.0.0"

CHANGE_ADDED = "added"
CHANGE_MODIFIED = "modified"
CHANGE_REMOVED = "removed"


@dataclass(frozen=True)
class ScanOptions:
    directories: Tuple[str, ...] = ("./plugins",)
    recursive: bool = True
    exclude_patterns: Tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    max_depth: int = 5
    watch: bool = False
    watch_interval_sec: float = 2.0


@dataclass(frozen=True)
class ManifestChange:
    path: str
    manifest_path: str
    change: str
    timestamp: datetime
    plugins: List[PluginMetadata] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": EVENT_MANIFEST_CHANGED,
            "path": self.path,
            "manifest_path": self.manifest_path,
            "change": self.change,
            "timestamp": self.timestamp.isoformat(),
            "plugins": [m.name for m in self.plugins],
        }


ChangeListener = Callable[[ManifestChange], Any]


class ManifestScanner:
    def __init__(self, options: Optional[ScanOptions] = None, events: Optional[EventBus] = None) -> None:
        self._options = options or ScanOptions()
        self._events = events
        self._listeners: List[ChangeListener] = []
        self._checksums: Dict[str, str] = {}
        self._last_results: List[PluginMetadata] = []
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def options(self) -> ScanOptions:
        return self._options

    @property
    def watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def scan(self, roots: Optional[Sequence[str]] = None) -> List[PluginMetadata]:
        results: List[PluginMetadata] = []
        checksums: Dict[str, str] = {}
        for manifest_path in self._collect_manifest_paths(roots or self._options.directories):
            metadata = self._build_metadata(manifest_path)
            if metadata is None:
                continue
            results.append(metadata)
            checksums[metadata.manifest_path] = metadata.checksum
        self._checksums = checksums
        self._last_results = list(results)
        invalid = sum(1 for m in results if not m.is_valid)
        logger.info("scanner: discovered %d manifest(s), %d invalid", len(results), invalid)
        return results

    def scan_subtree(self, path: str) -> List[PluginMetadata]:
        """Rescan a single plugin directory (and, if recursive, below it)."""
        results: List[PluginMetadata] = []
        for manifest_path in self._collect_manifest_paths([path]):
            metadata = self._build_metadata(manifest_path)
            if metadata is not None:
                results.append(metadata)
        return results

    def last_results(self) -> List[PluginMetadata]:
        return list(self._last_results)

    # ------------------------------------------------------------------
    # Watch mode
    # ------------------------------------------------------------------

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def off_change(self, listener: ChangeListener) -> None:
        self._listeners = [l for l in self._listeners if l is not listener]

    async def start_watching(self) -> None:
        if self.watching:
            return
        if not self._checksums:
            self._checksums = self._current_checksums()
        self._watch_task = asyncio.create_task(self._watch_loop(), name="manifest-watch")
        logger.info("scanner: watching %d root(s) every %.1fs", len(self._options.directories), self._options.watch_interval_sec)

    async def stop_watching(self) -> None:
        task = self._watch_task
        self._watch_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def poll_changes(self) -> List[ManifestChange]:
        """Compare manifest checksums against the last observation and dispatch changes."""
        current = self._current_checksums()
        previous = self._checksums
        self._checksums = current
        changes: List[ManifestChange] = []
        now = datetime.now(timezone.utc)
        for manifest_path in sorted(set(previous) | set(current)):
            before = previous.get(manifest_path)
            after = current.get(manifest_path)
            if before == after:
                continue
            if before is None:
                kind = CHANGE_ADDED
            elif after is None:
                kind = CHANGE_REMOVED
            else:
                kind = CHANGE_MODIFIED
            plugin_dir = str(Path(manifest_path).parent)
            plugins = [] if kind == CHANGE_REMOVED else self.scan_subtree(plugin_dir)
            changes.append(
                ManifestChange(
                    path=plugin_dir,
                    manifest_path=manifest_path,
                    change=kind,
                    timestamp=now,
                    plugins=plugins,
                )
            )
        for change in changes:
            await self._dispatch(change)
        return changes

    async def _watch_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._options.watch_interval_sec)
                await self.poll_changes()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("scanner: watch poll failed")

    async def _dispatch(self, change: ManifestChange) -> None:
        logger.info("scanner: manifest %s at %s", change.change, change.manifest_path)
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("scanner: change listener failed for %s", change.manifest_path)
        if self._events is not None:
            self._events.publish(EVENT_MANIFEST_CHANGED, change.to_payload())

    # ------------------------------------------------------------------
    # Registry export / import
    # ------------------------------------------------------------------

    def export_registry(self, metadatas: Optional[Iterable[PluginMetadata]] = None) -> str:
        rows = list(metadatas) if metadatas is not None else self.scan()
        registry = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "version": REGISTRY_EXPORT_VERSION,
            "plugins": [
                {
                    "manifest": m.manifest.to_dict(),
                    "path": m.path,
                    "checksum": m.checksum,
                    "last_modified": m.last_modified.isoformat(),
                    "is_valid": m.is_valid,
                }
                for m in rows
            ],
        }
        return json.dumps(registry, ensure_ascii=True, indent=2)

    def import_registry(self, text: str) -> Tuple[int, List[str]]:
        """Structurally validate an exported registry; returns (accepted, errors)."""
        try:
            registry = json.loads(text)
        except json.JSONDecodeError as exc:
            return 0, [f"Invalid registry data: {exc}"]
        plugins = registry.get("plugins") if isinstance(registry, dict) else None
        if not isinstance(plugins, list):
            return 0, ["Invalid registry data: 'plugins' must be an array."]
        accepted = 0
        errors: List[str] = []
        for index, entry in enumerate(plugins):
            if not isinstance(entry, dict) or not isinstance(entry.get("manifest"), dict) or not entry.get("path"):
                errors.append(f"Invalid plugin data at index {index}.")
                continue
            problems = validate_manifest(entry["manifest"])
            if problems:
                errors.append(f"Plugin at index {index}: " + "; ".join(problems))
                continue
            accepted += 1
        return accepted, errors

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------

    def _collect_manifest_paths(self, roots: Iterable[str]) -> List[Path]:
        found: List[Path] = []
        for root in roots:
            root_path = Path(root).expanduser()
            if self._is_excluded(root_path):
                continue
            self._walk(root_path, 0, found)
        return found

    def _walk(self, directory: Path, depth: int, found: List[Path]) -> None:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as exc:
            logger.warning("scanner: cannot read %s: %s", directory, exc)
            return
        subdirs: List[Path] = []
        for entry in entries:
            entry_path = Path(entry.path)
            if self._is_excluded(entry_path):
                continue
            try:
                if entry.is_dir():
                    subdirs.append(entry_path)
                elif entry.name == MANIFEST_FILENAME and entry.is_file():
                    found.append(entry_path)
            except OSError as exc:
                logger.warning("scanner: cannot stat %s: %s", entry_path, exc)
        if not self._options.recursive or depth >= self._options.max_depth:
            return
        for subdir in subdirs:
            self._walk(subdir, depth + 1, found)

    def _is_excluded(self, path: Path) -> bool:
        name = path.name
        full = str(path)
        for pattern in self._options.exclude_patterns:
            if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(full, pattern):
                return True
        return False

    def _current_checksums(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for manifest_path in self._collect_manifest_paths(self._options.directories):
            try:
                out[str(manifest_path)] = manifest_checksum(manifest_path.read_bytes())
            except OSError as exc:
                logger.warning("scanner: cannot read %s: %s", manifest_path, exc)
        return out

    def _build_metadata(self, manifest_path: Path) -> Optional[PluginMetadata]:
        try:
            raw = manifest_path.read_bytes()
            stat = manifest_path.stat()
        except OSError as exc:
            logger.warning("scanner: cannot read manifest %s: %s", manifest_path, exc)
            return None
        try:
            data = parse_manifest_bytes(raw)
            errors = validate_manifest(data)
        except ManifestError as exc:
            data = {}
            errors = [str(exc)]
        manifest = parse_manifest(data)
        if not manifest.name:
            manifest = dataclasses.replace(manifest, name=manifest_path.parent.name)
        if errors:
            logger.warning("scanner: invalid manifest %s: %s", manifest_path, "; ".join(errors))
        return PluginMetadata(
            manifest=manifest,
            path=str(manifest_path.parent),
            manifest_path=str(manifest_path),
            is_valid=not errors,
            validation_errors=tuple(errors),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            file_size=stat.st_size,
            checksum=manifest_checksum(raw),
        )
