import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from plugin_runtime.domain.plugins import DependencyCheck, PluginMetadata

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"
_CACHE_KEY = "all"


@dataclass(frozen=True)
class RegistrySnapshot:
    plugins: Dict[str, PluginMetadata]
    order: List[str]
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PluginRegistry:
    """Read-only query surface over the latest scan.

    Every refresh builds a complete snapshot first and then swaps the cached
    entry in one assignment, so a reader sees either the old scan or the new
    one.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, RegistrySnapshot] = {_CACHE_KEY: RegistrySnapshot(plugins={}, order=[])}

    def refresh(self, scanner: Any, roots: Optional[List[str]] = None) -> RegistrySnapshot:
        return self.replace(scanner.scan(roots))

    def replace(self, metadatas: Iterable[PluginMetadata]) -> RegistrySnapshot:
        plugins: Dict[str, PluginMetadata] = {}
        order: List[str] = []
        for metadata in metadatas:
            existing = plugins.get(metadata.name)
            if existing is None:
                plugins[metadata.name] = metadata
                order.append(metadata.name)
                continue
            if not existing.is_valid and metadata.is_valid:
                plugins[metadata.name] = metadata
                continue
            logger.warning(
                "registry: duplicate plugin name %s at %s ignored (kept %s)",
                metadata.name,
                metadata.path,
                existing.path,
            )
        snapshot = RegistrySnapshot(plugins=plugins, order=order)
        self._cache[_CACHE_KEY] = snapshot
        return snapshot

    def upsert(self, metadata: PluginMetadata) -> None:
        """Swap in one rescanned record; still a whole-snapshot replacement."""
        current = self._snapshot()
        plugins = dict(current.plugins)
        order = list(current.order)
        if metadata.name not in plugins:
            order.append(metadata.name)
        plugins[metadata.name] = metadata
        self._cache[_CACHE_KEY] = RegistrySnapshot(plugins=plugins, order=order)

    def remove(self, name: str) -> bool:
        current = self._snapshot()
        if name not in current.plugins:
            return False
        plugins = {k: v for k, v in current.plugins.items() if k != name}
        order = [n for n in current.order if n != name]
        self._cache[_CACHE_KEY] = RegistrySnapshot(plugins=plugins, order=order)
        return True

    def get(self, name: str) -> Optional[PluginMetadata]:
        return self._snapshot().plugins.get(name)

    def list_all(self) -> List[PluginMetadata]:
        snapshot = self._snapshot()
        return [snapshot.plugins[name] for name in snapshot.order]

    def by_capability(self, capability: str) -> List[PluginMetadata]:
        return [m for m in self.list_all() if capability in m.manifest.capabilities]

    def by_category(self, category: str) -> List[PluginMetadata]:
        return [m for m in self.list_all() if (m.manifest.category or UNCATEGORIZED) == category]

    def statistics(self) -> Dict[str, Any]:
        rows = self.list_all()
        categories: Dict[str, int] = {}
        capabilities: Dict[str, int] = {}
        for metadata in rows:
            category = metadata.manifest.category or UNCATEGORIZED
            categories[category] = categories.get(category, 0) + 1
            for capability in metadata.manifest.capabilities:
                capabilities[capability] = capabilities.get(capability, 0) + 1
        valid = sum(1 for m in rows if m.is_valid)
        return {
            "total": len(rows),
            "valid": valid,
            "invalid": len(rows) - valid,
            "categories": categories,
            "capabilities": capabilities,
            "built_at": self._snapshot().built_at.isoformat(),
        }

    def validate_dependencies(self, metadata: PluginMetadata) -> DependencyCheck:
        plugins = self._snapshot().plugins
        missing = [dep for dep in metadata.manifest.dependencies if dep not in plugins]
        return DependencyCheck(valid=not missing, missing=missing)

    def _snapshot(self) -> RegistrySnapshot:
        return self._cache[_CACHE_KEY]
