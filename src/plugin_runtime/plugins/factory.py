"""Entrypoint resolution: maps a manifest entrypoint reference to a unit constructor.

Resolution order:
1. constructors registered explicitly with ``PluginFactory.register``
2. ``"package.module:ClassName"`` import references
3. ``*.py`` file paths relative to the plugin directory; the class named
   after the plugin, else ``Plugin``, else the first ``BasePlugin`` subclass.
"""
from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import re
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, List

from plugin_runtime.domain.plugins import PluginMetadata
from plugin_runtime.plugins.base import BasePlugin, PluginConfig

logger = logging.getLogger(__name__)

PluginConstructor = Callable[[PluginConfig], Any]


class PluginResolutionError(ImportError):
    pass


class PluginFactory:
    def __init__(self) -> None:
        self._constructors: Dict[str, PluginConstructor] = {}

    def register(self, entrypoint: str, constructor: PluginConstructor) -> None:
        key = (entrypoint or "").strip()
        if not key:
            raise ValueError("entrypoint is required")
        self._constructors[key] = constructor

    def unregister(self, entrypoint: str) -> None:
        self._constructors.pop((entrypoint or "").strip(), None)

    def registered(self) -> List[str]:
        return sorted(self._constructors)

    def build_config(self, metadata: PluginMetadata) -> PluginConfig:
        manifest = metadata.manifest
        return PluginConfig(
            name=manifest.name,
            description=manifest.description,
            version=manifest.version,
            is_active=True,
            settings=dict(manifest.settings),
        )

    def resolve(self, metadata: PluginMetadata) -> PluginConstructor:
        entrypoint = metadata.manifest.entrypoint.strip()
        if entrypoint in self._constructors:
            return self._constructors[entrypoint]
        if ":" in entrypoint and not entrypoint.endswith(".py"):
            return _resolve_import_reference(entrypoint)
        if entrypoint.endswith(".py"):
            return _resolve_file_reference(Path(metadata.path), entrypoint, metadata.manifest.name)
        raise PluginResolutionError(f"Unresolvable entrypoint '{entrypoint}' for plugin {metadata.manifest.name}")

    def create(self, metadata: PluginMetadata) -> Any:
        constructor = self.resolve(metadata)
        return constructor(self.build_config(metadata))


def _resolve_import_reference(reference: str) -> PluginConstructor:
    module_name, _, attr = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise PluginResolutionError(f"Cannot import plugin module '{module_name}': {exc}") from exc
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise PluginResolutionError(f"Plugin class '{attr}' not found in {module_name}")
    if not callable(target):
        raise PluginResolutionError(f"Plugin entrypoint '{reference}' is not callable")
    return target


def _resolve_file_reference(plugin_dir: Path, relative: str, plugin_name: str) -> PluginConstructor:
    file_path = (plugin_dir / relative).resolve()
    if not file_path.is_file():
        raise PluginResolutionError(f"Plugin entrypoint file not found: {file_path}")
    module_name = "_plugin_runtime_unit_" + re.sub(r"[^0-9A-Za-z_]", "_", plugin_name or file_path.stem)
    module = _load_module_from_path(module_name, file_path)
    for candidate_name in (plugin_name, "Plugin"):
        candidate = getattr(module, candidate_name, None)
        if inspect.isclass(candidate):
            return candidate
    for _, obj in inspect.getmembers(module, inspect.isclass):
        if issubclass(obj, BasePlugin) and obj is not BasePlugin and obj.__module__ == module.__name__:
            return obj
    raise PluginResolutionError(f"Plugin class not found in {file_path}")


def _load_module_from_path(module_name: str, file_path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise PluginResolutionError(f"Cannot create module spec for {file_path}")
    module = importlib.util.module_from_spec(spec)
    # Plugins importing their own siblings need the module registered.
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise PluginResolutionError(f"Failed to execute plugin module {file_path}: {exc}") from exc
    return module
