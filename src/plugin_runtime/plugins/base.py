"""Plugin unit contract.

The runtime only ever touches a loaded unit through this surface:
``load()``, ``unload()``, the ``is_loaded`` flag, and the descriptor block
(``name``, ``version``, ``is_active``). Units may optionally expose an async
``health_check()`` returning a bool, and the snapshot/restore helpers used by
rollback points.
"""
from __future__ import annotations

import copy
import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, runtime_checkable


@dataclass
class PluginConfig:
    name: str
    description: str = ""
    version: str = "0.0.0"
    is_active: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PluginUnit(Protocol):
    name: str
    version: str
    is_active: bool
    is_loaded: bool

    async def load(self) -> None:
        ...

    async def unload(self) -> None:
        ...


class BasePlugin:
    """Convenience base for plugin units.

    Subclasses override ``on_load`` / ``on_unload``; both may be plain or
    async. ``load`` raises if ``on_load`` fails, which the loader turns into a
    failed load result.
    """

    def __init__(self, config: PluginConfig):
        self.config = config
        self.is_loaded = False
        self.state: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def version(self) -> str:
        return self.config.version

    @property
    def is_active(self) -> bool:
        return self.config.is_active

    async def load(self) -> None:
        result = self.on_load()
        if inspect.isawaitable(result):
            await result
        self.is_loaded = True

    async def unload(self) -> None:
        result = self.on_unload()
        if inspect.isawaitable(result):
            await result
        self.is_loaded = False

    def on_load(self) -> Any:
        return None

    def on_unload(self) -> Any:
        return None

    async def health_check(self) -> bool:
        return self.is_loaded

    def snapshot_config(self) -> Dict[str, Any]:
        return {
            "name": self.config.name,
            "description": self.config.description,
            "version": self.config.version,
            "is_active": self.config.is_active,
            "settings": copy.deepcopy(self.config.settings),
        }

    def restore_config(self, snapshot: Dict[str, Any]) -> None:
        self.config.description = str(snapshot.get("description", self.config.description))
        self.config.is_active = bool(snapshot.get("is_active", self.config.is_active))
        self.config.settings = copy.deepcopy(dict(snapshot.get("settings") or {}))

    def snapshot_state(self) -> Dict[str, Any]:
        return copy.deepcopy(self.state)

    def restore_state(self, snapshot: Dict[str, Any]) -> None:
        self.state = copy.deepcopy(dict(snapshot))
