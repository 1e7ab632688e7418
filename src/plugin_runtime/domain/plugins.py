"""Plugin discovery and registration records, plus the registration state machine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Registration states
# ---------------------------------------------------------------------------

REGISTRATION_NOT_REGISTERED = "not_registered"
REGISTRATION_REGISTERING = "registering"
REGISTRATION_REGISTERED = "registered"
REGISTRATION_FAILED = "failed"
REGISTRATION_UNREGISTERING = "unregistering"

REGISTRATION_STATES: FrozenSet[str] = frozenset(
    [
        REGISTRATION_NOT_REGISTERED,
        REGISTRATION_REGISTERING,
        REGISTRATION_REGISTERED,
        REGISTRATION_FAILED,
        REGISTRATION_UNREGISTERING,
    ]
)

_ALLOWED_TRANSITIONS: FrozenSet[Tuple[str, str]] = frozenset(
    [
        (REGISTRATION_NOT_REGISTERED, REGISTRATION_REGISTERING),
        (REGISTRATION_REGISTERING, REGISTRATION_REGISTERED),
        (REGISTRATION_REGISTERING, REGISTRATION_FAILED),
        (REGISTRATION_REGISTERED, REGISTRATION_UNREGISTERING),
        (REGISTRATION_UNREGISTERING, REGISTRATION_NOT_REGISTERED),
        # Unload failure puts the record back where it was.
        (REGISTRATION_UNREGISTERING, REGISTRATION_REGISTERED),
        (REGISTRATION_UNREGISTERING, REGISTRATION_FAILED),
        (REGISTRATION_FAILED, REGISTRATION_REGISTERING),
        (REGISTRATION_FAILED, REGISTRATION_UNREGISTERING),
    ]
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Manifest:
    name: str
    version: str
    description: str
    entrypoint: str
    dependencies: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    author: str = ""
    category: Optional[str] = None
    keywords: Tuple[str, ...] = ()
    minimum_runtime_version: Optional[str] = None
    maximum_runtime_version: Optional[str] = None
    config_schema: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "entrypoint": self.entrypoint,
            "dependencies": list(self.dependencies),
            "capabilities": list(self.capabilities),
            "permissions": list(self.permissions),
            "author": self.author,
            "category": self.category,
            "keywords": list(self.keywords),
            "minimumRuntimeVersion": self.minimum_runtime_version,
            "maximumRuntimeVersion": self.maximum_runtime_version,
        }


@dataclass(frozen=True)
class PluginMetadata:
    """One scanned manifest. Two records with equal checksum are interchangeable."""

    manifest: Manifest
    path: str
    manifest_path: str
    is_valid: bool
    validation_errors: Tuple[str, ...]
    last_modified: datetime
    file_size: int
    checksum: str

    @property
    def name(self) -> str:
        return self.manifest.name


@dataclass(frozen=True)
class DependencyCheck:
    valid: bool
    missing: List[str]


@dataclass(frozen=True)
class RegistrationInfo:
    plugin_name: str
    status: str
    metadata: PluginMetadata
    last_updated: datetime
    handle: Any = None
    error: str = ""
    registered_at: Optional[datetime] = None
    load_time_ms: Optional[float] = None
    retry_count: int = 0


@dataclass(frozen=True)
class RegistrationResult:
    success: bool
    plugin_name: str
    status: str
    handle: Any = None
    error: str = ""


# ---------------------------------------------------------------------------
# Transition validator
# ---------------------------------------------------------------------------


class TransitionError(ValueError):
    pass


def validate_registration_transition(from_state: str, to_state: str) -> None:
    """Raise TransitionError if the transition is not part of the registration graph."""
    if from_state not in REGISTRATION_STATES:
        raise TransitionError(f"Unknown source state: '{from_state}'")
    if to_state not in REGISTRATION_STATES:
        raise TransitionError(f"Unknown target state: '{to_state}'")
    if (from_state, to_state) not in _ALLOWED_TRANSITIONS:
        raise TransitionError(f"Transition '{from_state}' -> '{to_state}' is not allowed.")


def allowed_next_states(state: str) -> List[str]:
    return sorted(to for (frm, to) in _ALLOWED_TRANSITIONS if frm == state)
