from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class PluginVersion:
    version: str
    changelog: str
    breaking_changes: bool
    dependencies: List[str]
    release_date: datetime
    checksum: str
    author: str
    description: str
    location: str = ""


@dataclass(frozen=True)
class RollbackPoint:
    version: str
    timestamp: datetime
    description: str
    config_snapshot: Dict[str, Any]
    state_snapshot: Dict[str, Any]


@dataclass(frozen=True)
class PluginHistory:
    versions: List[PluginVersion]
    rollback_points: List[RollbackPoint]
    current_state: Optional[Dict[str, Any]]
    current_config: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class InstallResult:
    success: bool
    plugin_name: str
    version: str = ""
    error: str = ""


@dataclass(frozen=True)
class UpgradeResult:
    success: bool
    from_version: Optional[str]
    to_version: str
    migrated: bool = False
    backup_created: bool = False
    error: str = ""


@dataclass(frozen=True)
class RollbackResult:
    success: bool
    from_version: Optional[str]
    to_version: Optional[str]
    restored_state: bool = False
    restored_config: bool = False
    error: str = ""


@dataclass(frozen=True)
class BackupResult:
    success: bool
    plugin_name: str
    timestamp: datetime
    description: str
    error: str = ""


@dataclass(frozen=True)
class CompatibilityReport:
    compatible: bool
    current_version: Optional[str]
    target_version: str
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LifecycleAuditEvent:
    ts: datetime
    action: str
    plugin_name: str
    outcome: str
    details: Dict[str, str]
