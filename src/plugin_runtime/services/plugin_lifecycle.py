import copy
import inspect
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from plugin_runtime.domain.versions import (
    BackupResult,
    CompatibilityReport,
    InstallResult,
    LifecycleAuditEvent,
    PluginHistory,
    PluginVersion,
    RollbackPoint,
    RollbackResult,
    UpgradeResult,
)
from plugin_runtime.events.event_bus import (
    EVENT_PLUGIN_DOWNGRADED,
    EVENT_PLUGIN_INSTALLED,
    EVENT_PLUGIN_LIFECYCLE_ERROR,
    EVENT_PLUGIN_UNINSTALLED,
    EVENT_PLUGIN_UPGRADED,
    EventBus,
)
from plugin_runtime.plugins.manifest import (
    MANIFEST_FILENAME,
    ManifestError,
    compare_versions,
    manifest_checksum,
    parse_manifest,
    parse_manifest_bytes,
    parse_version_tuple,
    validate_manifest,
)
from plugin_runtime.services.name_locks import NameLocks

logger = logging.getLogger(__name__)

MigrationHook = Callable[[str, str, str, Any], Union[Any, Awaitable[Any]]]

BEFORE_UPGRADE = "Before upgrade"
MANUAL_BACKUP = "Manual backup"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleError(ValueError):
    pass


@dataclass(frozen=True)
class LifecycleOptions:
    enable_versioning: bool = True
    enable_rollback: bool = True
    enable_backup: bool = True
    auto_migrate: bool = True
    dependency_check: bool = True
    max_rollback_points: int = 5


class PluginLifecycleManager:
    def __init__(
        self,
        registry: Any = None,
        events: Optional[EventBus] = None,
        options: Optional[LifecycleOptions] = None,
        audit_dir: Optional[Path] = None,
        locks: Optional[NameLocks] = None,
    ):
        self._registry = registry
        self._events = events or EventBus()
        self._options = options or LifecycleOptions()
        self._versions: Dict[str, List[PluginVersion]] = {}
        self._rollback_points: Dict[str, List[RollbackPoint]] = {}
        self._states: Dict[str, Dict[str, Any]] = {}
        self._configs: Dict[str, Dict[str, Any]] = {}
        self._handles: Dict[str, Any] = {}
        self._migrations: Dict[Tuple[str, str, str], MigrationHook] = {}
        self._locks = locks or NameLocks()
        self._audit_rows: List[LifecycleAuditEvent] = []
        self._audit_path: Optional[Path] = None
        if audit_dir is not None:
            root = Path(audit_dir).expanduser().resolve()
            root.mkdir(parents=True, exist_ok=True)
            self._audit_path = root / "audit.jsonl"

    # ------------------------------------------------------------------
    # Install / uninstall
    # ------------------------------------------------------------------

    def install_plugin(self, location: str, version: Optional[str] = None) -> InstallResult:
        try:
            record, name = self._install(Path(location), version)
        except LifecycleError as exc:
            self._fail("install", str(location), str(exc))
            return InstallResult(success=False, plugin_name="", version=version or "", error=str(exc))
        self._events.publish(
            EVENT_PLUGIN_INSTALLED,
            {"plugin_name": name, "version": record.version, "location": record.location},
        )
        self._append_audit("install", name, "success", {"version": record.version})
        return InstallResult(success=True, plugin_name=name, version=record.version)

    def uninstall_plugin(self, name: str) -> bool:
        if name not in self._versions:
            self._append_audit("uninstall", name, "failed", {"reason": "not_installed"})
            return False
        self._versions.pop(name, None)
        self._rollback_points.pop(name, None)
        self._states.pop(name, None)
        self._configs.pop(name, None)
        self._handles.pop(name, None)
        for key in [k for k in self._migrations if k[0] == name]:
            del self._migrations[key]
        self._events.publish(EVENT_PLUGIN_UNINSTALLED, {"plugin_name": name})
        self._append_audit("uninstall", name, "success", {})
        return True

    def _install(
        self,
        location: Path,
        version: Optional[str],
        expected_name: Optional[str] = None,
    ) -> Tuple[PluginVersion, str]:
        manifest_path = location / MANIFEST_FILENAME if location.is_dir() else location
        try:
            raw = manifest_path.read_bytes()
            data = parse_manifest_bytes(raw)
        except (OSError, ManifestError) as exc:
            raise LifecycleError(f"Could not load plugin manifest from {location}: {exc}") from exc
        errors = validate_manifest(data)
        if errors:
            raise LifecycleError("Invalid plugin manifest: " + "; ".join(errors))
        manifest = parse_manifest(data)
        if expected_name is not None and manifest.name != expected_name:
            raise LifecycleError(f"Manifest at {location} is for plugin {manifest.name}, not {expected_name}")
        if self._options.dependency_check:
            missing = [dep for dep in manifest.dependencies if self.get_current_version(dep) is None]
            if missing:
                raise LifecycleError(
                    f"Dependency check failed for plugin {manifest.name}: missing " + ", ".join(missing)
                )
        record = PluginVersion(
            version=version or manifest.version,
            changelog=str(data.get("changelog") or ""),
            breaking_changes=bool(data.get("breakingChanges", False)),
            dependencies=list(manifest.dependencies),
            release_date=self._next_release_date(manifest.name),
            checksum=manifest_checksum(raw),
            author=manifest.author,
            description=manifest.description,
            location=str(manifest_path.parent),
        )
        self._register_version(manifest.name, record)
        logger.info("lifecycle: installed %s %s from %s", manifest.name, record.version, record.location)
        return record, manifest.name

    def _register_version(self, name: str, record: PluginVersion) -> None:
        versions = self._versions.setdefault(name, [])
        if not self._options.enable_versioning:
            versions[:] = [record]
            return
        for index, existing in enumerate(versions):
            if existing.version == record.version:
                versions[index] = record
                return
        versions.append(record)

    def _next_release_date(self, name: str) -> datetime:
        # Strictly increasing per plugin so "latest release_date" is never a tie.
        now = _utc_now()
        versions = self._versions.get(name) or []
        if versions:
            latest = max(v.release_date for v in versions)
            if now <= latest:
                now = latest + timedelta(microseconds=1)
        return now

    # ------------------------------------------------------------------
    # Upgrade / downgrade
    # ------------------------------------------------------------------

    async def upgrade_plugin(self, name: str, new_version: str, location: Optional[str] = None) -> UpgradeResult:
        async with self._locks.get(name):
            current = self.get_current_version(name)
            if current is None:
                return self._upgrade_failed(name, None, new_version, f"Plugin {name} is not installed")

            backup_created = False
            if self._options.enable_rollback:
                self._create_rollback_point(name, BEFORE_UPGRADE)
                backup_created = True
            elif self._options.enable_backup:
                self._capture(name)

            previous_versions = list(self._versions.get(name) or [])
            try:
                if location:
                    self._install(Path(location), new_version, expected_name=name)
                else:
                    metadata = self._registry.get(name) if self._registry is not None else None
                    if metadata is None:
                        raise LifecycleError(f"Plugin {name} not found in discovery")
                    self._install(Path(metadata.manifest_path), new_version, expected_name=name)
            except LifecycleError as exc:
                self._versions[name] = previous_versions
                return self._upgrade_failed(name, current, new_version, str(exc), backup_created)

            migrated = False
            hook = self._migrations.get((name, current, new_version))
            if self._options.auto_migrate and hook is not None:
                try:
                    outcome = hook(name, current, new_version, self._handles.get(name))
                    if inspect.isawaitable(outcome):
                        outcome = await outcome
                except Exception as exc:
                    self._versions[name] = previous_versions
                    return self._upgrade_failed(name, current, new_version, f"Migration failed: {exc}", backup_created)
                if outcome is False:
                    self._versions[name] = previous_versions
                    return self._upgrade_failed(name, current, new_version, "Migration reported failure", backup_created)
                migrated = True

        self._events.publish(
            EVENT_PLUGIN_UPGRADED,
            {"plugin_name": name, "from_version": current, "to_version": new_version, "migrated": migrated},
        )
        self._append_audit("upgrade", name, "success", {"from_version": current, "to_version": new_version})
        return UpgradeResult(
            success=True,
            from_version=current,
            to_version=new_version,
            migrated=migrated,
            backup_created=backup_created,
        )

    async def downgrade_plugin(self, name: str, target_version: Optional[str] = None) -> RollbackResult:
        async with self._locks.get(name):
            current = self.get_current_version(name)
            if current is None:
                return self._rollback_failed(name, None, target_version, f"Plugin {name} is not installed")
            point = self._find_rollback_point(name, target_version)
            if point is None:
                suffix = f" version {target_version}" if target_version else ""
                return self._rollback_failed(name, current, target_version, f"No rollback point found for plugin {name}{suffix}")

            restored_config = restored_state = False
            if self._options.enable_backup:
                restored_config, restored_state = self._restore(name, point)
            self._activate_version(name, point.version)

        self._events.publish(
            EVENT_PLUGIN_DOWNGRADED,
            {"plugin_name": name, "from_version": current, "to_version": point.version},
        )
        self._append_audit("downgrade", name, "success", {"from_version": current, "to_version": point.version})
        return RollbackResult(
            success=True,
            from_version=current,
            to_version=point.version,
            restored_state=restored_state,
            restored_config=restored_config,
        )

    def create_backup(self, name: str, description: str = MANUAL_BACKUP) -> BackupResult:
        now = _utc_now()
        if self.get_current_version(name) is None:
            return BackupResult(
                success=False,
                plugin_name=name,
                timestamp=now,
                description=description,
                error=f"Plugin {name} is not installed",
            )
        if self._options.enable_rollback:
            self._create_rollback_point(name, description)
        else:
            self._capture(name)
        self._append_audit("backup", name, "success", {"description": description})
        return BackupResult(success=True, plugin_name=name, timestamp=now, description=description)

    def register_migration(self, name: str, from_version: str, to_version: str, hook: MigrationHook) -> None:
        self._migrations[(name, from_version, to_version)] = hook

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def attach_handle(self, name: str, handle: Any) -> None:
        self._handles[name] = handle

    def detach_handle(self, name: str) -> None:
        if name in self._handles:
            # Keep the last snapshots so later rollback points still have data.
            self._capture(name)
            self._handles.pop(name, None)

    def get_handle(self, name: str) -> Any:
        return self._handles.get(name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_version(self, name: str) -> Optional[str]:
        record = self._current_record(name)
        return record.version if record else None

    def get_installed_plugins(self) -> Dict[str, PluginVersion]:
        out: Dict[str, PluginVersion] = {}
        for name in sorted(self._versions):
            record = self._current_record(name)
            if record is not None:
                out[name] = record
        return out

    def get_plugin_history(self, name: str) -> PluginHistory:
        versions = sorted(self._versions.get(name) or [], key=lambda v: v.release_date, reverse=True)
        points = sorted(self._rollback_points.get(name) or [], key=lambda p: p.timestamp, reverse=True)
        return PluginHistory(
            versions=versions,
            rollback_points=points,
            current_state=copy.deepcopy(self._states.get(name)),
            current_config=copy.deepcopy(self._configs.get(name)),
        )

    def get_upgrade_compatibility(self, name: str, target_version: str) -> CompatibilityReport:
        issues: List[str] = []
        warnings: List[str] = []
        current = self.get_current_version(name)
        if current is None:
            issues.append(f"Plugin {name} is not currently installed")
            return CompatibilityReport(
                compatible=False,
                current_version=None,
                target_version=target_version,
                issues=issues,
                warnings=warnings,
            )
        if compare_versions(target_version, current) <= 0:
            issues.append(f"Target version {target_version} is not newer than current version {current}")
        else:
            if parse_version_tuple(target_version)[:1] != parse_version_tuple(current)[:1]:
                warnings.append(f"Major version change from {current} to {target_version} may break dependents")
            known = next((v for v in self._versions.get(name) or [] if v.version == target_version), None)
            if known is not None and known.breaking_changes:
                warnings.append(f"Version {target_version} declares breaking changes")
        return CompatibilityReport(
            compatible=not issues,
            current_version=current,
            target_version=target_version,
            issues=issues,
            warnings=warnings,
        )

    def statistics(self) -> Dict[str, Any]:
        return {
            "installed_plugins": len(self._versions),
            "total_versions": sum(len(v) for v in self._versions.values()),
            "rollback_points": sum(len(p) for p in self._rollback_points.values()),
            "attached_handles": len(self._handles),
            "migrations": len(self._migrations),
            "max_rollback_points": self._options.max_rollback_points,
        }

    def list_audit_events(self, limit: int = 200) -> List[LifecycleAuditEvent]:
        if self._audit_path is None:
            return self._audit_rows[-max(1, limit) :]
        if not self._audit_path.exists():
            return []
        rows = self._audit_path.read_text(encoding="utf-8").splitlines()
        items: List[LifecycleAuditEvent] = []
        for raw in rows[-max(1, limit) :]:
            try:
                data = json.loads(raw)
                items.append(
                    LifecycleAuditEvent(
                        ts=datetime.fromisoformat(data["ts"]),
                        action=str(data.get("action") or ""),
                        plugin_name=str(data.get("plugin_name") or ""),
                        outcome=str(data.get("outcome") or ""),
                        details={k: str(v) for k, v in dict(data.get("details") or {}).items()},
                    )
                )
            except (ValueError, KeyError, TypeError):
                logger.warning("lifecycle: skipping malformed audit row")
        return items

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _current_record(self, name: str) -> Optional[PluginVersion]:
        versions = self._versions.get(name)
        if not versions:
            return None
        # Latest release_date wins; on a tie the later insertion wins.
        best_index = max(range(len(versions)), key=lambda i: (versions[i].release_date, i))
        return versions[best_index]

    def _activate_version(self, name: str, version: str) -> None:
        versions = self._versions.get(name) or []
        for index, record in enumerate(versions):
            if record.version == version:
                versions[index] = replace(record, release_date=self._next_release_date(name))
                return

    def _capture(self, name: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        handle = self._handles.get(name)
        if handle is None:
            return copy.deepcopy(self._configs.get(name) or {}), copy.deepcopy(self._states.get(name) or {})
        if callable(getattr(handle, "snapshot_config", None)):
            config = handle.snapshot_config()
        else:
            config = {
                "name": getattr(handle, "name", name),
                "version": getattr(handle, "version", ""),
                "is_active": getattr(handle, "is_active", True),
            }
        if callable(getattr(handle, "snapshot_state", None)):
            state = handle.snapshot_state()
        else:
            state = {"is_loaded": bool(getattr(handle, "is_loaded", False))}
        self._configs[name] = copy.deepcopy(config)
        self._states[name] = copy.deepcopy(state)
        return copy.deepcopy(config), copy.deepcopy(state)

    def _create_rollback_point(self, name: str, description: str) -> RollbackPoint:
        config, state = self._capture(name)
        point = RollbackPoint(
            version=self.get_current_version(name) or "unknown",
            timestamp=_utc_now(),
            description=description,
            config_snapshot=config,
            state_snapshot=state,
        )
        points = self._rollback_points.setdefault(name, [])
        points.append(point)
        while len(points) > max(1, self._options.max_rollback_points):
            points.pop(0)
        return point

    def _find_rollback_point(self, name: str, target_version: Optional[str]) -> Optional[RollbackPoint]:
        points = self._rollback_points.get(name) or []
        if not points:
            return None
        if target_version:
            for point in reversed(points):
                if point.version == target_version:
                    return point
        return points[-1]

    def _restore(self, name: str, point: RollbackPoint) -> Tuple[bool, bool]:
        config = copy.deepcopy(point.config_snapshot)
        state = copy.deepcopy(point.state_snapshot)
        self._configs[name] = copy.deepcopy(config)
        self._states[name] = copy.deepcopy(state)
        handle = self._handles.get(name)
        if handle is not None:
            if callable(getattr(handle, "restore_config", None)):
                handle.restore_config(config)
            if callable(getattr(handle, "restore_state", None)):
                handle.restore_state(state)
        return True, True

    def _upgrade_failed(
        self,
        name: str,
        from_version: Optional[str],
        to_version: str,
        error: str,
        backup_created: bool = False,
    ) -> UpgradeResult:
        self._fail("upgrade", name, error, from_version=from_version or "", to_version=to_version)
        return UpgradeResult(
            success=False,
            from_version=from_version,
            to_version=to_version,
            backup_created=backup_created,
            error=error,
        )

    def _rollback_failed(
        self,
        name: str,
        from_version: Optional[str],
        to_version: Optional[str],
        error: str,
    ) -> RollbackResult:
        self._fail("downgrade", name, error, from_version=from_version or "", to_version=to_version or "")
        return RollbackResult(success=False, from_version=from_version, to_version=to_version, error=error)

    def _fail(self, operation: str, name: str, error: str, **details: str) -> None:
        logger.warning("lifecycle: %s of %s failed: %s", operation, name, error)
        payload: Dict[str, Any] = {"plugin_name": name, "operation": operation, "error": error}
        payload.update(details)
        self._events.publish(EVENT_PLUGIN_LIFECYCLE_ERROR, payload)
        self._append_audit(operation, name, "failed", dict(details, reason=error))

    def _append_audit(self, action: str, plugin_name: str, outcome: str, details: Dict[str, str]) -> None:
        now = _utc_now()
        if self._audit_path is None:
            self._audit_rows.append(
                LifecycleAuditEvent(
                    ts=now,
                    action=action,
                    plugin_name=plugin_name,
                    outcome=outcome,
                    details={k: str(v) for k, v in details.items()},
                )
            )
            return
        row = {
            "ts": now.isoformat(),
            "action": action,
            "plugin_name": plugin_name,
            "outcome": outcome,
            "details": details,
        }
        with self._audit_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=True) + "\n")
