from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from fastapi import FastAPI, HTTPException

from plugin_runtime.app_container import PluginRuntime
from plugin_runtime.domain.plugins import PluginMetadata, RegistrationInfo, RegistrationResult
from plugin_runtime.domain.versions import PluginVersion, RollbackPoint, RollbackResult, UpgradeResult


class PluginUpgradeRequest(BaseModel):
    new_version: str
    location: Optional[str] = None


class PluginDowngradeRequest(BaseModel):
    target_version: Optional[str] = None


def _metadata_to_dict(metadata: PluginMetadata) -> Dict[str, Any]:
    return {
        "name": metadata.name,
        "path": metadata.path,
        "manifest_path": metadata.manifest_path,
        "is_valid": metadata.is_valid,
        "validation_errors": list(metadata.validation_errors),
        "last_modified": metadata.last_modified.isoformat(),
        "file_size": metadata.file_size,
        "checksum": metadata.checksum,
        "manifest": metadata.manifest.to_dict(),
    }


def _registration_to_dict(info: RegistrationInfo) -> Dict[str, Any]:
    return {
        "plugin_name": info.plugin_name,
        "status": info.status,
        "error": info.error,
        "registered_at": info.registered_at.isoformat() if info.registered_at else None,
        "last_updated": info.last_updated.isoformat(),
        "load_time_ms": info.load_time_ms,
        "retry_count": info.retry_count,
        "version": info.metadata.manifest.version,
    }


def _result_to_dict(result: RegistrationResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "plugin_name": result.plugin_name,
        "status": result.status,
        "error": result.error,
    }


def _version_to_dict(version: PluginVersion) -> Dict[str, Any]:
    return {
        "version": version.version,
        "changelog": version.changelog,
        "breaking_changes": version.breaking_changes,
        "dependencies": list(version.dependencies),
        "release_date": version.release_date.isoformat(),
        "checksum": version.checksum,
        "author": version.author,
        "description": version.description,
        "location": version.location,
    }


def _rollback_point_to_dict(point: RollbackPoint) -> Dict[str, Any]:
    return {
        "version": point.version,
        "timestamp": point.timestamp.isoformat(),
        "description": point.description,
        "config_snapshot": point.config_snapshot,
        "state_snapshot": point.state_snapshot,
    }


def _lifecycle_error_detail(result: Union[UpgradeResult, RollbackResult]) -> Dict[str, Any]:
    return {"error": result.error, "from_version": result.from_version, "to_version": result.to_version}


def create_app(runtime: PluginRuntime, manage_lifecycle: bool = False) -> FastAPI:
    """Build the read-mostly HTTP surface over a runtime.

    With ``manage_lifecycle`` the app starts the runtime on startup and shuts
    it down with the server.
    """
    app = FastAPI(title="Plugin Runtime Control Center")
    app.state.runtime = runtime

    if manage_lifecycle:

        @app.on_event("startup")
        async def _startup_runtime() -> None:
            await runtime.start()

        @app.on_event("shutdown")
        async def _shutdown_runtime() -> None:
            await runtime.shutdown()

    def _require_plugin(name: str) -> PluginMetadata:
        metadata = runtime.registry.get(name)
        if metadata is None:
            raise HTTPException(status_code=404, detail="Plugin not found")
        return metadata

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        registrations = runtime.controller.statistics()
        breakers = runtime.breakers.statistics()
        return {
            "status": "degraded" if registrations["failed"] or breakers["open"] else "ok",
            "runtime_version": runtime.config.runtime_version,
            "registered": registrations["registered"],
            "failed": registrations["failed"],
            "open_circuits": breakers["open"],
            "checks": [c.to_dict() for c in runtime.health.list_checks()],
        }

    @app.get("/api/plugins")
    async def api_plugins() -> List[Dict[str, Any]]:
        return [_metadata_to_dict(m) for m in runtime.registry.list_all()]

    @app.get("/api/plugins/{name}")
    async def api_plugin(name: str) -> Dict[str, Any]:
        item = _metadata_to_dict(_require_plugin(name))
        info = runtime.controller.get_registration(name)
        item["registration"] = _registration_to_dict(info) if info is not None else None
        item["current_version"] = runtime.lifecycle.get_current_version(name)
        return item

    @app.get("/api/registrations")
    async def api_registrations(status: str = "") -> List[Dict[str, Any]]:
        rows = runtime.controller.by_status(status) if status else runtime.controller.all_registrations()
        return [_registration_to_dict(r) for r in rows]

    @app.get("/api/capabilities/{capability}")
    async def api_capability(capability: str) -> List[Dict[str, Any]]:
        return [_metadata_to_dict(m) for m in runtime.registry.by_capability(capability)]

    @app.get("/api/categories/{category}")
    async def api_category(category: str) -> List[Dict[str, Any]]:
        return [_metadata_to_dict(m) for m in runtime.registry.by_category(category)]

    @app.get("/api/statistics")
    async def api_statistics() -> Dict[str, Any]:
        return runtime.statistics()

    @app.get("/api/plugins/{name}/history")
    async def api_plugin_history(name: str) -> Dict[str, Any]:
        history = runtime.lifecycle.get_plugin_history(name)
        return {
            "plugin_name": name,
            "current_version": runtime.lifecycle.get_current_version(name),
            "versions": [_version_to_dict(v) for v in history.versions],
            "rollback_points": [_rollback_point_to_dict(p) for p in history.rollback_points],
            "current_state": history.current_state,
            "current_config": history.current_config,
        }

    @app.get("/api/plugins/{name}/compatibility")
    async def api_plugin_compatibility(name: str, target_version: str) -> Dict[str, Any]:
        report = runtime.lifecycle.get_upgrade_compatibility(name, target_version)
        return {
            "compatible": report.compatible,
            "current_version": report.current_version,
            "target_version": report.target_version,
            "issues": report.issues,
            "warnings": report.warnings,
        }

    @app.get("/api/plugins/{name}/audit")
    async def api_plugin_audit(name: str, limit: int = 200) -> List[Dict[str, Any]]:
        rows = runtime.lifecycle.list_audit_events(limit=max(1, min(limit, 1000)))
        return [
            {
                "ts": e.ts.isoformat(),
                "action": e.action,
                "plugin_name": e.plugin_name,
                "outcome": e.outcome,
                "details": e.details,
            }
            for e in rows
            if e.plugin_name == name
        ]

    @app.get("/api/errors")
    async def api_errors(resolved: Optional[bool] = None, limit: int = 200) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in runtime.recovery.list_errors(resolved=resolved, limit=max(1, min(limit, 1000)))]

    @app.get("/api/circuit-breakers")
    async def api_circuit_breakers() -> List[Dict[str, Any]]:
        return [b.to_dict() for b in runtime.breakers.list()]

    @app.get("/api/alerts")
    async def api_alerts(status: str = "") -> List[Dict[str, Any]]:
        return [a.to_dict() for a in runtime.alerts.get_alerts(status or None)]

    @app.post("/api/alerts/{alert_id}/resolve")
    async def api_resolve_alert(alert_id: str) -> Dict[str, Any]:
        if not runtime.alerts.resolve_alert(alert_id):
            raise HTTPException(status_code=404, detail="Active alert not found")
        return {"alert_id": alert_id, "resolved": True}

    @app.post("/api/plugins/{name}/reload")
    async def api_plugin_reload(name: str) -> Dict[str, Any]:
        _require_plugin(name)
        return _result_to_dict(await runtime.controller.reload_plugin(name))

    @app.post("/api/plugins/{name}/unregister")
    async def api_plugin_unregister(name: str) -> Dict[str, Any]:
        return _result_to_dict(await runtime.controller.unregister_plugin(name))

    @app.post("/api/plugins/{name}/upgrade")
    async def api_plugin_upgrade(name: str, req: PluginUpgradeRequest) -> Dict[str, Any]:
        result = await runtime.lifecycle.upgrade_plugin(name, req.new_version, location=req.location)
        if not result.success:
            raise HTTPException(status_code=400, detail=_lifecycle_error_detail(result))
        return {
            "success": result.success,
            "from_version": result.from_version,
            "to_version": result.to_version,
            "migrated": result.migrated,
            "backup_created": result.backup_created,
        }

    @app.post("/api/plugins/{name}/downgrade")
    async def api_plugin_downgrade(name: str, req: PluginDowngradeRequest) -> Dict[str, Any]:
        result = await runtime.lifecycle.downgrade_plugin(name, req.target_version)
        if not result.success:
            raise HTTPException(status_code=400, detail=_lifecycle_error_detail(result))
        return {
            "success": result.success,
            "from_version": result.from_version,
            "to_version": result.to_version,
            "restored_state": result.restored_state,
            "restored_config": result.restored_config,
        }

    return app
