import json
import tempfile
import unittest
from pathlib import Path

from plugin_runtime.app_container import build_runtime
from plugin_runtime.config import RuntimeConfig
from plugin_runtime.plugins.base import BasePlugin
from plugin_runtime.plugins.factory import PluginFactory

try:
    from fastapi.testclient import TestClient
    from plugin_runtime.control_center.app import create_app
except Exception:  # pragma: no cover - optional for environments without fastapi
    TestClient = None
    create_app = None


class _Greeter(BasePlugin):
    pass


class _Broken(BasePlugin):
    def on_load(self):
        raise RuntimeError("cannot start")


def _write_plugin(root: Path, name: str, entrypoint: str, version: str = "1.0.0", category: str = "") -> Path:
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True, exist_ok=True)
    manifest = {
        "name": name,
        "version": version,
        "description": f"{name} plugin",
        "entrypoint": entrypoint,
        "capabilities": ["greeting"],
    }
    if category:
        manifest["category"] = category
    (plugin_dir / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
    return plugin_dir


@unittest.skipIf(TestClient is None or create_app is None, "fastapi test deps unavailable")
class TestControlCenter(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.greeter_dir = _write_plugin(self.root / "plugins", "greeter", "test:greeter", category="social")
        _write_plugin(self.root / "plugins", "broken", "test:broken")
        factory = PluginFactory()
        factory.register("test:greeter", _Greeter)
        factory.register("test:broken", _Broken)
        config = RuntimeConfig(
            config_dir=self.root / "config",
            env_path=self.root / "config" / ".env",
            plugin_dirs=[str(self.root / "plugins")],
            auto_retry=False,
            health_checks=False,
            recovery_base_delay_ms=0,
            alert_webhook_url="",
        )
        self.runtime = build_runtime(config, factory=factory)
        self.app = create_app(self.runtime, manage_lifecycle=True)

    def tearDown(self):
        self.tmp.cleanup()

    def test_health_and_plugin_listing(self):
        with TestClient(self.app) as client:
            health = client.get("/health")
            self.assertEqual(health.status_code, 200)
            body = health.json()
            self.assertEqual(body["status"], "degraded")
            self.assertEqual(body["registered"], 1)
            self.assertEqual(body["failed"], 1)
            self.assertEqual(body["runtime_version"], "1.0.0")

            plugins = client.get("/api/plugins").json()
            self.assertEqual(sorted(p["name"] for p in plugins), ["broken", "greeter"])

            detail = client.get("/api/plugins/greeter").json()
            self.assertEqual(detail["registration"]["status"], "registered")
            self.assertEqual(detail["current_version"], "1.0.0")
            self.assertEqual(detail["manifest"]["entrypoint"], "test:greeter")

            self.assertEqual(client.get("/api/plugins/missing").status_code, 404)

    def test_registrations_and_lookups(self):
        with TestClient(self.app) as client:
            failed = client.get("/api/registrations", params={"status": "failed"}).json()
            self.assertEqual([r["plugin_name"] for r in failed], ["broken"])
            self.assertEqual(len(client.get("/api/registrations").json()), 2)

            by_capability = client.get("/api/capabilities/greeting").json()
            self.assertEqual(len(by_capability), 2)
            by_category = client.get("/api/categories/social").json()
            self.assertEqual([p["name"] for p in by_category], ["greeter"])

            stats = client.get("/api/statistics").json()
            self.assertEqual(stats["registrations"]["total"], 2)
            self.assertIn("recovery", stats)
            self.assertIn("alerts", stats)

    def test_errors_and_circuit_breakers(self):
        with TestClient(self.app) as client:
            errors = client.get("/api/errors").json()
            self.assertTrue(any(e["plugin"] == "broken" for e in errors))
            self.assertEqual(client.get("/api/errors", params={"resolved": "true"}).json(), [])
            self.assertIsInstance(client.get("/api/circuit-breakers").json(), list)

    def test_reload_and_unregister(self):
        with TestClient(self.app) as client:
            reloaded = client.post("/api/plugins/greeter/reload").json()
            self.assertTrue(reloaded["success"])
            self.assertEqual(reloaded["status"], "registered")
            self.assertEqual(client.post("/api/plugins/ghost/reload").status_code, 404)

            removed = client.post("/api/plugins/greeter/unregister").json()
            self.assertTrue(removed["success"])
            again = client.post("/api/plugins/greeter/unregister").json()
            self.assertFalse(again["success"])

    def test_upgrade_history_and_downgrade(self):
        _write_plugin(self.root / "plugins", "echo", "test:greeter")
        with TestClient(self.app) as client:
            compat = client.get("/api/plugins/greeter/compatibility", params={"target_version": "1.1.0"}).json()
            self.assertTrue(compat["compatible"])

            _write_plugin(self.root / "plugins", "greeter", "test:greeter", version="1.1.0", category="social")
            upgraded = client.post("/api/plugins/greeter/upgrade", json={"new_version": "1.1.0"})
            self.assertEqual(upgraded.status_code, 200)
            self.assertEqual(upgraded.json()["from_version"], "1.0.0")
            self.assertEqual(upgraded.json()["to_version"], "1.1.0")

            history = client.get("/api/plugins/greeter/history").json()
            self.assertEqual(history["current_version"], "1.1.0")
            self.assertEqual([v["version"] for v in history["versions"]], ["1.1.0", "1.0.0"])
            self.assertEqual(len(history["rollback_points"]), 1)

            downgraded = client.post("/api/plugins/greeter/downgrade", json={})
            self.assertEqual(downgraded.status_code, 200)
            self.assertEqual(downgraded.json()["to_version"], "1.0.0")

            audit = client.get("/api/plugins/greeter/audit").json()
            self.assertIn("upgrade", [row["action"] for row in audit])

            rejected = client.post("/api/plugins/ghost/upgrade", json={"new_version": "2.0.0"})
            self.assertEqual(rejected.status_code, 400)
            detail = rejected.json()["detail"]
            self.assertIsNone(detail["from_version"])
            self.assertEqual(detail["to_version"], "2.0.0")
            self.assertIn("not installed", detail["error"])

            missing_point = client.post("/api/plugins/echo/downgrade", json={"target_version": "0.9.0"})
            self.assertEqual(missing_point.status_code, 400)
            detail = missing_point.json()["detail"]
            self.assertEqual(detail["from_version"], "1.0.0")
            self.assertEqual(detail["to_version"], "0.9.0")

    def test_alerts_listing_and_resolve(self):
        with TestClient(self.app) as client:
            self.runtime.events.publish("error:reported", {"severity": "critical", "plugin": "greeter"})
            alerts = client.get("/api/alerts", params={"status": "active"}).json()
            critical = [a for a in alerts if a["rule_id"] == "critical-error"]
            self.assertEqual(len(critical), 1)

            resolved = client.post(f"/api/alerts/{critical[0]['id']}/resolve")
            self.assertEqual(resolved.status_code, 200)
            self.assertEqual(client.post(f"/api/alerts/{critical[0]['id']}/resolve").status_code, 404)


if __name__ == "__main__":
    unittest.main()
