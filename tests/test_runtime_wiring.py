import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from plugin_runtime.app_container import build_runtime
from plugin_runtime.config import RuntimeConfig
from plugin_runtime.domain.plugins import REGISTRATION_FAILED, REGISTRATION_REGISTERED
from plugin_runtime.domain.recovery import CATEGORY_PLUGIN_LOAD
from plugin_runtime.plugins.base import BasePlugin
from plugin_runtime.plugins.factory import PluginFactory


class _Greeter(BasePlugin):
    pass


class _Broken(BasePlugin):
    def on_load(self):
        raise RuntimeError("cannot start")


class _SlowUnload(BasePlugin):
    def __init__(self, config):
        super().__init__(config)
        self.order = []
        self.unload_started = None

    async def on_unload(self):
        self.order.append("unload-start")
        if self.unload_started is not None:
            self.unload_started.set()
        await asyncio.sleep(0.05)
        self.order.append("unload-end")

    def restore_state(self, snapshot):
        self.order.append("restore")
        super().restore_state(snapshot)


def _write_plugin(root: Path, name: str, entrypoint: str) -> None:
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True)
    manifest = {
        "name": name,
        "version": "1.0.0",
        "description": f"{name} plugin",
        "entrypoint": entrypoint,
        "capabilities": ["greeting"],
    }
    (plugin_dir / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")


def _config(root: Path) -> RuntimeConfig:
    return RuntimeConfig(
        config_dir=root / "config",
        env_path=root / "config" / ".env",
        plugin_dirs=[str(root / "plugins")],
        auto_retry=False,
        health_checks=False,
        recovery_base_delay_ms=0,
        recovery_timeout_ms=5000,
        alert_webhook_url="",
    )


def _factory() -> PluginFactory:
    factory = PluginFactory()
    factory.register("test:greeter", _Greeter)
    factory.register("test:broken", _Broken)
    return factory


async def _drain(runtime, timeout_sec: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_sec
    while runtime._pending and asyncio.get_running_loop().time() < deadline:
        await asyncio.sleep(0.01)


class TestRuntimeWiring(unittest.IsolatedAsyncioTestCase):
    async def test_registered_plugin_gets_version_and_handle(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write_plugin(root / "plugins", "greeter", "test:greeter")
            runtime = build_runtime(_config(root), factory=_factory())

            await runtime.start()
            try:
                record = runtime.controller.get_registration("greeter")
                self.assertEqual(record.status, REGISTRATION_REGISTERED)
                self.assertEqual(runtime.lifecycle.get_current_version("greeter"), "1.0.0")
                self.assertIs(runtime.lifecycle.get_handle("greeter"), record.handle)
                self.assertEqual(runtime.statistics()["registrations"]["registered"], 1)
                self.assertEqual(runtime.recovery.list_errors(), [])

                removed = await runtime.controller.unregister_plugin("greeter")
                self.assertTrue(removed.success)
                self.assertIsNone(runtime.lifecycle.get_handle("greeter"))
            finally:
                await runtime.shutdown()

    async def test_exhausted_registration_is_reported_once(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write_plugin(root / "plugins", "broken", "test:broken")
            runtime = build_runtime(_config(root), factory=_factory())

            await runtime.start()
            try:
                await _drain(runtime)
                errors = runtime.recovery.list_errors()
                self.assertEqual(len(errors), 1)
                self.assertEqual(errors[0].category, CATEGORY_PLUGIN_LOAD)
                self.assertEqual(errors[0].plugin, "broken")
                self.assertEqual(errors[0].source, "registration")
                self.assertFalse(errors[0].resolved)

                record = runtime.controller.get_registration("broken")
                self.assertEqual(record.status, REGISTRATION_FAILED)
                # Each reload attempted by recovery counts as another failure.
                self.assertGreaterEqual(record.retry_count, 2)
            finally:
                await runtime.shutdown()
            self.assertEqual(runtime._pending, set())

    async def test_downgrade_waits_for_unregister_of_same_plugin(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write_plugin(root / "plugins", "slow", "test:slow")
            factory = _factory()
            factory.register("test:slow", _SlowUnload)
            runtime = build_runtime(_config(root), factory=factory)

            await runtime.start()
            try:
                handle = runtime.lifecycle.get_handle("slow")
                self.assertTrue(runtime.lifecycle.create_backup("slow").success)
                handle.unload_started = asyncio.Event()

                unregister = asyncio.create_task(runtime.controller.unregister_plugin("slow"))
                await handle.unload_started.wait()
                downgraded = await runtime.lifecycle.downgrade_plugin("slow")
                removed = await unregister

                self.assertTrue(removed.success)
                self.assertTrue(downgraded.success)
                self.assertEqual(handle.order, ["unload-start", "unload-end"])
            finally:
                await runtime.shutdown()

    async def test_shutdown_detaches_alerts(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "plugins").mkdir()
            runtime = build_runtime(_config(root), factory=_factory())
            await runtime.start()
            await runtime.shutdown()

            runtime.events.publish("error:reported", {"severity": "critical", "plugin": "ghost"})
            self.assertEqual(runtime.alerts.get_alerts(), [])


if __name__ == "__main__":
    unittest.main()
