import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from plugin_runtime.cli import main

_PLUGIN_SOURCE = """
from plugin_runtime.plugins.base import BasePlugin


class Plugin(BasePlugin):
    pass
"""


def _write_plugin(root: Path, name: str, manifest_overrides=None) -> Path:
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True)
    manifest = {
        "name": name,
        "version": "1.0.0",
        "description": f"{name} plugin",
        "entrypoint": "plugin.py",
        "capabilities": ["cli"],
    }
    manifest.update(manifest_overrides or {})
    (plugin_dir / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
    (plugin_dir / "plugin.py").write_text(_PLUGIN_SOURCE, encoding="utf-8")
    return plugin_dir


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.config_dir = self.root / "config"
        self.config_dir.mkdir()
        self.plugins = self.root / "plugins"
        env = patch.dict("os.environ", {"PLUGIN_HEALTH_CHECKS": "0", "PLUGIN_AUTO_RETRY": "0"}, clear=False)
        env.start()
        self.addCleanup(env.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def _run(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(["--config-dir", str(self.config_dir), "--log-level", "WARNING", *argv])
        return code, out.getvalue()

    def test_validate_ok_and_invalid(self):
        good = _write_plugin(self.plugins, "good")
        bad = _write_plugin(self.plugins, "bad", {"version": "one"})

        code, out = self._run("validate", str(good))
        self.assertEqual(code, 0)
        self.assertIn("Manifest validation passed.", out)

        code, out = self._run("validate", str(bad / "plugin.json"))
        self.assertEqual(code, 2)
        self.assertIn("Manifest validation failed:", out)

        with patch("sys.stderr", new_callable=io.StringIO):
            code, _ = self._run("validate", str(self.root / "missing"))
        self.assertEqual(code, 1)

    def test_scan_reports_invalid_manifests(self):
        _write_plugin(self.plugins, "good")
        code, out = self._run("scan", "--dir", str(self.plugins))
        self.assertEqual(code, 0)
        self.assertIn("Discovered 1 plugin(s), 0 invalid.", out)

        _write_plugin(self.plugins, "broken", {"entrypoint": ""})
        code, out = self._run("scan", "--dir", str(self.plugins))
        self.assertEqual(code, 1)
        self.assertIn("Discovered 2 plugin(s), 1 invalid.", out)

    def test_stats_registers_from_env_file(self):
        _write_plugin(self.plugins, "good")
        (self.config_dir / ".env").write_text(f"PLUGIN_DIRS={self.plugins}\n", encoding="utf-8")

        code, out = self._run("stats")

        self.assertEqual(code, 0)
        stats = json.loads(out)
        self.assertEqual(stats["registrations"]["registered"], 1)
        self.assertEqual(stats["lifecycle"]["installed_plugins"], 1)


if __name__ == "__main__":
    unittest.main()
