import json
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from plugin_runtime.plugins.manifest import (
    ManifestError,
    compare_versions,
    manifest_checksum,
    parse_manifest,
    parse_manifest_bytes,
    parse_version_tuple,
    validate_manifest,
)


def _valid_manifest() -> dict:
    return {
        "name": "seo-tags",
        "version": "1.2.0",
        "description": "Adds meta tags",
        "entrypoint": "seo_tags.plugin:SeoTags",
        "capabilities": ["render:head"],
        "dependencies": ["core-utils"],
        "category": "seo",
        "minimumRuntimeVersion": "1.0.0",
    }


class TestPluginManifestValidation(unittest.TestCase):
    def test_valid_manifest(self):
        self.assertEqual(validate_manifest(_valid_manifest()), [])

    def test_missing_required_fields_are_reported(self):
        manifest = _valid_manifest()
        del manifest["entrypoint"]
        manifest["capabilities"] = []
        errors = validate_manifest(manifest)
        self.assertTrue(any("'entrypoint'" in e for e in errors))
        self.assertTrue(any("'capabilities'" in e for e in errors))

    def test_invalid_semver_and_self_dependency(self):
        manifest = _valid_manifest()
        manifest["version"] = "v1"
        manifest["dependencies"] = ["seo-tags"]
        errors = validate_manifest(manifest)
        self.assertTrue(any("semantic version" in e for e in errors))
        self.assertTrue(any("depend on itself" in e for e in errors))

    def test_prerelease_and_build_metadata_accepted(self):
        manifest = _valid_manifest()
        manifest["version"] = "1.0.0-beta.1+build.5"
        self.assertEqual(validate_manifest(manifest), [])

    def test_non_object_document_raises(self):
        with self.assertRaises(ManifestError):
            parse_manifest_bytes(b"[1, 2, 3]")
        with self.assertRaises(ManifestError):
            parse_manifest_bytes(b"{not json")

    def test_parse_manifest_maps_runtime_bounds(self):
        manifest = parse_manifest(_valid_manifest())
        self.assertEqual(manifest.name, "seo-tags")
        self.assertEqual(manifest.dependencies, ("core-utils",))
        self.assertEqual(manifest.minimum_runtime_version, "1.0.0")
        self.assertIsNone(manifest.maximum_runtime_version)

    def test_checksum_is_deterministic_over_raw_bytes(self):
        raw = json.dumps(_valid_manifest()).encode("utf-8")
        self.assertEqual(manifest_checksum(raw), manifest_checksum(bytes(raw)))
        self.assertNotEqual(manifest_checksum(raw), manifest_checksum(raw + b" "))

    def test_version_comparison(self):
        self.assertEqual(parse_version_tuple("2.10.3-rc.1"), (2, 10, 3))
        self.assertEqual(compare_versions("1.10.0", "1.9.9"), 1)
        self.assertEqual(compare_versions("1.0", "1.0.0"), 0)
        self.assertEqual(compare_versions("0.9.0", "1.0.0"), -1)


class TestPluginManifestCli(unittest.TestCase):
    def _run(self, *paths: str) -> subprocess.CompletedProcess:
        repo = Path(__file__).resolve().parents[1]
        return subprocess.run(
            [sys.executable, "scripts/validate_plugin_manifest.py", *paths],
            cwd=repo,
            text=True,
            capture_output=True,
            env={"PYTHONPATH": str(repo / "src")},
            check=False,
        )

    def test_cli_validation(self):
        with tempfile.TemporaryDirectory() as tmp:
            plugin_dir = Path(tmp) / "seo-tags"
            plugin_dir.mkdir()
            (plugin_dir / "plugin.json").write_text(json.dumps(_valid_manifest()), encoding="utf-8")
            result = self._run(str(plugin_dir))
            self.assertEqual(result.returncode, 0)
            self.assertIn("ok", result.stdout)

    def test_cli_reports_problems(self):
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "plugin.json"
            bad = _valid_manifest()
            bad["version"] = "latest"
            manifest_path.write_text(json.dumps(bad), encoding="utf-8")
            result = self._run(str(manifest_path))
            self.assertEqual(result.returncode, 2)
            self.assertIn("problem", result.stdout)


if __name__ == "__main__":
    unittest.main()
