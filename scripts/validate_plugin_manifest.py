#!/usr/bin/env python3
import argparse
import sys
from pathlib import Path

from plugin_runtime.plugins.manifest import MANIFEST_FILENAME, ManifestError, load_manifest, validate_manifest


def main() -> int:
    parser = argparse.ArgumentParser(description="Check one or more plugin.json manifests")
    parser.add_argument("paths", nargs="+", help="Manifest files or plugin directories")
    args = parser.parse_args()

    exit_code = 0
    for raw in args.paths:
        path = Path(raw)
        if path.is_dir():
            path = path / MANIFEST_FILENAME
        try:
            manifest = load_manifest(path)
        except (OSError, ManifestError) as exc:
            print(f"{path}: unreadable manifest: {exc}", file=sys.stderr)
            exit_code = max(exit_code, 1)
            continue
        errors = validate_manifest(manifest)
        if errors:
            print(f"{path}: {len(errors)} problem(s)")
            for err in errors:
                print(f"  - {err}")
            exit_code = max(exit_code, 2)
            continue
        print(f"{path}: ok ({manifest.get('name')} {manifest.get('version')})")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
