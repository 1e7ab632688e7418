import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from plugin_runtime.app_container import build_runtime
from plugin_runtime.config import (
    DEFAULT_CONFIG_DIR,
    RuntimeConfig,
    apply_env_defaults,
    get_env_path,
    load_env_file,
    load_runtime_config,
)
from plugin_runtime.plugins.manifest import MANIFEST_FILENAME, ManifestError, load_manifest, validate_manifest
from plugin_runtime.services.scanner import ManifestScanner, ScanOptions


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _scan(config: RuntimeConfig, dirs: Optional[List[str]]) -> int:
    scanner = ManifestScanner(
        ScanOptions(
            directories=tuple(dirs or config.plugin_dirs),
            recursive=config.scan_recursive,
            exclude_patterns=tuple(config.scan_exclude),
            max_depth=config.scan_max_depth,
        )
    )
    results = scanner.scan()
    invalid = 0
    for metadata in results:
        state = "ok" if metadata.is_valid else "invalid"
        print(f"{metadata.name:<30} {metadata.manifest.version:<12} {state:<8} {metadata.path}")
        for err in metadata.validation_errors:
            print(f"    - {err}")
        if not metadata.is_valid:
            invalid += 1
    print(f"Discovered {len(results)} plugin(s), {invalid} invalid.")
    return 1 if invalid else 0


def _validate(raw_path: str) -> int:
    path = Path(raw_path)
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    try:
        manifest = load_manifest(path)
    except (OSError, ManifestError) as exc:
        print(f"Invalid manifest: {exc}", file=sys.stderr)
        return 1
    errors = validate_manifest(manifest)
    if errors:
        print("Manifest validation failed:")
        for err in errors:
            print(f"- {err}")
        return 2
    print("Manifest validation passed.")
    return 0


async def _collect_stats(config: RuntimeConfig) -> dict:
    runtime = build_runtime(config)
    await runtime.start()
    try:
        return runtime.statistics()
    finally:
        await runtime.shutdown()


def _serve(config: RuntimeConfig, host: str, port: int, log_level: str) -> int:
    from plugin_runtime.control_center.app import create_app
    import uvicorn

    app = create_app(build_runtime(config), manage_lifecycle=True)
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Plugin lifecycle runtime")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the runtime .env file (default: ~/.config/plugin-runtime)",
    )
    parser.add_argument("--log-level", default=None, help="Defaults to LOG_LEVEL or INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Discover plugin manifests and print a summary")
    scan.add_argument("--dir", action="append", dest="dirs", help="Directory to scan (repeatable)")

    validate = sub.add_parser("validate", help="Validate a plugin.json or plugin directory")
    validate.add_argument("path")

    sub.add_parser("stats", help="Register discovered plugins once and print statistics")

    serve = sub.add_parser("serve", help="Run the runtime with the control center API")
    serve.add_argument("--host", default="127.0.0.1", help="Control Center bind host")
    serve.add_argument("--port", type=int, default=8765, help="Control Center bind port")

    args = parser.parse_args(argv)
    config_dir = Path(args.config_dir).expanduser().resolve()
    apply_env_defaults(load_env_file(get_env_path(config_dir)))
    log_level = args.log_level or os.environ.get("LOG_LEVEL", "INFO")
    _configure_logging(log_level)

    if args.command == "validate":
        return _validate(args.path)

    config = load_runtime_config(config_dir)
    if args.command == "scan":
        return _scan(config, args.dirs)
    if args.command == "stats":
        print(json.dumps(asyncio.run(_collect_stats(config)), indent=2, sort_keys=True, default=str))
        return 0
    return _serve(config, args.host, args.port, log_level)


if __name__ == "__main__":
    raise SystemExit(main())
