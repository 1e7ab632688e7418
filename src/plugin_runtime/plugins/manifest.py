import hashlib
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

from plugin_runtime.domain.plugins import Manifest

MANIFEST_FILENAME = "plugin.json"

REQUIRED_FIELDS = ("name", "version", "description", "entrypoint", "capabilities")

SEMVER_RE = re.compile(
    r"^(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
RUNTIME_VERSION_RE = re.compile(r"^[0-9]+(?:\.[0-9]+)*$")

_STRING_LIST_FIELDS = ("capabilities", "permissions", "dependencies", "keywords")


class ManifestError(ValueError):
    pass


def load_manifest(path: Path) -> Dict[str, Any]:
    return parse_manifest_bytes(Path(path).read_bytes())


def parse_manifest_bytes(raw: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Manifest is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestError("Manifest root must be a JSON object.")
    return data


def manifest_checksum(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def is_valid_semver(version: str) -> bool:
    return bool(SEMVER_RE.match(version or ""))


def validate_manifest(manifest: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    for name in REQUIRED_FIELDS:
        value = manifest.get(name)
        if value is None or value == "" or value == []:
            errors.append(f"Required field '{name}' is missing.")

    for name in ("name", "version", "description", "entrypoint", "author", "category"):
        value = manifest.get(name)
        if value is not None and not isinstance(value, str):
            errors.append(f"Field '{name}' must be a string.")

    version = manifest.get("version")
    if isinstance(version, str) and version and not is_valid_semver(version):
        errors.append("Field 'version' must follow semantic versioning (e.g. 1.0.0, 1.0.0-beta.1+build.5).")

    for name in _STRING_LIST_FIELDS:
        value = manifest.get(name)
        if value is None:
            continue
        if not isinstance(value, list):
            errors.append(f"Field '{name}' must be an array.")
        elif not all(isinstance(item, str) and item.strip() for item in value):
            errors.append(f"Field '{name}' must contain only non-empty strings.")

    for name in ("minimumRuntimeVersion", "maximumRuntimeVersion"):
        value = manifest.get(name)
        if value is None:
            continue
        if not isinstance(value, str) or not RUNTIME_VERSION_RE.match(value):
            errors.append(f"Field '{name}' must be a dotted numeric version.")

    for name in ("configSchema", "settings"):
        value = manifest.get(name)
        if value is not None and not isinstance(value, dict):
            errors.append(f"Field '{name}' must be an object.")

    dependencies = manifest.get("dependencies")
    plugin_name = manifest.get("name")
    if isinstance(dependencies, list) and isinstance(plugin_name, str) and plugin_name in dependencies:
        errors.append("Plugin cannot depend on itself.")

    return errors


def parse_manifest(data: Dict[str, Any]) -> Manifest:
    """Build a Manifest from a raw document; tolerant of invalid fields."""
    return Manifest(
        name=_as_str(data.get("name")),
        version=_as_str(data.get("version")),
        description=_as_str(data.get("description")),
        entrypoint=_as_str(data.get("entrypoint")),
        dependencies=_as_str_tuple(data.get("dependencies")),
        capabilities=_as_str_tuple(data.get("capabilities")),
        permissions=_as_str_tuple(data.get("permissions")),
        author=_as_str(data.get("author")),
        category=_as_str(data.get("category")) or None,
        keywords=_as_str_tuple(data.get("keywords")),
        minimum_runtime_version=_as_str(data.get("minimumRuntimeVersion")) or None,
        maximum_runtime_version=_as_str(data.get("maximumRuntimeVersion")) or None,
        config_schema=dict(data.get("configSchema") or {}) if isinstance(data.get("configSchema"), dict) else {},
        settings=dict(data.get("settings") or {}) if isinstance(data.get("settings"), dict) else {},
    )


def parse_version_tuple(version: str) -> Tuple[int, ...]:
    """Numeric components of a version; pre-release/build suffixes are dropped."""
    core = (version or "").strip().split("+", 1)[0].split("-", 1)[0]
    parts: List[int] = []
    for piece in core.split("."):
        digits = re.match(r"^\d+", piece.strip())
        parts.append(int(digits.group(0)) if digits else 0)
    return tuple(parts)


def compare_versions(left: str, right: str) -> int:
    a = parse_version_tuple(left)
    b = parse_version_tuple(right)
    width = max(len(a), len(b))
    a = a + (0,) * (width - len(a))
    b = b + (0,) * (width - len(b))
    if a > b:
        return 1
    if a < b:
        return -1
    return 0


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_str_tuple(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item).strip() for item in value if isinstance(item, str) and item.strip())
