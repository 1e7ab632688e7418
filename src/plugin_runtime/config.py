import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "plugin-runtime"
DEFAULT_EXCLUDE = "*.test.*,*.spec.*,__tests__,node_modules,__pycache__"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class RuntimeConfig:
    config_dir: Path
    env_path: Path
    plugin_dirs: List[str] = field(default_factory=lambda: ["./plugins"])
    scan_recursive: bool = True
    scan_max_depth: int = 5
    scan_exclude: Tuple[str, ...] = tuple(DEFAULT_EXCLUDE.split(","))
    watch: bool = False
    watch_interval_sec: int = 2
    max_load_ms: int = 30000
    load_concurrency: int = 3
    auto_register: bool = True
    auto_retry: bool = True
    max_retry_attempts: int = 3
    retry_delay_ms: int = 5000
    health_checks: bool = True
    health_interval_ms: int = 30000
    health_timeout_ms: int = 5000
    health_max_failures: int = 3
    circuit_failure_threshold: int = 5
    circuit_recovery_ms: int = 60000
    recovery_base_delay_ms: int = 1000
    recovery_timeout_ms: int = 30000
    error_retention_sec: int = 604800
    max_rollback_points: int = 5
    runtime_version: str = "1.0.0"
    alert_webhook_url: str = ""
    alert_min_severity: str = "medium"
    alert_timeout_sec: int = 3
    alert_dedup_window_sec: int = 90
    alert_retry_count: int = 2
    alert_dead_letter_max: int = 200


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except OSError as exc:
        logger.warning("config: failed to read %s: %s", path, exc)
    return data


def get_env_value(key: str, env_file: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    source = os.environ if environ is None else environ
    return source.get(key) or env_file.get(key)


def apply_env_defaults(env_file: Dict[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_runtime_config(config_dir: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> RuntimeConfig:
    """Merge ``<config_dir>/.env`` with the process environment; the process env wins."""
    config_dir = Path(config_dir or DEFAULT_CONFIG_DIR).expanduser()
    env_path = get_env_path(config_dir)
    env_file = load_env_file(env_path)

    def _str(name: str, default: str) -> str:
        raw = get_env_value(name, env_file, environ)
        return raw.strip() if raw and raw.strip() else default

    def _int(name: str, default: int, minimum: int = 1) -> int:
        return _read_int_env(get_env_value(name, env_file, environ), default, minimum)

    def _bool(name: str, default: bool) -> bool:
        return _read_bool_env(get_env_value(name, env_file, environ), default)

    return RuntimeConfig(
        config_dir=config_dir,
        env_path=env_path,
        plugin_dirs=_split_list(_str("PLUGIN_DIRS", "./plugins")),
        scan_recursive=_bool("PLUGIN_SCAN_RECURSIVE", True),
        scan_max_depth=_int("PLUGIN_SCAN_MAX_DEPTH", 5, minimum=0),
        scan_exclude=tuple(_split_list(_str("PLUGIN_SCAN_EXCLUDE", DEFAULT_EXCLUDE))),
        watch=_bool("PLUGIN_WATCH", False),
        watch_interval_sec=_int("PLUGIN_WATCH_INTERVAL_SEC", 2),
        max_load_ms=_int("PLUGIN_MAX_LOAD_MS", 30000),
        load_concurrency=_int("PLUGIN_LOAD_CONCURRENCY", 3),
        auto_register=_bool("PLUGIN_AUTO_REGISTER", True),
        auto_retry=_bool("PLUGIN_AUTO_RETRY", True),
        max_retry_attempts=_int("PLUGIN_MAX_RETRY_ATTEMPTS", 3, minimum=0),
        retry_delay_ms=_int("PLUGIN_RETRY_DELAY_MS", 5000, minimum=0),
        health_checks=_bool("PLUGIN_HEALTH_CHECKS", True),
        health_interval_ms=_int("PLUGIN_HEALTH_INTERVAL_MS", 30000),
        health_timeout_ms=_int("PLUGIN_HEALTH_TIMEOUT_MS", 5000),
        health_max_failures=_int("PLUGIN_HEALTH_MAX_FAILURES", 3),
        circuit_failure_threshold=_int("CIRCUIT_FAILURE_THRESHOLD", 5),
        circuit_recovery_ms=_int("CIRCUIT_RECOVERY_MS", 60000, minimum=0),
        recovery_base_delay_ms=_int("RECOVERY_BASE_DELAY_MS", 1000, minimum=0),
        recovery_timeout_ms=_int("RECOVERY_TIMEOUT_MS", 30000),
        error_retention_sec=_int("ERROR_RETENTION_SEC", 604800),
        max_rollback_points=_int("MAX_ROLLBACK_POINTS", 5),
        runtime_version=_str("RUNTIME_VERSION", "1.0.0"),
        alert_webhook_url=_str("ALERT_WEBHOOK_URL", ""),
        alert_min_severity=_str("ALERT_MIN_SEVERITY", "medium").lower(),
        alert_timeout_sec=_int("ALERT_WEBHOOK_TIMEOUT_SEC", 3),
        alert_dedup_window_sec=_int("ALERT_DEDUP_WINDOW_SEC", 90, minimum=0),
        alert_retry_count=_int("ALERT_RETRY_COUNT", 2, minimum=0),
        alert_dead_letter_max=_int("ALERT_DEAD_LETTER_MAX", 200),
    )


def _read_int_env(raw: Optional[str], default: int, minimum: int = 1) -> int:
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _read_bool_env(raw: Optional[str], default: bool) -> bool:
    value = (raw or "").strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def _split_list(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]
