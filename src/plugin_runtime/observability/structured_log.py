import json
import logging
from datetime import datetime, timezone
from logging import Logger
from typing import Any, Dict

from plugin_runtime.events.event_bus import RuntimeEvent

_WARNING_EVENTS = {"registration_failed", "error:reported", "error:recovery_failed", "alert:triggered"}


def log_json(logger: Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    payload.update(fields)
    logger.log(level, json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))


def event_logger(logger: Logger):
    """Build an EventBus subscriber that mirrors every runtime event into the log."""

    def _log_event(event: RuntimeEvent) -> None:
        level = logging.WARNING if event.event_type in _WARNING_EVENTS else logging.INFO
        log_json(logger, event.event_type, level=level, **_loggable(event.payload))

    return _log_event


def _loggable(payload: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        elif isinstance(value, (list, tuple)):
            out[key] = [str(v) for v in value]
        elif isinstance(value, dict):
            out[key] = {str(k): str(v) for k, v in value.items()}
        else:
            out[key] = str(value)
    return out
