import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

EVENT_MANIFEST_CHANGED = "manifest-changed"
EVENT_REGISTERED = "registered"
EVENT_REGISTRATION_FAILED = "registration_failed"
EVENT_UNREGISTERED = "unregistered"
EVENT_ERROR_REPORTED = "error:reported"
EVENT_ERROR_RECOVERED = "error:recovered"
EVENT_ERROR_RECOVERY_FAILED = "error:recovery_failed"
EVENT_ERROR_NOTIFY = "error:notify"
EVENT_ERROR_ESCALATE = "error:escalate"
EVENT_ALERT_TRIGGERED = "alert:triggered"
EVENT_HEALTH_CHECK_COMPLETED = "health:check_completed"
EVENT_HEALTH_CHECK_FAILED = "health:check_failed"
EVENT_PLUGIN_INSTALLED = "plugin:installed"
EVENT_PLUGIN_UPGRADED = "plugin:upgraded"
EVENT_PLUGIN_DOWNGRADED = "plugin:downgraded"
EVENT_PLUGIN_UNINSTALLED = "plugin:uninstalled"
EVENT_PLUGIN_LIFECYCLE_ERROR = "plugin:lifecycle_error"


@dataclass(frozen=True)
class RuntimeEvent:
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[RuntimeEvent], None]


class EventBus:
    """In-process fan-out. A failing subscriber never affects the others or the publisher."""

    def __init__(self):
        self._subscribers: List[Tuple[Subscriber, Optional[FrozenSet[str]]]] = []

    def subscribe(self, subscriber: Subscriber, event_types: Optional[Sequence[str]] = None) -> None:
        types = frozenset(event_types) if event_types else None
        self._subscribers.append((subscriber, types))

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers = [(s, t) for (s, t) in self._subscribers if s != subscriber]

    def publish(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> RuntimeEvent:
        event = RuntimeEvent(event_type=event_type, payload=dict(payload or {}))
        for subscriber, types in list(self._subscribers):
            if types is not None and event_type not in types:
                continue
            try:
                subscriber(event)
            except Exception:
                logger.exception("event_bus: subscriber failed for %s", event_type)
        return event
