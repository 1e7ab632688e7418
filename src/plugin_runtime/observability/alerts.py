import json
import logging
import urllib.request
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from plugin_runtime.events.event_bus import (
    EVENT_ALERT_TRIGGERED,
    EVENT_ERROR_ESCALATE,
    EVENT_ERROR_RECOVERY_FAILED,
    EVENT_ERROR_REPORTED,
    EVENT_HEALTH_CHECK_FAILED,
    EVENT_REGISTRATION_FAILED,
    EventBus,
    RuntimeEvent,
)

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {
    "low": 10,
    "medium": 20,
    "high": 30,
    "critical": 40,
}

ALERT_ACTIVE = "active"
ALERT_RESOLVED = "resolved"


@dataclass(frozen=True)
class AlertRule:
    rule_id: str
    event_type: str
    severity: str
    description: str
    threshold: int = 1
    window_sec: int = 300
    # Payload keys that must equal the given values, e.g. {"severity": "critical"}.
    match: Dict[str, str] = field(default_factory=dict)


@dataclass
class Alert:
    id: str
    rule_id: str
    severity: str
    message: str
    subject: str
    triggered_at: datetime
    count: int
    status: str = ALERT_ACTIVE
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "severity": self.severity,
            "message": self.message,
            "subject": self.subject,
            "triggered_at": self.triggered_at.isoformat(),
            "count": self.count,
            "status": self.status,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


def default_alert_rules() -> List[AlertRule]:
    return [
        AlertRule(
            rule_id="registration-failures",
            event_type=EVENT_REGISTRATION_FAILED,
            severity="medium",
            description="Plugin failed to register repeatedly",
            threshold=3,
            window_sec=300,
        ),
        AlertRule(
            rule_id="recovery-failed",
            event_type=EVENT_ERROR_RECOVERY_FAILED,
            severity="high",
            description="Automatic recovery gave up on an error",
        ),
        AlertRule(
            rule_id="critical-error",
            event_type=EVENT_ERROR_REPORTED,
            severity="critical",
            description="Critical error reported",
            match={"severity": "critical"},
        ),
        AlertRule(
            rule_id="error-escalated",
            event_type=EVENT_ERROR_ESCALATE,
            severity="high",
            description="Error escalated by a recovery strategy",
        ),
        AlertRule(
            rule_id="health-check-failures",
            event_type=EVENT_HEALTH_CHECK_FAILED,
            severity="medium",
            description="Component failing health checks",
            threshold=5,
            window_sec=600,
        ),
    ]


@dataclass
class _PendingDelivery:
    payload: Dict[str, Any]
    attempts: int = 1


class AlertDispatcher:
    """Posts alert payloads to a webhook.

    Payloads under ``min_severity`` are counted and dropped. Identical alerts
    (same rule, subject and message) inside ``dedup_window_sec`` are sent once.
    Failed deliveries wait in a bounded dead-letter queue and are retried
    before each new send, up to ``max_retries`` extra attempts.
    """

    def __init__(
        self,
        webhook_url: str = "",
        min_severity: str = "medium",
        timeout_sec: int = 3,
        dedup_window_sec: int = 90,
        max_retries: int = 2,
        max_dead_letters: int = 200,
    ) -> None:
        self._url = (webhook_url or "").strip()
        self._timeout_sec = max(1, int(timeout_sec))
        self._floor = _severity_rank(min_severity)
        self._dedup_window_sec = max(0, int(dedup_window_sec))
        self._max_retries = max(0, int(max_retries))
        self._dead_letters: Deque[_PendingDelivery] = deque(maxlen=max(1, int(max_dead_letters)))
        self._seen_until: Dict[Tuple[str, ...], float] = {}
        self._counters = {"delivered": 0, "dropped_by_threshold": 0, "dropped_by_dedup": 0}

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def send(self, category: str, severity: str, message: str, **fields: Any) -> bool:
        """Returns False only when a delivery was attempted and failed."""
        if not self.enabled:
            return False
        level = _normalize_severity(severity)
        if SEVERITY_ORDER[level] < self._floor:
            self._counters["dropped_by_threshold"] += 1
            return True

        self.flush_dead_letters()
        now = datetime.now(timezone.utc)
        if self._is_duplicate(category, level, message, fields, now.timestamp()):
            self._counters["dropped_by_dedup"] += 1
            return True

        payload = {"ts": now.isoformat(), "category": category, "severity": level, "message": message}
        payload.update(fields)
        if self._post(payload):
            self._counters["delivered"] += 1
            return True
        self._dead_letters.append(_PendingDelivery(payload))
        return False

    def flush_dead_letters(self) -> int:
        delivered = 0
        for _ in range(len(self._dead_letters)):
            item = self._dead_letters.popleft()
            if self._post(item.payload):
                delivered += 1
                continue
            attempts = item.attempts + 1
            if attempts <= self._max_retries:
                self._dead_letters.append(_PendingDelivery(item.payload, attempts))
            else:
                logger.warning("alerts: dropping undeliverable alert after %d attempt(s)", attempts)
        self._counters["delivered"] += delivered
        return delivered

    def state(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "min_severity": next(k for k, v in SEVERITY_ORDER.items() if v == self._floor),
            "dedup_window_sec": self._dedup_window_sec,
            "max_retries": self._max_retries,
            "queued_dead_letters": len(self._dead_letters),
            **self._counters,
        }

    def _is_duplicate(self, category: str, severity: str, message: str, fields: Dict[str, Any], now: float) -> bool:
        if self._dedup_window_sec <= 0:
            return False
        self._seen_until = {k: until for k, until in self._seen_until.items() if until > now}
        key = (category, severity, message, str(fields.get("rule_id", "")), str(fields.get("subject", "")))
        if key in self._seen_until:
            return True
        self._seen_until[key] = now + self._dedup_window_sec
        return False

    def _post(self, payload: Dict[str, Any]) -> bool:
        body = json.dumps(payload, ensure_ascii=True, default=str).encode("utf-8")
        request = urllib.request.Request(
            self._url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_sec):
                return True
        except (OSError, ValueError) as exc:
            logger.debug("alerts: webhook delivery to %s failed: %s", self._url, exc)
            return False


def _normalize_severity(severity: str) -> str:
    value = (severity or "").strip().lower()
    return value if value in SEVERITY_ORDER else "medium"


def _severity_rank(severity: str) -> int:
    return SEVERITY_ORDER[_normalize_severity(severity)]


class AlertManager:
    """Counts matching bus events per rule and subject, raising an alert at the threshold."""

    def __init__(
        self,
        events: EventBus,
        dispatcher: Optional[AlertDispatcher] = None,
        rules: Optional[List[AlertRule]] = None,
    ) -> None:
        self._events = events
        self._dispatcher = dispatcher
        self._rules: Dict[str, AlertRule] = {}
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}
        self._alerts: Dict[str, Alert] = {}
        for rule in default_alert_rules() if rules is None else rules:
            self.add_rule(rule)
        self._subscribed = False

    def attach(self) -> None:
        if not self._subscribed:
            self._events.subscribe(self.handle_event)
            self._subscribed = True

    def detach(self) -> None:
        if self._subscribed:
            self._events.unsubscribe(self.handle_event)
            self._subscribed = False

    def add_rule(self, rule: AlertRule) -> None:
        self._rules[rule.rule_id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def list_rules(self) -> List[AlertRule]:
        return [self._rules[key] for key in sorted(self._rules)]

    def handle_event(self, event: RuntimeEvent) -> None:
        if event.event_type == EVENT_ALERT_TRIGGERED:
            return
        now = event.created_at.timestamp()
        for rule in list(self._rules.values()):
            if rule.event_type != event.event_type or not _payload_matches(event.payload, rule.match):
                continue
            subject = _subject_of(event.payload)
            window = self._windows.setdefault((rule.rule_id, subject), deque())
            window.append(now)
            while window and window[0] < now - rule.window_sec:
                window.popleft()
            if len(window) < max(1, rule.threshold):
                continue
            count = len(window)
            window.clear()
            self._trigger(rule, subject, count, event)

    def get_alerts(self, status: Optional[str] = None) -> List[Alert]:
        rows = sorted(self._alerts.values(), key=lambda a: a.triggered_at)
        return [a for a in rows if status is None or a.status == status]

    def resolve_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.status == ALERT_RESOLVED:
            return False
        alert.status = ALERT_RESOLVED
        alert.resolved_at = datetime.now(timezone.utc)
        return True

    def statistics(self) -> Dict[str, Any]:
        active = sum(1 for a in self._alerts.values() if a.status == ALERT_ACTIVE)
        return {
            "rules": len(self._rules),
            "total": len(self._alerts),
            "active": active,
            "resolved": len(self._alerts) - active,
            "dispatcher": self._dispatcher.state() if self._dispatcher is not None else None,
        }

    def _trigger(self, rule: AlertRule, subject: str, count: int, event: RuntimeEvent) -> None:
        for existing in self._alerts.values():
            if existing.rule_id == rule.rule_id and existing.subject == subject and existing.status == ALERT_ACTIVE:
                existing.count += count
                return
        target = f" for {subject}" if subject else ""
        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            rule_id=rule.rule_id,
            severity=rule.severity,
            message=f"{rule.description}{target} ({count} event(s) in {rule.window_sec}s)",
            subject=subject,
            triggered_at=datetime.now(timezone.utc),
            count=count,
        )
        self._alerts[alert.id] = alert
        logger.warning("alerts: %s", alert.message)
        self._events.publish(EVENT_ALERT_TRIGGERED, alert.to_dict())
        if self._dispatcher is not None:
            self._dispatcher.send(
                category=event.event_type,
                severity=rule.severity,
                message=alert.message,
                rule_id=rule.rule_id,
                subject=subject,
                alert_id=alert.id,
            )


def _subject_of(payload: Dict[str, Any]) -> str:
    for key in ("plugin_name", "plugin", "component"):
        value = payload.get(key)
        if value:
            return str(value)
    nested = payload.get("error")
    if isinstance(nested, dict):
        return _subject_of(nested)
    return ""


def _payload_matches(payload: Dict[str, Any], match: Dict[str, str]) -> bool:
    return all(str(payload.get(key)) == str(value) for key, value in match.items())
