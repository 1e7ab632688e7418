import unittest
from unittest.mock import patch

from plugin_runtime.events.event_bus import (
    EVENT_ALERT_TRIGGERED,
    EVENT_ERROR_REPORTED,
    EVENT_REGISTRATION_FAILED,
    EventBus,
)
from plugin_runtime.observability.alerts import (
    ALERT_ACTIVE,
    ALERT_RESOLVED,
    AlertDispatcher,
    AlertManager,
    AlertRule,
)


class _Resp:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, category, severity, message, **fields):
        self.sent.append((category, severity, message, fields))
        return True

    def state(self):
        return {"sent": len(self.sent)}


class TestAlertDispatcher(unittest.TestCase):
    def test_threshold_and_dedup_and_dead_letter(self):
        dispatcher = AlertDispatcher(
            webhook_url="https://example.com/hook",
            min_severity="high",
            timeout_sec=1,
            dedup_window_sec=300,
        )

        with patch("urllib.request.urlopen", side_effect=OSError("down")) as mocked:
            self.assertTrue(dispatcher.send("registration_failed", "medium", "skip me", rule_id="r1"))
            self.assertEqual(mocked.call_count, 0)

            self.assertFalse(dispatcher.send("error:reported", "critical", "seo down", rule_id="critical-error"))
            self.assertEqual(dispatcher.state()["queued_dead_letters"], 1)

            self.assertTrue(dispatcher.send("error:reported", "critical", "seo down", rule_id="critical-error"))
            self.assertEqual(dispatcher.state()["dropped_by_dedup"], 1)

        with patch("urllib.request.urlopen", return_value=_Resp()):
            self.assertEqual(dispatcher.flush_dead_letters(), 1)
            self.assertEqual(dispatcher.state()["queued_dead_letters"], 0)
            self.assertEqual(dispatcher.state()["delivered"], 1)

    def test_dead_letters_dropped_after_retries(self):
        dispatcher = AlertDispatcher(webhook_url="https://example.com/hook", dedup_window_sec=0, max_retries=1)
        with patch("urllib.request.urlopen", side_effect=OSError("down")) as mocked:
            self.assertFalse(dispatcher.send("error:reported", "high", "db down"))
            self.assertEqual(dispatcher.flush_dead_letters(), 0)
            self.assertEqual(dispatcher.state()["queued_dead_letters"], 0)
        self.assertEqual(mocked.call_count, 2)

    def test_disabled_without_webhook(self):
        dispatcher = AlertDispatcher()
        self.assertFalse(dispatcher.enabled)
        self.assertFalse(dispatcher.send("x", "critical", "nobody listens"))


class TestAlertManager(unittest.TestCase):
    def setUp(self):
        self.bus = EventBus()
        self.triggered = []
        self.bus.subscribe(self.triggered.append, [EVENT_ALERT_TRIGGERED])
        self.dispatcher = _RecordingDispatcher()
        self.manager = AlertManager(self.bus, self.dispatcher)
        self.manager.attach()

    def test_threshold_counts_per_subject(self):
        for _ in range(2):
            self.bus.publish(EVENT_REGISTRATION_FAILED, {"plugin_name": "seo", "error": "boom"})
        self.bus.publish(EVENT_REGISTRATION_FAILED, {"plugin_name": "other", "error": "boom"})
        self.assertEqual(self.manager.get_alerts(), [])

        self.bus.publish(EVENT_REGISTRATION_FAILED, {"plugin_name": "seo", "error": "boom"})

        alerts = self.manager.get_alerts(ALERT_ACTIVE)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].rule_id, "registration-failures")
        self.assertEqual(alerts[0].subject, "seo")
        self.assertEqual(alerts[0].count, 3)
        self.assertEqual(len(self.triggered), 1)
        self.assertEqual(self.dispatcher.sent[0][0], EVENT_REGISTRATION_FAILED)

    def test_match_filters_payload(self):
        self.bus.publish(EVENT_ERROR_REPORTED, {"severity": "low", "plugin": "seo"})
        self.assertEqual(self.manager.get_alerts(), [])
        self.bus.publish(EVENT_ERROR_REPORTED, {"severity": "critical", "plugin": "seo"})
        self.assertEqual([a.rule_id for a in self.manager.get_alerts()], ["critical-error"])

    def test_repeat_trigger_folds_into_active_alert(self):
        for _ in range(2):
            self.bus.publish(EVENT_ERROR_REPORTED, {"severity": "critical", "plugin": "seo"})
        alerts = self.manager.get_alerts()
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].count, 2)

    def test_resolve_alert(self):
        self.bus.publish(EVENT_ERROR_REPORTED, {"severity": "critical", "plugin": "seo"})
        alert = self.manager.get_alerts()[0]
        self.assertTrue(self.manager.resolve_alert(alert.id))
        self.assertFalse(self.manager.resolve_alert(alert.id))
        self.assertEqual(self.manager.get_alerts(ALERT_RESOLVED)[0].id, alert.id)
        self.assertIsNotNone(alert.resolved_at)
        stats = self.manager.statistics()
        self.assertEqual((stats["total"], stats["active"], stats["resolved"]), (1, 0, 1))

    def test_custom_rules_and_detach(self):
        self.manager.add_rule(AlertRule("any-unregister", "unregistered", "low", "Plugin removed"))
        self.bus.publish("unregistered", {"plugin_name": "seo"})
        self.assertEqual([a.rule_id for a in self.manager.get_alerts()], ["any-unregister"])
        self.assertTrue(self.manager.remove_rule("any-unregister"))

        self.manager.detach()
        self.bus.publish(EVENT_ERROR_REPORTED, {"severity": "critical", "plugin": "seo"})
        self.assertEqual(len(self.manager.get_alerts()), 1)


if __name__ == "__main__":
    unittest.main()
