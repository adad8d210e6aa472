"""Alerting layer -- candidate rules, deduplicating engine, and notifiers."""

from marketwatch.alerts.engine import DedupAlertEngine
from marketwatch.alerts.notifier import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier
from marketwatch.alerts.rules import AlertRules

__all__ = [
    "AlertRules",
    "CompositeNotifier",
    "DedupAlertEngine",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
]
