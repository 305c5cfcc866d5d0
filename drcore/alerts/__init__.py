"""Alert evaluation and notification."""
from .evaluator import DEFAULT_RULES, evaluate
from .models import (
    AlertBook,
    AlertEvent,
    AlertObservation,
    AlertRule,
    AlertState,
    Evaluation,
    Severity,
)
from .notifier import LogNotifier, NotificationRouter, Notifier, TelegramNotifier, WebhookNotifier

__all__ = [
    "DEFAULT_RULES",
    "AlertBook",
    "AlertEvent",
    "AlertObservation",
    "AlertRule",
    "AlertState",
    "Evaluation",
    "LogNotifier",
    "NotificationRouter",
    "Notifier",
    "Severity",
    "TelegramNotifier",
    "WebhookNotifier",
    "evaluate",
]
