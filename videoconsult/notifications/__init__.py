"""Webhook notifications for video session lifecycle events."""

from videoconsult.notifications.manager import NotificationManager
from videoconsult.notifications.models import NotificationConfig, WebhookConfig

__all__ = [
    "NotificationManager",
    "NotificationConfig",
    "WebhookConfig",
]
