from keelscan.notifications.webhook import (
    WebhookManager,
    WebhookConfig,
    WebhookEvent,
    EventType,
    build_webhook_manager,
)
from keelscan.notifications.providers.base import WebhookProvider
from keelscan.notifications.providers.slack import SlackProvider
from keelscan.notifications.providers.teams import TeamsProvider

__all__ = [
    "WebhookManager",
    "WebhookConfig",
    "WebhookEvent",
    "EventType",
    "build_webhook_manager",
    "WebhookProvider",
    "SlackProvider",
    "TeamsProvider",
]
