from keelscan.notifications.providers.base import WebhookProvider
from keelscan.notifications.providers.slack import SlackProvider
from keelscan.notifications.providers.teams import TeamsProvider

__all__ = [
    "WebhookProvider",
    "SlackProvider",
    "TeamsProvider",
]
