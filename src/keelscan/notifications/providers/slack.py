from __future__ import annotations

from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from keelscan.notifications.webhook import WebhookEvent

from keelscan.notifications.providers.base import WebhookProvider


class SlackProvider(WebhookProvider):
    name = "slack"

    def __init__(
        self,
        webhook_url: str,
        *,
        channel: str = "",
        username: str = "keelscan",
        icon_emoji: str = ":shield:",
        **kwargs,
    ) -> None:
        super().__init__(webhook_url, **kwargs)
        self.channel = channel
        self.username = username
        self.icon_emoji = icon_emoji

    def format_message(self, event: WebhookEvent) -> dict[str, Any]:
        title = self.get_event_title(event)
        severity = event.severity

        fields = [
            {"title": "Severity", "value": severity.upper(), "short": True},
            {"title": "Image", "value": event.image, "short": True},
            {"title": "Request ID", "value": f"`{event.request_id}`", "short": True},
        ]
        if event.event_type.value == "scan_completed":
            fields.append({
                "title": "Vulnerabilities",
                "value": self.format_counts(event),
                "short": False,
            })

        attachment = {
            "color": self.get_severity_color(severity),
            "title": title,
            "text": self.get_summary(event),
            "fields": fields,
            "footer": "keelscan",
            "ts": int(event.timestamp.timestamp()),
        }

        payload: dict[str, Any] = {
            "text": f":rotating_light: {title}" if severity == "critical" else f":warning: {title}",
            "username": self.username,
            "icon_emoji": self.icon_emoji,
            "attachments": [attachment],
        }

        if self.channel:
            payload["channel"] = self.channel

        return payload
