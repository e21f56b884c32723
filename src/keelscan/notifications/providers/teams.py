from __future__ import annotations

from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from keelscan.notifications.webhook import WebhookEvent

from keelscan.notifications.providers.base import WebhookProvider


class TeamsProvider(WebhookProvider):
    """Microsoft Teams incoming webhook (MessageCard format)."""

    name = "teams"

    def format_message(self, event: WebhookEvent) -> dict[str, Any]:
        title = self.get_event_title(event)
        severity = event.severity

        facts = [
            {"name": "Severity", "value": severity.upper()},
            {"name": "Image", "value": event.image},
            {"name": "Request ID", "value": event.request_id},
        ]
        if event.event_type.value == "scan_completed":
            facts.append({"name": "Vulnerabilities", "value": self.format_counts(event, ", ")})
        facts.append({"name": "Timestamp", "value": event.timestamp.isoformat()})

        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": self.get_severity_color(severity).lstrip("#"),
            "summary": title,
            "sections": [
                {
                    "activityTitle": title,
                    "activitySubtitle": f"keelscan security alert - {severity.upper()}",
                    "facts": facts,
                    "text": self.get_summary(event),
                }
            ],
        }
