from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from keelscan.notifications.webhook import WebhookEvent


class WebhookProvider(ABC):
    name: str = "base"

    def __init__(self, webhook_url: str, *, timeout: float = 30.0, **kwargs) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.options = kwargs

    async def send(self, event: WebhookEvent) -> None:
        payload = self.format_message(event)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

    @abstractmethod
    def format_message(self, event: WebhookEvent) -> dict[str, Any]:
        pass

    def get_severity_color(self, severity: str) -> str:
        colors = {
            "critical": "#FF0000",
            "high": "#FF8C00",
            "medium": "#FFD700",
            "low": "#32CD32",
            "info": "#1E90FF",
        }
        return colors.get(severity.lower(), "#808080")

    def get_event_title(self, event: WebhookEvent) -> str:
        if event.event_type.value == "scan_failed":
            return "Image Scan Failed"
        if event.severity in ("critical", "high"):
            return "High-Risk Vulnerabilities Detected"
        return "Image Scan Completed"

    def get_summary(self, event: WebhookEvent) -> str:
        data = event.data
        if event.event_type.value == "scan_failed":
            return f"Scan of {event.image} failed: {data.get('error', 'unknown error')[:200]}"

        counts = data.get("vulnerability_counts") or {}
        high_risk = counts.get("critical", 0) + counts.get("high", 0)
        summary = f"Scan completed for {event.image} with {high_risk} high-risk vulnerabilities found."
        if data.get("partial"):
            summary += " Some scanners failed; results are partial."
        return summary

    def format_counts(self, event: WebhookEvent, separator: str = " | ") -> str:
        counts = event.data.get("vulnerability_counts") or {}
        return separator.join(
            f"{level.capitalize()}: {counts.get(level, 0)}"
            for level in ("critical", "high", "medium", "low")
        )
