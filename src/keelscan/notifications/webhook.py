from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from keelscan.core.config import OrchestratorConfig
    from keelscan.core.models import ScanJob
    from keelscan.notifications.providers.base import WebhookProvider

from keelscan.core.constants import SEVERITY_LEVELS, ScanStatus
from keelscan.notifications.providers.slack import SlackProvider
from keelscan.notifications.providers.teams import TeamsProvider


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SCAN_COMPLETED = "scan_completed"
    SCAN_FAILED = "scan_failed"


@dataclass
class WebhookEvent:
    event_type: EventType
    timestamp: datetime
    request_id: str
    image: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        """Highest severity with at least one finding, "info" if none."""
        counts = self.data.get("vulnerability_counts") or {}
        for level in SEVERITY_LEVELS:
            if counts.get(level, 0) > 0:
                return level
        return "info"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "request_id": self.request_id,
            "image": self.image,
            "data": self.data,
        }


@dataclass
class WebhookConfig:
    enabled: bool = False
    providers: list[str] = field(default_factory=list)
    events: list[EventType] = field(default_factory=lambda: [EventType.SCAN_COMPLETED])
    min_severity: str = "high"
    rate_limit_per_minute: int = 30
    max_retries: int = 3
    retry_delay_base: float = 1.0
    queue_size: int = 100


@dataclass
class QueuedEvent:
    event: WebhookEvent
    provider_name: str
    attempt: int = 0
    next_retry: Optional[datetime] = None


class WebhookManager:
    def __init__(self, config: WebhookConfig) -> None:
        self.config = config
        self._providers: dict[str, WebhookProvider] = {}
        self._queue: asyncio.Queue[QueuedEvent] = asyncio.Queue(maxsize=config.queue_size)
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._rate_limiter: dict[str, list[datetime]] = {}

    def register_provider(self, name: str, provider: WebhookProvider) -> None:
        self._providers[name] = provider
        self._rate_limiter[name] = []

    def unregister_provider(self, name: str) -> None:
        self._providers.pop(name, None)
        self._rate_limiter.pop(name, None)

    def get_provider(self, name: str) -> Optional[WebhookProvider]:
        return self._providers.get(name)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker_task = asyncio.create_task(self._process_queue())
        logger.info("Webhook manager started")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Stop the worker after it had up to drain_timeout seconds to send queued events."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + drain_timeout
        while self._worker_task and not self._queue.empty() and loop.time() < deadline:
            await asyncio.sleep(0.1)

        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        logger.info("Webhook manager stopped")

    async def emit(self, event: WebhookEvent) -> None:
        if not self.config.enabled:
            return

        if event.event_type not in self.config.events:
            return

        if event.event_type == EventType.SCAN_COMPLETED and not self._meets_severity_threshold(
            event.data.get("vulnerability_counts") or {}
        ):
            logger.debug(f"No findings at or above {self.config.min_severity} for {event.image}")
            return

        for provider_name in self.config.providers:
            if provider_name not in self._providers:
                continue

            queued = QueuedEvent(event=event, provider_name=provider_name)
            try:
                self._queue.put_nowait(queued)
            except asyncio.QueueFull:
                logger.warning(f"Webhook queue full, dropping event: {event.event_type}")

    async def notify_job_finished(self, job: ScanJob) -> None:
        """Emit the webhook event for a finished scan job."""
        if job.status == ScanStatus.SUCCESS:
            counts = job.results.vulnerability_counts if job.results else {}
            await self.emit(self.create_scan_completed_event(
                job.request_id,
                job.request.image_ref,
                job.duration or 0.0,
                counts,
                partial=job.results.partial if job.results else False,
            ))
        elif job.status == ScanStatus.FAILED:
            await self.emit(self.create_scan_failed_event(
                job.request_id,
                job.request.image_ref,
                job.error or "Scan failed",
            ))

    async def _process_queue(self) -> None:
        while self._running:
            try:
                queued = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            if queued.next_retry and datetime.now(timezone.utc) < queued.next_retry:
                await self._queue.put(queued)
                await asyncio.sleep(0.1)
                continue

            provider = self._providers.get(queued.provider_name)
            if not provider:
                continue

            if not self._check_rate_limit(queued.provider_name):
                queued.next_retry = datetime.now(timezone.utc) + timedelta(seconds=1)
                await self._queue.put(queued)
                await asyncio.sleep(0.5)
                continue

            try:
                await provider.send(queued.event)
                self._record_request(queued.provider_name)
                logger.info(f"Sent {queued.event.event_type.value} to {queued.provider_name}")
            except Exception as e:
                queued.attempt += 1
                if queued.attempt < self.config.max_retries:
                    delay = self.config.retry_delay_base * (2 ** queued.attempt)
                    queued.next_retry = datetime.now(timezone.utc) + timedelta(seconds=delay)
                    await self._queue.put(queued)
                    logger.warning(
                        f"Webhook failed (attempt {queued.attempt}), retrying in {delay}s: {e}"
                    )
                else:
                    logger.error(
                        f"Webhook failed after {self.config.max_retries} attempts: {e}"
                    )

    def _check_rate_limit(self, provider_name: str) -> bool:
        window_start = datetime.now(timezone.utc) - timedelta(minutes=1)

        requests = [r for r in self._rate_limiter.get(provider_name, []) if r > window_start]
        self._rate_limiter[provider_name] = requests

        return len(requests) < self.config.rate_limit_per_minute

    def _record_request(self, provider_name: str) -> None:
        self._rate_limiter.setdefault(provider_name, []).append(datetime.now(timezone.utc))

    def _meets_severity_threshold(self, counts: dict[str, int]) -> bool:
        try:
            cutoff = SEVERITY_LEVELS.index(self.config.min_severity.lower())
        except ValueError:
            cutoff = len(SEVERITY_LEVELS) - 1
        return any(counts.get(level, 0) > 0 for level in SEVERITY_LEVELS[: cutoff + 1])

    def create_scan_completed_event(
        self,
        request_id: str,
        image: str,
        duration: float,
        vulnerability_counts: dict[str, int],
        *,
        partial: bool = False,
    ) -> WebhookEvent:
        return WebhookEvent(
            event_type=EventType.SCAN_COMPLETED,
            timestamp=datetime.now(timezone.utc),
            request_id=request_id,
            image=image,
            data={
                "duration": duration,
                "vulnerability_counts": dict(vulnerability_counts),
                "partial": partial,
            },
        )

    def create_scan_failed_event(
        self,
        request_id: str,
        image: str,
        error: str,
    ) -> WebhookEvent:
        return WebhookEvent(
            event_type=EventType.SCAN_FAILED,
            timestamp=datetime.now(timezone.utc),
            request_id=request_id,
            image=image,
            data={"error": error},
        )


def build_webhook_manager(config: OrchestratorConfig) -> Optional[WebhookManager]:
    """WebhookManager with the providers configured in config, None if disabled."""
    providers: dict[str, WebhookProvider] = {}
    if config.slack_webhook_url:
        providers["slack"] = SlackProvider(config.slack_webhook_url)
    if config.teams_webhook_url:
        providers["teams"] = TeamsProvider(config.teams_webhook_url)

    if not config.notify_on_high_severity or not providers:
        return None

    manager = WebhookManager(WebhookConfig(enabled=True, providers=list(providers)))
    for name, provider in providers.items():
        manager.register_provider(name, provider)
    return manager
