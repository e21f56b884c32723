"""Scan orchestrator service.

ScanOrchestrator is the public entry point: it validates and admits scan
requests, cancels jobs, answers queue questions and gives access to the
progress stream. One instance is created by the application and passed to
whatever needs it.

Example:
    >>> orchestrator = ScanOrchestrator(load_config(), Database(path))
    >>> await orchestrator.start()
    >>> result = await orchestrator.start_scan(ScanRequest(image="nginx", tag="1.27"))
    >>> async with orchestrator.subscribe(result.request_id) as events:
    ...     async for event in events:
    ...         print(event.progress, event.step)
    >>> await orchestrator.stop()
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Optional, TYPE_CHECKING

from keelscan.core.audit import AuditLogger
from keelscan.core.config import OrchestratorConfig
from keelscan.core.constants import AuditEventType, ORPHAN_ERROR, ScanStatus
from keelscan.core.exceptions import (
    AuditLogError,
    OrchestratorError,
    OrphanRecoveryError,
    QueueOverflowError,
    ValidationError,
)
from keelscan.core.models import (
    ProgressEvent,
    QueueStats,
    ScanJob,
    ScanRequest,
    StartScanResult,
)
from keelscan.core.utils import generate_request_id, instance_owner, owner_alive
from keelscan.orchestrator.cancellation import CancellationRegistry
from keelscan.orchestrator.events import ProgressEventBus, ProgressHandler, Subscription
from keelscan.orchestrator.gateway import PersistenceGateway
from keelscan.orchestrator.runner import JobRunner
from keelscan.orchestrator.scheduler import ScanScheduler
from keelscan.orchestrator.workspace import ImageWorkspace
from keelscan.scanners import build_adapters
from keelscan.scanners.base import ScannerAdapter

if TYPE_CHECKING:
    from keelscan.notifications.webhook import WebhookManager


logger = logging.getLogger(__name__)


class ScanOrchestrator:
    """Admission, cancellation and introspection of container image scans.

    Args:
        config: Orchestrator settings
        gateway: Persistence for scan records and results
        adapters: Adapters by name (defaults to the enabled scanners)
        workspace: Image workspace (defaults to one under config.work_dir)
        audit: Optional audit logger
        notifier: Optional webhook manager, started and stopped with the orchestrator
        owner: Owner tag written on scan records (defaults to <host>:<pid>)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        gateway: PersistenceGateway,
        *,
        adapters: Optional[Mapping[str, ScannerAdapter]] = None,
        workspace: Optional[ImageWorkspace] = None,
        audit: Optional[AuditLogger] = None,
        notifier: Optional["WebhookManager"] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.audit = audit
        self.notifier = notifier
        self.owner = owner or instance_owner()

        if adapters is None:
            adapters = build_adapters(
                config.enabled_scanners,
                bin_path=config.scanner_bin_path,
                kill_grace_period=config.kill_grace_period,
            )
        self.adapters = dict(adapters)

        self.workspace = workspace or ImageWorkspace(
            config.work_dir,
            acquire_timeout=config.scan_timeout_minutes * 60,
            kill_grace_period=config.kill_grace_period,
        )
        self.bus = ProgressEventBus(
            buffer_size=config.subscriber_buffer,
            heartbeat_interval=config.heartbeat_interval,
        )
        # Runner unwinding includes the adapters' SIGTERM grace period
        self.registry = CancellationRegistry(grace_period=config.kill_grace_period + 5.0)
        self.scheduler = ScanScheduler(
            config.max_concurrent_scans,
            self._create_runner,
            self.bus,
            max_queue_length=config.max_queue_length,
            history_size=config.history_size,
            duration_window=config.duration_window,
        )

        self._started = False
        self._stopping = False

    def _create_runner(self, job: ScanJob) -> JobRunner:
        adapters = self._adapters_for(job.request)
        return JobRunner(
            job,
            scheduler=self.scheduler,
            registry=self.registry,
            workspace=self.workspace,
            adapters=adapters,
            gateway=self.gateway,
            timeouts={name: self.config.timeout_for(name) for name in adapters},
            kill_grace_period=self.config.kill_grace_period,
            audit=self.audit,
            notifier=self.notifier,
        )

    def _adapters_for(self, request: ScanRequest) -> dict[str, ScannerAdapter]:
        if not request.scanners:
            return self.adapters
        return {name: a for name, a in self.adapters.items() if name in request.scanners}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Recover orphaned scans and start the notifier."""
        if self._started:
            return
        recovered = await self.recover_orphans()
        if recovered:
            logger.warning(f"Marked {recovered} interrupted scan(s) as failed")
        if self.notifier is not None:
            await self.notifier.start()
        self._started = True
        self._stopping = False
        logger.info(
            f"Scan orchestrator started (max {self.config.max_concurrent_scans} concurrent, "
            f"scanners: {', '.join(self.adapters)})"
        )

    async def stop(self) -> None:
        """Cancel queued jobs, abort running ones and close subscriptions."""
        self._stopping = True

        for job in self.scheduler.drain_queue():
            self._audit(AuditEventType.JOB_CANCELLED, job.request_id, {"while": "queued"})
            await self._persist_cancelled(job)

        aborted = await self.registry.cancel_all()
        if aborted:
            logger.info(f"Aborted {aborted} running scan(s)")

        # Runner tasks cancelled before their first step never report back
        for job in self.scheduler.running_jobs():
            if self.scheduler.finish(job, ScanStatus.CANCELLED):
                self._audit(AuditEventType.JOB_CANCELLED, job.request_id, {"while": "running"})
                await self._persist_cancelled(job)

        self.bus.close_all()
        if self.notifier is not None:
            await self.notifier.stop()
        self._started = False
        logger.info("Scan orchestrator stopped")

    async def recover_orphans(self) -> int:
        """Fail persisted scans left QUEUED or RUNNING by a dead process.

        Jobs that are active in this orchestrator are left alone, and so are
        records whose owner process is still running, such as a concurrent
        `keelscan scan` on the same database.

        Returns:
            Number of records marked FAILED

        Raises:
            OrphanRecoveryError: If the records cannot be read or updated
        """
        try:
            records = await asyncio.to_thread(
                self.gateway.list_scans,
                [ScanStatus.QUEUED, ScanStatus.RUNNING],
            )
        except Exception as e:
            raise OrphanRecoveryError(f"Failed to list unfinished scans: {e}") from e

        active = {job.scan_id for job in self.scheduler.active_jobs()}
        recovered = 0
        for record in records:
            scan_id = record["id"]
            if scan_id in active:
                continue
            if owner_alive(record.get("owner")):
                logger.debug(f"Scan {scan_id} belongs to live process {record['owner']}")
                continue
            try:
                await asyncio.to_thread(
                    self.gateway.update_scan_status,
                    scan_id,
                    ScanStatus.FAILED,
                    None,
                    ORPHAN_ERROR,
                )
            except Exception as e:
                raise OrphanRecoveryError(f"Failed to recover scan {scan_id}: {e}") from e
            self._audit(
                AuditEventType.ORPHAN_RECOVERED,
                record.get("request_id") or scan_id,
                {"scan_id": scan_id, "previous_status": record.get("status")},
            )
            recovered += 1

        return recovered

    # =========================================================================
    # Admission and cancellation
    # =========================================================================

    async def start_scan(self, request: ScanRequest, priority: int = 0) -> StartScanResult:
        """Validate, persist and admit a scan request.

        The job starts immediately when a slot is free, otherwise it is
        queued behind jobs of equal or higher priority.

        Args:
            request: What to scan
            priority: Higher values are dispatched first

        Returns:
            StartScanResult with queue position and wait estimate when queued

        Raises:
            ValidationError: If the request or priority is invalid
            QueueOverflowError: If the queue is full (the record is marked FAILED)
            OrchestratorError: If the orchestrator is shutting down
        """
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError(f"Priority must be an integer, got {priority!r}")
        request.validate()

        if request.scanners:
            disabled = [name for name in request.scanners if name not in self.adapters]
            if disabled:
                raise ValidationError(f"Scanners not enabled: {', '.join(disabled)}")

        if self._stopping:
            raise OrchestratorError("Orchestrator is shutting down")

        scan_id = await asyncio.to_thread(
            self.gateway.create_scan_record, request, self.owner
        )

        request_id = generate_request_id()
        while self.scheduler.get(request_id) is not None:
            request_id = generate_request_id()

        job = ScanJob(
            request_id=request_id,
            scan_id=scan_id,
            request=request,
            priority=priority,
        )

        try:
            self.scheduler.admit(job)
        except QueueOverflowError as e:
            logger.warning(f"Rejected {request.image_ref}: {e}")
            await asyncio.to_thread(
                self.gateway.update_scan_status, scan_id, ScanStatus.FAILED, None, str(e)
            )
            raise

        queued = job.status == ScanStatus.QUEUED
        self._audit(
            AuditEventType.JOB_ADMITTED,
            request_id,
            {
                "scan_id": scan_id,
                "image": request.image_ref,
                "priority": priority,
                "queued": queued,
            },
        )

        if not queued:
            return StartScanResult(request_id=request_id, scan_id=scan_id, queued=False)

        return StartScanResult(
            request_id=request_id,
            scan_id=scan_id,
            queued=True,
            queue_position=self.scheduler.position(request_id),
            estimated_wait_time=self.scheduler.estimated_wait(request_id),
        )

    async def cancel_scan(self, request_id: str) -> bool:
        """Cancel a queued or running scan.

        A running job's slot is freed and the next queued job dispatched
        before its adapters are stopped.

        Returns:
            False if the job is unknown or already finished
        """
        job = self.scheduler.get(request_id)
        if job is None or job.is_terminal:
            return False

        was_running = job.status == ScanStatus.RUNNING
        if not self.scheduler.finish(job, ScanStatus.CANCELLED):
            return False

        logger.info(f"Cancelled {request_id} ({'running' if was_running else 'queued'})")
        self._audit(
            AuditEventType.JOB_CANCELLED,
            request_id,
            {"while": "running" if was_running else "queued"},
        )

        if was_running:
            await self.registry.cancel(request_id)
        await self._persist_cancelled(job)
        return True

    async def _persist_cancelled(self, job: ScanJob) -> None:
        try:
            await asyncio.to_thread(
                self.gateway.update_scan_status, job.scan_id, ScanStatus.CANCELLED
            )
        except Exception:
            logger.exception(f"Could not persist cancellation of {job.request_id}")

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_scan_job(self, request_id: str) -> Optional[ScanJob]:
        job = self.scheduler.get(request_id)
        return job.snapshot() if job is not None else None

    def get_all_jobs(self) -> list[ScanJob]:
        return [job.snapshot() for job in self.scheduler.all_jobs()]

    def get_queued_scans(self) -> list[ScanJob]:
        return [job.snapshot() for job in self.scheduler.queued_jobs()]

    def get_running_scans(self) -> list[ScanJob]:
        return [job.snapshot() for job in self.scheduler.running_jobs()]

    def get_queue_position(self, request_id: str) -> int:
        """1-based queue position, -1 when the job is not queued."""
        return self.scheduler.position(request_id)

    def get_estimated_wait_time(self, request_id: str) -> Optional[float]:
        return self.scheduler.estimated_wait(request_id)

    def get_queue_stats(self) -> QueueStats:
        return self.scheduler.stats()

    # =========================================================================
    # Progress stream
    # =========================================================================

    def subscribe(
        self,
        request_id: str,
        handler: Optional[ProgressHandler] = None,
    ) -> Subscription:
        """Follow one job. The current state is delivered first.

        Subscribing to a finished job yields its terminal state and ends.
        Unknown or evicted request IDs get a subscription that is already
        closed; the handler is never called.
        """
        job = self.scheduler.get(request_id)
        if job is None:
            logger.debug(f"No job {request_id} to follow")
            subscription = self.bus.subscribe(request_id)
            subscription.close()
            return subscription
        return self.bus.subscribe(request_id, handler, current=ProgressEvent.from_job(job))

    def add_progress_listener(self, handler: ProgressHandler) -> Subscription:
        """Receive the events of every job."""
        return self.bus.add_listener(handler)

    def remove_progress_listener(self, handler: ProgressHandler) -> bool:
        return self.bus.remove_listener(handler)

    def _audit(
        self,
        event_type: AuditEventType,
        request_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log_event(event_type, request_id, details)
        except AuditLogError as e:
            logger.warning(f"Audit log write failed: {e}")
