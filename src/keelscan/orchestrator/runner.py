"""Job runner: executes one RUNNING scan job.

A runner prepares the image workspace, runs every enabled scanner adapter
concurrently, aggregates their results and hands the terminal status back
to the scheduler. Each adapter is wrapped so that its failure or timeout
becomes an AdapterResult instead of an exception; one broken scanner never
fails the others.
"""

import asyncio
import logging
from collections.abc import Mapping
from time import monotonic
from typing import Any, Optional, TYPE_CHECKING

from keelscan.core.audit import AuditLogger, JobAudit
from keelscan.core.constants import (
    AuditEventType,
    DEFAULTS,
    PROGRESS,
    ScanStatus,
)
from keelscan.core.exceptions import (
    AdapterFailure,
    AdapterTimeoutError,
    AllAdaptersFailedError,
    AuditLogError,
    CancellationRequested,
    WorkspaceError,
)
from keelscan.core.models import AdapterResult, AggregatedResults, ScanJob
from keelscan.core.utils import count_vulnerabilities
from keelscan.orchestrator.cancellation import CancellationHandle, CancellationRegistry
from keelscan.orchestrator.gateway import PersistenceGateway
from keelscan.orchestrator.workspace import ImageWorkspace
from keelscan.scanners import get_scanner_versions
from keelscan.scanners.base import ScannerAdapter, ScanTarget

if TYPE_CHECKING:
    from keelscan.notifications.webhook import WebhookManager
    from keelscan.orchestrator.scheduler import ScanScheduler


logger = logging.getLogger(__name__)


class JobRunner:
    """Runs the adapters of one job and reports the outcome.

    Args:
        job: Job in RUNNING state
        scheduler: Receives progress updates and the terminal status
        registry: Where the runner registers its cancellation handle
        workspace: Prepares the image archive and job directory
        adapters: Enabled adapters by name, in execution order
        gateway: Persistence for status and results
        timeouts: Per-adapter timeout in seconds
        kill_grace_period: Extra seconds an adapter gets to stop after its timeout
        audit: Optional audit logger
        notifier: Optional webhook manager for finished scans
    """

    def __init__(
        self,
        job: ScanJob,
        *,
        scheduler: "ScanScheduler",
        registry: CancellationRegistry,
        workspace: ImageWorkspace,
        adapters: Mapping[str, ScannerAdapter],
        gateway: PersistenceGateway,
        timeouts: Mapping[str, float],
        kill_grace_period: float = DEFAULTS["kill_grace_period"],
        audit: Optional[AuditLogger] = None,
        notifier: Optional["WebhookManager"] = None,
    ) -> None:
        self.job = job
        self.scheduler = scheduler
        self.registry = registry
        self.workspace = workspace
        self.adapters = dict(adapters)
        self.gateway = gateway
        self.timeouts = timeouts
        self.kill_grace_period = kill_grace_period
        self.audit = JobAudit(audit, job.request_id, scan_id=job.scan_id) if audit is not None else None
        self.notifier = notifier
        self.task: Optional[asyncio.Task] = None
        self.handle: Optional[CancellationHandle] = None

    @property
    def request_id(self) -> str:
        return self.job.request_id

    def start(self) -> None:
        """Create the runner task and register its cancellation handle.

        Both happen before the scheduler returns, so a job is cancellable
        from the moment it is RUNNING.
        """
        self.task = asyncio.get_running_loop().create_task(
            self.run(), name=f"scan-{self.request_id}"
        )
        self.handle = self.registry.register(self.request_id, self.task)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run(self) -> None:
        job = self.job
        target: Optional[ScanTarget] = None

        try:
            self._audit(AuditEventType.JOB_STARTED, {"image": job.request.image_ref})
            await self._persist_status(ScanStatus.RUNNING, progress=0)

            self._progress(PROGRESS["setup"], "Setting up scan environment")
            target = await self.workspace.prepare(job, self._progress)
            self._check_cancelled()

            results = await self._run_adapters(target)
            self._check_cancelled()

            self._progress(PROGRESS["processing"], "Processing scan results")
            await self._complete(results, target)

        except CancellationRequested:
            await self._cancelled()

        except asyncio.CancelledError:
            await asyncio.shield(self._cancelled())
            raise

        except WorkspaceError as e:
            logger.error(f"[{self.request_id}] Image preparation failed: {e}")
            await self._fail(str(e))

        except AllAdaptersFailedError as e:
            logger.error(f"[{self.request_id}] {e}")
            await self._fail(str(e))

        except Exception as e:
            logger.exception(f"[{self.request_id}] Scan failed")
            await self._fail(f"{type(e).__name__}: {e}")

        finally:
            self.registry.unregister(self.request_id)
            self.workspace.cleanup(target)

    def _check_cancelled(self) -> None:
        if self.handle is not None:
            self.handle.raise_if_requested()

    async def _run_adapters(self, target: ScanTarget) -> AggregatedResults:
        """Run all adapters concurrently; progress advances per completion."""
        total = len(self.adapters)
        done = 0

        async def invoke(name: str, adapter: ScannerAdapter) -> AdapterResult:
            nonlocal done
            result = await self._invoke_adapter(name, adapter, target)
            done += 1
            progress = PROGRESS["adapters_start"] + PROGRESS["adapters_span"] * done // total
            self._progress(progress, name)
            self._audit(
                AuditEventType.ADAPTER_FINISHED,
                {
                    "adapter": name,
                    "success": result.success,
                    "duration_ms": result.duration_ms,
                    "error": result.error,
                },
            )
            return result

        results = await asyncio.gather(
            *(invoke(name, adapter) for name, adapter in self.adapters.items())
        )
        return AggregatedResults(results={r.adapter_name: r for r in results})

    async def _invoke_adapter(
        self,
        name: str,
        adapter: ScannerAdapter,
        target: ScanTarget,
    ) -> AdapterResult:
        """Run one adapter. Never raises except for cancellation."""
        timeout = self.timeouts.get(name, DEFAULTS["scan_timeout_minutes"] * 60)
        start = monotonic()

        def elapsed_ms() -> int:
            return int((monotonic() - start) * 1000)

        try:
            # The adapter enforces its own timeout; this bound catches adapters
            # that do not stop in time
            payload = await asyncio.wait_for(
                adapter.run(target, timeout),
                timeout=timeout + self.kill_grace_period,
            )
        except (asyncio.TimeoutError, AdapterTimeoutError) as e:
            logger.warning(f"[{self.request_id}] {name} timed out after {timeout}s")
            return AdapterResult(
                adapter_name=name,
                success=False,
                duration_ms=elapsed_ms(),
                error=str(e) or f"{name} exceeded timeout of {timeout}s",
                timed_out=True,
            )
        except AdapterFailure as e:
            logger.warning(f"[{self.request_id}] {name} failed: {e}")
            return AdapterResult(name, False, elapsed_ms(), error=str(e))
        except Exception as e:
            logger.exception(f"[{self.request_id}] {name} raised unexpectedly")
            return AdapterResult(name, False, elapsed_ms(), error=f"{type(e).__name__}: {e}")

        logger.info(f"[{self.request_id}] {name} completed in {elapsed_ms()}ms")
        return AdapterResult(name, True, elapsed_ms(), payload=payload)

    async def _complete(self, results: AggregatedResults, target: ScanTarget) -> None:
        """Aggregate, persist and report the outcome of the adapters.

        Raises:
            AllAdaptersFailedError: If no adapter succeeded
        """
        results.vulnerability_counts = count_vulnerabilities(results.payloads)
        results.metadata["image"] = target.metadata
        results.metadata["report_dir"] = str(target.output_dir)
        results.metadata["scanner_versions"] = await get_scanner_versions(self.adapters)
        self.job.results = results

        if not results.succeeded:
            await asyncio.to_thread(self.gateway.store_final_results, self.job.scan_id, results)
            details = "; ".join(f"{name}: {error}" for name, error in results.errors.items())
            raise AllAdaptersFailedError(f"All scanners failed: {details}")

        if results.partial:
            logger.warning(
                f"[{self.request_id}] Partial results, failed: {', '.join(results.failed)}"
            )

        await asyncio.to_thread(self.gateway.store_final_results, self.job.scan_id, results)
        await self._persist_status(ScanStatus.SUCCESS, progress=100)

        if self.scheduler.finish(self.job, ScanStatus.SUCCESS, results=results):
            self._audit(
                AuditEventType.JOB_FINISHED,
                {
                    "status": ScanStatus.SUCCESS.value,
                    "partial": results.partial,
                    "vulnerabilities": results.vulnerability_counts,
                },
            )
            if self.notifier is not None:
                await self.notifier.notify_job_finished(self.job)

    # =========================================================================
    # Terminal paths
    # =========================================================================

    async def _fail(self, error: str) -> None:
        if not self.scheduler.finish(self.job, ScanStatus.FAILED, error=error):
            return
        self._audit(
            AuditEventType.JOB_FINISHED,
            {"status": ScanStatus.FAILED.value, "error": error},
        )
        try:
            await self._persist_status(ScanStatus.FAILED, error=error)
        except Exception:
            logger.exception(f"[{self.request_id}] Could not persist failure")
        if self.notifier is not None:
            await self.notifier.notify_job_finished(self.job)

    async def _cancelled(self) -> None:
        """Finish as CANCELLED unless cancel_scan already did."""
        if not self.scheduler.finish(self.job, ScanStatus.CANCELLED):
            return
        logger.info(f"[{self.request_id}] Cancelled while running")
        self._audit(AuditEventType.JOB_CANCELLED, {"while": "running"})
        try:
            await self._persist_status(ScanStatus.CANCELLED)
        except Exception:
            logger.exception(f"[{self.request_id}] Could not persist cancellation")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _progress(self, progress: int, step: str) -> None:
        self.scheduler.update_progress(self.job, progress, step)

    async def _persist_status(
        self,
        status: ScanStatus,
        *,
        progress: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self.gateway.update_scan_status,
            self.job.scan_id,
            status,
            progress,
            error,
        )

    def _audit(self, event_type: AuditEventType, details: Optional[dict[str, Any]] = None) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log(event_type, details)
        except AuditLogError as e:
            logger.warning(f"Audit log write failed: {e}")
