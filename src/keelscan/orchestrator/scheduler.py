"""Scan scheduler.

This module provides the ScanScheduler class, the only component that
moves jobs from QUEUED to RUNNING. It owns the priority queue, the set of
running jobs and a bounded history of finished jobs.

Every method here is synchronous. Queue, running set and job states change
only inside these calls, which run on the event loop thread without
suspension points, so no two dispatch decisions can interleave.
"""

import logging
import statistics
from collections import OrderedDict, deque
from collections.abc import Callable
from typing import Optional, Protocol

from keelscan.core.constants import DEFAULTS, ScanStatus
from keelscan.core.models import (
    AggregatedResults,
    ProgressEvent,
    QueueStats,
    ScanJob,
)
from keelscan.orchestrator.events import ProgressEventBus
from keelscan.orchestrator.queue import NOT_QUEUED, ScanPriorityQueue


logger = logging.getLogger(__name__)


class Runner(Protocol):
    """What the scheduler needs from a job runner."""

    def start(self) -> None:
        ...


RunnerFactory = Callable[[ScanJob], Runner]


class ScanScheduler:
    """Admits jobs, dispatches them to runners and records their outcome.

    Args:
        max_concurrent: Maximum number of RUNNING jobs
        runner_factory: Builds the runner for a job that was just started
        bus: Event bus receiving every state change
        max_queue_length: Optional bound on QUEUED jobs
        history_size: Number of finished jobs kept for lookups
        duration_window: Number of recent job durations used for estimates
    """

    def __init__(
        self,
        max_concurrent: int,
        runner_factory: RunnerFactory,
        bus: ProgressEventBus,
        *,
        max_queue_length: Optional[int] = None,
        history_size: int = DEFAULTS["history_size"],
        duration_window: int = DEFAULTS["duration_window"],
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.max_concurrent = max_concurrent
        self.runner_factory = runner_factory
        self.bus = bus
        self.queue = ScanPriorityQueue(max_length=max_queue_length)
        self.history_size = history_size

        # Active jobs (QUEUED or RUNNING) by request ID
        self._jobs: dict[str, ScanJob] = {}
        self._running: dict[str, Runner] = {}
        self._history: OrderedDict[str, ScanJob] = OrderedDict()
        self._durations: deque[float] = deque(maxlen=duration_window)

    # =========================================================================
    # Admission and dispatch
    # =========================================================================

    def admit(self, job: ScanJob) -> ScanJob:
        """Start a job if a slot is free, otherwise queue it.

        Args:
            job: New job in QUEUED state

        Returns:
            The job, now RUNNING or QUEUED

        Raises:
            ValueError: If the request ID was already used
            QueueOverflowError: If the job would have to wait and the queue is full
        """
        if job.request_id in self._jobs or job.request_id in self._history:
            raise ValueError(f"Duplicate request ID: {job.request_id}")

        if self.has_free_slot and len(self.queue) == 0:
            self._jobs[job.request_id] = job
            self._start(job)
            return job

        self.queue.push(job.request_id, job.priority)
        self._jobs[job.request_id] = job
        logger.info(
            f"Queued {job.request_id} at position {self.queue.position(job.request_id)}"
        )
        self._publish(job)
        return job

    @property
    def has_free_slot(self) -> bool:
        return len(self._running) < self.max_concurrent

    def _start(self, job: ScanJob) -> None:
        job.transition(ScanStatus.RUNNING)
        job.progress = 0
        job.step = "Starting scan"
        runner = self.runner_factory(job)
        self._running[job.request_id] = runner
        logger.info(
            f"Started {job.request_id} ({len(self._running)}/{self.max_concurrent} slots)"
        )
        self._publish(job)
        runner.start()

    def _dispatch(self) -> None:
        """Fill free slots from the head of the queue."""
        while self.has_free_slot:
            entry = self.queue.pop()
            if entry is None:
                return
            job = self._jobs.get(entry.request_id)
            if job is None or job.status != ScanStatus.QUEUED:
                continue
            self._start(job)

    # =========================================================================
    # Job updates
    # =========================================================================

    def update_progress(self, job: ScanJob, progress: int, step: str) -> None:
        """Record progress of a running job and publish it.

        Progress never moves backwards. Updates for jobs that are no longer
        RUNNING are ignored.
        """
        if job.status != ScanStatus.RUNNING:
            return
        job.progress = max(job.progress, min(progress, 100))
        job.step = step
        self._publish(job)

    def finish(
        self,
        job: ScanJob,
        status: ScanStatus,
        *,
        error: Optional[str] = None,
        results: Optional[AggregatedResults] = None,
    ) -> bool:
        """Move a job to a terminal status.

        Frees the job's slot or queue entry, publishes the terminal event,
        moves the job to history and dispatches the next queued jobs.

        Returns:
            False if the job was already terminal (the first caller wins)
        """
        if job.is_terminal:
            return False

        was_running = job.status == ScanStatus.RUNNING
        job.transition(status, error=error)
        if results is not None:
            job.results = results

        if was_running:
            self._running.pop(job.request_id, None)
            if status != ScanStatus.CANCELLED and job.duration is not None:
                self._durations.append(job.duration)
        else:
            self.queue.remove(job.request_id)

        logger.info(f"Job {job.request_id} finished: {status.value}")
        self._publish(job)
        self._retire(job)
        self._dispatch()
        return True

    def _retire(self, job: ScanJob) -> None:
        self._jobs.pop(job.request_id, None)
        self._history[job.request_id] = job
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)

    def drain_queue(self) -> list[ScanJob]:
        """Cancel every queued job. Used on shutdown."""
        cancelled = []
        for entry in self.queue.clear():
            job = self._jobs.get(entry.request_id)
            if job is not None and self.finish(job, ScanStatus.CANCELLED):
                cancelled.append(job)
        return cancelled

    def _publish(self, job: ScanJob) -> None:
        self.bus.publish(ProgressEvent.from_job(job))

    # =========================================================================
    # Introspection
    # =========================================================================

    def get(self, request_id: str) -> Optional[ScanJob]:
        return self._jobs.get(request_id) or self._history.get(request_id)

    def active_jobs(self) -> list[ScanJob]:
        return list(self._jobs.values())

    def all_jobs(self) -> list[ScanJob]:
        """Active jobs followed by recently finished ones."""
        return [*self._jobs.values(), *self._history.values()]

    def queued_jobs(self) -> list[ScanJob]:
        """QUEUED jobs in the order they will be dispatched."""
        return [self._jobs[e.request_id] for e in self.queue.ordered()]

    def running_jobs(self) -> list[ScanJob]:
        return [self._jobs[request_id] for request_id in self._running]

    def position(self, request_id: str) -> int:
        return self.queue.position(request_id)

    @property
    def average_duration(self) -> Optional[float]:
        """Mean run time of recent jobs, None without history."""
        if not self._durations:
            return None
        return statistics.fmean(self._durations)

    def estimated_wait(self, request_id: str) -> Optional[float]:
        """Seconds until a queued job is expected to start.

        Position times the average duration of recent jobs. None when the
        job is not queued or no job has finished yet.
        """
        position = self.position(request_id)
        average = self.average_duration
        if position == NOT_QUEUED or average is None:
            return None
        return position * average

    def stats(self) -> QueueStats:
        finished = [job.status for job in self._history.values()]
        return QueueStats(
            queued=len(self.queue),
            running=len(self._running),
            completed=finished.count(ScanStatus.SUCCESS),
            failed=finished.count(ScanStatus.FAILED),
            cancelled=finished.count(ScanStatus.CANCELLED),
        )
