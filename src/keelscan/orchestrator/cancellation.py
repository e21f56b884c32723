"""Cancellation handles for running scan jobs."""

import asyncio
import logging
from typing import Optional

from keelscan.core.constants import DEFAULTS
from keelscan.core.exceptions import CancellationRequested


logger = logging.getLogger(__name__)


class CancellationHandle:
    """Abort handle for one job runner task.

    Attributes:
        request_id: Job the handle belongs to
        task: Runner task
        requested: Set once abort() was called
    """

    def __init__(self, request_id: str, task: asyncio.Task) -> None:
        self.request_id = request_id
        self.task = task
        self.requested = False

    @property
    def done(self) -> bool:
        return self.task.done()

    def raise_if_requested(self) -> None:
        """Raise CancellationRequested if the job was aborted.

        Used by the runner between steps that are not cancellation points.
        """
        if self.requested:
            raise CancellationRequested(f"Scan {self.request_id} was cancelled")

    async def abort(self, grace_period: float) -> bool:
        """Cancel the runner task and wait for it to unwind.

        The runner stops its adapter subprocesses while unwinding, so the
        wait covers their SIGTERM grace period.

        Args:
            grace_period: Seconds to wait for the task to finish

        Returns:
            True if the task finished within the grace period
        """
        self.requested = True
        if self.task.done():
            return True

        self.task.cancel()
        done, _ = await asyncio.wait({self.task}, timeout=grace_period)
        if not done:
            logger.warning(
                f"Runner for {self.request_id} still active {grace_period}s after abort"
            )
            return False
        return True


class CancellationRegistry:
    """Maps request IDs of running jobs to their cancellation handles.

    Args:
        grace_period: Seconds abort() waits for a runner to unwind
    """

    def __init__(self, grace_period: float = DEFAULTS["kill_grace_period"] + 5.0) -> None:
        self.grace_period = grace_period
        self._handles: dict[str, CancellationHandle] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def register(self, request_id: str, task: asyncio.Task) -> CancellationHandle:
        if request_id in self._handles:
            raise ValueError(f"Job {request_id} already has a cancellation handle")
        handle = CancellationHandle(request_id, task)
        self._handles[request_id] = handle
        return handle

    def unregister(self, request_id: str) -> Optional[CancellationHandle]:
        return self._handles.pop(request_id, None)

    def get(self, request_id: str) -> Optional[CancellationHandle]:
        return self._handles.get(request_id)

    async def cancel(self, request_id: str) -> bool:
        """Abort a running job.

        Returns:
            False if no handle is registered for request_id
        """
        handle = self._handles.pop(request_id, None)
        if handle is None:
            return False
        await handle.abort(self.grace_period)
        return True

    async def cancel_all(self) -> int:
        """Abort every registered job concurrently; returns how many."""
        handles = list(self._handles.values())
        self._handles.clear()
        await asyncio.gather(*(h.abort(self.grace_period) for h in handles))
        return len(handles)
