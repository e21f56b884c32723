"""Scan job orchestration: admission, scheduling, execution and progress."""

from keelscan.orchestrator.cancellation import CancellationHandle, CancellationRegistry
from keelscan.orchestrator.events import ProgressEventBus, Subscription
from keelscan.orchestrator.gateway import PersistenceGateway
from keelscan.orchestrator.queue import NOT_QUEUED, ScanPriorityQueue
from keelscan.orchestrator.runner import JobRunner
from keelscan.orchestrator.scheduler import ScanScheduler
from keelscan.orchestrator.service import ScanOrchestrator
from keelscan.orchestrator.workspace import ImageWorkspace

__all__ = [
    "CancellationHandle",
    "CancellationRegistry",
    "ImageWorkspace",
    "JobRunner",
    "NOT_QUEUED",
    "PersistenceGateway",
    "ProgressEventBus",
    "ScanOrchestrator",
    "ScanPriorityQueue",
    "ScanScheduler",
    "Subscription",
]
