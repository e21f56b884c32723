"""Core data models for keelscan.

This module defines the data structures shared by the orchestrator, the
scanner adapters and the persistence layer: scan requests, scan jobs,
queue entries, progress events and adapter results.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from keelscan.core.constants import (
    ALLOWED_TRANSITIONS,
    EventKind,
    ScanSource,
    ScanStatus,
    SCANNER_NAMES,
    SEVERITY_LEVELS,
)
from keelscan.core.exceptions import InvalidTransitionError, ValidationError


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp."""
    return datetime.now(timezone.utc)


# ============================================================================
# Request Model
# ============================================================================

@dataclass(frozen=True)
class ScanRequest:
    """Immutable description of what to scan."""
    image: str
    tag: str = "latest"
    source: ScanSource = ScanSource.REGISTRY
    registry: Optional[str] = None
    docker_image_id: Optional[str] = None     # Local docker image id or name
    tar_path: Optional[str] = None            # Archive to scan in place
    scanners: Optional[tuple[str, ...]] = None  # Restricts the enabled set

    @property
    def full_name(self) -> str:
        """Image name including the registry, without the tag."""
        if self.registry:
            return f"{self.registry.rstrip('/')}/{self.image}"
        return self.image

    @property
    def image_ref(self) -> str:
        """Full image reference (registry/image:tag)."""
        return f"{self.full_name}:{self.tag}"

    def validate(self) -> None:
        """Check the request shape.

        Raises:
            ValidationError: If the request cannot be scanned
        """
        if not isinstance(self.image, str) or not self.image.strip():
            raise ValidationError("Image reference must not be empty")

        if not isinstance(self.tag, str) or not self.tag.strip():
            raise ValidationError("Image tag must not be empty")

        if not isinstance(self.source, ScanSource):
            raise ValidationError(f"Invalid source kind: {self.source!r}")

        if self.source == ScanSource.TAR and not self.tar_path:
            raise ValidationError("Tar source requires tar_path")

        if self.scanners is not None:
            if not self.scanners:
                raise ValidationError("At least one scanner must be selected")
            unknown = [s for s in self.scanners if s not in SCANNER_NAMES]
            if unknown:
                raise ValidationError(
                    f"Unknown scanners: {', '.join(unknown)}. "
                    f"Valid options: {', '.join(SCANNER_NAMES)}"
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "tag": self.tag,
            "source": self.source.value,
            "registry": self.registry,
            "docker_image_id": self.docker_image_id,
            "tar_path": self.tar_path,
            "scanners": list(self.scanners) if self.scanners else None,
        }


# ============================================================================
# Adapter Models
# ============================================================================

@dataclass
class AdapterResult:
    """Outcome of one scanner adapter invocation."""
    adapter_name: str
    success: bool
    duration_ms: int
    payload: Optional[Any] = None
    error: Optional[str] = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "adapter_name": self.adapter_name,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "payload": self.payload,
            "error": self.error,
            "timed_out": self.timed_out,
        }


@dataclass
class AggregatedResults:
    """Results of every adapter of one job."""
    results: dict[str, AdapterResult] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    vulnerability_counts: dict[str, int] = field(
        default_factory=lambda: {level: 0 for level in SEVERITY_LEVELS}
    )

    @property
    def succeeded(self) -> list[str]:
        return [name for name, r in self.results.items() if r.success]

    @property
    def failed(self) -> list[str]:
        return [name for name, r in self.results.items() if not r.success]

    @property
    def partial(self) -> bool:
        """True when some, but not all, adapters failed."""
        return bool(self.succeeded) and bool(self.failed)

    @property
    def payloads(self) -> dict[str, Any]:
        return {name: r.payload for name, r in self.results.items() if r.success}

    def copy(self) -> "AggregatedResults":
        """Copy with its own result, metadata and count containers.

        Scanner payloads are shared and must be treated as read-only.
        """
        return AggregatedResults(
            results={name: replace(result) for name, result in self.results.items()},
            metadata=dict(self.metadata),
            vulnerability_counts=dict(self.vulnerability_counts),
        )

    @property
    def errors(self) -> dict[str, str]:
        return {
            name: r.error or "unknown error"
            for name, r in self.results.items()
            if not r.success
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "metadata": self.metadata,
            "vulnerability_counts": dict(self.vulnerability_counts),
            "partial": self.partial,
        }


# ============================================================================
# Job Models
# ============================================================================

@dataclass
class ScanJob:
    """The orchestrator's unit of work.

    Mutated only by the scheduler and the job runner that owns it. Callers
    receive copies through snapshot().
    """
    request_id: str
    scan_id: str
    request: ScanRequest
    status: ScanStatus = ScanStatus.QUEUED
    priority: int = 0
    progress: int = 0
    step: Optional[str] = None
    error: Optional[str] = None
    queued_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    results: Optional[AggregatedResults] = None

    def transition(self, status: ScanStatus, *, error: Optional[str] = None) -> None:
        """Move the job to a new status.

        Args:
            status: Target status
            error: Error message, kept only when the new status is FAILED

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.request_id}: {self.status.value} -> {status.value} not allowed"
            )

        self.status = status
        now = utcnow()

        if status == ScanStatus.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now

        if status == ScanStatus.FAILED:
            self.error = error or "Scan failed"
        else:
            self.error = None

        if status == ScanStatus.SUCCESS:
            self.progress = 100

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> Optional[float]:
        """Run time in seconds, None until the job has started."""
        if self.started_at is None:
            return None
        end_time = self.finished_at or utcnow()
        return (end_time - self.started_at).total_seconds()

    def snapshot(self) -> "ScanJob":
        """Copy that later changes to this job do not reach, results included."""
        results = self.results.copy() if self.results is not None else None
        return replace(self, results=results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": self.scan_id,
            "request": self.request.to_dict(),
            "status": self.status.value if self.status is not None else None,
            "priority": self.priority,
            "progress": self.progress,
            "step": self.step,
            "error": self.error,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True, order=True)
class QueueEntry:
    """Heap entry: higher priority first, then admission order."""
    sort_key: tuple[int, int] = field(init=False, repr=False)
    priority: int = field(compare=False)
    sequence: int = field(compare=False)
    request_id: str = field(compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sort_key", (-self.priority, self.sequence))


# ============================================================================
# Event Models
# ============================================================================

@dataclass(frozen=True)
class ProgressEvent:
    """State change broadcast through the progress bus."""
    request_id: str
    scan_id: str
    status: Optional[ScanStatus]
    progress: int
    step: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    kind: EventKind = EventKind.PROGRESS

    @classmethod
    def from_job(cls, job: ScanJob, *, kind: EventKind = EventKind.PROGRESS) -> "ProgressEvent":
        return cls(
            request_id=job.request_id,
            scan_id=job.scan_id,
            status=job.status,
            progress=job.progress,
            step=job.step,
            error=job.error,
            kind=kind,
        )

    def as_heartbeat(self) -> "ProgressEvent":
        """Copy of this event marked as a liveness ping."""
        return replace(self, kind=EventKind.HEARTBEAT, timestamp=utcnow())

    @classmethod
    def heartbeat(cls, request_id: str) -> "ProgressEvent":
        """Liveness ping for a request whose state has not been seen yet."""
        return cls(
            request_id=request_id,
            scan_id="",
            status=None,
            progress=0,
            kind=EventKind.HEARTBEAT,
        )

    @property
    def is_terminal(self) -> bool:
        return (
            self.kind == EventKind.PROGRESS
            and self.status is not None
            and self.status.is_terminal
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.kind.value,
            "requestId": self.request_id,
            "scanId": self.scan_id,
            "status": self.status.value,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.step is not None:
            data["step"] = self.step
        if self.error is not None:
            data["error"] = self.error
        return data


# ============================================================================
# Introspection Models
# ============================================================================

@dataclass
class QueueStats:
    """Counts of queued, running and recently finished jobs."""
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total_processed(self) -> int:
        return self.completed + self.failed + self.cancelled

    def to_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "total_processed": self.total_processed,
        }


@dataclass
class StartScanResult:
    """Admission outcome returned to the caller."""
    request_id: str
    scan_id: str
    queued: bool
    queue_position: Optional[int] = None
    estimated_wait_time: Optional[float] = None   # Seconds
