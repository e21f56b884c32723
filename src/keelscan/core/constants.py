"""Constants used throughout keelscan.

This module contains enums, default values, and static configurations
to ensure consistency across the application.
"""

from enum import Enum


class ScanStatus(Enum):
    """Scan job lifecycle status."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ScanStatus.SUCCESS,
    ScanStatus.FAILED,
    ScanStatus.CANCELLED,
})


# Legal lifecycle transitions; anything else is rejected
ALLOWED_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.QUEUED: frozenset({ScanStatus.RUNNING, ScanStatus.CANCELLED}),
    ScanStatus.RUNNING: frozenset({
        ScanStatus.SUCCESS,
        ScanStatus.FAILED,
        ScanStatus.CANCELLED,
    }),
    ScanStatus.SUCCESS: frozenset(),
    ScanStatus.FAILED: frozenset(),
    ScanStatus.CANCELLED: frozenset(),
}


class ScanSource(Enum):
    """Where the image to scan comes from."""
    REGISTRY = "registry"
    LOCAL = "local"
    TAR = "tar"


class EventKind(Enum):
    """Kind of event delivered through the progress bus."""
    PROGRESS = "progress"
    HEARTBEAT = "heartbeat"


class AuditEventType(str, Enum):
    """Types of events recorded in the audit log."""
    JOB_ADMITTED = "job_admitted"
    JOB_STARTED = "job_started"
    ADAPTER_FINISHED = "adapter_finished"
    JOB_FINISHED = "job_finished"
    JOB_CANCELLED = "job_cancelled"
    ORPHAN_RECOVERED = "orphan_recovered"


# Scanner adapters in the order they are reported
SCANNER_NAMES = ("trivy", "grype", "syft", "osv", "dockle", "dive")

# Per-adapter timeouts in seconds
SCANNER_TIMEOUTS = {
    "trivy": 300,
    "grype": 300,
    "syft": 300,
    "osv": 300,
    "dockle": 180,
    "dive": 240,
}

# Adapters whose payloads carry vulnerability matches
VULNERABILITY_SCANNERS = ("trivy", "grype")

SEVERITY_LEVELS = ("critical", "high", "medium", "low", "unknown")

ORPHAN_ERROR = "OrphanRecovery: scan was interrupted by an orchestrator restart"


# Progress milestones for a running job
PROGRESS = {
    "setup": 5,
    "acquire": 10,
    "image_ready": 50,
    "adapters_start": 50,
    "adapters_span": 45,
    "processing": 95,
    "done": 100,
}


# Application-wide defaults
DEFAULTS = {
    "max_concurrent_scans": 3,
    "scan_timeout_minutes": 30,
    "log_level": "info",
    "work_dir": "/workspace",
    "database_path": "keelscan.db",
    "heartbeat_interval": 30.0,
    "kill_grace_period": 10.0,
    "history_size": 100,
    "duration_window": 20,
    "subscriber_buffer": 100,
    "audit_max_bytes": 10 * 1024 * 1024,
    "audit_backup_count": 5,
}

# Accepted ranges for numeric settings
LIMITS = {
    "max_concurrent_scans": (1, 20),
    "scan_timeout_minutes": (5, 180),
}

LOG_LEVELS = ("debug", "info", "warning", "error")
