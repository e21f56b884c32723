"""Audit trail of scan job lifecycles.

Each orchestrator process writes through one AuditLogger. Several processes
may share an audit directory (every `keelscan scan` invocation runs its own
orchestrator), so each record names the process that wrote it and carries
that process's sequence number. Records are JSON Lines; the file rotates
once it reaches max_bytes.

Runners log through a JobAudit, which binds the request ID and any fixed
job context such as the scan ID.
"""

import itertools
import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from keelscan.core.constants import AuditEventType, DEFAULTS
from keelscan.core.exceptions import AuditLogError
from keelscan.core.utils import instance_owner


class AuditLogger:
    """Audit trail of one orchestrator process.

    Example:
        >>> audit = AuditLogger(Path("/workspace/audit"), instance="build-01:4242")
        >>> audit.log_event(AuditEventType.JOB_ADMITTED, "20260101-120000-ab12cd34")
        >>> audit.close()

    Args:
        audit_dir: Directory holding audit.log and its rotated backups
        instance: Tag of the writing process (defaults to <host>:<pid>)
        max_bytes: Size at which audit.log is rotated (0 never rotates)
        backup_count: Rotated files to keep

    Raises:
        AuditLogError: If the directory or log file cannot be created
    """

    def __init__(
        self,
        audit_dir: Path,
        *,
        instance: Optional[str] = None,
        max_bytes: int = DEFAULTS["audit_max_bytes"],
        backup_count: int = DEFAULTS["audit_backup_count"],
    ) -> None:
        self.audit_dir = Path(audit_dir)
        self.log_path = self.audit_dir / "audit.log"
        self.instance = instance or instance_owner()
        self._sequence = itertools.count(1)

        try:
            self.audit_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AuditLogError(
                f"Failed to create audit directory {audit_dir}: {e}"
            ) from e

        self._logger = logging.getLogger(f"keelscan.audit.{id(self):x}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False  # Keep audit lines out of the console
        self._logger.handlers.clear()

        try:
            handler = RotatingFileHandler(
                str(self.log_path),
                mode="a",
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            raise AuditLogError(
                f"Failed to create audit log file {self.log_path}: {e}"
            ) from e
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(handler)

    def log_event(
        self,
        event_type: AuditEventType,
        request_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append one record.

        Raises:
            AuditLogError: If the record cannot be written
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "instance": self.instance,
            "seq": next(self._sequence),
            "request_id": request_id,
            "event_type": event_type.value,
            "details": details or {},
        }

        try:
            self._logger.info(json.dumps(event, ensure_ascii=False, default=str))
        except Exception as e:
            raise AuditLogError(
                f"Failed to write audit event {event_type.value}: {e}"
            ) from e

    def close(self) -> None:
        """Flush and close the log file."""
        for handler in self._logger.handlers:
            handler.flush()
            handler.close()
        self._logger.handlers.clear()


class JobAudit:
    """Audit events of one job.

    Fixed context is merged into the details of every record; details
    passed to log() win on conflicting keys.
    """

    def __init__(self, audit: AuditLogger, request_id: str, **context: Any) -> None:
        self.audit = audit
        self.request_id = request_id
        self.context = context

    def log(self, event_type: AuditEventType, details: Optional[dict[str, Any]] = None) -> None:
        self.audit.log_event(event_type, self.request_id, {**self.context, **(details or {})})
