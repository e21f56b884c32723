"""Persistence interface used by the orchestrator.

keelscan.storage.database.Database implements it on SQLite. Methods are
blocking; the orchestrator calls them through asyncio.to_thread.
"""

from collections.abc import Iterable
from typing import Any, Optional, Protocol

from keelscan.core.constants import ScanStatus
from keelscan.core.models import AggregatedResults, ScanRequest


class PersistenceGateway(Protocol):

    def create_scan_record(self, request: ScanRequest, owner: Optional[str] = None) -> str:
        """Persist a new scan owned by the given process and return its scan ID."""
        ...

    def update_scan_status(
        self,
        scan_id: str,
        status: ScanStatus,
        progress: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Raises StorageError for unknown scans and scans already terminal."""
        ...

    def store_final_results(self, scan_id: str, results: AggregatedResults) -> None:
        ...

    def list_scans(
        self,
        statuses: Optional[Iterable[ScanStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Persisted scans, newest first, as dicts with at least id, status and owner."""
        ...
