"""Database operations for keelscan.

This module provides SQLite-based persistence for images, scans and
per-scanner results. Uses WAL mode and JSON serialization for complex
fields.

Database is called from worker threads (asyncio.to_thread) by the
orchestrator, so a single connection is shared behind a lock.
"""

import json
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from keelscan.core.constants import ScanStatus
from keelscan.core.exceptions import StorageError
from keelscan.core.models import AdapterResult, AggregatedResults, ScanRequest
from keelscan.storage.migrations.runner import default_runner


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """SQLite database manager for scan records.

    Implements the orchestrator's persistence gateway.
    """

    def __init__(self, db_path: Path):
        """Initialize database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection.

        Returns:
            SQLite connection with row factory
        """
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            # Enable WAL mode for concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def init_db(self) -> None:
        """Bring the schema up to date by running pending migrations.

        Raises:
            StorageError: If migration fails
        """
        with self._lock:
            try:
                default_runner().migrate(self._get_connection())
            except Exception as e:
                raise StorageError(f"Failed to initialize database: {e}") from e

    # =========================================================================
    # Scan records
    # =========================================================================

    def create_scan_record(self, request: ScanRequest, owner: Optional[str] = None) -> str:
        """Persist a new QUEUED scan, creating the image row if needed.

        Args:
            request: Scan request
            owner: Orchestrator process running the scan (<host>:<pid>)

        Returns:
            The new scan ID

        Raises:
            StorageError: If the insert fails
        """
        scan_id = uuid4().hex
        now = _now()

        with self._lock:
            try:
                conn = self._get_connection()
                cursor = conn.cursor()

                cursor.execute("""
                    INSERT INTO images (id, name, tag, registry, source, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name, tag, registry) DO NOTHING
                """, (
                    uuid4().hex,
                    request.image,
                    request.tag,
                    request.registry or "",
                    request.source.value,
                    now,
                ))

                cursor.execute(
                    "SELECT id FROM images WHERE name = ? AND tag = ? AND registry = ?",
                    (request.image, request.tag, request.registry or ""),
                )
                image_id = cursor.fetchone()["id"]

                cursor.execute("""
                    INSERT INTO scans (
                        id, image_id, source, status, progress, scanners, owner, created_at
                    )
                    VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """, (
                    scan_id,
                    image_id,
                    request.source.value,
                    ScanStatus.QUEUED.value,
                    json.dumps(list(request.scanners or [])),
                    owner,
                    now,
                ))

                conn.commit()

            except sqlite3.Error as e:
                raise StorageError(f"Failed to create scan for {request.image_ref}: {e}") from e

        return scan_id

    def update_scan_status(
        self,
        scan_id: str,
        status: ScanStatus,
        progress: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update status of a scan.

        RUNNING sets started_at, terminal statuses set finished_at. The
        error is stored for FAILED and cleared otherwise. A scan that is
        already SUCCESS, FAILED or CANCELLED keeps its status.

        Raises:
            StorageError: If the scan does not exist, is already terminal
                or the update fails
        """
        assignments = ["status = ?", "error = ?"]
        params: list[Any] = [status.value, error if status == ScanStatus.FAILED else None]

        if progress is not None:
            assignments.append("progress = ?")
            params.append(progress)
        if status == ScanStatus.RUNNING:
            assignments.append("started_at = ?")
            params.append(_now())
        elif status.is_terminal:
            assignments.append("finished_at = ?")
            params.append(_now())

        terminal = [s.value for s in ScanStatus if s.is_terminal]
        params.append(scan_id)
        params.extend(terminal)

        with self._lock:
            try:
                conn = self._get_connection()
                cursor = conn.execute(
                    f"UPDATE scans SET {', '.join(assignments)} "
                    f"WHERE id = ? AND status NOT IN ({', '.join('?' for _ in terminal)})",
                    params,
                )
                if cursor.rowcount == 0:
                    row = conn.execute(
                        "SELECT status FROM scans WHERE id = ?", (scan_id,)
                    ).fetchone()
                    if row is None:
                        raise StorageError(f"Scan {scan_id} not found")
                    raise StorageError(
                        f"Scan {scan_id} is already {row['status']}, "
                        f"refusing to set {status.value}"
                    )
                conn.commit()

            except sqlite3.Error as e:
                raise StorageError(f"Failed to update scan {scan_id}: {e}") from e

    def store_final_results(self, scan_id: str, results: AggregatedResults) -> None:
        """Store per-scanner results and the scan summary.

        Raises:
            StorageError: If the write fails
        """
        with self._lock:
            try:
                conn = self._get_connection()
                cursor = conn.cursor()

                for result in results.results.values():
                    cursor.execute("""
                        INSERT INTO scan_results (
                            scan_id, scanner, success, timed_out, duration_ms, error, payload
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(scan_id, scanner) DO UPDATE SET
                            success = excluded.success,
                            timed_out = excluded.timed_out,
                            duration_ms = excluded.duration_ms,
                            error = excluded.error,
                            payload = excluded.payload
                    """, (
                        scan_id,
                        result.adapter_name,
                        int(result.success),
                        int(result.timed_out),
                        result.duration_ms,
                        result.error,
                        json.dumps(result.payload) if result.payload is not None else None,
                    ))

                cursor.execute("""
                    UPDATE scans
                    SET vulnerability_counts = ?, metadata = ?, partial = ?
                    WHERE id = ?
                """, (
                    json.dumps(results.vulnerability_counts),
                    json.dumps(results.metadata, default=str),
                    int(results.partial),
                    scan_id,
                ))

                conn.commit()

            except (sqlite3.Error, TypeError, ValueError) as e:
                if self._conn is not None:
                    self._conn.rollback()
                raise StorageError(f"Failed to store results for scan {scan_id}: {e}") from e

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def _scan_from_row(row: sqlite3.Row) -> dict[str, Any]:
        scan = dict(row)
        scan["status"] = ScanStatus(scan["status"])
        scan["scanners"] = json.loads(scan.get("scanners") or "[]")
        scan["vulnerability_counts"] = json.loads(scan.get("vulnerability_counts") or "{}")
        scan["metadata"] = json.loads(scan.get("metadata") or "{}")
        scan["partial"] = bool(scan.get("partial"))
        return scan

    _SCAN_QUERY = """
        SELECT scans.*, images.name AS image, images.tag AS tag, images.registry AS registry
        FROM scans JOIN images ON images.id = scans.image_id
    """

    def get_scan(self, scan_id: str) -> Optional[dict[str, Any]]:
        """Retrieve a scan with its image name, None if not found."""
        with self._lock:
            try:
                row = self._get_connection().execute(
                    self._SCAN_QUERY + " WHERE scans.id = ?", (scan_id,)
                ).fetchone()
                return self._scan_from_row(row) if row is not None else None

            except (sqlite3.Error, ValueError) as e:
                raise StorageError(f"Failed to retrieve scan {scan_id}: {e}") from e

    def list_scans(
        self,
        statuses: Optional[Iterable[ScanStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """List scans ordered by created_at DESC.

        Args:
            statuses: Only return scans in these statuses
            limit: Maximum number of scans

        Raises:
            StorageError: If query fails
        """
        query = self._SCAN_QUERY
        params: list[Any] = []

        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" WHERE scans.status IN ({', '.join('?' for _ in values)})"
            params.extend(values)

        query += " ORDER BY scans.created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            try:
                rows = self._get_connection().execute(query, params).fetchall()
                return [self._scan_from_row(row) for row in rows]

            except (sqlite3.Error, ValueError) as e:
                raise StorageError(f"Failed to list scans: {e}") from e

    def get_scan_results(self, scan_id: str) -> dict[str, AdapterResult]:
        """Per-scanner results of a scan keyed by scanner name."""
        with self._lock:
            try:
                rows = self._get_connection().execute(
                    "SELECT * FROM scan_results WHERE scan_id = ? ORDER BY scanner",
                    (scan_id,),
                ).fetchall()

                return {
                    row["scanner"]: AdapterResult(
                        adapter_name=row["scanner"],
                        success=bool(row["success"]),
                        duration_ms=row["duration_ms"],
                        payload=json.loads(row["payload"]) if row["payload"] else None,
                        error=row["error"],
                        timed_out=bool(row["timed_out"]),
                    )
                    for row in rows
                }

            except (sqlite3.Error, ValueError) as e:
                raise StorageError(f"Failed to get results for scan {scan_id}: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
