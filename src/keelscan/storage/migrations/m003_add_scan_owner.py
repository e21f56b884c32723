"""Migration 003: Scan ownership.

Adds the owner column (<host>:<pid> of the orchestrator process running the
scan) so orphan recovery can leave scans of live processes alone.
"""

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("ALTER TABLE scans ADD COLUMN owner TEXT")
    cursor.execute("CREATE INDEX idx_scans_owner ON scans(owner)")


def down(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP INDEX IF EXISTS idx_scans_owner")
    cursor.execute("ALTER TABLE scans DROP COLUMN owner")
