"""Migration 002: Per-scanner results and scan summaries.

Adds the scan_results table and summary columns on scans.
"""

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE scan_results (
            scan_id TEXT NOT NULL,
            scanner TEXT NOT NULL,
            success INTEGER NOT NULL,
            timed_out INTEGER NOT NULL DEFAULT 0,
            duration_ms INTEGER NOT NULL,
            error TEXT,
            payload TEXT,
            PRIMARY KEY (scan_id, scanner),
            FOREIGN KEY (scan_id) REFERENCES scans(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("ALTER TABLE scans ADD COLUMN vulnerability_counts TEXT DEFAULT '{}'")
    cursor.execute("ALTER TABLE scans ADD COLUMN metadata TEXT DEFAULT '{}'")
    cursor.execute("ALTER TABLE scans ADD COLUMN partial INTEGER DEFAULT 0")

    cursor.execute("""
        CREATE INDEX idx_scan_results_scan_id ON scan_results(scan_id)
    """)


def down(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS scan_results")
    cursor.execute("ALTER TABLE scans DROP COLUMN vulnerability_counts")
    cursor.execute("ALTER TABLE scans DROP COLUMN metadata")
    cursor.execute("ALTER TABLE scans DROP COLUMN partial")
