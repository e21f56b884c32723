"""Migration 001: Initial schema.

Creates the images and scans tables. Registry is stored as an empty string
for images without one so the uniqueness constraint holds.
"""

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS images (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            tag TEXT NOT NULL,
            registry TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (name, tag, registry)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS scans (
            id TEXT PRIMARY KEY,
            image_id TEXT NOT NULL,
            source TEXT NOT NULL,
            status TEXT NOT NULL,
            progress INTEGER DEFAULT 0,
            error TEXT,
            scanners TEXT DEFAULT '[]',
            created_at TEXT NOT NULL,
            started_at TEXT,
            finished_at TEXT,
            FOREIGN KEY (image_id) REFERENCES images(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_scans_status
        ON scans(status)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_scans_image_id
        ON scans(image_id)
    """)


def down(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS scans")
    cursor.execute("DROP TABLE IF EXISTS images")
