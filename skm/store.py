"""
SQLite storage for the SKM status cache.

Schema:
- schema_version: Single-row schema version
- status_cache: One row per project path (fingerprint + memoized analysis)

Rows are only ever written whole, inside a transaction, so a reader sees
either the previous entry or the new one.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Iterable

from .config import get_skm_dir

logger = logging.getLogger(__name__)

DB_FILENAME = "cache.db"
CURRENT_SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

-- Memoized per-project analysis keyed by project path
CREATE TABLE IF NOT EXISTS status_cache (
    path TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


@dataclass
class CacheRow:
    """Stored cache row."""
    path: str
    fingerprint: str
    payload_json: str
    updated_at: str


class Store:
    """SQLite storage manager for the status cache."""

    def __init__(self, db_path: Path | None = None):
        if db_path is None:
            db_path = get_skm_dir() / DB_FILENAME
        self.db_path = db_path
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure database schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
            self._run_migrations(conn)

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        value = row[0]
        return int(value) if value is not None else 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        current = self._get_schema_version(conn)
        if current >= CURRENT_SCHEMA_VERSION:
            return
        # v0 -> v1: initial schema, created above
        self._set_schema_version(conn, CURRENT_SCHEMA_VERSION)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _now(self) -> str:
        """Get current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def reset(self) -> None:
        """Throw away an unreadable database file and start empty."""
        logger.warning("Resetting status cache database at %s", self.db_path)
        for suffix in ("", "-wal", "-shm", "-journal"):
            Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
        self._ensure_schema()

    # =========================================================================
    # Cache rows
    # =========================================================================

    def load_rows(self) -> list[CacheRow]:
        """Load every cache row."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT path, fingerprint, payload_json, updated_at FROM status_cache ORDER BY path"
            ).fetchall()
            return [CacheRow(**dict(row)) for row in rows]

    def upsert_rows(
        self,
        rows: Iterable[tuple[str, str, str]],
        delete_paths: Iterable[str] = (),
    ) -> int:
        """Write changed (path, fingerprint, payload_json) rows and drop removed paths in one transaction."""
        updated_at = self._now()
        records = [(path, fingerprint, payload, updated_at) for path, fingerprint, payload in rows]
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO status_cache (path, fingerprint, payload_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    fingerprint = excluded.fingerprint,
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                records,
            )
            conn.executemany("DELETE FROM status_cache WHERE path = ?", [(path,) for path in delete_paths])
        return len(records)

    def replace_all(self, rows: Iterable[tuple[str, str, str]]) -> int:
        """Replace the table contents with (path, fingerprint, payload_json) rows in one transaction."""
        updated_at = self._now()
        records = [(path, fingerprint, payload, updated_at) for path, fingerprint, payload in rows]
        with self._connect() as conn:
            conn.execute("DELETE FROM status_cache")
            conn.executemany(
                "INSERT INTO status_cache (path, fingerprint, payload_json, updated_at) VALUES (?, ?, ?, ?)",
                records,
            )
        return len(records)

    def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM status_cache").fetchone()
            return int(row[0])

    def last_updated(self) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(updated_at) FROM status_cache").fetchone()
            return row[0] if row else None
