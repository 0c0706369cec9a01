"""
SQLite persistence manager for EdgeForge state.

Single-file SQLite database. Explicit save/load only - no auto-persistence.

Stores:
- Sites and their current sparse settings override
- Settings history (append-only)
- Asset-level overrides (declaration order)
- Builds and their structured log events
- Pipeline checkpoints

Settings mutation is atomic: read current -> append to history -> write new,
all inside one transaction.
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import PersistenceError, RecordNotFoundError, SchemaError


# Database schema version for migrations
SCHEMA_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PersistenceManager:
    """
    Manages SQLite persistence for EdgeForge state.

    Does NOT store:
    - Page HTML or optimized assets (these live in the site workspace)
    - Resolved settings (always recomputed from overrides)
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize persistence manager.

        Args:
            db_path: Path to SQLite database file (defaults to ./edgeforge.db).
                     ":memory:" keeps one shared in-process connection.
        """
        if db_path is None:
            db_path = str(Path.cwd() / "edgeforge.db")

        self.db_path = db_path
        # Serializes writers across worker threads
        self._write_lock = threading.RLock()
        self._memory_conn: Optional[sqlite3.Connection] = None
        if db_path == ":memory:":
            self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._memory_conn.row_factory = sqlite3.Row
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        """Context manager for database connections."""
        with self._write_lock:
            if self._memory_conn is not None:
                conn = self._memory_conn
            else:
                conn = sqlite3.connect(self.db_path)
                conn.row_factory = sqlite3.Row  # Access columns by name
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                yield conn
                conn.commit()
            except PersistenceError:
                conn.rollback()
                raise
            except Exception as e:
                conn.rollback()
                raise PersistenceError(f"Database operation failed: {e}") from e
            finally:
                if conn is not self._memory_conn:
                    conn.close()

    def _ensure_schema(self):
        """Create schema if it doesn't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            cursor.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
            row = cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version > SCHEMA_VERSION:
                raise SchemaError(
                    f"Database schema version {current_version} is newer than supported {SCHEMA_VERSION}"
                )
            if current_version < SCHEMA_VERSION:
                self._migrate_schema(conn, current_version)

    def _migrate_schema(self, conn, from_version: int):
        """Apply schema migrations."""
        cursor = conn.cursor()

        if from_version < 1:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sites (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    settings TEXT NOT NULL DEFAULT '{}',
                    monitor_enabled INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS settings_history (
                    id TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    settings TEXT NOT NULL,
                    changed_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (site_id) REFERENCES sites (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_settings_history_site
                ON settings_history (site_id, seq)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS asset_overrides (
                    id TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    url_pattern TEXT NOT NULL,
                    settings TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (site_id) REFERENCES sites (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS builds (
                    id TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_builds_site_status
                ON builds (site_id, status)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS build_events (
                    build_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (build_id, seq)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    build_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (1, _now())
            )

    # Sites

    def create_site(self, name: str, url: str, site_id: Optional[str] = None,
                    monitor_enabled: bool = False) -> Dict[str, Any]:
        site_id = site_id or str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sites (id, name, url, settings, monitor_enabled, created_at, updated_at)
                VALUES (?, ?, ?, '{}', ?, ?, ?)
                """,
                (site_id, name, url, int(monitor_enabled), now, now),
            )
        return self.get_site(site_id)

    def get_site(self, site_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return self._site_from_row(row) if row else None

    def list_sites(self, monitor_enabled: Optional[bool] = None) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            if monitor_enabled is None:
                rows = conn.execute("SELECT * FROM sites ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sites WHERE monitor_enabled = ? ORDER BY created_at",
                    (int(monitor_enabled),),
                ).fetchall()
        return [self._site_from_row(row) for row in rows]

    def delete_site(self, site_id: str) -> bool:
        """Delete a site and its settings/overrides. Builds are kept for audit."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sites WHERE id = ?", (site_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _site_from_row(row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "url": row["url"],
            "settings": json.loads(row["settings"]),
            "monitor_enabled": bool(row["monitor_enabled"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    # Settings

    def get_site_settings(self, site_id: str) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT settings FROM sites WHERE id = ?", (site_id,)).fetchone()
        if row is None:
            raise RecordNotFoundError("sites", site_id)
        return json.loads(row["settings"])

    def update_site_settings(self, site_id: str, settings: Dict[str, Any], changed_by: str) -> Dict[str, Any]:
        """
        Atomically preserve the current override in history and write the new one.

        Returns:
            The history entry that was appended (holds the PREVIOUS override)
        """
        now = _now()
        entry_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute("SELECT settings FROM sites WHERE id = ?", (site_id,)).fetchone()
            if row is None:
                raise RecordNotFoundError("sites", site_id)

            seq_row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM settings_history WHERE site_id = ?",
                (site_id,),
            ).fetchone()

            conn.execute(
                """
                INSERT INTO settings_history (id, site_id, seq, settings, changed_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entry_id, site_id, seq_row["seq"] + 1, row["settings"], changed_by, now),
            )
            conn.execute(
                "UPDATE sites SET settings = ?, updated_at = ? WHERE id = ?",
                (json.dumps(settings, sort_keys=True), now, site_id),
            )

        return {
            "id": entry_id,
            "site_id": site_id,
            "settings": json.loads(row["settings"]),
            "changed_by": changed_by,
            "created_at": now,
        }

    def list_settings_history(self, site_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """History entries, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM settings_history WHERE site_id = ? ORDER BY seq DESC LIMIT ?",
                (site_id, limit),
            ).fetchall()
        return [self._history_from_row(row) for row in rows]

    def get_settings_history_entry(self, site_id: str, history_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM settings_history WHERE site_id = ? AND id = ?",
                (site_id, history_id),
            ).fetchone()
        return self._history_from_row(row) if row else None

    @staticmethod
    def _history_from_row(row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "site_id": row["site_id"],
            "settings": json.loads(row["settings"]),
            "changed_by": row["changed_by"],
            "created_at": row["created_at"],
        }

    # Asset overrides

    def add_asset_override(self, site_id: str, url_pattern: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        override_id = str(uuid.uuid4())
        with self._connect() as conn:
            pos_row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) AS pos FROM asset_overrides WHERE site_id = ?",
                (site_id,),
            ).fetchone()
            position = pos_row["pos"] + 1
            conn.execute(
                """
                INSERT INTO asset_overrides (id, site_id, url_pattern, settings, position, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (override_id, site_id, url_pattern, json.dumps(settings, sort_keys=True), position, _now()),
            )
        return {
            "id": override_id,
            "site_id": site_id,
            "url_pattern": url_pattern,
            "settings": settings,
            "position": position,
        }

    def list_asset_overrides(self, site_id: str) -> List[Dict[str, Any]]:
        """Asset overrides in declaration order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM asset_overrides WHERE site_id = ? ORDER BY position",
                (site_id,),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "site_id": row["site_id"],
                "url_pattern": row["url_pattern"],
                "settings": json.loads(row["settings"]),
                "position": row["position"],
            }
            for row in rows
        ]

    # Builds

    def save_build(self, build_data: Dict[str, Any]) -> None:
        """
        Save or update a build.

        Args:
            build_data: Serialized Build (must contain id, site_id, status, created_at)
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO builds (id, site_id, status, created_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    data = excluded.data
                """,
                (
                    build_data["id"],
                    build_data["site_id"],
                    build_data["status"],
                    build_data["created_at"],
                    json.dumps(build_data),
                ),
            )

    def load_build(self, build_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM builds WHERE id = ?", (build_id,)).fetchone()
        return json.loads(row["data"]) if row else None

    def list_builds(self, site_id: Optional[str] = None,
                    statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Builds, newest first, optionally filtered by site and status."""
        query = "SELECT data FROM builds"
        clauses = []
        params: List[Any] = []
        if site_id is not None:
            clauses.append("site_id = ?")
            params.append(site_id)
        if statuses is not None:
            statuses = list(statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    # Build events

    def append_build_event(self, build_id: str, seq: int, event_data: Dict[str, Any]) -> None:
        """Append one event; re-appending the same seq is a no-op."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO build_events (build_id, seq, data) VALUES (?, ?, ?)",
                (build_id, seq, json.dumps(event_data)),
            )

    def list_build_events(self, build_id: str, after_seq: int = 0) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM build_events WHERE build_id = ? AND seq > ? ORDER BY seq",
                (build_id, after_seq),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    # Checkpoints

    def save_checkpoint(self, build_id: str, checkpoint_data: Dict[str, Any], updated_at: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO checkpoints (build_id, data, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(build_id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (build_id, json.dumps(checkpoint_data), updated_at),
            )

    def load_checkpoint(self, build_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM checkpoints WHERE build_id = ?", (build_id,)).fetchone()
        return json.loads(row["data"]) if row else None

    def delete_checkpoint(self, build_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM checkpoints WHERE build_id = ?", (build_id,))
