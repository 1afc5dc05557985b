"""SQLite registry of confirmed uploads."""

import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_COLUMNS = "object_path, filename, size, mime_type, relative_path, storage, created_at"


class ObjectRegistry:
    """Registry with thread-safe SQLite access for uploaded objects."""

    DB_FILE = "dealdocs_objects.db"

    def __init__(self) -> None:
        """Initialize the registry database."""
        self._db_path = Path(self.DB_FILE)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.connection.row_factory = sqlite3.Row
        conn: sqlite3.Connection = self._local.connection
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS objects (
                id INTEGER PRIMARY KEY,
                object_path TEXT NOT NULL UNIQUE,
                filename TEXT DEFAULT '',
                size INTEGER DEFAULT 0,
                mime_type TEXT DEFAULT '',
                relative_path TEXT DEFAULT '',
                storage TEXT DEFAULT 's3',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_objects_created ON objects(created_at)
        """)

        conn.commit()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "objectPath": row["object_path"],
            "filename": row["filename"],
            "size": row["size"],
            "type": row["mime_type"],
            "relativePath": row["relative_path"],
            "storage": row["storage"],
            "createdAt": row["created_at"],
        }

    def register_object(
        self,
        object_path: str,
        filename: str,
        size: int = 0,
        mime_type: str = "",
        relative_path: str = "",
        storage: str = "s3",
    ) -> dict[str, Any]:
        """Insert or refresh an object entry.

        Registering the same path twice keeps one row with the latest details.

        Returns:
            The stored entry
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        now = datetime.now(UTC).isoformat()

        cursor.execute(
            f"""
            INSERT INTO objects ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(object_path) DO UPDATE SET
                filename = excluded.filename,
                size = excluded.size,
                mime_type = excluded.mime_type,
                relative_path = excluded.relative_path,
                storage = excluded.storage
            """,
            (object_path, filename, size, mime_type, relative_path or filename, storage, now),
        )
        conn.commit()

        entry = self.get_object(object_path)
        assert entry is not None
        return entry

    def get_object(self, object_path: str) -> dict[str, Any] | None:
        """Look up one object by path."""
        cursor = self._get_connection().cursor()
        cursor.execute(f"SELECT {_COLUMNS} FROM objects WHERE object_path = ?", (object_path,))
        row = cursor.fetchone()
        return self._row_to_dict(row) if row else None

    def list_objects(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """List objects, newest first."""
        cursor = self._get_connection().cursor()
        cursor.execute(
            f"SELECT {_COLUMNS} FROM objects ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_dict(row) for row in cursor.fetchall()]

    def delete_object(self, object_path: str) -> bool:
        """Remove an object entry.

        Returns:
            True if a row was deleted
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("DELETE FROM objects WHERE object_path = ?", (object_path,))
        deleted = cursor.rowcount
        conn.commit()
        return deleted > 0

    def get_stats(self) -> dict[str, Any]:
        """Get registry totals, overall and per storage backend."""
        cursor = self._get_connection().cursor()
        cursor.execute("""
            SELECT
                COUNT(*) as total_objects,
                COALESCE(SUM(size), 0) as total_bytes,
                MIN(created_at) as oldest_entry,
                MAX(created_at) as newest_entry
            FROM objects
        """)
        row = cursor.fetchone()

        cursor.execute("SELECT storage, COUNT(*) as count FROM objects GROUP BY storage")
        by_storage = {r["storage"]: r["count"] for r in cursor.fetchall()}

        return {
            "total_objects": row["total_objects"] or 0,
            "total_bytes": row["total_bytes"] or 0,
            "oldest_entry": row["oldest_entry"],
            "newest_entry": row["newest_entry"],
            "by_storage": by_storage,
        }


_object_registry: ObjectRegistry | None = None


def get_object_registry() -> ObjectRegistry:
    """Get the singleton ObjectRegistry instance."""
    global _object_registry
    if _object_registry is None:
        _object_registry = ObjectRegistry()
    return _object_registry
