"""Per-plugin storage backends.

Every adapter partitions data by plugin id; a plugin only ever sees the
:class:`PluginStorage` view bound to its own id.
"""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class StorageAdapter(ABC):
    """Backend shared by all plugins, keyed by plugin id."""

    @abstractmethod
    def get(self, plugin_id: str, key: str) -> Any: ...

    @abstractmethod
    def set(self, plugin_id: str, key: str, value: Any) -> None: ...

    @abstractmethod
    def delete(self, plugin_id: str, key: str) -> None: ...

    @abstractmethod
    def keys(self, plugin_id: str) -> list[str]: ...

    def clear(self, plugin_id: str) -> None:
        for key in self.keys(plugin_id):
            self.delete(plugin_id, key)


class MemoryStorageAdapter(StorageAdapter):
    """In-process dict storage, lost on restart."""

    def __init__(self) -> None:
        self._store: dict[str, dict[str, Any]] = {}

    def _bucket(self, plugin_id: str) -> dict[str, Any]:
        return self._store.setdefault(plugin_id, {})

    def get(self, plugin_id: str, key: str) -> Any:
        return self._bucket(plugin_id).get(key)

    def set(self, plugin_id: str, key: str, value: Any) -> None:
        self._bucket(plugin_id)[key] = value

    def delete(self, plugin_id: str, key: str) -> None:
        self._bucket(plugin_id).pop(key, None)

    def keys(self, plugin_id: str) -> list[str]:
        return list(self._bucket(plugin_id).keys())

    def clear(self, plugin_id: str) -> None:
        self._store.pop(plugin_id, None)


class SQLiteStorageAdapter(StorageAdapter):
    """SQLite-based storage with JSON-encoded values."""

    def __init__(self, db_path: str | Path):
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _initialize_db(self) -> None:
        """Create the storage table if it doesn't exist."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS plugin_storage (
                    plugin_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (plugin_id, key)
                )
            """)
            conn.commit()

    def get(self, plugin_id: str, key: str) -> Any:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT value FROM plugin_storage WHERE plugin_id = ? AND key = ?",
                (plugin_id, key),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def set(self, plugin_id: str, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO plugin_storage (plugin_id, key, value) VALUES (?, ?, ?)
                ON CONFLICT(plugin_id, key) DO UPDATE SET value = excluded.value
            """,
                (plugin_id, key, encoded),
            )
            conn.commit()

    def delete(self, plugin_id: str, key: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM plugin_storage WHERE plugin_id = ? AND key = ?",
                (plugin_id, key),
            )
            conn.commit()

    def keys(self, plugin_id: str) -> list[str]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT key FROM plugin_storage WHERE plugin_id = ? ORDER BY key",
                (plugin_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def clear(self, plugin_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM plugin_storage WHERE plugin_id = ?", (plugin_id,))
            conn.commit()


class PluginStorage:
    """Storage view scoped to a single plugin id."""

    def __init__(self, adapter: StorageAdapter, plugin_id: str):
        self._adapter = adapter
        self.plugin_id = plugin_id

    def get(self, key: str) -> Any:
        return self._adapter.get(self.plugin_id, key)

    def set(self, key: str, value: Any) -> None:
        self._adapter.set(self.plugin_id, key, value)

    def delete(self, key: str) -> None:
        self._adapter.delete(self.plugin_id, key)

    def keys(self) -> list[str]:
        return self._adapter.keys(self.plugin_id)

    def clear(self) -> None:
        self._adapter.clear(self.plugin_id)


def create_storage_adapter(backend: str, path: str | Path | None = None) -> StorageAdapter:
    """Build a storage adapter from configuration values."""
    if backend == "memory":
        return MemoryStorageAdapter()
    if backend == "sqlite":
        if path is None:
            raise ValueError("sqlite storage backend requires a path")
        return SQLiteStorageAdapter(path)
    raise ValueError(f"Unknown storage backend: {backend}")
