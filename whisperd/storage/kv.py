"""
Whisper Key/Value Persistence

Async key/value storage used for identity, keys, the message store
and the seen-set.

Features:
- Minimal get/set/remove contract
- Versioned key names (whisper:v1:<name>)
- SQLite backend for on-device persistence
- In-memory backend with failure injection for tests

Design:
- Values are opaque strings (JSON records by convention)
- Readers must tolerate records that grew additive fields
- Backend failures surface as StorageError; callers decide whether
  to degrade or abort
"""

import asyncio
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Awaitable, Dict, Optional, TypeVar


# Key namespace and schema version
KEY_NAMESPACE = "whisper"
SCHEMA_VERSION = 1

# Upper bound for a single backend call, in seconds
DEFAULT_STORAGE_TIMEOUT = 5.0

T = TypeVar("T")


class StorageError(Exception):
    """Exception raised when the persistence backend fails."""
    pass


def storage_key(name: str, version: int = SCHEMA_VERSION) -> str:
    """
    Build a versioned storage key.

    Args:
        name: Record name (e.g. "identity", "conversations")
        version: Schema version

    Returns:
        str: Key such as "whisper:v1:identity"
    """
    return f"{KEY_NAMESPACE}:v{version}:{name}"


def record_int(value, default: int = 0) -> int:
    """
    Read a non-negative integer field from a stored record.

    Returns:
        int: The value, or default if it is missing, negative or not an int
    """
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return default
    return value


async def with_timeout(operation: Awaitable[T], timeout: Optional[float], what: str) -> T:
    """
    Await a backend call, giving up after timeout seconds.

    Args:
        operation: Awaitable returned by a KeyValueStore method
        timeout: Limit in seconds, or None to wait without a limit
        what: Short description used in the error message

    Raises:
        StorageError: If the backend fails or does not answer in time
    """
    if timeout is None:
        return await operation
    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except asyncio.TimeoutError:
        raise StorageError(f"{what} timed out after {timeout}s")


class KeyValueStore(ABC):
    """
    Abstract async key/value store.

    Usage:
        kv = SqliteKeyValueStore(Path("whisper.db"))
        await kv.set(storage_key("identity"), json.dumps(record))
        raw = await kv.get(storage_key("identity"))
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """
        Read a value.

        Returns:
            The stored string, or None if the key is absent

        Raises:
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """
        Write a value, replacing any previous one.

        Raises:
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """
        Delete a value. Removing an absent key is not an error.

        Raises:
            StorageError: If the backend fails
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class MemoryKeyValueStore(KeyValueStore):
    """
    Dictionary-backed store.

    Set ``fail_reads`` / ``fail_writes`` to simulate an unavailable
    backend.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self.fail_reads = False
        self.fail_writes = False
        self.writes = 0

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise StorageError(f"Read failed: {key}")
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StorageError(f"Write failed: {key}")
        self._data[key] = value
        self.writes += 1

    async def remove(self, key: str) -> None:
        if self.fail_writes:
            raise StorageError(f"Remove failed: {key}")
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        """Copy of the raw contents."""
        return dict(self._data)


class SqliteKeyValueStore(KeyValueStore):
    """
    SQLite-backed key/value store.

    Blocking sqlite3 calls run in a worker thread via asyncio.to_thread
    so the event loop is never blocked on disk I/O.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        """
        Initialize store.

        Args:
            db_path: Path to SQLite database
            timeout: SQLite busy timeout in seconds

        Raises:
            StorageError: If the database cannot be created or opened
        """
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._lock = threading.RLock()

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open database {self._db_path}: {e}") from e

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager."""
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._timeout,
            isolation_level=None,  # Autocommit
        )
        try:
            yield conn
        finally:
            conn.close()

    def _get_sync(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ?",
                (key,)
            ).fetchone()
        return row[0] if row else None

    def _set_sync(self, key: str, value: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, time.time()),
                )

    def _remove_sync(self, key: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except sqlite3.Error as e:
            raise StorageError(f"Read failed for {key}: {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except sqlite3.Error as e:
            raise StorageError(f"Write failed for {key}: {e}") from e

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove_sync, key)
        except sqlite3.Error as e:
            raise StorageError(f"Remove failed for {key}: {e}") from e
