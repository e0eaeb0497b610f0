"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; all monetary
values stored as Decimal strings.

Both backends support the two primitives the loan engine relies on:

- ``insert`` with an optional unique key, so "one open loan per borrower" is
  enforced by the store itself and not only by a check in application code.
- ``update`` with an expected version (compare-and-swap), so two writers that
  read the same loan cannot both commit.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import date, datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, fields
from enum import Enum
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Base class for storage failures"""


class DuplicateKeyError(StorageError):
    """Record id or unique key already taken"""


class StaleRecordError(StorageError):
    """Record version changed since it was read"""


class RecordNotFoundError(StorageError):
    """Record to update does not exist"""


def _to_json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Decimal, date, datetime and Enum values become JSON scalars
        return {key: _to_json_value(value) for key, value in result.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        unique_key: Optional[str] = None
    ) -> None:
        """
        Insert a new record.

        Raises DuplicateKeyError if the id exists or if another record of
        the table already holds ``unique_key``.
        """
        pass

    @abstractmethod
    def update(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int,
        unique_key: Optional[str] = None
    ) -> int:
        """
        Overwrite a record if its stored version equals ``expected_version``.

        The stored version becomes ``expected_version + 1`` and is returned.
        ``unique_key`` replaces the key previously held by the record; None
        releases it. Raises StaleRecordError on a version mismatch.
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A transaction holds the storage lock for its whole duration and restores
    a snapshot on rollback, so ``atomic()`` blocks behave like serializable
    transactions.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
            self._unique[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip prevents external mutation and normalizes types
        return json.loads(json.dumps(data, default=str))

    def _release_keys(self, table: str, record_id: str) -> None:
        held = [key for key, owner in self._unique[table].items() if owner == record_id]
        for key in held:
            del self._unique[table][key]

    def insert(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        unique_key: Optional[str] = None
    ) -> None:
        """Insert a record, enforcing id and unique key uniqueness"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateKeyError(f"{table}: id {record_id} already exists")
            if unique_key is not None and unique_key in self._unique[table]:
                raise DuplicateKeyError(f"{table}: unique key {unique_key} already held")
            record = self._copy(data)
            record.setdefault('version', 1)
            self._data[table][record_id] = record
            if unique_key is not None:
                self._unique[table][unique_key] = record_id

    def update(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int,
        unique_key: Optional[str] = None
    ) -> int:
        """Compare-and-swap update on the record version"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None:
                raise RecordNotFoundError(f"{table}: id {record_id} not found")
            if current.get('version') != expected_version:
                raise StaleRecordError(
                    f"{table}: id {record_id} is at version {current.get('version')}, "
                    f"expected {expected_version}"
                )
            if unique_key is not None:
                owner = self._unique[table].get(unique_key)
                if owner is not None and owner != record_id:
                    raise DuplicateKeyError(f"{table}: unique key {unique_key} already held")

            new_version = expected_version + 1
            record = self._copy(data)
            record['version'] = new_version
            self._data[table][record_id] = record
            self._release_keys(table, record_id)
            if unique_key is not None:
                self._unique[table][unique_key] = record_id
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record)
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            self._unique[table] = {}

    def begin_transaction(self) -> None:
        """Acquire the storage lock and snapshot on the outermost transaction"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = (copy.deepcopy(self._data), copy.deepcopy(self._unique))
        self._depth += 1

    def commit(self) -> None:
        """Drop the snapshot and release the lock"""
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot taken when the outermost transaction began"""
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data, self._unique = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly in begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    unique_key TEXT UNIQUE,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def insert(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        unique_key: Optional[str] = None
    ) -> None:
        """Insert a record; the UNIQUE column rejects a second holder of unique_key"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            record = dict(data)
            record.setdefault('version', 1)
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, unique_key, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (record_id, json.dumps(record, default=str), unique_key,
                      record['version'], now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"{table}: {e}") from e

    def update(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int,
        unique_key: Optional[str] = None
    ) -> int:
        """Compare-and-swap update on the version column"""
        with self._lock:
            self._ensure_table(table)
            new_version = expected_version + 1
            record = dict(data)
            record['version'] = new_version
            now = datetime.now(timezone.utc).isoformat()
            try:
                cursor = self._connection.execute(f"""
                    UPDATE {table}
                    SET data = ?, unique_key = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (json.dumps(record, default=str), unique_key, new_version, now,
                      record_id, expected_version))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"{table}: {e}") from e

            if cursor.rowcount == 0:
                row = self._connection.execute(
                    f"SELECT version FROM {table} WHERE id = ?", (record_id,)
                ).fetchone()
                if row is None:
                    raise RecordNotFoundError(f"{table}: id {record_id} not found")
                raise StaleRecordError(
                    f"{table}: id {record_id} is at version {row['version']}, "
                    f"expected {expected_version}"
                )
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection lock until it ends"""
        self._lock.acquire()
        if self._depth == 0:
            # IMMEDIATE takes the write lock up front, serializing writers across processes
            self._connection.execute("BEGIN IMMEDIATE")
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
                # Tables created inside the transaction are gone again
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives an InMemoryStorage; ``sqlite:///path/to.db`` a
    SQLiteStorage on that file and ``sqlite://`` an in-memory SQLite database.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url == "sqlite://":
        return SQLiteStorage(":memory:")
    raise StorageError(f"Unsupported database URL: {database_url}")
