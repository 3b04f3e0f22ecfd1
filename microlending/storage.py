"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; monetary
values are stored as Decimal strings and calendar dates as ISO strings, so
string comparison of date fields is chronological and range scans work the
same way on every backend.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Money


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DuplicateRecordError(ValueError):
    """Raised by insert() when the record id is already taken"""
    pass


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table or field name: {name!r}")
    return name


def to_storable(value: Any) -> Any:
    """Convert a value into its JSON-storable form"""
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_storable({f.name: getattr(self, f.name) for f in fields(self)})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError if the id exists"""
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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal all of the given filter values"""
        pass

    @abstractmethod
    def find_range(self, table: str, field: str, start: Any, end: Any) -> List[Dict[str, Any]]:
        """Find records with start <= record[field] < end, ordered by id"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str, field: str,
                         expected: Any, data: Dict[str, Any]) -> bool:
        """
        Replace a record only if record[field] currently equals `expected`.

        The check and the write are one atomic step. Returns True when the
        record was replaced, False when it is missing or the guard failed.
        """
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
        """
        Context manager for atomic operations.

        A failed begin_transaction leaves nothing to undo, and a failed commit
        must clean up after itself, so rollback only covers the body.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions hold the storage lock for their whole duration. The first
    write to a table inside the outermost transaction snapshots that table,
    and rollback restores only the snapshotted tables. Stored records are
    never mutated in place, so a shallow copy of the table is enough.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Optional[Dict[str, Dict[str, Any]]]]] = None

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def _writable(self, table: str) -> Dict[str, Dict[str, Any]]:
        if self._snapshot is not None and table not in self._snapshot:
            rows = self._data.get(table)
            self._snapshot[table] = dict(rows) if rows is not None else None
        return self._table(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._writable(table)[record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._writable(table)
            if record_id in rows:
                raise DuplicateRecordError(f"Record {record_id} already exists in {table}")
            rows[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._writable(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            results = []
            for record in self._table(table).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def find_range(self, table: str, field: str, start: Any, end: Any) -> List[Dict[str, Any]]:
        _check_identifier(field)
        start, end = to_storable(start), to_storable(end)
        with self._lock:
            rows = self._table(table)
            return [
                self._copy(rows[record_id]) for record_id in sorted(rows)
                if rows[record_id].get(field) is not None and start <= rows[record_id][field] < end
            ]

    def compare_and_swap(self, table: str, record_id: str, field: str,
                         expected: Any, data: Dict[str, Any]) -> bool:
        _check_identifier(field)
        with self._lock:
            current = self._table(table).get(record_id)
            if current is None or current.get(field) != to_storable(expected):
                return False
            self._writable(table)[record_id] = self._copy(data)
            return True

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._writable(table)
            self._data[table] = {}

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = {}
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            for table, rows in self._snapshot.items():
                if rows is None:
                    self._data.pop(table, None)
                else:
                    self._data[table] = rows
            self._snapshot = None
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; multi-statement units of work use explicit BEGIN/COMMIT
        self._connection = sqlite3.connect(self.db_path, timeout=timeout,
                                           check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()
        self._range_indexes: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> str:
        """Ensure table exists with proper schema"""
        _check_identifier(table)
        if table in self._tables:
            return table
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)
        return table

    def _ensure_range_index(self, table: str, field: str) -> None:
        """Index a JSON field so range scans on it stay bounded"""
        key = (table, field)
        if key in self._range_indexes:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            self._range_indexes.add(key)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(f"Record {record_id} already exists in {table}") from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params = []
            for key, value in filters.items():
                _check_identifier(key)
                if value is None:
                    conditions.append(f"json_extract(data, '$.{key}') IS NULL")
                else:
                    conditions.append(f"json_extract(data, '$.{key}') = ?")
                    params.append(to_storable(value))
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(
                f"SELECT data FROM {table} {where_clause} ORDER BY created_at, id", params
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find_range(self, table: str, field: str, start: Any, end: Any) -> List[Dict[str, Any]]:
        _check_identifier(field)
        with self._lock:
            self._ensure_table(table)
            self._ensure_range_index(table, field)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE json_extract(data, '$.{field}') >= ?
                  AND json_extract(data, '$.{field}') < ?
                ORDER BY id
            """, (to_storable(start), to_storable(end)))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def compare_and_swap(self, table: str, record_id: str, field: str,
                         expected: Any, data: Dict[str, Any]) -> bool:
        _check_identifier(field)
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.{field}') = ?
            """, (json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(),
                  record_id, to_storable(expected)))
            return cursor.rowcount == 1

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except BaseException:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error:
                    self._abandon_transaction()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
                self._forget_schema()
        finally:
            self._lock.release()

    def _abandon_transaction(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")
        self._forget_schema()

    def _forget_schema(self) -> None:
        # Tables created inside a rolled back transaction are gone
        self._tables.clear()
        self._range_indexes.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "memory", database_path: Union[str, Path] = ":memory:") -> StorageInterface:
    """Build a storage backend by name ("memory" or "sqlite")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
