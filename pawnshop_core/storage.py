"""
Storage Backend Module

Provides an abstract storage interface and implementations for in-memory
(testing), SQLite and PostgreSQL persistence. All monetary values are stored as
Decimal strings.

Every backend supports a transaction scope (``atomic()``) and a row lock
(``load_for_update``) held until that scope ends. The settlement engines rely
on both: all writes of one settlement either persist together or not at all,
and a single loan is never mutated by two callers at once.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyConflictError, PersistenceError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
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

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record and lock it until the current transaction ends.

        Backends that serialize whole transactions can rely on that and
        simply load.
        """
        return self.load(table, record_id)

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
        """Context manager for atomic operations; nested scopes join the outer one"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class _PendingTransaction:
    """Writes and row locks owned by one thread's open transaction"""

    def __init__(self):
        self.depth = 0
        # table -> record_id -> record, None marks a delete
        self.writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}
        self.held_locks: Dict[Tuple[str, str], threading.Lock] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Writes made inside a transaction are buffered per thread and only become
    visible to other threads on commit; rollback discards them.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._record_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._local = threading.local()
        self.lock_timeout = lock_timeout

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _pending(self) -> Optional[_PendingTransaction]:
        return getattr(self._local, 'pending', None)

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's uncommitted writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])

        pending = self._pending()
        if pending and table in pending.writes:
            for record_id, record in pending.writes[table].items():
                if record is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = record
        return rows

    @property
    def in_transaction(self) -> bool:
        return self._pending() is not None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        pending = self._pending()
        if pending:
            pending.writes.setdefault(table, {})[record_id] = record
            return

        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._view(table).get(record_id)
        if record is not None:
            return self._copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        if record_id not in self._view(table):
            return False

        pending = self._pending()
        if pending:
            pending.writes.setdefault(table, {})[record_id] = None
            return True

        with self._lock:
            self._data[table].pop(record_id, None)
        return True

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        results = []
        for record in self._view(table).values():
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(self._copy(record))
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pending = self._pending()
        if pending:
            pending.writes[table] = {record_id: None for record_id in self._view(table)}
            return

        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, holding its row lock until the transaction ends"""
        pending = self._pending()
        if pending is not None:
            self._lock_record(pending, table, record_id)
        return self.load(table, record_id)

    def _lock_record(self, pending: _PendingTransaction, table: str, record_id: str) -> None:
        key = (table, record_id)
        if key in pending.held_locks:
            return

        with self._lock:
            lock = self._record_locks.setdefault(key, threading.Lock())

        if not lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflictError(
                f"Timed out after {self.lock_timeout}s waiting for lock on {table}:{record_id}",
                entity_id=record_id
            )
        pending.held_locks[key] = lock

    def begin_transaction(self) -> None:
        """Open (or join) this thread's transaction"""
        pending = self._pending()
        if pending is None:
            pending = _PendingTransaction()
            self._local.pending = pending
        pending.depth += 1

    def commit(self) -> None:
        """Apply buffered writes once the outermost scope commits"""
        pending = self._pending()
        if pending is None:
            return

        pending.depth -= 1
        if pending.depth > 0:
            return

        try:
            with self._lock:
                for table, rows in pending.writes.items():
                    self._ensure_table(table)
                    for record_id, record in rows.items():
                        if record is None:
                            self._data[table].pop(record_id, None)
                        else:
                            self._data[table][record_id] = record
        finally:
            self._end_transaction(pending)

    def rollback(self) -> None:
        """Discard buffered writes once the outermost scope rolls back"""
        pending = self._pending()
        if pending is None:
            return

        pending.depth -= 1
        if pending.depth > 0:
            return

        self._end_transaction(pending)

    def _end_transaction(self, pending: _PendingTransaction) -> None:
        self._local.pending = None
        for lock in pending.held_locks.values():
            lock.release()
        pending.held_locks.clear()
        pending.writes.clear()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One connection is shared between threads. A transaction holds the
    connection lock from ``BEGIN IMMEDIATE`` until commit or rollback, so
    transactions are serialized and every row read inside one is effectively
    locked for update.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        # Autocommit mode; transactions are opened explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            created_at = str(data.get('created_at', ''))
            updated_at = str(data.get('updated_at', created_at))
            data_json = json.dumps(data, default=str)

            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, created_at, updated_at))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        """Acquire the connection and open a write transaction"""
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflictError(
                f"Timed out after {self.lock_timeout}s waiting for the database write lock"
            )
        if self._depth == 0:
            try:
                self._execute("BEGIN IMMEDIATE")
            except PersistenceError:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._execute("COMMIT")
                except PersistenceError:
                    self._known_tables.clear()
                    if self._connection.in_transaction:
                        self._connection.execute("ROLLBACK")
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._known_tables.clear()
                self._execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support.

    ``load_for_update`` issues ``SELECT ... FOR UPDATE`` under a
    ``lock_timeout``; losing the wait raises ConcurrencyConflictError.
    """

    def __init__(self, connection_string: str, lock_timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.errors
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")
        self.psycopg2 = psycopg2
        self.extras = psycopg2.extras

        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables: set = set()
        self._connection = self.psycopg2.connect(
            self.connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._connection.autocommit = False

    @contextmanager
    def _cursor(self):
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                if self._depth == 0:
                    self._connection.commit()
            except self.psycopg2.errors.LockNotAvailable as e:
                raise ConcurrencyConflictError(f"Row lock not available: {e}") from e
            except self.psycopg2.Error as e:
                if self._depth == 0:
                    self._connection.rollback()
                raise PersistenceError(f"PostgreSQL error: {e}") from e
            finally:
                cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, COALESCE(%s::timestamptz, NOW()), NOW())
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), data.get('created_at')))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record under a row lock held until commit/rollback"""
        if self._depth == 0:
            return self.load(table, record_id)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB equality"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("data -> %s = %s::jsonb")
                params.extend([key, json.dumps(value, default=str)])
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor.execute(f"SELECT data FROM {table} {where_clause} ORDER BY created_at", params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        """Start a database transaction; the connection is owned until it ends"""
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflictError(
                f"Timed out after {self.lock_timeout}s waiting for the database connection"
            )
        if self._depth == 0:
            with self._connection.cursor() as cursor:
                cursor.execute("SET LOCAL lock_timeout = %s", (f"{int(self.lock_timeout * 1000)}ms",))
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._known_tables.clear()
                self._connection.rollback()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (or
    ``sqlite://`` for an in-memory database) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
