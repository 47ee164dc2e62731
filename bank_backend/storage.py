"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend offers the same unit-of-work primitives used by the balance
mutation engine:

- ``atomic()`` groups writes so they commit or roll back together
- ``lock_record()`` gives one thread exclusive use of a record
- ``find_page()`` returns records newest first, ties broken by insertion
  sequence, together with the total match count
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictError


def isoformat(value: datetime) -> str:
    """ISO timestamp with fixed precision so stored values sort lexically"""
    return value.isoformat(timespec="microseconds")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Indexed columns per table. The value names the referenced table for
# foreign keys, or None for a plain lookup column.
TABLE_COLUMNS: Dict[str, Dict[str, Optional[str]]] = {
    "users": {"email": None},
    "accounts": {"owner_user_id": "users", "account_number": None},
    "transactions": {"account_id": "accounts", "user_id": "users"},
    "notifications": {"user_id": "users"},
}


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = isoformat(value)
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        # (table, id) -> [lock, number of threads holding or waiting]
        self._record_locks: Dict[Tuple[str, str], List[Any]] = {}
        self._record_locks_guard = threading.Lock()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in creation order"""
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
        """Find records matching filters, in creation order"""
        pass

    @abstractmethod
    def find_page(self, table: str, filters: Dict[str, Any],
                  offset: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        """Newest-first page of matching records plus the total match count"""
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
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
            self.commit()
        except BaseException:
            self.rollback()
            raise

    def _checkout_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._record_locks_guard:
            entry = self._record_locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._record_locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin_lock(self, key: Tuple[str, str]) -> None:
        with self._record_locks_guard:
            entry = self._record_locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._record_locks[key]

    @contextmanager
    def lock_record(self, table: str, record_id: str, timeout: Optional[float] = None):
        """
        Hold an exclusive lock on one record.

        Acquire before ``atomic()``, never inside it. Raises ConflictError if
        the lock is not granted within ``timeout`` seconds.
        """
        key = (table, record_id)
        lock = self._checkout_lock(key)
        try:
            if not lock.acquire(timeout=-1 if timeout is None else timeout):
                raise ConflictError(
                    f"Timed out waiting for lock on {table}:{record_id}",
                    {"table": table, "record_id": record_id},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            # Entries live only while someone holds or waits for the lock
            self._checkin_lock(key)


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A unit of work holds the storage lock until it commits or rolls back, so
    other threads never observe uncommitted writes.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._order: Dict[str, Dict[str, Tuple[str, int]]] = {}
        self._sequence = 0
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
            self._order[table] = {}

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _undo_log(self) -> Optional[list]:
        return getattr(self._local, "undo", None)

    def _remember(self, table: str, record_id: str) -> None:
        undo = self._undo_log()
        if undo is not None:
            undo.append((
                table, record_id,
                self._data[table].get(record_id),
                self._order[table].get(record_id),
            ))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            if record_id not in self._order[table]:
                self._sequence += 1
                created_at = data.get("created_at") or isoformat(utcnow())
                self._order[table][record_id] = (str(created_at), self._sequence)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def _ordered(self, table: str, reverse: bool = False) -> List[Dict[str, Any]]:
        order = self._order[table]
        ids = sorted(self._data[table], key=lambda rid: order[rid], reverse=reverse)
        return [self._data[table][rid] for rid in ids]

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._ordered(table)]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                del self._order[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._ordered(table)
                if _matches(record, filters)
            ]

    def find_page(self, table: str, filters: Dict[str, Any],
                  offset: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        with self._lock:
            self._ensure_table(table)
            matched = [r for r in self._ordered(table, reverse=True) if _matches(r, filters)]
            page = matched[offset:offset + limit]
            return [self._copy(record) for record in page], len(matched)

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return len(self._data[table])
            return sum(1 for r in self._data[table].values() if _matches(r, filters))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            self._order[table] = {}

    def begin_transaction(self) -> None:
        self._lock.acquire()
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._local.undo = []
        self._local.depth = depth + 1

    def commit(self) -> None:
        self._end_transaction(rollback=False)

    def rollback(self) -> None:
        self._end_transaction(rollback=True)

    def _end_transaction(self, rollback: bool) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            return
        try:
            self._local.depth = depth - 1
            if depth > 1:
                return
            undo = self._local.undo
            self._local.undo = None
            if rollback:
                for table, record_id, record, order in reversed(undo):
                    if record is None:
                        self._data[table].pop(record_id, None)
                        self._order[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record
                        self._order[table][record_id] = order
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Known tables get real columns for their foreign keys and lookup fields
    (see ``TABLE_COLUMNS``); the full record is kept as JSON. File databases
    use one connection per thread in WAL mode and ``BEGIN IMMEDIATE`` for
    units of work, so a read inside ``atomic()`` sees the latest committed
    state and concurrent writers queue on the busy timeout. ``:memory:``
    databases share a single connection serialized by a lock.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 30.0):
        super().__init__()
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._lock = threading.RLock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._tables: set = set()
        self._shared: Optional[sqlite3.Connection] = None

        if self.db_path == ":memory:":
            self._shared = self._connect()

        with self._guard():
            conn = self._conn()
            if self._shared is None:
                conn.execute("PRAGMA journal_mode = WAL")
            for table in TABLE_COLUMNS:
                self._ensure_table(table)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            check_same_thread=False,
            isolation_level=None,  # Transactions are issued explicitly
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA synchronous = NORMAL")
        with self._lock:
            self._connections.append(conn)
        return conn

    def _conn(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    @contextmanager
    def _guard(self):
        if self._shared is not None:
            with self._lock:
                yield
        else:
            yield

    def _columns(self, table: str) -> Dict[str, Optional[str]]:
        return TABLE_COLUMNS.get(table, {})

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        columns = self._columns(table)
        column_sql = "".join(
            f",\n                {name} TEXT"
            + (f" REFERENCES {target}(id)" if target else "")
            for name, target in columns.items()
        )
        conn = self._conn()
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL{column_sql}
            )
        """)
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at, seq)
        """)
        for name in columns:
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{name}
                ON {table}({name})
            """)
        self._tables.add(table)

    def _where(self, table: str, filters: Dict[str, Any]) -> Tuple[str, list, Dict[str, Any]]:
        """Split filters into SQL conditions on real columns and JSON leftovers"""
        columns = self._columns(table)
        conditions, params, leftover = [], [], {}
        for key, value in filters.items():
            if key in columns and (value is None or isinstance(value, str)):
                if value is None:
                    conditions.append(f"{key} IS NULL")
                else:
                    conditions.append(f"{key} = ?")
                    params.append(value)
            else:
                leftover[key] = value
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params, leftover

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self._ensure_table(table)
            now = isoformat(utcnow())
            created_at = str(data.get("created_at") or now)
            columns = list(self._columns(table))
            values = [data.get(name) for name in columns]
            names = ", ".join(["id", "data", "created_at", "updated_at"] + columns)
            placeholders = ", ".join("?" for _ in range(4 + len(columns)))
            updates = ", ".join(
                f"{name} = excluded.{name}" for name in ["data", "updated_at"] + columns
            )
            try:
                self._conn().execute(f"""
                    INSERT INTO {table} ({names})
                    VALUES ({placeholders})
                    ON CONFLICT(id) DO UPDATE SET {updates}
                """, [record_id, json.dumps(data, default=str), created_at, now] + values)
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Integrity violation on {table}: {e}") from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            row = self._conn().execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            try:
                cursor = self._conn().execute(
                    f"DELETE FROM {table} WHERE id = ?", (record_id,)
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"{table}:{record_id} is still referenced") from e
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._guard():
            self._ensure_table(table)
            row = self._conn().execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._guard():
            self._ensure_table(table)
            where, params, leftover = self._where(table, filters)
            rows = self._conn().execute(
                f"SELECT data FROM {table} {where} ORDER BY created_at, seq", params
            ).fetchall()
            records = [json.loads(row['data']) for row in rows]
            return [r for r in records if _matches(r, leftover)]

    def find_page(self, table: str, filters: Dict[str, Any],
                  offset: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        with self._guard():
            self._ensure_table(table)
            where, params, leftover = self._where(table, filters)
            conn = self._conn()
            if leftover:
                rows = conn.execute(
                    f"SELECT data FROM {table} {where} ORDER BY created_at DESC, seq DESC",
                    params,
                ).fetchall()
                matched = [r for r in (json.loads(row['data']) for row in rows)
                           if _matches(r, leftover)]
                return matched[offset:offset + limit], len(matched)

            total = conn.execute(
                f"SELECT COUNT(*) AS count FROM {table} {where}", params
            ).fetchone()['count']
            rows = conn.execute(
                f"SELECT data FROM {table} {where} "
                f"ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return [json.loads(row['data']) for row in rows], total

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        if filters:
            where, params, leftover = self._where(table, filters)
            if leftover:
                return len(self.find(table, filters))
        else:
            where, params = "", []
        with self._guard():
            self._ensure_table(table)
            return self._conn().execute(
                f"SELECT COUNT(*) AS count FROM {table} {where}", params
            ).fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard():
            self._ensure_table(table)
            self._conn().execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a write transaction (outermost call only)"""
        if self._shared is not None:
            self._lock.acquire()
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            try:
                self._conn().execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if self._shared is not None:
                    self._lock.release()
                raise ConflictError(f"Could not start write transaction: {e}") from e
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Commit current transaction"""
        self._end_transaction("COMMIT")

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._end_transaction("ROLLBACK")

    def _end_transaction(self, statement: str) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            return
        try:
            self._local.depth = depth - 1
            if depth == 1:
                conn = self._conn()
                try:
                    conn.execute(statement)
                except sqlite3.Error:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
        finally:
            if self._shared is not None:
                self._lock.release()

    def close(self) -> None:
        """Close all SQLite connections"""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
            self._shared = None
            self._local = threading.local()


def create_storage(database_url: str, busy_timeout: float = 30.0) -> StorageInterface:
    """Build a storage backend from a URL (memory://, sqlite://, sqlite:///path)"""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", busy_timeout=busy_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
