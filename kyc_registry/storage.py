"""
Storage Backend Module

The registry keeps each collection (banks, customers, KYC requests, vote
markers, registry state, audit events) as a table of JSON documents keyed by
identifier. Records that carry an integer "sequence" (audit events) are also
indexed on it, so the head of an append-only table is found without a scan.

Two backends: in-memory (testing) with an undo log for transactions, and
SQLite (persistence).
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _sequence_of(data: Dict[str, Any]) -> Optional[int]:
    value = data.get('sequence')
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


class StorageInterface(ABC):
    """
    Abstract interface for storage backends.

    rollback_generation counts rollbacks that discarded at least one write.
    Callers caching derived state (the audit chain head) compare it to know
    when their cache may be stale.
    """

    rollback_generation: int = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records in insertion order"""
        pass

    @abstractmethod
    def load_latest(self, table: str) -> Optional[Dict[str, Any]]:
        """Load the record with the highest "sequence" value, if any"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
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


_MISSING = object()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A transaction records the previous value of every key it writes; rollback
    replays that undo log backwards, so its cost follows the size of the
    transaction rather than the size of the store.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._undo: Optional[List[Tuple[str, str, Any]]] = None
        self.rollback_generation = 0

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def _remember(self, table: str, record_id: str) -> None:
        if self._undo is not None:
            self._undo.append((table, record_id, self._table(table).get(record_id, _MISSING)))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._remember(table, record_id)
            # Stored documents are private copies, never shared with callers
            self._table(table)[record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(json.dumps(record)) for record in self._table(table).values()]

    def load_latest(self, table: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            latest = None
            for record in self._table(table).values():
                sequence = _sequence_of(record)
                if sequence is not None and (latest is None or sequence > _sequence_of(latest)):
                    latest = record
            return json.loads(json.dumps(latest)) if latest is not None else None

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._table(table):
                return False
            self._remember(table, record_id)
            del self._table(table)[record_id]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                json.loads(json.dumps(record))
                for record in self._table(table).values()
                if all(key in record and record[key] == value for key, value in filters.items())
            ]

    def begin_transaction(self) -> None:
        with self._lock:
            if self._undo is None:
                self._undo = []

    def commit(self) -> None:
        with self._lock:
            self._undo = None

    def rollback(self) -> None:
        with self._lock:
            if self._undo is None:
                return
            undo, self._undo = self._undo, None
            for table, record_id, previous in reversed(undo):
                if previous is _MISSING:
                    self._table(table).pop(record_id, None)
                else:
                    self._table(table)[record_id] = previous
            if undo:
                self.rollback_generation += 1

    @property
    def pending_writes(self) -> int:
        """Number of undo entries held by the open transaction"""
        with self._lock:
            return len(self._undo) if self._undo is not None else 0

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage: one table per collection with the document in a JSON
    column and an indexed integer "seq" column mirroring the document's
    sequence number. Upserts keep the original rowid, so rowid order is
    insertion order.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation so transactions are controlled manually
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._dirty = False
        self._tables: set = set()
        self.rollback_generation = 0

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                seq INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_seq ON {table}(seq)")
        if not self._in_transaction:
            self._connection.commit()
        self._tables.add(table)

    def _write(self, table: str, sql: str, params: tuple) -> sqlite3.Cursor:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(sql, params)
            if self._in_transaction:
                self._dirty = True
            else:
                self._connection.commit()
            return cursor

    def _query(self, table: str, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params).fetchall()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._write(table, f"""
            INSERT INTO {table} (id, data, seq, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                seq = excluded.seq,
                updated_at = excluded.updated_at
        """, (record_id, json.dumps(data, default=str), _sequence_of(data), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,))
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        rows = self._query(table, f"SELECT data FROM {table} ORDER BY rowid")
        return [json.loads(row['data']) for row in rows]

    def load_latest(self, table: str) -> Optional[Dict[str, Any]]:
        rows = self._query(table, f"""
            SELECT data FROM {table} WHERE seq IS NOT NULL ORDER BY seq DESC LIMIT 1
        """)
        return json.loads(rows[0]['data']) if rows else None

    def delete(self, table: str, record_id: str) -> bool:
        cursor = self._write(table, f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        return bool(self._query(table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)))

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) IS ?")
            params.extend([f"$.{key}", value])
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._query(table, f"SELECT data FROM {table} {where} ORDER BY rowid", tuple(params))
        return [json.loads(row['data']) for row in rows]

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # sqlite3 opens the transaction implicitly on the first write
                self._in_transaction = True
                self._dirty = False

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if not self._in_transaction:
                return
            self._connection.rollback()
            self._in_transaction = False
            # Tables created inside the transaction are gone again
            self._tables.clear()
            if self._dirty:
                self.rollback_generation += 1
            self._dirty = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Args:
        database_url: "memory" for in-memory storage, or "sqlite:///<path>"
            ("sqlite://" or "sqlite:///:memory:" for an in-memory SQLite database)
    """
    if database_url in ("memory", "memory://"):
        return InMemoryStorage()

    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")

    raise ValueError(f"Unsupported database URL: {database_url}")
