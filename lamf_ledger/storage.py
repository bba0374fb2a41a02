"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Records carry a ``version`` counter; ``compare_and_save`` refuses a write when
the stored version moved since the caller read the record.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrentModification


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


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
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> None:
        """
        Save a record only if its stored version equals expected_version

        A record that does not exist yet has version 0.

        Raises:
            ConcurrentModification: If the stored version differs
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
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
        except Exception:
            self.rollback()
            raise

    @staticmethod
    def _check_version(table: str, record_id: str, existing: Optional[Dict[str, Any]], expected_version: int) -> None:
        stored_version = existing.get('version', 0) if existing else 0
        if stored_version != expected_version:
            raise ConcurrentModification(
                f"{table}/{record_id} is at version {stored_version}, expected {expected_version}"
            )


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    A transaction keeps an undo log of the prior value of every record it
    touches and holds the storage lock until it commits or rolls back, so
    other threads never see half-applied writes. Nested transactions fold
    their log into the enclosing one on commit.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._undo: List[Dict[Tuple[str, str], Optional[Dict[str, Any]]]] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        """Record the value a write is about to replace, once per transaction"""
        if self._undo:
            self._undo[-1].setdefault((table, record_id), self._data[table].get(record_id))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> None:
        with self._lock:
            self._ensure_table(table)
            self._check_version(table, record_id, self._data[table].get(record_id), expected_version)
            self._remember(table, record_id)
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._undo.append({})

    def commit(self) -> None:
        if self._undo:
            log = self._undo.pop()
            if self._undo:
                for key, prior in log.items():
                    self._undo[-1].setdefault(key, prior)
            self._lock.release()

    def rollback(self) -> None:
        if self._undo:
            for (table, record_id), prior in self._undo.pop().items():
                if prior is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = prior
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._transaction_depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._transaction_depth > 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)

        # Use INSERT OR REPLACE to handle updates
        self._connection.execute(f"""
            INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
            VALUES (?, ?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                ?)
        """, (record_id, data_json, data.get('version', 0), record_id, now, now))

        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            self._write(table, record_id, data)

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

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            if not self._in_transaction:
                self._connection.commit()
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> None:
        with self._lock:
            self._ensure_table(table)
            self._check_version(table, record_id, self.load(table, record_id), expected_version)
            self._write(table, record_id, data)

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        self._lock.acquire()
        # SQLite with isolation_level='DEFERRED' automatically starts transactions
        # on the first write; we only track nesting
        self._transaction_depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._transaction_depth:
            self._transaction_depth -= 1
            if not self._transaction_depth:
                self._connection.commit()
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._transaction_depth:
            self._transaction_depth -= 1
            if not self._transaction_depth:
                self._connection.rollback()
                # Tables created inside the transaction are gone too
                self._tables.clear()
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` alone is an in-memory SQLite database).
    """
    if url.startswith("memory://"):
        return InMemoryStorage()
    if url.startswith("sqlite://"):
        path = url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported storage URL: {url}")
