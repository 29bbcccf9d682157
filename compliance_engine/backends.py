"""
Record stores that execute compiled label filters.

Each store owns its native query form: it compiles filters with the matching
compiler, builds stream lookups, and runs queries against a named collection.
Failures are raised as StoreUnavailableError or QueryFailedError and are
never retried here.
"""

import logging
import sqlite3
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .compiler import LABEL_FIELD_PREFIX, MongoCompiler, SqlCompiler, SqlQuery
from .errors import QueryFailedError, StoreUnavailableError
from .models import Filter, Record, parse_timestamp

logger = logging.getLogger(__name__)


class RecordStore:
    """Interface of a record store used by the compliance service."""

    def compile(self, label_filter: Filter) -> Any:
        """Compile a label filter into this store's native query."""
        raise NotImplementedError

    def stream_query(self, stream_id: str) -> Any:
        """Build a native query matching every record of one stream."""
        raise NotImplementedError

    def find(
        self,
        query: Any,
        collection: str,
        interval: Optional[timedelta] = None,
        timeout: Optional[float] = None,
    ) -> List[Record]:
        """Run a native query against a collection.

        Args:
            query: A query produced by compile() or stream_query()
            collection: Name of the collection or table family to search
            interval: Aggregation interval the caller will bucket by
            timeout: Seconds the call may block before failing, None for the
                store default

        Returns:
            The matching records, in any order

        Raises:
            StoreUnavailableError: If the store cannot be reached
            QueryFailedError: If the query cannot be executed
        """
        raise NotImplementedError


class MemoryRecordStore(RecordStore):
    """Document-style store holding records in memory.

    Evaluates the query dictionaries produced by MongoCompiler: equality,
    '$eq', '$ne', '$and' and '$or' over dotted field paths. As in a document
    database, '$ne' also matches records that do not carry the field.
    """

    def __init__(
        self,
        collections: Optional[Dict[str, Iterable[Record]]] = None,
        strict: bool = False,
    ):
        self._compiler = MongoCompiler(strict=strict)
        self._lock = threading.RLock()
        self._collections: Dict[str, List[Record]] = {
            name: list(records) for name, records in (collections or {}).items()
        }

    def add(self, collection: str, records: Iterable[Record]) -> None:
        """Append records to a collection, creating it if needed."""
        with self._lock:
            self._collections.setdefault(collection, []).extend(records)

    def compile(self, label_filter: Filter) -> Dict[str, Any]:
        return self._compiler.compile(label_filter)

    def stream_query(self, stream_id: str) -> Dict[str, Any]:
        return {'streamId': stream_id}

    def find(
        self,
        query: Dict[str, Any],
        collection: str,
        interval: Optional[timedelta] = None,
        timeout: Optional[float] = None,
    ) -> List[Record]:
        # In-process evaluation never blocks; timeout is unused
        logger.debug(f"Querying in-memory collection '{collection}' (interval={interval}): {query}")
        with self._lock:
            records = list(self._collections.get(collection, []))
        return [r for r in records if self._matches(r.to_document(), query)]

    def _get_field_value(self, document: Dict[str, Any], field_path: str) -> Optional[Any]:
        """Get a field value from a document, supporting dotted field paths.

        Label keys may themselves contain dots ('app.tier'), so everything
        after the 'labels.' prefix is looked up as a single key.
        """
        if field_path.startswith(LABEL_FIELD_PREFIX):
            return (document.get('labels') or {}).get(field_path[len(LABEL_FIELD_PREFIX):])

        current: Any = document
        for part in field_path.split('.'):
            if not isinstance(current, dict):
                return None
            current = current.get(part)
            if current is None:
                return None
        return current

    def _matches(self, document: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in query.items():
            if key == '$and':
                if not all(self._matches(document, sub) for sub in expected):
                    return False
            elif key == '$or':
                if not any(self._matches(document, sub) for sub in expected):
                    return False
            elif key.startswith('$'):
                raise QueryFailedError(f"Unsupported query operator: {key}")
            elif not self._match_field(self._get_field_value(document, key), expected):
                return False
        return True

    def _match_field(self, value: Any, expected: Any) -> bool:
        if not isinstance(expected, dict):
            return value == expected

        for op, operand in expected.items():
            if op == '$eq':
                if value != operand:
                    return False
            elif op == '$ne':
                if value == operand:
                    return False
            else:
                raise QueryFailedError(f"Unsupported field operator: {op}")
        return True


class SqliteRecordStore(RecordStore):
    """Relational store backed by SQLite.

    Schema:
        records(id, collection, stream_id, title, status, collected)
        record_labels(record_id, name, value)

    A connection is opened per call, so one instance can be shared across
    threads. A timeout passed to find() bounds both the wait for database
    locks and the execution of the query itself.
    """

    DEFAULT_TIMEOUT = 5.0
    # VM instructions between deadline checks
    PROGRESS_STEPS = 1000

    def __init__(self, db_path: str | Path, strict: bool = False):
        """Initialize the store and create its tables if needed.

        Args:
            db_path: Path to the SQLite database file
            strict: Raise on unsupported filter operators

        Raises:
            StoreUnavailableError: If the database cannot be opened
        """
        self.db_path = Path(db_path)
        self._compiler = SqlCompiler(strict=strict)
        self._init_database()

    def _connect(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT
        try:
            return sqlite3.connect(self.db_path, timeout=timeout)
        except sqlite3.Error as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            raise StoreUnavailableError(f"Cannot open database {self.db_path}: {e}") from e

    def _init_database(self) -> None:
        """Create tables and indexes."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    stream_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT '',
                    collected TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_records_stream
                ON records (collection, stream_id, collected);

                CREATE TABLE IF NOT EXISTS record_labels (
                    record_id INTEGER NOT NULL REFERENCES records(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (record_id, name)
                );
            ''')
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreUnavailableError(f"Cannot initialize database {self.db_path}: {e}") from e
        finally:
            conn.close()
        logger.info(f"Database initialized at {self.db_path}")

    def insert(self, collection: str, records: Iterable[Record]) -> int:
        """Insert records and their labels into a collection.

        Returns:
            Number of records inserted

        Raises:
            QueryFailedError: If the insert fails
        """
        conn = self._connect()
        count = 0
        try:
            cursor = conn.cursor()
            for record in records:
                cursor.execute(
                    'INSERT INTO records (collection, stream_id, title, status, collected) '
                    'VALUES (?, ?, ?, ?, ?)',
                    (collection, record.stream_id, record.title, record.status,
                     record.timestamp.isoformat()),
                )
                record_id = cursor.lastrowid
                cursor.executemany(
                    'INSERT INTO record_labels (record_id, name, value) VALUES (?, ?, ?)',
                    [(record_id, name, value) for name, value in record.labels.items()],
                )
                count += 1
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise QueryFailedError(f"Failed to insert records into '{collection}': {e}") from e
        finally:
            conn.close()
        return count

    def compile(self, label_filter: Filter) -> SqlQuery:
        return self._compiler.compile(label_filter)

    def stream_query(self, stream_id: str) -> SqlQuery:
        return SqlQuery('r.stream_id = ?', [stream_id])

    def find(
        self,
        query: SqlQuery,
        collection: str,
        interval: Optional[timedelta] = None,
        timeout: Optional[float] = None,
    ) -> List[Record]:
        sql = (
            'SELECT r.id, r.stream_id, r.title, r.status, r.collected, rl.name, rl.value '
            'FROM records r LEFT JOIN record_labels rl ON rl.record_id = r.id '
            f'WHERE r.collection = ? AND ({query.clause}) '
            'ORDER BY r.id'
        )
        logger.debug(
            f"Querying '{collection}' (interval={interval}, timeout={timeout}): "
            f"{query.clause} {query.params}"
        )

        conn = self._connect(timeout)
        if timeout is not None:
            deadline = time.monotonic() + timeout
            # A true return value interrupts the running statement
            conn.set_progress_handler(lambda: time.monotonic() > deadline, self.PROGRESS_STEPS)
        try:
            rows = conn.execute(sql, [collection, *query.params]).fetchall()
        except sqlite3.Error as e:
            if timeout is not None and time.monotonic() > deadline:
                logger.error(f"Query against '{collection}' exceeded its {timeout}s timeout")
                raise QueryFailedError(
                    f"Query against '{collection}' timed out after {timeout}s"
                ) from e
            logger.error(f"Query against '{collection}' failed: {e}")
            raise QueryFailedError(f"Query against '{collection}' failed: {e}") from e
        finally:
            conn.close()

        records: Dict[int, Record] = {}
        for row_id, stream_id, title, status, collected, name, value in rows:
            record = records.get(row_id)
            if record is None:
                record = Record(
                    stream_id=stream_id,
                    timestamp=parse_timestamp(collected),
                    status=status,
                    title=title,
                    id=str(row_id),
                )
                records[row_id] = record
            if name is not None:
                record.labels[name] = value
        return list(records.values())
