"""
Record Store - persistent keyed collections for the learning engine

Collections hold plain dict records. Every operation runs inside a single
transaction unless the caller groups several of them with `batch()`.

Two on-disk stores exist:
- SqliteStore keeps one row per record with `symbol`/`timestamp` columns
  indexed, so scans by symbol or time window never touch the whole database.
  This is the store for the learning engine, which grows by one prediction per
  symbol per cycle.
- JsonFileStore serialises the whole document behind an exclusive lock file and
  writes through a temp file + os.replace so a crash never leaves a
  half-written file behind. Fine for small documents such as preferences.
"""

import copy
import fcntl
import json
import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

TimeRange = Tuple[int, int]


def _in_range(row: Dict[str, Any], timestamp_range: Optional[TimeRange]) -> bool:
    if timestamp_range is None:
        return True
    ts = row.get('timestamp')
    low, high = timestamp_range
    return ts is not None and low < ts < high


class RecordStore:
    """Keyed collections with append, index scan, get/put and range delete."""

    _batch = None

    def initialize(self) -> None:
        with self._transaction():
            pass

    @contextmanager
    def batch(self):
        """Run every operation inside the block as one transaction."""
        if self._batch is not None:
            yield self
            return
        with self._transaction() as data:
            self._batch = data
            try:
                yield self
            finally:
                self._batch = None

    def append(self, collection: str, record: Dict[str, Any]) -> int:
        """Insert with an auto-increment id; returns the assigned id."""
        with self._transaction() as data:
            table = self._table(data, collection)
            record_id = table['next_id']
            table['next_id'] = record_id + 1
            row = dict(record)
            row['id'] = record_id
            table['rows'][str(record_id)] = row
        return record_id

    def scan(self, collection: str, index: Optional[str] = None, value: Any = None,
             timestamp_range: Optional[TimeRange] = None) -> List[Dict[str, Any]]:
        """Return every record, or those whose `index` field equals `value`.

        `timestamp_range` further keeps records with low < timestamp < high.
        """
        with self._transaction(write=False) as data:
            rows = self._table(data, collection)['rows'].values()
            return [
                copy.deepcopy(r) for r in rows
                if (index is None or r.get(index) == value) and _in_range(r, timestamp_range)
            ]

    def get(self, collection: str, key: Any) -> Optional[Dict[str, Any]]:
        with self._transaction(write=False) as data:
            row = self._table(data, collection)['rows'].get(str(key))
            return copy.deepcopy(row) if row is not None else None

    def put(self, collection: str, key: Any, record: Dict[str, Any]) -> None:
        with self._transaction() as data:
            self._table(data, collection)['rows'][str(key)] = copy.deepcopy(dict(record))

    def delete(self, collection: str, key: Any) -> bool:
        with self._transaction() as data:
            return self._table(data, collection)['rows'].pop(str(key), None) is not None

    def delete_range(self, collection: str, index: str, upper_bound: Any) -> int:
        """Delete records whose `index` field is <= upper_bound; returns the count."""
        with self._transaction() as data:
            rows = self._table(data, collection)['rows']
            doomed = [k for k, r in rows.items() if r.get(index) is not None and r[index] <= upper_bound]
            for key in doomed:
                del rows[key]
        return len(doomed)

    def destroy(self) -> None:
        raise NotImplementedError

    @staticmethod
    def _table(data: Dict[str, Any], collection: str) -> Dict[str, Any]:
        return data.setdefault(collection, {'next_id': 1, 'rows': {}})

    def _transaction(self, write: bool = True):
        """Context manager yielding the mutable database dict."""
        raise NotImplementedError


class MemoryStore(RecordStore):
    """Process-local store; used for tests and ephemeral runs."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[Dict[str, Any]]:
        yield self._data

    def destroy(self) -> None:
        self._data = {}


def _remove_files(paths) -> None:
    for path in paths:
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f'Delete of {path} blocked, continuing: {e}')


class SqliteStore(RecordStore):
    """
    SQLite-backed store. Records are JSON bodies; `symbol` and `timestamp`
    are copied into indexed columns. Connection-per-call, or one shared
    connection for the length of a `batch()`.
    """

    INDEXED = ('symbol', 'timestamp')

    def __init__(self, path: str):
        self.path = path
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        if not self._schema_ready:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    collection  TEXT NOT NULL,
                    key         TEXT NOT NULL,
                    symbol      TEXT,
                    timestamp   INTEGER,
                    body        TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                );
                CREATE INDEX IF NOT EXISTS idx_records_symbol ON records(collection, symbol, timestamp);
                CREATE INDEX IF NOT EXISTS idx_records_timestamp ON records(collection, timestamp);

                CREATE TABLE IF NOT EXISTS sequences (
                    collection  TEXT PRIMARY KEY,
                    next_id     INTEGER NOT NULL
                );
            """)
            self._schema_ready = True
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._batch is not None:
            yield self._batch
            return
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def batch(self):
        if self._batch is not None:
            yield self
            return
        with self._connection() as conn:
            self._batch = conn
            try:
                yield self
            finally:
                self._batch = None

    def initialize(self) -> None:
        with self._connection():
            pass

    @staticmethod
    def _write(conn: sqlite3.Connection, collection: str, key: Any, record: Dict[str, Any]) -> None:
        timestamp = record.get('timestamp')
        conn.execute(
            """INSERT INTO records (collection, key, symbol, timestamp, body) VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(collection, key) DO UPDATE SET
                   symbol = excluded.symbol, timestamp = excluded.timestamp, body = excluded.body""",
            (collection, str(key), record.get('symbol'),
             int(timestamp) if timestamp is not None else None, json.dumps(record)),
        )

    def append(self, collection: str, record: Dict[str, Any]) -> int:
        with self._connection() as conn:
            found = conn.execute("SELECT next_id FROM sequences WHERE collection = ?", (collection,)).fetchone()
            record_id = found[0] if found else 1
            conn.execute(
                "INSERT OR REPLACE INTO sequences (collection, next_id) VALUES (?, ?)",
                (collection, record_id + 1),
            )
            row = dict(record)
            row['id'] = record_id
            self._write(conn, collection, record_id, row)
        return record_id

    def scan(self, collection: str, index: Optional[str] = None, value: Any = None,
             timestamp_range: Optional[TimeRange] = None) -> List[Dict[str, Any]]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        if index in self.INDEXED:
            clauses.append(f"{index} = ?")
            params.append(value)
        if timestamp_range is not None:
            clauses.append("timestamp > ? AND timestamp < ?")
            params.extend(timestamp_range)
        query = f"SELECT body FROM records WHERE {' AND '.join(clauses)} ORDER BY rowid"
        with self._connection() as conn:
            rows = [json.loads(body) for (body,) in conn.execute(query, params)]
        if index is not None and index not in self.INDEXED:
            rows = [r for r in rows if r.get(index) == value]
        return rows

    def get(self, collection: str, key: Any) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            found = conn.execute(
                "SELECT body FROM records WHERE collection = ? AND key = ?", (collection, str(key))
            ).fetchone()
        return json.loads(found[0]) if found else None

    def put(self, collection: str, key: Any, record: Dict[str, Any]) -> None:
        with self._connection() as conn:
            self._write(conn, collection, key, dict(record))

    def delete(self, collection: str, key: Any) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM records WHERE collection = ? AND key = ?", (collection, str(key)))
        return cursor.rowcount > 0

    def delete_range(self, collection: str, index: str, upper_bound: Any) -> int:
        with self._connection() as conn:
            if index not in self.INDEXED:
                doomed = []
                for key, body in conn.execute("SELECT key, body FROM records WHERE collection = ?", (collection,)):
                    field_value = json.loads(body).get(index)
                    if field_value is not None and field_value <= upper_bound:
                        doomed.append(key)
                conn.executemany(
                    "DELETE FROM records WHERE collection = ? AND key = ?",
                    [(collection, key) for key in doomed],
                )
                return len(doomed)
            cursor = conn.execute(
                f"DELETE FROM records WHERE collection = ? AND {index} IS NOT NULL AND {index} <= ?",
                (collection, upper_bound),
            )
        return cursor.rowcount

    def destroy(self) -> None:
        """Delete the database files. A blocked delete is logged and treated as done."""
        self._schema_ready = False
        _remove_files([self.path, self.path + '-wal', self.path + '-shm'])


class JsonFileStore(RecordStore):
    """Single JSON document on disk, guarded by an fcntl lock file."""

    def __init__(self, path: str):
        self.path = path
        self.lock_file = path + '.lock'

    def _ensure_dir(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.lock_file):
            open(self.lock_file, 'a').close()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f'Record store {self.path} is corrupt, starting empty: {e}')
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, temp_path = tempfile.mkstemp(dir=directory, prefix='.store-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[Dict[str, Any]]:
        if self._batch is not None:
            yield self._batch
            return
        self._ensure_dir()
        with open(self.lock_file, 'r') as lock_fd:
            fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX if write else fcntl.LOCK_SH)
            try:
                data = self._load()
                yield data
                if write:
                    self._save(data)
            finally:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)

    def destroy(self) -> None:
        """Delete the database file. A blocked delete is logged and treated as done."""
        _remove_files([self.path, self.lock_file])
