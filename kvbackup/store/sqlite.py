"""
SQLite store implementation for kvbackup.

The whole backup lives in one SQLite database file. The collection is a
single table keyed by absolute source path. SQLite provides the atomic
per-transaction reads and writes and serializes concurrent writers; this
module never adds a lock of its own.

Keys are stored as the path's filesystem bytes (``os.fsencode``), so paths
that are not valid UTF-8 round-trip unchanged.
"""

import logging
import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple, Union

from kvbackup.errors import StoreError
from kvbackup.store import BaseStore, Entry

logger = logging.getLogger("kvbackup.store.sqlite")

DEFAULT_COLLECTION = "files"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _missing_table(error: sqlite3.Error) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "no such table" in str(
        error
    )


def _encode_key(key: str) -> bytes:
    return os.fsencode(key)


def _decode_key(raw: Union[bytes, str]) -> str:
    # Rows written by other tools may hold TEXT keys
    if isinstance(raw, str):
        return raw
    return os.fsdecode(bytes(raw))


def _row_entry(row: Tuple) -> Entry:
    key, mtime, level, data = row
    if not isinstance(mtime, int):
        mtime = None
    return Entry(key=_decode_key(key), mtime=mtime, level=level, data=bytes(data))


class SqliteStore(BaseStore):
    """Store backed by a single SQLite database file."""

    def __init__(
        self,
        db_path: Union[str, Path],
        collection: str = DEFAULT_COLLECTION,
        create: bool = True,
        timeout: float = 30.0,
    ):
        """
        Open (or create) the database file.

        Args:
            db_path: Path to the SQLite database file
            collection: Name of the table holding the entries
            create: Create the database file when it does not exist and
                switch it to WAL journaling. Without it the file is only
                opened, and its journal mode is left alone.
            timeout: Seconds a transaction waits on a locked database

        Raises:
            StoreError: If the collection name is invalid or the file cannot
                be opened
        """
        if not _IDENTIFIER.match(collection):
            raise StoreError(f"invalid collection name: {collection!r}")

        self.db_path = Path(db_path)
        self.collection = collection
        self.timeout = timeout

        if not create and not self.db_path.is_file():
            raise StoreError(f"store not found: {self.db_path}")

        # sqlite3 connections are bound to their creating thread by default,
        # so every worker thread gets its own.
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []

        # Open eagerly so that an unusable file fails before any task runs
        conn = self._connection()
        try:
            if create:
                conn.execute("PRAGMA journal_mode=WAL")
            else:
                conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"error opening store {self.db_path}: {e}") from e
        logger.debug(f"Opened store {self.db_path} (collection {collection!r})")

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
            except sqlite3.Error as e:
                raise StoreError(f"error opening store {self.db_path}: {e}") from e
            self._local.conn = conn
            self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def ensure_collection(self) -> None:
        try:
            with self._transaction(write=True) as conn:
                conn.execute(
                    f'CREATE TABLE IF NOT EXISTS "{self.collection}" ('
                    "key BLOB PRIMARY KEY, "
                    "mtime INTEGER, "
                    "level INTEGER NOT NULL, "
                    "data BLOB NOT NULL)"
                )
        except sqlite3.Error as e:
            raise StoreError(
                f"error initialising {self.collection!r} collection: {e}"
            ) from e

    def collection_exists(self) -> bool:
        try:
            row = (
                self._connection()
                .execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                    (self.collection,),
                )
                .fetchone()
            )
        except sqlite3.Error as e:
            raise StoreError(f"error reading store {self.db_path}: {e}") from e
        return row is not None

    def get(self, key: str) -> Optional[Entry]:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    f'SELECT key, mtime, level, data FROM "{self.collection}" '
                    "WHERE key = ?",
                    (_encode_key(key),),
                ).fetchone()
        except sqlite3.Error as e:
            if _missing_table(e):
                return None
            raise StoreError(f"error reading {key!r}: {e}") from e
        if row is None:
            return None
        return _row_entry(row)

    def put(self, entry: Entry) -> None:
        try:
            with self._transaction(write=True) as conn:
                conn.execute(
                    f'INSERT OR REPLACE INTO "{self.collection}" '
                    "(key, mtime, level, data) VALUES (?, ?, ?, ?)",
                    (_encode_key(entry.key), entry.mtime, entry.level, entry.data),
                )
        except sqlite3.Error as e:
            raise StoreError(f"error putting {entry.key!r}: {e}") from e

    def for_each(self, visit: Callable[[Entry], None]) -> None:
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f'SELECT key, mtime, level, data FROM "{self.collection}"'
                )
                for row in cursor:
                    visit(_row_entry(row))
        except sqlite3.Error as e:
            if _missing_table(e):
                logger.debug(f"No {self.collection!r} collection in {self.db_path}")
                return
            raise StoreError(f"error scanning {self.db_path}: {e}") from e

    def keys(self) -> List[str]:
        try:
            rows = (
                self._connection()
                .execute(f'SELECT key FROM "{self.collection}"')
                .fetchall()
            )
        except sqlite3.Error as e:
            if _missing_table(e):
                return []
            raise StoreError(f"error listing {self.db_path}: {e}") from e
        return [_decode_key(row[0]) for row in rows]

    def count(self) -> int:
        try:
            row = (
                self._connection()
                .execute(f'SELECT COUNT(*) FROM "{self.collection}"')
                .fetchone()
            )
        except sqlite3.Error as e:
            if _missing_table(e):
                return 0
            raise StoreError(f"error counting {self.db_path}: {e}") from e
        return row[0]

    def close(self) -> None:
        for conn in self._connections:
            conn.close()
        self._connections = []
        self._local = threading.local()
