"""A small persistent store of named buckets holding ordered byte keys.

Keys in a bucket are kept in byte order, so a scan from a start key walks
them the way an on-disk B+tree cursor would. Data lives in one SQLite file;
every read or write happens inside a transaction opened with
:meth:`BucketDB.view` or :meth:`BucketDB.update`.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS buckets (name BLOB PRIMARY KEY)",
    "CREATE TABLE IF NOT EXISTS items ("
    " bucket BLOB NOT NULL, key BLOB NOT NULL, value BLOB NOT NULL,"
    " PRIMARY KEY (bucket, key))",
)


class BucketError(Exception):
    """A bucket operation could not be carried out."""


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


class BucketDB:
    """A database file of buckets."""

    def __init__(self, path: str | os.PathLike[str], timeout: float = 1.0) -> None:
        try:
            conn = sqlite3.connect(
                os.fspath(path),
                timeout=timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            for statement in _SCHEMA:
                conn.execute(statement)
        except sqlite3.Error as exc:
            raise BucketError(f"cannot open {os.fspath(path)}: {exc}") from exc
        self._conn: sqlite3.Connection | None = conn
        self._lock = threading.RLock()
        self._active = False

    def close(self) -> None:
        """Close the database; later use raises BucketError."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> BucketDB:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def update(self) -> Iterator[Transaction]:
        """Open a read-write transaction, committed unless the block raises."""
        with self._transaction(writable=True) as tx:
            yield tx

    @contextmanager
    def view(self) -> Iterator[Transaction]:
        """Open a read-only transaction."""
        with self._transaction(writable=False) as tx:
            yield tx

    @contextmanager
    def _transaction(self, writable: bool) -> Iterator[Transaction]:
        with self._lock:
            if self._conn is None:
                raise BucketError("database not open")
            if self._active:
                raise BucketError("a transaction is already open")
            conn = self._conn
            try:
                conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")
            except sqlite3.OperationalError as exc:
                raise BucketError(f"cannot begin transaction: {exc}") from exc
            self._active = True
            tx = Transaction(conn, writable)
            try:
                yield tx
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT" if writable else "ROLLBACK")
            finally:
                tx._closed = True
                self._active = False


class Transaction:
    """A transaction over the buckets of a database."""

    def __init__(self, conn: sqlite3.Connection, writable: bool) -> None:
        self._conn = conn
        self.writable = writable
        self._closed = False

    def _check(self, write: bool = False) -> sqlite3.Connection:
        if self._closed:
            raise BucketError("transaction closed")
        if write and not self.writable:
            raise BucketError("transaction not writable")
        return self._conn

    def _exists(self, name: bytes) -> bool:
        row = self._check().execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        return row is not None

    def bucket(self, name: bytes | str) -> Bucket | None:
        """Return the named bucket, or None if it does not exist."""
        key = _to_bytes(name)
        return Bucket(self, key) if self._exists(key) else None

    def create_bucket(self, name: bytes | str) -> Bucket:
        """Create a bucket; raise BucketError if it already exists."""
        key = _to_bytes(name)
        conn = self._check(write=True)
        if not key:
            raise BucketError("bucket name required")
        if self._exists(key):
            raise BucketError("bucket already exists")
        conn.execute("INSERT INTO buckets (name) VALUES (?)", (key,))
        return Bucket(self, key)

    def create_bucket_if_not_exists(self, name: bytes | str) -> Bucket:
        """Return the named bucket, creating it when missing."""
        key = _to_bytes(name)
        conn = self._check(write=True)
        if not key:
            raise BucketError("bucket name required")
        conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (key,))
        return Bucket(self, key)

    def delete_bucket(self, name: bytes | str) -> None:
        """Delete a bucket and its contents; raise BucketError if missing."""
        key = _to_bytes(name)
        conn = self._check(write=True)
        if not self._exists(key):
            raise BucketError("bucket not found")
        conn.execute("DELETE FROM items WHERE bucket = ?", (key,))
        conn.execute("DELETE FROM buckets WHERE name = ?", (key,))

    def bucket_names(self) -> list[bytes]:
        """Names of all buckets in byte order."""
        rows = self._check().execute("SELECT name FROM buckets ORDER BY name").fetchall()
        return [bytes(row[0]) for row in rows]


class Bucket:
    """A bucket of ordered byte keys within a transaction."""

    def __init__(self, tx: Transaction, name: bytes) -> None:
        self._tx = tx
        self.name = name

    def get(self, key: bytes | str) -> bytes | None:
        """Return the value stored under key, or None."""
        row = self._tx._check().execute(
            "SELECT value FROM items WHERE bucket = ? AND key = ?",
            (self.name, _to_bytes(key)),
        ).fetchone()
        return bytes(row[0]) if row is not None else None

    def put(self, key: bytes | str, value: bytes | str) -> None:
        """Store value under key, replacing any earlier value."""
        raw_key = _to_bytes(key)
        conn = self._tx._check(write=True)
        if not raw_key:
            raise BucketError("key required")
        conn.execute(
            "INSERT OR REPLACE INTO items (bucket, key, value) VALUES (?, ?, ?)",
            (self.name, raw_key, _to_bytes(value)),
        )

    def delete(self, key: bytes | str) -> None:
        """Remove key; a missing key is not an error."""
        conn = self._tx._check(write=True)
        conn.execute(
            "DELETE FROM items WHERE bucket = ? AND key = ?", (self.name, _to_bytes(key))
        )

    def items(self, start: bytes | str | None = None) -> Iterator[tuple[bytes, bytes]]:
        """Pairs in key order, from the first key not below ``start``.

        The pairs are read up front, so the bucket may be changed while iterating.
        """
        conn = self._tx._check()
        if start is None:
            rows = conn.execute(
                "SELECT key, value FROM items WHERE bucket = ? ORDER BY key", (self.name,)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT key, value FROM items WHERE bucket = ? AND key >= ? ORDER BY key",
                (self.name, _to_bytes(start)),
            ).fetchall()
        return iter([(bytes(k), bytes(v)) for k, v in rows])

    def keys(self) -> list[bytes]:
        """All keys in byte order."""
        return [key for key, _ in self.items()]