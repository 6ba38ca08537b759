"""Embedded key-value store on a single SQLite file.

One physical table holds several logical ones; keys carry a type prefix
(``user:``, ``local_collection:``, ``file:``). Values are opaque bytes.
At most one transaction is open per store and transactions do not nest.
"""
from __future__ import annotations

import logging
import sqlite3
import threading

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple

from efscloud.utils.errors import StoreError, TransactionError

logger = logging.getLogger(__name__)

KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key   TEXT PRIMARY KEY,
    value BLOB NOT NULL
)
"""


class KVStore:

    def __init__(self, path: Path | str = ":memory:"):
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = str(path)
        # autocommit mode; transactions are opened explicitly with BEGIN
        self._conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
        self._conn.execute(KV_SCHEMA)
        self._lock = threading.RLock()
        self._in_tx = False

    # ---- transactions ----

    @property
    def in_transaction(self) -> bool:
        return self._in_tx

    def begin(self) -> None:
        """Open a transaction owned by the calling thread.

        The store lock stays held until commit() or discard(), so other
        threads block on every access instead of joining the transaction.
        """
        self._lock.acquire()
        if self._in_tx:
            self._lock.release()
            raise TransactionError("a transaction is already open")
        try:
            self._exec("BEGIN IMMEDIATE")
        except StoreError:
            self._lock.release()
            raise
        self._in_tx = True

    def commit(self) -> None:
        with self._lock:
            if not self._in_tx:
                raise TransactionError("no open transaction to commit")
            # on failure the transaction stays marked open so discard() rolls it back
            self._exec("COMMIT")
            self._in_tx = False
            self._lock.release()

    def discard(self) -> None:
        """Roll back the open transaction. Safe to call twice or after a failed commit."""
        with self._lock:
            if not self._in_tx:
                return
            self._in_tx = False
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.OperationalError:
                # no transaction was active on the connection any more
                pass
            finally:
                self._lock.release()

    @contextmanager
    def transaction(self) -> Iterator["KVStore"]:
        self.begin()
        try:
            yield self
            self.commit()
        finally:
            self.discard()

    # ---- CRUD ----

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            row = self._exec("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._exec("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, sqlite3.Binary(value)))

    def delete(self, key: str) -> None:
        with self._lock:
            self._exec("DELETE FROM kv WHERE key = ?", (key,))

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._exec("SELECT 1 FROM kv WHERE key = ?", (key,)).fetchone() is not None

    def keys(self, prefix: str) -> list[str]:
        with self._lock:
            rows = self._exec(
                "SELECT key FROM kv WHERE key >= ? AND key < ? ORDER BY key",
                (prefix, prefix + "\U0010ffff"),
            ).fetchall()
        return [r[0] for r in rows]

    def iterate(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        """Lazily yield (key, value) for a prefix.

        Keys are snapshotted when iteration starts and values are read one at
        a time, so callers may mutate the store between steps: deleted entries
        are skipped and every surviving entry is visited once.
        """
        for key in self.keys(prefix):
            value = self.get(key)
            if value is not None:
                yield key, value

    def close(self) -> None:
        with self._lock:
            self.discard()
            self._conn.close()

    def _exec(self, sql: str, args: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, args)
        except sqlite3.Error as e:
            raise StoreError(f"local store error: {e}") from e
