from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations


class DBConn:
    """sqlite3 connection in autocommit mode with explicit, nestable transactions.

    Single statements commit on their own. Multi-statement units go through
    ``transaction()``, which takes the write lock up front (``BEGIN IMMEDIATE``)
    so concurrent workers serialize instead of deadlocking on upgrade.
    """

    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self._conn = conn
        self.path = path
        self._depth = 0

    def execute(self, sql: str, params: tuple | list | None = None) -> sqlite3.Cursor:
        return self._conn.execute(sql, params or ())

    def executemany(self, sql: str, seq_of_params) -> sqlite3.Cursor:
        return self._conn.executemany(sql, seq_of_params)

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            self._conn.execute("ROLLBACK")
            raise
        self._depth = 0
        self._conn.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def commit(self) -> None:
        if not self._depth:
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, timeout=30, isolation_level=None, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    apply_migrations(raw)
    return DBConn(raw, path)
