"""SQLite connection helper used by the session repository."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, cast

__all__ = ["DatabaseError", "SQLiteDatabase"]


class DatabaseError(RuntimeError):
    """Raised when database operations fail."""


class SQLiteDatabase:
    """Opens a short-lived connection per operation; safe to share across worker threads."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self, *, read_only: bool = False) -> Iterator[sqlite3.Connection]:
        mode = "ro" if read_only else "rwc"
        try:
            connection = sqlite3.connect(f"file:{self.db_path}?mode={mode}", uri=True, timeout=30)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Unable to open {self.db_path}: {exc}") from exc
        connection.row_factory = sqlite3.Row

        try:
            yield connection
            if not read_only:
                connection.commit()
        except sqlite3.Error as exc:
            if not read_only:
                connection.rollback()
            raise DatabaseError(str(exc)) from exc
        finally:
            connection.close()

    def executescript(self, script: str) -> None:
        with self.connect() as connection:
            connection.executescript(script)

    def execute(self, sql: str, parameters: Sequence[Any] | None = None) -> int:
        """Execute a modifying statement and return the affected row count."""
        with self.connect() as connection:
            return connection.execute(sql, parameters or []).rowcount

    def fetch_one(self, sql: str, parameters: Sequence[Any] | None = None) -> sqlite3.Row | None:
        with self.connect(read_only=True) as connection:
            row = connection.execute(sql, parameters or []).fetchone()
            return cast(sqlite3.Row | None, row)

    def fetch_all(self, sql: str, parameters: Sequence[Any] | None = None) -> list[sqlite3.Row]:
        with self.connect(read_only=True) as connection:
            rows = connection.execute(sql, parameters or []).fetchall()
            return cast(list[sqlite3.Row], rows)
