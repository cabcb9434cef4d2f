"""Session repositories: an in-memory store and a SQLite-backed JSON document store."""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..models import MovieSession, utcnow
from ..utils.logging import get_logger
from .db import DatabaseError, SQLiteDatabase
from .paths import build_paths

LOGGER = get_logger(__name__)

__all__ = [
    "InMemorySessionRepository",
    "SQLiteSessionRepository",
    "SessionRepository",
    "build_repository",
]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    movie_title TEXT NOT NULL,
    session_date TEXT NOT NULL,
    status TEXT NOT NULL,
    document TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_date ON sessions (session_date);
"""


@runtime_checkable
class SessionRepository(Protocol):
    def get(self, session_id: str) -> MovieSession | None: ...

    def save(self, session: MovieSession) -> None: ...

    def delete(self, session_id: str) -> bool: ...

    def list_ids(self) -> list[str]: ...


class InMemorySessionRepository:
    """Dictionary-backed repository; stores deep copies so callers cannot alias saved state."""

    def __init__(self) -> None:
        self._sessions: dict[str, MovieSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> MovieSession | None:
        with self._lock:
            stored = self._sessions.get(session_id)
            return copy.deepcopy(stored) if stored is not None else None

    def save(self, session: MovieSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = copy.deepcopy(session)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)


class SQLiteSessionRepository:
    """Persists each session as one JSON document row."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self.database = database
        self.database.executescript(_SCHEMA)

    @classmethod
    def at(cls, db_path: str | Path) -> SQLiteSessionRepository:
        return cls(SQLiteDatabase(db_path))

    def get(self, session_id: str) -> MovieSession | None:
        row = self.database.fetch_one(
            "SELECT document FROM sessions WHERE session_id = ?", [session_id]
        )
        if row is None:
            return None
        try:
            return MovieSession.from_dict(json.loads(row["document"]))
        except (ValueError, KeyError) as exc:
            raise DatabaseError(f"Stored session {session_id} is corrupt: {exc}") from exc

    def save(self, session: MovieSession) -> None:
        document = json.dumps(session.to_dict(), ensure_ascii=False)
        self.database.execute(
            """
            INSERT INTO sessions
                (session_id, movie_title, session_date, status, document, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                movie_title = excluded.movie_title,
                session_date = excluded.session_date,
                status = excluded.status,
                document = excluded.document,
                updated_at = excluded.updated_at
            """,
            [
                session.session_id,
                session.movie_title,
                session.date.isoformat(),
                session.status.value,
                document,
                utcnow().isoformat(),
            ],
        )
        LOGGER.debug("Saved session %s (%s)", session.session_id, session.status.value)

    def delete(self, session_id: str) -> bool:
        return self.database.execute("DELETE FROM sessions WHERE session_id = ?", [session_id]) > 0

    def list_ids(self) -> list[str]:
        rows = self.database.fetch_all(
            "SELECT session_id FROM sessions ORDER BY session_date DESC, session_id"
        )
        return [str(row["session_id"]) for row in rows]


def build_repository(config: Mapping[str, object]) -> SQLiteSessionRepository:
    return SQLiteSessionRepository.at(build_paths(config).sessions_db)
