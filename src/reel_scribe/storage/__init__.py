"""Persistence for sessions and filesystem layout helpers."""

from .db import DatabaseError, SQLiteDatabase
from .paths import PathsConfig, build_paths
from .repository import (
    InMemorySessionRepository,
    SessionRepository,
    SQLiteSessionRepository,
    build_repository,
)

__all__ = [
    "DatabaseError",
    "InMemorySessionRepository",
    "PathsConfig",
    "SQLiteDatabase",
    "SQLiteSessionRepository",
    "SessionRepository",
    "build_paths",
    "build_repository",
]
