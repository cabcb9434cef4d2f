"""Global pytest fixtures for Reel-Scribe."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path_factory) -> None:
    """Keep provider keys and data locations of the developer machine out of tests."""
    for name in ("GLADIA_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    data_root = tmp_path_factory.mktemp("reel_scribe_data")
    monkeypatch.setenv("REEL_SCRIBE_PATHS__DATA_ROOT", str(data_root))
    monkeypatch.setenv("REEL_SCRIBE_PATHS__SESSIONS_DB", str(data_root / "sessions.sqlite3"))
    monkeypatch.setenv("REEL_SCRIBE_PATHS__ANALYSIS_DIR", str(data_root / "analysis"))
    monkeypatch.setenv("REEL_SCRIBE_PATHS__LOGS_DIR", str(data_root / "logs"))
