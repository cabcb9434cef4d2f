from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path

from typer.testing import CliRunner

from reel_scribe.cli import app
from reel_scribe.config import load_config
from reel_scribe.models import MovieSession, SessionStatus, utcnow
from reel_scribe.storage import build_repository

runner = CliRunner()


def make_folder(tmp_path: Path) -> Path:
    folder = tmp_path / "heat"
    folder.mkdir()
    (folder / "MIC1.wav").write_bytes(b"RIFF" + b"\x00" * 16)
    (folder / "MIC2.wav").write_bytes(b"RIFF" + b"\x00" * 16)
    (folder / "group take.wav").write_bytes(b"RIFF" + b"\x00" * 256)
    (folder / "notes.txt").write_text("snacks", encoding="utf-8")
    return folder


def test_classify_lists_roles_and_renames_master(tmp_path: Path) -> None:
    folder = make_folder(tmp_path)

    result = runner.invoke(app, ["classify", str(folder), "--mic", "Alice", "--rename"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert any(line.startswith("MIC1.wav") and "MIC1" in line[32:] for line in lines)
    assert any("MASTER_MIX.wav" in line and "(master)" in line for line in lines)
    assert any(line.startswith("notes.txt") and "skipped" in line for line in lines)
    assert "Renamed group take.wav" in result.output
    assert (folder / "MASTER_MIX.wav").exists()


def test_classify_missing_folder(tmp_path: Path) -> None:
    result = runner.invoke(app, ["classify", str(tmp_path / "nope")])

    assert result.exit_code == 2


def test_process_without_provider_keys_exits_before_work(tmp_path: Path) -> None:
    folder = make_folder(tmp_path)

    result = runner.invoke(app, ["process", str(folder), "--no-watch"])

    assert result.exit_code == 2
    assert "GLADIA_API_KEY" in result.output
    assert not (folder / "MIC1.mp3").exists()


def test_process_rejects_unknown_stage(tmp_path: Path) -> None:
    result = runner.invoke(app, ["process", str(make_folder(tmp_path)), "--from-stage", "mix"])

    assert result.exit_code == 2


def test_status_of_unknown_session() -> None:
    result = runner.invoke(app, ["status", "does-not-exist"])

    assert result.exit_code == 2
    assert "Unknown session" in result.output


def test_purge_requires_configured_provider() -> None:
    result = runner.invoke(app, ["purge", "--yes-phrase", "DELETE ALL"])

    assert result.exit_code == 2
    assert "not configured" in result.output


def test_recover_resets_stale_session(tmp_path: Path) -> None:
    repository = build_repository(load_config("dev"))
    session = MovieSession(
        movie_title="Heat",
        date=date(2024, 2, 2),
        folder_path=tmp_path,
        status=SessionStatus.TRANSCRIBING,
        created_at=utcnow() - timedelta(hours=2),
    )
    repository.save(session)

    result = runner.invoke(app, ["recover", "--older-than-minutes", "60"])

    assert result.exit_code == 0, result.output
    assert session.session_id in result.output
    stored = repository.get(session.session_id)
    assert stored is not None
    assert stored.status is SessionStatus.PENDING


def test_recover_with_nothing_stuck() -> None:
    result = runner.invoke(app, ["recover"])

    assert result.exit_code == 0, result.output
    assert "No stuck sessions." in result.output


def test_recover_rejects_non_positive_threshold() -> None:
    result = runner.invoke(app, ["recover", "--older-than-minutes", "0"])

    assert result.exit_code == 2
