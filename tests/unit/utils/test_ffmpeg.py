"""Tests for the FFmpeg helper utilities."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from reel_scribe.utils.ffmpeg import FFmpeg, FFmpegError, FFmpegProgress


class FakeCompletedProcess:
    def __init__(self, returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class FakeProcess:
    """Minimal stub that mimics subprocess.Popen for progress parsing."""

    def __init__(self, lines: list[str]) -> None:
        self._lines: Iterator[str] = iter(lines)
        self.stdout = self
        self.stderr_content = ""
        self.returncode = 0
        self._closed = False

    def readline(self) -> str:
        try:
            return next(self._lines)
        except StopIteration:
            self._closed = True
            return ""

    def poll(self) -> int | None:
        return 0 if self._closed else None

    def communicate(self) -> tuple[str, str]:
        return "", self.stderr_content

    def kill(self) -> None:
        self.returncode = -9
        self._closed = True


class FakeStdin:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.closed = False

    def write(self, chunk: bytes) -> int:
        self.chunks.append(chunk)
        return len(chunk)

    def close(self) -> None:
        self.closed = True


class FakeStreamingProcess:
    """Stands in for an encoder reading from stdin."""

    def __init__(self, returncode: int = 0, stderr: Any = None, error: bytes = b"") -> None:
        self.stdin = FakeStdin()
        self._returncode = returncode
        if error and stderr is not None:
            stderr.write(error)

    def wait(self, timeout: float | None = None) -> int:
        return self._returncode

    def kill(self) -> None:
        self._returncode = -9


def test_probe_returns_metadata(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    metadata = {"streams": [], "format": {"duration": "62.5"}}

    def fake_run(*_args, **_kwargs):
        return FakeCompletedProcess(returncode=0, stdout=json.dumps(metadata))

    monkeypatch.setattr("subprocess.run", fake_run)
    ffmpeg = FFmpeg()
    assert ffmpeg.probe(tmp_path / "video.mp4") == metadata
    assert ffmpeg.probe_duration(tmp_path / "video.mp4") == pytest.approx(62.5)


def test_probe_failure_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def fake_run(*_args, **_kwargs):
        return FakeCompletedProcess(returncode=1, stderr="not found")

    monkeypatch.setattr("subprocess.run", fake_run)
    with pytest.raises(FFmpegError):
        FFmpeg().probe(tmp_path / "video.mp4")


def test_missing_executable_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def fake_run(*_args, **_kwargs):
        raise FileNotFoundError("ffmpeg")

    monkeypatch.setattr("subprocess.run", fake_run)
    with pytest.raises(FFmpegError, match="not found"):
        FFmpeg(ffmpeg_path="/missing/ffmpeg").run(["-i", str(tmp_path / "in.wav"), "out.mp3"])


def test_run_with_progress_parses_updates(monkeypatch: pytest.MonkeyPatch) -> None:
    updates: list[FFmpegProgress] = []

    def fake_popen(*_args, **_kwargs):
        lines = [
            "total_size=2048\n",
            "out_time=00:00:01.00\n",
            "speed=1.5x\n",
            "progress=continue\n",
            "out_time_us=2000000\n",
            "progress=end\n",
        ]
        return FakeProcess(lines)

    monkeypatch.setattr("subprocess.Popen", fake_popen)

    FFmpeg().run(
        ["-i", "input", "output"],
        progress_callback=lambda progress: updates.append(progress),
    )

    assert [update.status for update in updates] == ["continue", "end"]
    assert updates[0].total_size_kb == pytest.approx(2.0)
    assert updates[0].speed == pytest.approx(1.5)
    assert updates[-1].out_time == pytest.approx(2.0, abs=1e-2)


def test_stream_transcode_feeds_stdin_in_chunks(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    source = tmp_path / "MIC1.wav"
    source.write_bytes(b"x" * 10)
    processes: list[FakeStreamingProcess] = []
    commands: list[list[str]] = []

    def fake_popen(command, **kwargs):
        commands.append(list(command))
        assert kwargs["stdin"] is subprocess.PIPE
        process = FakeStreamingProcess()
        processes.append(process)
        return process

    monkeypatch.setattr("subprocess.Popen", fake_popen)
    progress: list[tuple[int, int]] = []

    FFmpeg().stream_transcode(
        source,
        ["out.mp3"],
        chunk_size=4,
        byte_callback=lambda sent, total: progress.append((sent, total)),
    )

    assert commands[0][commands[0].index("-i") + 1] == "pipe:0"
    assert processes[0].stdin.chunks == [b"xxxx", b"xxxx", b"xx"]
    assert processes[0].stdin.closed is True
    assert progress == [(4, 10), (8, 10), (10, 10)]


def test_stream_transcode_reports_encoder_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    source = tmp_path / "MIC1.wav"
    source.write_bytes(b"x" * 8)

    def fake_popen(_command, **kwargs):
        return FakeStreamingProcess(returncode=1, stderr=kwargs["stderr"], error=b"bad header")

    monkeypatch.setattr("subprocess.Popen", fake_popen)

    with pytest.raises(FFmpegError, match="bad header"):
        FFmpeg().stream_transcode(source, ["out.mp3"])
