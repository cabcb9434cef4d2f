"""FFmpeg command wrappers and helpers."""

from __future__ import annotations

import json
import subprocess
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, cast

from .logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "FFmpeg",
    "FFmpegError",
    "FFmpegProgress",
]

DEFAULT_CHUNK_SIZE = 81_920

Callback = Callable[["FFmpegProgress"], None]
ByteCallback = Callable[[int, int], None]


class FFmpegError(RuntimeError):
    """Raised when FFmpeg exits with a non-zero status."""


@dataclass(slots=True)
class FFmpegProgress:
    """Represents a parsed ``-progress`` update from FFmpeg."""

    out_time: float | None = None
    total_size_kb: float | None = None
    speed: float | None = None
    status: str | None = None


class FFmpeg:
    """Lightweight wrapper around FFmpeg and FFprobe commands."""

    def __init__(self, *, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe") -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def probe(self, media_path: str | Path) -> dict[str, object]:
        """Return format and stream metadata for ``media_path`` using ffprobe."""
        command = [
            self.ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(media_path),
        ]
        try:
            result = subprocess.run(  # noqa: S603 - command constructed from trusted input
                command,
                check=False,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise FFmpegError(f"ffprobe executable not found: {self.ffprobe_path}") from exc
        if result.returncode != 0:
            raise FFmpegError(
                f"ffprobe failed with code {result.returncode}: {result.stderr.strip()}"
            )
        payload = json.loads(result.stdout or "{}")
        if not isinstance(payload, dict):
            raise FFmpegError("ffprobe did not return a JSON object.")
        return cast(dict[str, object], payload)

    def probe_duration(self, media_path: str | Path) -> float | None:
        """Duration in seconds from the container header, or None when unknown."""
        metadata = self.probe(media_path)
        fmt = metadata.get("format")
        if isinstance(fmt, dict):
            return _parse_numeric(str(fmt.get("duration", "")))
        return None

    def run(
        self,
        args: Sequence[str],
        *,
        progress_callback: Callback | None = None,
        timeout: float | None = None,
    ) -> None:
        """Invoke FFmpeg with ``args``, optionally streaming ``-progress`` updates."""
        base = [self.ffmpeg_path, "-hide_banner", "-y"]
        if progress_callback:
            base.extend(["-progress", "pipe:1", "-nostats"])
        command = [*base, *args]

        if progress_callback:
            self._run_with_progress(command, progress_callback, timeout=timeout)
            return

        try:
            result = subprocess.run(  # noqa: S603 - command built from trusted configuration
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise FFmpegError(f"ffmpeg executable not found: {self.ffmpeg_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise FFmpegError("FFmpeg process timed out.") from exc
        if result.returncode != 0:
            raise FFmpegError(result.stderr.strip())

    def stream_transcode(
        self,
        input_path: str | Path,
        output_args: Sequence[str],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        byte_callback: ByteCallback | None = None,
        timeout: float | None = None,
    ) -> None:
        """Pipe ``input_path`` into FFmpeg's stdin in fixed-size chunks.

        Memory use is bounded by ``chunk_size`` regardless of the input size, and
        ``byte_callback(bytes_sent, total_bytes)`` is invoked after every chunk so callers can
        report progress as a share of bytes processed. stderr goes to a temporary file so a chatty
        encoder can never fill a pipe and stall the writer.
        """
        source = Path(input_path)
        total = source.stat().st_size
        command = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            "pipe:0",
            *output_args,
        ]

        start_time = time.monotonic()
        with tempfile.TemporaryFile() as stderr_sink, source.open("rb") as handle:
            try:
                process = subprocess.Popen(  # noqa: S603 - command built from trusted configuration
                    command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr_sink,
                )
            except FileNotFoundError as exc:
                raise FFmpegError(f"ffmpeg executable not found: {self.ffmpeg_path}") from exc

            try:
                self._feed(process, handle, total, chunk_size, byte_callback, start_time, timeout)
            finally:
                if process.stdin is not None and not process.stdin.closed:
                    try:
                        process.stdin.close()
                    except BrokenPipeError:
                        pass

            remaining = None
            if timeout is not None:
                remaining = max(0.0, timeout - (time.monotonic() - start_time))
            try:
                returncode = process.wait(timeout=remaining)
            except subprocess.TimeoutExpired as exc:
                process.kill()
                raise FFmpegError("FFmpeg process timed out.") from exc

            if returncode != 0:
                stderr_sink.seek(0)
                detail = stderr_sink.read().decode("utf-8", errors="ignore").strip()
                raise FFmpegError(detail or f"ffmpeg exited with code {returncode}")

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _feed(
        process: subprocess.Popen[bytes],
        handle: BinaryIO,
        total: int,
        chunk_size: int,
        byte_callback: ByteCallback | None,
        start_time: float,
        timeout: float | None,
    ) -> None:
        assert process.stdin is not None
        sent = 0
        while True:
            if timeout is not None and (time.monotonic() - start_time) > timeout:
                process.kill()
                raise FFmpegError("FFmpeg process timed out.")
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            try:
                process.stdin.write(chunk)
            except BrokenPipeError:
                # Encoder exited early; the return code carries the real error.
                LOGGER.debug("ffmpeg closed stdin after %d of %d bytes", sent, total)
                return
            sent += len(chunk)
            if byte_callback is not None:
                byte_callback(sent, total)

    def _run_with_progress(
        self,
        command: Sequence[str],
        callback: Callback,
        *,
        timeout: float | None,
    ) -> None:
        start_time = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603 - command built from trusted configuration
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise FFmpegError(f"ffmpeg executable not found: {self.ffmpeg_path}") from exc
        try:
            assert process.stdout is not None
            state = FFmpegProgress()
            while True:
                if timeout is not None and (time.monotonic() - start_time) > timeout:
                    process.kill()
                    raise FFmpegError("FFmpeg process timed out.")

                line = process.stdout.readline()
                if not line:
                    if process.poll() is not None:
                        break
                    time.sleep(0.05)
                    continue

                parsed = self._parse_progress_line(line)
                if not parsed:
                    continue

                key, value = parsed
                self._update_progress(state, key, value)
                if key == "progress":
                    callback(replace(state))
        finally:
            stdout, stderr = process.communicate()
            if process.returncode != 0:
                raise FFmpegError((stderr or stdout or "").strip())

    @staticmethod
    def _parse_progress_line(line: str) -> tuple[str, str] | None:
        line = line.strip()
        if not line or "=" not in line:
            return None
        key, _, value = line.partition("=")
        return key.strip(), value.strip()

    @staticmethod
    def _update_progress(progress: FFmpegProgress, key: str, value: str) -> None:
        if key == "total_size":
            numeric = _parse_numeric(value)
            progress.total_size_kb = numeric / 1024.0 if numeric is not None else None
        elif key == "speed":
            progress.speed = _parse_speed(value)
        elif key == "out_time":
            progress.out_time = _parse_time(value)
        elif key == "out_time_us":
            numeric = _parse_numeric(value)
            progress.out_time = numeric / 1_000_000.0 if numeric is not None else None
        elif key == "progress":
            progress.status = value


def _parse_speed(value: str) -> float | None:
    if value.endswith("x"):
        return _parse_numeric(value[:-1])
    return _parse_numeric(value)


def _parse_numeric(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def _parse_time(value: str) -> float | None:
    try:
        hours, minutes, seconds = value.split(":")
        delta = timedelta(hours=int(hours), minutes=int(minutes), seconds=float(seconds))
        return delta.total_seconds()
    except (ValueError, TypeError):
        return None
