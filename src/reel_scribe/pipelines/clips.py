"""Cut short highlight clips from the master mix for the analysis winners."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..models import CategoryWinner, MovieSession, TopFiveEntry
from ..storage.paths import build_paths
from ..utils.ffmpeg import FFmpeg, FFmpegError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "MAX_CLIP_SECONDS",
    "ClipGenerator",
    "ClipSettings",
    "build_clip_generator",
    "parse_timestamp",
]

MAX_CLIP_SECONDS = 300.0

_TIMESTAMP_PATTERN = re.compile(
    r"^\[?\s*(?:(?P<h>\d+):)?(?P<m>\d{1,3}):(?P<s>\d{1,2}(?:\.\d+)?)\s*\]?$"
)


def parse_timestamp(value: str | None) -> float | None:
    """``MM:SS`` or ``H:MM:SS`` (optionally bracketed) in seconds; None when unreadable."""
    if not value:
        return None
    match = _TIMESTAMP_PATTERN.match(value.strip())
    if match is None:
        return None
    hours = int(match["h"] or 0)
    return hours * 3600 + int(match["m"]) * 60 + float(match["s"])


@dataclass(slots=True)
class ClipSettings:
    enabled: bool = True
    clip_seconds: float = 30.0
    funniest_count: int = 3
    bitrate: str = "128k"
    timeout_seconds: float | None = 120.0

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> ClipSettings:
        raw = config.get("clips", {})
        clips = dict(raw) if isinstance(raw, Mapping) else {}
        timeout = clips.get("timeout_seconds", 120.0)
        return cls(
            enabled=bool(clips.get("enabled", True)),
            clip_seconds=float(clips.get("clip_seconds", 30.0)),
            funniest_count=int(clips.get("funniest_count", 3)),
            bitrate=str(clips.get("bitrate", "128k")),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )


class ClipGenerator:
    """Writes ``<clips_dir>/<session_id>/<clip_id>.mp3`` files; every clip is best effort."""

    def __init__(
        self,
        settings: ClipSettings,
        clips_dir: str | Path,
        *,
        ffmpeg: FFmpeg | None = None,
    ) -> None:
        self.settings = settings
        self.clips_dir = Path(clips_dir)
        self.ffmpeg = ffmpeg or FFmpeg()

    def generate_clip(
        self,
        source: Path,
        start_seconds: float,
        end_seconds: float,
        session_id: str,
        clip_id: str,
    ) -> Path | None:
        duration = end_seconds - start_seconds
        if duration <= 0 or duration > MAX_CLIP_SECONDS:
            LOGGER.warning("Invalid clip duration for %s: %.1f seconds", clip_id, duration)
            return None

        target = self.clips_dir / session_id / f"{clip_id}.mp3"
        partial = target.with_suffix(".part.mp3")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            self.ffmpeg.run(
                [
                    "-ss",
                    f"{start_seconds:.3f}",
                    "-t",
                    f"{duration:.3f}",
                    "-i",
                    str(source),
                    "-vn",
                    "-c:a",
                    "libmp3lame",
                    "-b:a",
                    self.settings.bitrate,
                    str(partial),
                ],
                timeout=self.settings.timeout_seconds,
            )
            partial.replace(target)
        except (FFmpegError, OSError) as exc:
            LOGGER.warning("Failed to cut clip %s from %s: %s", clip_id, source.name, exc)
            return None
        finally:
            partial.unlink(missing_ok=True)
        return target

    def generate_for_session(self, session: MovieSession) -> dict[str, Path]:
        """Cut one clip per category winner and the top funniest sentences.

        Clips start at the reported timestamp and last ``clip_seconds``. The resulting paths are
        stored on the winners and entries; failures are logged and leave them unset.
        """
        results = session.category_results
        if not self.settings.enabled or results is None:
            return {}
        master = session.master_file
        if master is None:
            LOGGER.warning(
                "No master recording for session %s; skipping clip generation.",
                session.session_id,
            )
            return {}

        source = master.mp3_path or master.file_path
        clips: dict[str, Path] = {}
        targets: list[tuple[str, CategoryWinner | TopFiveEntry]] = list(results.winners.items())
        entries = sorted(results.funniest_sentences.entries, key=lambda entry: entry.rank)
        targets.extend(
            (f"funny_sentence_{index}", entry)
            for index, entry in enumerate(entries[: self.settings.funniest_count], start=1)
        )

        for clip_id, item in targets:
            start = parse_timestamp(item.timestamp)
            if start is None:
                LOGGER.info("Skipping clip %s: unreadable timestamp %r", clip_id, item.timestamp)
                continue
            path = self.generate_clip(
                source, start, start + self.settings.clip_seconds, session.session_id, clip_id
            )
            if path is not None:
                item.clip_path = path
                clips[clip_id] = path

        LOGGER.info(
            "Generated %d of %d clips for session %s", len(clips), len(targets), session.session_id
        )
        return clips


def build_clip_generator(config: Mapping[str, object]) -> ClipGenerator:
    raw_audio = config.get("audio", {})
    audio = dict(raw_audio) if isinstance(raw_audio, Mapping) else {}
    return ClipGenerator(
        ClipSettings.from_config(config),
        build_paths(config).clips_dir,
        ffmpeg=FFmpeg(
            ffmpeg_path=str(audio.get("ffmpeg_path", "ffmpeg")),
            ffprobe_path=str(audio.get("ffprobe_path", "ffprobe")),
        ),
    )
