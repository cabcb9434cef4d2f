"""Stage 1: transcode raw session tracks to MP3 for upload."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..models import AudioFile, AudioProcessingStatus, utcnow
from ..utils.ffmpeg import DEFAULT_CHUNK_SIZE, FFmpeg, FFmpegError, FFmpegProgress
from ..utils.logging import get_logger
from . import state_machine
from .progress import ProgressCallback, ThrottledProgress
from .state_machine import CONVERTIBLE_EXTENSIONS, PASSTHROUGH_EXTENSIONS

LOGGER = get_logger(__name__)

__all__ = [
    "AudioConversionConfig",
    "AudioConverter",
    "ConversionError",
    "build_audio_converter",
]

# Raw-stream formats ffmpeg can demux from a pipe; containers with trailing indexes
# (mp4/mov family) need a seekable input and go through the -progress path instead.
STREAMABLE_EXTENSIONS = frozenset({".wav", ".flac", ".ogg", ".aac", ".wma", ".webm", ".mkv"})


class ConversionError(RuntimeError):
    """Raised when a track cannot be transcoded."""


@dataclass(slots=True)
class AudioConversionConfig:
    """Parameters that control MP3 transcoding."""

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    bitrate: str = "128k"
    sample_rate: int = 44_100
    channels: int = 1
    chunk_size: int = DEFAULT_CHUNK_SIZE
    output_dir: Path | None = None
    timeout_seconds: float | None = None
    progress_min_interval: float = 0.5
    progress_min_delta: float = 1.0

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> AudioConversionConfig:
        raw_audio = config.get("audio", {})
        audio = dict(raw_audio) if isinstance(raw_audio, Mapping) else {}
        raw_pipeline = config.get("pipeline", {})
        pipeline = dict(raw_pipeline) if isinstance(raw_pipeline, Mapping) else {}

        output_dir = audio.get("output_dir")
        timeout = audio.get("timeout_seconds")
        return cls(
            ffmpeg_path=str(audio.get("ffmpeg_path", "ffmpeg")),
            ffprobe_path=str(audio.get("ffprobe_path", "ffprobe")),
            bitrate=str(audio.get("bitrate", "128k")),
            sample_rate=int(audio.get("sample_rate", 44_100)),
            channels=int(audio.get("channels", 1)),
            chunk_size=int(audio.get("chunk_size", DEFAULT_CHUNK_SIZE)),
            output_dir=Path(str(output_dir)).expanduser() if output_dir else None,
            timeout_seconds=float(timeout) if timeout is not None else None,
            progress_min_interval=float(pipeline.get("progress_min_interval_seconds", 0.5)),
            progress_min_delta=float(pipeline.get("progress_min_delta", 1.0)),
        )

    def output_args(self, destination: Path) -> list[str]:
        return [
            "-vn",
            "-ac",
            str(self.channels),
            "-ar",
            str(self.sample_rate),
            "-c:a",
            "libmp3lame",
            "-b:a",
            self.bitrate,
            str(destination),
        ]


class AudioConverter:
    """Transcodes one file at a time; each call is independent of its siblings."""

    def __init__(self, config: AudioConversionConfig, *, ffmpeg: FFmpeg | None = None) -> None:
        self.config = config
        self.ffmpeg = ffmpeg or FFmpeg(
            ffmpeg_path=config.ffmpeg_path,
            ffprobe_path=config.ffprobe_path,
        )

    def destination_for(self, audio_file: AudioFile) -> Path:
        directory = self.config.output_dir or audio_file.file_path.parent
        return directory / f"{audio_file.file_path.stem}.mp3"

    def convert(
        self,
        audio_file: AudioFile,
        progress_callback: ProgressCallback | None = None,
    ) -> bool:
        """Convert ``audio_file`` and record the outcome on it.

        Returns True on success. Failures never raise: the file moves to ``FAILED_MP3`` with
        ``conversion_error`` populated and ``can_retry`` set.
        """
        if audio_file.processing_status == AudioProcessingStatus.PENDING:
            state_machine.transition(
                audio_file, AudioProcessingStatus.UPLOADING, step="Received"
            )
        if audio_file.processing_status != AudioProcessingStatus.CONVERTING_TO_MP3:
            state_machine.transition(
                audio_file,
                AudioProcessingStatus.CONVERTING_TO_MP3,
                step="Converting to MP3",
            )
        audio_file.conversion_error = None

        reporter = ThrottledProgress(
            progress_callback,
            min_interval=self.config.progress_min_interval,
            min_delta=self.config.progress_min_delta,
        )

        def report(message: str, percent: float) -> None:
            reporter(message, percent)
            audio_file.progress_percentage = reporter.percent
            audio_file.current_step = message

        try:
            mp3_path = self._convert(audio_file, report)
        except (ConversionError, FFmpegError, OSError) as exc:
            state_machine.fail(audio_file, str(exc) or exc.__class__.__name__, conversion=True)
            return False

        audio_file.mp3_path = mp3_path
        audio_file.converted_at = utcnow()
        report("Conversion complete", 100.0)
        state_machine.transition(
            audio_file, AudioProcessingStatus.PROCESSED_MP3, step="Ready for upload"
        )
        LOGGER.info("Converted %s -> %s", audio_file.file_name, mp3_path.name)
        return True

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _convert(self, audio_file: AudioFile, report: ProgressCallback) -> Path:
        source = audio_file.file_path
        extension = audio_file.extension
        if not source.exists():
            raise ConversionError(f"Source file not found: {source}")

        if extension in PASSTHROUGH_EXTENSIONS:
            report("Already MP3, no conversion needed", 100.0)
            return source
        if extension not in CONVERTIBLE_EXTENSIONS:
            raise ConversionError(f"Unsupported file type: {extension or '<none>'}")

        destination = self.destination_for(audio_file)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_suffix(".part.mp3")
        report(f"Converting {audio_file.file_name}", 0.0)

        try:
            if extension in STREAMABLE_EXTENSIONS:
                self._stream(source, partial, report)
            else:
                self._transcode_container(source, partial, report)
            partial.replace(destination)
        finally:
            partial.unlink(missing_ok=True)
        return destination

    def _stream(self, source: Path, destination: Path, report: ProgressCallback) -> None:
        def on_bytes(sent: int, total: int) -> None:
            percent = (sent / total) * 100.0 if total else 100.0
            # Hold back the last percent until the encoder has flushed and exited.
            report(f"Converting: {sent // 1024:,} KB of {total // 1024:,} KB", min(percent, 99.0))

        self.ffmpeg.stream_transcode(
            source,
            self.config.output_args(destination),
            chunk_size=self.config.chunk_size,
            byte_callback=on_bytes,
            timeout=self.config.timeout_seconds,
        )

    def _transcode_container(
        self, source: Path, destination: Path, report: ProgressCallback
    ) -> None:
        try:
            duration = self.ffmpeg.probe_duration(source)
        except FFmpegError as exc:
            raise ConversionError(f"Unreadable media file: {exc}") from exc

        def on_progress(progress: FFmpegProgress) -> None:
            if not duration or progress.out_time is None:
                return
            percent = (progress.out_time / duration) * 100.0
            report(f"Converting: {progress.out_time:.0f}s of {duration:.0f}s", min(percent, 99.0))

        self.ffmpeg.run(
            ["-i", str(source), *self.config.output_args(destination)],
            progress_callback=on_progress,
            timeout=self.config.timeout_seconds,
        )


def build_audio_converter(config: Mapping[str, object]) -> AudioConverter:
    """Factory mirroring the provider builders."""
    return AudioConverter(AudioConversionConfig.from_config(config))
