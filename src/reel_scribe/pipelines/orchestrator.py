"""Stage-sequential orchestration of a session's files with bounded per-stage parallelism."""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from datetime import date
from pathlib import Path
from typing import ClassVar

from ..exceptions import ConfigurationError, ProcessingCancelled, TranscriptionTimeout
from ..models import (
    AudioFile,
    AudioProcessingStatus,
    FileRole,
    MovieSession,
    SessionStatus,
    utcnow,
)
from ..providers.gladia import GladiaClient, GladiaError, build_gladia_client
from ..utils.logging import get_logger
from . import state_machine
from .analysis import AnalysisStage, build_analysis_stage
from .classifier import classify_folder
from .clips import ClipGenerator, build_clip_generator
from .convert import AudioConverter, build_audio_converter
from .progress import ProgressBus, ProgressCallback, ProgressEvent, ThrottledProgress
from .speaker_mapping import map_speaker_labels
from .state_machine import Stage

LOGGER = get_logger(__name__)

S = AudioProcessingStatus

__all__ = [
    "SessionOrchestrator",
    "SessionProgress",
    "StageCallback",
    "session_from_folder",
]

StageCallback = Callable[[MovieSession, Stage], None]

_AUDIO_FILE_FIELDS = tuple(item.name for item in fields(AudioFile))
_SINGLE_VOICE_ROLES = frozenset({FileRole.MIC, FileRole.PHONE, FileRole.SOUND_PAD})


@dataclass(slots=True)
class SessionProgress:
    """Aggregate progress of a session's files."""

    percent: float
    completed: int
    in_progress: int
    pending: int
    failed: int
    total: int


@dataclass(slots=True)
class _StageTracker:
    """Per-stage fraction used to drive the session-level progress band."""

    start: float
    end: float
    file_ids: list[str]
    percents: dict[str, float]
    lock: threading.Lock

    @classmethod
    def create(cls, band: tuple[float, float], file_ids: Iterable[str]) -> _StageTracker:
        ids = list(file_ids)
        return cls(band[0], band[1], ids, {file_id: 0.0 for file_id in ids}, threading.Lock())

    def update(self, file_id: str, percent: float) -> float:
        with self.lock:
            self.percents[file_id] = max(self.percents.get(file_id, 0.0), percent)
            fraction = sum(self.percents.values()) / (100.0 * len(self.percents) or 1.0)
        return self.start + (self.end - self.start) * fraction


class SessionOrchestrator:
    """Runs convert, upload, transcribe and analyze over a session, one stage at a time.

    Within a stage the eligible files are processed on a bounded thread pool; the next stage only
    starts once every file of the previous one has settled. Files that already went past a stage
    are never picked up again, so an interrupted run resumes exactly where it stopped.
    """

    # Share of the session-level progress bar owned by each phase.
    STAGE_BANDS: ClassVar[dict[Stage, tuple[float, float]]] = {
        Stage.CONVERT: (20.0, 40.0),
        Stage.UPLOAD: (40.0, 60.0),
        Stage.TRANSCRIBE: (60.0, 80.0),
        Stage.ANALYZE: (80.0, 100.0),
    }

    def __init__(
        self,
        *,
        converter: AudioConverter,
        transcriber: GladiaClient,
        analysis: AnalysisStage,
        clips: ClipGenerator | None = None,
        max_workers: int = 2,
        bus: ProgressBus | None = None,
        progress_min_interval: float = 0.5,
        progress_min_delta: float = 1.0,
    ) -> None:
        self.converter = converter
        self.transcriber = transcriber
        self.analysis = analysis
        self.clips = clips
        self.max_workers = max(1, max_workers)
        self.bus = bus or ProgressBus()
        self._progress_min_interval = progress_min_interval
        self._progress_min_delta = progress_min_delta
        self._lock = threading.Lock()
        self._cancelled: set[tuple[str, str]] = set()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        *,
        bus: ProgressBus | None = None,
        max_workers: int | None = None,
    ) -> SessionOrchestrator:
        raw_pipeline = config.get("pipeline", {})
        pipeline = dict(raw_pipeline) if isinstance(raw_pipeline, Mapping) else {}
        return cls(
            converter=build_audio_converter(config),
            transcriber=build_gladia_client(config),
            analysis=build_analysis_stage(config),
            clips=build_clip_generator(config),
            max_workers=max_workers or int(pipeline.get("max_workers", 2)),
            bus=bus,
            progress_min_interval=float(pipeline.get("progress_min_interval_seconds", 0.5)),
            progress_min_delta=float(pipeline.get("progress_min_delta", 1.0)),
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def ensure_configured(self, start_stage: Stage = Stage.CONVERT) -> None:
        """Raise ``ConfigurationError`` when a provider needed from ``start_stage`` lacks a key."""
        stages = _stages_from(start_stage)
        if (Stage.UPLOAD in stages or Stage.TRANSCRIBE in stages) and not (
            self.transcriber.is_configured
        ):
            raise ConfigurationError(
                "Transcription provider is not configured: set "
                f"{self.transcriber.settings.api_key_env}."
            )
        if Stage.ANALYZE in stages and not self.analysis.client.is_configured:
            raise ConfigurationError(
                "AI analysis provider is not configured: set "
                f"{self.analysis.client.settings.api_key_env}."
            )

    def process_from_stage(
        self,
        session: MovieSession,
        start_stage: Stage = Stage.CONVERT,
        *,
        progress_callback: ProgressCallback | None = None,
        on_stage_complete: StageCallback | None = None,
    ) -> MovieSession:
        """Run every stage from ``start_stage`` onwards and return ``session``.

        Per-file failures are recorded on the files and never raised. Configuration problems
        raise before any file is touched.
        """
        self.ensure_configured(start_stage)
        reporter = ThrottledProgress(
            progress_callback,
            min_interval=self._progress_min_interval,
            min_delta=self._progress_min_delta,
        )

        session_lock = threading.Lock()

        def report_session(message: str, percent: float) -> None:
            with session_lock:
                reporter(message, percent)
                current = reporter.percent
            self._publish("session", message, current, session)

        session.status = SessionStatus.VALIDATING
        session.error_message = None
        report_session("Validating session files", 0.0)
        if not session.audio_files:
            session.status = SessionStatus.FAILED
            session.error_message = "No audio files found for this session."
            LOGGER.error("Session %s has no audio files.", session.session_id)
            return session
        self._validate_sources(session)
        report_session("Session files validated", 20.0)

        for stage in _stages_from(start_stage):
            if stage is Stage.ANALYZE:
                self._run_analysis(session, report_session)
            else:
                session.status = SessionStatus.TRANSCRIBING
                self._run_file_stage(session, stage, report_session)
            if on_stage_complete is not None:
                on_stage_complete(session, stage)

        if Stage.ANALYZE not in _stages_from(start_stage) and session.status.is_in_flight:
            session.status = SessionStatus.PENDING
        if session.status == SessionStatus.COMPLETE:
            report_session("Session complete", 100.0)
        return session

    def session_progress(self, session: MovieSession) -> SessionProgress:
        """Mean of per-file progress where complete files count 100 and failed ones 0."""
        completed = in_progress = pending = failed = 0
        total_percent = 0.0
        for audio_file in session.audio_files:
            status = audio_file.processing_status
            if status == S.COMPLETE:
                completed += 1
                total_percent += 100.0
            elif status.is_failed:
                failed += 1
            elif status == S.PENDING:
                pending += 1
            else:
                in_progress += 1
                total_percent += audio_file.progress_percentage
        total = len(session.audio_files)
        return SessionProgress(
            percent=total_percent / total if total else 0.0,
            completed=completed,
            in_progress=in_progress,
            pending=pending,
            failed=failed,
            total=total,
        )

    def cancel_file(
        self, session: MovieSession, file_id: str, reason: str = "cancelled by user"
    ) -> bool:
        """Mark one file failed; anything still running for it is discarded when it returns."""
        audio_file = session.find_file(file_id)
        if audio_file is None:
            raise KeyError(f"No file {file_id} in session {session.session_id}")
        with self._lock:
            if audio_file.processing_status in (S.COMPLETE, S.FAILED):
                return False
            self._cancelled.add((session.session_id, file_id))
            state_machine.fail(audio_file, f"Cancelled: {reason}")
            audio_file.current_step = f"Cancelled: {reason}"
        self._publish("file", audio_file.current_step, 0.0, session, audio_file)
        return True

    def retry_failed(self, session: MovieSession) -> list[AudioFile]:
        """Reset retryable failed files to the furthest state their artifacts still support."""
        reset: list[AudioFile] = []
        for audio_file in session.audio_files:
            if not (audio_file.processing_status.is_failed and audio_file.can_retry):
                continue
            target = self._resume_point(audio_file)
            state_machine.reset_to_state(audio_file, target)
            with self._lock:
                self._cancelled.discard((session.session_id, audio_file.file_id))
            reset.append(audio_file)
        if reset and session.status == SessionStatus.FAILED:
            session.status = SessionStatus.PENDING
            session.error_message = None
        LOGGER.info("Reset %d failed files in session %s", len(reset), session.session_id)
        return reset

    def reprocess_cached_analysis(self, session: MovieSession) -> bool:
        """Re-parse the stored completion for ``session`` without calling the provider."""
        for audio_file in session.audio_files:
            if audio_file.processing_status.is_failed and audio_file.has_transcript:
                state_machine.reset_to_state(audio_file, S.TRANSCRIPTION_COMPLETE)
        files = self._enter_analysis(session)
        ok = self.analysis.reprocess_cached(session)
        if ok:
            self._generate_clips(session)
        self._finish_analysis(session, files, ok)
        return ok

    # ------------------------------------------------------------------ #
    # Stage execution
    # ------------------------------------------------------------------ #
    def _run_file_stage(
        self,
        session: MovieSession,
        stage: Stage,
        report_session: ProgressCallback,
    ) -> None:
        eligible = [
            audio_file
            for audio_file in session.audio_files
            if self._eligible(audio_file, stage) and not self._is_cancelled(session, audio_file)
        ]
        band = self.STAGE_BANDS[stage]
        if not eligible:
            LOGGER.info("Stage %s: nothing to do for session %s", stage.label, session.session_id)
            report_session(f"{stage.label.capitalize()} complete", band[1])
            return

        LOGGER.info(
            "Stage %s: %d files (max_workers=%d)", stage.label, len(eligible), self.max_workers
        )
        tracker = _StageTracker.create(band, (item.file_id for item in eligible))
        workers = min(self.max_workers, len(eligible))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=stage.label) as pool:
            futures = [
                pool.submit(self._process_file, session, audio_file, stage, tracker, report_session)
                for audio_file in eligible
            ]
            for future in futures:
                future.result()
        report_session(f"{stage.label.capitalize()} complete", band[1])

    def _process_file(
        self,
        session: MovieSession,
        audio_file: AudioFile,
        stage: Stage,
        tracker: _StageTracker,
        report_session: ProgressCallback,
    ) -> None:
        # Workers mutate a private copy; it is written back only if the file was not cancelled.
        working = copy.deepcopy(audio_file)

        def report(message: str, percent: float) -> None:
            with self._lock:
                if (session.session_id, audio_file.file_id) in self._cancelled:
                    raise ProcessingCancelled(audio_file.file_name)
                audio_file.processing_status = working.processing_status
                audio_file.current_step = message
                audio_file.progress_percentage = percent
            self._publish("file", message, percent, session, audio_file, stage)
            report_session(
                f"{stage.label.capitalize()}: {audio_file.file_name}",
                tracker.update(audio_file.file_id, percent),
            )

        try:
            if stage is Stage.CONVERT:
                self._convert(working, report)
            elif stage is Stage.UPLOAD:
                self._upload(working, report)
            else:
                self._transcribe(session, working, report)
        except ProcessingCancelled:
            LOGGER.info("Dropped %s result for cancelled %s", stage.label, audio_file.file_name)
            return
        except Exception as exc:  # noqa: BLE001 - one file must never break its siblings
            LOGGER.exception("Unexpected error in %s for %s", stage.label, audio_file.file_name)
            if working.processing_status not in (S.COMPLETE, S.FAILED):
                state_machine.fail(working, f"Unexpected error: {exc}")

        with self._lock:
            if (session.session_id, audio_file.file_id) in self._cancelled:
                LOGGER.info("Dropped %s result for cancelled %s", stage.label, audio_file.file_name)
                return
            for name in _AUDIO_FILE_FIELDS:
                setattr(audio_file, name, getattr(working, name))
        tracker.update(audio_file.file_id, 100.0)
        self._publish(
            "file",
            audio_file.current_step,
            audio_file.progress_percentage,
            session,
            audio_file,
            stage,
        )

    def _convert(self, audio_file: AudioFile, report: ProgressCallback) -> None:
        def on_progress(message: str, percent: float) -> None:
            # ffmpeg is mid-write here; swallow cancellation and let the copy be discarded.
            try:
                report(message, percent)
            except ProcessingCancelled:
                pass

        self.converter.convert(audio_file, progress_callback=on_progress)

    def _upload(self, audio_file: AudioFile, report: ProgressCallback) -> None:
        state_machine.transition(audio_file, S.UPLOADING_TO_GLADIA, step="Uploading to Gladia")
        report("Uploading to Gladia", 0.0)

        def on_bytes(sent: int, total: int) -> None:
            percent = (sent / total) * 100.0 if total else 100.0
            # The request is mid-stream; let it finish and drop the result afterwards.
            try:
                report(
                    f"Uploading: {sent // 1024:,} KB of {total // 1024:,} KB", min(percent, 99.0)
                )
            except ProcessingCancelled:
                pass

        try:
            audio_url = self.transcriber.upload(
                audio_file.upload_source, progress_callback=on_bytes
            )
        except (GladiaError, OSError) as exc:
            state_machine.fail(audio_file, f"Upload failed: {exc}")
            return

        audio_file.audio_url = audio_url
        audio_file.uploaded_at = utcnow()
        state_machine.transition(audio_file, S.UPLOADED_TO_GLADIA, step="Uploaded to Gladia")

    def _transcribe(
        self, session: MovieSession, audio_file: AudioFile, report: ProgressCallback
    ) -> None:
        if audio_file.processing_status != S.TRANSCRIBING:
            state_machine.transition(audio_file, S.TRANSCRIBING, step="Transcribing")
        if not audio_file.audio_url:
            state_machine.fail(audio_file, "No uploaded audio to transcribe.")
            return

        try:
            if not audio_file.transcript_id:
                audio_file.transcript_id = self.transcriber.start_transcription(
                    audio_file.audio_url,
                    speaker_count=session.speaker_count,
                    single_speaker=audio_file.role in _SINGLE_VOICE_ROLES,
                )
                LOGGER.info(
                    "Started transcription %s for %s",
                    audio_file.transcript_id,
                    audio_file.file_name,
                )
            report("Waiting for transcript", 1.0)
            result = self.transcriber.retrieve(
                audio_file.transcript_id,
                on_poll=lambda elapsed, timeout: report(
                    f"Transcribing ({elapsed:.0f}s)",
                    min(95.0, (elapsed / timeout) * 100.0 if timeout else 0.0),
                ),
            )
        except TranscriptionTimeout as exc:
            # The remote job may still finish; keep its id so a retry resumes polling.
            state_machine.fail(audio_file, str(exc))
            return
        except GladiaError as exc:
            audio_file.transcript_id = None
            state_machine.fail(audio_file, f"Transcription failed: {exc}")
            return

        text = result.text
        if not text.strip():
            state_machine.fail(audio_file, "Transcription returned no text.")
            return
        audio_file.transcript_text = text
        if result.duration_seconds is not None:
            audio_file.duration_seconds = result.duration_seconds
        audio_file.transcript_path = self._save_transcript(session, audio_file)
        audio_file.processed_at = utcnow()
        state_machine.transition(audio_file, S.TRANSCRIPTION_COMPLETE, step="Transcript ready")

    def _run_analysis(self, session: MovieSession, report_session: ProgressCallback) -> None:
        band = self.STAGE_BANDS[Stage.ANALYZE]
        waiting = [
            item
            for item in session.audio_files
            if not item.processing_status.is_failed
            and not state_machine.is_at_or_past(item.processing_status, S.TRANSCRIPTION_COMPLETE)
        ]
        if waiting:
            LOGGER.warning(
                "Analysis for session %s deferred: %d files are not transcribed yet.",
                session.session_id,
                len(waiting),
            )
            session.status = SessionStatus.PENDING
            session.error_message = f"Analysis waiting for {len(waiting)} untranscribed file(s)."
            return

        if not any(item.has_transcript for item in session.audio_files):
            session.status = SessionStatus.FAILED
            session.error_message = "No file produced a transcript; nothing to analyse."
            LOGGER.error("Session %s failed: no transcripts.", session.session_id)
            return

        files = self._enter_analysis(session)
        if not files and session.category_results is not None:
            LOGGER.info("Session %s already analysed; skipping.", session.session_id)
            session.status = SessionStatus.COMPLETE
            return
        report_session("Analyzing transcripts with AI", band[0])
        ok = self.analysis.analyze(session)
        if ok:
            self._generate_clips(session)
        self._finish_analysis(session, files, ok)
        report_session("Analysis complete" if ok else "Analysis failed", band[1])

    def _enter_analysis(self, session: MovieSession) -> list[AudioFile]:
        files = [item for item in session.audio_files if self._eligible(item, Stage.ANALYZE)]
        for audio_file in files:
            if audio_file.processing_status != S.PROCESSING_WITH_AI:
                state_machine.transition(
                    audio_file, S.PROCESSING_WITH_AI, step="Analyzing with AI"
                )
        return files

    def _finish_analysis(self, session: MovieSession, files: list[AudioFile], ok: bool) -> None:
        for audio_file in files:
            with self._lock:
                # Cancelled while the completion call was running.
                if audio_file.processing_status != S.PROCESSING_WITH_AI:
                    LOGGER.info(
                        "Leaving %s as %s after analysis",
                        audio_file.file_name,
                        audio_file.processing_status.value,
                    )
                    continue
                if ok:
                    state_machine.transition(audio_file, S.COMPLETE, step="Complete")
                    audio_file.progress_percentage = 100.0
                else:
                    state_machine.fail(audio_file, session.error_message or "Analysis failed")

    def _generate_clips(self, session: MovieSession) -> None:
        if self.clips is None:
            return
        try:
            self.clips.generate_for_session(session)
        except Exception:  # noqa: BLE001 - clips never decide the analysis outcome
            LOGGER.exception("Clip generation failed for session %s", session.session_id)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _eligible(audio_file: AudioFile, stage: Stage) -> bool:
        status = audio_file.processing_status
        return status in stage.prerequisites or status == stage.working_status

    def _is_cancelled(self, session: MovieSession, audio_file: AudioFile) -> bool:
        with self._lock:
            return (session.session_id, audio_file.file_id) in self._cancelled

    @staticmethod
    def _validate_sources(session: MovieSession) -> None:
        for audio_file in session.audio_files:
            if audio_file.processing_status != S.PENDING:
                continue
            if state_machine.initial_stage_for(audio_file) is None:
                state_machine.fail(audio_file, f"Unsupported file type: {audio_file.extension}")
                audio_file.can_retry = False
            elif not audio_file.file_path.exists():
                state_machine.fail(audio_file, f"Source file not found: {audio_file.file_path}")

    @staticmethod
    def _resume_point(audio_file: AudioFile) -> S:
        if audio_file.has_transcript:
            return S.TRANSCRIPTION_COMPLETE
        if audio_file.audio_url:
            return S.UPLOADED_TO_GLADIA
        if audio_file.mp3_path is not None and audio_file.mp3_path.exists():
            return S.PROCESSED_MP3
        return S.PENDING

    @staticmethod
    def _save_transcript(session: MovieSession, audio_file: AudioFile) -> Path | None:
        target = audio_file.file_path.with_suffix(".txt")
        text = map_speaker_labels(
            audio_file.transcript_text or "", audio_file, session.mic_assignments
        )
        try:
            target.write_text(text, encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Could not save transcript for %s: %s", audio_file.file_name, exc)
            return None
        return target

    def _publish(
        self,
        scope: str,
        message: str,
        percent: float,
        session: MovieSession,
        audio_file: AudioFile | None = None,
        stage: Stage | None = None,
    ) -> None:
        self.bus.publish(
            ProgressEvent(
                scope=scope,
                message=message,
                percent=percent,
                session_id=session.session_id,
                file_id=audio_file.file_id if audio_file else None,
                stage=stage.label if stage else None,
            )
        )


def _stages_from(start_stage: Stage) -> list[Stage]:
    ordered = Stage.ordered()
    return ordered[ordered.index(start_stage) :]


def session_from_folder(
    folder: str | Path,
    mic_assignments: Mapping[int, str] | None = None,
    *,
    movie_title: str | None = None,
    session_date: date | None = None,
    rename_master: bool = True,
) -> MovieSession:
    """Classify ``folder`` and wrap the result in a new pending session."""
    folder = Path(folder)
    assignments = {int(key): value for key, value in (mic_assignments or {}).items()}
    result = classify_folder(folder, assignments, rename_master=rename_master)
    return MovieSession(
        movie_title=movie_title or folder.name,
        date=session_date or date.today(),
        folder_path=folder,
        mic_assignments=assignments,
        participants_present=[name for _, name in sorted(assignments.items()) if name],
        audio_files=result.files,
    )
