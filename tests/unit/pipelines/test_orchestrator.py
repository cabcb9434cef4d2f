"""Tests for the session orchestrator using in-process fakes for every provider."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Any

import pytest

from reel_scribe.exceptions import ConfigurationError, TranscriptionTimeout
from reel_scribe.models import (
    AudioFile,
    AudioProcessingStatus as S,
    FileRole,
    MovieSession,
    SessionStatus,
)
from reel_scribe.pipelines.analysis.stage import RESPONSE_FILENAME, AnalysisStage
from reel_scribe.pipelines.convert import AudioConversionConfig, AudioConverter
from reel_scribe.pipelines.orchestrator import SessionOrchestrator, session_from_folder
from reel_scribe.pipelines.progress import ProgressBus, ProgressEvent
from reel_scribe.pipelines.state_machine import Stage
from reel_scribe.providers.gladia import GladiaError, GladiaSettings, TranscriptResult, Utterance
from reel_scribe.providers.openai_api import OpenAISettings
from reel_scribe.utils.ffmpeg import FFmpegError

ANALYSIS = json.dumps(
    {
        "BestJoke": {"Speaker": "Alice", "Quote": "Subtitles are a spoiler.", "Score": 8},
        "SessionStats": {"ConversationTone": "Warm"},
    }
)


class FakeTranscriber:
    """Stands in for the Gladia client; records every call."""

    def __init__(self, *, configured: bool = True) -> None:
        self.settings = GladiaSettings(api_key_env="TEST_GLADIA_KEY")
        self.is_configured = configured
        self.uploads: list[str] = []
        self.started: list[str] = []
        self.retrieved: list[str] = []
        self.finished: list[str] = []
        self.fail_upload: set[str] = set()
        self.timeout_for: set[str] = set()
        self.on_upload: Callable[[Path], None] | None = None

    def upload(self, path: Path, progress_callback=None) -> str:
        path = Path(path)
        self.uploads.append(path.name)
        if self.on_upload is not None:
            self.on_upload(path)
        if progress_callback is not None:
            progress_callback(5, 10)
            progress_callback(10, 10)
        if path.name in self.fail_upload:
            raise GladiaError("upload rejected")
        self.finished.append(path.name)
        return f"https://audio.example.com/{path.name}"

    def start_transcription(self, audio_url: str, **_kwargs: Any) -> str:
        self.started.append(audio_url)
        return f"tr-{audio_url.rsplit('/', 1)[-1]}"

    def retrieve(self, transcript_id: str, *, on_poll=None, **_kwargs: Any) -> TranscriptResult:
        self.retrieved.append(transcript_id)
        if on_poll is not None:
            on_poll(5.0, 10.0)
        name = transcript_id.removeprefix("tr-")
        if name in self.timeout_for:
            raise TranscriptionTimeout(f"{transcript_id} still processing")
        return TranscriptResult(
            transcript_id=transcript_id,
            utterances=[
                Utterance(speaker=0, text=f"Opening line from {name}."),
                Utterance(speaker=1, text="Was that a question?"),
            ],
            duration_seconds=60.0,
        )


class FakeCompletionClient:
    def __init__(self, response: str = ANALYSIS, *, configured: bool = True) -> None:
        self.settings = OpenAISettings(api_key_env="TEST_OPENAI_KEY")
        self.is_configured = configured
        self.response = response
        self.prompts: list[str] = []
        self.on_complete: Callable[[], None] | None = None

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.on_complete is not None:
            self.on_complete()
        return self.response


class FailingFFmpeg:
    def stream_transcode(self, *_args: Any, **_kwargs: Any) -> None:
        raise FFmpegError("Invalid data found when processing input")


class RecordingClips:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.sessions: list[str] = []
        self.error = error

    def generate_for_session(self, session: MovieSession) -> dict[str, Path]:
        self.sessions.append(session.session_id)
        if self.error is not None:
            raise self.error
        return {}


@pytest.fixture()
def folder(tmp_path: Path) -> Path:
    session_dir = tmp_path / "heat-night"
    session_dir.mkdir()
    for name in ("MIC1.mp3", "MIC2.mp3", "MASTER_MIX.mp3"):
        (session_dir / name).write_bytes(b"ID3" + b"\x00" * 64)
    return session_dir


def make_orchestrator(
    tmp_path: Path,
    *,
    transcriber: FakeTranscriber | None = None,
    completion: FakeCompletionClient | None = None,
    ffmpeg: Any = None,
    bus: ProgressBus | None = None,
    clips: Any = None,
) -> SessionOrchestrator:
    return SessionOrchestrator(
        converter=AudioConverter(AudioConversionConfig(), ffmpeg=ffmpeg),
        transcriber=transcriber or FakeTranscriber(),  # type: ignore[arg-type]
        analysis=AnalysisStage(
            completion or FakeCompletionClient(),  # type: ignore[arg-type]
            tmp_path / "analysis",
        ),
        clips=clips,
        max_workers=2,
        bus=bus,
        progress_min_interval=0.0,
        progress_min_delta=0.0,
    )


def make_session(folder: Path) -> MovieSession:
    return session_from_folder(
        folder, {0: "Alice", 1: "Bob"}, movie_title="Heat", session_date=date(2024, 2, 2)
    )


def file_named(session: MovieSession, name: str) -> AudioFile:
    return next(item for item in session.audio_files if item.file_name == name)


def test_full_run_completes_every_file(tmp_path: Path, folder: Path) -> None:
    bus = ProgressBus()
    events: list[ProgressEvent] = []
    bus.subscribe(events.append)
    transcriber = FakeTranscriber()
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber, bus=bus)
    session = make_session(folder)
    session_updates: list[float] = []
    stages: list[Stage] = []

    orchestrator.process_from_stage(
        session,
        progress_callback=lambda _message, percent: session_updates.append(percent),
        on_stage_complete=lambda _session, stage: stages.append(stage),
    )

    assert session.status == SessionStatus.COMPLETE
    assert all(item.processing_status == S.COMPLETE for item in session.audio_files)
    assert stages == Stage.ordered()
    assert sorted(transcriber.uploads) == ["MASTER_MIX.mp3", "MIC1.mp3", "MIC2.mp3"]
    assert session_updates == sorted(session_updates)
    assert session_updates[-1] == 100.0
    assert session.category_results is not None
    assert session.category_results.winners["best_joke"].speaker == "Alice"

    mic2 = file_named(session, "MIC2.mp3")
    assert mic2.transcript_path == folder / "MIC2.txt"
    assert (folder / "MIC2.txt").read_text(encoding="utf-8").startswith("Bob: Opening line")
    master_text = (folder / "MASTER_MIX.txt").read_text(encoding="utf-8")
    assert master_text.splitlines()[1] == "Bob: Was that a question?"
    assert {event.scope for event in events} == {"session", "file"}
    assert orchestrator.session_progress(session).percent == 100.0


def test_one_failing_upload_does_not_stop_siblings(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber()
    transcriber.fail_upload.add("MIC2.mp3")
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    mic2 = file_named(session, "MIC2.mp3")
    assert mic2.processing_status == S.FAILED
    assert mic2.can_retry is True
    assert "upload rejected" in mic2.current_step
    assert file_named(session, "MIC1.mp3").processing_status == S.COMPLETE
    assert file_named(session, "MASTER_MIX.mp3").processing_status == S.COMPLETE
    assert session.status == SessionStatus.COMPLETE

    progress = orchestrator.session_progress(session)
    assert (progress.completed, progress.failed, progress.total) == (2, 1, 3)
    assert progress.percent == pytest.approx(200.0 / 3)


def test_conversion_failure_is_isolated(tmp_path: Path, folder: Path) -> None:
    (folder / "PHONE.wav").write_bytes(b"RIFF" + b"\x00" * 64)
    orchestrator = make_orchestrator(tmp_path, ffmpeg=FailingFFmpeg())
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    phone = file_named(session, "PHONE.wav")
    assert phone.role is FileRole.PHONE
    assert phone.processing_status == S.FAILED_MP3
    assert "Invalid data" in (phone.conversion_error or "")
    assert file_named(session, "MIC1.mp3").processing_status == S.COMPLETE


def test_resume_skips_files_past_a_stage(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber()
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)
    done = file_named(session, "MIC1.mp3")
    done.processing_status = S.TRANSCRIPTION_COMPLETE
    done.audio_url = "https://audio.example.com/MIC1.mp3"
    done.transcript_text = "Speaker 1: Already transcribed."

    orchestrator.process_from_stage(session)

    assert "MIC1.mp3" not in transcriber.uploads
    assert sorted(transcriber.uploads) == ["MASTER_MIX.mp3", "MIC2.mp3"]
    assert done.processing_status == S.COMPLETE
    assert session.status == SessionStatus.COMPLETE


def test_start_at_upload_leaves_analysis_pending(tmp_path: Path, folder: Path) -> None:
    completion = FakeCompletionClient()
    orchestrator = make_orchestrator(tmp_path, completion=completion)
    session = make_session(folder)
    for audio_file in session.audio_files:
        audio_file.processing_status = S.PROCESSED_MP3

    orchestrator.process_from_stage(session, Stage.UPLOAD)

    assert all(item.processing_status == S.COMPLETE for item in session.audio_files)
    assert len(completion.prompts) == 1


def test_analysis_deferred_until_all_files_transcribed(tmp_path: Path, folder: Path) -> None:
    completion = FakeCompletionClient()
    orchestrator = make_orchestrator(tmp_path, completion=completion)
    session = make_session(folder)
    for audio_file in session.audio_files:
        audio_file.processing_status = S.TRANSCRIPTION_COMPLETE
        audio_file.transcript_text = "Speaker 1: hi"
    file_named(session, "MIC2.mp3").processing_status = S.PROCESSED_MP3
    file_named(session, "MIC2.mp3").transcript_text = None

    orchestrator.process_from_stage(session, Stage.ANALYZE)

    assert session.status == SessionStatus.PENDING
    assert "waiting for 1" in (session.error_message or "")
    assert completion.prompts == []
    assert file_named(session, "MIC1.mp3").processing_status == S.TRANSCRIPTION_COMPLETE


def test_timeout_keeps_transcript_id_for_retry(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber()
    transcriber.timeout_for.add("MIC1.mp3")
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    mic1 = file_named(session, "MIC1.mp3")
    assert mic1.processing_status == S.FAILED
    assert mic1.transcript_id == "tr-MIC1.mp3"
    assert session.status == SessionStatus.COMPLETE

    transcriber.timeout_for.clear()
    reset = orchestrator.retry_failed(session)
    assert reset == [mic1]
    assert mic1.processing_status == S.UPLOADED_TO_GLADIA

    started_before = len(transcriber.started)
    orchestrator.process_from_stage(session)

    assert mic1.processing_status == S.COMPLETE
    assert len(transcriber.started) == started_before
    assert transcriber.uploads.count("MIC1.mp3") == 1


def test_weighted_aggregate_progress(tmp_path: Path, folder: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    session = make_session(folder)
    complete, running, failed = session.audio_files
    complete.processing_status = S.COMPLETE
    running.processing_status = S.TRANSCRIBING
    running.progress_percentage = 50.0
    failed.processing_status = S.FAILED

    progress = orchestrator.session_progress(session)

    assert progress.percent == pytest.approx(50.0)
    assert (progress.completed, progress.in_progress, progress.failed) == (1, 1, 1)


def test_cancelled_file_is_skipped(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber()
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)
    mic2 = file_named(session, "MIC2.mp3")

    assert orchestrator.cancel_file(session, mic2.file_id, "wrong file") is True

    orchestrator.process_from_stage(session)

    assert mic2.processing_status == S.FAILED
    assert mic2.current_step == "Cancelled: wrong file"
    assert "MIC2.mp3" not in transcriber.uploads
    assert orchestrator.cancel_file(session, mic2.file_id) is False
    with pytest.raises(KeyError):
        orchestrator.cancel_file(session, "missing")


def test_cancel_during_upload_discards_result(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber()
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)
    mic1 = file_named(session, "MIC1.mp3")

    def cancel_mic1(path: Path) -> None:
        if path.name == "MIC1.mp3":
            orchestrator.cancel_file(session, mic1.file_id, "stopped")

    transcriber.on_upload = cancel_mic1

    orchestrator.process_from_stage(session)

    assert mic1.processing_status == S.FAILED
    assert mic1.current_step == "Cancelled: stopped"
    assert mic1.audio_url is None
    assert "MIC1.mp3" in transcriber.finished
    assert "tr-MIC1.mp3" not in transcriber.retrieved
    assert file_named(session, "MIC2.mp3").processing_status == S.COMPLETE


def test_cancel_during_analysis_keeps_file_cancelled(tmp_path: Path, folder: Path) -> None:
    completion = FakeCompletionClient()
    orchestrator = make_orchestrator(tmp_path, completion=completion)
    session = make_session(folder)
    mic1 = file_named(session, "MIC1.mp3")
    completion.on_complete = lambda: orchestrator.cancel_file(session, mic1.file_id, "late")

    orchestrator.process_from_stage(session)

    assert mic1.processing_status == S.FAILED
    assert mic1.current_step == "Cancelled: late"
    assert file_named(session, "MIC2.mp3").processing_status == S.COMPLETE
    assert file_named(session, "MASTER_MIX.mp3").processing_status == S.COMPLETE
    assert session.status == SessionStatus.COMPLETE


def test_resume_from_uploaded_only_transcribes(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber()
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)
    mic1 = file_named(session, "MIC1.mp3")
    mic1.processing_status = S.UPLOADED_TO_GLADIA
    mic1.audio_url = "https://audio.example.com/MIC1.mp3"

    orchestrator.process_from_stage(session)

    assert "MIC1.mp3" not in transcriber.uploads
    assert "tr-MIC1.mp3" in transcriber.retrieved
    assert mic1.converted_at is None
    assert mic1.transcript_text is not None
    assert mic1.processing_status == S.COMPLETE


def test_clips_follow_successful_analysis(tmp_path: Path, folder: Path) -> None:
    clips = RecordingClips()
    orchestrator = make_orchestrator(tmp_path, clips=clips)
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    assert clips.sessions == [session.session_id]
    assert session.status == SessionStatus.COMPLETE


def test_clip_errors_do_not_fail_the_session(tmp_path: Path, folder: Path) -> None:
    clips = RecordingClips(error=RuntimeError("disk full"))
    orchestrator = make_orchestrator(tmp_path, clips=clips)
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    assert clips.sessions == [session.session_id]
    assert session.status == SessionStatus.COMPLETE
    assert all(item.processing_status == S.COMPLETE for item in session.audio_files)


def test_failed_analysis_skips_clips(tmp_path: Path, folder: Path) -> None:
    clips = RecordingClips()
    orchestrator = make_orchestrator(
        tmp_path, completion=FakeCompletionClient("No verdicts tonight."), clips=clips
    )
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    assert session.status == SessionStatus.FAILED
    assert clips.sessions == []


def test_missing_provider_key_fails_fast(tmp_path: Path, folder: Path) -> None:
    transcriber = FakeTranscriber(configured=False)
    orchestrator = make_orchestrator(tmp_path, transcriber=transcriber)
    session = make_session(folder)

    with pytest.raises(ConfigurationError, match="TEST_GLADIA_KEY"):
        orchestrator.process_from_stage(session)

    assert session.status == SessionStatus.PENDING
    assert all(item.processing_status == S.PENDING for item in session.audio_files)
    assert transcriber.uploads == []


def test_analysis_only_needs_completion_key(tmp_path: Path, folder: Path) -> None:
    orchestrator = make_orchestrator(
        tmp_path,
        transcriber=FakeTranscriber(configured=False),
        completion=FakeCompletionClient(configured=False),
    )

    with pytest.raises(ConfigurationError, match="TEST_OPENAI_KEY"):
        orchestrator.ensure_configured(Stage.ANALYZE)
    with pytest.raises(ConfigurationError, match="TEST_GLADIA_KEY"):
        orchestrator.ensure_configured(Stage.TRANSCRIBE)


def test_unparseable_analysis_can_be_reprocessed(tmp_path: Path, folder: Path) -> None:
    completion = FakeCompletionClient("I'd rather talk about the popcorn.")
    orchestrator = make_orchestrator(tmp_path, completion=completion)
    session = make_session(folder)

    orchestrator.process_from_stage(session)

    assert session.status == SessionStatus.FAILED
    assert all(item.processing_status == S.FAILED for item in session.audio_files)
    assert session.raw_analysis_response == "I'd rather talk about the popcorn."

    session.raw_analysis_response = None
    cached = tmp_path / "analysis" / session.session_id / RESPONSE_FILENAME
    cached.write_text(ANALYSIS, encoding="utf-8")

    assert orchestrator.reprocess_cached_analysis(session) is True

    assert session.status == SessionStatus.COMPLETE
    assert all(item.processing_status == S.COMPLETE for item in session.audio_files)
    assert len(completion.prompts) == 1


def test_session_without_files_fails(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    orchestrator = make_orchestrator(tmp_path)
    session = make_session(empty)

    orchestrator.process_from_stage(session)

    assert session.status == SessionStatus.FAILED
    assert session.error_message == "No audio files found for this session."


def test_missing_source_fails_only_that_file(tmp_path: Path, folder: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    session = make_session(folder)
    (folder / "MIC2.mp3").unlink()

    orchestrator.process_from_stage(session)

    mic2 = file_named(session, "MIC2.mp3")
    assert mic2.processing_status == S.FAILED
    assert "Source file not found" in mic2.current_step
    assert file_named(session, "MIC1.mp3").processing_status == S.COMPLETE
