"""Session, audio file and analysis result entities."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

__all__ = [
    "AudioFile",
    "AudioProcessingStatus",
    "CategoryResults",
    "CategoryWinner",
    "FileRole",
    "MovieSession",
    "PurgeResult",
    "QuestionAnswer",
    "RunnerUp",
    "SessionStats",
    "SessionStatus",
    "SpeakerStats",
    "TopFiveEntry",
    "TopFiveList",
    "TranscriptionListItem",
    "utcnow",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return None


def _opt_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _opt_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _opt_path(value: object) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value))


class AudioProcessingStatus(str, Enum):
    """Lifecycle of a single audio file through the pipeline."""

    PENDING = "pending"
    UPLOADING = "uploading"
    CONVERTING_TO_MP3 = "converting_to_mp3"
    FAILED_MP3 = "failed_mp3"
    PROCESSED_MP3 = "processed_mp3"
    UPLOADING_TO_GLADIA = "uploading_to_gladia"
    UPLOADED_TO_GLADIA = "uploaded_to_gladia"
    TRANSCRIBING = "transcribing"
    TRANSCRIPTION_COMPLETE = "transcription_complete"
    PROCESSING_WITH_AI = "processing_with_ai"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_failed(self) -> bool:
        return self in (AudioProcessingStatus.FAILED, AudioProcessingStatus.FAILED_MP3)


class SessionStatus(str, Enum):
    """Aggregate status of a movie session."""

    PENDING = "pending"
    VALIDATING = "validating"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_in_flight(self) -> bool:
        return self in (
            SessionStatus.VALIDATING,
            SessionStatus.TRANSCRIBING,
            SessionStatus.ANALYZING,
        )


class FileRole(str, Enum):
    """What a track carries, as inferred from its filename."""

    MIC = "mic"
    PHONE = "phone"
    SOUND_PAD = "sound_pad"
    MASTER = "master"
    OTHER = "other"


@dataclass(slots=True)
class AudioFile:
    """One physical recording track inside a session folder."""

    file_name: str
    file_path: Path
    file_id: str = field(default_factory=_new_id)
    file_size_bytes: int = 0
    speaker_number: int | None = None
    is_master_recording: bool = False
    role: FileRole = FileRole.OTHER
    duration_seconds: float | None = None
    mp3_path: Path | None = None
    audio_url: str | None = None
    transcript_id: str | None = None
    transcript_text: str | None = None
    transcript_path: Path | None = None
    conversion_error: str | None = None
    processing_status: AudioProcessingStatus = AudioProcessingStatus.PENDING
    current_step: str = "Waiting to upload"
    progress_percentage: float = 0.0
    can_retry: bool = False
    last_updated: datetime = field(default_factory=utcnow)
    converted_at: datetime | None = None
    uploaded_at: datetime | None = None
    processed_at: datetime | None = None

    @property
    def extension(self) -> str:
        return Path(self.file_name).suffix.lower()

    @property
    def upload_source(self) -> Path:
        """File that should be sent to the transcription provider."""
        return self.mp3_path or self.file_path

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript_text and self.transcript_text.strip())

    def touch(self) -> None:
        self.last_updated = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "file_path": str(self.file_path),
            "file_size_bytes": self.file_size_bytes,
            "speaker_number": self.speaker_number,
            "is_master_recording": self.is_master_recording,
            "role": self.role.value,
            "duration_seconds": self.duration_seconds,
            "mp3_path": str(self.mp3_path) if self.mp3_path else None,
            "audio_url": self.audio_url,
            "transcript_id": self.transcript_id,
            "transcript_text": self.transcript_text,
            "transcript_path": str(self.transcript_path) if self.transcript_path else None,
            "conversion_error": self.conversion_error,
            "processing_status": self.processing_status.value,
            "current_step": self.current_step,
            "progress_percentage": self.progress_percentage,
            "can_retry": self.can_retry,
            "last_updated": _dt_to_str(self.last_updated),
            "converted_at": _dt_to_str(self.converted_at),
            "uploaded_at": _dt_to_str(self.uploaded_at),
            "processed_at": _dt_to_str(self.processed_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AudioFile:
        duration = data.get("duration_seconds")
        return cls(
            file_id=str(data.get("file_id") or _new_id()),
            file_name=str(data["file_name"]),
            file_path=Path(str(data["file_path"])),
            file_size_bytes=int(data.get("file_size_bytes") or 0),
            speaker_number=_opt_int(data.get("speaker_number")),
            is_master_recording=bool(data.get("is_master_recording", False)),
            role=FileRole(data.get("role") or FileRole.OTHER.value),
            duration_seconds=float(duration) if duration is not None else None,
            mp3_path=_opt_path(data.get("mp3_path")),
            audio_url=_opt_str(data.get("audio_url")),
            transcript_id=_opt_str(data.get("transcript_id")),
            transcript_text=data.get("transcript_text"),
            transcript_path=_opt_path(data.get("transcript_path")),
            conversion_error=data.get("conversion_error"),
            processing_status=AudioProcessingStatus(
                data.get("processing_status") or AudioProcessingStatus.PENDING.value
            ),
            current_step=str(data.get("current_step") or "Waiting to upload"),
            progress_percentage=float(data.get("progress_percentage") or 0.0),
            can_retry=bool(data.get("can_retry", False)),
            last_updated=_dt_from_str(data.get("last_updated")) or utcnow(),
            converted_at=_dt_from_str(data.get("converted_at")),
            uploaded_at=_dt_from_str(data.get("uploaded_at")),
            processed_at=_dt_from_str(data.get("processed_at")),
        )


# ---------------------------------------------------------------------- #
# Analysis results
# ---------------------------------------------------------------------- #
@dataclass(slots=True)
class RunnerUp:
    speaker: str
    timestamp: str
    brief_description: str
    place: int


@dataclass(slots=True)
class CategoryWinner:
    """Winning excerpt for one award-style category."""

    speaker: str = "Unknown"
    timestamp: str = "0:00"
    quote: str = "No quote available"
    setup: str = ""
    group_reaction: str = ""
    why_its_great: str = ""
    audio_quality: str = "Clear"
    entertainment_score: int = 5
    runners_up: list[RunnerUp] = field(default_factory=list)
    clip_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker": self.speaker,
            "timestamp": self.timestamp,
            "quote": self.quote,
            "setup": self.setup,
            "group_reaction": self.group_reaction,
            "why_its_great": self.why_its_great,
            "audio_quality": self.audio_quality,
            "entertainment_score": self.entertainment_score,
            "runners_up": [
                {
                    "speaker": item.speaker,
                    "timestamp": item.timestamp,
                    "brief_description": item.brief_description,
                    "place": item.place,
                }
                for item in self.runners_up
            ],
            "clip_path": str(self.clip_path) if self.clip_path else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CategoryWinner:
        return cls(
            speaker=str(data.get("speaker", "Unknown")),
            timestamp=str(data.get("timestamp", "0:00")),
            quote=str(data.get("quote", "No quote available")),
            setup=str(data.get("setup", "")),
            group_reaction=str(data.get("group_reaction", "")),
            why_its_great=str(data.get("why_its_great", "")),
            audio_quality=str(data.get("audio_quality", "Clear")),
            entertainment_score=int(data.get("entertainment_score", 5)),
            runners_up=[
                RunnerUp(
                    speaker=str(item.get("speaker", "Unknown")),
                    timestamp=str(item.get("timestamp", "0:00")),
                    brief_description=str(item.get("brief_description", "")),
                    place=int(item.get("place", index + 2)),
                )
                for index, item in enumerate(data.get("runners_up") or [])
            ],
            clip_path=_opt_path(data.get("clip_path")),
        )


@dataclass(slots=True)
class TopFiveEntry:
    rank: int
    speaker: str = "Unknown"
    timestamp: str = "0:00"
    quote: str = "No quote available"
    context: str = ""
    score: float = 0.0
    reasoning: str = ""
    source_audio_file: str | None = None
    clip_path: Path | None = None


@dataclass(slots=True)
class TopFiveList:
    entries: list[TopFiveEntry] = field(default_factory=list)

    def to_list(self) -> list[dict[str, Any]]:
        return [
            {
                "rank": entry.rank,
                "speaker": entry.speaker,
                "timestamp": entry.timestamp,
                "quote": entry.quote,
                "context": entry.context,
                "score": entry.score,
                "reasoning": entry.reasoning,
                "source_audio_file": entry.source_audio_file,
                "clip_path": str(entry.clip_path) if entry.clip_path else None,
            }
            for entry in self.entries
        ]

    @classmethod
    def from_list(cls, items: Any) -> TopFiveList:
        entries = []
        for index, item in enumerate(items or []):
            if not isinstance(item, Mapping):
                continue
            entries.append(
                TopFiveEntry(
                    rank=int(item.get("rank", index + 1)),
                    speaker=str(item.get("speaker", "Unknown")),
                    timestamp=str(item.get("timestamp", "0:00")),
                    quote=str(item.get("quote", "No quote available")),
                    context=str(item.get("context", "")),
                    score=float(item.get("score", 0.0)),
                    reasoning=str(item.get("reasoning", "")),
                    source_audio_file=_opt_str(item.get("source_audio_file")),
                    clip_path=_opt_path(item.get("clip_path")),
                )
            )
        return cls(entries=entries)


@dataclass(slots=True)
class QuestionAnswer:
    question: str
    speaker: str = "Unknown"
    answer: str = ""
    timestamp: str = "0:00"


@dataclass(slots=True)
class CategoryResults:
    """Award-style category winners plus the two ranked quote lists."""

    winners: dict[str, CategoryWinner] = field(default_factory=dict)
    funniest_sentences: TopFiveList = field(default_factory=TopFiveList)
    most_bland_comments: TopFiveList = field(default_factory=TopFiveList)
    opening_questions: list[QuestionAnswer] = field(default_factory=list)

    def average_score(self) -> float | None:
        scores = [winner.entertainment_score for winner in self.winners.values()]
        if not scores:
            return None
        return sum(scores) / len(scores)

    def to_dict(self) -> dict[str, Any]:
        return {
            "winners": {key: winner.to_dict() for key, winner in self.winners.items()},
            "funniest_sentences": self.funniest_sentences.to_list(),
            "most_bland_comments": self.most_bland_comments.to_list(),
            "opening_questions": [
                {
                    "question": item.question,
                    "speaker": item.speaker,
                    "answer": item.answer,
                    "timestamp": item.timestamp,
                }
                for item in self.opening_questions
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CategoryResults:
        winners = data.get("winners") or {}
        return cls(
            winners={str(key): CategoryWinner.from_dict(value) for key, value in winners.items()},
            funniest_sentences=TopFiveList.from_list(data.get("funniest_sentences")),
            most_bland_comments=TopFiveList.from_list(data.get("most_bland_comments")),
            opening_questions=[
                QuestionAnswer(
                    question=str(item.get("question", "")),
                    speaker=str(item.get("speaker", "Unknown")),
                    answer=str(item.get("answer", "")),
                    timestamp=str(item.get("timestamp", "0:00")),
                )
                for item in data.get("opening_questions") or []
            ],
        )


@dataclass(slots=True)
class SpeakerStats:
    word_count: int = 0
    talk_time_seconds: float = 0.0
    question_count: int = 0
    interruption_count: int = 0
    laughter_count: int = 0
    profanity_count: int = 0


_SPEAKER_FIELDS = (
    "word_count",
    "talk_time_seconds",
    "question_count",
    "interruption_count",
    "laughter_count",
    "profanity_count",
)


@dataclass(slots=True)
class SessionStats:
    """Per-speaker statistics and the superlatives derived from them."""

    speakers: dict[str, SpeakerStats] = field(default_factory=dict)
    conversation_tone: str = ""
    energy_level: str = "Medium"
    highlight_moments: list[str] = field(default_factory=list)
    total_duration_seconds: float | None = None

    def _leader(self, attribute: str, *, lowest: bool = False) -> str | None:
        candidates = [
            (getattr(stats, attribute), name)
            for name, stats in self.speakers.items()
            if lowest or getattr(stats, attribute) > 0
        ]
        if not candidates:
            return None
        # Ties resolve alphabetically so repeated runs report the same name.
        candidates.sort(key=lambda item: (-item[0] if not lowest else item[0], item[1]))
        return candidates[0][1]

    @property
    def most_talkative(self) -> str | None:
        return self._leader("word_count")

    @property
    def quietest(self) -> str | None:
        return self._leader("word_count", lowest=True)

    @property
    def most_inquisitive(self) -> str | None:
        return self._leader("question_count")

    @property
    def biggest_interruptor(self) -> str | None:
        return self._leader("interruption_count")

    @property
    def funniest(self) -> str | None:
        return self._leader("laughter_count")

    @property
    def most_profane(self) -> str | None:
        return self._leader("profanity_count")

    @property
    def total_words(self) -> int:
        return sum(stats.word_count for stats in self.speakers.values())

    @property
    def total_questions(self) -> int:
        return sum(stats.question_count for stats in self.speakers.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "speakers": {
                name: {key: getattr(stats, key) for key in _SPEAKER_FIELDS}
                for name, stats in self.speakers.items()
            },
            "conversation_tone": self.conversation_tone,
            "energy_level": self.energy_level,
            "highlight_moments": list(self.highlight_moments),
            "total_duration_seconds": self.total_duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionStats:
        speakers = {
            str(name): SpeakerStats(
                **{key: values[key] for key in _SPEAKER_FIELDS if key in values}
            )
            for name, values in (data.get("speakers") or {}).items()
        }
        duration = data.get("total_duration_seconds")
        return cls(
            speakers=speakers,
            conversation_tone=str(data.get("conversation_tone", "")),
            energy_level=str(data.get("energy_level", "Medium")),
            highlight_moments=[str(item) for item in data.get("highlight_moments") or []],
            total_duration_seconds=float(duration) if duration is not None else None,
        )


# ---------------------------------------------------------------------- #
# Session aggregate
# ---------------------------------------------------------------------- #
@dataclass(slots=True)
class MovieSession:
    """One meeting's recordings plus the analysis derived from them."""

    movie_title: str
    date: date
    folder_path: Path
    session_id: str = field(default_factory=_new_id)
    mic_assignments: dict[int, str] = field(default_factory=dict)
    participants_present: list[str] = field(default_factory=list)
    participants_absent: list[str] = field(default_factory=list)
    audio_files: list[AudioFile] = field(default_factory=list)
    status: SessionStatus = SessionStatus.PENDING
    error_message: str | None = None
    session_stats: SessionStats | None = None
    category_results: CategoryResults | None = None
    raw_analysis_response: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None

    @property
    def master_file(self) -> AudioFile | None:
        return next((item for item in self.audio_files if item.is_master_recording), None)

    @property
    def participant_names(self) -> list[str]:
        names = [name for _, name in sorted(self.mic_assignments.items()) if name]
        for name in self.participants_present:
            if name not in names:
                names.append(name)
        return names

    @property
    def speaker_count(self) -> int:
        """Number of distinct speakers expected on the master mix."""
        assigned = [name for name in self.mic_assignments.values() if name and name.strip()]
        return len(assigned) or 2

    def find_file(self, file_id: str) -> AudioFile | None:
        return next((item for item in self.audio_files if item.file_id == file_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "movie_title": self.movie_title,
            "date": self.date.isoformat(),
            "folder_path": str(self.folder_path),
            "mic_assignments": {str(key): value for key, value in self.mic_assignments.items()},
            "participants_present": list(self.participants_present),
            "participants_absent": list(self.participants_absent),
            "audio_files": [item.to_dict() for item in self.audio_files],
            "status": self.status.value,
            "error_message": self.error_message,
            "session_stats": self.session_stats.to_dict() if self.session_stats else None,
            "category_results": (
                self.category_results.to_dict() if self.category_results else None
            ),
            "raw_analysis_response": self.raw_analysis_response,
            "created_at": _dt_to_str(self.created_at),
            "processed_at": _dt_to_str(self.processed_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MovieSession:
        stats = data.get("session_stats")
        results = data.get("category_results")
        return cls(
            session_id=str(data["session_id"]),
            movie_title=str(data.get("movie_title", "")),
            date=date.fromisoformat(str(data["date"])),
            folder_path=Path(str(data["folder_path"])),
            mic_assignments={
                int(key): str(value) for key, value in (data.get("mic_assignments") or {}).items()
            },
            participants_present=list(data.get("participants_present") or []),
            participants_absent=list(data.get("participants_absent") or []),
            audio_files=[AudioFile.from_dict(item) for item in data.get("audio_files") or []],
            status=SessionStatus(data.get("status") or SessionStatus.PENDING.value),
            error_message=data.get("error_message"),
            session_stats=SessionStats.from_dict(stats) if stats else None,
            category_results=CategoryResults.from_dict(results) if results else None,
            raw_analysis_response=data.get("raw_analysis_response"),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            processed_at=_dt_from_str(data.get("processed_at")),
        )


# ---------------------------------------------------------------------- #
# Remote account accounting (never persisted)
# ---------------------------------------------------------------------- #
@dataclass(slots=True)
class TranscriptionListItem:
    remote_id: str
    status: str | None = None
    created_at: str | None = None
    file_name: str | None = None


@dataclass(slots=True)
class PurgeResult:
    total_found: int = 0
    total_deleted: int = 0
    total_failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    critical_error: str | None = None
    aborted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.critical_error is None and not self.aborted and self.total_failed == 0
