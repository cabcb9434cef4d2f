"""Finite-state lifecycle of one audio file through the processing pipeline.

Legal moves are encoded as an explicit directed graph instead of comparing enum ordinals, so that
"is this file already past stage X" is a reachability question over the graph::

    PENDING -> UPLOADING -> CONVERTING_TO_MP3 -> PROCESSED_MP3 -> UPLOADING_TO_GLADIA
            -> UPLOADED_TO_GLADIA -> TRANSCRIBING -> TRANSCRIPTION_COMPLETE
            -> PROCESSING_WITH_AI -> COMPLETE

    CONVERTING_TO_MP3 -> FAILED_MP3 -> CONVERTING_TO_MP3   (retry edge)
    <any non-terminal state> -> FAILED
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from ..exceptions import IllegalTransitionError
from ..models import AudioFile, AudioProcessingStatus
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

S = AudioProcessingStatus

__all__ = [
    "CONVERTIBLE_EXTENSIONS",
    "PASSTHROUGH_EXTENSIONS",
    "Stage",
    "can_advance",
    "can_start_step",
    "fail",
    "initial_stage_for",
    "is_at_or_past",
    "reset_to_state",
    "transition",
]

PASSTHROUGH_EXTENSIONS = frozenset({".mp3"})
CONVERTIBLE_EXTENSIONS = frozenset(
    {
        ".wav",
        ".ogg",
        ".flac",
        ".aac",
        ".m4a",
        ".wma",
        ".mp4",
        ".mov",
        ".avi",
        ".mkv",
        ".webm",
        ".m4v",
        ".3gp",
    }
)

_ADVANCE: Mapping[S, frozenset[S]] = {
    S.PENDING: frozenset({S.UPLOADING, S.CONVERTING_TO_MP3}),
    S.UPLOADING: frozenset({S.CONVERTING_TO_MP3}),
    S.CONVERTING_TO_MP3: frozenset({S.PROCESSED_MP3, S.FAILED_MP3}),
    S.PROCESSED_MP3: frozenset({S.UPLOADING_TO_GLADIA}),
    S.UPLOADING_TO_GLADIA: frozenset({S.UPLOADED_TO_GLADIA}),
    S.UPLOADED_TO_GLADIA: frozenset({S.TRANSCRIBING}),
    S.TRANSCRIBING: frozenset({S.TRANSCRIPTION_COMPLETE}),
    S.TRANSCRIPTION_COMPLETE: frozenset({S.PROCESSING_WITH_AI}),
    S.PROCESSING_WITH_AI: frozenset({S.COMPLETE}),
}

# Kept apart from _ADVANCE so the retry loop does not make FAILED_MP3 "past" everything.
_RETRY: Mapping[S, frozenset[S]] = {
    S.FAILED_MP3: frozenset({S.CONVERTING_TO_MP3}),
}

_TERMINAL = frozenset({S.COMPLETE, S.FAILED})

# Statuses during which a stage is actively working; re-entering one restarts the stage.
_WORKING = frozenset(
    {
        S.UPLOADING,
        S.CONVERTING_TO_MP3,
        S.UPLOADING_TO_GLADIA,
        S.TRANSCRIBING,
        S.PROCESSING_WITH_AI,
    }
)

_RESET_STEP_TEXT: Mapping[S, str] = {
    S.PENDING: "Ready to process",
    S.CONVERTING_TO_MP3: "Ready for conversion",
    S.PROCESSED_MP3: "Ready for upload",
    S.UPLOADING_TO_GLADIA: "Ready for upload",
    S.UPLOADED_TO_GLADIA: "Ready for transcription",
    S.TRANSCRIBING: "Ready for transcription",
    S.TRANSCRIPTION_COMPLETE: "Ready for analysis",
}


@dataclass(frozen=True, slots=True)
class _StageSpec:
    label: str
    working: S
    done: S
    prerequisites: frozenset[S]


class Stage(Enum):
    """Pipeline stages in execution order."""

    CONVERT = _StageSpec(
        "convert",
        S.CONVERTING_TO_MP3,
        S.PROCESSED_MP3,
        frozenset({S.PENDING, S.UPLOADING, S.FAILED_MP3}),
    )
    UPLOAD = _StageSpec(
        "upload",
        S.UPLOADING_TO_GLADIA,
        S.UPLOADED_TO_GLADIA,
        frozenset({S.PROCESSED_MP3}),
    )
    TRANSCRIBE = _StageSpec(
        "transcribe",
        S.TRANSCRIBING,
        S.TRANSCRIPTION_COMPLETE,
        frozenset({S.UPLOADED_TO_GLADIA}),
    )
    ANALYZE = _StageSpec(
        "analyze",
        S.PROCESSING_WITH_AI,
        S.COMPLETE,
        frozenset({S.TRANSCRIPTION_COMPLETE}),
    )

    @property
    def label(self) -> str:
        return self.value.label

    @property
    def working_status(self) -> S:
        return self.value.working

    @property
    def done_status(self) -> S:
        return self.value.done

    @property
    def prerequisites(self) -> frozenset[S]:
        return self.value.prerequisites

    @classmethod
    def ordered(cls) -> list[Stage]:
        return [cls.CONVERT, cls.UPLOAD, cls.TRANSCRIBE, cls.ANALYZE]

    @classmethod
    def from_label(cls, label: str) -> Stage:
        for stage in cls:
            if stage.label == label.lower():
                return stage
        raise ValueError(f"Unknown stage '{label}'.")

    @classmethod
    def for_status(cls, status: S) -> Stage:
        """Stage that a file in ``status`` would run next (or is running)."""
        for stage in cls.ordered():
            if status == stage.working_status or status in stage.prerequisites:
                return stage
        return cls.ANALYZE


# ---------------------------------------------------------------------- #
# Graph queries
# ---------------------------------------------------------------------- #
def can_advance(current: S, target: S) -> bool:
    """Return True when ``current -> target`` is a legal single step."""
    if target == S.FAILED:
        return current not in _TERMINAL
    if current == target:
        return current in _WORKING
    return target in _ADVANCE.get(current, frozenset()) or target in _RETRY.get(
        current, frozenset()
    )


@lru_cache(maxsize=None)
def _reachable_from(start: S) -> frozenset[S]:
    seen = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for nxt in _ADVANCE.get(node, frozenset()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return frozenset(seen)


def is_at_or_past(status: S, milestone: S) -> bool:
    """True when ``status`` equals ``milestone`` or lies downstream of it on the forward graph."""
    return status in _reachable_from(milestone)


def can_start_step(audio_file: AudioFile, stage: Stage) -> bool:
    """Whether the manual action for ``stage`` may be started (or redone) for this file."""
    status = audio_file.processing_status
    if status in stage.prerequisites:
        return True
    return is_at_or_past(status, stage.working_status)


def initial_stage_for(audio_file: AudioFile) -> Stage | None:
    """Stage a freshly discovered file starts in, or None for unsupported media."""
    extension = audio_file.extension
    if extension in PASSTHROUGH_EXTENSIONS or extension in CONVERTIBLE_EXTENSIONS:
        return Stage.CONVERT
    return None


# ---------------------------------------------------------------------- #
# Mutations
# ---------------------------------------------------------------------- #
def transition(audio_file: AudioFile, target: S, *, step: str | None = None) -> None:
    """Move ``audio_file`` one legal step forward, resetting stage-local progress."""
    current = audio_file.processing_status
    if target == S.FAILED:
        raise IllegalTransitionError("Use fail() to move a file into the failed state.")
    if not can_advance(current, target):
        raise IllegalTransitionError(
            f"Cannot move '{audio_file.file_name}' from {current.value} to {target.value}."
        )
    audio_file.processing_status = target
    audio_file.progress_percentage = 0.0
    if target == S.FAILED_MP3:
        audio_file.can_retry = True
    elif target in _WORKING:
        audio_file.can_retry = False
    if step is not None:
        audio_file.current_step = step
    audio_file.touch()


def fail(audio_file: AudioFile, message: str, *, conversion: bool = False) -> None:
    """Record a per-file failure; the file stays retryable.

    ``conversion`` selects the conversion-specific ``FAILED_MP3`` state, which is only reachable
    while the converter is running.
    """
    current = audio_file.processing_status
    target = S.FAILED_MP3 if conversion else S.FAILED
    if current == target:
        pass
    elif conversion and not can_advance(current, S.FAILED_MP3):
        raise IllegalTransitionError(
            f"Conversion failure reported for '{audio_file.file_name}' in state {current.value}."
        )
    elif not conversion and current in _TERMINAL:
        raise IllegalTransitionError(
            f"Cannot fail '{audio_file.file_name}' from terminal state {current.value}."
        )
    audio_file.processing_status = target
    audio_file.progress_percentage = 0.0
    audio_file.can_retry = True
    audio_file.current_step = f"Failed: {message}"
    if conversion:
        audio_file.conversion_error = message
    audio_file.touch()
    LOGGER.warning("File %s failed: %s", audio_file.file_name, message)


def reset_to_state(audio_file: AudioFile, target: S) -> None:
    """Force ``audio_file`` back to an earlier state ("re-convert", "re-upload", "redo analysis").

    Allowed moves are backward along the forward graph or to ``PENDING``; failed and completed
    files may go back to any earlier state whose artifacts they still hold.
    """
    current = audio_file.processing_status
    if target in (S.FAILED, S.FAILED_MP3):
        raise IllegalTransitionError("Reset targets must be a processing state.")

    backward = target == S.PENDING or is_at_or_past(current, target)
    from_failure = current.is_failed and target != S.COMPLETE
    if not (backward or from_failure):
        raise IllegalTransitionError(
            f"Cannot reset '{audio_file.file_name}' forward from {current.value} to {target.value}."
        )

    missing = _missing_artifact(audio_file, target)
    if missing:
        raise IllegalTransitionError(
            f"Cannot reset '{audio_file.file_name}' to {target.value}: {missing}."
        )

    audio_file.processing_status = target
    audio_file.progress_percentage = 0.0
    audio_file.conversion_error = None
    audio_file.can_retry = False
    audio_file.current_step = _RESET_STEP_TEXT.get(target, "Ready to resume")
    audio_file.touch()
    LOGGER.info("Reset %s from %s to %s", audio_file.file_name, current.value, target.value)


def _missing_artifact(audio_file: AudioFile, target: S) -> str | None:
    if target in (S.PENDING, S.UPLOADING, S.CONVERTING_TO_MP3):
        return None
    if is_at_or_past(target, S.TRANSCRIPTION_COMPLETE):
        return None if audio_file.has_transcript else "no transcript is available"
    if is_at_or_past(target, S.UPLOADED_TO_GLADIA):
        return None if audio_file.audio_url else "the file has not been uploaded"
    if audio_file.mp3_path is None and audio_file.extension not in PASSTHROUGH_EXTENSIONS:
        return "no converted audio is available"
    return None
