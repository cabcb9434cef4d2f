"""Local per-speaker statistics computed from mapped transcripts."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import fields

from ...models import CategoryResults, FileRole, MovieSession, SessionStats, SpeakerStats
from ..speaker_mapping import SOUND_PAD_LABEL
from .prompt import MappedTranscript, mapped_transcripts

__all__ = ["compute_transcript_stats", "energy_level_for", "merge_stats"]

LINE_PATTERN = re.compile(r"^\s*(?P<speaker>[^:\n]{1,60}?):\s*(?P<text>.*)$")
LAUGHTER_PATTERN = re.compile(
    r"\b(?:ha(?:ha)+|he(?:he)+|lol|lmao)\b|[\[(](?:laugh(?:s|ter|ing)?)[\])]",
    re.IGNORECASE,
)
PROFANITY_PATTERN = re.compile(
    r"\b(?:fuck\w*|shit\w*|damn\w*|hell|bitch\w*|ass|asshole\w*|crap\w*|bastard\w*)\b",
    re.IGNORECASE,
)
WORD_PATTERN = re.compile(r"[\w']+")
# A turn that trails off into a dash was cut short by whoever speaks next.
CUT_OFF_PATTERN = re.compile(r"(?:--|-|—|\.\.\.)\s*$")
_SPEAKER_FIELDS = tuple(item.name for item in fields(SpeakerStats))


def compute_transcript_stats(session: MovieSession) -> SessionStats:
    """Count words, questions, laughter, profanity and interruptions per speaker.

    Dedicated mic tracks give clean attribution, so when any exist only they are counted;
    otherwise the master (or other mixed) recordings are used. Sound pad lines never count.
    """
    transcripts = _select_sources(mapped_transcripts(session))
    speakers: dict[str, SpeakerStats] = {}

    for transcript in transcripts:
        previous: tuple[str, str] | None = None
        for raw_line in transcript.text.splitlines():
            match = LINE_PATTERN.match(raw_line)
            if not match:
                continue
            name = match["speaker"].strip()
            text = match["text"].strip()
            if not text or name == SOUND_PAD_LABEL:
                continue

            stats = speakers.setdefault(name, SpeakerStats())
            stats.word_count += len(WORD_PATTERN.findall(text))
            stats.question_count += text.count("?")
            stats.laughter_count += len(LAUGHTER_PATTERN.findall(text))
            stats.profanity_count += len(PROFANITY_PATTERN.findall(text))
            if previous is not None and previous[0] != name and CUT_OFF_PATTERN.search(previous[1]):
                stats.interruption_count += 1
            previous = (name, text)

    durations = [item.duration_seconds for item in session.audio_files if item.duration_seconds]
    return SessionStats(
        speakers=speakers,
        total_duration_seconds=max(durations) if durations else None,
    )


def energy_level_for(results: CategoryResults | None, default: str = "Medium") -> str:
    """High when the mean category score is at least 8, Medium from 6, else Low."""
    average = results.average_score() if results is not None else None
    if average is None:
        return default
    if average >= 8:
        return "High"
    if average >= 6:
        return "Medium"
    return "Low"


def merge_stats(
    local: SessionStats,
    reported: SessionStats | None,
    results: CategoryResults | None,
) -> SessionStats:
    """Combine model-reported statistics with local counts.

    Values the model reported win; local counts fill every field it left at zero.
    """
    merged = SessionStats(
        speakers={name: _copy(stats) for name, stats in local.speakers.items()},
        total_duration_seconds=local.total_duration_seconds,
    )
    if reported is not None:
        merged.conversation_tone = reported.conversation_tone
        merged.highlight_moments = list(reported.highlight_moments)
        for name, values in reported.speakers.items():
            target = merged.speakers.setdefault(name, SpeakerStats())
            for attribute in _SPEAKER_FIELDS:
                value = getattr(values, attribute)
                if value:
                    setattr(target, attribute, value)
        if reported.total_duration_seconds:
            merged.total_duration_seconds = reported.total_duration_seconds

    merged.energy_level = energy_level_for(
        results, default=reported.energy_level if reported is not None else "Medium"
    )
    return merged


def _select_sources(transcripts: Sequence[MappedTranscript]) -> list[MappedTranscript]:
    mics = [item for item in transcripts if item.audio_file.role == FileRole.MIC]
    if mics:
        return mics
    return [item for item in transcripts if item.audio_file.role != FileRole.SOUND_PAD]


def _copy(stats: SpeakerStats) -> SpeakerStats:
    return SpeakerStats(**{attribute: getattr(stats, attribute) for attribute in _SPEAKER_FIELDS})
