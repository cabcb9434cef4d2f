"""Tests for local transcript statistics and their merge with model output."""

from __future__ import annotations

from datetime import date
from pathlib import Path

from reel_scribe.models import (
    AudioFile,
    CategoryResults,
    CategoryWinner,
    FileRole,
    MovieSession,
    SessionStats,
    SpeakerStats,
)
from reel_scribe.pipelines.analysis.stats import (
    compute_transcript_stats,
    energy_level_for,
    merge_stats,
)


def make_file(
    name: str,
    role: FileRole,
    transcript: str,
    speaker: int | None = None,
    duration: float | None = None,
) -> AudioFile:
    return AudioFile(
        file_name=name,
        file_path=Path("/sessions/demo") / name,
        role=role,
        speaker_number=speaker,
        transcript_text=transcript,
        duration_seconds=duration,
    )


def make_session(files: list[AudioFile]) -> MovieSession:
    return MovieSession(
        movie_title="Heat",
        date=date(2024, 3, 1),
        folder_path=Path("/sessions/demo"),
        mic_assignments={0: "Alice", 1: "Bob"},
        audio_files=files,
    )


def results_with_scores(*scores: int) -> CategoryResults:
    winners = {
        f"category_{index}": CategoryWinner(entertainment_score=score)
        for index, score in enumerate(scores)
    }
    return CategoryResults(winners=winners)


def test_master_transcript_counts_per_speaker() -> None:
    transcript = "\n".join(
        [
            "Speaker 1: Did you see the ending? I loved it, haha",
            "Speaker 2: Damn, that was long --",
            "Speaker 1: Wait, what?",
            "Speaker 2: Honestly (laughs) it was fine.",
        ]
    )
    session = make_session(
        [
            make_file("MASTER_MIX.wav", FileRole.MASTER, transcript, duration=3600.0),
            make_file("SOUND_PAD.wav", FileRole.SOUND_PAD, "Speaker 1: [airhorn]", duration=10.0),
        ]
    )

    stats = compute_transcript_stats(session)

    assert set(stats.speakers) == {"Alice", "Bob"}
    alice = stats.speakers["Alice"]
    bob = stats.speakers["Bob"]
    assert alice.question_count == 2
    assert alice.laughter_count == 1
    assert alice.interruption_count == 1
    assert bob.profanity_count == 1
    assert bob.laughter_count == 1
    assert bob.word_count == 9
    assert stats.total_duration_seconds == 3600.0


def test_mic_tracks_take_precedence_over_master() -> None:
    session = make_session(
        [
            make_file("MASTER_MIX.wav", FileRole.MASTER, "Speaker 1: one two three four"),
            make_file("MIC1.wav", FileRole.MIC, "Speaker 1: one two", speaker=0),
            make_file("MIC2.wav", FileRole.MIC, "Speaker 1: three", speaker=1),
        ]
    )

    stats = compute_transcript_stats(session)

    assert stats.speakers["Alice"].word_count == 2
    assert stats.speakers["Bob"].word_count == 1


def test_energy_level_thresholds() -> None:
    assert energy_level_for(results_with_scores(8, 9)) == "High"
    assert energy_level_for(results_with_scores(6, 7)) == "Medium"
    assert energy_level_for(results_with_scores(2, 5)) == "Low"
    assert energy_level_for(CategoryResults(), default="Low") == "Low"
    assert energy_level_for(None) == "Medium"


def test_merge_prefers_reported_values_and_fills_gaps() -> None:
    local = SessionStats(
        speakers={"Alice": SpeakerStats(word_count=40, question_count=3)},
        total_duration_seconds=120.0,
    )
    reported = SessionStats(
        speakers={
            "Alice": SpeakerStats(word_count=55, talk_time_seconds=30.0),
            "Cara": SpeakerStats(word_count=5),
        },
        conversation_tone="Heated",
        energy_level="Low",
        highlight_moments=["Popcorn spill"],
    )

    merged = merge_stats(local, reported, results_with_scores(9, 9))

    alice = merged.speakers["Alice"]
    assert alice.word_count == 55
    assert alice.question_count == 3
    assert alice.talk_time_seconds == 30.0
    assert merged.speakers["Cara"].word_count == 5
    assert merged.conversation_tone == "Heated"
    assert merged.highlight_moments == ["Popcorn spill"]
    assert merged.energy_level == "High"
    assert merged.total_duration_seconds == 120.0
    assert local.speakers["Alice"].word_count == 40


def test_merge_without_reported_stats_uses_local_counts() -> None:
    local = SessionStats(speakers={"Bob": SpeakerStats(word_count=12)})

    merged = merge_stats(local, None, None)

    assert merged.speakers["Bob"].word_count == 12
    assert merged.energy_level == "Medium"
    assert merged.most_talkative == "Bob"
