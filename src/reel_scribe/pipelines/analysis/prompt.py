"""Build the completion prompt from a session's mapped transcripts."""

from __future__ import annotations

import json
from dataclasses import dataclass

from ...models import AudioFile, FileRole, MovieSession
from ...utils.logging import get_logger
from ..speaker_mapping import map_speaker_labels
from .parsing import CATEGORY_KEYS

LOGGER = get_logger(__name__)

__all__ = [
    "MAX_TRANSCRIPT_CHARS",
    "MappedTranscript",
    "build_prompt",
    "mapped_transcripts",
]

MAX_TRANSCRIPT_CHARS = 400_000
TRUNCATION_NOTICE = (
    "\n\n[TRANSCRIPT TRUNCATED DUE TO LENGTH - ANALYSIS BASED ON FIRST {limit:,} CHARACTERS]"
)

_ROLE_TITLES = {
    FileRole.MASTER: "Master recording (all speakers)",
    FileRole.PHONE: "Phone input",
    FileRole.SOUND_PAD: "Sound pad",
    FileRole.OTHER: "Additional recording",
}

_GUIDELINES = """\
ANALYSIS GUIDELINES:
1. Focus on entertainment value: what would make people laugh when reviewing this later.
2. Quote exactly where possible and attribute every quote to a named participant.
3. Rate entertainment from 0 to 10 (10 = unforgettable).
4. Provide exactly 5 entries for each top 5 list, ranked best first.
5. Timestamps use MM:SS (estimate when unclear).

Respond ONLY with the JSON structure above. Do not add text before or after it. If a category has
no good example, keep the structure and say so in the quote."""


@dataclass(slots=True)
class MappedTranscript:
    audio_file: AudioFile
    text: str

    @property
    def heading(self) -> str:
        audio_file = self.audio_file
        if audio_file.role == FileRole.MIC and audio_file.speaker_number is not None:
            return f"Microphone {audio_file.speaker_number + 1}"
        return _ROLE_TITLES.get(audio_file.role, "Recording")


def mapped_transcripts(session: MovieSession) -> list[MappedTranscript]:
    """Transcripts of every file that has text, with participant names substituted."""
    return [
        MappedTranscript(
            audio_file=audio_file,
            text=map_speaker_labels(
                audio_file.transcript_text or "", audio_file, session.mic_assignments
            ),
        )
        for audio_file in session.audio_files
        if audio_file.has_transcript
    ]


def build_prompt(session: MovieSession, *, max_chars: int = MAX_TRANSCRIPT_CHARS) -> str:
    transcripts = mapped_transcripts(session)
    combined = "\n\n".join(
        f"=== {item.heading}: {item.audio_file.file_name} ===\n{item.text.strip()}"
        for item in transcripts
    )
    truncated = len(combined) > max_chars
    if truncated:
        LOGGER.warning(
            "Transcript for session %s truncated from %d to %d characters",
            session.session_id,
            len(combined),
            max_chars,
        )
        combined = combined[:max_chars] + TRUNCATION_NOTICE.format(limit=max_chars)

    participants = ", ".join(session.participant_names) or "Unknown participants"
    parts = [
        "You are an expert entertainment analyst specialising in the most memorable moments of "
        "recorded movie discussions.",
        f'The discussion is about "{session.movie_title}" from '
        f"{session.date.strftime('%B')} {session.date.day}, {session.date.year}, "
        f"with participants: {participants}.",
    ]
    if session.participants_absent:
        parts.append(f"Absent this time: {', '.join(session.participants_absent)}.")
    parts.extend(
        [
            f"TRANSCRIPT TO ANALYZE:\n{combined}",
            "Return a single JSON object with this structure:\n"
            + json.dumps(_response_template(), indent=2),
            _GUIDELINES,
        ]
    )
    if truncated:
        parts.append("NOTE: the transcript was truncated; analyse the portion provided.")
    return "\n\n".join(parts)


def _response_template() -> dict[str, object]:
    winner = {
        "speaker": "[Name]",
        "timestamp": "[MM:SS]",
        "quote": "[Exact words]",
        "setup": "[What led to it]",
        "group_reaction": "[How the others reacted]",
        "why_its_great": "[Why it stands out]",
        "audio_quality": "[Clear/Muffled/Distorted/Background_Noise]",
        "entertainment_score": "[0-10]",
        "runners_up": [
            {"speaker": "[Name]", "timestamp": "[MM:SS]", "brief_description": "[...]", "place": 2}
        ],
    }
    entry = {
        "rank": 1,
        "speaker": "[Name]",
        "timestamp": "[MM:SS]",
        "quote": "[Exact words]",
        "context": "[Setup]",
        "score": "[0-10]",
        "reasoning": "[Why it ranks here]",
        "source_audio_file": "[File name]",
    }
    return {
        "comedy_categories": {key: winner for key in CATEGORY_KEYS},
        "top_5_lists": {
            "funniest_sentences": {"entries": [entry]},
            "most_bland_comments": {"entries": [entry]},
        },
        "opening_questions": {
            "questions": [
                {
                    "question": "[Question asked]",
                    "speaker": "[Who answered]",
                    "answer": "[Their answer]",
                    "timestamp": "[MM:SS]",
                }
            ]
        },
        "session_stats": {
            "conversation_tone": "[One sentence]",
            "energy_level": "[High/Medium/Low]",
            "highlight_moments": ["[Short description]"],
            "speakers": {
                "[Name]": {
                    "word_count": 0,
                    "talk_time_seconds": 0,
                    "question_count": 0,
                    "interruption_count": 0,
                    "laughter_count": 0,
                    "profanity_count": 0,
                }
            },
        },
    }
