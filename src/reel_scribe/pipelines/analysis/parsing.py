"""Tolerant parsing of the model's JSON analysis into result entities."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ...models import (
    CategoryResults,
    CategoryWinner,
    QuestionAnswer,
    RunnerUp,
    SessionStats,
    SpeakerStats,
    TopFiveEntry,
    TopFiveList,
)
from ...utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "CATEGORY_KEYS",
    "AnalysisParseError",
    "ParsedAnalysis",
    "parse_analysis_response",
]

# Award categories in prompt order; keys are the snake_case form of the flat JSON names.
CATEGORY_KEYS: tuple[str, ...] = (
    "most_offensive_take",
    "hottest_take",
    "biggest_argument_starter",
    "best_joke",
    "best_roast",
    "funniest_random_tangent",
    "most_passionate_defense",
    "biggest_unanimous_reaction",
    "most_boring_statement",
    "best_plot_twist_revelation",
    "movie_snob_moment",
    "guilty_pleasure_admission",
    "quietest_person_best_moment",
)

# Shorter spellings seen in the nested response shape.
_CATEGORY_ALIASES = {
    "best_plot_twist": "best_plot_twist_revelation",
}

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class AnalysisParseError(ValueError):
    """Raised when the completion text does not contain a usable JSON object."""


@dataclass(slots=True)
class ParsedAnalysis:
    categories: CategoryResults
    stats: SessionStats | None = None


def parse_analysis_response(text: str) -> ParsedAnalysis:
    """Parse ``text`` in either the nested or the flat response shape.

    Markdown fences and any prose around the outermost JSON object are ignored. Missing fields
    fall back to placeholders so a partially filled response still produces results.
    """
    root = _extract_json_object(text)
    normalised = {_snake(key): value for key, value in root.items()}

    categories = CategoryResults()
    stats: SessionStats | None = None

    # Nested shape: {"comedy_categories": {"best_joke": {...}}, "top_5_lists": {...}, ...}
    for key, value in normalised.items():
        if key.endswith("_categories") and isinstance(value, Mapping):
            for name, payload in value.items():
                _store_winner(categories, _snake(str(name)), payload)
    top_lists = normalised.get("top_5_lists")
    if isinstance(top_lists, Mapping):
        lists = {_snake(str(key)): value for key, value in top_lists.items()}
        if "funniest_sentences" in lists:
            categories.funniest_sentences = _parse_top_five(lists["funniest_sentences"])
        if "most_bland_comments" in lists:
            categories.most_bland_comments = _parse_top_five(lists["most_bland_comments"])

    # Flat shape: {"BestJoke": {...}, "Top5FunniestSentences": {"Entries": [...]}, ...}
    for key, value in normalised.items():
        _store_winner(categories, key, value)
    if "top5_funniest_sentences" in normalised:
        categories.funniest_sentences = _parse_top_five(normalised["top5_funniest_sentences"])
    if "top5_most_bland_comments" in normalised:
        categories.most_bland_comments = _parse_top_five(normalised["top5_most_bland_comments"])

    if "opening_questions" in normalised:
        categories.opening_questions = _parse_questions(normalised["opening_questions"])

    raw_stats = normalised.get("session_stats")
    if isinstance(raw_stats, Mapping):
        stats = _parse_stats(raw_stats)

    if not categories.winners and not categories.funniest_sentences.entries and stats is None:
        LOGGER.warning("Analysis response parsed but contained no recognised sections.")
    else:
        LOGGER.info(
            "Parsed %d categories and %d ranked entries from analysis response",
            len(categories.winners),
            len(categories.funniest_sentences.entries)
            + len(categories.most_bland_comments.entries),
        )
    return ParsedAnalysis(categories=categories, stats=stats)


# ---------------------------------------------------------------------- #
# Helpers
# ---------------------------------------------------------------------- #
def _extract_json_object(text: str) -> dict[str, Any]:
    if not text or not text.strip():
        raise AnalysisParseError("Analysis response is empty.")
    cleaned = _FENCE_PATTERN.sub("", text).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise AnalysisParseError("Analysis response does not contain a JSON object.")
    try:
        payload = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as exc:
        raise AnalysisParseError(f"Analysis response is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise AnalysisParseError("Analysis response JSON is not an object.")
    return payload


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).replace("-", "_").replace(" ", "_").lower()


def _field(payload: Mapping[str, Any], *names: str) -> Any:
    """First present value among ``names`` and their snake_case spellings."""
    for name in names:
        for candidate in (name, _snake(name)):
            if candidate in payload and payload[candidate] is not None:
                return payload[candidate]
    return None


def _text(payload: Mapping[str, Any], *names: str, default: str = "") -> str:
    value = _field(payload, *names)
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _coerce_float(value: object | None, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def _clamp_score(value: object | None, default: int = 5) -> int:
    score = _coerce_float(value, float(default))
    return int(min(10, max(0, round(score))))


def _coerce_int(value: object | None, default: int = 0) -> int:
    return int(_coerce_float(value, float(default)))


def _store_winner(categories: CategoryResults, key: str, payload: object) -> None:
    key = _CATEGORY_ALIASES.get(key, key)
    if key not in CATEGORY_KEYS or not isinstance(payload, Mapping):
        return
    categories.winners[key] = _parse_winner(payload)


def _parse_winner(payload: Mapping[str, Any]) -> CategoryWinner:
    runners_up = []
    for index, item in enumerate(_field(payload, "RunnersUp") or []):
        if not isinstance(item, Mapping):
            continue
        runners_up.append(
            RunnerUp(
                speaker=_text(item, "Speaker", default="Unknown"),
                timestamp=_text(item, "Timestamp", default="0:00"),
                brief_description=_text(item, "BriefDescription", "Quote"),
                place=_coerce_int(_field(item, "Place"), index + 2),
            )
        )
    return CategoryWinner(
        speaker=_text(payload, "Speaker", default="Unknown"),
        timestamp=_text(payload, "Timestamp", default="0:00"),
        quote=_text(payload, "Quote", default="No quote available"),
        setup=_text(payload, "Setup"),
        group_reaction=_text(payload, "GroupReaction"),
        why_its_great=_text(payload, "WhyItsGreat"),
        audio_quality=_text(payload, "AudioQualityString", "AudioQuality", default="Clear"),
        entertainment_score=_clamp_score(_field(payload, "EntertainmentScore", "Score")),
        runners_up=runners_up,
    )


def _parse_top_five(payload: object) -> TopFiveList:
    if isinstance(payload, Mapping):
        items = _field(payload, "Entries") or []
    elif isinstance(payload, list):
        items = payload
    else:
        items = []

    entries = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            continue
        source = _field(item, "SourceAudioFile")
        entries.append(
            TopFiveEntry(
                rank=_coerce_int(_field(item, "Rank"), index + 1),
                speaker=_text(item, "Speaker", default="Unknown"),
                timestamp=_text(item, "Timestamp", default="0:00"),
                quote=_text(item, "Quote", default="No quote available"),
                context=_text(item, "Context", "Setup"),
                score=float(_clamp_score(_field(item, "Score", "EntertainmentScore"))),
                reasoning=_text(item, "Reasoning", "WhyItsGreat"),
                source_audio_file=str(source) if source else None,
            )
        )
    entries.sort(key=lambda entry: entry.rank)
    return TopFiveList(entries=entries[:5])


def _parse_questions(payload: object) -> list[QuestionAnswer]:
    if isinstance(payload, Mapping):
        items = _field(payload, "Questions") or []
    elif isinstance(payload, list):
        items = payload
    else:
        return []
    return [
        QuestionAnswer(
            question=_text(item, "Question"),
            speaker=_text(item, "Speaker", default="Unknown"),
            answer=_text(item, "Answer"),
            timestamp=_text(item, "Timestamp", default="0:00"),
        )
        for item in items
        if isinstance(item, Mapping)
    ]


def _parse_stats(payload: Mapping[str, Any]) -> SessionStats:
    speakers: dict[str, SpeakerStats] = {}
    raw_speakers = _field(payload, "Speakers")
    if isinstance(raw_speakers, Mapping):
        for name, values in raw_speakers.items():
            if not isinstance(values, Mapping):
                continue
            speakers[str(name)] = SpeakerStats(
                word_count=_coerce_int(_field(values, "WordCount")),
                talk_time_seconds=_coerce_float(_field(values, "TalkTimeSeconds"), 0.0),
                question_count=_coerce_int(_field(values, "QuestionCount")),
                interruption_count=_coerce_int(_field(values, "InterruptionCount")),
                laughter_count=_coerce_int(_field(values, "LaughterCount")),
                profanity_count=_coerce_int(_field(values, "ProfanityCount")),
            )

    highlights = _field(payload, "HighlightMoments")
    return SessionStats(
        speakers=speakers,
        conversation_tone=_text(payload, "ConversationTone"),
        energy_level=_text(payload, "EnergyLevel", default="Medium"),
        highlight_moments=(
            [str(item) for item in highlights] if isinstance(highlights, list) else []
        ),
    )
