"""Replace provider speaker labels with participant names."""

from __future__ import annotations

import re
from collections.abc import Mapping

from ..models import AudioFile, FileRole
from ..utils.logging import get_logger

__all__ = ["PHONE_LABEL", "SOUND_PAD_LABEL", "label_for_file", "map_speaker_labels"]

LOGGER = get_logger(__name__)

PHONE_LABEL = "Phone Input"
SOUND_PAD_LABEL = "Sound Effects"

SPEAKER_LABEL_PATTERN = re.compile(r"^(?P<indent>[ \t]*)Speaker (?P<number>\d+):", re.MULTILINE)


def label_for_file(audio_file: AudioFile, mic_assignments: Mapping[int, str]) -> str | None:
    """Single label for every line of a dedicated track, or None for mixed tracks."""
    if audio_file.role == FileRole.PHONE:
        return PHONE_LABEL
    if audio_file.role == FileRole.SOUND_PAD:
        return SOUND_PAD_LABEL
    if audio_file.role == FileRole.MIC and audio_file.speaker_number is not None:
        name = (mic_assignments.get(audio_file.speaker_number) or "").strip()
        return name or None
    return None


def map_speaker_labels(
    text: str,
    audio_file: AudioFile,
    mic_assignments: Mapping[int, str],
) -> str:
    """Return ``text`` with ``Speaker N:`` prefixes rewritten for ``audio_file``.

    Dedicated tracks (a named mic, the phone line, the sound pad) carry one voice, so every label
    collapses to that source. Mixed tracks map the one-based ``Speaker N`` onto the zero-based mic
    assignment ``N - 1``; unassigned speakers keep their generic label.
    """
    if not text:
        return text

    fixed = label_for_file(audio_file, mic_assignments)
    if fixed is not None:
        return SPEAKER_LABEL_PATTERN.sub(lambda match: f"{match['indent']}{fixed}:", text)

    def replace(match: re.Match[str]) -> str:
        index = int(match["number"]) - 1
        name = (mic_assignments.get(index) or "").strip()
        if not name:
            return match.group(0)
        return f"{match['indent']}{name}:"

    mapped = SPEAKER_LABEL_PATTERN.sub(replace, text)
    if mapped != text:
        LOGGER.debug("Mapped speaker labels for %s", audio_file.file_name)
    return mapped
