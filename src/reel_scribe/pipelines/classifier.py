"""Assign recording roles to the raw media files of a session folder."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..models import AudioFile, FileRole
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "MASTER_MIX_STEM",
    "MEDIA_EXTENSIONS",
    "ClassificationResult",
    "classify_files",
    "classify_folder",
    "classify_name",
]

MASTER_MIX_STEM = "MASTER_MIX"

MEDIA_EXTENSIONS = frozenset(
    {
        ".mp3",
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

_MIC_RE = re.compile(r"^MIC(?P<number>\d+)\.[A-Z0-9]+$", re.IGNORECASE)
_SPEAKER_PREFIX_RE = re.compile(r"^(?P<number>\d)_Speaker\d", re.IGNORECASE)
_DATE_STAMP_RE = re.compile(r"^\d{4}_\d{4}_\d{4}\.(wav|mp3|m4a|aac|ogg|flac)$", re.IGNORECASE)
_MASTER_KEYWORDS = ("master", "combined", "full", "group")
_AUXILIARY_ROLES = {
    "PHONE": FileRole.PHONE,
    "SOUND_PAD": FileRole.SOUND_PAD,
    "SOUNDPAD": FileRole.SOUND_PAD,
}


@dataclass(slots=True)
class ClassificationResult:
    """Outcome of classifying one session folder."""

    files: list[AudioFile] = field(default_factory=list)
    master: AudioFile | None = None
    renamed_from: str | None = None
    skipped: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """True when no master mix could be identified."""
        return self.master is None


def classify_name(file_name: str) -> tuple[FileRole, int | None]:
    """Classify a single file by its name only.

    Returns the role and, for microphone tracks, the zero-based speaker number. Names that match
    no rule come back as ``FileRole.OTHER`` and are left to the size heuristic.
    """
    mic_match = _MIC_RE.match(file_name)
    if mic_match:
        return FileRole.MIC, int(mic_match.group("number")) - 1

    speaker_match = _SPEAKER_PREFIX_RE.match(file_name)
    if speaker_match:
        return FileRole.MIC, int(speaker_match.group("number")) - 1

    stem = Path(file_name).stem.upper()
    if stem in _AUXILIARY_ROLES:
        return _AUXILIARY_ROLES[stem], None

    if stem.startswith(MASTER_MIX_STEM) or _DATE_STAMP_RE.match(file_name):
        return FileRole.MASTER, None

    lowered = file_name.lower()
    if any(keyword in lowered for keyword in _MASTER_KEYWORDS):
        return FileRole.MASTER, None

    return FileRole.OTHER, None


def classify_files(
    paths: Iterable[Path],
    mic_assignments: Mapping[int, str] | None = None,
    *,
    rename_master: bool = True,
) -> ClassificationResult:
    """Classify ``paths`` (already filtered to media files) and pick the master mix."""
    mic_assignments = mic_assignments or {}
    result = ClassificationResult()

    for path in sorted(paths, key=lambda item: item.name.lower()):
        role, speaker_number = classify_name(path.name)
        audio_file = AudioFile(
            file_name=path.name,
            file_path=path,
            file_size_bytes=path.stat().st_size if path.exists() else 0,
            speaker_number=speaker_number,
            role=role,
        )
        if role is FileRole.MIC and speaker_number not in mic_assignments:
            LOGGER.warning("%s has no participant assigned to mic %s.", path.name, speaker_number)
        result.files.append(audio_file)

    result.master = _choose_master(result.files)
    if result.master is None:
        LOGGER.error(
            "No master recording identified among %d files; continuing without a master mix.",
            len(result.files),
        )
        return result

    result.master.is_master_recording = True
    result.master.role = FileRole.MASTER
    if rename_master:
        result.renamed_from = _normalise_master_name(result.master)
    return result


def classify_folder(
    folder: str | Path,
    mic_assignments: Mapping[int, str] | None = None,
    *,
    rename_master: bool = True,
) -> ClassificationResult:
    """Classify every media file directly inside ``folder``.

    Transcript sidecars, analysis output and other non-media files are reported in
    ``ClassificationResult.skipped``.
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise FileNotFoundError(f"Session folder not found: {folder}")

    media: list[Path] = []
    skipped: list[str] = []
    for child in folder.iterdir():
        if not child.is_file():
            continue
        if child.suffix.lower() in MEDIA_EXTENSIONS:
            media.append(child)
        else:
            skipped.append(child.name)

    result = classify_files(media, mic_assignments, rename_master=rename_master)
    result.skipped = sorted(skipped)
    LOGGER.info(
        "Classified %d media files in %s (master=%s)",
        len(result.files),
        folder,
        result.master.file_name if result.master else None,
    )
    return result


def _choose_master(files: list[AudioFile]) -> AudioFile | None:
    named = [item for item in files if item.role is FileRole.MASTER]
    if named:
        # Prefer an already-normalised name, then the largest candidate.
        named.sort(
            key=lambda item: (
                not Path(item.file_name).stem.upper().startswith(MASTER_MIX_STEM),
                -item.file_size_bytes,
                item.file_name.lower(),
            )
        )
        return named[0]

    unidentified = [item for item in files if item.role is FileRole.OTHER]
    if len(unidentified) == 1:
        return unidentified[0]
    if unidentified:
        return max(unidentified, key=lambda item: (item.file_size_bytes, item.file_name.lower()))
    return None


def _normalise_master_name(master: AudioFile) -> str | None:
    """Rename the master file to ``MASTER_MIX<ext>``; returns the previous name when renamed."""
    if Path(master.file_name).stem.upper().startswith(MASTER_MIX_STEM):
        return None

    source = master.file_path
    target = source.with_name(f"{MASTER_MIX_STEM}{source.suffix.lower()}")
    if target.exists():
        LOGGER.warning("Cannot rename %s: %s already exists.", source.name, target.name)
        return None

    try:
        source.rename(target)
    except OSError as exc:
        LOGGER.error("Failed to rename master recording %s: %s", source.name, exc)
        return None

    previous = master.file_name
    master.file_name = target.name
    master.file_path = target
    LOGGER.info("Renamed master recording %s -> %s", previous, target.name)
    return previous
