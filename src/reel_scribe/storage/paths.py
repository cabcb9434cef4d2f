"""Resolve the configured data, database and analysis locations."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

__all__ = ["PathsConfig", "build_paths"]


def _normalize_path(value: str | Path, *, relative_to: Path | None = None) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute() and relative_to is not None:
        path = relative_to / path
    return path.resolve()


@dataclass(slots=True)
class PathsConfig:
    project_root: Path
    data_root: Path
    sessions_db: Path
    analysis_dir: Path
    logs_dir: Path
    clips_dir: Path

    def ensure_directories(self) -> None:
        required = (
            self.data_root,
            self.sessions_db.parent,
            self.analysis_dir,
            self.logs_dir,
            self.clips_dir,
        )
        for directory in required:
            directory.mkdir(parents=True, exist_ok=True)

    def session_analysis_dir(self, session_id: str) -> Path:
        return self.analysis_dir / session_id

    def session_clips_dir(self, session_id: str) -> Path:
        return self.clips_dir / session_id


def build_paths(config: Mapping[str, object]) -> PathsConfig:
    """Construct a :class:`PathsConfig`; relative entries resolve against ``project_root``."""
    paths_section = config.get("paths")
    if not isinstance(paths_section, Mapping):
        raise ValueError("Configuration is missing the 'paths' section.")

    project_root = _normalize_path(paths_section.get("project_root") or ".")

    def resolve(key: str) -> Path:
        raw_value = paths_section.get(key)
        if raw_value is None:
            raise ValueError(f"Configuration 'paths.{key}' is required.")
        return _normalize_path(str(raw_value), relative_to=project_root)

    data_root = resolve("data_root")
    return PathsConfig(
        project_root=project_root,
        data_root=data_root,
        sessions_db=resolve("sessions_db"),
        analysis_dir=resolve("analysis_dir"),
        logs_dir=resolve("logs_dir"),
        clips_dir=resolve("clips_dir") if paths_section.get("clips_dir") else data_root / "clips",
    )
