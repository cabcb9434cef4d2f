"""Session-level AI analysis: one completion call, cached raw response, tolerant parsing."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from ...models import MovieSession, SessionStatus, utcnow
from ...providers.openai_api import OpenAIClient, OpenAIError, build_openai_client
from ...storage.paths import build_paths
from ...utils.logging import get_logger
from .parsing import AnalysisParseError, parse_analysis_response
from .prompt import build_prompt
from .stats import compute_transcript_stats, merge_stats

LOGGER = get_logger(__name__)

__all__ = ["PROMPT_FILENAME", "RESPONSE_FILENAME", "AnalysisStage", "build_analysis_stage"]

PROMPT_FILENAME = "analysis_prompt.txt"
RESPONSE_FILENAME = "ai_response.txt"


class AnalysisStage:
    """Runs the analysis for a session whose transcripts are ready."""

    def __init__(self, client: OpenAIClient, analysis_dir: str | Path) -> None:
        self.client = client
        self.analysis_dir = Path(analysis_dir)

    def session_dir(self, session: MovieSession) -> Path:
        return self.analysis_dir / session.session_id

    def analyze(self, session: MovieSession) -> bool:
        """Call the provider once and apply the parsed result to ``session``.

        The raw completion is stored on the session and written to disk before parsing, so a
        response the parser rejects can be reprocessed later without another provider call.
        """
        if not any(item.has_transcript for item in session.audio_files):
            self._fail(session, "No transcripts available for analysis.")
            return False

        session.status = SessionStatus.ANALYZING
        prompt = build_prompt(session)
        self._write_artifact(session, PROMPT_FILENAME, prompt)

        try:
            raw = self.client.complete(prompt)
        except OpenAIError as exc:
            self._fail(session, f"AI analysis failed: {exc}")
            return False

        session.raw_analysis_response = raw
        self._write_artifact(session, RESPONSE_FILENAME, raw)
        LOGGER.info("Stored %d characters of analysis for session %s", len(raw), session.session_id)
        return self.apply_response(session, raw)

    def _write_artifact(self, session: MovieSession, name: str, text: str) -> None:
        # The session document keeps the raw response; the files are a convenience copy.
        path = self.session_dir(session) / name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Could not write %s: %s", path, exc)

    def reprocess_cached(self, session: MovieSession) -> bool:
        """Re-parse the cached completion without contacting the provider."""
        raw = session.raw_analysis_response
        cached_file = self.session_dir(session) / RESPONSE_FILENAME
        if not raw and cached_file.is_file():
            try:
                raw = cached_file.read_text(encoding="utf-8")
            except OSError as exc:
                LOGGER.warning("Could not read %s: %s", cached_file, exc)
            else:
                session.raw_analysis_response = raw
        if not raw:
            self._fail(session, "No cached analysis response to reprocess.")
            return False
        LOGGER.info("Reprocessing cached analysis for session %s", session.session_id)
        return self.apply_response(session, raw)

    def apply_response(self, session: MovieSession, raw: str) -> bool:
        try:
            parsed = parse_analysis_response(raw)
        except AnalysisParseError as exc:
            self._fail(
                session,
                f"Could not parse the AI response ({exc}). The raw response was kept; "
                "run reprocess-analysis after fixing it.",
            )
            return False

        session.category_results = parsed.categories
        session.session_stats = merge_stats(
            compute_transcript_stats(session), parsed.stats, parsed.categories
        )
        session.status = SessionStatus.COMPLETE
        session.error_message = None
        session.processed_at = utcnow()
        return True

    @staticmethod
    def _fail(session: MovieSession, message: str) -> None:
        session.status = SessionStatus.FAILED
        session.error_message = message
        LOGGER.error("Session %s analysis failed: %s", session.session_id, message)


def build_analysis_stage(
    config: Mapping[str, object], *, client: OpenAIClient | None = None
) -> AnalysisStage:
    paths = build_paths(config)
    return AnalysisStage(client or build_openai_client(config), paths.analysis_dir)
