"""Recovery for sessions left mid-flight by a crashed or killed run."""

from __future__ import annotations

from collections.abc import Collection, Mapping
from datetime import datetime, timedelta

from ..models import MovieSession, SessionStatus, utcnow
from ..storage.db import DatabaseError
from ..storage.repository import SessionRepository
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "DEFAULT_STUCK_AFTER",
    "last_activity",
    "recover_stuck_sessions",
    "stuck_after_from_config",
]

DEFAULT_STUCK_AFTER = timedelta(minutes=30)


def stuck_after_from_config(config: Mapping[str, object]) -> timedelta:
    raw = config.get("pipeline", {})
    pipeline = dict(raw) if isinstance(raw, Mapping) else {}
    minutes = pipeline.get("stuck_after_minutes")
    if minutes is None:
        return DEFAULT_STUCK_AFTER
    return timedelta(minutes=float(minutes))


def last_activity(session: MovieSession) -> datetime:
    """Most recent of the session creation time and any file update."""
    stamps = [session.created_at, *(item.last_updated for item in session.audio_files)]
    return max(stamps)


def recover_stuck_sessions(
    repository: SessionRepository,
    *,
    stuck_after: timedelta = DEFAULT_STUCK_AFTER,
    now: datetime | None = None,
    skip: Collection[str] = (),
) -> list[MovieSession]:
    """Settle in-flight sessions that saw no activity for ``stuck_after``.

    An ``analyzing`` session that already holds transcripts and parsed results only missed its
    final save and is marked complete. Any other stuck session goes back to ``pending`` with an
    explanatory error message; its files keep their statuses so a resume picks them up where
    they stopped. Ids in ``skip`` belong to runs still executing and are left alone.
    """
    cutoff = (now or utcnow()) - stuck_after
    recovered: list[MovieSession] = []
    for session_id in repository.list_ids():
        if session_id in skip:
            continue
        try:
            session = repository.get(session_id)
        except DatabaseError as exc:
            LOGGER.error("Skipping unreadable session %s: %s", session_id, exc)
            continue
        if session is None or not session.status.is_in_flight:
            continue
        if last_activity(session) >= cutoff:
            continue

        original = session.status
        has_transcripts = any(item.has_transcript for item in session.audio_files)
        if (
            original == SessionStatus.ANALYZING
            and has_transcripts
            and session.category_results is not None
        ):
            session.status = SessionStatus.COMPLETE
            session.error_message = None
            session.processed_at = utcnow()
            LOGGER.info(
                "Marked stuck session %s (%s) complete", session.session_id, session.movie_title
            )
        else:
            minutes = stuck_after.total_seconds() / 60
            session.status = SessionStatus.PENDING
            session.error_message = (
                f"Session was stuck in {original.value} status for over {minutes:.0f} minutes "
                "and has been reset"
            )
            LOGGER.info(
                "Reset stuck session %s (%s) from %s",
                session.session_id,
                session.movie_title,
                original.value,
            )
        repository.save(session)
        recovered.append(session)

    if recovered:
        LOGGER.info("Recovered %d stuck sessions", len(recovered))
    return recovered
