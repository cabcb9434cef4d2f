"""Background execution of session runs on worker threads."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, auto
from queue import Full, Queue

from ..exceptions import SessionBusyError
from ..models import MovieSession, SessionStatus, utcnow
from ..storage.repository import SessionRepository
from ..utils.logging import get_logger
from .maintenance import DEFAULT_STUCK_AFTER, recover_stuck_sessions
from .orchestrator import SessionOrchestrator
from .state_machine import Stage

LOGGER = get_logger(__name__)

__all__ = ["JobStatus", "SessionJob", "SessionJobRunner"]

_SENTINEL_ID = "__sentinel__"


class JobStatus(Enum):
    """Lifecycle states for a background session run."""

    QUEUED = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass(slots=True)
class SessionJob:
    job_id: str
    session_id: str
    start_stage: Stage = Stage.CONVERT
    created_at: datetime = field(default_factory=utcnow)
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    message: str = ""
    error: str | None = None
    _done: threading.Event = field(default_factory=threading.Event, init=False)

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


class SessionJobRunner:
    """Queues session runs and executes them on a fixed set of worker threads.

    The session is re-read from the repository when the job starts and saved after every stage,
    so the persisted status always reflects the last settled stage.
    """

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        repository: SessionRepository,
        *,
        max_workers: int = 1,
        max_queue: int = 4,
        on_update: Callable[[SessionJob], None] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.repository = repository
        self._on_update = on_update
        self._jobs: dict[str, SessionJob] = {}
        self._active: set[str] = set()
        self._lock = threading.Lock()
        self._queue: Queue[SessionJob] = Queue(maxsize=max_queue)
        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"session-worker-{idx}", daemon=True)
            for idx in range(max(1, max_workers))
        ]
        for worker in self._workers:
            worker.start()

    # ------------------------------------------------------------------ #
    # Job management
    # ------------------------------------------------------------------ #
    def submit(
        self,
        session: MovieSession,
        start_stage: Stage = Stage.CONVERT,
        *,
        force: bool = False,
    ) -> SessionJob:
        """Queue ``session`` for processing.

        Raises ``SessionBusyError`` when the persisted session is mid-flight (or already queued
        here) unless ``force`` is set, and ``ConfigurationError`` when a provider is missing.
        """
        self.orchestrator.ensure_configured(start_stage)
        stored = self.repository.get(session.session_id)
        with self._lock:
            queued_here = session.session_id in self._active
            if not force and (queued_here or (stored is not None and stored.status.is_in_flight)):
                raise SessionBusyError(
                    f"Session {session.session_id} is already being processed."
                )
            self._active.add(session.session_id)

        self.repository.save(session)

        job = SessionJob(
            job_id=uuid.uuid4().hex, session_id=session.session_id, start_stage=start_stage
        )
        job.message = "Waiting for available worker."
        try:
            self._queue.put_nowait(job)
        except Full:
            with self._lock:
                self._active.discard(session.session_id)
            job.status = JobStatus.FAILED
            job.error = "Backpressure: queue is full."
            raise
        self._jobs[job.job_id] = job
        return job

    def recover_stuck(self, stuck_after: timedelta = DEFAULT_STUCK_AFTER) -> list[MovieSession]:
        """Reset stale in-flight sessions so they can be submitted again."""
        with self._lock:
            running = set(self._active)
        return recover_stuck_sessions(self.repository, stuck_after=stuck_after, skip=running)

    def get_job(self, job_id: str) -> SessionJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[SessionJob]:
        return list(self._jobs.values())

    def shutdown(self, *, wait: bool = True) -> None:
        for _ in self._workers:
            self._queue.put(SessionJob(job_id=_SENTINEL_ID, session_id=""))
        if wait:
            for worker in self._workers:
                worker.join()

    # ------------------------------------------------------------------ #
    # Worker execution
    # ------------------------------------------------------------------ #
    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job.job_id == _SENTINEL_ID:
                    return
                self._execute(job)
            finally:
                self._queue.task_done()

    def _execute(self, job: SessionJob) -> None:
        job.status = JobStatus.RUNNING
        job.message = "Processing started."
        self._notify(job)
        session: MovieSession | None = None
        try:
            session = self.repository.get(job.session_id)
            if session is None:
                raise KeyError(f"Session {job.session_id} no longer exists.")

            def on_progress(message: str, percent: float) -> None:
                job.progress = percent
                job.message = message
                self._notify(job)

            def on_stage_complete(current: MovieSession, stage: Stage) -> None:
                self.repository.save(current)
                LOGGER.debug("Persisted session %s after %s", current.session_id, stage.label)

            session = self.orchestrator.process_from_stage(
                session,
                job.start_stage,
                progress_callback=on_progress,
                on_stage_complete=on_stage_complete,
            )
            self.repository.save(session)
            job.status = JobStatus.COMPLETED
            job.message = f"Session finished with status {session.status.value}."
        except Exception as exc:  # noqa: BLE001 - reported on the job instead of killing the worker
            LOGGER.exception("Job %s for session %s failed", job.job_id, job.session_id)
            job.status = JobStatus.FAILED
            job.error = str(exc)
            job.message = f"Processing failed: {exc}"
            if session is not None and session.status.is_in_flight:
                session.status = SessionStatus.FAILED
                session.error_message = job.message
                self.repository.save(session)
        finally:
            with self._lock:
                self._active.discard(job.session_id)
            self._notify(job)
            job._done.set()

    def _notify(self, job: SessionJob) -> None:
        if self._on_update is not None:
            self._on_update(job)
