"""Command-line entrypoints for Reel-Scribe."""

from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
from typing import Any, Optional

import typer

from .config import ConfigError, load_config
from .exceptions import ConfigurationError, SessionBusyError
from .models import MovieSession, SessionStatus
from .pipelines.classifier import classify_folder
from .pipelines.jobs import JobStatus, SessionJob, SessionJobRunner
from .pipelines.maintenance import recover_stuck_sessions, stuck_after_from_config
from .pipelines.orchestrator import SessionOrchestrator, session_from_folder
from .pipelines.purge import PurgeWorkflow
from .pipelines.state_machine import Stage
from .storage import SQLiteSessionRepository, build_paths, build_repository
from .utils.logging import configure_logging

app = typer.Typer(help="Transcribe and analyze recorded movie-discussion sessions.")

ENV_OPTION = typer.Option("dev", "--env", help="Configuration environment to load (default: dev).")


def _load(env: str) -> dict[str, Any]:
    try:
        config = load_config(env)
    except (ConfigError, FileNotFoundError) as exc:
        typer.echo(f"Failed to load configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    build_paths(config).ensure_directories()
    logging_settings = config.get("logging")
    configure_logging(logging_settings if isinstance(logging_settings, dict) else None)
    return config


def _require_session(repository: SQLiteSessionRepository, session_id: str) -> MovieSession:
    session = repository.get(session_id)
    if session is None:
        typer.echo(f"Unknown session: {session_id}", err=True)
        raise typer.Exit(code=2)
    return session


def _mic_assignments(mics: list[str] | None) -> dict[int, str]:
    """``--mic`` values in order map to MIC1, MIC2, ... (zero-based keys); ``-`` skips a mic."""
    return {
        index: name.strip()
        for index, name in enumerate(mics or [])
        if name.strip() and name.strip() != "-"
    }


def _progress_printer(job: SessionJob) -> None:
    typer.echo(f"[{job.status.name.lower()}] {job.progress:5.1f}% {job.message}")


def _print_session(session: MovieSession, orchestrator: SessionOrchestrator) -> None:
    progress = orchestrator.session_progress(session)
    typer.echo(f"{session.movie_title} ({session.date.isoformat()}) [{session.session_id}]")
    typer.echo(
        f"Status: {session.status.value}  {progress.percent:.1f}%  "
        f"({progress.completed} complete, {progress.in_progress} in progress, "
        f"{progress.pending} pending, {progress.failed} failed)"
    )
    if session.error_message:
        typer.echo(f"Error: {session.error_message}")
    for audio_file in session.audio_files:
        typer.echo(
            f"  {audio_file.file_name:<32} {audio_file.processing_status.value:<24} "
            f"{audio_file.progress_percentage:5.1f}%  {audio_file.current_step}"
        )


def _run_job(
    config: dict[str, Any],
    session: MovieSession,
    start_stage: Stage,
    *,
    max_workers: int | None,
    watch: bool,
) -> MovieSession:
    repository = build_repository(config)
    orchestrator = SessionOrchestrator.from_config(config, max_workers=max_workers)
    pipeline = config.get("pipeline") or {}
    runner = SessionJobRunner(
        orchestrator,
        repository,
        max_queue=int(pipeline.get("max_queue", 4)),
        on_update=_progress_printer if watch else None,
    )
    try:
        job = runner.submit(session, start_stage)
        job.wait()
    except (ConfigurationError, SessionBusyError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive guard
        typer.echo("Interrupted, shutting down workers…", err=True)
        raise typer.Exit(code=130) from None
    finally:
        runner.shutdown(wait=False)

    if job.status != JobStatus.COMPLETED:
        typer.echo(job.error or job.message or "Processing failed.", err=True)
        raise typer.Exit(code=1)

    final = repository.get(session.session_id) or session
    _print_session(final, orchestrator)
    if final.status == SessionStatus.FAILED:
        raise typer.Exit(code=1)
    return final


@app.command()
def classify(
    folder: Path = typer.Argument(..., help="Session folder holding the recorded tracks."),
    mic: Optional[list[str]] = typer.Option(
        None, "--mic", help="Participant on the next mic number (repeat per mic)."
    ),
    rename: bool = typer.Option(
        False, "--rename/--no-rename", help="Rename the detected master to MASTER_MIX."
    ),
) -> None:
    """Show how the files in FOLDER would be classified."""

    folder = folder.expanduser().resolve()
    if not folder.is_dir():
        typer.echo(f"Folder not found: {folder}", err=True)
        raise typer.Exit(code=2)

    result = classify_folder(folder, _mic_assignments(mic), rename_master=rename)
    for audio_file in result.files:
        speaker = (
            f"MIC{audio_file.speaker_number + 1}" if audio_file.speaker_number is not None else "-"
        )
        master = " (master)" if audio_file.is_master_recording else ""
        typer.echo(
            f"{audio_file.file_name:<32} {audio_file.role.value:<10} {speaker:<6}"
            f"{audio_file.file_size_bytes:>14,d} bytes{master}"
        )
    for name in result.skipped:
        typer.echo(f"{name:<32} skipped")
    if result.renamed_from:
        typer.echo(f"Renamed {result.renamed_from} to the master mix name.")
    if result.degraded:
        typer.echo("No master mix found; analysis will rely on individual tracks.", err=True)


@app.command()
def process(
    folder: Path = typer.Argument(..., help="Session folder holding the recorded tracks."),
    from_stage: str = typer.Option(
        "convert", "--from-stage", help="First stage to run: convert, upload, transcribe, analyze."
    ),
    mic: Optional[list[str]] = typer.Option(
        None, "--mic", help="Participant on the next mic number (repeat per mic)."
    ),
    title: Optional[str] = typer.Option(None, "--title", help="Movie title (default: folder)."),
    session_date: Optional[str] = typer.Option(
        None, "--date", help="Session date as YYYY-MM-DD (default: today)."
    ),
    max_workers: Optional[int] = typer.Option(
        None, "--max-workers", help="Files processed in parallel per stage."
    ),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Stream progress to the console."),
    env: str = ENV_OPTION,
) -> None:
    """Classify FOLDER into a new session and run it through the pipeline."""

    folder = folder.expanduser().resolve()
    if not folder.is_dir():
        typer.echo(f"Folder not found: {folder}", err=True)
        raise typer.Exit(code=2)
    try:
        stage = Stage.from_label(from_stage)
        parsed_date = date.fromisoformat(session_date) if session_date else None
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    config = _load(env)
    session = session_from_folder(
        folder, _mic_assignments(mic), movie_title=title, session_date=parsed_date
    )
    typer.echo(f"Created session {session.session_id} with {len(session.audio_files)} files.")
    _run_job(config, session, stage, max_workers=max_workers, watch=watch)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Identifier printed when the session was created."),
    env: str = ENV_OPTION,
) -> None:
    """Print the stored state of a session."""

    config = _load(env)
    session = _require_session(build_repository(config), session_id)
    _print_session(session, SessionOrchestrator.from_config(config))


@app.command("reprocess-analysis")
def reprocess_analysis(
    session_id: str = typer.Argument(..., help="Session whose cached AI response is re-parsed."),
    env: str = ENV_OPTION,
) -> None:
    """Re-parse the stored AI response without calling the provider again."""

    config = _load(env)
    repository = build_repository(config)
    session = _require_session(repository, session_id)
    orchestrator = SessionOrchestrator.from_config(config)
    ok = orchestrator.reprocess_cached_analysis(session)
    repository.save(session)
    _print_session(session, orchestrator)
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def retry(
    session_id: str = typer.Argument(..., help="Session whose failed files are retried."),
    max_workers: Optional[int] = typer.Option(
        None, "--max-workers", help="Files processed in parallel per stage."
    ),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Stream progress to the console."),
    env: str = ENV_OPTION,
) -> None:
    """Reset retryable failed files and resume processing."""

    config = _load(env)
    session = _require_session(build_repository(config), session_id)
    orchestrator = SessionOrchestrator.from_config(config)
    reset = orchestrator.retry_failed(session)
    if not reset:
        typer.echo("No retryable failed files.")
        return
    start_stage = min(
        (Stage.for_status(audio_file.processing_status) for audio_file in reset),
        key=Stage.ordered().index,
    )
    typer.echo(f"Retrying {len(reset)} files from the {start_stage.label} stage.")
    _run_job(config, session, start_stage, max_workers=max_workers, watch=watch)


@app.command()
def recover(
    older_than_minutes: Optional[float] = typer.Option(
        None,
        "--older-than-minutes",
        help="Idle time before an in-flight session counts as stuck (default: from config).",
    ),
    env: str = ENV_OPTION,
) -> None:
    """Reset sessions left in flight by an interrupted run."""

    if older_than_minutes is not None and older_than_minutes <= 0:
        typer.echo("--older-than-minutes must be positive.", err=True)
        raise typer.Exit(code=2)
    config = _load(env)
    stuck_after = (
        timedelta(minutes=older_than_minutes)
        if older_than_minutes is not None
        else stuck_after_from_config(config)
    )
    recovered = recover_stuck_sessions(build_repository(config), stuck_after=stuck_after)
    if not recovered:
        typer.echo("No stuck sessions.")
        return
    for session in recovered:
        typer.echo(f"{session.session_id}  {session.movie_title:<32} now {session.status.value}")


@app.command()
def purge(
    yes_phrase: Optional[str] = typer.Option(
        None, "--yes-phrase", help="Confirmation phrase for non-interactive use."
    ),
    env: str = ENV_OPTION,
) -> None:
    """Delete every transcription stored with the provider account."""

    config = _load(env)
    workflow = PurgeWorkflow.from_config(config)
    found = workflow.check()
    if workflow.error:
        typer.echo(workflow.error, err=True)
        raise typer.Exit(code=2 if not workflow.client.is_configured else 1)
    if found == 0:
        typer.echo("No transcriptions to delete.")
        return

    typer.echo(f"Found {found} transcriptions.")
    phrase = yes_phrase
    if phrase is None:
        phrase = typer.prompt(f"Type '{workflow.confirmation_phrase}' to delete them all")
    if not workflow.confirm(phrase):
        typer.echo("Confirmation phrase did not match; nothing deleted.", err=True)
        raise typer.Exit(code=1)

    def on_progress(total: int, deleted: int) -> bool:
        typer.echo(f"Deleted {deleted}/{total}")
        return True

    result = workflow.purge(on_progress)
    typer.echo(
        f"Deleted {result.total_deleted} of {result.total_found}; {result.total_failed} failed."
    )
    for remote_id in result.failed_ids:
        typer.echo(f"  failed: {remote_id}", err=True)
    if result.critical_error:
        typer.echo(f"Purge stopped: {result.critical_error}", err=True)
    if not result.succeeded:
        raise typer.Exit(code=1)


def main() -> None:
    """Entrypoint used by the console script."""
    app()


if __name__ == "__main__":
    main()
