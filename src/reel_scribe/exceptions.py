"""Exception types for Reel-Scribe."""

from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "IllegalTransitionError",
    "ProcessingCancelled",
    "ReelScribeError",
    "SessionBusyError",
    "TranscriptionTimeout",
]


class ReelScribeError(RuntimeError):
    """Base class for errors raised by the processing pipeline."""


class ConfigurationError(ReelScribeError):
    """Raised before any work is queued when a required provider is not configured."""


class SessionBusyError(ReelScribeError):
    """Raised when a session is submitted while its persisted status says it is mid-flight."""


class IllegalTransitionError(ReelScribeError):
    """Raised when a file is moved between two states that are not connected."""


class TranscriptionTimeout(ReelScribeError):
    """Raised when a transcript is not ready before the polling deadline.

    The failure is retryable: the remote job keeps running and can be picked up again later.
    """


class ProcessingCancelled(ReelScribeError):
    """
    Raised inside a stage worker when the file it is working on was cancelled.
    The orchestrator catches it and leaves the cancellation state untouched.
    """
