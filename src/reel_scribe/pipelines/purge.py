"""Guarded bulk deletion of every transcription held by the provider account."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from enum import Enum
from typing import Protocol

from ..models import PurgeResult, TranscriptionListItem
from ..providers.gladia import build_gladia_client
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = ["DEFAULT_CONFIRMATION_PHRASE", "PurgeState", "PurgeWorkflow"]

DEFAULT_CONFIRMATION_PHRASE = "DELETE ALL"

PurgeProgress = Callable[[int, int], bool]


class PurgeClient(Protocol):
    @property
    def is_configured(self) -> bool: ...

    def list_all(self, page_size: int = 100, offset: int = 0) -> list[TranscriptionListItem]: ...

    def delete(self, remote_id: str) -> bool: ...


class PurgeState(str, Enum):
    INITIAL = "initial"
    CHECKING = "checking"
    CONFIRMATION = "confirmation"
    PURGING = "purging"
    COMPLETE = "complete"


class PurgeWorkflow:
    """Two-step purge: enumerate the remote inventory, then delete it after a typed confirmation.

    ``purge`` refuses to run unless ``check`` reached the confirmation state and ``confirm``
    accepted the exact phrase. Any exception raised mid-loop is recorded on the result with the
    counts gathered so far.
    """

    def __init__(
        self,
        client: PurgeClient,
        *,
        confirmation_phrase: str = DEFAULT_CONFIRMATION_PHRASE,
        page_size: int = 100,
    ) -> None:
        self.client = client
        self.confirmation_phrase = confirmation_phrase
        self.page_size = page_size
        self.state = PurgeState.INITIAL
        self.inventory: list[TranscriptionListItem] = []
        self.error: str | None = None
        self.result: PurgeResult | None = None
        self._confirmed = False

    @classmethod
    def from_config(
        cls, config: Mapping[str, object], *, client: PurgeClient | None = None
    ) -> PurgeWorkflow:
        raw = config.get("purge", {})
        settings = dict(raw) if isinstance(raw, Mapping) else {}
        return cls(
            client or build_gladia_client(config),
            confirmation_phrase=str(
                settings.get("confirmation_phrase", DEFAULT_CONFIRMATION_PHRASE)
            ),
            page_size=int(settings.get("page_size", 100)),
        )

    @property
    def total_found(self) -> int:
        return len(self.inventory)

    def check(self) -> int:
        """Enumerate the inventory; returns the number of transcriptions found."""
        self.state = PurgeState.CHECKING
        self.error = None
        self.result = None
        self._confirmed = False
        self.inventory = []

        if not self.client.is_configured:
            self.error = "Transcription provider API key is not configured."
            self.state = PurgeState.INITIAL
            LOGGER.error(self.error)
            return 0
        try:
            self.inventory = self.client.list_all(page_size=self.page_size)
        except Exception as exc:  # noqa: BLE001 - surfaced through ``error``
            self.error = f"Could not list transcriptions: {exc}"
            self.state = PurgeState.INITIAL
            LOGGER.error(self.error)
            return 0

        self.state = PurgeState.CONFIRMATION
        LOGGER.info("Purge check found %d transcriptions", self.total_found)
        return self.total_found

    def confirm(self, phrase: str) -> bool:
        if self.state is not PurgeState.CONFIRMATION:
            return False
        self._confirmed = phrase == self.confirmation_phrase
        if not self._confirmed:
            LOGGER.warning("Purge confirmation phrase did not match.")
        return self._confirmed

    def purge(self, progress_callback: PurgeProgress | None = None) -> PurgeResult:
        if self.state is not PurgeState.CONFIRMATION or not self._confirmed:
            raise RuntimeError("Purge requires a completed check and a matching confirmation.")

        self.state = PurgeState.PURGING
        result = PurgeResult(total_found=self.total_found)
        try:
            for item in self.inventory:
                if self.client.delete(item.remote_id):
                    result.total_deleted += 1
                else:
                    result.total_failed += 1
                    result.failed_ids.append(item.remote_id)
                if progress_callback is not None and not progress_callback(
                    result.total_found, result.total_deleted
                ):
                    result.aborted = True
                    LOGGER.warning(
                        "Purge aborted after %d of %d deletions",
                        result.total_deleted,
                        result.total_found,
                    )
                    break
        except Exception as exc:  # noqa: BLE001 - recorded with partial counts
            result.critical_error = str(exc)
            LOGGER.exception("Purge stopped by an unexpected error")

        LOGGER.info(
            "Purge finished: %d deleted, %d failed of %d",
            result.total_deleted,
            result.total_failed,
            result.total_found,
        )
        self.result = result
        self.state = PurgeState.COMPLETE
        self._confirmed = False
        return result

    def reset(self) -> None:
        self.state = PurgeState.INITIAL
        self.inventory = []
        self.error = None
        self.result = None
        self._confirmed = False
