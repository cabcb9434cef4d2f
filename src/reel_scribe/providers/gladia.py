"""Client for the Gladia v2 pre-recorded transcription API."""

from __future__ import annotations

import mimetypes
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

import requests
from requests import Response, Session
from requests_toolbelt import MultipartEncoder, MultipartEncoderMonitor

from ..exceptions import TranscriptionTimeout
from ..models import TranscriptionListItem
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "GladiaClient",
    "GladiaError",
    "GladiaRejected",
    "GladiaSettings",
    "TranscriptResult",
    "Utterance",
    "build_gladia_client",
]

UploadProgress = Callable[[int, int], None]
PollProgress = Callable[[float, float], None]


class GladiaError(RuntimeError):
    """Raised when the transcription provider rejects a request or keeps failing."""


@dataclass(slots=True)
class GladiaSettings:
    """Static configuration for the Gladia client."""

    api_base_url: str = "https://api.gladia.io"
    api_key_env: str = "GLADIA_API_KEY"
    timeout_seconds: float = 300.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 2.0
    poll_interval_seconds: float = 5.0
    transcription_timeout_seconds: float = 600.0
    language: str | None = "en"

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> GladiaSettings:
        providers = config.get("providers")
        if not isinstance(providers, Mapping):
            raise TypeError("Configuration missing 'providers' section.")
        raw = providers.get("gladia")
        if not isinstance(raw, Mapping):
            raise TypeError("Configuration missing 'providers.gladia' section.")

        language = raw.get("language", "en")
        return cls(
            api_base_url=str(raw.get("api_base_url", "https://api.gladia.io")).rstrip("/"),
            api_key_env=str(raw.get("api_key_env", "GLADIA_API_KEY")),
            timeout_seconds=float(raw.get("timeout_seconds", 300.0)),
            max_retries=int(raw.get("max_retries", 3)),
            retry_base_delay_seconds=float(raw.get("retry_base_delay_seconds", 2.0)),
            poll_interval_seconds=float(raw.get("poll_interval_seconds", 5.0)),
            transcription_timeout_seconds=float(raw.get("transcription_timeout_seconds", 600.0)),
            language=str(language) if language else None,
        )


@dataclass(slots=True)
class Utterance:
    speaker: int | None
    text: str
    start: float = 0.0
    end: float = 0.0


@dataclass(slots=True)
class TranscriptResult:
    """Finished transcript as returned by ``GET /v2/pre-recorded/{id}``."""

    transcript_id: str
    full_transcript: str = ""
    utterances: list[Utterance] = field(default_factory=list)
    duration_seconds: float | None = None

    @property
    def text(self) -> str:
        """Transcript as ``Speaker N: text`` lines (one-based labels)."""
        if not self.utterances:
            return self.full_transcript.strip()
        lines = []
        for utterance in self.utterances:
            content = utterance.text.strip()
            if not content:
                continue
            if utterance.speaker is None:
                lines.append(content)
            else:
                lines.append(f"Speaker {utterance.speaker + 1}: {content}")
        return "\n".join(lines)


class GladiaClient:
    """Upload, transcription, listing and deletion against one Gladia account."""

    RETRY_STATUS_CODES: ClassVar[set[int]] = {408, 429, 500, 502, 503, 504}
    AUTH_HEADER: ClassVar[str] = "x-gladia-key"

    def __init__(
        self,
        settings: GladiaSettings,
        *,
        api_key: str | None = None,
        session: Session | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self._api_key = api_key or os.environ.get(settings.api_key_env) or None
        self._session = session or requests.Session()
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    # ------------------------------------------------------------------ #
    # Upload and transcription
    # ------------------------------------------------------------------ #
    def upload(
        self, audio_path: str | Path, progress_callback: UploadProgress | None = None
    ) -> str:
        """Stream ``audio_path`` to ``/v2/upload`` and return the hosted ``audio_url``."""
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise FileNotFoundError(audio_path)
        mime_type = mimetypes.guess_type(audio_path.name)[0] or "application/octet-stream"

        def body_factory() -> tuple[MultipartEncoderMonitor, dict[str, str]]:
            handle = audio_path.open("rb")
            encoder = MultipartEncoder(fields={"audio": (audio_path.name, handle, mime_type)})

            def on_read(monitor: MultipartEncoderMonitor) -> None:
                if progress_callback is not None:
                    progress_callback(monitor.bytes_read, monitor.len)

            monitor = MultipartEncoderMonitor(encoder, on_read)
            return monitor, {"Content-Type": monitor.content_type}

        response = self._request("POST", "/v2/upload", body_factory=body_factory)
        payload = self._parse_json(response)
        audio_url = payload.get("audio_url")
        if not isinstance(audio_url, str) or not audio_url:
            raise GladiaError("Upload response did not include an audio_url.")
        LOGGER.info("Uploaded %s to Gladia", audio_path.name)
        return audio_url

    def start_transcription(
        self,
        audio_url: str,
        *,
        speaker_count: int = 2,
        single_speaker: bool = False,
    ) -> str:
        """Queue a pre-recorded transcription job and return its id."""
        body: dict[str, Any] = {
            "audio_url": audio_url,
            "diarization": not single_speaker,
            "sentences": True,
            "punctuation_enhanced": True,
        }
        if self.settings.language:
            body["language"] = self.settings.language
        if not single_speaker:
            speakers = max(1, speaker_count)
            body["diarization_config"] = {
                "number_of_speakers": speakers,
                "min_speakers": max(1, speakers - 1),
                "max_speakers": min(8, speakers + 1),
            }

        response = self._request("POST", "/v2/pre-recorded", json_body=body)
        transcript_id = self._parse_json(response).get("id")
        if not isinstance(transcript_id, str) or not transcript_id:
            raise GladiaError("Transcription request did not return an id.")
        return transcript_id

    def fetch(self, transcript_id: str) -> dict[str, Any]:
        response = self._request("GET", f"/v2/pre-recorded/{transcript_id}")
        return self._parse_json(response)

    def retrieve(
        self,
        transcript_id: str,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        on_poll: PollProgress | None = None,
    ) -> TranscriptResult:
        """Poll until the job is ``done``.

        Raises ``TranscriptionTimeout`` (retryable) once ``timeout`` seconds pass, and
        ``GladiaError`` when the provider reports the job as failed.
        """
        timeout = timeout if timeout is not None else self.settings.transcription_timeout_seconds
        interval = (
            poll_interval if poll_interval is not None else self.settings.poll_interval_seconds
        )
        started = self._clock()

        while True:
            payload = self.fetch(transcript_id)
            status = str(payload.get("status", "")).lower()
            if status == "done":
                return self._to_result(transcript_id, payload)
            if status == "error":
                detail = payload.get("error_code") or payload.get("error") or "unknown error"
                raise GladiaError(f"Transcription {transcript_id} failed: {detail}")

            elapsed = self._clock() - started
            if on_poll is not None:
                on_poll(elapsed, timeout)
            if elapsed + interval > timeout:
                raise TranscriptionTimeout(
                    f"Transcript {transcript_id} not ready after {elapsed:.0f}s (status={status})."
                )
            self._sleep(interval)

    # ------------------------------------------------------------------ #
    # Account-wide inventory
    # ------------------------------------------------------------------ #
    def list_page(self, *, offset: int = 0, limit: int = 100) -> list[TranscriptionListItem]:
        return self._fetch_page(offset, limit)[0]

    def _fetch_page(self, offset: int, limit: int) -> tuple[list[TranscriptionListItem], int]:
        """Items with an id, plus how many entries the page held before filtering."""
        response = self._request(
            "GET", "/v2/pre-recorded", params={"offset": offset, "limit": limit}
        )
        payload = response.json()
        raw_items = payload.get("items") if isinstance(payload, Mapping) else payload
        raw_items = list(raw_items or [])
        items: list[TranscriptionListItem] = []
        for raw in raw_items:
            if not isinstance(raw, Mapping) or not raw.get("id"):
                continue
            file_info = raw.get("file")
            items.append(
                TranscriptionListItem(
                    remote_id=str(raw["id"]),
                    status=str(raw["status"]) if raw.get("status") else None,
                    created_at=str(raw["created_at"]) if raw.get("created_at") else None,
                    file_name=(
                        str(file_info.get("filename"))
                        if isinstance(file_info, Mapping) and file_info.get("filename")
                        else None
                    ),
                )
            )
        return items, len(raw_items)

    def list_all(self, page_size: int = 100, offset: int = 0) -> list[TranscriptionListItem]:
        """Accumulate the whole inventory, paging until a short page comes back."""
        if page_size < 1:
            raise ValueError("page_size must be positive.")
        inventory: list[TranscriptionListItem] = []
        while True:
            page, fetched = self._fetch_page(offset, page_size)
            inventory.extend(page)
            if fetched < page_size:
                break
            offset += page_size
        LOGGER.info("Gladia account holds %d transcriptions", len(inventory))
        return inventory

    def delete(self, remote_id: str) -> bool:
        """Delete one transcription; already-missing ids count as deleted."""
        try:
            self._request("DELETE", f"/v2/pre-recorded/{remote_id}", allow_statuses={404})
        except GladiaRejected as exc:
            LOGGER.warning("Gladia refused to delete %s: %s", remote_id, exc)
            return False
        return True

    # ------------------------------------------------------------------ #
    # HTTP utilities
    # ------------------------------------------------------------------ #
    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        body_factory: Callable[[], tuple[Any, dict[str, str]]] | None = None,
        allow_statuses: set[int] | None = None,
    ) -> Response:
        headers = self._build_headers()
        url = f"{self.settings.api_base_url}{path}"
        attempts = 0
        backoff = self.settings.retry_base_delay_seconds
        last_error: Exception | None = None

        while attempts <= self.settings.max_retries:
            request_headers = dict(headers)
            data = None
            if body_factory is not None:
                # A streamed body is consumed by the attempt, so every retry builds a fresh one.
                data, extra_headers = body_factory()
                request_headers.update(extra_headers)
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=request_headers,
                    json=json_body,
                    params=params,
                    data=data,
                    timeout=self.settings.timeout_seconds,
                )
            except requests.RequestException as exc:
                last_error = exc
                LOGGER.warning("Gladia %s %s failed (%s); retrying.", method, path, exc)
            else:
                if response.status_code < 400 or response.status_code in (allow_statuses or ()):
                    return response
                if response.status_code not in self.RETRY_STATUS_CODES:
                    raise GladiaRejected(
                        f"Gladia responded with status {response.status_code}: {response.text}"
                    )
                last_error = GladiaError(
                    f"Received retryable status {response.status_code}: {response.text}"
                )
                LOGGER.warning(
                    "Gladia returned %s; backing off for %.1fs.", response.status_code, backoff
                )
            finally:
                _close_body(data)

            attempts += 1
            if attempts > self.settings.max_retries:
                break
            self._sleep(backoff)
            backoff = min(backoff * 2, 60.0)

        raise GladiaError(f"Exceeded maximum retries for Gladia {method} {path}") from last_error

    def _build_headers(self) -> dict[str, str]:
        if not self._api_key:
            raise GladiaError(
                f"Gladia API key not available. Set the environment variable "
                f"{self.settings.api_key_env}."
            )
        return {self.AUTH_HEADER: self._api_key, "Accept": "application/json"}

    @staticmethod
    def _parse_json(response: Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise GladiaError("Unable to decode Gladia response as JSON.") from exc
        if not isinstance(data, Mapping):
            raise GladiaError("Gladia returned a non-object payload.")
        return {str(key): value for key, value in data.items()}

    @staticmethod
    def _to_result(transcript_id: str, payload: Mapping[str, Any]) -> TranscriptResult:
        result = payload.get("result")
        transcription = result.get("transcription") if isinstance(result, Mapping) else None
        if not isinstance(transcription, Mapping):
            transcription = {}

        utterances: list[Utterance] = []
        for raw in transcription.get("utterances") or []:
            if not isinstance(raw, Mapping):
                continue
            speaker = raw.get("speaker")
            utterances.append(
                Utterance(
                    speaker=int(speaker) if isinstance(speaker, (int, float)) else None,
                    text=str(raw.get("text", "")),
                    start=float(raw.get("start") or 0.0),
                    end=float(raw.get("end") or 0.0),
                )
            )

        metadata = result.get("metadata") if isinstance(result, Mapping) else None
        duration = metadata.get("audio_duration") if isinstance(metadata, Mapping) else None
        return TranscriptResult(
            transcript_id=transcript_id,
            full_transcript=str(transcription.get("full_transcript") or ""),
            utterances=utterances,
            duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
        )


class GladiaRejected(GladiaError):
    """Non-retryable 4xx response."""


def _close_body(data: object) -> None:
    if isinstance(data, MultipartEncoderMonitor):
        for _name, part in data.encoder.fields.items():
            if isinstance(part, tuple) and len(part) > 1 and hasattr(part[1], "close"):
                part[1].close()


def build_gladia_client(
    config: Mapping[str, object],
    *,
    session: Session | None = None,
    api_key: str | None = None,
) -> GladiaClient:
    """Factory helper reading ``providers.gladia``."""
    return GladiaClient(GladiaSettings.from_config(config), api_key=api_key, session=session)
