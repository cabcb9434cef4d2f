"""Tests for the Gladia transcription client."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from reel_scribe.exceptions import TranscriptionTimeout
from reel_scribe.providers.gladia import (
    GladiaClient,
    GladiaError,
    GladiaRejected,
    GladiaSettings,
    build_gladia_client,
)


class StubResponse:
    def __init__(
        self,
        status_code: int,
        payload: Any = None,
        text: str = "",
    ) -> None:
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text

    def json(self) -> Any:
        return self._payload


class StubSession:
    def __init__(self, responses: list[StubResponse]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> StubResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError("No responses queued for StubSession")
        return self.responses.pop(0)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_client(
    responses: list[StubResponse],
    *,
    clock: FakeClock | None = None,
    **overrides: Any,
) -> tuple[GladiaClient, StubSession, FakeClock]:
    clock = clock or FakeClock()
    settings = GladiaSettings(
        api_base_url="https://gladia.example.com",
        retry_base_delay_seconds=1.0,
        poll_interval_seconds=5.0,
        **overrides,
    )
    session = StubSession(responses)
    client = GladiaClient(
        settings, api_key="secret", session=session, sleep=clock.sleep, clock=clock
    )
    return client, session, clock


def write_audio(tmp_path: Path) -> Path:
    audio_path = tmp_path / "MIC1.mp3"
    audio_path.write_bytes(b"ID3" + b"\x00" * 32)
    return audio_path


def done_payload() -> dict[str, Any]:
    return {
        "status": "done",
        "result": {
            "metadata": {"audio_duration": 12.5},
            "transcription": {
                "full_transcript": "Hello there. General Kenobi.",
                "utterances": [
                    {"speaker": 0, "text": "Hello there.", "start": 0.0, "end": 1.0},
                    {"speaker": 1, "text": "General Kenobi.", "start": 1.2, "end": 2.4},
                ],
            },
        },
    }


def test_upload_returns_audio_url(tmp_path: Path) -> None:
    client, session, _ = make_client(
        [StubResponse(200, {"audio_url": "https://gladia.example.com/file/abc"})]
    )
    audio_url = client.upload(write_audio(tmp_path))

    assert audio_url == "https://gladia.example.com/file/abc"
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://gladia.example.com/v2/upload"
    assert call["headers"]["x-gladia-key"] == "secret"
    assert call["headers"]["Content-Type"].startswith("multipart/form-data")


def test_upload_retries_retryable_status(tmp_path: Path) -> None:
    client, session, clock = make_client(
        [
            StubResponse(503, text="busy"),
            StubResponse(429, text="slow down"),
            StubResponse(200, {"audio_url": "https://gladia.example.com/file/abc"}),
        ]
    )

    assert client.upload(write_audio(tmp_path)).endswith("/abc")
    assert len(session.calls) == 3
    assert clock.sleeps == [1.0, 2.0]


def test_retries_exhausted_raise(tmp_path: Path) -> None:
    client, session, _ = make_client([StubResponse(500) for _ in range(3)], max_retries=2)

    with pytest.raises(GladiaError, match="Exceeded maximum retries"):
        client.upload(write_audio(tmp_path))
    assert len(session.calls) == 3


def test_client_error_is_not_retried() -> None:
    client, session, _ = make_client([StubResponse(401, text="bad key")])

    with pytest.raises(GladiaRejected):
        client.start_transcription("https://gladia.example.com/file/abc")
    assert len(session.calls) == 1


def test_start_transcription_configures_diarization() -> None:
    client, session, _ = make_client([StubResponse(201, {"id": "tr-1"})])

    transcript_id = client.start_transcription("https://audio", speaker_count=4)

    assert transcript_id == "tr-1"
    body = session.calls[0]["json"]
    assert body["diarization"] is True
    assert body["diarization_config"] == {
        "number_of_speakers": 4,
        "min_speakers": 3,
        "max_speakers": 5,
    }
    assert body["language"] == "en"


def test_single_speaker_disables_diarization() -> None:
    client, session, _ = make_client([StubResponse(201, {"id": "tr-2"})])

    client.start_transcription("https://audio", single_speaker=True)

    body = session.calls[0]["json"]
    assert body["diarization"] is False
    assert "diarization_config" not in body


def test_retrieve_polls_until_done() -> None:
    client, session, clock = make_client(
        [
            StubResponse(200, {"status": "queued"}),
            StubResponse(200, {"status": "processing"}),
            StubResponse(200, done_payload()),
        ]
    )
    polls: list[float] = []

    result = client.retrieve("tr-1", on_poll=lambda elapsed, _timeout: polls.append(elapsed))

    assert result.text == "Speaker 1: Hello there.\nSpeaker 2: General Kenobi."
    assert result.duration_seconds == pytest.approx(12.5)
    assert polls == [0.0, 5.0]
    assert clock.sleeps == [5.0, 5.0]
    assert all(call["method"] == "GET" for call in session.calls)


def test_retrieve_times_out() -> None:
    client, _, _ = make_client([StubResponse(200, {"status": "processing"}) for _ in range(5)])

    with pytest.raises(TranscriptionTimeout):
        client.retrieve("tr-1", timeout=12.0)


def test_retrieve_reports_provider_failure() -> None:
    client, _, _ = make_client([StubResponse(200, {"status": "error", "error_code": 500})])

    with pytest.raises(GladiaError, match="failed"):
        client.retrieve("tr-1")


def test_transcript_without_utterances_uses_full_text() -> None:
    payload = {"status": "done", "result": {"transcription": {"full_transcript": "  just text "}}}
    client, _, _ = make_client([StubResponse(200, payload)])

    assert client.retrieve("tr-1").text == "just text"


def test_list_all_pages_until_short_page() -> None:
    first = {"items": [{"id": "a", "status": "done"}, {"id": "b", "file": {"filename": "x.mp3"}}]}
    second = {"items": [{"id": "c"}]}
    client, session, _ = make_client([StubResponse(200, first), StubResponse(200, second)])

    items = client.list_all(page_size=2)

    assert [item.remote_id for item in items] == ["a", "b", "c"]
    assert items[1].file_name == "x.mp3"
    assert [call["params"]["offset"] for call in session.calls] == [0, 2]


def test_list_all_keeps_paging_past_entries_without_id() -> None:
    first = {"items": [{"id": "a"}, {"status": "orphan without id"}]}
    second = {"items": [{"id": "b"}, {"id": "c"}]}
    third = {"items": []}
    client, session, _ = make_client(
        [StubResponse(200, first), StubResponse(200, second), StubResponse(200, third)]
    )

    items = client.list_all(page_size=2)

    assert [item.remote_id for item in items] == ["a", "b", "c"]
    assert [call["params"]["offset"] for call in session.calls] == [0, 2, 4]


def test_delete_treats_missing_as_deleted() -> None:
    client, _, _ = make_client([StubResponse(404), StubResponse(403, text="forbidden")])

    assert client.delete("gone") is True
    assert client.delete("locked") is False


def test_missing_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_GLADIA_KEY", raising=False)
    config = {"providers": {"gladia": {"api_key_env": "TEST_GLADIA_KEY"}}}
    client = build_gladia_client(config, session=StubSession([]))

    assert client.is_configured is False
    with pytest.raises(GladiaError, match="TEST_GLADIA_KEY"):
        client.fetch("tr-1")


def test_settings_from_config_reads_environment_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_GLADIA_KEY", "from-env")
    config = {
        "providers": {
            "gladia": {
                "api_key_env": "TEST_GLADIA_KEY",
                "api_base_url": "https://gladia.example.com/",
                "language": None,
            }
        }
    }
    client = build_gladia_client(config, session=StubSession([]))

    assert client.is_configured is True
    assert client.settings.api_base_url == "https://gladia.example.com"
    assert client.settings.language is None
