"""Tests for progress throttling and the progress bus."""

from __future__ import annotations

from reel_scribe.pipelines.progress import ProgressBus, ProgressEvent, ThrottledProgress


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_throttled_progress_is_monotonic() -> None:
    sent: list[float] = []
    reporter = ThrottledProgress(
        lambda _message, percent: sent.append(percent), min_interval=0.0, min_delta=0.0
    )

    for value in (10.0, 30.0, 20.0, 50.0, 40.0):
        reporter("step", value)

    assert sent == [10.0, 30.0, 50.0]
    assert reporter.percent == 50.0


def test_throttled_progress_rate_limits_small_steps() -> None:
    clock = FakeClock()
    sent: list[float] = []
    reporter = ThrottledProgress(
        lambda _message, percent: sent.append(percent),
        min_interval=1.0,
        min_delta=5.0,
        clock=clock,
    )

    reporter("start", 1.0)
    reporter("tick", 2.0)
    reporter("tick", 3.0)
    clock.now = 2.0
    reporter("tick", 4.0)
    reporter("jump", 20.0)
    reporter("done", 100.0)
    reporter("done again", 100.0)

    assert sent == [1.0, 4.0, 20.0, 100.0]


def test_throttled_progress_forwards_new_message_at_same_percent() -> None:
    sent: list[tuple[str, float]] = []
    reporter = ThrottledProgress(
        lambda message, percent: sent.append((message, percent)), clock=FakeClock()
    )

    reporter("Uploading", 50.0)
    reporter("Uploading", 50.0)
    reporter("Waiting for transcription", 50.0)
    reporter("Waiting for transcription", 40.0)

    assert sent == [("Uploading", 50.0), ("Waiting for transcription", 50.0)]


def test_throttled_progress_clamps_and_tracks_without_callback() -> None:
    reporter = ThrottledProgress(None)

    reporter("overflow", 140.0)

    assert reporter.percent == 100.0


def test_progress_bus_delivers_until_unsubscribed() -> None:
    bus = ProgressBus()
    received: list[ProgressEvent] = []
    unsubscribe = bus.subscribe(received.append)

    bus.publish(ProgressEvent(scope="session", message="Converting", percent=12.5))
    unsubscribe()
    bus.publish(ProgressEvent(scope="session", message="Uploading", percent=40.0))

    assert [event.message for event in received] == ["Converting"]
