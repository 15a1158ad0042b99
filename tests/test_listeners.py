from __future__ import annotations

import logging

import pytest

from securevision.listeners import DetectionListener, ListenerRegistry, LoggingListener
from securevision.recording import RecordingState
from securevision.results import DetectionResult, FaceObservation, Rect


class _Named(DetectionListener):
    def __init__(self, name: str, calls: list) -> None:
        self.name = name
        self.calls = calls

    def on_recording_started(self, filename: str) -> None:
        self.calls.append((self.name, filename))


def test_emit_delivers_in_registration_order() -> None:
    calls: list = []
    registry = ListenerRegistry()
    first, second = _Named("a", calls), _Named("b", calls)
    registry.add(first)
    registry.add(second)
    registry.add(first)

    registry.emit("on_recording_started", "x.mp4")

    assert len(registry) == 2
    assert calls == [("a", "x.mp4"), ("b", "x.mp4")]


def test_failing_listener_is_isolated(caplog) -> None:
    calls: list = []

    class _Broken(DetectionListener):
        def on_recording_started(self, filename: str) -> None:
            raise RuntimeError("boom")

    registry = ListenerRegistry()
    registry.add(_Broken())
    registry.add(_Named("ok", calls))

    with caplog.at_level(logging.ERROR):
        registry.emit("on_recording_started", "x.mp4")

    assert calls == [("ok", "x.mp4")]
    assert "_Broken failed handling on_recording_started" in caplog.text


def test_listener_may_remove_itself_during_emit() -> None:
    registry = ListenerRegistry()

    class _Once(DetectionListener):
        def __init__(self) -> None:
            self.count = 0

        def on_subsystem_error(self, message: str) -> None:
            self.count += 1
            registry.remove(self)

    once = _Once()
    registry.add(once)
    registry.emit("on_subsystem_error", "first")
    registry.emit("on_subsystem_error", "second")

    assert once.count == 1
    assert len(registry) == 0


def test_unknown_event_is_rejected() -> None:
    with pytest.raises(ValueError):
        ListenerRegistry().emit("on_nothing")


def test_logging_listener_summarizes_results(caplog) -> None:
    result = DetectionResult(
        frame_id=7,
        captured_at=0.0,
        camera_name="Gate",
        has_motion=True,
        motion_region=Rect(1, 2, 3, 4),
        faces=(FaceObservation(bbox=Rect(0, 0, 5, 5), confidence=0.9, name="Alice", recognized=True),),
    )
    listener = LoggingListener()

    with caplog.at_level(logging.INFO, logger="securevision.listeners"):
        listener.on_detection_result(result)
        listener.on_detection_result(DetectionResult(frame_id=8, captured_at=0.0))
        listener.on_recording_state_changed(RecordingState.COOLDOWN)

    assert "camera=Gate | frame=7 | motion=True | region=1,2,3,4 | faces=1 | recognized=1" in caplog.text
    assert "frame=8" not in caplog.text
    assert "Recording state -> cooldown" in caplog.text
