from __future__ import annotations

"""Observer interface and fan-out registry for detection and recording events."""

import logging
import threading
from typing import TYPE_CHECKING, List

from securevision.results import DetectionResult, TriggerKind

if TYPE_CHECKING:
    from securevision.camera import Frame
    from securevision.recording import RecordingState

logger = logging.getLogger(__name__)


class DetectionListener:
    """Base listener with no-op handlers; subclasses override what they need."""

    def on_detection_result(self, result: DetectionResult) -> None:
        pass

    def on_record_trigger(self, kind: TriggerKind, frame: "Frame") -> None:
        pass

    def on_recording_state_changed(self, state: "RecordingState") -> None:
        pass

    def on_recording_started(self, filename: str) -> None:
        pass

    def on_recording_stopped(self, filename: str, duration_ms: int) -> None:
        pass

    def on_subsystem_error(self, message: str) -> None:
        pass


class ListenerRegistry:
    """Thread-safe observer list.

    Handlers run on the publishing thread, outside the registry lock, so a
    listener may add/remove listeners or publish further events. A failing
    listener is logged and does not prevent delivery to the others.
    """

    _EVENTS = frozenset(
        {
            "on_detection_result",
            "on_record_trigger",
            "on_recording_state_changed",
            "on_recording_started",
            "on_recording_stopped",
            "on_subsystem_error",
        }
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[DetectionListener] = []

    def add(self, listener: DetectionListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove(self, listener: DetectionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, event: str, *args) -> None:
        """Deliver `event(*args)` to every registered listener in order."""
        if event not in self._EVENTS:
            raise ValueError(f"Unknown listener event: {event}")
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception("Listener %s failed handling %s", type(listener).__name__, event)


class LoggingListener(DetectionListener):
    """Write a concise log line for every notable event."""

    def on_detection_result(self, result: DetectionResult) -> None:
        if not result.has_motion and not result.has_faces:
            return
        region = result.motion_region
        region_text = "none" if region is None else f"{region.x},{region.y},{region.width},{region.height}"
        logger.info(
            "Detection | camera=%s | frame=%d | motion=%s | region=%s | faces=%d | recognized=%d | unknown=%d | total_ms=%.1f",
            result.camera_name or "-",
            result.frame_id,
            result.has_motion,
            region_text,
            result.face_count,
            result.recognized_count,
            result.unknown_count,
            result.total_ms,
        )

    def on_record_trigger(self, kind: TriggerKind, frame: "Frame") -> None:
        logger.debug("Record trigger %s from %s", kind.value, frame.camera_name)

    def on_recording_state_changed(self, state: "RecordingState") -> None:
        logger.info("Recording state -> %s", state.value)

    def on_recording_started(self, filename: str) -> None:
        logger.info("Recording started: %s", filename)

    def on_recording_stopped(self, filename: str, duration_ms: int) -> None:
        logger.info("Recording stopped: %s (%d ms)", filename, duration_ms)

    def on_subsystem_error(self, message: str) -> None:
        logger.error("Detection subsystem error: %s", message)
