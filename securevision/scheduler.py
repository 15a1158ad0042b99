from __future__ import annotations

"""Frame ingestion and the per-frame motion/face work loop.

Producers call `DetectionScheduler.add_frame` from their own threads; one
consumer thread drains a small drop-oldest queue and runs a detection cycle
per frame. Face work is throttled by motion: every 2nd cycle after a motion
cycle, otherwise every 5th.
"""

import logging
import threading
import time
from collections import deque
from typing import Deque, List, Optional

import numpy as np

from securevision.camera import Frame
from securevision.config import DetectionConfig
from securevision.face_pipeline import FacePipeline, RecognitionMode
from securevision.listeners import ListenerRegistry
from securevision.motion import MotionDetector
from securevision.results import DetectionResult, FaceObservation, TriggerKind

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 3
IDLE_WAIT_SECONDS = 0.033
FACE_INTERVAL_AFTER_MOTION = 2
FACE_INTERVAL_IDLE = 5


class DropOldestFrameQueue:
    """Bounded FIFO that evicts its oldest frame instead of blocking."""

    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Queue capacity must be >= 1")
        self.capacity = capacity
        self._frames: Deque[Frame] = deque()
        self._lock = threading.Lock()
        self.dropped = 0

    def put(self, frame: Frame) -> Optional[Frame]:
        """Enqueue `frame`; returns the evicted frame when the queue was full."""
        evicted: Optional[Frame] = None
        with self._lock:
            if len(self._frames) >= self.capacity:
                evicted = self._frames.popleft()
                self.dropped += 1
            self._frames.append(frame)
        return evicted

    def get_nowait(self) -> Optional[Frame]:
        with self._lock:
            if not self._frames:
                return None
            return self._frames.popleft()

    def clear(self) -> int:
        with self._lock:
            count = len(self._frames)
            self._frames.clear()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)


class DetectionScheduler:
    """Decide per frame which detectors run and publish one result per frame.

    The configuration is an immutable `DetectionConfig` swapped whole; each
    cycle reads one snapshot so a concurrent `set_config` never splits a
    cycle across two configurations.
    """

    def __init__(
        self,
        motion_detector: Optional[MotionDetector] = None,
        face_pipeline: Optional[FacePipeline] = None,
        config: Optional[DetectionConfig] = None,
        listeners: Optional[ListenerRegistry] = None,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
    ) -> None:
        self._config = config or DetectionConfig()
        self._config_lock = threading.Lock()
        self.motion_detector = motion_detector or MotionDetector(
            pixel_threshold=self._config.motion_pixel_threshold,
            min_area=self._config.motion_min_area,
            roi=self._config.roi,
        )
        self.face_pipeline = face_pipeline
        self.listeners = listeners or ListenerRegistry()
        self._queue = DropOldestFrameQueue(queue_capacity)

        self._counter_lock = threading.Lock()
        self._input_counter = 0
        self._face_gate_counter = 0
        self._previous_motion = False
        self._frame_id = 0

        self._result_lock = threading.Lock()
        self._last_result: Optional[DetectionResult] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        self.cycles_processed = 0
        self.cycle_errors = 0

    # -- configuration --------------------------------------------------------

    def get_config(self) -> DetectionConfig:
        with self._config_lock:
            return self._config

    def set_config(self, config: DetectionConfig) -> None:
        """Replace the whole configuration snapshot atomically."""
        with self._config_lock:
            self._config = config
        logger.info(
            "Detection config updated | ai=%s | motion=%s | faces=%s | recognition=%s | skip=%d",
            config.enable_ai,
            config.enable_motion_detect,
            config.enable_face_detect,
            config.enable_face_recognition,
            config.skip_frames,
        )

    # -- face subsystem -------------------------------------------------------

    @property
    def face_available(self) -> bool:
        return self.face_pipeline is not None and self.face_pipeline.initialized

    def initialize_faces(self) -> bool:
        """Initialize the face pipeline; on failure only the motion path runs."""
        if self.face_pipeline is None:
            return False
        try:
            ok = self.face_pipeline.initialize()
        except Exception as exc:
            logger.exception("Face subsystem initialization raised")
            ok = False
            message = f"Face subsystem initialization failed: {exc}"
        else:
            message = "Face subsystem initialization failed; continuing with motion detection only"
        if ok:
            logger.info("Face subsystem ready")
            return True
        logger.error(message)
        self.listeners.emit("on_subsystem_error", message)
        return False

    def register_face(self, name: str, image: np.ndarray, description: Optional[str] = None) -> bool:
        if not self.face_available:
            logger.warning("Face registration for %s rejected: face subsystem unavailable", name)
            return False
        return self.face_pipeline.register(name, image, description=description)

    def registered_names(self) -> List[str]:
        if self.face_pipeline is None or self.face_pipeline.store is None:
            return []
        return self.face_pipeline.store.list_names()

    def registered_count(self) -> int:
        if self.face_pipeline is None or self.face_pipeline.store is None:
            return 0
        return self.face_pipeline.store.count()

    # -- ingestion ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def add_frame(self, frame: Frame) -> bool:
        """Offer a frame; returns whether it was queued. Never blocks."""
        config = self.get_config()
        if not self._running or not config.enable_ai:
            return False
        with self._counter_lock:
            self._input_counter += 1
            if self._input_counter % (config.skip_frames + 1) != 0:
                return False
        if self._queue.put(frame) is not None:
            logger.debug("Frame queue full; dropped oldest frame")
        return True

    def clear_queue(self) -> int:
        return self._queue.clear()

    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def dropped_frames(self) -> int:
        return self._queue.dropped

    # -- consumer -------------------------------------------------------------

    def should_process_faces(self) -> bool:
        """Face gate; increments its counter on every evaluation."""
        self._face_gate_counter += 1
        interval = FACE_INTERVAL_AFTER_MOTION if self._previous_motion else FACE_INTERVAL_IDLE
        return self._face_gate_counter % interval == 0

    @property
    def last_result(self) -> Optional[DetectionResult]:
        with self._result_lock:
            return self._last_result

    def run_cycle(self, frame: Frame) -> DetectionResult:
        """Run motion and (gated) face work for one frame and publish the result."""
        config = self.get_config()
        started = time.perf_counter()
        self._frame_id += 1

        has_motion = False
        region = None
        motion_ms = 0.0
        if config.enable_motion_detect:
            self.motion_detector.configure(config.motion_pixel_threshold, config.motion_min_area, config.roi)
            motion_started = time.perf_counter()
            has_motion, region = self.motion_detector.detect(frame.image)
            motion_ms = (time.perf_counter() - motion_started) * 1000.0

        faces: List[FaceObservation] = []
        face_processed = False
        face_ms = 0.0
        if config.enable_face_detect and self.face_available and self.should_process_faces():
            self.face_pipeline.set_thresholds(config.face_detection_threshold, config.face_recognition_threshold)
            mode = (
                RecognitionMode.DETECT_AND_RECOGNIZE
                if config.enable_face_recognition
                else RecognitionMode.DETECT_ONLY
            )
            face_started = time.perf_counter()
            faces = self.face_pipeline.process(frame.image, mode)
            face_ms = (time.perf_counter() - face_started) * 1000.0
            face_processed = True
        self._previous_motion = has_motion

        result = DetectionResult(
            frame_id=self._frame_id,
            captured_at=frame.captured_at,
            camera_name=frame.camera_name,
            has_motion=has_motion,
            motion_region=region,
            faces=tuple(faces),
            face_processed=face_processed,
            recognition_ran=face_processed and config.enable_face_recognition,
            motion_ms=motion_ms,
            face_ms=face_ms,
            total_ms=(time.perf_counter() - started) * 1000.0,
        )
        with self._result_lock:
            self._last_result = result
        self.cycles_processed += 1

        self.listeners.emit("on_detection_result", result)
        for kind in self._triggers_for(result, config):
            self.listeners.emit("on_record_trigger", kind, frame)
        return result

    @staticmethod
    def _triggers_for(result: DetectionResult, config: DetectionConfig) -> List[TriggerKind]:
        """Record triggers for one result, at most one per kind."""
        triggers: List[TriggerKind] = []
        if result.has_motion and config.record_on_motion:
            triggers.append(TriggerKind.MOTION)
        if result.recognized_count > 0 and config.record_known_faces:
            triggers.append(TriggerKind.KNOWN_FACE)
        if result.unknown_count > 0 and config.record_unknown_faces:
            triggers.append(TriggerKind.UNKNOWN_FACE)
        if result.face_count > 1 and config.record_multiple_faces:
            triggers.append(TriggerKind.MULTIPLE_FACES)
        return triggers

    def _run(self) -> None:
        logger.info("Detection loop started")
        while not self._stop_event.is_set():
            frame = self._queue.get_nowait()
            if frame is None:
                self._stop_event.wait(timeout=IDLE_WAIT_SECONDS)
                continue
            try:
                self.run_cycle(frame)
            except Exception:
                logger.exception("Detection cycle failed for %s", frame.camera_name or "frame")
                self.cycle_errors += 1
        logger.info("Detection loop stopped after %d cycles", self.cycles_processed)

    def start(self) -> None:
        """Start the consumer thread; a no-op when already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run, name="detection-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Signal the loop and wait for the in-flight cycle to finish."""
        self._running = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Detection loop did not stop within %.1fs", timeout)
            self._thread = None
