from __future__ import annotations

"""Service orchestration.

This module coordinates:
- camera producer threads feeding the detection scheduler
- the detection consumer loop and face subsystem startup
- the recording state machine and its timer thread
- Telegram alerts, commands and periodic status reports
"""

import logging
import threading
import time
from typing import Dict, List, Optional

import numpy as np

from securevision.camera import CameraClient, IsapiSnapshotCamera, RtspCamera, UsbCamera
from securevision.config import DetectionConfig, Settings, build_camera_map
from securevision.detector import YoloFaceDetector
from securevision.face_db import IdentityStore
from securevision.face_engine import BaselineFaceEngine, FaceCapability, HybridFaceEngine, InsightFaceEngine
from securevision.face_pipeline import FacePipeline
from securevision.listeners import DetectionListener, ListenerRegistry, LoggingListener
from securevision.motion import MotionDetector
from securevision.notifier import TelegramAlertListener, TelegramCommand, TelegramNotifier
from securevision.recording import RecordingState, RecordingStateMachine, RecordingTimer
from securevision.results import DetectionResult
from securevision.scheduler import DetectionScheduler

logger = logging.getLogger(__name__)


class RuntimeStats(DetectionListener):
    """Thread-safe counters fed by listener events, used for `/status`."""

    _COUNTERS = (
        "frames_captured",
        "frames_processed",
        "motion_frames",
        "faces_detected",
        "faces_recognized",
        "recordings_started",
        "recordings_completed",
        "errors",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_at = time.time()
        self.last_event_at = self.started_at
        self.recording_state = RecordingState.IDLE
        for name in self._COUNTERS:
            setattr(self, name, 0)
        self._last_report = {name: 0 for name in self._COUNTERS}

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)
            self.last_event_at = time.time()

    def inc_frames_captured(self) -> None:
        self._bump("frames_captured")

    def inc_errors(self) -> None:
        self._bump("errors")

    def on_detection_result(self, result: DetectionResult) -> None:
        with self._lock:
            self.frames_processed += 1
            if result.has_motion:
                self.motion_frames += 1
            self.faces_detected += result.face_count
            self.faces_recognized += result.recognized_count
            if result.has_motion or result.has_faces:
                self.last_event_at = time.time()

    def on_recording_state_changed(self, state: RecordingState) -> None:
        with self._lock:
            self.recording_state = state

    def on_recording_started(self, filename: str) -> None:
        self._bump("recordings_started")

    def on_recording_stopped(self, filename: str, duration_ms: int) -> None:
        self._bump("recordings_completed")

    def on_subsystem_error(self, message: str) -> None:
        self._bump("errors")

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {name: getattr(self, name) for name in self._COUNTERS}

    def status_report(self, cameras: int) -> str:
        """Build status text and reset the `since last report` checkpoint."""
        with self._lock:
            now = time.time()
            totals = {name: getattr(self, name) for name in self._COUNTERS}
            since_last = {name: totals[name] - self._last_report[name] for name in self._COUNTERS}
            self._last_report = dict(totals)
            uptime = int(now - self.started_at)
            last_event = int(now - self.last_event_at)
            state = self.recording_state.value

        return (
            "App status: running\n"
            f"Uptime: {uptime}s | Cameras: {cameras} | Recording: {state} | Last activity: {last_event}s ago\n"
            f"Since last report: frames={since_last['frames_processed']}, motion={since_last['motion_frames']}, "
            f"faces={since_last['faces_detected']}, recognized={since_last['faces_recognized']}, "
            f"recordings={since_last['recordings_started']}, errors={since_last['errors']}\n"
            f"Totals: captured={totals['frames_captured']}, processed={totals['frames_processed']}, "
            f"motion={totals['motion_frames']}, faces={totals['faces_detected']}, "
            f"recognized={totals['faces_recognized']}, recordings={totals['recordings_completed']}, "
            f"errors={totals['errors']}"
        )


def build_face_engine(engine: str, yolo_face_model: str = "") -> FaceCapability:
    """Create the configured face capability.

    `insightface` falls back to the Haar baseline when InsightFace cannot be
    loaded; `yolo` additionally swaps detection for the YOLO face model.
    """
    if engine == "haar":
        return BaselineFaceEngine()
    detector = YoloFaceDetector(yolo_face_model) if engine == "yolo" else None
    return HybridFaceEngine(InsightFaceEngine(), fallback=BaselineFaceEngine(), detector=detector)


class SurveillanceApp:
    """Top-level service object controlling worker lifecycle and pipelines."""

    def __init__(self, settings: Settings, face_engine: Optional[FaceCapability] = None) -> None:
        self.settings = settings
        self.cameras = self._build_cameras(settings)
        self.stop_event = threading.Event()

        self.listeners = ListenerRegistry()
        self.stats = RuntimeStats()
        self.listeners.add(LoggingListener())
        self.listeners.add(self.stats)

        detection = settings.detection
        self.store = IdentityStore(settings.face_db_path, embedding_dim=settings.embedding_dim)
        self.face_pipeline = FacePipeline(
            face_engine or build_face_engine(settings.face_engine, settings.yolo_face_model),
            store=self.store,
            detection_threshold=detection.face_detection_threshold,
            recognition_threshold=detection.face_recognition_threshold,
            faces_dir=settings.faces_dir,
        )
        self.scheduler = DetectionScheduler(
            motion_detector=MotionDetector(detection.motion_pixel_threshold, detection.motion_min_area, detection.roi),
            face_pipeline=self.face_pipeline,
            config=detection,
            listeners=self.listeners,
            queue_capacity=settings.frame_queue_size,
        )
        self.recorder = RecordingStateMachine(config=detection, listeners=self.listeners)
        self.listeners.add(self.recorder)
        self.recording_timer = RecordingTimer(self.recorder)

        self.notifier = TelegramNotifier(bot_token=settings.telegram_bot_token, chat_id=settings.telegram_chat_id)
        self.alerts = TelegramAlertListener(self.notifier)
        if self.notifier.enabled:
            self.listeners.add(self.alerts)

        self.poller_threads: Dict[int, threading.Thread] = {}
        self.status_report_thread: Optional[threading.Thread] = None
        self.status_report_interval_seconds = max(0.0, float(settings.status_report_interval_hours) * 3600.0)

    def _build_cameras(self, settings: Settings) -> Dict[int, CameraClient]:
        """Create capture clients according to configured capture mode."""
        camera_map = build_camera_map(settings)

        if settings.capture_mode == "isapi":
            return {
                channel_id: IsapiSnapshotCamera(
                    camera=config,
                    username=settings.dvr_username,
                    password=settings.dvr_password,
                    timeout_seconds=settings.isapi_timeout_seconds,
                    reconnect_seconds=settings.camera_reconnect_seconds,
                    auth_mode=settings.isapi_auth_mode,
                )
                for channel_id, config in camera_map.items()
            }
        if settings.capture_mode == "usb":
            return {
                channel_id: UsbCamera(camera=config, reconnect_seconds=settings.camera_reconnect_seconds)
                for channel_id, config in camera_map.items()
            }
        return {
            channel_id: RtspCamera(
                camera=config,
                reconnect_seconds=settings.camera_reconnect_seconds,
                rtsp_transport=settings.rtsp_transport,
            )
            for channel_id, config in camera_map.items()
        }

    # -- configuration and identity management ---------------------------------

    def get_config(self) -> DetectionConfig:
        return self.scheduler.get_config()

    def set_config(self, config: DetectionConfig) -> None:
        """Apply a new snapshot to the scheduler and the recorder."""
        self.scheduler.set_config(config)
        self.recorder.apply_config(config)

    def register(self, name: str, image: np.ndarray, description: Optional[str] = None) -> bool:
        return self.scheduler.register_face(name, image, description=description)

    def list_names(self) -> List[str]:
        return self.scheduler.registered_names()

    def count(self) -> int:
        return self.scheduler.registered_count()

    # -- Telegram -------------------------------------------------------------

    def _handle_telegram_command(self, command: TelegramCommand) -> Optional[str]:
        """Answer bot commands from the configured chat."""
        name = command.command
        if name in {"ping", "/ping"}:
            return "pong"
        if name in {"status", "/status"}:
            config = self.get_config()
            return (
                self.stats.status_report(cameras=len(self.cameras))
                + f"\nFace subsystem: {'ready' if self.scheduler.face_available else 'unavailable'}"
                + f"\nRegistered faces: {self.count()}"
                + f"\nQueue: {self.scheduler.queue_size()} (dropped {self.scheduler.dropped_frames})"
                + f"\nAI: {config.enable_ai} | recording enabled: {config.recording_enabled}"
            )
        if name == "/record":
            before = self.recorder.state
            self.recorder.manual_trigger()
            if self.recorder.state is RecordingState.RECORDING and before is not RecordingState.RECORDING:
                return "Manual recording started."
            return f"Manual trigger ignored (state: {self.recorder.state.value})."
        if name == "/stop":
            if not self.recorder.is_recording:
                return f"Nothing to stop (state: {self.recorder.state.value})."
            self.recorder.stop()
            return "Recording stopped."
        if name == "/faces":
            names = self.list_names()
            if not names:
                return "No registered faces."
            return f"Registered faces ({len(names)}):\n" + "\n".join(names)
        if name in {"help", "/help", "?"}:
            return "Commands:\n/ping\n/status\n/record\n/stop\n/faces\n/help"
        return None

    def _run_periodic_status_reports(self) -> None:
        """Send a Telegram status report every configured interval."""
        interval = self.status_report_interval_seconds
        if interval <= 0:
            return
        while not self.stop_event.wait(timeout=interval):
            if self.notifier.send_text(self.stats.status_report(cameras=len(self.cameras))):
                logger.info("Periodic status report sent to Telegram")
            else:
                self.stats.inc_errors()
                logger.error("Periodic status report failed")

    # -- workers --------------------------------------------------------------

    def _poll_camera(self, camera_id: int, camera: CameraClient) -> None:
        """Producer loop: read frames and hand them to the scheduler."""
        while not self.stop_event.is_set():
            try:
                frame = camera.read()
            except Exception:
                logger.exception("Capture failed for %s", camera.camera.name)
                self.stats.inc_errors()
                self.stop_event.wait(timeout=self.settings.camera_reconnect_seconds)
                continue
            if frame is not None:
                self.stats.inc_frames_captured()
                self.scheduler.add_frame(frame)
            self.stop_event.wait(timeout=self.settings.capture_interval_seconds)

    def _start_workers(self) -> None:
        """Start consumer, timer, notifier and one producer thread per camera."""
        self.scheduler.initialize_faces()
        self.scheduler.start()
        self.recording_timer.start()

        if self.notifier.enabled:
            self.alerts.start()
            self.notifier.start_command_listener(self._handle_telegram_command)
            if self.status_report_interval_seconds > 0:
                self.status_report_thread = threading.Thread(
                    target=self._run_periodic_status_reports,
                    name="status-reporter",
                    daemon=True,
                )
                self.status_report_thread.start()
                logger.info("Started periodic status reporter thread")

        for camera_id, camera in self.cameras.items():
            poller = threading.Thread(
                target=self._poll_camera,
                args=(camera_id, camera),
                name=f"poller-{camera_id}",
                daemon=True,
            )
            poller.start()
            self.poller_threads[camera_id] = poller
            logger.info("Started capture thread for camera=%s channel=%s", camera.camera.name, camera_id)

    def _stop_workers(self) -> None:
        """Stop worker threads and close external resources."""
        self.stop_event.set()
        for thread in self.poller_threads.values():
            thread.join(timeout=2)
        self.scheduler.stop()
        if self.recorder.is_recording:
            self.recorder.stop()
        self.recording_timer.stop()
        if self.status_report_thread is not None:
            self.status_report_thread.join(timeout=2)
        self.alerts.stop()
        for camera in self.cameras.values():
            camera.release()
        self.notifier.close()
        self.store.close()
        logger.info("All workers and resources stopped")

    def run(self) -> None:
        """Run the service until interrupted from the main thread."""
        logger.info(
            "Starting surveillance with %d cameras in %s mode (face engine: %s)",
            len(self.cameras),
            self.settings.capture_mode,
            self.settings.face_engine,
        )
        self._start_workers()
        try:
            while not self.stop_event.is_set():
                time.sleep(0.2)
        except KeyboardInterrupt:
            logger.info("Interrupted by user, stopping workers...")
            self.stop_event.set()
        finally:
            self._stop_workers()
