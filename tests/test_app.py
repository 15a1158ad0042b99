from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

from securevision.app import RuntimeStats, SurveillanceApp, build_face_engine
from securevision.config import DetectionConfig, Settings
from securevision.face_engine import BaselineFaceEngine, HybridFaceEngine
from securevision.logs import SensitiveDataFilter, configure_logging
from securevision.notifier import TelegramAlertListener, TelegramCommand, TelegramNotifier
from securevision.recording import RecordingState
from securevision.results import DetectionResult, FaceObservation, Rect


class _FakeFaceEngine:
    embedding_dim = 4

    def initialize(self) -> bool:
        return True

    def detect_faces(self, image):
        return []

    def extract_embedding(self, region):
        return np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32)


def _settings(tmp_path: Path, **changes) -> Settings:
    settings = Settings(
        dvr_username="",
        dvr_password="",
        dvr_ip="",
        telegram_bot_token="",
        telegram_chat_id="",
        capture_mode="usb",
        capture_interval_seconds=0.01,
        camera_reconnect_seconds=0.1,
        rtsp_transport="tcp",
        isapi_timeout_seconds=1.0,
        isapi_auth_mode="auto",
        frame_queue_size=3,
        face_engine="haar",
        yolo_face_model="",
        embedding_dim=4,
        face_db_path=tmp_path / "faces.db",
        faces_dir=tmp_path / "faces",
        status_report_interval_hours=0.0,
        camera_channels={0: "Desk"},
    )
    return replace(settings, **changes)


@pytest.fixture
def app(tmp_path):
    service = SurveillanceApp(_settings(tmp_path), face_engine=_FakeFaceEngine())
    service.scheduler.initialize_faces()
    yield service
    service.store.close()


def _command(app: SurveillanceApp, text: str):
    return app._handle_telegram_command(TelegramCommand(text=text, chat_id="1"))


def test_ping_and_help(app) -> None:
    assert _command(app, "/ping") == "pong"
    assert "/record" in _command(app, "/help")
    assert _command(app, "/unknown") is None


def test_faces_command_lists_registered_names(app) -> None:
    assert _command(app, "/faces") == "No registered faces."
    assert app.register("Alice", np.zeros((32, 32, 3), dtype=np.uint8)) is True
    assert app.list_names() == ["Alice"]
    assert app.count() == 1
    assert _command(app, "/faces@SecureVisionBot") == "Registered faces (1):\nAlice"


def test_record_and_stop_commands_drive_recorder(app) -> None:
    assert _command(app, "/stop").startswith("Nothing to stop")
    assert _command(app, "/record") == "Manual recording started."
    assert app.recorder.state is RecordingState.RECORDING
    assert _command(app, "/record").startswith("Manual trigger ignored")
    assert _command(app, "/stop") == "Recording stopped."
    assert app.recorder.state is RecordingState.IDLE
    assert app.stats.recordings_started == 1
    assert app.stats.recordings_completed == 1


def test_status_command_reports_pipeline_state(app) -> None:
    status = _command(app, "/status")
    assert status.startswith("App status: running")
    assert "Face subsystem: ready" in status
    assert "Registered faces: 0" in status


def test_set_config_reaches_scheduler_and_recorder(app) -> None:
    config = DetectionConfig(recording_enabled=False)
    app.set_config(config)

    assert app.get_config() is config
    assert _command(app, "/record").startswith("Manual trigger ignored")
    assert app.recorder.state is RecordingState.IDLE


def test_build_face_engine_by_name() -> None:
    assert isinstance(build_face_engine("haar"), BaselineFaceEngine)
    assert isinstance(build_face_engine("insightface"), HybridFaceEngine)


def test_runtime_stats_counts_events() -> None:
    stats = RuntimeStats()
    stats.inc_frames_captured()
    stats.on_detection_result(
        DetectionResult(
            frame_id=1,
            captured_at=0.0,
            has_motion=True,
            faces=(FaceObservation(bbox=Rect(0, 0, 4, 4), confidence=0.9, recognized=True),),
        )
    )
    stats.on_subsystem_error("engine missing")

    assert stats.snapshot()["motion_frames"] == 1
    assert stats.snapshot()["faces_recognized"] == 1
    first = stats.status_report(cameras=1)
    assert "motion=1" in first
    second = stats.status_report(cameras=1)
    assert "Since last report: frames=0, motion=0" in second
    assert "errors=1" in second


def test_alert_listener_queues_and_throttles_unknown_faces() -> None:
    now = [100.0]
    alerts = TelegramAlertListener(TelegramNotifier("", ""), unknown_face_interval_seconds=60.0, clock=lambda: now[0])
    unknown = DetectionResult(
        frame_id=1,
        captured_at=0.0,
        camera_name="Gate",
        faces=(FaceObservation(bbox=Rect(0, 0, 4, 4), confidence=0.9),),
        recognition_ran=True,
    )

    alerts.on_detection_result(unknown)
    now[0] += 10
    alerts.on_detection_result(unknown)
    now[0] += 60
    alerts.on_detection_result(unknown)
    alerts.on_recording_started("motion_x.mp4")

    assert alerts.pending() == 3


def test_disabled_notifier_is_a_noop() -> None:
    notifier = TelegramNotifier("", "")
    assert notifier.enabled is False
    assert notifier.send_text("hello") is False
    notifier.start_command_listener(lambda command: None)
    notifier.close()


def test_telegram_command_parsing() -> None:
    command = TelegramCommand(text="/Record@MyBot now please", chat_id="1")
    assert command.command == "/record"
    assert command.args == ["now", "please"]
    assert TelegramCommand(text="", chat_id="1").command == ""


def test_log_filter_redacts_credentials() -> None:
    record = logging.LogRecord(
        name="x",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Opening %s and %s",
        args=("rtsp://admin:pw@10.0.0.2:554/Streaming/Channels/101", "https://api.telegram.org/bot123:ABC/sendMessage"),
        exc_info=None,
    )
    assert SensitiveDataFilter().filter(record) is True
    message = record.getMessage()
    assert "admin:pw" not in message
    assert "123:ABC" not in message
    assert "rtsp://<redacted>@10.0.0.2" in message


def test_alert_listener_skips_faces_when_recognition_did_not_run() -> None:
    alerts = TelegramAlertListener(TelegramNotifier("", ""))
    detected_only = DetectionResult(
        frame_id=1,
        captured_at=0.0,
        faces=(FaceObservation(bbox=Rect(0, 0, 4, 4), confidence=0.9),),
        face_processed=True,
    )

    alerts.on_detection_result(detected_only)

    assert alerts.pending() == 0


def test_configure_logging_writes_redacted_file(tmp_path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = configure_logging(tmp_path / "logs", logging.DEBUG)
        logging.getLogger("securevision.test").info("Connecting to %s", "rtsp://admin:pw@cam/stream")
        for handler in root.handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    assert "rtsp://<redacted>@cam/stream" in text
    assert "admin:pw" not in text
    assert logging.getLogger("httpx").level == logging.WARNING
