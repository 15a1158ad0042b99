from __future__ import annotations

"""Configuration loading, detection snapshots and camera source construction.

Settings come from the environment first, then a local `.secrets` file, then
defaults. Detection/recording tuning is grouped in the immutable
`DetectionConfig` so the running pipeline can swap it as one object.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from securevision.results import Rect

CAPTURE_MODES = ("rtsp", "isapi", "usb")
FACE_ENGINES = ("insightface", "yolo", "haar")


def _parse_secrets_file(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines from the local secrets file.

    The parser is intentionally permissive:
    - ignores blank lines/comments
    - accepts surrounding whitespace around keys/values
    - strips both single and double wrapping quotes
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


@dataclass(frozen=True)
class DetectionConfig:
    """Immutable per-cycle detection and recording configuration.

    Durations are milliseconds. Replace the whole object (for example with
    `dataclasses.replace`) instead of mutating it.
    """

    enable_ai: bool = True
    enable_motion_detect: bool = True
    enable_face_detect: bool = True
    enable_face_recognition: bool = True
    motion_pixel_threshold: int = 25
    motion_min_area: int = 500
    roi: Optional[Rect] = None
    face_detection_threshold: float = 0.5
    face_recognition_threshold: float = 0.7
    skip_frames: int = 3
    recording_enabled: bool = True
    record_on_motion: bool = True
    record_known_faces: bool = True
    record_unknown_faces: bool = True
    record_multiple_faces: bool = True
    pre_record_ms: int = 1000
    post_record_ms: int = 5000
    min_record_ms: int = 10000
    cooldown_ms: int = 3000
    max_record_ms: int = 300000

    def __post_init__(self) -> None:
        if self.skip_frames < 0:
            raise ValueError("skip_frames must be >= 0")
        if not 0 <= self.motion_pixel_threshold <= 255:
            raise ValueError("motion_pixel_threshold must be within [0, 255]")
        if self.motion_min_area < 0:
            raise ValueError("motion_min_area must be >= 0")
        for name in ("face_detection_threshold", "face_recognition_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]")
        for name in ("pre_record_ms", "post_record_ms", "min_record_ms", "cooldown_ms", "max_record_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_record_ms < self.min_record_ms:
            raise ValueError("max_record_ms must be >= min_record_ms")
        if self.roi is not None and self.roi.is_empty:
            raise ValueError("roi must have a positive width and height")


@dataclass(frozen=True)
class CameraConfig:
    """Resolved capture source endpoint and display metadata."""

    channel_key: int
    name: str
    source_url: str


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment and/or `.secrets`."""

    dvr_username: str
    dvr_password: str
    dvr_ip: str
    telegram_bot_token: str
    telegram_chat_id: str
    capture_mode: str
    capture_interval_seconds: float
    camera_reconnect_seconds: float
    rtsp_transport: str
    isapi_timeout_seconds: float
    isapi_auth_mode: str
    frame_queue_size: int
    face_engine: str
    yolo_face_model: str
    embedding_dim: int
    face_db_path: Path
    faces_dir: Path
    status_report_interval_hours: float
    camera_channels: Dict[int, str]
    detection: DetectionConfig = field(default_factory=DetectionConfig)


def _get_env(name: str, file_values: Dict[str, str], default: str = "") -> str:
    """Read a setting from env first, then file, then default."""
    return os.getenv(name, file_values.get(name, default)).strip()


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_roi(raw: str) -> Optional[Rect]:
    """Parse `x,y,width,height`; blank or malformed values disable the ROI."""
    text = raw.strip()
    if not text:
        return None
    parts = [part.strip() for part in text.split(",")]
    if len(parts) != 4:
        return None
    try:
        x, y, width, height = map(int, parts)
    except ValueError:
        return None
    if width <= 0 or height <= 0:
        return None
    return Rect(x, y, width, height)


def _parse_camera_channels(raw: str) -> Dict[int, str]:
    """Parse camera channel map from `.secrets`.

    Format:
    - `channel_id:name` entries separated by `;`
    - Example: `101:Gate;201:Yard` (for `usb` capture the id is the device index)
    """
    parsed: Dict[int, str] = {}
    text = raw.strip()
    if not text:
        return parsed

    for entry in text.split(";"):
        chunk = entry.strip()
        if not chunk or ":" not in chunk:
            continue
        channel_raw, name_raw = chunk.split(":", 1)
        try:
            channel_id = int(channel_raw.strip())
        except ValueError:
            continue
        name = name_raw.strip()
        if not name:
            continue
        parsed[channel_id] = name
    return parsed


def load_detection_config(file_values: Dict[str, str]) -> DetectionConfig:
    """Build the initial `DetectionConfig` from env/file values."""
    defaults = DetectionConfig()

    def _bool(name: str, default: bool) -> bool:
        return _parse_bool(_get_env(name, file_values, "1" if default else "0"))

    def _int(name: str, default: int) -> int:
        return int(_get_env(name, file_values, str(default)))

    def _float(name: str, default: float) -> float:
        return float(_get_env(name, file_values, str(default)))

    return DetectionConfig(
        enable_ai=_bool("ENABLE_AI", defaults.enable_ai),
        enable_motion_detect=_bool("ENABLE_MOTION_DETECT", defaults.enable_motion_detect),
        enable_face_detect=_bool("ENABLE_FACE_DETECT", defaults.enable_face_detect),
        enable_face_recognition=_bool("ENABLE_FACE_RECOGNITION", defaults.enable_face_recognition),
        motion_pixel_threshold=_int("MOTION_PIXEL_THRESHOLD", defaults.motion_pixel_threshold),
        motion_min_area=_int("MOTION_MIN_AREA_PX", defaults.motion_min_area),
        roi=_parse_roi(_get_env("MOTION_ROI", file_values)),
        face_detection_threshold=_float("FACE_DETECTION_THRESHOLD", defaults.face_detection_threshold),
        face_recognition_threshold=_float("FACE_RECOGNITION_THRESHOLD", defaults.face_recognition_threshold),
        skip_frames=_int("SKIP_FRAMES", defaults.skip_frames),
        recording_enabled=_bool("RECORDING_ENABLED", defaults.recording_enabled),
        record_on_motion=_bool("RECORD_ON_MOTION", defaults.record_on_motion),
        record_known_faces=_bool("RECORD_KNOWN_FACES", defaults.record_known_faces),
        record_unknown_faces=_bool("RECORD_UNKNOWN_FACES", defaults.record_unknown_faces),
        record_multiple_faces=_bool("RECORD_MULTIPLE_FACES", defaults.record_multiple_faces),
        pre_record_ms=_int("PRE_RECORD_MS", defaults.pre_record_ms),
        post_record_ms=_int("POST_RECORD_MS", defaults.post_record_ms),
        min_record_ms=_int("MIN_RECORD_MS", defaults.min_record_ms),
        cooldown_ms=_int("COOLDOWN_MS", defaults.cooldown_ms),
        max_record_ms=_int("MAX_RECORD_MS", defaults.max_record_ms),
    )


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Load and validate app settings.

    Network capture modes require DVR credentials and every mode requires
    `CAMERA_CHANNELS`; missing values raise `ValueError`. Tuning values fall
    back to defaults.
    """
    file_values = _parse_secrets_file(Path(secrets_path))

    capture_mode = _get_env("CAPTURE_MODE", file_values, "rtsp").lower()
    if capture_mode not in CAPTURE_MODES:
        raise ValueError(f"Unsupported CAPTURE_MODE={capture_mode!r}; expected one of {', '.join(CAPTURE_MODES)}.")

    dvr_username = _get_env("DVR_USERNAME", file_values)
    dvr_password = _get_env("DVR_PASSWORD", file_values)
    dvr_ip = _get_env("DVR_IP", file_values)
    if capture_mode != "usb" and (not dvr_username or not dvr_password or not dvr_ip):
        raise ValueError(
            "Missing DVR credentials. Set DVR_USERNAME, DVR_PASSWORD and DVR_IP in .secrets or environment."
        )

    camera_channels = _parse_camera_channels(_get_env("CAMERA_CHANNELS", file_values))
    if not camera_channels:
        raise ValueError(
            "Missing CAMERA_CHANNELS. Set CAMERA_CHANNELS in .secrets or environment "
            "(format: channel_id:name;channel_id:name)."
        )

    face_engine = _get_env("FACE_ENGINE", file_values, "insightface").lower()
    if face_engine not in FACE_ENGINES:
        raise ValueError(f"Unsupported FACE_ENGINE={face_engine!r}; expected one of {', '.join(FACE_ENGINES)}.")

    return Settings(
        dvr_username=dvr_username,
        dvr_password=dvr_password,
        dvr_ip=dvr_ip,
        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", file_values),
        telegram_chat_id=_get_env("TELEGRAM_CHAT_ID", file_values),
        capture_mode=capture_mode,
        capture_interval_seconds=float(_get_env("CAPTURE_INTERVAL_SECONDS", file_values, "0.033")),
        camera_reconnect_seconds=float(_get_env("CAMERA_RECONNECT_SECONDS", file_values, "5")),
        rtsp_transport=_get_env("RTSP_TRANSPORT", file_values, "tcp").lower(),
        isapi_timeout_seconds=float(_get_env("ISAPI_TIMEOUT_SECONDS", file_values, "4")),
        isapi_auth_mode=_get_env("ISAPI_AUTH_MODE", file_values, "auto").lower(),
        frame_queue_size=int(_get_env("FRAME_QUEUE_SIZE", file_values, "3")),
        face_engine=face_engine,
        yolo_face_model=_get_env("YOLO_FACE_MODEL", file_values, "detection_models/yolov8n-face.pt"),
        embedding_dim=int(_get_env("EMBEDDING_DIM", file_values, "512")),
        face_db_path=Path(_get_env("FACE_DB_PATH", file_values, "data/database/face_recognition.db")),
        faces_dir=Path(_get_env("FACES_DIR", file_values, "data/faces")),
        status_report_interval_hours=float(_get_env("STATUS_REPORT_INTERVAL_HOURS", file_values, "12")),
        camera_channels=camera_channels,
        detection=load_detection_config(file_values),
    )


def build_camera_map(settings: Settings) -> Dict[int, CameraConfig]:
    """Build capture source definitions for this deployment."""
    camera_map: Dict[int, CameraConfig] = {}
    for channel_id, name in settings.camera_channels.items():
        if settings.capture_mode == "usb":
            source_url = str(channel_id)
        elif settings.capture_mode == "isapi":
            source_url = f"http://{settings.dvr_ip}/ISAPI/Streaming/channels/{channel_id}/picture"
        else:
            source_url = (
                f"rtsp://{settings.dvr_username}:{settings.dvr_password}@{settings.dvr_ip}:554/"
                f"Streaming/Channels/{channel_id}"
            )
        camera_map[channel_id] = CameraConfig(channel_key=channel_id, name=name, source_url=source_url)

    return camera_map
