from __future__ import annotations

"""Capture sources (RTSP, ISAPI snapshots, USB) producing immutable frames."""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np
import requests
from requests.auth import HTTPBasicAuth, HTTPDigestAuth

from securevision.config import CameraConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """Decoded BGR image plus capture timestamp and source camera.

    The pixel buffer is flagged read-only on construction; a frame is never
    modified after it leaves its capture source.
    """

    image: np.ndarray
    captured_at: float
    camera: Optional[CameraConfig] = None

    def __post_init__(self) -> None:
        self.image.setflags(write=False)

    @property
    def camera_name(self) -> str:
        return self.camera.name if self.camera is not None else ""

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


class CameraClient(Protocol):
    """Common interface used by the app regardless of transport/backend."""

    camera: CameraConfig

    def read(self) -> Optional[Frame]:
        ...

    def release(self) -> None:
        ...


class _OpenCvCamera:
    """Shared `cv2.VideoCapture` handling with lazy open and reconnect backoff."""

    def __init__(self, camera: CameraConfig, reconnect_seconds: float) -> None:
        self.camera = camera
        self.reconnect_seconds = reconnect_seconds
        self._capture: Optional[cv2.VideoCapture] = None

    def _open(self) -> cv2.VideoCapture:
        raise NotImplementedError

    def read(self) -> Optional[Frame]:
        """Read one frame, or release and back off so the next read reconnects."""
        if self._capture is None or not self._capture.isOpened():
            self._capture = self._open()

        ok, image = self._capture.read()
        if ok and image is not None:
            return Frame(image=image, captured_at=time.time(), camera=self.camera)

        logger.warning("Capture read failed for %s; reconnecting in %.1fs", self.camera.name, self.reconnect_seconds)
        self.release()
        time.sleep(self.reconnect_seconds)
        return None

    def release(self) -> None:
        """Release underlying OpenCV resources."""
        if self._capture is not None:
            self._capture.release()
            self._capture = None


class RtspCamera(_OpenCvCamera):
    """OpenCV/FFmpeg RTSP reader with reconnect and low-buffer settings."""

    def __init__(self, camera: CameraConfig, reconnect_seconds: float, rtsp_transport: str = "tcp") -> None:
        super().__init__(camera, reconnect_seconds)
        self.rtsp_transport = rtsp_transport

    def _open(self) -> cv2.VideoCapture:
        os.environ["OPENCV_FFMPEG_CAPTURE_OPTIONS"] = f"rtsp_transport;{self.rtsp_transport}"
        capture = cv2.VideoCapture(self.camera.source_url, cv2.CAP_FFMPEG)
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        return capture


class UsbCamera(_OpenCvCamera):
    """Local V4L/USB device addressed by its numeric index."""

    def _open(self) -> cv2.VideoCapture:
        return cv2.VideoCapture(int(self.camera.source_url))


class IsapiSnapshotCamera:
    """HTTP snapshot client for DVR/NVR ISAPI endpoints."""

    def __init__(
        self,
        camera: CameraConfig,
        username: str,
        password: str,
        timeout_seconds: float,
        reconnect_seconds: float,
        auth_mode: str = "auto",
    ) -> None:
        self.camera = camera
        self.timeout_seconds = timeout_seconds
        self.reconnect_seconds = reconnect_seconds
        self._session = requests.Session()

        if auth_mode == "basic":
            self._auth = HTTPBasicAuth(username, password)
        else:
            # Hikvision-style recorders expect digest auth.
            self._auth = HTTPDigestAuth(username, password)

    def read(self) -> Optional[Frame]:
        """Fetch and decode one JPEG snapshot."""
        try:
            response = self._session.get(self.camera.source_url, auth=self._auth, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Snapshot request failed for %s: %s", self.camera.name, exc)
            time.sleep(self.reconnect_seconds)
            return None

        image = cv2.imdecode(np.frombuffer(response.content, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            return None
        return Frame(image=image, captured_at=time.time(), camera=self.camera)

    def release(self) -> None:
        """Close the underlying requests session."""
        self._session.close()
