from __future__ import annotations

"""Face detection and embedding capabilities consumed by the face pipeline."""

import logging
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from securevision.results import Rect

logger = logging.getLogger(__name__)

Detection = Tuple[Rect, float]


class FaceDetectorCapability(Protocol):
    def initialize(self) -> bool:
        ...

    def detect_faces(self, image: np.ndarray) -> List[Detection]:
        ...


class FaceCapability(FaceDetectorCapability, Protocol):
    """Detection plus fixed-length embedding extraction."""

    embedding_dim: int

    def extract_embedding(self, region: np.ndarray) -> Optional[np.ndarray]:
        ...


def _normalize(vec: np.ndarray) -> Optional[np.ndarray]:
    vec = np.asarray(vec, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0 or not np.isfinite(norm):
        return None
    return vec / norm


class InsightFaceEngine:
    """InsightFace engine: SCRFD/RetinaFace detection and ArcFace embeddings.

    Models are loaded by `initialize()`; the import itself is deferred so the
    package works without InsightFace installed.
    """

    embedding_dim = 512

    def __init__(self, model_name: str = "buffalo_l", ctx_id: int = -1, det_size: int = 640) -> None:
        """
        Args:
            model_name: Model pack name (buffalo_l, buffalo_s, etc.)
            ctx_id: -1 for CPU, 0+ for GPU
            det_size: square detector input size
        """
        self._app = None
        self._recognizer = None
        self._model_name = model_name
        self._ctx_id = ctx_id
        self._det_size = det_size
        self.init_error: Optional[str] = None

    def initialize(self) -> bool:
        if self._app is not None:
            return True
        try:
            from insightface.app import FaceAnalysis

            app = FaceAnalysis(
                name=self._model_name,
                allowed_modules=["detection", "recognition"],
                providers=["CPUExecutionProvider"] if self._ctx_id < 0 else ["CUDAExecutionProvider"],
            )
            app.prepare(ctx_id=self._ctx_id, det_size=(self._det_size, self._det_size))
            self._recognizer = app.models["recognition"]
            self._app = app
            logger.info("InsightFace engine initialized with model=%s", self._model_name)
            return True
        except Exception as exc:
            self.init_error = str(exc)
            logger.warning("InsightFace initialization failed: %s", exc)
            return False

    def detect_faces(self, image: np.ndarray) -> List[Detection]:
        if self._app is None:
            return []
        bboxes, _ = self._app.det_model.detect(image, max_num=0, metric="default")
        detections: List[Detection] = []
        for x1, y1, x2, y2, score in bboxes:
            detections.append((Rect.from_xyxy(x1, y1, x2, y2), float(score)))
        return detections

    def extract_embedding(self, region: np.ndarray) -> Optional[np.ndarray]:
        if self._recognizer is None or region is None or region.size == 0:
            return None
        # get_feat resizes to the ArcFace input size (112x112) internally.
        feature = self._recognizer.get_feat(np.ascontiguousarray(region))
        return _normalize(feature)


class BaselineFaceEngine:
    """OpenCV Haar cascade detection with a 512-value grayscale embedding.

    Fast but low accuracy; used when InsightFace is unavailable. The cascade
    reports no calibrated confidence, so every detection scores 1.0.
    """

    embedding_dim = 512
    _EMBED_SIZE = (16, 32)

    def __init__(self) -> None:
        self.detector: Optional[cv2.CascadeClassifier] = None

    def initialize(self) -> bool:
        if self.detector is not None:
            return True
        detector = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
        if detector.empty():
            logger.error("Haar cascade could not be loaded")
            return False
        self.detector = detector
        return True

    def detect_faces(self, image: np.ndarray) -> List[Detection]:
        if self.detector is None:
            return []
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        faces = self.detector.detectMultiScale(gray, scaleFactor=1.1, minNeighbors=5, minSize=(40, 40))
        return [(Rect(int(x), int(y), int(w), int(h)), 1.0) for (x, y, w, h) in faces]

    def extract_embedding(self, region: np.ndarray) -> Optional[np.ndarray]:
        """Convert a face crop into a normalized fixed-length embedding vector."""
        if region is None or region.size == 0:
            return None
        gray = cv2.cvtColor(region, cv2.COLOR_BGR2GRAY) if region.ndim == 3 else region
        resized = cv2.resize(gray, self._EMBED_SIZE, interpolation=cv2.INTER_AREA)
        vec = resized.astype(np.float32).reshape(-1)
        vec = vec - float(np.mean(vec))
        return _normalize(vec)


class HybridFaceEngine:
    """Prefer the primary engine, fall back to the secondary if it fails to load.

    An optional dedicated detector (for example a YOLO face model) replaces
    the active engine's own detection while embeddings still come from it.
    """

    embedding_dim = 512

    def __init__(
        self,
        primary: FaceCapability,
        fallback: Optional[FaceCapability] = None,
        detector: Optional[FaceDetectorCapability] = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._detector = detector
        self._active: Optional[FaceCapability] = None

    @property
    def active_engine(self) -> str:
        return type(self._active).__name__ if self._active is not None else "none"

    def initialize(self) -> bool:
        if self._active is not None:
            return True
        if self._detector is not None and not self._detector.initialize():
            logger.warning("Dedicated face detector failed to initialize; using engine detection")
            self._detector = None
        if self._primary.initialize():
            self._active = self._primary
        elif self._fallback is not None and self._fallback.initialize():
            logger.warning(
                "Falling back to %s; embeddings are not comparable with %s registrations",
                type(self._fallback).__name__,
                type(self._primary).__name__,
            )
            self._active = self._fallback
        if self._active is None:
            return False
        self.embedding_dim = self._active.embedding_dim
        return True

    def detect_faces(self, image: np.ndarray) -> List[Detection]:
        if self._active is None:
            return []
        if self._detector is not None:
            return self._detector.detect_faces(image)
        return self._active.detect_faces(image)

    def extract_embedding(self, region: np.ndarray) -> Optional[np.ndarray]:
        if self._active is None:
            return None
        return self._active.extract_embedding(region)
