from __future__ import annotations

"""Per-frame face detection, embedding and identity classification."""

import logging
import re
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

from securevision.face_db import IdentityStore, IdentityStoreError
from securevision.face_engine import FaceCapability
from securevision.results import FaceObservation, Rect

logger = logging.getLogger(__name__)

MAX_DETECT_WIDTH = 1920
MAX_DETECT_HEIGHT = 1080
SLOW_OPERATION_MS = 100.0


class RecognitionMode(Enum):
    DETECT_ONLY = "detect_only"
    DETECT_AND_RECOGNIZE = "detect_and_recognize"


def _safe_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_") or "face"


class FacePipeline:
    """Run detection → embedding → identity lookup for one frame.

    Capability failures never abort a frame: a failed detection yields no
    observations and a failed embedding leaves that face unrecognized.
    """

    def __init__(
        self,
        capability: FaceCapability,
        store: Optional[IdentityStore] = None,
        detection_threshold: float = 0.5,
        recognition_threshold: float = 0.7,
        faces_dir: Optional[Path] = None,
    ) -> None:
        self.capability = capability
        self.store = store
        self.detection_threshold = detection_threshold
        self.recognition_threshold = recognition_threshold
        self.faces_dir = Path(faces_dir) if faces_dir is not None else None
        self.initialized = False
        self.detection_count = 0
        self.recognition_count = 0
        self.last_detection_ms = 0.0
        self.last_recognition_ms = 0.0
        self._lock = threading.Lock()

    def initialize(self) -> bool:
        """Initialize the underlying capability; safe to call repeatedly."""
        with self._lock:
            if not self.initialized:
                self.initialized = bool(self.capability.initialize())
            return self.initialized

    def set_thresholds(self, detection_threshold: float, recognition_threshold: float) -> None:
        self.detection_threshold = detection_threshold
        self.recognition_threshold = recognition_threshold

    @staticmethod
    def _scale_for_detection(image: np.ndarray) -> Tuple[np.ndarray, float]:
        """Downscale oversized images; returns the image and the applied scale."""
        height, width = image.shape[:2]
        if width <= MAX_DETECT_WIDTH and height <= MAX_DETECT_HEIGHT:
            return image, 1.0
        scale = min(MAX_DETECT_WIDTH / width, MAX_DETECT_HEIGHT / height)
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        return cv2.resize(image, size, interpolation=cv2.INTER_AREA), scale

    def _detect(self, image: np.ndarray) -> List[Tuple[Rect, float]]:
        """Detect on a capability-sized copy and map boxes back to `image`."""
        scaled, scale = self._scale_for_detection(image)
        started = time.perf_counter()
        try:
            raw = self.capability.detect_faces(scaled) or []
        except Exception as exc:
            logger.warning("Face detection failed: %s", exc)
            raw = []
        self.last_detection_ms = (time.perf_counter() - started) * 1000.0
        self.detection_count += 1
        if self.last_detection_ms > SLOW_OPERATION_MS:
            logger.debug("Face detection took %.1f ms", self.last_detection_ms)

        height, width = image.shape[:2]
        detections: List[Tuple[Rect, float]] = []
        for box, score in raw:
            if scale != 1.0:
                box = Rect(
                    int(round(box.x / scale)),
                    int(round(box.y / scale)),
                    int(round(box.width / scale)),
                    int(round(box.height / scale)),
                )
            box = box.clip(width, height)
            if box.is_empty:
                continue
            detections.append((box, float(score)))
        return detections

    def _embed(self, image: np.ndarray, box: Rect) -> Optional[np.ndarray]:
        region = image[box.y : box.bottom, box.x : box.right]
        if region.size == 0:
            return None
        try:
            return self.capability.extract_embedding(region)
        except Exception as exc:
            logger.debug("Embedding extraction failed for %s: %s", box, exc)
            return None

    def _recognize(self, image: np.ndarray, box: Rect, score: float) -> FaceObservation:
        embedding = self._embed(image, box)
        if embedding is None or self.store is None:
            return FaceObservation(bbox=box, confidence=score)

        match = self.store.find_best_match(embedding, self.recognition_threshold)
        if not match.matched:
            logger.debug("Unknown face at %s (best similarity %.3f)", box, match.similarity)
            return FaceObservation(bbox=box, confidence=score, similarity=match.similarity)

        self.store.record_hit(match.identity_id)
        logger.debug("Recognized %s (similarity %.3f)", match.name, match.similarity)
        return FaceObservation(
            bbox=box,
            confidence=score,
            identity_id=match.identity_id,
            name=match.name,
            similarity=match.similarity,
            recognized=True,
        )

    def process(self, image: np.ndarray, mode: RecognitionMode) -> List[FaceObservation]:
        """Return one observation per face scoring at least the detection threshold."""
        if not self.initialized or image is None or image.size == 0:
            return []

        with self._lock:
            detections = [
                (box, score) for box, score in self._detect(image) if score >= self.detection_threshold
            ]
            if mode is RecognitionMode.DETECT_ONLY or not detections:
                return [FaceObservation(bbox=box, confidence=score) for box, score in detections]

            started = time.perf_counter()
            observations = [self._recognize(image, box, score) for box, score in detections]
            self.last_recognition_ms = (time.perf_counter() - started) * 1000.0
            self.recognition_count += 1
            if self.last_recognition_ms > SLOW_OPERATION_MS:
                logger.debug("Face recognition took %.1f ms", self.last_recognition_ms)
            return observations

    def register(self, name: str, image: np.ndarray, description: Optional[str] = None) -> bool:
        """Register `name` from the largest face in `image` (or the whole image)."""
        clean_name = (name or "").strip()
        if not self.initialized or self.store is None or not clean_name or image is None or image.size == 0:
            return False

        with self._lock:
            detections = self._detect(image)
            if detections:
                box = max(detections, key=lambda item: item[0].area)[0]
                embedding = self._embed(image, box)
            else:
                embedding = self._embed(image, Rect(0, 0, image.shape[1], image.shape[0]))
        if embedding is None:
            logger.warning("No usable face embedding for %s", clean_name)
            return False

        image_path: Optional[Path] = None
        if self.faces_dir is not None:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            image_path = self.faces_dir / f"{_safe_filename(clean_name)}_{stamp}.jpg"

        try:
            self.store.insert(
                clean_name,
                embedding,
                image_path=str(image_path) if image_path is not None else None,
                description=description,
            )
        except IdentityStoreError as exc:
            logger.warning("Face registration rejected for %s: %s", clean_name, exc)
            return False

        if image_path is not None:
            image_path.parent.mkdir(parents=True, exist_ok=True)
            if not cv2.imwrite(str(image_path), image):
                # The identity is already stored; only the reference image is missing.
                logger.warning("Failed to save face image %s", image_path)
        return True
