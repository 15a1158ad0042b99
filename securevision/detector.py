from __future__ import annotations

"""Face detection wrapper around an Ultralytics YOLO face model."""

import logging
from typing import List, Optional, Tuple

import numpy as np
from ultralytics import YOLO

from securevision.results import Rect

logger = logging.getLogger(__name__)


class YoloFaceDetector:
    """Detect faces with a single-class (or face-class) YOLO model.

    Scores are returned unfiltered apart from a tiny floor; the face pipeline
    applies the configured detection threshold.
    """

    def __init__(self, model_name: str, face_class_id: int = 0, min_confidence: float = 0.05) -> None:
        self.model_name = model_name
        self.face_class_id = face_class_id
        self.min_confidence = min_confidence
        self.model: Optional[YOLO] = None

    def initialize(self) -> bool:
        """Load the YOLO weights once for the consumer thread."""
        if self.model is not None:
            return True
        try:
            self.model = YOLO(self.model_name)
        except Exception as exc:
            logger.warning("YOLO face model %s failed to load: %s", self.model_name, exc)
            return False
        logger.info("Loaded YOLO face model %s", self.model_name)
        return True

    def detect_faces(self, image: np.ndarray) -> List[Tuple[Rect, float]]:
        if self.model is None:
            return []
        results = self.model.predict(image, conf=self.min_confidence, verbose=False)
        if not results:
            return []

        detections: List[Tuple[Rect, float]] = []
        boxes = results[0].boxes
        if boxes is None:
            return detections
        for box in boxes:
            if int(box.cls[0]) != self.face_class_id:
                continue
            x1, y1, x2, y2 = box.xyxy[0].tolist()
            detections.append((Rect.from_xyxy(x1, y1, x2, y2), float(box.conf[0])))
        return detections
