from __future__ import annotations

"""Background-model differencing motion detector."""

import logging
import threading
from typing import Optional, Tuple

import cv2
import numpy as np

from securevision.results import Rect

logger = logging.getLogger(__name__)

BLUR_KERNEL = (21, 21)
LEARNING_RATE = 0.05
MORPH_KERNEL = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (5, 5))


class MotionDetector:
    """Detect motion against an exponentially weighted running background.

    The first frame after construction or `reset()` seeds the background and
    reports no motion. The background keeps learning on every frame, motion
    frames included, so a foreground object that stops moving is slowly
    absorbed into the background.
    """

    def __init__(self, pixel_threshold: int = 25, min_area: int = 500, roi: Optional[Rect] = None) -> None:
        self.pixel_threshold = pixel_threshold
        self.min_area = min_area
        self.roi = roi
        self._background: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._background is not None

    def configure(self, pixel_threshold: int, min_area: int, roi: Optional[Rect]) -> None:
        """Update thresholds; a different ROI invalidates the background."""
        with self._lock:
            self.pixel_threshold = pixel_threshold
            self.min_area = min_area
            if roi != self.roi:
                self.roi = roi
                self._background = None
                logger.info("Motion ROI changed to %s; background will re-seed", roi)

    def reset(self) -> None:
        """Drop the background model so the next frame re-seeds it."""
        with self._lock:
            self._background = None

    def _prepare(self, image: np.ndarray) -> Tuple[np.ndarray, int, int]:
        """Return the blurred grayscale analysis area and its frame offset."""
        offset_x = offset_y = 0
        if self.roi is not None:
            height, width = image.shape[:2]
            area = self.roi.clip(width, height)
            if not area.is_empty:
                image = image[area.y : area.bottom, area.x : area.right]
                offset_x, offset_y = area.x, area.y

        if image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image
        return cv2.GaussianBlur(gray, BLUR_KERNEL, 0), offset_x, offset_y

    def detect(self, image: np.ndarray) -> Tuple[bool, Optional[Rect]]:
        """Return `(has_motion, region)` for one BGR (or grayscale) frame."""
        if image is None or image.size == 0:
            logger.debug("MotionDetector received an empty image")
            return False, None

        with self._lock:
            gray, offset_x, offset_y = self._prepare(image)

            if self._background is None or self._background.shape != gray.shape:
                self._background = gray.astype(np.float32)
                logger.debug("Motion background model initialized (%dx%d)", gray.shape[1], gray.shape[0])
                return False, None

            diff = cv2.absdiff(cv2.convertScaleAbs(self._background), gray)
            _, mask = cv2.threshold(diff, self.pixel_threshold, 255, cv2.THRESH_BINARY)
            mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, MORPH_KERNEL)
            mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, MORPH_KERNEL)
            contours = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)[-2]

            best_area = 0.0
            best_rect: Optional[Rect] = None
            for contour in contours:
                area = cv2.contourArea(contour)
                # Strict comparison keeps the first contour on equal areas.
                if area > self.min_area and area > best_area:
                    best_area = area
                    x, y, w, h = cv2.boundingRect(contour)
                    best_rect = Rect(int(x), int(y), int(w), int(h))

            cv2.accumulateWeighted(gray, self._background, LEARNING_RATE)

        if best_rect is None:
            return False, None

        region = best_rect.offset(offset_x, offset_y)
        logger.debug("Motion detected | area=%.0f | region=%s", best_area, region)
        return True, region
