from __future__ import annotations

import numpy as np

from securevision.motion import MotionDetector
from securevision.results import Rect


def _blank(size: int = 200) -> np.ndarray:
    return np.zeros((size, size, 3), dtype=np.uint8)


def _with_square(x: int, y: int, side: int, size: int = 200) -> np.ndarray:
    frame = _blank(size)
    frame[y : y + side, x : x + side, :] = 255
    return frame


def test_first_frame_seeds_background_without_motion() -> None:
    detector = MotionDetector()
    assert detector.initialized is False
    assert detector.detect(_with_square(60, 60, 80)) == (False, None)
    assert detector.initialized is True


def test_square_appearing_reports_region_around_it() -> None:
    detector = MotionDetector()
    detector.detect(_blank())

    has_motion, region = detector.detect(_with_square(60, 60, 80))

    assert has_motion is True
    assert region is not None
    assert region.x <= 65 and region.y <= 65
    assert region.right >= 135 and region.bottom >= 135
    assert region.area <= 200 * 200


def test_identical_frames_report_no_motion() -> None:
    detector = MotionDetector()
    frame = _with_square(20, 20, 40)
    detector.detect(frame)
    for _ in range(3):
        assert detector.detect(frame) == (False, None)


def test_changes_below_min_area_are_ignored() -> None:
    detector = MotionDetector(min_area=500)
    detector.detect(_blank())
    assert detector.detect(_with_square(100, 100, 6)) == (False, None)


def test_reset_forces_reseed() -> None:
    detector = MotionDetector()
    detector.detect(_blank())
    detector.reset()
    assert detector.initialized is False
    assert detector.detect(_with_square(60, 60, 80)) == (False, None)


def test_frame_size_change_reseeds_background() -> None:
    detector = MotionDetector()
    detector.detect(_blank(200))
    assert detector.detect(_with_square(60, 60, 80, size=300)) == (False, None)


def test_roi_limits_analysis_and_offsets_region() -> None:
    detector = MotionDetector(roi=Rect(100, 100, 100, 100))
    detector.detect(_blank())

    # Outside the region of interest.
    assert detector.detect(_with_square(0, 0, 60)) == (False, None)

    has_motion, region = detector.detect(_with_square(120, 120, 60))
    assert has_motion is True
    assert region is not None
    assert region.x >= 100 and region.y >= 100
    assert region.x <= 125 and region.y <= 125


def test_configure_with_new_roi_resets_background() -> None:
    detector = MotionDetector()
    detector.detect(_blank())
    detector.configure(pixel_threshold=30, min_area=400, roi=Rect(0, 0, 50, 50))
    assert detector.initialized is False
    assert detector.pixel_threshold == 30
    assert detector.min_area == 400

    detector.detect(_blank())
    detector.configure(pixel_threshold=40, min_area=400, roi=Rect(0, 0, 50, 50))
    assert detector.initialized is True


def test_grayscale_input_is_supported() -> None:
    detector = MotionDetector()
    detector.detect(np.zeros((120, 120), dtype=np.uint8))
    frame = np.zeros((120, 120), dtype=np.uint8)
    frame[30:90, 30:90] = 255
    has_motion, region = detector.detect(frame)
    assert has_motion is True
    assert region is not None


def test_empty_image_reports_no_motion() -> None:
    detector = MotionDetector()
    assert detector.detect(np.zeros((0, 0, 3), dtype=np.uint8)) == (False, None)
    assert detector.initialized is False


def test_stationary_object_is_absorbed_into_background() -> None:
    detector = MotionDetector()
    detector.detect(_blank())
    parked = _blank()
    parked[60:120, 40:120, :] = 255

    results = [detector.detect(parked)[0] for _ in range(200)]

    assert results[:3] == [True, True, True]
    assert results[-3:] == [False, False, False]
