from __future__ import annotations

"""Per-frame detection value types shared by the scheduler and listeners."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


@dataclass(frozen=True)
class Rect:
    """Axis-aligned integer rectangle in pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def offset(self, dx: int, dy: int) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)

    def clip(self, frame_width: int, frame_height: int) -> "Rect":
        """Intersect with the `[0, frame_width) x [0, frame_height)` canvas."""
        x1 = min(max(self.x, 0), frame_width)
        y1 = min(max(self.y, 0), frame_height)
        x2 = min(max(self.right, 0), frame_width)
        y2 = min(max(self.bottom, 0), frame_height)
        return Rect(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> "Rect":
        left, top = int(round(x1)), int(round(y1))
        return cls(left, top, int(round(x2)) - left, int(round(y2)) - top)


class TriggerKind(Enum):
    """Reason a record trigger was raised."""

    MOTION = "motion"
    KNOWN_FACE = "known_face"
    UNKNOWN_FACE = "unknown_face"
    MULTIPLE_FACES = "multiple_faces"
    MANUAL = "manual"


@dataclass(frozen=True)
class FaceObservation:
    """One detected face, optionally matched against the identity store."""

    bbox: Rect
    confidence: float
    identity_id: Optional[int] = None
    name: Optional[str] = None
    similarity: float = 0.0
    recognized: bool = False


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one processing cycle; published once and never mutated."""

    frame_id: int
    captured_at: float
    camera_name: str = ""
    has_motion: bool = False
    motion_region: Optional[Rect] = None
    faces: Tuple[FaceObservation, ...] = field(default_factory=tuple)
    face_processed: bool = False
    recognition_ran: bool = False
    motion_ms: float = 0.0
    face_ms: float = 0.0
    total_ms: float = 0.0

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def recognized_count(self) -> int:
        return sum(1 for face in self.faces if face.recognized)

    @property
    def unknown_count(self) -> int:
        return sum(1 for face in self.faces if not face.recognized)

    @property
    def has_faces(self) -> bool:
        return bool(self.faces)
