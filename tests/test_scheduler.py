from __future__ import annotations

import time
from dataclasses import replace
from typing import List, Optional, Tuple

import numpy as np
import pytest

from securevision.camera import Frame
from securevision.config import DetectionConfig
from securevision.face_db import IdentityStore
from securevision.face_pipeline import FacePipeline
from securevision.listeners import DetectionListener, ListenerRegistry
from securevision.results import Rect, TriggerKind
from securevision.scheduler import DetectionScheduler, DropOldestFrameQueue

ALICE = np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32)


def _frame(value: int = 0, captured_at: float = 0.0) -> Frame:
    return Frame(image=np.full((64, 64, 3), value, dtype=np.uint8), captured_at=captured_at)


class _ScriptedMotion:
    """Stand-in motion detector returning a fixed motion flag."""

    def __init__(self, has_motion: bool = False) -> None:
        self.has_motion = has_motion
        self.calls = 0

    def configure(self, pixel_threshold: int, min_area: int, roi: Optional[Rect]) -> None:
        pass

    def detect(self, image: np.ndarray) -> Tuple[bool, Optional[Rect]]:
        self.calls += 1
        if self.has_motion:
            return True, Rect(1, 2, 30, 40)
        return False, None


class _FakeFaceEngine:
    embedding_dim = 4

    def __init__(self, detections=None, embeddings=None, init_ok: bool = True) -> None:
        self.detections = detections or []
        self.embeddings = embeddings or {}
        self.init_ok = init_ok

    def initialize(self) -> bool:
        return self.init_ok

    def detect_faces(self, image):
        return list(self.detections)

    def extract_embedding(self, region):
        return self.embeddings.get(region.shape[:2])


class _Collector(DetectionListener):
    def __init__(self) -> None:
        self.results = []
        self.triggers: List[TriggerKind] = []
        self.errors: List[str] = []

    def on_detection_result(self, result) -> None:
        self.results.append(result)

    def on_record_trigger(self, kind, frame) -> None:
        self.triggers.append(kind)

    def on_subsystem_error(self, message: str) -> None:
        self.errors.append(message)


def _scheduler(
    motion: Optional[_ScriptedMotion] = None,
    engine: Optional[_FakeFaceEngine] = None,
    store: Optional[IdentityStore] = None,
    config: Optional[DetectionConfig] = None,
) -> Tuple[DetectionScheduler, _Collector]:
    listeners = ListenerRegistry()
    collector = _Collector()
    listeners.add(collector)
    pipeline = FacePipeline(engine, store=store) if engine is not None else None
    scheduler = DetectionScheduler(
        motion_detector=motion or _ScriptedMotion(),
        face_pipeline=pipeline,
        config=config or DetectionConfig(),
        listeners=listeners,
    )
    if pipeline is not None:
        scheduler.initialize_faces()
    return scheduler, collector


def test_queue_keeps_most_recent_frames() -> None:
    queue = DropOldestFrameQueue(capacity=3)
    frames = [_frame(captured_at=float(i)) for i in range(5)]
    evicted = [queue.put(frame) for frame in frames]

    assert evicted[:3] == [None, None, None]
    assert evicted[3] is frames[0] and evicted[4] is frames[1]
    assert len(queue) == 3
    assert queue.dropped == 2
    assert [queue.get_nowait() for _ in range(3)] == frames[2:]
    assert queue.get_nowait() is None


def test_queue_clear_and_capacity_validation() -> None:
    queue = DropOldestFrameQueue(capacity=2)
    queue.put(_frame())
    assert queue.clear() == 1
    assert len(queue) == 0
    with pytest.raises(ValueError):
        DropOldestFrameQueue(capacity=0)


def test_add_frame_requires_running_and_ai_enabled() -> None:
    scheduler, _ = _scheduler()
    assert scheduler.add_frame(_frame()) is False

    scheduler.set_config(DetectionConfig(enable_ai=False, skip_frames=0))
    scheduler.start()
    try:
        assert scheduler.add_frame(_frame()) is False
    finally:
        scheduler.stop()


def test_skip_frames_accepts_every_nth_frame() -> None:
    scheduler, _ = _scheduler(config=DetectionConfig(skip_frames=2))
    scheduler.start()
    try:
        accepted = [scheduler.add_frame(_frame()) for _ in range(3)]
    finally:
        scheduler.stop()
    assert accepted == [False, False, True]


def test_faces_run_every_fifth_cycle_without_motion() -> None:
    scheduler, _ = _scheduler(motion=_ScriptedMotion(False), engine=_FakeFaceEngine())
    processed = [i for i in range(1, 11) if scheduler.run_cycle(_frame()).face_processed]
    assert processed == [5, 10]


def test_faces_run_every_second_cycle_after_motion() -> None:
    scheduler, _ = _scheduler(motion=_ScriptedMotion(True), engine=_FakeFaceEngine())
    processed = [i for i in range(1, 7) if scheduler.run_cycle(_frame()).face_processed]
    assert processed == [2, 4, 6]


def test_motion_disabled_skips_detector() -> None:
    motion = _ScriptedMotion(True)
    scheduler, collector = _scheduler(motion=motion, config=DetectionConfig(enable_motion_detect=False))
    result = scheduler.run_cycle(_frame())
    assert motion.calls == 0
    assert result.has_motion is False
    assert collector.triggers == []


def test_motion_result_is_published_with_one_trigger() -> None:
    scheduler, collector = _scheduler(motion=_ScriptedMotion(True))
    frame = _frame(captured_at=12.5)

    result = scheduler.run_cycle(frame)

    assert result.has_motion is True
    assert result.motion_region == Rect(1, 2, 30, 40)
    assert result.captured_at == 12.5
    assert result.frame_id == 1
    assert collector.results == [result]
    assert collector.triggers == [TriggerKind.MOTION]
    assert scheduler.last_result is result


def test_motion_trigger_respects_record_on_motion() -> None:
    scheduler, collector = _scheduler(
        motion=_ScriptedMotion(True), config=DetectionConfig(record_on_motion=False)
    )
    scheduler.run_cycle(_frame())
    assert collector.triggers == []


def test_face_triggers_are_emitted_once_per_kind() -> None:
    store = IdentityStore(embedding_dim=4)
    store.insert("Alice", ALICE)
    engine = _FakeFaceEngine(
        detections=[(Rect(0, 0, 10, 10), 0.9), (Rect(20, 20, 12, 12), 0.9), (Rect(40, 40, 14, 14), 0.9)],
        embeddings={(10, 10): ALICE, (12, 12): np.array([0.0, 1.0, 0.0, 0.0]), (14, 14): None},
    )
    scheduler, collector = _scheduler(motion=_ScriptedMotion(True), engine=engine, store=store)

    scheduler.run_cycle(_frame())
    result = scheduler.run_cycle(_frame())

    assert result.face_processed is True
    assert result.recognition_ran is True
    assert result.face_count == 3
    assert result.recognized_count == 1
    assert result.unknown_count == 2
    assert collector.triggers == [
        TriggerKind.MOTION,
        TriggerKind.MOTION,
        TriggerKind.KNOWN_FACE,
        TriggerKind.UNKNOWN_FACE,
        TriggerKind.MULTIPLE_FACES,
    ]


def test_recognition_disabled_detects_only() -> None:
    store = IdentityStore(embedding_dim=4)
    store.insert("Alice", ALICE)
    engine = _FakeFaceEngine(detections=[(Rect(0, 0, 10, 10), 0.9)], embeddings={(10, 10): ALICE})
    config = DetectionConfig(enable_face_recognition=False, record_unknown_faces=False)
    scheduler, collector = _scheduler(motion=_ScriptedMotion(True), engine=engine, store=store, config=config)

    scheduler.run_cycle(_frame())
    result = scheduler.run_cycle(_frame())

    assert result.face_count == 1
    assert result.recognized_count == 0
    assert result.recognition_ran is False
    assert TriggerKind.KNOWN_FACE not in collector.triggers


def test_face_init_failure_reports_once_and_motion_continues() -> None:
    scheduler, collector = _scheduler(motion=_ScriptedMotion(True), engine=_FakeFaceEngine(init_ok=False))

    assert scheduler.face_available is False
    assert len(collector.errors) == 1
    results = [scheduler.run_cycle(_frame()) for _ in range(5)]
    assert all(result.has_motion for result in results)
    assert not any(result.face_processed for result in results)
    assert scheduler.register_face("Alice", np.zeros((32, 32, 3), dtype=np.uint8)) is False


def test_config_swap_is_whole_object() -> None:
    scheduler, _ = _scheduler()
    config = replace(DetectionConfig(), skip_frames=0, face_detection_threshold=0.8)
    scheduler.set_config(config)
    assert scheduler.get_config() is config


def test_identity_surface_delegates_to_store() -> None:
    store = IdentityStore(embedding_dim=4)
    engine = _FakeFaceEngine(embeddings={(32, 32): ALICE})
    scheduler, _ = _scheduler(engine=engine, store=store)

    assert scheduler.register_face("Alice", np.zeros((32, 32, 3), dtype=np.uint8)) is True
    assert scheduler.registered_names() == ["Alice"]
    assert scheduler.registered_count() == 1


def test_failing_listener_does_not_break_cycle() -> None:
    class _Broken(DetectionListener):
        def on_detection_result(self, result) -> None:
            raise RuntimeError("listener bug")

    scheduler, collector = _scheduler(motion=_ScriptedMotion(True))
    scheduler.listeners.add(_Broken())

    scheduler.run_cycle(_frame())
    assert len(collector.results) == 1
    assert collector.triggers == [TriggerKind.MOTION]


def test_background_loop_consumes_frames_and_stops() -> None:
    scheduler, collector = _scheduler(config=DetectionConfig(skip_frames=0))
    scheduler.start()
    try:
        for i in range(3):
            assert scheduler.add_frame(_frame(captured_at=float(i))) is True
        deadline = time.monotonic() + 2.0
        while len(collector.results) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop()

    assert [result.captured_at for result in collector.results] == [0.0, 1.0, 2.0]
    assert scheduler.running is False
    assert scheduler.add_frame(_frame()) is False
