from __future__ import annotations

"""Timer-driven recording state machine.

Detection events move the machine through
`IDLE -> PRE_RECORD -> RECORDING -> POST_RECORD -> COOLDOWN -> IDLE`.
There is a single pending deadline on a monotonic millisecond clock; every
transition that needs a timer re-arms it explicitly via `_arm`. `tick()`
fires an expired deadline and is driven by `RecordingTimer` (or by tests
with a fake clock).

Events are queued under the state lock as transitions commit and drained
by one thread at a time, so listeners on any thread see them in commit
order and never while the state lock is held.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

from securevision.config import DetectionConfig
from securevision.listeners import DetectionListener, ListenerRegistry
from securevision.results import TriggerKind

logger = logging.getLogger(__name__)

RECHECK_MS = 1000


class RecordingState(Enum):
    IDLE = "idle"
    PRE_RECORD = "pre_record"
    RECORDING = "recording"
    POST_RECORD = "post_record"
    COOLDOWN = "cooldown"


@dataclass
class RecordingSession:
    """The recording currently in progress (or the last one finished)."""

    state: RecordingState
    filename: str
    trigger: TriggerKind
    started_at: datetime
    started_ms: float
    duration_ms: int = 0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RecordingStateMachine(DetectionListener):
    """Turn bursty motion/face/manual triggers into coherent recordings.

    Guarantees: brief activity is debounced by the pre-record delay, a
    started recording lasts at least `min_record_ms` (and at most
    `max_record_ms`), continued activity extends it by `post_record_ms`, and
    triggers during the cooldown that follows are ignored.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        listeners: Optional[ListenerRegistry] = None,
        clock: Callable[[], float] = _monotonic_ms,
        wall_clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """`clock` returns monotonic milliseconds; `wall_clock` names files."""
        self._config = config or DetectionConfig()
        self.listeners = listeners or ListenerRegistry()
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        # Reentrant so a listener may drive the machine from its callback.
        self._publish_lock = threading.RLock()
        self._outbox: Deque[Tuple[str, tuple]] = deque()
        self._state = RecordingState.IDLE
        self._deadline_ms: Optional[float] = None
        self._session: Optional[RecordingSession] = None
        self._pending_trigger = TriggerKind.MOTION
        self.last_session: Optional[RecordingSession] = None
        self.sessions_completed = 0

    @property
    def state(self) -> RecordingState:
        with self._lock:
            return self._state

    @property
    def is_recording(self) -> bool:
        return self.state in (RecordingState.RECORDING, RecordingState.POST_RECORD)

    @property
    def session(self) -> Optional[RecordingSession]:
        with self._lock:
            return replace(self._session) if self._session is not None else None

    @property
    def deadline_ms(self) -> Optional[float]:
        with self._lock:
            return self._deadline_ms

    def apply_config(self, config: DetectionConfig) -> None:
        """Swap durations/flags; a running timer keeps its current deadline."""
        with self._lock:
            self._config = config

    # -- listener entry point -------------------------------------------------

    def on_record_trigger(self, kind: TriggerKind, frame=None) -> None:
        if kind is TriggerKind.MANUAL:
            self.manual_trigger()
        else:
            self.activity(kind)

    # -- public events --------------------------------------------------------

    def activity(self, kind: TriggerKind = TriggerKind.MOTION) -> None:
        """Motion or face activity observed."""
        with self._lock:
            if self._config.recording_enabled:
                self._on_activity(kind, self._clock())
        self._publish()

    def manual_trigger(self) -> None:
        """Start recording immediately, skipping the pre-record delay."""
        with self._lock:
            if self._config.recording_enabled:
                self._on_manual(self._clock())
        self._publish()

    def stop(self) -> None:
        """Stop an active recording now and return to IDLE without cooldown."""
        with self._lock:
            if self._state in (RecordingState.RECORDING, RecordingState.POST_RECORD):
                self._deadline_ms = None
                self._stop_recording(self._clock())
                self._change_state(RecordingState.IDLE)
                logger.info("Recording stopped on request")
            else:
                logger.info("Stop requested while %s; nothing to stop", self._state.value)
        self._publish()

    def tick(self) -> None:
        """Fire the pending deadline if it has expired."""
        with self._lock:
            now = self._clock()
            if self._deadline_ms is not None and now >= self._deadline_ms:
                self._deadline_ms = None
                self._on_expiry(now)
        self._publish()

    # -- transitions (called with the lock held) ------------------------------

    def _on_activity(self, kind: TriggerKind, now: float) -> None:
        cfg = self._config
        if self._state is RecordingState.IDLE:
            self._pending_trigger = kind
            self._change_state(RecordingState.PRE_RECORD)
            self._arm(now, cfg.pre_record_ms)
            logger.info("Activity (%s) - starting pre-record timer", kind.value)
        elif self._state is RecordingState.PRE_RECORD:
            self._arm(now, cfg.pre_record_ms)
        elif self._state is RecordingState.RECORDING:
            self._arm(now, cfg.post_record_ms)
            logger.debug("Activity continues - extending recording")
        elif self._state is RecordingState.POST_RECORD:
            self._change_state(RecordingState.RECORDING)
            self._arm(now, cfg.post_record_ms)
            logger.info("Activity resumed - back to recording")
        else:
            logger.debug("Activity (%s) during cooldown - ignored", kind.value)

    def _on_manual(self, now: float) -> None:
        if self._state in (RecordingState.IDLE, RecordingState.COOLDOWN):
            self._change_state(RecordingState.RECORDING)
            self._start_recording(now, TriggerKind.MANUAL)
            self._arm(now, self._config.min_record_ms)
            logger.info("Manual trigger - recording started immediately")
        else:
            logger.info("Manual trigger ignored while %s", self._state.value)

    def _on_expiry(self, now: float) -> None:
        cfg = self._config
        if self._state is RecordingState.PRE_RECORD:
            self._change_state(RecordingState.RECORDING)
            self._start_recording(now, self._pending_trigger)
            self._arm(now, cfg.post_record_ms)
        elif self._state in (RecordingState.RECORDING, RecordingState.POST_RECORD):
            elapsed = now - self._session.started_ms if self._session is not None else 0.0
            if elapsed >= cfg.min_record_ms or elapsed >= cfg.max_record_ms:
                self._stop_recording(now)
                self._change_state(RecordingState.COOLDOWN)
                self._arm(now, cfg.cooldown_ms)
            else:
                self._change_state(RecordingState.POST_RECORD)
                self._arm(now, RECHECK_MS)
                logger.debug("Minimum duration not reached (%.0f ms), holding recording", elapsed)
        elif self._state is RecordingState.COOLDOWN:
            self._change_state(RecordingState.IDLE)
            logger.info("Cooldown finished - ready for next recording")

    def _arm(self, now: float, delay_ms: int) -> None:
        deadline = now + max(0, delay_ms)
        if self._session is not None and self._state in (RecordingState.RECORDING, RecordingState.POST_RECORD):
            deadline = min(deadline, self._session.started_ms + self._config.max_record_ms)
        self._deadline_ms = deadline

    def _change_state(self, state: RecordingState) -> None:
        if state is self._state:
            return
        self._state = state
        if self._session is not None:
            self._session.state = state
        self._outbox.append(("on_recording_state_changed", (state,)))

    def _start_recording(self, now: float, trigger: TriggerKind) -> None:
        prefix = "manual" if trigger is TriggerKind.MANUAL else "motion"
        started_at = self._wall_clock()
        self._session = RecordingSession(
            state=self._state,
            filename=f"{prefix}_{started_at.strftime('%Y%m%d_%H%M%S')}_{started_at.microsecond // 1000:03d}.mp4",
            trigger=trigger,
            started_at=started_at,
            started_ms=now,
        )
        self._outbox.append(("on_recording_started", (self._session.filename,)))

    def _stop_recording(self, now: float) -> None:
        session = self._session
        if session is None:
            return
        duration = now - session.started_ms
        if duration < 0:
            logger.warning("Negative recording duration %.0f ms for %s; clamping to 0", duration, session.filename)
            duration = 0
        session.duration_ms = int(duration)
        self._session = None
        self.last_session = session
        self.sessions_completed += 1
        self._outbox.append(("on_recording_stopped", (session.filename, session.duration_ms)))

    def _publish(self) -> None:
        """Deliver queued events in the order their transitions committed."""
        with self._publish_lock:
            while True:
                with self._lock:
                    if not self._outbox:
                        return
                    event, args = self._outbox.popleft()
                self.listeners.emit(event, *args)


class RecordingTimer:
    """Background thread ticking a state machine at a fixed interval."""

    def __init__(self, machine: RecordingStateMachine, interval_seconds: float = 0.05) -> None:
        self.machine = machine
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="recording-timer", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self.interval_seconds):
            try:
                self.machine.tick()
            except Exception:
                logger.exception("Recording timer tick failed")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
