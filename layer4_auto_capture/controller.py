"""
Layer 4 — Auto-Capture Controller
Turns a stream of per-frame verdicts into exactly one capture.

States:
    idle -> accumulating -> counting_down -> captured

A few ready frames in a row start a wall-clock countdown. Short runs of bad
frames are tolerated (grace period); a longer run drops back to idle.
`captured` is terminal until reset(), so a capture fires at most once.
"""
import logging
import threading
import time
from typing import Callable, List, Optional

from transitions import Machine

from config import DetectionConfig
from detection_types import AutoCaptureState, DetectionResult
from layer1_sampling.scheduler import TickScheduler

logger = logging.getLogger(__name__)

STATES = ['idle', 'accumulating', 'counting_down', 'captured']

TRANSITIONS = [
    {'trigger': 'arm', 'source': 'idle', 'dest': 'accumulating'},
    {'trigger': 'start_countdown', 'source': 'accumulating', 'dest': 'counting_down'},
    {'trigger': 'fire', 'source': ['idle', 'accumulating', 'counting_down'], 'dest': 'captured'},
    {'trigger': 'drop', 'source': ['accumulating', 'counting_down'], 'dest': 'idle'},
    {'trigger': 'rearm', 'source': '*', 'dest': 'idle'},
]


class AutoCaptureController:
    """
    Stability state machine driving the auto-capture countdown.

    update() is fed one DetectionResult per analysed frame. When a
    TickScheduler is given, the controller requests ticks while counting
    down and fires on its own; otherwise the host calls tick(now).
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        scheduler: Optional[TickScheduler] = None,
        clock: Optional[Callable[[], float]] = None,
        on_capture: Optional[Callable[[], None]] = None,
        on_state: Optional[Callable[[AutoCaptureState], None]] = None
    ):
        """
        Args:
            config: Timing parameters (delay, stable frames, grace period)
            scheduler: Optional tick source for the countdown
            clock: Milliseconds clock; defaults to the scheduler's, else monotonic
            on_capture: Called once when the capture fires
            on_state: Called with every new AutoCaptureState snapshot
        """
        config = config or DetectionConfig()
        self.delay_ms = config.auto_capture_delay_ms
        self.min_stable_frames = config.min_stable_frames
        self.grace_period_frames = config.grace_period_frames

        self.scheduler = scheduler
        if clock is not None:
            self._clock = clock
        elif scheduler is not None:
            self._clock = scheduler.now
        else:
            self._clock = lambda: time.monotonic() * 1000.0

        self._capture_listeners: List[Callable[[], None]] = []
        self._state_listeners: List[Callable[[AutoCaptureState], None]] = []
        if on_capture:
            self._capture_listeners.append(on_capture)
        if on_state:
            self._state_listeners.append(on_state)

        self.stable_frames = 0
        self.unstable_frames = 0
        self.countdown_started_at: Optional[float] = None
        self.capture_count = 0
        self._tick_handle: Optional[int] = None
        self._enabled = True
        self._lock = threading.RLock()

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial='idle',
            auto_transitions=False,
        )

    # -------------------- Listeners --------------------

    def add_capture_listener(self, listener: Callable[[], None]):
        self._capture_listeners.append(listener)

    def add_state_listener(self, listener: Callable[[AutoCaptureState], None]):
        self._state_listeners.append(listener)

    def _publish(self, now: Optional[float] = None):
        snapshot = self.snapshot(now)
        for listener in list(self._state_listeners):
            listener(snapshot)

    # -------------------- State callbacks --------------------
    # Picked up by name by transitions

    def on_enter_idle(self):
        self._clear()

    def on_enter_counting_down(self):
        self.countdown_started_at = self._clock()
        self.unstable_frames = 0
        logger.info(f"Auto-capture countdown started ({self.delay_ms:.0f} ms)")
        self._request_tick()

    def on_exit_counting_down(self):
        self.countdown_started_at = None
        self._cancel_tick()

    def on_enter_captured(self):
        self._clear()
        self.capture_count += 1
        logger.info("Auto-capture fired")
        for listener in list(self._capture_listeners):
            listener()

    def _clear(self):
        self.stable_frames = 0
        self.unstable_frames = 0
        self.countdown_started_at = None
        self._cancel_tick()

    # -------------------- Scheduling --------------------

    def _request_tick(self):
        if self.scheduler is not None and self._tick_handle is None:
            self._tick_handle = self.scheduler.request_tick(self._on_tick)

    def _cancel_tick(self):
        if self.scheduler is not None and self._tick_handle is not None:
            self.scheduler.cancel_tick(self._tick_handle)
        self._tick_handle = None

    def _on_tick(self, now_ms: float):
        self._tick_handle = None
        self.tick(now_ms)
        with self._lock:
            if self.is_counting_down():
                self._request_tick()

    # -------------------- Public API --------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool):
        with self._lock:
            if self._enabled and not value:
                self.cancel()
            self._enabled = bool(value)

    def update(self, result: DetectionResult):
        """Feed the verdict for one analysed frame."""
        with self._lock:
            if not self._enabled or self.is_captured():
                return

            previous = self.state
            if result.ready_for_capture:
                self.stable_frames += 1
                self.unstable_frames = 0
                if self.is_idle():
                    self.arm()
                if self.is_accumulating() and self.stable_frames >= self.min_stable_frames:
                    self.start_countdown()
            else:
                self.unstable_frames += 1
                if self.unstable_frames >= self.grace_period_frames:
                    if self.is_idle():
                        self._clear()
                    else:
                        logger.debug(f"Grace period exceeded in {self.state}, back to idle")
                        self.drop()

            if self.state != previous:
                self._publish()

    def tick(self, now: Optional[float] = None) -> AutoCaptureState:
        """
        Advance the countdown. Fires the capture once the delay has elapsed.

        Returns:
            AutoCaptureState: snapshot after this tick
        """
        with self._lock:
            now = self._clock() if now is None else now
            if self.is_counting_down() and now - self.countdown_started_at >= self.delay_ms:
                self.fire()
            snapshot = self.snapshot(now)
        for listener in list(self._state_listeners):
            listener(snapshot)
        return snapshot

    def snapshot(self, now: Optional[float] = None) -> AutoCaptureState:
        """Current countdown state."""
        with self._lock:
            if self.is_captured():
                return AutoCaptureState(is_counting_down=False, countdown_progress=1.0,
                                        remaining_ms=0.0, should_capture=True)
            if not self.is_counting_down():
                return AutoCaptureState.idle(self.delay_ms)

            now = self._clock() if now is None else now
            elapsed = max(0.0, now - self.countdown_started_at)
            progress = min(elapsed / self.delay_ms, 1.0) if self.delay_ms > 0 else 1.0
            return AutoCaptureState(
                is_counting_down=True,
                countdown_progress=progress,
                remaining_ms=max(0.0, self.delay_ms - elapsed),
                should_capture=False
            )

    def reset(self):
        """Back to idle and re-armed for a new capture."""
        with self._lock:
            self.rearm()
            logger.debug("Auto-capture reset")
        self._publish()

    def cancel(self):
        """
        Stop any countdown and clear the counters.
        A capture that already fired stays captured; only reset() re-arms.
        """
        with self._lock:
            if self.is_captured():
                self._clear()
                return
            self.rearm()
        self._publish()

    def capture_now(self) -> bool:
        """
        Manual capture, bypassing stability.

        Returns:
            bool: False if this session already captured
        """
        with self._lock:
            if self.is_captured():
                logger.debug("Manual capture ignored: already captured")
                return False
            logger.info("Manual capture requested")
            self.fire()
        self._publish()
        return True
