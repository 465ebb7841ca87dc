"""
Layer 1 — Tick Schedulers
Display-refresh style per-frame callbacks. A callback requested during a tick
runs on the following tick; callbacks never run concurrently with each other.
"""
import itertools
import logging
import threading
import time
from typing import Callable, Dict

logger = logging.getLogger(__name__)

TickCallback = Callable[[float], None]


class TickScheduler:
    """Interface: one-shot callbacks on the next tick, time in milliseconds."""

    def now(self) -> float:
        """Monotonic time in milliseconds."""
        raise NotImplementedError

    def request_tick(self, callback: TickCallback) -> int:
        """Run callback(now_ms) on the next tick. Returns a handle."""
        raise NotImplementedError

    def cancel_tick(self, handle: int):
        """Cancel a pending callback. Unknown or already-run handles are ignored."""
        raise NotImplementedError


class _PendingTicks:
    """Pending callback table shared by both schedulers."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._pending: Dict[int, TickCallback] = {}
        self._lock = threading.Lock()

    def add(self, callback: TickCallback) -> int:
        with self._lock:
            handle = next(self._ids)
            self._pending[handle] = callback
            return handle

    def cancel(self, handle: int):
        with self._lock:
            self._pending.pop(handle, None)

    def drain(self):
        with self._lock:
            batch = list(self._pending.items())
            self._pending.clear()
        return batch

    def is_pending(self, handle: int) -> bool:
        with self._lock:
            return handle in self._pending

    def __len__(self):
        with self._lock:
            return len(self._pending)


def _run_batch(batch, now_ms):
    for handle, callback in batch:
        try:
            callback(now_ms)
        except Exception as e:
            # A failing callback must not stop the loop
            logger.error(f"Tick callback {handle} failed: {e}")
            logger.exception("Full traceback:")


class ManualTickScheduler(TickScheduler):
    """
    Headless scheduler driven explicitly, for tests and offline replay.
    Time only moves when advance() or run_ticks() is called.
    """

    def __init__(self, start_ms: float = 0.0, tick_interval_ms: float = 1000.0 / 60.0):
        self._now = float(start_ms)
        self.tick_interval_ms = tick_interval_ms
        self._ticks = _PendingTicks()
        self.tick_count = 0

    def now(self) -> float:
        return self._now

    def request_tick(self, callback: TickCallback) -> int:
        return self._ticks.add(callback)

    def cancel_tick(self, handle: int):
        self._ticks.cancel(handle)

    def is_pending(self, handle: int) -> bool:
        return self._ticks.is_pending(handle)

    @property
    def pending_count(self) -> int:
        return len(self._ticks)

    def tick(self):
        """Advance one tick interval and run the callbacks pending before it."""
        self._now += self.tick_interval_ms
        self.tick_count += 1
        _run_batch(self._ticks.drain(), self._now)

    def run_ticks(self, count: int):
        for _ in range(count):
            self.tick()

    def advance(self, ms: float):
        """Run as many ticks as fit into the given span of time."""
        target = self._now + ms
        while self._now + self.tick_interval_ms <= target + 1e-9:
            self.tick()
        self._now = max(self._now, target)


class RealtimeTickScheduler(TickScheduler):
    """
    Single background thread ticking at a fixed refresh rate.
    All callbacks run on that thread, one after another.
    """

    def __init__(self, refresh_hz: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.interval_s = 1.0 / refresh_hz
        self._clock = clock
        self._ticks = _PendingTicks()
        self._stop_event = threading.Event()
        self._thread = None

    def now(self) -> float:
        return self._clock() * 1000.0

    def request_tick(self, callback: TickCallback) -> int:
        return self._ticks.add(callback)

    def cancel_tick(self, handle: int):
        self._ticks.cancel(handle)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tick-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Tick scheduler started at {1.0 / self.interval_s:.0f} Hz")

    def stop(self, timeout: float = 1.0):
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        self._ticks.drain()
        logger.info("Tick scheduler stopped")

    def _loop(self):
        next_tick = self._clock()
        while not self._stop_event.is_set():
            next_tick += self.interval_s
            _run_batch(self._ticks.drain(), self.now())
            delay = next_tick - self._clock()
            if delay > 0:
                self._stop_event.wait(delay)
            else:
                # Fell behind (slow callback); resynchronise instead of bursting
                next_tick = self._clock()
