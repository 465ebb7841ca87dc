"""
Tests for Layer 4: the auto-capture state machine.
"""
import pytest

from config import DetectionConfig
from layer1_sampling import ManualTickScheduler
from layer4_auto_capture import STATES, AutoCaptureController


@pytest.fixture
def ticks():
    return ManualTickScheduler(tick_interval_ms=10)


@pytest.fixture
def captures():
    return []


@pytest.fixture
def controller(ticks, captures):
    return AutoCaptureController(DetectionConfig(), scheduler=ticks,
                                 on_capture=lambda: captures.append(ticks.now()))


def feed(controller, result, count):
    for _ in range(count):
        controller.update(result)


class TestStability:
    """Test the stable-frame and grace-period rules."""

    def test_starts_idle(self, controller):
        assert controller.state == 'idle'
        assert STATES[0] == 'idle'

    def test_one_ready_frame_is_not_enough(self, controller, make_result):
        """Test the countdown needs min_stable_frames ready frames."""
        controller.update(make_result(ready=True))

        assert controller.state == 'accumulating'
        assert not controller.snapshot().is_counting_down

    def test_countdown_after_stable_frames(self, controller, make_result):
        feed(controller, make_result(ready=True), 2)

        state = controller.snapshot()
        assert controller.state == 'counting_down'
        assert state.is_counting_down
        assert state.countdown_progress == 0
        assert state.remaining_ms == 2000

    def test_grace_period_keeps_countdown(self, controller, make_result):
        """Test fewer bad frames than the grace period are tolerated."""
        feed(controller, make_result(ready=True), 2)
        feed(controller, make_result(ready=False), 4)

        assert controller.state == 'counting_down'
        assert controller.unstable_frames == 4

    def test_ready_frame_clears_unstable_count(self, controller, make_result):
        feed(controller, make_result(ready=True), 2)
        feed(controller, make_result(ready=False), 4)
        controller.update(make_result(ready=True))
        feed(controller, make_result(ready=False), 4)

        assert controller.state == 'counting_down'

    def test_grace_period_exceeded_drops_to_idle(self, controller, make_result, ticks):
        feed(controller, make_result(ready=True), 2)
        feed(controller, make_result(ready=False), 5)

        assert controller.state == 'idle'
        assert controller.stable_frames == 0
        assert controller.countdown_started_at is None
        assert ticks.pending_count == 0

    def test_bad_frames_while_accumulating(self, controller, make_result):
        controller.update(make_result(ready=True))
        feed(controller, make_result(ready=False), 5)

        assert controller.state == 'idle'
        assert controller.stable_frames == 0


class TestCountdown:
    """Test countdown timing on a manual clock."""

    def test_fires_after_delay(self, controller, make_result, ticks, captures):
        """Test the capture fires on the first tick at or after the delay."""
        feed(controller, make_result(ready=True), 2)

        ticks.advance(1990)
        assert captures == []
        assert controller.snapshot().countdown_progress == pytest.approx(0.995)

        ticks.advance(10)
        assert captures == [2000]
        assert controller.state == 'captured'

    def test_fires_once(self, controller, make_result, ticks, captures):
        """Test no second capture without a reset."""
        feed(controller, make_result(ready=True), 2)
        ticks.advance(2500)
        feed(controller, make_result(ready=True), 10)
        ticks.advance(2500)

        assert len(captures) == 1
        assert controller.capture_count == 1
        state = controller.snapshot()
        assert state.should_capture
        assert state.countdown_progress == 1.0
        assert state.remaining_ms == 0

    def test_no_ticks_requested_outside_countdown(self, controller, make_result, ticks):
        controller.update(make_result(ready=True))
        assert ticks.pending_count == 0

        controller.update(make_result(ready=True))
        assert ticks.pending_count == 1

        ticks.advance(2000)
        assert ticks.pending_count == 0

    def test_host_driven_tick_without_scheduler(self, make_result):
        """Test tick(now) drives the countdown when no scheduler is given."""
        clock = [0.0]
        fired = []
        controller = AutoCaptureController(DetectionConfig(auto_capture_delay_ms=500),
                                           clock=lambda: clock[0],
                                           on_capture=lambda: fired.append(True))
        feed(controller, make_result(ready=True), 2)

        assert not controller.tick(499).should_capture
        assert controller.tick(500).should_capture
        assert fired == [True]

    def test_zero_delay(self, make_result, ticks):
        controller = AutoCaptureController(DetectionConfig(auto_capture_delay_ms=0),
                                           scheduler=ticks)
        feed(controller, make_result(ready=True), 2)
        assert controller.snapshot().countdown_progress == 1.0

        ticks.tick()
        assert controller.state == 'captured'

    def test_state_listener_sees_progress(self, controller, make_result, ticks):
        snapshots = []
        controller.add_state_listener(snapshots.append)
        feed(controller, make_result(ready=True), 2)
        ticks.advance(1000)

        progress = [s.countdown_progress for s in snapshots if s.is_counting_down]
        assert progress == sorted(progress)
        assert progress[-1] == pytest.approx(0.5)

    def test_remaining_time_strictly_decreases(self, controller, make_result, ticks):
        """Test every published countdown tick has less time left, ending at zero."""
        snapshots = []
        controller.add_state_listener(snapshots.append)
        feed(controller, make_result(ready=True), 2)
        ticks.advance(2000)

        remaining = [s.remaining_ms for s in snapshots if s.is_counting_down or s.should_capture]
        assert remaining[0] == 2000
        assert all(later < earlier for earlier, later in zip(remaining, remaining[1:]))
        assert remaining[-1] == 0
        assert snapshots[-1].should_capture


class TestCancelAndReset:
    """Test cancel(), reset() and manual capture."""

    def test_cancel_mid_countdown(self, controller, make_result, ticks, captures):
        """Test cancel clears the timer and one ready frame does not re-trigger."""
        feed(controller, make_result(ready=True), 2)
        ticks.advance(1000)
        controller.cancel()

        assert controller.state == 'idle'
        assert ticks.pending_count == 0

        controller.update(make_result(ready=True))
        ticks.advance(3000)
        assert controller.state == 'accumulating'
        assert captures == []

    def test_cancel_after_capture_stays_captured(self, controller, make_result, ticks):
        feed(controller, make_result(ready=True), 2)
        ticks.advance(2000)
        controller.cancel()

        assert controller.state == 'captured'
        assert controller.snapshot().should_capture

    def test_reset_rearms(self, controller, make_result, ticks, captures):
        feed(controller, make_result(ready=True), 2)
        ticks.advance(2000)
        controller.reset()

        assert controller.state == 'idle'
        assert not controller.snapshot().should_capture

        feed(controller, make_result(ready=True), 2)
        ticks.advance(2000)
        assert len(captures) == 2

    def test_capture_now_bypasses_stability(self, controller, captures):
        assert controller.capture_now()
        assert controller.state == 'captured'
        assert len(captures) == 1

    def test_extra_capture_listener(self, controller, captures):
        """Test listeners added later are notified alongside on_capture."""
        extra = []
        controller.add_capture_listener(lambda: extra.append(True))
        controller.capture_now()

        assert len(captures) == 1
        assert extra == [True]

    def test_capture_now_once(self, controller, captures):
        controller.capture_now()
        assert not controller.capture_now()
        assert len(captures) == 1

    def test_capture_now_during_countdown(self, controller, make_result, ticks, captures):
        feed(controller, make_result(ready=True), 2)
        assert controller.capture_now()

        ticks.advance(3000)
        assert len(captures) == 1
        assert ticks.pending_count == 0

    def test_disabled_ignores_frames(self, controller, make_result, ticks, captures):
        """Test disabling cancels the countdown and ignores new frames."""
        feed(controller, make_result(ready=True), 2)
        controller.enabled = False

        feed(controller, make_result(ready=True), 5)
        ticks.advance(3000)

        assert controller.state == 'idle'
        assert captures == []

        controller.enabled = True
        feed(controller, make_result(ready=True), 2)
        assert controller.state == 'counting_down'
