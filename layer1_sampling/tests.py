"""
Tests for Layer 1: frame sources, tick schedulers and the frame sampler.
"""
import logging
import threading

import numpy as np
import pytest

from error_handlers import CameraNotFoundError, CameraNotInitializedError
from layer1_sampling import (
    CameraSettings,
    FrameSampler,
    ManualTickScheduler,
    OpenCVFrameSource,
    StaticFrameSource,
)


class TestManualTickScheduler:
    """Test the headless tick scheduler."""

    def test_callback_runs_on_next_tick(self):
        """Test a requested callback runs once, with the tick time."""
        scheduler = ManualTickScheduler(tick_interval_ms=10)
        seen = []
        scheduler.request_tick(seen.append)

        scheduler.tick()
        scheduler.tick()

        assert seen == [10]

    def test_callback_requested_during_tick_waits_for_next(self):
        """Test re-requesting inside a callback does not run in the same tick."""
        scheduler = ManualTickScheduler(tick_interval_ms=10)
        seen = []

        def loop(now):
            seen.append(now)
            scheduler.request_tick(loop)

        scheduler.request_tick(loop)
        scheduler.run_ticks(3)

        assert seen == [10, 20, 30]

    def test_cancel_tick(self):
        """Test a cancelled callback never runs."""
        scheduler = ManualTickScheduler()
        seen = []
        handle = scheduler.request_tick(seen.append)
        scheduler.cancel_tick(handle)
        scheduler.tick()

        assert seen == []
        assert scheduler.pending_count == 0

    def test_cancel_unknown_handle_is_ignored(self):
        """Test cancelling a stale handle is harmless."""
        scheduler = ManualTickScheduler()
        scheduler.cancel_tick(12345)

    def test_failing_callback_does_not_stop_others(self, caplog):
        """Test one raising callback is logged and the rest still run."""
        scheduler = ManualTickScheduler()
        seen = []

        def broken(now):
            raise RuntimeError("boom")

        scheduler.request_tick(broken)
        scheduler.request_tick(seen.append)
        with caplog.at_level(logging.ERROR):
            scheduler.tick()

        assert len(seen) == 1
        assert "boom" in caplog.text

    def test_advance_runs_whole_ticks(self):
        """Test advance() moves time and ticks as many times as fit."""
        scheduler = ManualTickScheduler(tick_interval_ms=10)
        scheduler.advance(35)

        assert scheduler.tick_count == 3
        assert scheduler.now() == 35


class TestStaticFrameSource:
    """Test the still-image frame source."""

    def test_sequence_repeats_last_frame(self):
        """Test frames are served in order and the last one repeats."""
        a = np.zeros((4, 4, 3), dtype=np.uint8)
        b = np.ones((4, 4, 3), dtype=np.uint8)
        source = StaticFrameSource([a, b])

        assert source.read_frame() is a
        assert source.read_frame() is b
        assert source.read_frame() is b
        assert source.reads == 3

    def test_warmup_reports_not_readable(self):
        """Test readable_after delays readiness."""
        source = StaticFrameSource(np.zeros((4, 4, 3), dtype=np.uint8), readable_after=2)

        assert [source.is_readable() for _ in range(3)] == [False, False, True]

    def test_read_after_release_raises(self):
        """Test reading a released source raises CameraNotInitializedError."""
        source = StaticFrameSource(np.zeros((4, 4, 3), dtype=np.uint8))
        source.release()

        assert not source.is_readable()
        with pytest.raises(CameraNotInitializedError):
            source.read_frame()

    def test_full_resolution_is_a_copy(self, card_frame):
        """Test the capture frame is decoupled from the source array."""
        source = StaticFrameSource(card_frame)
        full = source.read_full_resolution()

        assert full.shape == card_frame.shape
        assert full is not card_frame

    def test_empty_sequence_rejected(self):
        """Test a source needs at least one frame."""
        with pytest.raises(ValueError):
            StaticFrameSource([])


class TestOpenCVFrameSource:
    """Test the camera source without real hardware."""

    def test_not_readable_before_initialize(self):
        """Test an unopened camera is never readable."""
        source = OpenCVFrameSource(camera_index=97)
        assert not source.is_readable()
        assert source.native_size() == (0, 0)

    def test_missing_device_raises(self):
        """Test a missing /dev/video device raises CameraNotFoundError."""
        source = OpenCVFrameSource(camera_index=97)
        with pytest.raises(CameraNotFoundError) as exc_info:
            source.initialize()
        assert exc_info.value.error_code == "CAMERA_NOT_FOUND"

    def test_read_before_initialize_raises(self):
        """Test reading an unopened camera raises CameraNotInitializedError."""
        source = OpenCVFrameSource(camera_index=97)
        with pytest.raises(CameraNotInitializedError):
            source.read_frame()

    def test_context_manager_raises_for_missing_device(self):
        """Test entering the context opens the device and surfaces its error."""
        with pytest.raises(CameraNotFoundError):
            with OpenCVFrameSource(camera_index=97, settings=CameraSettings(width=640, height=480)):
                pass

    def test_release_is_idempotent(self):
        """Test releasing twice is safe."""
        source = OpenCVFrameSource(camera_index=97)
        source.release()
        source.release()
        assert not source.is_opened()


class TestFrameSampler:
    """Test throttled frame sampling."""

    def _run(self, source, scheduler, ticks, **kwargs):
        sampler = FrameSampler(source, scheduler, **kwargs)
        frames = []
        sampler.start(frames.append)
        scheduler.run_ticks(ticks)
        return sampler, frames

    def test_throttles_to_target_fps(self, card_frame, scheduler):
        """Test frames are emitted no closer than 1000/fps ms apart."""
        _, frames = self._run(StaticFrameSource(card_frame), scheduler, 120, target_fps=8)

        gaps = np.diff([f.timestamp for f in frames])
        assert 14 <= len(frames) <= 16
        assert (gaps >= 125 - 1e-6).all()

    def test_downscales_frames(self, card_frame, scheduler):
        """Test native frames are shrunk by the downscale factor."""
        _, frames = self._run(StaticFrameSource(card_frame), scheduler, 1, downscale=2)

        assert len(frames) == 1
        assert (frames[0].buffer.width, frames[0].buffer.height) == (320, 240)

    def test_bgr_source_converted_to_rgb(self, scheduler):
        """Test BGR frames arrive as RGB."""
        bgr = np.zeros((40, 40, 3), dtype=np.uint8)
        bgr[..., 0] = 255  # blue in BGR order
        source = StaticFrameSource(bgr, color_order="BGR")
        _, frames = self._run(source, scheduler, 1, downscale=1)

        pixel = frames[0].buffer.data[10, 10]
        assert list(pixel) == [0, 0, 255]

    def test_emitted_buffers_are_read_only(self, card_frame, scheduler):
        """Test downstream stages cannot write into sampled pixels."""
        _, frames = self._run(StaticFrameSource(card_frame), scheduler, 1)

        with pytest.raises(ValueError):
            frames[0].buffer.data[0, 0, 0] = 1

    def test_held_frame_unchanged_by_later_frames(self, gray_frame, card_frame, scheduler):
        """Test a frame kept by the consumer keeps its own pixels."""
        _, frames = self._run(StaticFrameSource([gray_frame, card_frame]), scheduler, 40)

        assert len(frames) > 2
        assert len(np.unique(frames[0].buffer.data)) == 1
        assert not np.shares_memory(frames[0].buffer.data, frames[-1].buffer.data)

    def test_source_reads_hold_read_lock(self, card_frame, scheduler):
        """Test the sampler reads the source only while holding its read lock."""
        class LockCheckingSource(StaticFrameSource):
            def read_frame(self):
                # RLock has no public owner check; a foreign thread must fail to take it
                taken = []
                other = threading.Thread(
                    target=lambda: taken.append(self.read_lock.acquire(blocking=False)))
                other.start()
                other.join()
                assert taken == [False]
                return super().read_frame()

        _, frames = self._run(LockCheckingSource(card_frame), scheduler, 5)
        assert frames

    def test_scratch_buffers_reused(self, card_frame, scheduler):
        """Test buffers are allocated once while the size is unchanged."""
        sampler, frames = self._run(StaticFrameSource(card_frame), scheduler, 60)

        assert len(frames) > 3
        assert sampler.allocations == 1

    def test_reallocates_on_size_change(self, scheduler):
        """Test a resolution change reallocates the scratch buffers."""
        small = np.zeros((40, 40, 3), dtype=np.uint8)
        large = np.zeros((80, 80, 3), dtype=np.uint8)
        sampler, frames = self._run(StaticFrameSource([small, large]), scheduler, 30)

        assert frames[-1].buffer.width == 40
        assert sampler.allocations == 2

    def test_skips_ticks_while_not_readable(self, card_frame, scheduler):
        """Test no frame is emitted until the source becomes readable."""
        source = StaticFrameSource(card_frame, readable_after=3)
        _, frames = self._run(source, scheduler, 3)
        assert frames == []

        scheduler.tick()
        assert len(frames) == 1

    def test_extraction_failure_is_no_frame(self, scheduler, caplog):
        """Test a failing source yields no frame and the sampler keeps going."""
        class BrokenSource(StaticFrameSource):
            def read_frame(self):
                raise RuntimeError("driver hiccup")

        source = BrokenSource(np.zeros((8, 8, 3), dtype=np.uint8))
        with caplog.at_level(logging.WARNING):
            sampler, frames = self._run(source, scheduler, 10)

        assert frames == []
        assert sampler.is_running
        assert caplog.text.count("driver hiccup") == 1

    def test_stop_cancels_pending_tick(self, card_frame, scheduler):
        """Test stop() leaves nothing scheduled and can be repeated."""
        sampler, _ = self._run(StaticFrameSource(card_frame), scheduler, 2)
        sampler.stop()
        sampler.stop()

        assert scheduler.pending_count == 0
        assert not sampler.is_running

    def test_stop_from_frame_callback(self, card_frame, scheduler):
        """Test the consumer may stop the sampler from inside on_frame."""
        sampler = FrameSampler(StaticFrameSource(card_frame), scheduler)
        frames = []

        def on_frame(frame):
            frames.append(frame)
            sampler.stop()

        sampler.start(on_frame)
        scheduler.run_ticks(30)

        assert len(frames) == 1
        assert scheduler.pending_count == 0

    def test_stop_before_start(self, card_frame, scheduler):
        """Test stopping a sampler that never started is safe."""
        FrameSampler(StaticFrameSource(card_frame), scheduler).stop()

    def test_measures_fps(self, card_frame, scheduler):
        """Test current_fps is measured over one-second windows."""
        sampler, _ = self._run(StaticFrameSource(card_frame), scheduler, 130, target_fps=8)
        assert 6 <= sampler.current_fps <= 9

    def test_extract_frame_one_shot(self, card_frame, scheduler):
        """Test extract_frame() works without starting the sampler."""
        sampler = FrameSampler(StaticFrameSource(card_frame), scheduler, downscale=4)
        frame = sampler.extract_frame()

        assert frame.buffer.width == 160
        assert frame.timestamp == scheduler.now()

    def test_invalid_parameters(self, card_frame, scheduler):
        """Test non-positive fps and downscale are rejected."""
        source = StaticFrameSource(card_frame)
        with pytest.raises(ValueError):
            FrameSampler(source, scheduler, target_fps=0)
        with pytest.raises(ValueError):
            FrameSampler(source, scheduler, downscale=0)
