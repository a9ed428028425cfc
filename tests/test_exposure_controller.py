"""
Tests for the closed-loop ISO controller, manual exposure and white balance.
"""

import math
import threading

import pytest
import numpy as np

from visioncam.camera.camera_service import CameraService, SimulatedCamera
from visioncam.camera.device import WhiteBalanceGains
from visioncam.exposure.brightness import estimate_luminance
from visioncam.exposure.controller import (
    ActuationStatus,
    ExposureController,
    ExposureState,
    compute_next_iso,
)

from conftest import FakeSource, uniform_frame


class GatedSource(FakeSource):
    """FakeSource whose first exposure write blocks until released."""

    def __init__(self, device_range):
        super().__init__(device_range)
        self.entered = threading.Event()
        self.release = threading.Event()

    def actuate(self, exposure_duration, iso):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(2.0)
        super().actuate(exposure_duration, iso)


class TestComputeNextIso:
    """Tests for the pure control law."""

    def test_reference_scenario(self, device_range):
        """Brightness 0.3 at ISO 400: gain 4, adjustment 2**0.8, smoothed ~414.8."""
        new_iso = compute_next_iso(0.3, device_range, 400.0)
        raw = 400.0 * 2**0.8
        assert new_iso == pytest.approx(400.0 * 0.95 + raw * 0.05)
        assert new_iso == pytest.approx(414.82, abs=0.01)

    def test_equilibrium(self, device_range):
        """At the setpoint the adjustment is 1 and ISO is unchanged."""
        assert compute_next_iso(0.5, device_range, 400.0) == pytest.approx(400.0)
        assert compute_next_iso(0.5, device_range, 35.0) == pytest.approx(35.0)

    def test_direction(self, device_range):
        """Dark frames raise ISO, bright frames lower it."""
        assert compute_next_iso(0.2, device_range, 400.0) > 400.0
        assert compute_next_iso(0.8, device_range, 400.0) < 400.0

    def test_min_effective_gain(self, device_range):
        """Small errors use the gain floor of 1."""
        # error 0.05 -> 100 * 0.0025 = 0.25 < 1
        new_iso = compute_next_iso(0.45, device_range, 400.0)
        assert new_iso == pytest.approx(400.0 * 0.95 + 400.0 * 2**0.05 * 0.05)

    def test_large_error_clamps_before_smoothing(self, device_range):
        """Raw ISO is clamped to the range, then smoothed."""
        # error 0.5 -> gain 25 -> 2**12.5 -> raw far above 3260
        new_iso = compute_next_iso(0.0, device_range, 400.0)
        assert new_iso == pytest.approx(400.0 * 0.95 + 3260.0 * 0.05)

        new_iso = compute_next_iso(1.0, device_range, 400.0)
        assert new_iso == pytest.approx(400.0 * 0.95 + 35.0 * 0.05)

    def test_exponent_overflow(self, device_range):
        """Overflowing adjustments still clamp to the ISO bounds."""
        high = compute_next_iso(0.0, device_range, 400.0, base_gain=1e9)
        assert high == pytest.approx(400.0 * 0.95 + 3260.0 * 0.05)

        low = compute_next_iso(1.0, device_range, 400.0, base_gain=1e9)
        assert low == pytest.approx(400.0 * 0.95 + 35.0 * 0.05)
        assert math.isfinite(high) and math.isfinite(low)

    def test_bounded_for_all_inputs(self, device_range):
        """Output stays within [min_iso, max_iso] over the input domain."""
        for measured in np.linspace(0.0, 1.0, 101):
            for iso in (35.0, 36.0, 100.0, 400.0, 1000.0, 3259.0, 3260.0):
                new_iso = compute_next_iso(float(measured), device_range, iso)
                assert device_range.min_iso <= new_iso <= device_range.max_iso


class TestStep:
    """Tests for ExposureController.step()."""

    def test_step_applies_and_updates_state(self, controller, fake_source):
        """A successful step writes ISO and duration together."""
        new_iso = controller.step(0.3)

        assert new_iso == pytest.approx(414.82, abs=0.01)
        assert controller.current_iso == new_iso
        assert controller.last_status is ActuationStatus.APPLIED
        assert fake_source.exposure_writes == [(0.01, new_iso)]

    def test_step_queries_range_fresh(self, controller, fake_source):
        """The device range is queried on every step."""
        controller.step(0.4)
        controller.step(0.4)
        assert fake_source.range_queries == 2

    def test_step_explicit_arguments(self, controller, fake_source, device_range):
        """Explicit range and current ISO bypass the source query and state."""
        new_iso = controller.step(0.3, device_range=device_range, current_iso=400.0)
        assert fake_source.range_queries == 0
        assert new_iso == pytest.approx(414.82, abs=0.01)

    def test_step_lock_failed(self, controller, fake_source):
        """Lock failure leaves state untouched and writes nothing."""
        fake_source.lock_busy = True

        result = controller.step(0.3)

        assert result == 400.0
        assert controller.current_iso == 400.0
        assert controller.last_status is ActuationStatus.LOCK_FAILED
        assert fake_source.exposure_writes == []
        assert controller.get_status()["failure_count"] == 1

    def test_step_device_unavailable(self, controller, fake_source):
        """Missing device is reported, not raised."""
        fake_source.unavailable = True

        assert controller.step(0.3) == 400.0
        assert controller.last_status is ActuationStatus.DEVICE_UNAVAILABLE
        assert fake_source.exposure_writes == []

    def test_no_source(self):
        """A controller without a source reports DEVICE_UNAVAILABLE."""
        controller = ExposureController(source=None)
        assert controller.step(0.1) == 400.0
        assert controller.last_status is ActuationStatus.DEVICE_UNAVAILABLE
        assert controller.set_manual(0.01, 100).status is ActuationStatus.DEVICE_UNAVAILABLE
        assert controller.sync_from_device() is False

    def test_recovers_after_lock_failure(self, controller, fake_source):
        """The next frame retries naturally."""
        fake_source.lock_busy = True
        controller.step(0.3)
        fake_source.lock_busy = False

        assert controller.step(0.3) == pytest.approx(414.82, abs=0.01)
        assert controller.last_status is ActuationStatus.APPLIED

    def test_on_update_callback(self, controller):
        """Observers receive the new state."""
        states = []
        controller.on_update(states.append)

        controller.step(0.3)

        assert len(states) == 1
        assert isinstance(states[0], ExposureState)
        assert states[0].current_iso == controller.current_iso


class TestProcessFrame:
    """Tests for frame-driven steps and pausing."""

    def test_dark_frame_raises_iso(self, controller):
        assert controller.process_frame(uniform_frame(20)) > 400.0
        assert controller.last_brightness == pytest.approx(20 / 255)

    def test_paused_skips(self, controller, fake_source):
        """Paused controller neither computes nor writes."""
        controller.pause()

        assert controller.process_frame(uniform_frame(20)) == 400.0
        assert fake_source.exposure_writes == []

        controller.resume()
        controller.process_frame(uniform_frame(20))
        assert len(fake_source.exposure_writes) == 1

    def test_pause_rechecked_under_lock(self, controller, fake_source):
        """A frame waiting on an in-flight command sees a pause set meanwhile."""
        with controller._command_lock:
            frame_thread = threading.Thread(
                target=controller.process_frame, args=(uniform_frame(20),)
            )
            frame_thread.start()
            frame_thread.join(0.05)
            controller.pause()
        frame_thread.join(2.0)

        assert fake_source.exposure_writes == []
        assert controller.current_iso == 400.0


class TestManualExposure:
    """Tests for set_manual()."""

    def test_in_range(self, controller, fake_source):
        result = controller.set_manual(0.02, 800.0)

        assert result.applied
        assert result.exposure_duration == 0.02
        assert result.iso == 800.0
        assert fake_source.exposure_writes == [(0.02, 800.0)]
        assert controller.state == ExposureState(800.0, 0.02)

    def test_clamped(self, controller, fake_source):
        """Out-of-range values are clamped, written as one actuation."""
        result = controller.set_manual(5.0, 10000.0)

        assert result.exposure_duration == 1.0
        assert result.iso == 3260.0
        assert fake_source.exposure_writes == [(1.0, 3260.0)]

        result = controller.set_manual(0.0, 1.0)
        assert result.exposure_duration == pytest.approx(0.000014)
        assert result.iso == 35.0

    def test_clamping_idempotent(self, controller):
        """Re-applying clamped values yields the same values."""
        first = controller.set_manual(7.5, -20.0)
        second = controller.set_manual(first.exposure_duration, first.iso)

        assert second.exposure_duration == first.exposure_duration
        assert second.iso == first.iso

    def test_step_keeps_manual_duration(self, controller, fake_source):
        """Auto steps reuse the duration in effect."""
        controller.set_manual(0.25, 400.0)
        controller.step(0.5)
        assert fake_source.exposure_writes[-1] == (0.25, pytest.approx(400.0))

    def test_lock_failed(self, controller, fake_source):
        fake_source.lock_busy = True

        result = controller.set_manual(0.02, 800.0)

        assert result.status is ActuationStatus.LOCK_FAILED
        assert result.iso is None
        assert controller.state == ExposureState(400.0, 0.01)
        assert fake_source.exposure_writes == []

    def test_pause_auto(self, controller, fake_source):
        result = controller.set_manual(0.02, 800.0, pause_auto=True)

        assert result.applied
        assert controller.is_paused
        controller.process_frame(uniform_frame(20))
        assert fake_source.exposure_writes == [(0.02, 800.0)]

    def test_failed_write_does_not_pause(self, controller, fake_source):
        fake_source.unavailable = True
        controller.set_manual(0.02, 800.0, pause_auto=True)
        assert not controller.is_paused

    def test_inflight_step_does_not_override_manual(self, device_range):
        """A manual write issued during an auto step lands after it and holds."""
        source = GatedSource(device_range)
        controller = ExposureController(source=source, initial_iso=400.0)
        results = []

        auto = threading.Thread(target=controller.process_frame, args=(uniform_frame(20),))
        auto.start()
        assert source.entered.wait(2.0)

        manual = threading.Thread(
            target=lambda: results.append(controller.set_manual(0.02, 1600.0, pause_auto=True))
        )
        manual.start()
        manual.join(0.1)
        assert manual.is_alive()

        source.release.set()
        auto.join(2.0)
        manual.join(2.0)

        assert results[0].applied
        assert len(source.exposure_writes) == 2
        assert source.exposure_writes[-1] == (0.02, 1600.0)
        assert controller.current_iso == 1600.0
        assert controller.is_paused

        controller.process_frame(uniform_frame(20))
        assert len(source.exposure_writes) == 2


class TestWhiteBalance:
    """Tests for set_white_balance()."""

    def test_in_range(self, controller, fake_source):
        result = controller.set_white_balance(5500, 0)

        assert result.applied
        assert result.gains == WhiteBalanceGains(1.5, 1.0, 2.0)
        assert fake_source.white_balance_writes == [result.gains]
        assert controller.white_balance == result.gains

    def test_channels_clamped_independently(self, controller, fake_source):
        """6.0 clamps to the device max 4.0; 0.5 clamps to 1.0."""
        fake_source.gains = WhiteBalanceGains(6.0, 0.5, 2.0)

        result = controller.set_white_balance(3000, 50)

        assert result.gains == WhiteBalanceGains(4.0, 1.0, 2.0)
        assert fake_source.white_balance_writes == [WhiteBalanceGains(4.0, 1.0, 2.0)]

    def test_unavailable(self, controller, fake_source):
        fake_source.unavailable = True

        result = controller.set_white_balance(5500, 0)

        assert result.status is ActuationStatus.DEVICE_UNAVAILABLE
        assert result.gains is None
        assert controller.white_balance is None
        assert fake_source.white_balance_writes == []

    def test_lock_failed(self, controller, fake_source):
        fake_source.lock_busy = True

        result = controller.set_white_balance(5500, 0)

        assert result.status is ActuationStatus.LOCK_FAILED
        assert fake_source.white_balance_writes == []

    @pytest.mark.parametrize(
        "temperature, tint",
        [(2000, 0), (3000, 0), (5500, 0), (8000, 0), (5500, 100), (5500, -100), (3000, 150)],
    )
    def test_device_gains_within_bounds(self, temperature, tint):
        """ColourGains written to the camera stay in [1.0, max] and match the result."""
        camera = SimulatedCamera(resolution=(64, 48), noise=0.0)
        service = CameraService(resolution=(64, 48), backend="simulated", camera=camera)
        controller = ExposureController(source=service)
        service.start()
        try:
            result = controller.set_white_balance(temperature, tint)
            red, blue = camera.capture_metadata()["ColourGains"]
        finally:
            service.cleanup()

        assert result.applied
        assert result.gains.green == 1.0
        assert 1.0 <= red <= 4.0
        assert 1.0 <= blue <= 4.0
        assert (red, blue) == (result.gains.red, result.gains.blue)


class TestSync:
    """Tests for ISO readback."""

    def test_sync_from_device(self, controller, fake_source):
        fake_source.iso = 800.0
        assert controller.sync_from_device() is True
        assert controller.current_iso == 800.0

    def test_sync_unavailable(self, controller, fake_source):
        fake_source.unavailable = True
        assert controller.sync_from_device() is False
        assert controller.current_iso == 400.0


class TestClosedLoop:
    """Closed loop against the simulated camera."""

    @pytest.mark.parametrize("initial_iso", [35.0, 400.0, 3260.0])
    def test_bounded_convergence(self, initial_iso):
        """Brightness approaches mid-gray and ISO never leaves the range."""
        camera = SimulatedCamera(resolution=(64, 48), noise=0.0)
        service = CameraService(resolution=(64, 48), backend="simulated", camera=camera)
        controller = ExposureController(source=service, initial_iso=initial_iso)
        service.start()
        try:
            device_range = service.device_range()
            camera.set_controls({"AnalogueGain": initial_iso / service.iso_per_gain})

            for _ in range(600):
                iso = controller.process_frame(camera.capture_array())
                assert device_range.min_iso <= iso <= device_range.max_iso

            brightness = estimate_luminance(camera.capture_array())
            assert brightness == pytest.approx(0.5, abs=0.05)
            assert camera.capture_metadata()["AnalogueGain"] == pytest.approx(
                controller.current_iso / service.iso_per_gain
            )
        finally:
            service.cleanup()
