"""
Exposure Controller - Closed-loop ISO control replacing platform auto-exposure

Each sampled frame is reduced to a luminance value and compared with a
mid-gray setpoint. The ISO correction is exponential in the error with a
gain that grows with the squared error:

    error          = target - measured
    effective_gain = max(min_effective_gain, base_gain * |error| ** gain_exponent)
    iso_adjustment = 2 ** (error * effective_gain)
    raw_new_iso    = clamp(current_iso * iso_adjustment, min_iso, max_iso)
    new_iso        = current_iso * (1 - alpha) + raw_new_iso * alpha

Large errors produce very large raw swings; the exponential smoothing with
alpha = 0.05 is the only damping in the loop.

Manual exposure and white balance writes share the same all-or-nothing
actuation path: device errors are reported as a status, state is only
updated after a successful write.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

import numpy as np

from visioncam.camera.device import (
    ConfigurationLockError,
    DeviceRange,
    DeviceUnavailableError,
    FrameSource,
    WhiteBalanceGains,
)

from .brightness import BrightnessEstimator

logger = logging.getLogger(__name__)

# White balance gains below unity are never valid, whatever the device reports
MIN_WHITE_BALANCE_GAIN = 1.0


class ActuationStatus(Enum):
    """Outcome of a device write."""

    APPLIED = "applied"
    DEVICE_UNAVAILABLE = "device_unavailable"
    LOCK_FAILED = "lock_failed"


@dataclass(frozen=True)
class ExposureState:
    """Exposure parameters currently in effect."""

    current_iso: float
    current_exposure_duration: float  # seconds

    def to_dict(self) -> dict:
        return {
            "current_iso": self.current_iso,
            "current_exposure_duration": self.current_exposure_duration,
        }


@dataclass(frozen=True)
class ActuationResult:
    """Result of a manual exposure or white balance command."""

    status: ActuationStatus
    exposure_duration: float | None = None
    iso: float | None = None
    gains: WhiteBalanceGains | None = None
    message: str = ""

    @property
    def applied(self) -> bool:
        return self.status is ActuationStatus.APPLIED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "exposure_duration": self.exposure_duration,
            "iso": self.iso,
            "gains": self.gains.to_dict() if self.gains else None,
            "message": self.message,
        }


def compute_next_iso(
    measured_brightness: float,
    device_range: DeviceRange,
    current_iso: float,
    target: float = 0.5,
    base_gain: float = 100.0,
    gain_exponent: float = 2.0,
    min_effective_gain: float = 1.0,
    alpha: float = 0.05,
) -> float:
    """
    One iteration of the ISO control law.

    Args:
        measured_brightness: Frame luminance in [0, 1]
        device_range: Capability snapshot supplying the ISO bounds
        current_iso: ISO currently applied

    Returns:
        Smoothed ISO, within [min_iso, max_iso] when current_iso is
    """
    error = target - measured_brightness
    effective_gain = max(min_effective_gain, base_gain * abs(error) ** gain_exponent)

    # 2 ** x overflows for x > ~1024; the clamp result is the same either way
    try:
        iso_adjustment = math.pow(2.0, error * effective_gain)
    except OverflowError:
        iso_adjustment = math.inf

    raw_new_iso = current_iso * iso_adjustment
    if math.isnan(raw_new_iso):
        raw_new_iso = current_iso
    raw_new_iso = device_range.clamp_iso(raw_new_iso)

    return current_iso * (1.0 - alpha) + raw_new_iso * alpha


class ExposureController:
    """
    Stateful ISO feedback loop with manual exposure and white balance.

    Thread model: ``step``/``process_frame`` run on the frame delivery
    thread; manual commands may come from any thread. Exposure commands
    (auto steps and manual writes) are serialized on a command lock, and the
    pause flag is checked under it, so a step never lands after a manual
    write that paused the loop. Device access goes through the source's
    ``configuration()`` scope.
    """

    def __init__(
        self,
        source: FrameSource | None,
        target_brightness: float = 0.5,
        base_gain: float = 100.0,
        gain_exponent: float = 2.0,
        min_effective_gain: float = 1.0,
        smoothing_alpha: float = 0.05,
        initial_iso: float = 400.0,
        initial_exposure_duration: float = 0.01,
        channel_order: str = "RGB",
        lock_timeout: float | None = None,
    ):
        """
        Initialize the exposure controller.

        Args:
            source: Frame source to actuate (None means no device)
            target_brightness: Luminance setpoint
            base_gain: Multiplier of the squared-error gain term
            gain_exponent: Exponent of the error-scaled gain
            min_effective_gain: Lower bound of the error-scaled gain
            smoothing_alpha: Weight of the new ISO in exponential smoothing
            initial_iso: ISO assumed until a step or readback
            initial_exposure_duration: Exposure duration used by the auto loop (s)
            channel_order: Layout of frames passed to process_frame
            lock_timeout: Configuration lock timeout (None uses source default)
        """
        self.source = source
        self.target_brightness = target_brightness
        self.base_gain = base_gain
        self.gain_exponent = gain_exponent
        self.min_effective_gain = min_effective_gain
        self.smoothing_alpha = smoothing_alpha
        self.lock_timeout = lock_timeout
        self.estimator = BrightnessEstimator(channel_order)

        self._lock = threading.Lock()
        self._command_lock = threading.Lock()
        self._state = ExposureState(
            current_iso=initial_iso,
            current_exposure_duration=initial_exposure_duration,
        )
        self._white_balance: WhiteBalanceGains | None = None
        self._paused = False
        self._last_status: ActuationStatus | None = None
        self._last_brightness: float | None = None
        self._step_count = 0
        self._failure_count = 0

        self._on_update_callbacks: list[Callable[[ExposureState], None]] = []

        logger.info(
            f"ExposureController initialized: target={target_brightness}, "
            f"base_gain={base_gain}, exponent={gain_exponent}, "
            f"alpha={smoothing_alpha}, iso={initial_iso}, "
            f"duration={initial_exposure_duration}s"
        )

    @property
    def state(self) -> ExposureState:
        """Snapshot of the exposure parameters in effect."""
        return self._state

    @property
    def current_iso(self) -> float:
        return self._state.current_iso

    @property
    def current_exposure_duration(self) -> float:
        return self._state.current_exposure_duration

    @property
    def white_balance(self) -> WhiteBalanceGains | None:
        """Last white balance gains applied, None if never set."""
        return self._white_balance

    @property
    def last_status(self) -> ActuationStatus | None:
        return self._last_status

    @property
    def last_brightness(self) -> float | None:
        return self._last_brightness

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Hold the automatic loop (manual exposure in effect)."""
        if not self._paused:
            self._paused = True
            logger.info("Auto exposure paused")

    def resume(self) -> None:
        """Resume the automatic loop."""
        if self._paused:
            self._paused = False
            logger.info("Auto exposure resumed")

    def next_iso(
        self, measured_brightness: float, device_range: DeviceRange, current_iso: float
    ) -> float:
        """Compute the next ISO with this controller's tuning (no side effects)."""
        return compute_next_iso(
            measured_brightness,
            device_range,
            current_iso,
            target=self.target_brightness,
            base_gain=self.base_gain,
            gain_exponent=self.gain_exponent,
            min_effective_gain=self.min_effective_gain,
            alpha=self.smoothing_alpha,
        )

    def _query_range(self, device_range: DeviceRange | None) -> DeviceRange:
        if self.source is None:
            raise DeviceUnavailableError("No frame source attached")
        if device_range is not None:
            return device_range
        return self.source.device_range()

    def _write_exposure(self, exposure_duration: float, iso: float) -> None:
        with self.source.configuration(self.lock_timeout) as device:
            device.actuate(exposure_duration, iso)

    def _record(self, status: ActuationStatus, operation: str, error: Exception | None) -> None:
        self._last_status = status
        if error is not None:
            self._failure_count += 1
            logger.warning(f"{operation} skipped ({status.value}): {error}")

    def _step_locked(
        self,
        measured_brightness: float,
        device_range: DeviceRange | None,
        current_iso: float | None,
    ) -> tuple[float, ExposureState | None]:
        """Step body; caller holds the command lock. Returns (iso, new state or None)."""
        self._last_brightness = measured_brightness

        try:
            device_range = self._query_range(device_range)
            base_iso = self._state.current_iso if current_iso is None else current_iso
            new_iso = self.next_iso(measured_brightness, device_range, base_iso)
            duration = device_range.clamp_exposure_duration(
                self._state.current_exposure_duration
            )
            self._write_exposure(duration, new_iso)
        except DeviceUnavailableError as e:
            self._record(ActuationStatus.DEVICE_UNAVAILABLE, "Exposure step", e)
            return self._state.current_iso, None
        except ConfigurationLockError as e:
            self._record(ActuationStatus.LOCK_FAILED, "Exposure step", e)
            return self._state.current_iso, None

        self._record(ActuationStatus.APPLIED, "Exposure step", None)
        self._step_count += 1

        logger.debug(
            f"Exposure step: brightness={measured_brightness:.3f}, "
            f"iso {base_iso:.1f} -> {new_iso:.1f}"
        )
        state = ExposureState(current_iso=new_iso, current_exposure_duration=duration)
        self._set_state(state)
        return new_iso, state

    def step(
        self,
        measured_brightness: float,
        device_range: DeviceRange | None = None,
        current_iso: float | None = None,
    ) -> float:
        """
        Run one control-loop iteration and apply the result.

        Args:
            measured_brightness: Frame luminance in [0, 1]
            device_range: Capability snapshot (queried fresh if None)
            current_iso: ISO to correct from (controller state if None)

        Returns:
            ISO in effect after the step (unchanged if the write failed)
        """
        with self._command_lock:
            iso, state = self._step_locked(measured_brightness, device_range, current_iso)
        if state is not None:
            self._notify(state)
        return iso

    def process_frame(self, frame: np.ndarray, timestamp: datetime | None = None) -> float:
        """
        Estimate frame brightness and run one step.

        Returns:
            ISO in effect after processing (unchanged while paused)
        """
        if self._paused:
            return self._state.current_iso
        brightness = self.estimator.estimate(frame)

        with self._command_lock:
            # A manual write may have paused the loop while we measured
            if self._paused:
                return self._state.current_iso
            iso, state = self._step_locked(brightness, None, None)
        if state is not None:
            self._notify(state)
        return iso

    def set_manual(
        self,
        exposure_duration: float,
        iso: float,
        device_range: DeviceRange | None = None,
        pause_auto: bool = False,
    ) -> ActuationResult:
        """
        Clamp and apply an exposure duration and ISO as one command.

        Args:
            exposure_duration: Requested duration (seconds)
            iso: Requested ISO
            device_range: Capability snapshot (queried fresh if None)
            pause_auto: Pause the automatic loop once the write succeeds

        Returns:
            ActuationResult with the clamped values when applied
        """
        with self._command_lock:
            try:
                device_range = self._query_range(device_range)
                duration = device_range.clamp_exposure_duration(exposure_duration)
                clamped_iso = device_range.clamp_iso(iso)
                self._write_exposure(duration, clamped_iso)
            except DeviceUnavailableError as e:
                self._record(ActuationStatus.DEVICE_UNAVAILABLE, "Manual exposure", e)
                return ActuationResult(status=ActuationStatus.DEVICE_UNAVAILABLE, message=str(e))
            except ConfigurationLockError as e:
                self._record(ActuationStatus.LOCK_FAILED, "Manual exposure", e)
                return ActuationResult(status=ActuationStatus.LOCK_FAILED, message=str(e))

            self._record(ActuationStatus.APPLIED, "Manual exposure", None)
            state = ExposureState(current_iso=clamped_iso, current_exposure_duration=duration)
            self._set_state(state)
            if pause_auto:
                self.pause()

        logger.info(f"Manual exposure applied: duration={duration:.6f}s, iso={clamped_iso:.1f}")
        self._notify(state)
        return ActuationResult(
            status=ActuationStatus.APPLIED,
            exposure_duration=duration,
            iso=clamped_iso,
        )

    def set_white_balance(
        self,
        temperature: float,
        tint: float,
        device_range: DeviceRange | None = None,
    ) -> ActuationResult:
        """
        Map temperature/tint to device gains, clamp and apply them.

        Each channel is clamped independently to
        [1.0, device_range.max_white_balance_gain].
        """
        try:
            device_range = self._query_range(device_range)
            raw_gains = self.source.temperature_and_tint_to_gains(temperature, tint)
            gains = raw_gains.clamped(
                MIN_WHITE_BALANCE_GAIN,
                max(MIN_WHITE_BALANCE_GAIN, device_range.max_white_balance_gain),
            )
            with self.source.configuration(self.lock_timeout) as device:
                device.actuate_white_balance(gains)
        except DeviceUnavailableError as e:
            self._record(ActuationStatus.DEVICE_UNAVAILABLE, "White balance", e)
            return ActuationResult(status=ActuationStatus.DEVICE_UNAVAILABLE, message=str(e))
        except ConfigurationLockError as e:
            self._record(ActuationStatus.LOCK_FAILED, "White balance", e)
            return ActuationResult(status=ActuationStatus.LOCK_FAILED, message=str(e))

        self._record(ActuationStatus.APPLIED, "White balance", None)
        self._white_balance = gains
        logger.info(
            f"White balance applied: {temperature:.0f}K tint={tint:.0f} -> "
            f"r={gains.red:.2f} g={gains.green:.2f} b={gains.blue:.2f}"
        )
        return ActuationResult(status=ActuationStatus.APPLIED, gains=gains)

    def sync_from_device(self) -> bool:
        """Read the device's current ISO into the controller state."""
        if self.source is None:
            return False
        try:
            iso = self.source.current_iso()
        except DeviceUnavailableError as e:
            logger.warning(f"ISO readback failed: {e}")
            return False
        self._update_state(
            ExposureState(
                current_iso=iso,
                current_exposure_duration=self._state.current_exposure_duration,
            )
        )
        return True

    def _update_state(self, state: ExposureState) -> None:
        self._set_state(state)
        self._notify(state)

    def _set_state(self, state: ExposureState) -> None:
        with self._lock:
            self._state = state

    def _notify(self, state: ExposureState) -> None:
        # Invoke callbacks OUTSIDE the locks
        for callback in self._on_update_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Exposure update callback error: {e}", exc_info=True)

    def on_update(self, callback: Callable[[ExposureState], None]) -> None:
        """Register callback for exposure state changes."""
        self._on_update_callbacks.append(callback)

    def get_status(self) -> dict:
        """Get controller status."""
        return {
            **self._state.to_dict(),
            "paused": self._paused,
            "last_status": self._last_status.value if self._last_status else None,
            "last_brightness": self._last_brightness,
            "target_brightness": self.target_brightness,
            "white_balance": self._white_balance.to_dict() if self._white_balance else None,
            "step_count": self._step_count,
            "failure_count": self._failure_count,
        }


# Factory function
def create_exposure_controller(source: FrameSource | None, channel_order: str = "RGB") -> ExposureController:
    """Create an exposure controller from config."""
    from visioncam.config import camera_config, exposure_config

    return ExposureController(
        source=source,
        target_brightness=exposure_config.target_brightness,
        base_gain=exposure_config.base_gain,
        gain_exponent=exposure_config.gain_exponent,
        min_effective_gain=exposure_config.min_effective_gain,
        smoothing_alpha=exposure_config.smoothing_alpha,
        initial_iso=exposure_config.initial_iso,
        initial_exposure_duration=exposure_config.initial_exposure_duration,
        channel_order=channel_order,
        lock_timeout=camera_config.lock_timeout_seconds,
    )
