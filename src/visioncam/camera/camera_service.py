"""
Camera Service - Frame delivery and exposure actuation

Owns the capture device and implements the FrameSource contract:
- Background capture thread pushing frames to registered callbacks
- Capability ranges queried fresh from the device on every call
- Scoped exclusive configuration access for exposure/white-balance writes

Backends:
- picamera2: Raspberry Pi camera stack (libcamera controls ExposureTime,
  AnalogueGain, ColourGains)
- simulated: synthetic scene whose brightness responds to exposure, used for
  development and tests without camera hardware
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

import numpy as np

from .device import (
    ConfigurationLockError,
    DeviceRange,
    DeviceUnavailableError,
    FrameCallback,
    WhiteBalanceGains,
    temperature_tint_to_gains,
)

logger = logging.getLogger(__name__)

MICROSECONDS = 1_000_000


class SimulatedRequest:
    """Completed capture request from SimulatedCamera."""

    def __init__(self, frame: np.ndarray, metadata: dict):
        self._frame = frame
        self._metadata = metadata

    def make_array(self, stream: str = "main") -> np.ndarray:
        return self._frame

    def get_metadata(self) -> dict:
        return dict(self._metadata)

    def release(self) -> None:
        pass


class SimulatedCamera:
    """
    Synthetic camera exposing the subset of the Picamera2 API used here.

    Pixel values follow ``reflectance * scene_light * exposure_time * gain``,
    so the brightness of delivered frames reacts to exposure commands the
    same way a real sensor does (before saturation).
    """

    def __init__(
        self,
        resolution: tuple[int, int] = (640, 480),
        scene_light: float = 25.0,
        noise: float = 0.01,
        seed: int | None = None,
    ):
        self.resolution = resolution
        self.scene_light = scene_light
        self.noise = noise
        self._rng = np.random.default_rng(seed)
        self._running = False
        self._config = None

        width, height = resolution
        gx = np.linspace(0.2, 0.8, width)
        gy = np.linspace(0.8, 0.2, height)
        self._reflectance = np.clip(np.outer(gy, gx) * 1.6, 0.05, 0.95)

        self._controls = {
            "AeEnable": True,
            "AwbEnable": True,
            "ExposureTime": 10_000,
            "AnalogueGain": 1.0,
            "ColourGains": (1.0, 1.0),
        }
        self.camera_controls = {
            "ExposureTime": (14, 1_000_000, 10_000),
            "AnalogueGain": (0.35, 32.6, 1.0),
            "ColourGains": (0.0, 4.0, None),
        }
        logger.info(f"[SIM] Camera initialized: {resolution}")

    def create_video_configuration(self, **kwargs):
        self._config = kwargs
        return kwargs

    def configure(self, config):
        self._config = config

    def start(self):
        self._running = True
        logger.info("[SIM] Camera started")

    def stop(self):
        self._running = False
        logger.info("[SIM] Camera stopped")

    def close(self):
        self._running = False
        logger.info("[SIM] Camera closed")

    def set_controls(self, controls: dict) -> None:
        self._controls.update(controls)

    def capture_metadata(self) -> dict:
        return {
            "ExposureTime": int(self._controls["ExposureTime"]),
            "AnalogueGain": float(self._controls["AnalogueGain"]),
            "ColourGains": tuple(self._controls["ColourGains"]),
        }

    def capture_array(self, stream: str = "main") -> np.ndarray:
        exposure = self._controls["ExposureTime"] / MICROSECONDS * self._controls["AnalogueGain"]
        level = self._reflectance * self.scene_light * exposure
        if self.noise > 0:
            level = level + self._rng.normal(0.0, self.noise, level.shape)
        gray = np.clip(level, 0.0, 1.0)
        return (np.repeat(gray[:, :, np.newaxis], 3, axis=2) * 255).astype(np.uint8)

    def capture_request(self) -> SimulatedRequest:
        return SimulatedRequest(self.capture_array(), self.capture_metadata())

    @property
    def started(self) -> bool:
        return self._running


class CameraService:
    """
    Frame source backed by picamera2 or a simulated camera.

    Frames are delivered from a single capture thread. Callbacks run
    synchronously on that thread; while they run the device keeps producing
    and stale frames are dropped, so slow consumers see skipped frames rather
    than a growing queue.

    ``actuate`` and ``actuate_white_balance`` must be called inside
    ``configuration()``, which holds the exclusive configuration lock.
    """

    def __init__(
        self,
        resolution: tuple[int, int] = (640, 480),
        framerate: int = 30,
        backend: str = "picamera2",
        iso_per_gain: float = 100.0,
        lock_timeout_seconds: float = 0.05,
        camera=None,
    ):
        self.resolution = resolution
        self.framerate = framerate
        self.backend = backend
        self.iso_per_gain = iso_per_gain
        self.lock_timeout_seconds = lock_timeout_seconds

        # State
        self._started = False
        self._closed = False
        self._capture_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._frame_lock = threading.Lock()
        self._config_lock = threading.Lock()
        self._latest_metadata: dict = {}
        self._frame_count = 0
        self._callback_errors = 0

        self._frame_callbacks: list[FrameCallback] = []

        self._camera = camera if camera is not None else self._create_camera()
        self._configure_camera()

        logger.info(
            f"CameraService initialized: backend={backend}, "
            f"resolution={resolution}, fps={framerate}"
        )

    @property
    def channel_order(self) -> str:
        """Memory layout of delivered frames (picamera2 RGB888 is BGR in memory)."""
        return "BGR" if self.backend == "picamera2" else "RGB"

    def _create_camera(self):
        if self.backend == "simulated":
            return SimulatedCamera(resolution=self.resolution)
        if self.backend == "picamera2":
            try:
                from picamera2 import Picamera2
            except ImportError as e:
                raise DeviceUnavailableError(
                    "picamera2 is not installed; use the 'simulated' backend"
                ) from e
            return Picamera2()
        raise ValueError(f"Unknown camera backend: {self.backend}")

    def _configure_camera(self) -> None:
        """Configure a single RGB stream with platform auto-exposure disabled."""
        config = self._camera.create_video_configuration(
            main={"size": self.resolution, "format": "RGB888"},
            controls={
                "FrameRate": self.framerate,
                "AeEnable": False,
            },
        )
        self._camera.configure(config)
        logger.info("Camera configured: main=RGB888, AeEnable=False")

    def start(self) -> None:
        """Start the camera and capture thread."""
        if self._started:
            logger.warning("Camera already started")
            return
        if self._closed:
            raise DeviceUnavailableError("Camera has been closed")

        self._camera.start()
        self._started = True
        self._stop_event.clear()

        self._capture_thread = threading.Thread(
            target=self._capture_loop,
            name="CameraCaptureThread",
            daemon=True,
        )
        self._capture_thread.start()
        logger.info("Camera started with capture thread")

    def stop(self) -> None:
        """Stop the capture thread and the camera."""
        if not self._started:
            return

        self._stop_event.set()

        if self._capture_thread:
            self._capture_thread.join(timeout=2.0)
            self._capture_thread = None

        try:
            self._camera.stop()
        except Exception as e:
            logger.error(f"Error stopping camera: {e}")

        self._started = False
        logger.info("Camera stopped")

    def _capture_loop(self) -> None:
        """Background thread delivering frames to callbacks."""
        logger.info("Capture loop started")
        target_interval = 1.0 / self.framerate

        while not self._stop_event.is_set():
            loop_start = time.perf_counter()

            try:
                timestamp = datetime.now()
                request = self._camera.capture_request()
                try:
                    frame = request.make_array("main")
                    metadata = request.get_metadata()
                finally:
                    request.release()

                with self._frame_lock:
                    self._latest_metadata = metadata
                    self._frame_count += 1

                self._dispatch_frame(frame, timestamp)

            except Exception as e:
                logger.error(f"Capture error: {e}")

            # Maintain framerate
            elapsed = time.perf_counter() - loop_start
            sleep_time = target_interval - elapsed
            if sleep_time > 0:
                time.sleep(sleep_time)

        logger.info("Capture loop stopped")

    def _dispatch_frame(self, frame: np.ndarray, timestamp: datetime) -> None:
        for callback in self._frame_callbacks:
            try:
                callback(frame, timestamp)
            except Exception as e:
                self._callback_errors += 1
                logger.error(f"Frame callback error: {e}")

    def on_frame(self, callback: FrameCallback) -> None:
        """Register callback for new frames."""
        self._frame_callbacks.append(callback)
        logger.debug(f"Frame callback registered, total: {len(self._frame_callbacks)}")

    def _require_device(self) -> None:
        if self._closed or not self._started:
            raise DeviceUnavailableError("Camera is not running")

    def device_range(self) -> DeviceRange:
        """Query exposure capabilities from the device (never cached)."""
        self._require_device()
        controls = self._camera.camera_controls
        try:
            exp_min, exp_max, _ = controls["ExposureTime"]
            gain_min, gain_max, _ = controls["AnalogueGain"]
        except KeyError as e:
            raise DeviceUnavailableError(f"Device does not expose control {e}") from e
        colour = controls.get("ColourGains")
        max_wb_gain = float(colour[1]) if colour else 1.0

        return DeviceRange(
            min_iso=float(gain_min) * self.iso_per_gain,
            max_iso=float(gain_max) * self.iso_per_gain,
            min_exposure_duration=float(exp_min) / MICROSECONDS,
            max_exposure_duration=float(exp_max) / MICROSECONDS,
            max_white_balance_gain=max_wb_gain,
        )

    @contextmanager
    def configuration(self, timeout: float | None = None) -> Iterator["CameraService"]:
        """
        Hold exclusive configuration access for the duration of the block.

        Raises:
            DeviceUnavailableError: Camera not running
            ConfigurationLockError: Lock not acquired within timeout
        """
        self._require_device()
        timeout = self.lock_timeout_seconds if timeout is None else timeout
        if not self._config_lock.acquire(timeout=timeout):
            raise ConfigurationLockError(
                f"Configuration lock not acquired within {timeout * 1000:.0f}ms"
            )
        try:
            yield self
        finally:
            self._config_lock.release()

    def actuate(self, exposure_duration: float, iso: float) -> None:
        """Write exposure duration and ISO together in one control update."""
        self._require_device()
        self._camera.set_controls(
            {
                "AeEnable": False,
                "ExposureTime": int(round(exposure_duration * MICROSECONDS)),
                "AnalogueGain": iso / self.iso_per_gain,
            }
        )

    def actuate_white_balance(self, gains: WhiteBalanceGains) -> None:
        """Write white balance gains; green is the unity reference, red and blue go as-is."""
        self._require_device()
        self._camera.set_controls(
            {
                "AwbEnable": False,
                "ColourGains": (gains.red, gains.blue),
            }
        )

    def current_iso(self) -> float:
        """Read back the ISO of the most recent frame."""
        self._require_device()
        with self._frame_lock:
            metadata = self._latest_metadata
        if "AnalogueGain" not in metadata:
            metadata = self._camera.capture_metadata()
        return float(metadata["AnalogueGain"]) * self.iso_per_gain

    def temperature_and_tint_to_gains(self, temperature: float, tint: float) -> WhiteBalanceGains:
        """Map temperature (K) and tint to device white balance gains."""
        return temperature_tint_to_gains(temperature, tint)

    def get_status(self) -> dict:
        """Get camera service status."""
        return {
            "started": self._started,
            "backend": self.backend,
            "frame_count": self._frame_count,
            "callback_errors": self._callback_errors,
            "resolution": self.resolution,
            "framerate": self.framerate,
        }

    def cleanup(self) -> None:
        """Clean up camera resources."""
        self.stop()
        if not self._closed:
            self._camera.close()
            self._closed = True
        logger.info("Camera resources cleaned up")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()


# Factory function
def _create_default_camera() -> CameraService:
    """Create camera service from config."""
    from visioncam.config import camera_config

    return CameraService(
        resolution=camera_config.resolution,
        framerate=camera_config.framerate,
        backend=camera_config.backend,
        iso_per_gain=camera_config.iso_per_gain,
        lock_timeout_seconds=camera_config.lock_timeout_seconds,
    )


# Global instance (lazy)
_camera_instance: CameraService | None = None


def get_camera_service() -> CameraService:
    """Get or create the global camera service."""
    global _camera_instance
    if _camera_instance is None:
        _camera_instance = _create_default_camera()
    return _camera_instance
