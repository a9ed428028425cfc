"""
Pytest configuration and shared fixtures for VisionCam tests.
"""

import sys
from contextlib import contextmanager
from pathlib import Path

import pytest
import numpy as np

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from visioncam.camera.device import (
    ConfigurationLockError,
    DeviceRange,
    DeviceUnavailableError,
    WhiteBalanceGains,
)
from visioncam.exposure.controller import ExposureController
from visioncam.inference.aggregator import DetectionAggregator
from visioncam.inference.detection import BoundingBox


class FakeSource:
    """
    In-memory FrameSource recording every device write.

    Set ``unavailable`` or ``lock_busy`` to make configuration fail, and
    ``gains`` to control what temperature/tint maps to.
    """

    def __init__(self, device_range: DeviceRange, iso: float = 400.0):
        self.range = device_range
        self.iso = iso
        self.exposure_writes: list[tuple[float, float]] = []
        self.white_balance_writes: list[WhiteBalanceGains] = []
        self.range_queries = 0
        self.unavailable = False
        self.lock_busy = False
        self.gains = WhiteBalanceGains(1.5, 1.0, 2.0)
        self.callbacks = []

    def on_frame(self, callback):
        self.callbacks.append(callback)

    def device_range(self) -> DeviceRange:
        if self.unavailable:
            raise DeviceUnavailableError("fake device gone")
        self.range_queries += 1
        return self.range

    @contextmanager
    def configuration(self, timeout=None):
        if self.unavailable:
            raise DeviceUnavailableError("fake device gone")
        if self.lock_busy:
            raise ConfigurationLockError("fake lock busy")
        yield self

    def actuate(self, exposure_duration, iso):
        self.exposure_writes.append((exposure_duration, iso))
        self.iso = iso

    def actuate_white_balance(self, gains):
        self.white_balance_writes.append(gains)

    def current_iso(self) -> float:
        if self.unavailable:
            raise DeviceUnavailableError("fake device gone")
        return self.iso

    def temperature_and_tint_to_gains(self, temperature, tint):
        return self.gains


@pytest.fixture
def device_range():
    """Typical phone sensor ranges (ISO 35-3260, 14us-1s)."""
    return DeviceRange(
        min_iso=35.0,
        max_iso=3260.0,
        min_exposure_duration=0.000014,
        max_exposure_duration=1.0,
        max_white_balance_gain=4.0,
    )


@pytest.fixture
def fake_source(device_range):
    """A FrameSource double with the typical ranges."""
    return FakeSource(device_range)


@pytest.fixture
def controller(fake_source):
    """ExposureController with default tuning over the fake source."""
    return ExposureController(source=fake_source, initial_iso=400.0)


@pytest.fixture
def aggregator():
    """Aggregator with 3s retention and capacity 10."""
    return DetectionAggregator(retention_seconds=3.0, capacity=10)


@pytest.fixture
def sample_bbox():
    """A sample bounding box for testing."""
    return BoundingBox(x=0.3, y=0.3, width=0.25, height=0.25)


def uniform_frame(value: int, shape=(48, 64)) -> np.ndarray:
    """A gray uint8 RGB frame with every pixel at `value`."""
    return np.full((*shape, 3), value, dtype=np.uint8)


@pytest.fixture
def gray_frame():
    """A mid-gray 64x48 RGB frame."""
    return uniform_frame(128)
