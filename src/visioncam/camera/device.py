"""
Device capability and actuation types shared by frame sources and the
exposure controller.
"""

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

import numpy as np

# Planckian locus approximation is valid over this range (Kelvin)
MIN_TEMPERATURE = 1667.0
MAX_TEMPERATURE = 25000.0
TINT_SCALE = 1e-4  # chromaticity y shift per tint unit


class VisionCamError(RuntimeError):
    """Base class for device errors reported by the camera core."""


class DeviceUnavailableError(VisionCamError):
    """No actuation target is present (camera missing, closed or not started)."""


class ConfigurationLockError(VisionCamError):
    """Exclusive configuration access to the device could not be acquired."""


@dataclass(frozen=True)
class DeviceRange:
    """Snapshot of the device's exposure capabilities (durations in seconds)."""

    min_iso: float
    max_iso: float
    min_exposure_duration: float
    max_exposure_duration: float
    max_white_balance_gain: float

    def clamp_iso(self, iso: float) -> float:
        return min(max(iso, self.min_iso), self.max_iso)

    def clamp_exposure_duration(self, duration: float) -> float:
        return min(max(duration, self.min_exposure_duration), self.max_exposure_duration)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "min_iso": self.min_iso,
            "max_iso": self.max_iso,
            "min_exposure_duration": self.min_exposure_duration,
            "max_exposure_duration": self.max_exposure_duration,
            "max_white_balance_gain": self.max_white_balance_gain,
        }


@dataclass(frozen=True)
class WhiteBalanceGains:
    """Per-channel white balance multipliers."""

    red: float
    green: float
    blue: float

    def clamped(self, floor: float, ceiling: float) -> "WhiteBalanceGains":
        """Clamp each channel independently to [floor, ceiling]."""
        return WhiteBalanceGains(
            red=min(max(self.red, floor), ceiling),
            green=min(max(self.green, floor), ceiling),
            blue=min(max(self.blue, floor), ceiling),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"red": self.red, "green": self.green, "blue": self.blue}


FrameCallback = Callable[[np.ndarray, datetime], None]


class FrameSource(Protocol):
    """
    Capture device as seen by the camera core.

    Frames are pushed to registered callbacks; late frames may be dropped by
    the source. Capability ranges must be queried fresh for every command.
    """

    def on_frame(self, callback: FrameCallback) -> None:
        ...

    def device_range(self) -> DeviceRange:
        ...

    def configuration(self, timeout: float | None = None) -> AbstractContextManager:
        ...

    def actuate(self, exposure_duration: float, iso: float) -> None:
        ...

    def actuate_white_balance(self, gains: WhiteBalanceGains) -> None:
        ...

    def current_iso(self) -> float:
        ...

    def temperature_and_tint_to_gains(self, temperature: float, tint: float) -> WhiteBalanceGains:
        ...


def _planckian_xy(temperature: float) -> tuple[float, float]:
    """CIE 1931 chromaticity of a blackbody radiator (Kim et al. cubic fit)."""
    t = min(max(temperature, MIN_TEMPERATURE), MAX_TEMPERATURE)

    if t <= 4000.0:
        x = -0.2661239e9 / t**3 - 0.2343589e6 / t**2 + 0.8776956e3 / t + 0.179910
    else:
        x = -3.0258469e9 / t**3 + 2.1070379e6 / t**2 + 0.2226347e3 / t + 0.240390

    if t <= 2222.0:
        y = -1.1063814 * x**3 - 1.34811020 * x**2 + 2.18555832 * x - 0.20219683
    elif t <= 4000.0:
        y = -0.9549476 * x**3 - 1.37418593 * x**2 + 2.09137015 * x - 0.16748867
    else:
        y = 3.0817580 * x**3 - 5.87338670 * x**2 + 3.75112997 * x - 0.37001483

    return x, y


# XYZ -> linear sRGB (D65)
_XYZ_TO_RGB = np.array(
    [
        [3.2406, -1.5372, -0.4986],
        [-0.9689, 1.8758, 0.0415],
        [0.0557, -0.2040, 1.0570],
    ]
)


def temperature_tint_to_gains(temperature: float, tint: float) -> WhiteBalanceGains:
    """
    Map a (temperature, tint) pair to neutralizing RGB gains.

    The illuminant white point is taken from the Planckian locus at
    ``temperature`` and shifted along chromaticity y by ``tint`` (positive
    tint moves towards green). Gains are the reciprocal of the white point in
    linear RGB, normalized so the green gain is 1.0 (red and blue are
    relative to green, as ColourGains expects).

    Args:
        temperature: Correlated color temperature in Kelvin
        tint: Green/magenta offset (roughly -150 to 150)

    Returns:
        Unclamped WhiteBalanceGains
    """
    x, y = _planckian_xy(temperature)
    y = max(y + tint * TINT_SCALE, 1e-6)

    xyz = np.array([x / y, 1.0, (1.0 - x - y) / y])
    rgb = np.clip(_XYZ_TO_RGB @ xyz, 1e-6, None)

    gains = 1.0 / rgb
    gains = gains / gains[1]
    return WhiteBalanceGains(red=float(gains[0]), green=float(gains[1]), blue=float(gains[2]))
