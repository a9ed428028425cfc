"""
Frame brightness estimation.

Reduces a frame to a single luma value in [0, 1]: the per-channel area
average over the full frame, weighted with the Rec. 601 coefficients.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = (0.299, 0.587, 0.114)  # R, G, B

# Index of (R, G, B) within each supported layout
_CHANNEL_INDEX = {
    "RGB": (0, 1, 2),
    "RGBA": (0, 1, 2),
    "BGR": (2, 1, 0),
    "BGRA": (2, 1, 0),
}


def _channel_scale(dtype: np.dtype) -> float:
    if np.issubdtype(dtype, np.integer):
        return float(np.iinfo(dtype).max)
    return 1.0


def estimate_luminance(frame: np.ndarray | None, channel_order: str = "RGB") -> float:
    """
    Estimate the luminance of a frame.

    Args:
        frame: Image array (H, W, C) with C >= 3
        channel_order: Memory layout, one of RGB, BGR, RGBA, BGRA

    Returns:
        Luma in [0, 1]; 0.0 for empty or malformed frames
    """
    try:
        r_idx, g_idx, b_idx = _CHANNEL_INDEX[channel_order.upper()]
    except KeyError:
        raise ValueError(f"Unsupported channel order: {channel_order}") from None

    if frame is None or frame.ndim != 3 or frame.size == 0 or frame.shape[2] < 3:
        return 0.0

    # Area average per channel, accumulated in float64
    means = frame.reshape(-1, frame.shape[2]).mean(axis=0, dtype=np.float64)
    means = means / _channel_scale(frame.dtype)

    luma = (
        LUMA_WEIGHTS[0] * means[r_idx]
        + LUMA_WEIGHTS[1] * means[g_idx]
        + LUMA_WEIGHTS[2] * means[b_idx]
    )
    if not np.isfinite(luma):
        return 0.0
    return float(min(max(luma, 0.0), 1.0))


class BrightnessEstimator:
    """Callable luminance estimator bound to a frame channel layout."""

    def __init__(self, channel_order: str = "RGB"):
        if channel_order.upper() not in _CHANNEL_INDEX:
            raise ValueError(f"Unsupported channel order: {channel_order}")
        self.channel_order = channel_order.upper()

    def estimate(self, frame: np.ndarray | None) -> float:
        return estimate_luminance(frame, self.channel_order)

    __call__ = estimate
