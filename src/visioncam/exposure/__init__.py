"""
Exposure module for VisionCam.

Provides:
- BrightnessEstimator: Frame -> luma reduction
- ExposureController: Closed-loop ISO control plus manual exposure/white balance
"""

from .brightness import BrightnessEstimator, estimate_luminance
from .controller import (
    ActuationResult,
    ActuationStatus,
    ExposureController,
    ExposureState,
    compute_next_iso,
    create_exposure_controller,
)

__all__ = [
    "BrightnessEstimator",
    "estimate_luminance",
    "ActuationResult",
    "ActuationStatus",
    "ExposureController",
    "ExposureState",
    "compute_next_iso",
    "create_exposure_controller",
]
