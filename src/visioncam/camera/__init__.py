"""
Camera module for VisionCam.

Provides:
- CameraService: Frame source with capture thread and scoped exposure actuation
- SimulatedCamera: Synthetic exposure-responsive camera for development/testing
- DeviceRange / WhiteBalanceGains: Device capability and actuation types
"""

from .camera_service import CameraService, SimulatedCamera, get_camera_service
from .device import (
    ConfigurationLockError,
    DeviceRange,
    DeviceUnavailableError,
    FrameSource,
    VisionCamError,
    WhiteBalanceGains,
    temperature_tint_to_gains,
)

__all__ = [
    "CameraService",
    "SimulatedCamera",
    "get_camera_service",
    "ConfigurationLockError",
    "DeviceRange",
    "DeviceUnavailableError",
    "FrameSource",
    "VisionCamError",
    "WhiteBalanceGains",
    "temperature_tint_to_gains",
]
