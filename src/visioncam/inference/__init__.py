"""
Inference module for VisionCam.

Provides:
- BoundingBox / DetectedBox: Detection data structures
- DetectionAggregator: Time-windowed retention of detections for display
- AsyncDetector: Thread-pool detector runner feeding the aggregator
"""

from .aggregator import DetectionAggregator, get_aggregator
from .detection import BoundingBox, DetectedBox
from .detector import AsyncDetector, DetectorModel, SimulatedModel, YoloModel, create_model_loader

__all__ = [
    "BoundingBox",
    "DetectedBox",
    "DetectionAggregator",
    "get_aggregator",
    "AsyncDetector",
    "DetectorModel",
    "SimulatedModel",
    "YoloModel",
    "create_model_loader",
]
