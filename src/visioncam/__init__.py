"""
VisionCam - Real-time Camera Exposure Control & Object Detection Smoothing

Pipelines: closed-loop ISO controller replacing platform auto-exposure,
and a time-windowed aggregator turning noisy detections into stable boxes.
"""

__version__ = "1.0.0"
__author__ = "VisionCam Team"
