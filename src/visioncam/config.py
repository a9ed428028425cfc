"""
Configuration management for VisionCam using Pydantic settings.

Loads configuration from:
1. .env file (if present)
2. config/config.json (defaults)
3. Environment variables (override with VISIONCAM_ prefix)
"""

import json
import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
RUNTIME_DIR = PROJECT_ROOT / "runtime"

# Load .env file from project root (if exists)
_env_file = PROJECT_ROOT / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
    logger.debug(f"Loaded environment from {_env_file}")


def load_json_config() -> dict[str, Any]:
    """Load configuration from config.json file."""
    config_file = CONFIG_DIR / "config.json"
    if config_file.exists():
        with open(config_file) as f:
            return json.load(f)
    return {}


_json_config = load_json_config()


class CameraConfig(BaseSettings):
    """Capture device configuration."""

    model_config = {"env_prefix": "VISIONCAM_CAMERA_"}

    backend: str = Field(
        default=_json_config.get("camera", {}).get("backend", "picamera2"),
        description="Frame source backend: 'picamera2' or 'simulated'",
    )
    resolution: tuple[int, int] = Field(
        default=tuple(_json_config.get("camera", {}).get("resolution", [640, 480])),
        description="Capture resolution (width, height)",
    )
    framerate: int = Field(
        default=_json_config.get("camera", {}).get("framerate", 30),
        description="Frame delivery rate",
    )
    iso_per_gain: float = Field(
        default=_json_config.get("camera", {}).get("iso_per_gain", 100.0),
        description="ISO equivalent of an analogue gain of 1.0",
    )
    lock_timeout_seconds: float = Field(
        default=_json_config.get("camera", {}).get("lock_timeout_seconds", 0.05),
        description="Max wait for exclusive configuration access",
    )

    @field_validator("resolution", mode="before")
    @classmethod
    def parse_resolution(cls, v):
        if isinstance(v, list):
            return tuple(v)
        return v

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v):
        if v not in ("picamera2", "simulated"):
            raise ValueError(f"backend must be 'picamera2' or 'simulated', got {v}")
        return v

    @field_validator("framerate")
    @classmethod
    def validate_framerate(cls, v):
        if v < 1 or v > 120:
            raise ValueError(f"framerate must be between 1 and 120, got {v}")
        return v


class ExposureConfig(BaseSettings):
    """Closed-loop ISO controller configuration."""

    model_config = {"env_prefix": "VISIONCAM_EXPOSURE_"}

    enabled: bool = Field(
        default=_json_config.get("exposure", {}).get("enabled", True),
        description="Run the automatic exposure loop",
    )
    target_brightness: float = Field(
        default=_json_config.get("exposure", {}).get("target_brightness", 0.5),
        description="Luminance setpoint (mid-gray)",
    )
    base_gain: float = Field(
        default=_json_config.get("exposure", {}).get("base_gain", 100.0),
        description="Gain multiplier applied to |error| ** gain_exponent",
    )
    gain_exponent: float = Field(
        default=_json_config.get("exposure", {}).get("gain_exponent", 2.0),
        description="Exponent shaping the error-scaled gain",
    )
    min_effective_gain: float = Field(
        default=_json_config.get("exposure", {}).get("min_effective_gain", 1.0),
        description="Lower bound of the error-scaled gain",
    )
    smoothing_alpha: float = Field(
        default=_json_config.get("exposure", {}).get("smoothing_alpha", 0.05),
        description="Weight of the new ISO in the exponential smoothing",
    )
    initial_iso: float = Field(
        default=_json_config.get("exposure", {}).get("initial_iso", 400.0),
        description="ISO assumed before the first readback",
    )
    initial_exposure_duration: float = Field(
        default=_json_config.get("exposure", {}).get("initial_exposure_duration", 0.01),
        description="Exposure duration (seconds) used by the auto loop",
    )

    @field_validator("target_brightness")
    @classmethod
    def validate_target(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"target_brightness must be 0.0-1.0, got {v}")
        return v

    @field_validator("smoothing_alpha")
    @classmethod
    def validate_alpha(cls, v):
        if not 0.0 < v <= 1.0:
            raise ValueError(f"smoothing_alpha must be in (0.0, 1.0], got {v}")
        return v

    @field_validator("initial_exposure_duration")
    @classmethod
    def validate_duration(cls, v):
        if v <= 0.0:
            raise ValueError(f"initial_exposure_duration must be > 0, got {v}")
        return v


class DetectionConfig(BaseSettings):
    """Detector and temporal aggregation configuration."""

    model_config = {"env_prefix": "VISIONCAM_DETECTION_"}

    backend: str = Field(
        default=_json_config.get("detection", {}).get("backend", "yolo"),
        description="Detector backend: 'yolo' or 'simulated'",
    )
    model_path: str = Field(
        default=_json_config.get("detection", {}).get(
            "model_path", str(PROJECT_ROOT / "models" / "yolov8n.pt")
        ),
        description="Path to detector weights",
    )
    input_size: tuple[int, int] = Field(
        default=tuple(_json_config.get("detection", {}).get("input_size", [416, 416])),
        description="Model input size (width, height), frames are scale-filled",
    )
    confidence_threshold: float = Field(
        default=_json_config.get("detection", {}).get("confidence_threshold", 0.5),
        description="Minimum model confidence for a box to be reported",
    )
    retention_seconds: float = Field(
        default=_json_config.get("detection", {}).get("retention_seconds", 3.0),
        description="Boxes older than this are evicted",
    )
    capacity: int = Field(
        default=_json_config.get("detection", {}).get("capacity", 10),
        description="Maximum number of retained boxes",
    )
    sample_every_n_frames: int = Field(
        default=_json_config.get("detection", {}).get("sample_every_n_frames", 1),
        description="Run the detector on every Nth delivered frame",
    )
    max_workers: int = Field(
        default=_json_config.get("detection", {}).get("max_workers", 1),
        description="Detector invocations allowed in flight",
    )

    @field_validator("input_size", mode="before")
    @classmethod
    def parse_input_size(cls, v):
        if isinstance(v, list):
            return tuple(v)
        return v

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v):
        if v not in ("yolo", "simulated"):
            raise ValueError(f"backend must be 'yolo' or 'simulated', got {v}")
        return v

    @field_validator("confidence_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence_threshold must be 0.0-1.0, got {v}")
        return v

    @field_validator("retention_seconds")
    @classmethod
    def validate_retention(cls, v):
        if v <= 0.0:
            raise ValueError(f"retention_seconds must be > 0, got {v}")
        return v

    @field_validator("capacity", "sample_every_n_frames", "max_workers")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError(f"value must be >= 1, got {v}")
        return v


class ModeConfig(BaseSettings):
    """Initial UI mode."""

    model_config = {"env_prefix": "VISIONCAM_MODE_"}

    initial: str = Field(
        default=_json_config.get("mode", {}).get("initial", "vision"),
        description="Mode at startup: 'vision' or 'algo'",
    )

    @field_validator("initial")
    @classmethod
    def validate_initial(cls, v):
        if v not in ("vision", "algo"):
            raise ValueError(f"initial mode must be 'vision' or 'algo', got {v}")
        return v


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = {"env_prefix": "VISIONCAM_LOGGING_"}

    level: str = Field(
        default=_json_config.get("logging", {}).get("level", "INFO"),
        description="Log level",
    )
    file: str = Field(
        default=_json_config.get("logging", {}).get(
            "file", str(RUNTIME_DIR / "logs" / "visioncam.log")
        ),
        description="Log file path",
    )


# Global configuration instances
camera_config = CameraConfig()
exposure_config = ExposureConfig()
detection_config = DetectionConfig()
mode_config = ModeConfig()
logging_config = LoggingConfig()


def setup_logging(level: str | None = None) -> None:
    """Configure logging for the application with log rotation."""
    from logging.handlers import RotatingFileHandler

    level = level or logging_config.level
    log_dir = Path(logging_config.file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    # Use RotatingFileHandler to prevent disk fill (10MB max, keep 5 backups)
    file_handler = RotatingFileHandler(
        logging_config.file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.addHandler(file_handler)
    root_logger.addHandler(logging.StreamHandler())

    logger.info(
        f"Logging configured: level={level}, "
        f"file={logging_config.file} (rotating, 10MB max, 5 backups)"
    )
