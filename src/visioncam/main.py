"""
VisionCam Main Controller

Wires the two frame consumers to one camera:
- Exposure pipeline: frame -> luminance -> ISO step -> actuation (every frame)
- Detection pipeline: frame -> async detector (every Nth frame) -> aggregator

The render sink polls `render_state()` or subscribes with `on_render()`.
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import numpy as np

from visioncam.camera.camera_service import CameraService
from visioncam.exposure.controller import ActuationResult, ExposureController
from visioncam.inference.aggregator import DetectionAggregator
from visioncam.inference.detection import BoundingBox
from visioncam.inference.detector import AsyncDetector
from visioncam.modes import Mode, ModeController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderState:
    """Everything the display layer consumes, as one snapshot."""

    current_iso: float
    current_exposure_duration: float
    boxes: list[BoundingBox] = field(default_factory=list)
    ready: bool = False
    mode: Mode = Mode.VISION
    show_manual_controls: bool = False

    def to_dict(self) -> dict:
        return {
            "current_iso": self.current_iso,
            "current_exposure_duration": self.current_exposure_duration,
            "boxes": [box.to_dict() for box in self.boxes],
            "ready": self.ready,
            "mode": self.mode.value,
            "show_manual_controls": self.show_manual_controls,
        }


class VisionCamController:
    """
    Orchestrates camera, exposure control, detection and mode state.

    Components can be injected (tests, embedding) or built from config by
    ``init_components()``.
    """

    def __init__(
        self,
        camera: CameraService | None = None,
        exposure: ExposureController | None = None,
        aggregator: DetectionAggregator | None = None,
        detector: AsyncDetector | None = None,
        modes: ModeController | None = None,
        sample_every_n_frames: int = 1,
        auto_exposure: bool = True,
    ):
        self._camera = camera
        self._exposure = exposure
        self._aggregator = aggregator
        self._detector = detector
        self.modes = modes or ModeController()
        self.sample_every_n_frames = sample_every_n_frames
        self.auto_exposure = auto_exposure

        self._running = False
        self._frame_count = 0
        self._started_at: datetime | None = None

        self._on_render_callbacks: list[Callable[[RenderState], None]] = []

        logger.info("VisionCamController initialized")

    @property
    def camera(self) -> CameraService | None:
        return self._camera

    @property
    def exposure(self) -> ExposureController | None:
        return self._exposure

    @property
    def aggregator(self) -> DetectionAggregator | None:
        return self._aggregator

    @property
    def detector(self) -> AsyncDetector | None:
        return self._detector

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def init_components(self, simulate: bool = False) -> None:
        """Build any component not injected, from configuration."""
        from visioncam.config import camera_config, detection_config, exposure_config

        logger.info("Initializing components...")

        self.sample_every_n_frames = detection_config.sample_every_n_frames
        self.auto_exposure = exposure_config.enabled

        # Camera
        if self._camera is None:
            try:
                self._camera = CameraService(
                    resolution=camera_config.resolution,
                    framerate=camera_config.framerate,
                    backend="simulated" if simulate else camera_config.backend,
                    iso_per_gain=camera_config.iso_per_gain,
                    lock_timeout_seconds=camera_config.lock_timeout_seconds,
                )
                logger.info("Camera service initialized")
            except Exception as e:
                logger.error(f"Failed to initialize camera: {e}")

        channel_order = self._camera.channel_order if self._camera else "RGB"

        # Exposure controller (works without a camera, reporting DEVICE_UNAVAILABLE)
        if self._exposure is None:
            from visioncam.exposure.controller import create_exposure_controller

            self._exposure = create_exposure_controller(self._camera, channel_order)
            logger.info("Exposure controller initialized")

        # Aggregator + detector
        if self._aggregator is None:
            self._aggregator = DetectionAggregator(
                retention_seconds=detection_config.retention_seconds,
                capacity=detection_config.capacity,
            )
        if self._detector is None:
            try:
                from visioncam.inference.detector import SimulatedModel, create_model_loader

                loader = SimulatedModel if simulate else create_model_loader(channel_order)
                self._detector = AsyncDetector(
                    aggregator=self._aggregator,
                    model_loader=loader,
                    max_workers=detection_config.max_workers,
                )
                logger.info("Detector initialized")
            except Exception as e:
                logger.error(f"Failed to initialize detector: {e}")

    def start(self) -> None:
        """Hook components together and start frame delivery."""
        if self._running:
            logger.warning("Controller already running")
            return

        if self._aggregator is not None:
            self._aggregator.on_change(lambda _boxes: self._publish())
        if self._exposure is not None:
            self._exposure.on_update(lambda _state: self._publish())
        if self._detector is not None:
            self._detector.on_ready(self._publish)
            self._detector.start()
        self.modes.on_change(self._handle_mode_change)

        self._running = True
        self._started_at = datetime.now()

        if self._camera is None:
            logger.warning("Frame delivery disabled: camera not available")
            return

        self._camera.on_frame(self._handle_frame)
        self._camera.start()
        if self._exposure is not None:
            self._exposure.sync_from_device()
        logger.info("=== VisionCam Running ===")

    def _handle_frame(self, frame: np.ndarray, timestamp: datetime) -> None:
        """Frame callback (capture thread). The two pipelines fail independently."""
        self._frame_count += 1

        if self.auto_exposure and self._exposure is not None:
            try:
                self._exposure.process_frame(frame, timestamp)
            except Exception as e:
                logger.error(f"Exposure pipeline error: {e}", exc_info=True)

        if self._detector is not None and self._frame_count % self.sample_every_n_frames == 0:
            try:
                self._detector.submit(frame)
            except Exception as e:
                logger.error(f"Detection pipeline error: {e}", exc_info=True)

        # Age out boxes even when the detector is quiet
        if self._aggregator is not None:
            self._aggregator.evict()

    def _handle_mode_change(self, mode: Mode) -> None:
        if mode is Mode.VISION and self._exposure is not None:
            self._exposure.resume()
        self._publish()

    def apply_manual(
        self,
        exposure_duration: float,
        iso: float,
        temperature: float,
        tint: float,
    ) -> tuple[ActuationResult, ActuationResult]:
        """
        Apply manual exposure, ISO and white balance.

        The automatic loop is paused together with a successful exposure
        write, so no in-flight auto step can override the manual setting.

        Returns:
            (exposure result, white balance result)
        """
        if self._exposure is None:
            raise RuntimeError("Exposure controller not initialized")

        exposure_result = self._exposure.set_manual(exposure_duration, iso, pause_auto=True)
        wb_result = self._exposure.set_white_balance(temperature, tint)
        return exposure_result, wb_result

    def resume_auto(self) -> None:
        """Hand exposure back to the automatic loop."""
        if self._exposure is not None:
            self._exposure.resume()

    def render_state(self) -> RenderState:
        """Snapshot for the display layer."""
        if self._exposure is not None:
            state = self._exposure.state
            iso, duration = state.current_iso, state.current_exposure_duration
        else:
            iso, duration = 0.0, 0.0

        return RenderState(
            current_iso=iso,
            current_exposure_duration=duration,
            boxes=self._aggregator.current_boxes() if self._aggregator else [],
            ready=self._detector.ready if self._detector else False,
            mode=self.modes.mode,
            show_manual_controls=self.modes.show_manual_controls,
        )

    def _publish(self) -> None:
        if not self._on_render_callbacks:
            return
        state = self.render_state()
        for callback in self._on_render_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Render callback error: {e}")

    def on_render(self, callback: Callable[[RenderState], None]) -> None:
        """Register a render sink notified after every output change."""
        self._on_render_callbacks.append(callback)

    def get_status(self) -> dict:
        """Get full system status."""
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "frame_count": self._frame_count,
            "mode": self.modes.mode.value,
            "camera": self._camera.get_status() if self._camera else None,
            "exposure": self._exposure.get_status() if self._exposure else None,
            "aggregator": self._aggregator.get_status() if self._aggregator else None,
            "detector": self._detector.get_status() if self._detector else None,
        }

    def stop(self) -> None:
        """Stop frame delivery and release resources."""
        if not self._running:
            return
        logger.info("Shutting down...")
        self._running = False

        if self._camera:
            self._camera.cleanup()
        if self._detector:
            self._detector.cleanup()

        logger.info("Shutdown complete")

    async def run(self, duration: float | None = None, status_interval: float = 5.0) -> None:
        """Run until stopped (signal) or for `duration` seconds."""
        self._setup_signal_handlers()
        self.start()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration else None
        next_status = loop.time() + status_interval

        try:
            while self._running:
                await asyncio.sleep(0.2)
                now = loop.time()
                if deadline is not None and now >= deadline:
                    logger.info(f"Run duration of {duration}s reached")
                    break
                if now >= next_status:
                    next_status = now + status_interval
                    self._log_status()
        except asyncio.CancelledError:
            logger.info("Main loop cancelled")

        self.stop()

    def _log_status(self) -> None:
        state = self.render_state()
        brightness = self._exposure.last_brightness if self._exposure else None
        logger.info(
            f"frames={self._frame_count} mode={state.mode.value} "
            f"brightness={brightness if brightness is None else round(brightness, 3)} "
            f"iso={state.current_iso:.1f} "
            f"exposure={state.current_exposure_duration * 1000:.2f}ms "
            f"boxes={len(state.boxes)} ready={state.ready}"
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Signal {signum} received, initiating shutdown...")
            self._running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


# ==================== Entry Point ====================


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="visioncam",
        description="Closed-loop exposure control and smoothed object detection",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use the simulated camera and detector (no hardware or weights)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=None,
        help="Initial display mode (default from config)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level",
    )
    return parser.parse_args(argv)


async def app(args: argparse.Namespace) -> None:
    """Main application entry point."""
    from visioncam.config import mode_config

    controller = VisionCamController(modes=ModeController(args.mode or mode_config.initial))
    controller.init_components(simulate=args.simulate)
    await controller.run(duration=args.duration)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    from visioncam.config import setup_logging

    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        asyncio.run(app(args))
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
