"""
Asynchronous detector runner

Runs an object detection model off the frame delivery thread and feeds its
results into the DetectionAggregator:

- Model loading happens on the worker thread; `ready` flips when done
- One invocation per sampled frame, skipped while all workers are busy
- Results are stamped with their arrival time (stale frames are accepted)
- No cancellation and no timeout: a hung call only delays its own result

Models:
- YoloModel: Ultralytics YOLO weights, frames scale-filled to the input size
- SimulatedModel: random boxes for development without a model
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Protocol

import numpy as np

from .aggregator import DetectionAggregator
from .detection import BoundingBox

logger = logging.getLogger(__name__)


class DetectorModel(Protocol):
    """Opaque detector: frame -> normalized boxes."""

    def detect(self, frame: np.ndarray) -> list[BoundingBox]:
        ...


class SimulatedModel:
    """Random detections for development without model weights."""

    def __init__(
        self,
        detection_probability: float = 0.3,
        max_boxes: int = 3,
        seed: int | None = None,
    ):
        self.detection_probability = detection_probability
        self.max_boxes = max_boxes
        self._rng = np.random.default_rng(seed)
        logger.info(f"[SIM] Detector model loaded (p={detection_probability})")

    def detect(self, frame: np.ndarray) -> list[BoundingBox]:
        if self._rng.random() >= self.detection_probability:
            return []

        boxes = []
        for _ in range(int(self._rng.integers(1, self.max_boxes + 1))):
            width = float(self._rng.uniform(0.1, 0.4))
            height = float(self._rng.uniform(0.1, 0.4))
            boxes.append(
                BoundingBox(
                    x=float(self._rng.uniform(0.0, 1.0 - width)),
                    y=float(self._rng.uniform(0.0, 1.0 - height)),
                    width=width,
                    height=height,
                )
            )
        return boxes


class YoloModel:
    """
    Ultralytics YOLO detector returning normalized boxes.

    The frame is stretched (scale-fill, aspect ratio not preserved) to the
    model input size, so normalized output coordinates map directly back to
    the original frame.
    """

    def __init__(
        self,
        model_path: str,
        input_size: tuple[int, int] = (416, 416),
        confidence_threshold: float = 0.5,
        channel_order: str = "RGB",
    ):
        from ultralytics import YOLO

        self.model_path = model_path
        self.input_size = input_size
        self.confidence_threshold = confidence_threshold
        self.channel_order = channel_order.upper()
        self._model = YOLO(model_path)
        logger.info(f"YOLO model loaded: {model_path}, input={input_size}")

    def _preprocess(self, frame: np.ndarray) -> np.ndarray:
        """Scale-fill the frame to the input size as a BGR uint8 array."""
        from PIL import Image

        if frame.dtype != np.uint8:
            frame = (np.clip(frame, 0.0, 1.0) * 255).astype(np.uint8)
        frame = frame[:, :, :3]
        if self.channel_order.startswith("RGB"):
            frame = frame[:, :, ::-1]  # Ultralytics treats arrays as BGR

        target_w, target_h = self.input_size
        if frame.shape[0] != target_h or frame.shape[1] != target_w:
            img = Image.fromarray(np.ascontiguousarray(frame))
            img = img.resize((target_w, target_h), Image.BILINEAR)
            frame = np.array(img, dtype=np.uint8)
        return np.ascontiguousarray(frame)

    def detect(self, frame: np.ndarray) -> list[BoundingBox]:
        image = self._preprocess(frame)
        results = self._model.predict(
            image,
            conf=self.confidence_threshold,
            imgsz=max(self.input_size),
            verbose=False,
        )
        if not results or results[0].boxes is None:
            return []

        xyxyn = results[0].boxes.xyxyn.cpu().numpy()
        return [BoundingBox.from_xyxy(*map(float, row[:4])) for row in xyxyn]


class AsyncDetector:
    """
    Runs a DetectorModel on a thread pool and ingests completed results.

    The frame loop calls ``submit`` without blocking; completion callbacks
    run on worker threads and go through the aggregator's lock.
    """

    def __init__(
        self,
        aggregator: DetectionAggregator,
        model_loader: Callable[[], DetectorModel],
        max_workers: int = 1,
    ):
        """
        Initialize the detector runner.

        Args:
            aggregator: Destination for detection results
            model_loader: Builds the model (called once, on a worker thread)
            max_workers: Maximum invocations in flight
        """
        self.aggregator = aggregator
        self.max_workers = max_workers
        self._model_loader = model_loader
        self._model: DetectorModel | None = None
        self._ready = threading.Event()
        self._load_error: Exception | None = None

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="detector")
        self._lock = threading.Lock()
        self._in_flight = 0

        # Stats
        self._submitted = 0
        self._skipped = 0
        self._completed = 0
        self._failed = 0
        self._total_inference_time = 0.0

        self._on_ready_callbacks: list[Callable[[], None]] = []

        logger.info(f"AsyncDetector initialized: max_workers={max_workers}")

    @property
    def ready(self) -> bool:
        """True once the model is loaded."""
        return self._ready.is_set()

    @property
    def average_inference_time(self) -> float:
        """Average model latency in milliseconds."""
        if self._completed == 0:
            return 0.0
        return self._total_inference_time / self._completed * 1000

    def start(self) -> Future:
        """Load the model in the background."""
        future = self._executor.submit(self._load_model)
        return future

    def _load_model(self) -> None:
        try:
            self._model = self._model_loader()
        except Exception as e:
            self._load_error = e
            logger.error(f"Failed to load detector model: {e}", exc_info=True)
            return

        self._ready.set()
        logger.info("Detector model ready")
        for callback in self._on_ready_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Detector ready callback error: {e}")

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until the model is loaded (or timeout)."""
        return self._ready.wait(timeout)

    def submit(self, frame: np.ndarray) -> Future | None:
        """
        Schedule detection for a frame.

        Returns:
            Future resolving to the model output, or None if the frame was
            skipped (model not ready or all workers busy)
        """
        if not self.ready:
            return None

        with self._lock:
            if self._in_flight >= self.max_workers:
                self._skipped += 1
                return None
            self._in_flight += 1
            self._submitted += 1

        try:
            future = self._executor.submit(self._run_model, frame)
        except RuntimeError as e:
            # Executor already shut down
            with self._lock:
                self._in_flight -= 1
            logger.debug(f"Detection not scheduled: {e}")
            return None
        future.add_done_callback(self._on_complete)
        return future

    def _run_model(self, frame: np.ndarray) -> list[BoundingBox]:
        start_time = time.perf_counter()
        boxes = self._model.detect(frame)
        elapsed = time.perf_counter() - start_time
        with self._lock:
            self._total_inference_time += elapsed
        return boxes

    def _on_complete(self, future: Future) -> None:
        """Completion callback: stamp with arrival time and ingest."""
        with self._lock:
            self._in_flight -= 1

        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            with self._lock:
                self._failed += 1
            logger.error(f"Detector invocation failed: {error}")
            return

        with self._lock:
            self._completed += 1
        self.aggregator.ingest(future.result(), now=time.time())

    def on_ready(self, callback: Callable[[], None]) -> None:
        """Register callback for when the model finishes loading."""
        self._on_ready_callbacks.append(callback)

    def get_status(self) -> dict:
        """Get detector runner status."""
        return {
            "ready": self.ready,
            "load_error": str(self._load_error) if self._load_error else None,
            "in_flight": self._in_flight,
            "submitted": self._submitted,
            "skipped": self._skipped,
            "completed": self._completed,
            "failed": self._failed,
            "average_inference_ms": self.average_inference_time,
        }

    def cleanup(self) -> None:
        """Stop accepting work and release worker threads."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("AsyncDetector cleaned up")


def create_model_loader(channel_order: str = "RGB") -> Callable[[], DetectorModel]:
    """Build a model loader from config."""
    from visioncam.config import detection_config

    if detection_config.backend == "simulated":
        return SimulatedModel

    def load_yolo() -> DetectorModel:
        return YoloModel(
            model_path=detection_config.model_path,
            input_size=detection_config.input_size,
            confidence_threshold=detection_config.confidence_threshold,
            channel_order=channel_order,
        )

    return load_yolo
