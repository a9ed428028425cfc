"""
Detection Aggregator - Time-windowed smoothing of raw detector output

Raw detections flicker from frame to frame. The aggregator keeps every box
for a short retention period so the displayed set is stable:

- Each ingested box is stamped with the ingestion time
- Boxes aged >= retention_seconds are dropped on every ingestion
- When more than `capacity` boxes remain, the oldest are dropped first (FIFO)

No confidence filtering, deduplication or merging of overlapping boxes is
done: this is a temporal buffer, not a tracker.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Iterable

from .detection import BoundingBox, DetectedBox

logger = logging.getLogger(__name__)


class DetectionAggregator:
    """
    Bounded, insertion-ordered window of recent detections.

    All mutations are serialized by one lock, so ``ingest`` may be called
    from detector completion threads while the sink reads ``current_boxes``.
    """

    def __init__(self, retention_seconds: float = 3.0, capacity: int = 10):
        """
        Initialize the aggregator.

        Args:
            retention_seconds: Maximum age of a retained box
            capacity: Maximum number of retained boxes
        """
        if retention_seconds <= 0:
            raise ValueError(f"retention_seconds must be > 0, got {retention_seconds}")
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")

        self.retention_seconds = retention_seconds
        self.capacity = capacity

        self._window: deque[DetectedBox] = deque()
        self._lock = threading.Lock()
        self._ingest_count = 0
        self._expired_count = 0
        self._overflow_count = 0

        self._on_change_callbacks: list[Callable[[list[BoundingBox]], None]] = []

        logger.info(
            f"DetectionAggregator initialized: retention={retention_seconds}s, "
            f"capacity={capacity}"
        )

    def __len__(self) -> int:
        return len(self._window)

    def ingest(
        self, boxes: Iterable[BoundingBox | DetectedBox], now: float | None = None
    ) -> list[BoundingBox]:
        """
        Append new detections and evict in one atomic step.

        Args:
            boxes: Detector output for one frame (may be empty)
            now: Ingestion time in seconds (time.time() if None)

        Returns:
            Retained rects after eviction, oldest first
        """
        now = time.time() if now is None else now

        with self._lock:
            added = 0
            for box in boxes:
                rect = box.rect if isinstance(box, DetectedBox) else box
                self._window.append(DetectedBox(rect=rect, timestamp=now))
                added += 1
            self._ingest_count += added
            removed = self._evict_locked(now)
            current = [entry.rect for entry in self._window]

        if added:
            logger.debug(
                f"Ingested {added} box(es), evicted {removed}, retained {len(current)}"
            )
        if added or removed:
            self._notify(current)
        return current

    def evict(self, now: float | None = None) -> int:
        """
        Drop expired boxes, then the oldest boxes beyond capacity.

        Args:
            now: Current time in seconds (time.time() if None)

        Returns:
            Number of boxes removed
        """
        now = time.time() if now is None else now

        with self._lock:
            removed = self._evict_locked(now)
            current = [entry.rect for entry in self._window]

        if removed:
            self._notify(current)
        return removed

    def _evict_locked(self, now: float) -> int:
        """Eviction body; caller holds the lock."""
        before = len(self._window)

        kept = [entry for entry in self._window if entry.age(now) < self.retention_seconds]
        expired = before - len(kept)
        if expired:
            self._window = deque(kept)
            self._expired_count += expired

        overflow = 0
        while len(self._window) > self.capacity:
            self._window.popleft()
            overflow += 1
        self._overflow_count += overflow

        return expired + overflow

    def current_boxes(self) -> list[BoundingBox]:
        """Retained rects, oldest first."""
        with self._lock:
            return [entry.rect for entry in self._window]

    def entries(self) -> list[DetectedBox]:
        """Retained boxes with their ingestion timestamps, oldest first."""
        with self._lock:
            return list(self._window)

    def clear(self) -> None:
        """Drop all retained boxes."""
        with self._lock:
            had_boxes = bool(self._window)
            self._window.clear()
        if had_boxes:
            self._notify([])

    def _notify(self, boxes: list[BoundingBox]) -> None:
        # Invoke callbacks OUTSIDE the lock
        for callback in self._on_change_callbacks:
            try:
                callback(boxes)
            except Exception as e:
                logger.error(f"Aggregator callback error: {e}", exc_info=True)

    def on_change(self, callback: Callable[[list[BoundingBox]], None]) -> None:
        """Register callback receiving the retained rects after every change."""
        self._on_change_callbacks.append(callback)

    def get_status(self) -> dict:
        """Get aggregator status."""
        with self._lock:
            size = len(self._window)
        return {
            "size": size,
            "capacity": self.capacity,
            "retention_seconds": self.retention_seconds,
            "ingested": self._ingest_count,
            "expired": self._expired_count,
            "overflowed": self._overflow_count,
        }


# Factory function
def _create_default_aggregator() -> DetectionAggregator:
    """Create aggregator from config."""
    from visioncam.config import detection_config

    return DetectionAggregator(
        retention_seconds=detection_config.retention_seconds,
        capacity=detection_config.capacity,
    )


# Global instance (lazy)
_aggregator_instance: DetectionAggregator | None = None


def get_aggregator() -> DetectionAggregator:
    """Get or create the global detection aggregator."""
    global _aggregator_instance
    if _aggregator_instance is None:
        _aggregator_instance = _create_default_aggregator()
    return _aggregator_instance
