"""
Detection data structures for object detection results.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box in normalized (0-1) frame coordinates."""

    x: float  # Left edge
    y: float  # Top edge
    width: float
    height: float

    @property
    def center_x(self) -> float:
        """Get center X coordinate."""
        return self.x + self.width / 2

    @property
    def center_y(self) -> float:
        """Get center Y coordinate."""
        return self.y + self.height / 2

    @property
    def area(self) -> float:
        """Get bounding box area."""
        return self.width * self.height

    @property
    def right(self) -> float:
        """Get right edge X coordinate."""
        return self.x + self.width

    @property
    def bottom(self) -> float:
        """Get bottom edge Y coordinate."""
        return self.y + self.height

    @classmethod
    def from_xyxy(
        cls, x1: float, y1: float, x2: float, y2: float, width: float = 1.0, height: float = 1.0
    ) -> "BoundingBox":
        """
        Build a normalized box from corner coordinates.

        Args:
            x1, y1, x2, y2: Corners in pixels (or already normalized)
            width: Image width used for normalization
            height: Image height used for normalization

        Returns:
            BoundingBox clipped to the unit square
        """
        left, right = sorted((x1 / width, x2 / width))
        top, bottom = sorted((y1 / height, y2 / height))
        return cls(x=left, y=top, width=right - left, height=bottom - top).clipped()

    def clipped(self) -> "BoundingBox":
        """Return the part of this box inside the unit square."""
        left = min(max(self.x, 0.0), 1.0)
        top = min(max(self.y, 0.0), 1.0)
        right = min(max(self.right, 0.0), 1.0)
        bottom = min(max(self.bottom, 0.0), 1.0)
        return BoundingBox(x=left, y=top, width=right - left, height=bottom - top)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "center_x": self.center_x,
            "center_y": self.center_y,
        }


@dataclass(frozen=True)
class DetectedBox:
    """A detected rectangle stamped with its ingestion time."""

    rect: BoundingBox
    timestamp: float  # time.time() at ingestion

    def age(self, now: float) -> float:
        """Seconds elapsed since ingestion."""
        return now - self.timestamp

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"rect": self.rect.to_dict(), "timestamp": self.timestamp}
