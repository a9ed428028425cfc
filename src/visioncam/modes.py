"""
Display mode state.

VISION shows the smoothed detection boxes; ALGO exposes the manual
exposure and white balance controls. Switching modes only changes which
output the sink consults, both pipelines keep their state.
"""

import logging
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    """Process-wide display mode."""

    VISION = "vision"
    ALGO = "algo"


class ModeController:
    """Holds the current mode and notifies on explicit toggles."""

    def __init__(self, initial: Mode | str = Mode.VISION):
        self._mode = Mode(initial)
        self._lock = threading.Lock()
        self._on_change_callbacks: list[Callable[[Mode], None]] = []

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def show_manual_controls(self) -> bool:
        return self._mode is Mode.ALGO

    def set_mode(self, mode: Mode | str) -> Mode:
        """
        Switch to a mode.

        Raises:
            ValueError: Unknown mode string
        """
        new_mode = Mode(mode)
        with self._lock:
            old_mode = self._mode
            self._mode = new_mode

        if new_mode is not old_mode:
            logger.info(f"Mode: {old_mode.value} -> {new_mode.value}")
            for callback in self._on_change_callbacks:
                try:
                    callback(new_mode)
                except Exception as e:
                    logger.error(f"Mode change callback error: {e}")
        return new_mode

    def toggle(self) -> Mode:
        """Switch between vision and algo."""
        return self.set_mode(Mode.ALGO if self._mode is Mode.VISION else Mode.VISION)

    def on_change(self, callback: Callable[[Mode], None]) -> None:
        """Register callback for mode changes."""
        self._on_change_callbacks.append(callback)
