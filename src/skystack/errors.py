"""
Exceptions raised by the skystack pipeline.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations


class StackingError(Exception):
    """Fatal error aborting a stacking run."""


class FrameValidationError(StackingError, ValueError):
    """Frame set rejected before stacking (count or dimension mismatch)."""


class FrameReadError(StackingError, OSError):
    """A light frame could not be read by the frame source."""

    def __init__(self, filename: str, detail: str = ""):
        self.frame_name = filename
        self.detail = detail
        super().__init__(f"Failed to read image data from {filename}")


class StackingCancelled(Exception):
    """Raised at a checkpoint once cancellation has been requested."""
