"""
Cooperative cancellation and progress plumbing shared by long-running stages.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import StackingCancelled


def yield_to_scheduler() -> None:
    """Give other threads a chance to run."""
    time.sleep(0)


class CancellationToken:
    """Thread-safe cancellation flag polled at stage and chunk boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StackingCancelled()


@dataclass
class DetectionRuntime:
    """
    Execution hooks for chunked star detection.

    Parameters
    ----------
    cancel_token : CancellationToken, optional
        Checked at each stage and each row chunk.
    on_progress : callable, optional
        Called as ``on_progress(fraction, stage_label)`` with fraction in [0, 1].
    chunk_rows : int, default 24
        Rows processed between two yields (at least 8).
    yield_control : callable, default time.sleep(0)
        Called after every chunk.
    """

    cancel_token: CancellationToken | None = None
    on_progress: Callable[[float, str], None] | None = None
    chunk_rows: int = 24
    yield_control: Callable[[], None] = field(default=yield_to_scheduler)

    def __post_init__(self) -> None:
        self.chunk_rows = max(8, int(self.chunk_rows))

    def checkpoint(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def report(self, fraction: float, stage: str) -> None:
        if self.on_progress is not None:
            self.on_progress(min(1.0, max(0.0, fraction)), stage)

    def step(self) -> None:
        """End of a work chunk: yield, then check for cancellation."""
        self.yield_control()
        self.checkpoint()
