"""
Colored CLI output utilities for skystack.

Styled terminal output with colors, status symbols and per-stage progress
bars driven by `StackProgress` snapshots.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .config import StackProgress, StackStage

colorama_init(autoreset=True)


class Colors:
    """Color constants for consistent styling."""

    HEADER = Fore.CYAN + Style.BRIGHT
    STAGE = Fore.BLUE + Style.BRIGHT

    SUCCESS = Fore.GREEN + Style.BRIGHT
    WARNING = Fore.YELLOW
    ERROR = Fore.RED + Style.BRIGHT
    INFO = Fore.WHITE

    VALUE = Fore.YELLOW + Style.BRIGHT
    METRIC = Fore.MAGENTA
    PATH = Fore.CYAN

    PROGRESS = Fore.GREEN
    RESET = Style.RESET_ALL


class Symbols:
    """Unicode symbols for status indicators."""

    CHECK = "✔"
    CROSS = "✘"
    ARROW = "→"
    BULLET = "•"
    TELESCOPE = "\U0001F52D"
    STAGE = "▶"

    @classmethod
    def use_ascii(cls):
        """Switch to ASCII-only fallbacks."""
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.ARROW = "->"
        cls.BULLET = "*"
        cls.TELESCOPE = "[T]"
        cls.STAGE = ">"


STAGE_LABELS = {
    StackStage.LOADING: "Loading frames",
    StackStage.CALIBRATING: "Calibrating",
    StackStage.EVALUATING: "Evaluating quality",
    StackStage.ALIGNING: "Aligning",
    StackStage.STACKING: "Stacking",
    StackStage.RENDERING: "Rendering preview",
    StackStage.DONE: "Done",
}


def print_banner(version: str) -> None:
    """Print the skystack startup banner."""
    print(
        f"\n{Colors.HEADER}{Symbols.TELESCOPE}  skystack {version} | "
        f"calibrate, align and stack astronomical frames{Colors.RESET}"
    )


def print_success(text: str) -> None:
    print(f"{Colors.SUCCESS}{Symbols.CHECK} {text}{Colors.RESET}")


def print_warning(text: str) -> None:
    print(f"{Colors.WARNING}! {text}{Colors.RESET}")


def print_error(text: str) -> None:
    print(f"{Colors.ERROR}{Symbols.CROSS} {text}{Colors.RESET}", file=sys.stderr)


def print_info(text: str) -> None:
    print(f"{Colors.INFO}{Symbols.BULLET} {text}{Colors.RESET}")


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    """Print a metric with value."""
    suffix = f" {unit}" if unit else ""
    print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET}{suffix}")


def print_path(label: str, path: str) -> None:
    print(f"  {Colors.INFO}{label}: {Colors.PATH}{path}{Colors.RESET}")


def print_summary_box(lines: list[str], title: str = "Summary") -> None:
    """Print a summary box with multiple lines."""
    width = max([len(line) for line in lines] + [len(title)]) + 4

    print(f"\n{Colors.SUCCESS}╔" + "═" * width + "╗")
    print(f"║ {title:^{width - 2}} ║")
    print("╟" + "─" * width + "╢")
    for line in lines:
        print(f"║  {line:<{width - 3}}║")
    print("╚" + "═" * width + f"╝{Colors.RESET}")


@dataclass
class ProgressConfig:
    """Configuration for progress bars."""

    bar_format: str = "{l_bar}{bar}| {n:.1f}/{total_fmt} [{elapsed}<{remaining}]"
    ncols: int = 80
    colour: str = "green"
    leave: bool = True


def create_progress_bar(
    total: int,
    desc: str,
    unit: str = "frame",
    config: ProgressConfig | None = None,
    disable: bool = False,
) -> tqdm:
    """
    Create a styled progress bar.

    Parameters
    ----------
    total : int
        Total number of items.
    desc : str
        Description text.
    unit : str, default "frame"
        Unit name for items.
    config : ProgressConfig, optional
        Progress bar configuration.
    disable : bool, default False
        Disable the progress bar.

    Returns
    -------
    tqdm
        Configured progress bar.
    """
    config = config or ProgressConfig()
    return tqdm(
        total=total,
        desc=f"{Colors.PROGRESS}{desc}{Colors.RESET}",
        unit=unit,
        bar_format=config.bar_format,
        ncols=config.ncols,
        colour=config.colour,
        leave=config.leave,
        disable=disable,
    )


class StackProgressDisplay:
    """
    Render `StackProgress` snapshots as one progress bar per stage.

    Example
    -------
    >>> display = StackProgressDisplay()
    >>> session = StackingSession(on_progress=display)
    >>> session.stack(paths)
    >>> display.close()
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self._stage: StackStage | None = None
        self._bar: tqdm | None = None

    def __call__(self, progress: StackProgress) -> None:
        if self.quiet:
            return
        if progress.stage is not self._stage:
            self.close()
            self._stage = progress.stage
            if progress.stage is StackStage.DONE:
                print_success(progress.message)
                return
            print(f"\n{Colors.STAGE}{Symbols.STAGE} {STAGE_LABELS[progress.stage]}{Colors.RESET}")
            self._bar = create_progress_bar(max(1, progress.total), STAGE_LABELS[progress.stage])
        if self._bar is not None:
            self._bar.n = min(float(progress.current), self._bar.total)
            self._bar.set_postfix_str(progress.message, refresh=False)
            self._bar.refresh()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def detect_terminal_capabilities() -> dict:
    """
    Detect terminal capabilities for optimal display.

    Returns
    -------
    dict
        Capabilities dict with 'unicode', 'color', 'width' keys.
    """
    caps = {"unicode": True, "color": True, "width": shutil.get_terminal_size().columns}

    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        caps["color"] = False
    elif os.environ.get("TERM") == "dumb":
        caps["color"] = False
        caps["unicode"] = False

    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    if "utf" not in encoding and "utf" not in os.environ.get("LANG", "").lower():
        caps["unicode"] = False
    return caps


def setup_terminal() -> dict:
    """Switch to ASCII symbols when the terminal cannot show unicode."""
    caps = detect_terminal_capabilities()
    if not caps["unicode"]:
        Symbols.use_ascii()
    return caps


__all__ = [
    "Colors",
    "Symbols",
    "StackProgressDisplay",
    "create_progress_bar",
    "print_banner",
    "print_error",
    "print_info",
    "print_metric",
    "print_path",
    "print_success",
    "print_summary_box",
    "print_warning",
    "setup_terminal",
]
