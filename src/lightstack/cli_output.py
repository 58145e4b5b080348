"""
Styled terminal output for the lightstack command line.

Colours come from colorama, progress bars from tqdm. Nothing here is
used by the library itself.
"""

from __future__ import annotations

import os
import shutil
import sys
import time
from dataclasses import dataclass

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .config import StackProgress
from .utils import format_duration

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
    """Status symbols, with ASCII fallbacks for limited terminals."""

    CHECK = "✔"
    CROSS = "✘"
    ARROW = "→"
    BULLET = "•"
    STAR = "★"

    @classmethod
    def use_ascii(cls) -> None:
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.ARROW = "->"
        cls.BULLET = "*"
        cls.STAR = "*"


STAGE_TITLES = {
    "loading": "Loading frames",
    "calibrating": "Calibrating",
    "detecting": "Detecting stars",
    "evaluating": "Scoring frames",
    "aligning": "Aligning",
    "combining": "Combining",
}


def print_banner(version: str) -> None:
    """Print the startup banner."""
    print(f"\n{Colors.HEADER}{Symbols.STAR} lightstack {version} {Symbols.STAR}{Colors.RESET}")
    print(f"{Colors.INFO}  calibration, registration and stacking{Colors.RESET}\n")


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
    print(f"\n{Colors.SUCCESS}╔{'═' * width}╗")
    print(f"║ {title:^{width - 2}} ║")
    print(f"╟{'─' * width}╢")
    for line in lines:
        print(f"║  {line:<{width - 3}}║")
    print(f"╚{'═' * width}╝{Colors.RESET}")


@dataclass
class ProgressConfig:
    """Configuration for progress bars."""

    bar_format: str = "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]"
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
    """Create a styled tqdm progress bar."""
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


class StageProgress:
    """
    Render ``StackProgress`` events as one progress bar per stage.

    Pass an instance as ``Stacker(on_progress=...)``.

    Example
    -------
    >>> progress = StageProgress()
    >>> stacker = Stacker(loader=load_frame, on_progress=progress)
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self._stage: str | None = None
        self._bar: tqdm | None = None
        self._stage_start = 0.0

    def __call__(self, event: StackProgress) -> None:
        if self.quiet:
            return
        if event.stage != self._stage:
            self.close()
            self._stage = event.stage
            self._stage_start = time.time()
            if event.stage == "done":
                return
            self._bar = create_progress_bar(
                max(event.total, 1),
                STAGE_TITLES.get(event.stage, event.stage),
                unit="step" if event.stage == "combining" else "frame",
            )
        if self._bar is not None:
            self._bar.n = event.current
            if event.message:
                self._bar.set_postfix_str(event.message[-30:], refresh=False)
            self._bar.refresh()

    def close(self) -> None:
        """Close the current bar and report the stage duration."""
        if self._bar is not None:
            self._bar.close()
            self._bar = None
            elapsed = format_duration(time.time() - self._stage_start)
            print(f"   {Colors.SUCCESS}{Symbols.CHECK} {STAGE_TITLES.get(self._stage, self._stage)} ({elapsed}){Colors.RESET}")


def detect_terminal_capabilities() -> dict:
    """
    Detect terminal capabilities for optimal display.

    Returns
    -------
    dict
        Capabilities dict with 'unicode', 'color', 'width' keys.
    """
    caps = {"unicode": True, "color": True, "width": 80}

    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        caps["color"] = False
    elif os.environ.get("TERM") == "dumb":
        caps["color"] = False
        caps["unicode"] = False

    caps["width"] = shutil.get_terminal_size(fallback=(80, 24)).columns

    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    if "utf" not in encoding and "utf" not in os.environ.get("LANG", "").lower():
        caps["unicode"] = False
    return caps


def setup_terminal() -> dict:
    """Apply detected terminal capabilities and return them."""
    caps = detect_terminal_capabilities()
    if not caps["unicode"]:
        Symbols.use_ascii()
    return caps
