"""
Small helpers shared across lightstack.

Includes:
- Version and platform strings for reports
- Worker-count resolution and the shared pool for the async helpers
- Display stretches for quicklook previews
"""

from __future__ import annotations

import atexit
import os
import platform
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import numpy as np

__version__ = "0.4.0"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "stable",
}

# Leave one CPU for the caller's own thread
DEFAULT_WORKERS = max(1, os.cpu_count() - 1) if os.cpu_count() else 4


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"lightstack v{__version__} | calibration, registration and stacking"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    v = sys.version_info
    return f"{platform.system()} {platform.release()} / Python {v.major}.{v.minor}.{v.micro}"


def get_timestamp_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def resolve_workers(workers: int | None) -> int:
    """Return a usable worker count (None or < 1 means auto)."""
    if workers is None or workers < 1:
        return DEFAULT_WORKERS
    return int(workers)


def asinh_stretch(
    data: np.ndarray,
    black_point: float,
    white_point: float,
    a: float = 0.1,
) -> np.ndarray:
    """
    Apply an asinh display stretch between explicit black and white points.

    Linear near the black point, logarithmic towards the white point, so
    faint nebulosity stays visible while star cores are compressed.

    Parameters
    ----------
    data : np.ndarray
        Linear image. NaN pixels are rendered black.
    black_point, white_point : float
        Values mapped to 0 and 1 before the stretch (see
        ``lightstack.stack.compute_auto_stretch``).
    a : float, default 0.1
        Softening parameter. Smaller values compress harder.

    Returns
    -------
    np.ndarray
        Stretched image in [0, 1] (float32).
    """
    span = white_point - black_point
    if not np.isfinite(span) or span < 1e-10:
        return np.zeros(data.shape, dtype=np.float32)

    normalized = np.clip((np.nan_to_num(data, nan=black_point) - black_point) / span, 0, 1)
    stretched = np.arcsinh(normalized / a) / np.arcsinh(1.0 / a)
    return stretched.astype(np.float32)


def to_uint8(data: np.ndarray) -> np.ndarray:
    """Convert a normalized [0, 1] float array to uint8 [0, 255]."""
    return (np.clip(data, 0, 1) * 255).astype(np.uint8)


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    result = name
    for char in '<>:"/\\|?* ':
        result = result.replace(char, "_")
    return result


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Returns strings like "2h 15m 30s", "3m 5s" or "45.2s".
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        minutes = int(seconds // 60)
        return f"{minutes}m {seconds % 60:.0f}s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m {seconds % 60:.0f}s"


_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def shared_executor() -> ThreadPoolExecutor:
    """
    Process-wide thread pool behind the ``*_async`` helpers.

    Created on first use. It holds no job state: every submission carries
    its own inputs and returns its own Future. Callers that need isolation
    pass their own ``executor`` to the helpers instead.
    """
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=DEFAULT_WORKERS, thread_name_prefix="lightstack"
            )
        return _executor


def shutdown_shared_executor(wait: bool = True) -> None:
    """Shut the shared pool down; the next ``shared_executor()`` call starts a new one."""
    global _executor
    with _executor_lock:
        pool, _executor = _executor, None
    if pool is not None:
        pool.shutdown(wait=wait)


atexit.register(shutdown_shared_executor)
