"""
Immutable single-channel frames.

A ``Frame`` owns a private, read-only float32 copy of its pixels, so no
stage can mutate a buffer another stage still holds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal

import numpy as np

from .config import dimension_mismatch

FrameKind = Literal["light", "dark", "flat", "bias"]


@dataclass(frozen=True, eq=False)
class Frame:
    """
    A 2D image of shape (height, width).

    NaN marks missing data (e.g. pixels outside a resampled frame).
    """

    pixels: np.ndarray
    name: str = ""
    kind: FrameKind = "light"

    def __post_init__(self) -> None:
        data = np.array(self.pixels, dtype=np.float32, copy=True)
        if data.ndim != 2:
            raise ValueError(f"Frame pixels must be 2D, got shape {data.shape}")
        if data.size == 0:
            raise ValueError("Frame pixels must not be empty")
        data.setflags(write=False)
        object.__setattr__(self, "pixels", data)

    @classmethod
    def from_buffer(
        cls,
        buffer: Any,
        width: int,
        height: int,
        name: str = "",
        kind: FrameKind = "light",
    ) -> Frame:
        """Build a frame from a flat row-major buffer of width*height values."""
        flat = np.asarray(buffer, dtype=np.float32).ravel()
        if width < 1 or height < 1:
            raise ValueError(f"width and height must be positive, got {width}x{height}")
        if flat.size != width * height:
            raise ValueError(
                f"Buffer of {flat.size} pixels does not match {width}x{height}"
            )
        return cls(flat.reshape(height, width), name=name, kind=kind)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def shape(self) -> tuple[int, int]:
        return self.pixels.shape

    def to_buffer(self) -> np.ndarray:
        """Return a writable flat float32 copy (row-major)."""
        return self.pixels.ravel().copy()

    def with_pixels(self, pixels: np.ndarray, kind: FrameKind | None = None) -> Frame:
        """Return a new frame with the same name and different pixels."""
        return Frame(pixels, name=self.name, kind=kind or self.kind)

    def __repr__(self) -> str:
        return f"Frame(name={self.name!r}, kind={self.kind!r}, {self.width}x{self.height})"


@dataclass(frozen=True)
class FrameRef:
    """
    Handle to a frame that a loader decodes on demand.

    ``source`` is whatever the loader understands (a path, a key, raw bytes).
    """

    name: str
    source: Any = None


FrameLoader = Callable[[FrameRef], Frame]


def frame_name(item: Any, index: int) -> str:
    """Best display name for a job entry."""
    name = getattr(item, "name", "")
    return str(name) if name else f"frame_{index:04d}"


def check_same_shape(frame: Frame, expected: tuple[int, int], name: str | None = None) -> None:
    """Raise ``DimensionMismatchError`` unless ``frame`` has shape ``expected``."""
    if frame.shape != tuple(expected):
        raise dimension_mismatch(name or frame.name or "frame", frame.shape, expected)
