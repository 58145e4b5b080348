"""
Dark, bias and flat calibration.

Master frames are per-pixel combinations of raw calibration exposures.
A light is calibrated as ``(light - dark) / flat`` where the flat is
normalized to unit mean and floored to avoid division blow-ups.
"""

from __future__ import annotations

import logging
import warnings
from typing import Literal, Sequence

import numpy as np

from .config import InsufficientFramesError
from .frame import Frame, check_same_shape

logger = logging.getLogger(__name__)

# Normalized flat values below this are clamped before dividing
DEFAULT_FLAT_FLOOR = 0.01


def _combine(
    frames: Sequence[Frame],
    method: Literal["median", "mean"],
    label: str,
) -> np.ndarray:
    """Per-pixel median or mean of same-shaped frames, ignoring NaN."""
    if len(frames) == 0:
        raise InsufficientFramesError(f"At least 1 {label} frame is required")
    expected = frames[0].shape
    for frame in frames[1:]:
        check_same_shape(frame, expected)

    cube = np.stack([f.pixels for f in frames], axis=0)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        if method == "median":
            combined = np.nanmedian(cube, axis=0)
        elif method == "mean":
            combined = np.nanmean(cube, axis=0)
        else:
            raise ValueError(f"method must be 'median' or 'mean', got {method!r}")

    logger.debug("Combined %d %s frames (%s)", len(frames), label, method)
    return combined.astype(np.float32)


def create_master_dark(
    frames: Sequence[Frame],
    method: Literal["median", "mean"] = "median",
) -> Frame:
    """
    Combine raw darks into a master dark.

    Parameters
    ----------
    frames : sequence of Frame
        Dark exposures, all of the same shape.
    method : {'median', 'mean'}, default 'median'
        Per-pixel combination. Median rejects cosmic-ray hits.

    Returns
    -------
    Frame
        Master dark with ``kind='dark'``.

    Raises
    ------
    InsufficientFramesError
        If ``frames`` is empty.
    DimensionMismatchError
        If the frames do not share a shape.
    """
    return Frame(_combine(frames, method, "dark"), name="master_dark", kind="dark")


def create_master_bias(
    frames: Sequence[Frame],
    method: Literal["median", "mean"] = "median",
) -> Frame:
    """Combine raw bias exposures into a master bias."""
    return Frame(_combine(frames, method, "bias"), name="master_bias", kind="bias")


def normalize_flat(flat: np.ndarray) -> np.ndarray:
    """
    Scale a flat to unit mean.

    The mean is taken over finite, strictly positive pixels. A flat with
    no such pixels is returned as all ones (no correction).
    """
    data = np.asarray(flat, dtype=np.float32)
    usable = np.isfinite(data) & (data > 0)
    if not np.any(usable):
        logger.warning("Flat has no positive pixels, flat correction disabled")
        return np.ones_like(data, dtype=np.float32)
    mean = float(np.mean(data[usable], dtype=np.float64))
    return (data / mean).astype(np.float32)


def create_master_flat(
    frames: Sequence[Frame],
    bias: Frame | None = None,
    method: Literal["median", "mean"] = "median",
) -> Frame:
    """
    Combine raw flats into a normalized master flat.

    Parameters
    ----------
    frames : sequence of Frame
        Flat exposures, all of the same shape.
    bias : Frame, optional
        Master bias subtracted from the combined flat before normalizing.
    method : {'median', 'mean'}, default 'median'
        Per-pixel combination.

    Returns
    -------
    Frame
        Master flat with unit mean over its positive pixels.
    """
    combined = _combine(frames, method, "flat")
    if bias is not None:
        check_same_shape(bias, combined.shape, name="bias")
        combined = combined - bias.pixels
    return Frame(normalize_flat(combined), name="master_flat", kind="flat")


def calibrate_frame(
    light: Frame,
    dark: Frame | None = None,
    flat: Frame | None = None,
    bias: Frame | None = None,
    flat_floor: float = DEFAULT_FLAT_FLOOR,
) -> Frame:
    """
    Apply dark subtraction and flat division to a light frame.

    ``result = (light - dark) / max(flat, flat_floor)``. When no dark is
    given, the bias (if any) is subtracted instead; a dark already
    contains the bias signal.

    Parameters
    ----------
    light : Frame
        Raw light frame.
    dark, flat, bias : Frame, optional
        Master frames. The flat must already be normalized.
    flat_floor : float, default 0.01
        Lower clamp for flat values.

    Returns
    -------
    Frame
        A new calibrated frame; ``light`` is left untouched.

    Raises
    ------
    DimensionMismatchError
        If any master differs in shape from the light.
    """
    data = light.pixels.astype(np.float32, copy=True)

    if dark is not None:
        check_same_shape(dark, light.shape, name="dark")
        data -= dark.pixels
    elif bias is not None:
        check_same_shape(bias, light.shape, name="bias")
        data -= bias.pixels

    if flat is not None:
        check_same_shape(flat, light.shape, name="flat")
        data /= np.maximum(flat.pixels, np.float32(flat_floor))

    return light.with_pixels(data)
