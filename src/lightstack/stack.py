"""
Pixel combination of aligned frames.

Every combiner works row chunk by row chunk, so memory stays at
O(n_frames x chunk_rows x width) instead of the full cube. NaN marks a
missing sample and is ignored; a pixel with no valid sample at all comes
out as NaN.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from astropy.stats import sigma_clip
from astropy.utils.exceptions import AstropyUserWarning

from .config import AutoStretch, InsufficientFramesError, canonical_method, dimension_mismatch
from .frame import Frame
from .weighting import normalize_weights

logger = logging.getLogger(__name__)

ArrayLike = np.ndarray | Frame
Reducer = Callable[[np.ndarray], tuple[np.ndarray, np.ndarray]]


@dataclass
class StackStatistics:
    """Statistics from a stacking operation."""

    n_frames: int
    mean_clipped_fraction: float  # Average fraction of valid samples rejected per pixel
    missing_fraction: float  # Fraction of output pixels with no data
    snr_proxy: float  # median / (1.4826 * MAD) of the result


def _as_arrays(frames: Sequence[ArrayLike]) -> list[np.ndarray]:
    """Validate frames and return their pixel arrays."""
    if len(frames) == 0:
        raise InsufficientFramesError("Empty frame list")
    arrays = [f.pixels if isinstance(f, Frame) else np.asarray(f, dtype=np.float32) for f in frames]
    shape = arrays[0].shape
    if len(shape) != 2:
        raise ValueError(f"Frames must be 2D, got shape {shape}")
    for i, a in enumerate(arrays[1:], start=1):
        if a.shape != shape:
            name = getattr(frames[i], "name", "") or f"frame {i}"
            raise dimension_mismatch(name, a.shape, shape)
    return arrays


def _reduce_chunked(
    frames: Sequence[ArrayLike],
    reducer: Reducer,
    chunk_rows: int,
    label: str,
) -> tuple[np.ndarray, np.ndarray]:
    """Apply ``reducer`` to (n_frames, rows, width) chunks."""
    arrays = _as_arrays(frames)
    n_frames = len(arrays)
    height, width = arrays[0].shape
    chunk_rows = max(1, int(chunk_rows))

    logger.info(
        "Combining %d frames (%dx%d) with %s, chunk_rows=%d",
        n_frames, width, height, label, chunk_rows,
    )

    stacked = np.empty((height, width), dtype=np.float32)
    counts = np.empty((height, width), dtype=np.int32)
    chunk = np.empty((n_frames, min(chunk_rows, height), width), dtype=np.float32)

    n_chunks = (height + chunk_rows - 1) // chunk_rows
    with warnings.catch_warnings():
        # all-NaN slices and empty means are expected at uncovered pixels
        warnings.simplefilter("ignore", RuntimeWarning)
        warnings.simplefilter("ignore", AstropyUserWarning)
        for chunk_idx in range(n_chunks):
            row_start = chunk_idx * chunk_rows
            row_end = min(row_start + chunk_rows, height)
            cube = chunk[:, : row_end - row_start, :]
            for i, a in enumerate(arrays):
                cube[i] = a[row_start:row_end]
            values, n_used = reducer(cube)
            stacked[row_start:row_end] = values
            counts[row_start:row_end] = n_used

    return stacked, counts


def _nan_reducer(func: Callable[..., np.ndarray]) -> Reducer:
    def reduce(cube: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return func(cube, axis=0), np.isfinite(cube).sum(axis=0)

    return reduce


def _result(stacked: np.ndarray, counts: np.ndarray, return_counts: bool):
    return (stacked, counts) if return_counts else stacked


def stack_average(frames: Sequence[ArrayLike], chunk_rows: int = 64, return_counts: bool = False):
    """Per-pixel mean of the valid samples."""
    stacked, counts = _reduce_chunked(frames, _nan_reducer(np.nanmean), chunk_rows, "average")
    return _result(stacked, counts, return_counts)


def stack_median(frames: Sequence[ArrayLike], chunk_rows: int = 64, return_counts: bool = False):
    """
    Per-pixel median of the valid samples.

    Robust to a minority of outliers (satellite trails, cosmic rays) at
    the cost of some noise reduction compared with the mean.
    """
    stacked, counts = _reduce_chunked(frames, _nan_reducer(np.nanmedian), chunk_rows, "median")
    return _result(stacked, counts, return_counts)


def stack_min(frames: Sequence[ArrayLike], chunk_rows: int = 64, return_counts: bool = False):
    """Per-pixel minimum of the valid samples."""
    stacked, counts = _reduce_chunked(frames, _nan_reducer(np.nanmin), chunk_rows, "min")
    return _result(stacked, counts, return_counts)


def stack_max(frames: Sequence[ArrayLike], chunk_rows: int = 64, return_counts: bool = False):
    """Per-pixel maximum of the valid samples."""
    stacked, counts = _reduce_chunked(frames, _nan_reducer(np.nanmax), chunk_rows, "max")
    return _result(stacked, counts, return_counts)


def stack_sigma_clip(
    frames: Sequence[ArrayLike],
    sigma: float = 2.5,
    maxiters: int = 5,
    min_survivors: int = 2,
    chunk_rows: int = 64,
    return_counts: bool = False,
):
    """
    Compute sigma-clipped mean of image stack using chunked processing.

    Parameters
    ----------
    frames : sequence of np.ndarray or Frame
        2D images of identical shape.
    sigma : float, default 2.5
        Number of standard deviations for clipping threshold.
    maxiters : int, default 5
        Maximum number of clipping iterations.
    min_survivors : int, default 2
        A pixel keeping fewer than ``min(min_survivors, valid samples)``
        samples falls back to the unclipped mean.
    chunk_rows : int, default 64
        Number of rows to process at a time.
    return_counts : bool, default False
        Also return the number of samples kept per pixel.

    Returns
    -------
    np.ndarray or tuple[np.ndarray, np.ndarray]
        Stacked image (float32), and optionally the per-pixel counts.

    Notes
    -----
    Each iteration rejects samples further than ``sigma`` standard
    deviations from the mean at that pixel, until nothing more is
    rejected or ``maxiters`` is reached. Cosmic rays, satellites and hot
    pixels that appear in a few frames are removed this way.
    """
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")

    def reduce(cube: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        clipped = sigma_clip(
            cube,
            sigma=sigma,
            maxiters=maxiters,
            cenfunc="mean",
            stdfunc="std",
            axis=0,
            masked=True,
            copy=True,
        )
        kept = (~np.ma.getmaskarray(clipped)).sum(axis=0)
        n_valid = np.isfinite(cube).sum(axis=0)
        values = np.ma.mean(clipped, axis=0).filled(np.nan)

        fallback = kept < np.minimum(min_survivors, n_valid)
        if np.any(fallback):
            values[fallback] = np.nanmean(cube, axis=0)[fallback]
            kept = np.where(fallback, n_valid, kept)
        return values, kept

    stacked, counts = _reduce_chunked(frames, reduce, chunk_rows, f"sigma clip (sigma={sigma})")
    return _result(stacked, counts, return_counts)


def stack_winsorized_sigma_clip(
    frames: Sequence[ArrayLike],
    sigma: float = 2.5,
    maxiters: int = 5,
    chunk_rows: int = 64,
    return_counts: bool = False,
):
    """
    Winsorized sigma-clipped mean.

    Instead of discarding outliers, samples beyond ``mean +/- sigma * std``
    are pulled in to that bound, and the statistics are recomputed until
    nothing moves or ``maxiters`` is reached. Every valid sample keeps
    contributing, which holds up better than plain clipping on small
    stacks.
    """
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")

    def reduce(cube: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        values = cube.astype(np.float64)
        for _ in range(maxiters):
            mean = np.nanmean(values, axis=0)
            std = np.nanstd(values, axis=0)
            clamped = np.clip(values, mean - sigma * std, mean + sigma * std)
            if np.array_equal(clamped, values, equal_nan=True):
                break
            values = clamped
        return np.nanmean(values, axis=0), np.isfinite(cube).sum(axis=0)

    stacked, counts = _reduce_chunked(frames, reduce, chunk_rows, f"winsorized clip (sigma={sigma})")
    return _result(stacked, counts, return_counts)


def stack_weighted_average(
    frames: Sequence[ArrayLike],
    weights: Sequence[float],
    chunk_rows: int = 64,
    return_counts: bool = False,
):
    """
    Weighted mean of image stack.

    Parameters
    ----------
    frames : sequence of np.ndarray or Frame
        2D images of identical shape.
    weights : sequence of float
        One non-negative weight per frame; normalized to sum 1.
    chunk_rows : int, default 64
        Number of rows to process at a time.

    Returns
    -------
    np.ndarray
        Weighted mean (float32). At pixels where some samples are
        missing, the remaining weights are renormalized. All-zero weights
        fall back to the plain average.

    Raises
    ------
    ValueError
        If the number of weights differs from the number of frames, or a
        weight is negative or not finite.
    """
    if len(weights) != len(frames):
        raise ValueError(
            f"Number of weights ({len(weights)}) must match number of frames ({len(frames)})"
        )
    w = np.asarray(weights, dtype=np.float64).ravel()
    if np.all(np.isfinite(w)) and np.all(w >= 0) and w.sum() <= 0:
        logger.warning("All weights are zero, falling back to average")
        return stack_average(frames, chunk_rows=chunk_rows, return_counts=return_counts)
    w = normalize_weights(w)[:, None, None]

    def reduce(cube: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        valid = np.isfinite(cube)
        num = np.where(valid, cube * w, 0.0).sum(axis=0)
        den = np.where(valid, w, 0.0).sum(axis=0)
        values = np.full(num.shape, np.nan)
        np.divide(num, den, out=values, where=den > 0)
        return values, valid.sum(axis=0)

    stacked, counts = _reduce_chunked(frames, reduce, chunk_rows, "weighted average")
    return _result(stacked, counts, return_counts)


def combine(
    frames: Sequence[ArrayLike],
    method: str = "average",
    sigma: float = 2.5,
    maxiters: int = 5,
    weights: Sequence[float] | None = None,
    chunk_rows: int = 64,
    return_counts: bool = False,
):
    """
    Dispatch to the combiner for ``method``.

    ``weights`` is required for 'weighted' and ignored otherwise.
    """
    method = canonical_method(method)
    if method == "average":
        return stack_average(frames, chunk_rows, return_counts)
    if method == "median":
        return stack_median(frames, chunk_rows, return_counts)
    if method == "min":
        return stack_min(frames, chunk_rows, return_counts)
    if method == "max":
        return stack_max(frames, chunk_rows, return_counts)
    if method == "sigmaClip":
        return stack_sigma_clip(
            frames, sigma, maxiters, chunk_rows=chunk_rows, return_counts=return_counts
        )
    if method == "winsorizedSigmaClip":
        return stack_winsorized_sigma_clip(
            frames, sigma, maxiters, chunk_rows=chunk_rows, return_counts=return_counts
        )
    if weights is None:
        weights = np.ones(len(frames))
    return stack_weighted_average(frames, weights, chunk_rows, return_counts)


def compute_auto_stretch(
    pixels: np.ndarray,
    percentiles: tuple[float, float] = (1.0, 99.5),
    max_samples: int = 250_000,
) -> AutoStretch:
    """
    Display black and white points from percentiles of the finite pixels.

    Large images are sampled with a regular stride. Images without finite
    pixels, or with no spread between the percentiles, get (0, 1).
    """
    data = np.asarray(pixels).ravel()
    step = max(1, data.size // max_samples)
    sample = data[::step]
    sample = sample[np.isfinite(sample)]
    if sample.size == 0:
        return AutoStretch(0.0, 1.0)

    black, white = np.percentile(sample, percentiles)
    if white - black < 1e-10:
        return AutoStretch(0.0, 1.0)
    return AutoStretch(float(black), float(white))


def compute_stack_statistics(
    stacked: np.ndarray,
    counts: np.ndarray,
    n_valid: np.ndarray | None = None,
) -> StackStatistics:
    """
    Compute statistics for the stacked result.

    Parameters
    ----------
    stacked : np.ndarray
        Stacked image.
    counts : np.ndarray
        Samples that contributed per pixel.
    n_valid : np.ndarray, optional
        Valid samples available per pixel before rejection. Defaults to
        ``counts`` (no rejection).
    """
    n_frames = int(counts.max()) if counts.size else 0
    available = counts if n_valid is None else n_valid
    covered = available > 0
    if np.any(covered):
        clipped = 1.0 - counts[covered] / available[covered]
        clipped_fraction = float(np.mean(clipped))
    else:
        clipped_fraction = 0.0

    finite = stacked[np.isfinite(stacked)]
    missing = 1.0 - finite.size / stacked.size if stacked.size else 1.0
    if finite.size:
        signal = float(np.median(finite))
        noise = 1.4826 * float(np.median(np.abs(finite - signal)))
        snr_proxy = signal / noise if noise > 0 else 0.0
    else:
        snr_proxy = 0.0

    return StackStatistics(
        n_frames=n_frames,
        mean_clipped_fraction=clipped_fraction,
        missing_fraction=missing,
        snr_proxy=snr_proxy,
    )
