"""
Star detection on single frames.

Pipeline: mesh background model, threshold at ``sigma_threshold`` times
the background noise, connected-component labelling, optional
deblending of merged blobs, then flux-weighted moments per star.

The detector is deterministic: the same pixels and options always give
the same star list, sorted by flux (brightest first).
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from scipy import ndimage

from .config import DetectionOptions
from .frame import Frame
from .utils import resolve_workers

logger = logging.getLogger(__name__)

# Gaussian sigma to FWHM: 2 * sqrt(2 ln 2)
FWHM_PER_SIGMA = 2.3548

# Gaussian sigma from median absolute deviation
MAD_TO_SIGMA = 1.4826

# A second seed must dip below this fraction of its own peak on the way
# to an accepted seed, otherwise it is a bump on the same star.
DEBLEND_SADDLE_RATIO = 0.75


@dataclass
class DetectedStar:
    """A detected star, in pixel coordinates of the frame it came from."""

    x: float
    y: float
    flux: float  # background-subtracted, summed over the footprint
    peak: float  # background-subtracted
    area: int  # footprint size in pixels
    fwhm: float  # pixels, from the second moments
    roundness: float  # minor/major axis ratio in [0, 1]
    ellipticity: float  # 1 - roundness
    theta: float = 0.0  # major axis angle in degrees
    snr: float = 0.0
    sharpness: float = 0.0  # peak / mean footprint value
    deblended: bool = False


def robust_stats(
    values: np.ndarray,
    clip_iters: int = 2,
    clip_sigma: float = 3.0,
) -> tuple[float, float]:
    """
    Median and MAD-based sigma with iterative clipping.

    Clipping stops early when it would keep fewer than max(8, 35%) of the
    finite samples. Returns (nan, nan) when there are no finite values.
    """
    data = np.asarray(values, dtype=np.float64).ravel()
    data = data[np.isfinite(data)]
    if data.size == 0:
        return float("nan"), float("nan")

    min_keep = max(8, int(0.35 * data.size))
    median = np.median(data)
    sigma = MAD_TO_SIGMA * np.median(np.abs(data - median))
    for _ in range(clip_iters):
        if sigma <= 0:
            break
        kept = data[np.abs(data - median) <= clip_sigma * sigma]
        if kept.size < min_keep or kept.size == data.size:
            break
        data = kept
        median = np.median(data)
        sigma = MAD_TO_SIGMA * np.median(np.abs(data - median))
    return float(median), float(sigma)


def _interp_matrix(n_pixels: int, n_cells: int, mesh_size: int) -> np.ndarray:
    """Linear interpolation weights from cell centres to pixel centres."""
    pos = (np.arange(n_pixels) + 0.5) / mesh_size - 0.5
    pos = np.clip(pos, 0, n_cells - 1)
    lo = np.floor(pos).astype(np.intp)
    hi = np.minimum(lo + 1, n_cells - 1)
    frac = (pos - lo).astype(np.float32)

    weights = np.zeros((n_pixels, n_cells), dtype=np.float32)
    rows = np.arange(n_pixels)
    np.add.at(weights, (rows, lo), 1.0 - frac)
    np.add.at(weights, (rows, hi), frac)
    return weights


def estimate_background(
    data: np.ndarray,
    mesh_size: int = 64,
    clip_iters: int = 2,
) -> tuple[np.ndarray, float]:
    """
    Estimate a smooth background map and a global noise level.

    The frame is divided into ``mesh_size`` cells; each cell gets a
    clipped median and sigma. Cell medians are bilinearly interpolated
    back to full resolution.

    Parameters
    ----------
    data : np.ndarray
        2D image. NaN pixels are ignored.
    mesh_size : int, default 64
        Cell size in pixels.
    clip_iters : int, default 2
        Clipping passes per cell.

    Returns
    -------
    tuple[np.ndarray, float]
        (background map as float32, noise). Noise is the median of the
        cell sigmas, or 1.0 if no cell yields a positive sigma.
    """
    height, width = data.shape
    ny = max(1, math.ceil(height / mesh_size))
    nx = max(1, math.ceil(width / mesh_size))

    medians = np.full((ny, nx), np.nan, dtype=np.float64)
    sigmas = np.full((ny, nx), np.nan, dtype=np.float64)
    for iy in range(ny):
        for ix in range(nx):
            cell = data[iy * mesh_size:(iy + 1) * mesh_size, ix * mesh_size:(ix + 1) * mesh_size]
            medians[iy, ix], sigmas[iy, ix] = robust_stats(cell, clip_iters)

    empty = ~np.isfinite(medians)
    if empty.all():
        medians[:] = 0.0
    elif empty.any():
        medians[empty] = np.median(medians[~empty])

    wy = _interp_matrix(height, ny, mesh_size)
    wx = _interp_matrix(width, nx, mesh_size)
    background = (wy @ medians.astype(np.float32) @ wx.T).astype(np.float32)

    good = sigmas[np.isfinite(sigmas) & (sigmas > 0)]
    noise = float(np.median(good)) if good.size else 1.0

    logger.debug("Background mesh %dx%d, noise=%.3f", nx, ny, noise)
    return background, noise


def _line_minimum(values: np.ndarray, a: tuple[int, int], b: tuple[int, int]) -> float:
    """Smallest value sampled on the segment between two pixels."""
    n = int(max(abs(a[0] - b[0]), abs(a[1] - b[1]))) + 1
    ys = np.rint(np.linspace(a[0], b[0], n)).astype(np.intp)
    xs = np.rint(np.linspace(a[1], b[1], n)).astype(np.intp)
    return float(values[ys, xs].min())


def _deblend(
    blob: np.ndarray,
    values: np.ndarray,
    options: DetectionOptions,
) -> list[tuple[np.ndarray, bool]]:
    """
    Split a blob around its brightest distinct peaks.

    Pixels go to the nearest accepted seed. Returns the blob unchanged
    when fewer than two seeds or sub-objects carry enough flux.
    """
    whole = [(blob, False)]
    if options.deblend_n_levels <= 1:
        return whole

    vals = np.where(blob, values, 0.0)
    positive = np.clip(vals, 0, None)
    total = float(positive.sum())
    if total <= 0:
        return whole

    peaks = blob & (vals > 0) & (vals == ndimage.maximum_filter(vals, size=3, mode="constant"))
    py, px = np.nonzero(peaks)
    if py.size <= 1:
        return whole

    local_flux = ndimage.uniform_filter(positive, size=3, mode="constant") * 9.0
    min_flux = options.deblend_min_contrast * total
    order = np.argsort(-vals[py, px], kind="stable")[: options.deblend_n_levels]

    seeds: list[tuple[int, int]] = []
    for i in order:
        cand = (int(py[i]), int(px[i]))
        if local_flux[cand] < min_flux:
            continue
        distinct = all(
            _line_minimum(vals, cand, seed) <= DEBLEND_SADDLE_RATIO * vals[cand]
            for seed in seeds
        )
        if distinct:
            seeds.append(cand)
    if len(seeds) <= 1:
        return whole

    ys, xs = np.nonzero(blob)
    seed_arr = np.asarray(seeds, dtype=np.float64)
    d2 = (ys[:, None] - seed_arr[:, 0]) ** 2 + (xs[:, None] - seed_arr[:, 1]) ** 2
    owner = np.argmin(d2, axis=1)

    parts = []
    for k in range(len(seeds)):
        part = np.zeros_like(blob)
        sel = owner == k
        part[ys[sel], xs[sel]] = True
        if positive[part].sum() >= min_flux:
            parts.append(part)
    if len(parts) <= 1:
        return whole
    return [(part, True) for part in parts]


def _measure(
    footprint: np.ndarray,
    residual: np.ndarray,
    origin: tuple[int, int],
    noise: float,
    deblended: bool,
) -> DetectedStar | None:
    """Flux-weighted centroid and second moments of one footprint."""
    ys, xs = np.nonzero(footprint)
    v = np.clip(residual[ys, xs].astype(np.float64), 0, None)
    flux = float(v.sum())
    if flux <= 0:
        return None

    cx = float((v * xs).sum() / flux)
    cy = float((v * ys).sum() / flux)
    dx = xs - cx
    dy = ys - cy
    sxx = float((v * dx * dx).sum() / flux)
    syy = float((v * dy * dy).sum() / flux)
    sxy = float((v * dx * dy).sum() / flux)

    half_trace = 0.5 * (sxx + syy)
    spread = math.sqrt(max(0.0, 0.25 * (sxx - syy) ** 2 + sxy * sxy))
    lambda1 = max(1e-12, half_trace + spread)
    lambda2 = max(1e-12, half_trace - spread)
    roundness = min(1.0, math.sqrt(lambda2 / lambda1))

    area = int(v.size)
    peak = float(v.max())
    return DetectedStar(
        x=cx + origin[1],
        y=cy + origin[0],
        flux=flux,
        peak=peak,
        area=area,
        fwhm=FWHM_PER_SIGMA * math.sqrt(0.5 * (lambda1 + lambda2)),
        roundness=roundness,
        ellipticity=1.0 - roundness,
        theta=math.degrees(0.5 * math.atan2(2 * sxy, sxx - syy)),
        snr=flux / (math.sqrt(area) * max(noise, 1e-12)),
        sharpness=peak / (flux / area),
        deblended=deblended,
    )


def _accept(star: DetectedStar, opts: DetectionOptions, width: int, height: int) -> bool:
    if not opts.min_area <= star.area <= opts.max_area:
        return False
    if not opts.min_fwhm <= star.fwhm <= opts.max_fwhm:
        return False
    if star.ellipticity > opts.max_ellipticity:
        return False
    if not opts.min_sharpness <= star.sharpness <= opts.max_sharpness:
        return False
    if opts.peak_max is not None and star.peak > opts.peak_max:
        return False
    if star.snr < opts.snr_min:
        return False
    margin = opts.border_margin
    return margin <= star.x < width - margin and margin <= star.y < height - margin


def detect_stars(
    image: Frame | np.ndarray,
    options: DetectionOptions | None = None,
) -> list[DetectedStar]:
    """
    Detect stars in a frame.

    Parameters
    ----------
    image : Frame or np.ndarray
        Single-channel image. NaN pixels never become part of a star.
    options : DetectionOptions, optional
        Detection parameters; unset fields come from the profile
        (default 'balanced').

    Returns
    -------
    list[DetectedStar]
        At most ``max_stars`` stars, sorted by descending flux. Empty for
        blank or all-NaN frames.
    """
    pixels = image.pixels if isinstance(image, Frame) else np.asarray(image, dtype=np.float32)
    if pixels.ndim != 2:
        raise ValueError(f"Expected a 2D image, got shape {pixels.shape}")
    opts = (options or DetectionOptions()).resolved()
    height, width = pixels.shape

    finite = np.isfinite(pixels)
    if not finite.any():
        return []

    background, noise = estimate_background(pixels, opts.mesh_size, opts.sigma_clip_iters)
    residual = np.where(finite, pixels - background, 0.0).astype(np.float32)

    if opts.apply_matched_filter and opts.filter_fwhm > 0:
        detection = ndimage.gaussian_filter(residual, sigma=opts.filter_fwhm / FWHM_PER_SIGMA)
    else:
        detection = residual

    mask = (detection >= opts.sigma_threshold * noise) & finite
    margin = opts.border_margin
    if margin > 0:
        mask[:margin, :] = False
        mask[-margin:, :] = False
        mask[:, :margin] = False
        mask[:, -margin:] = False

    structure = ndimage.generate_binary_structure(2, 1 if opts.connectivity == 4 else 2)
    labels, n_blobs = ndimage.label(mask, structure=structure)

    stars: list[DetectedStar] = []
    for index, region in enumerate(ndimage.find_objects(labels), start=1):
        if region is None:
            continue
        blob = labels[region] == index
        area = int(blob.sum())
        if area < opts.min_area or area > opts.max_area * opts.deblend_n_levels:
            continue
        origin = (region[0].start, region[1].start)
        for part, deblended in _deblend(blob, detection[region], opts):
            star = _measure(part, residual[region], origin, noise, deblended)
            if star is not None and _accept(star, opts, width, height):
                stars.append(star)

    stars.sort(key=lambda s: s.flux, reverse=True)
    logger.debug(
        "Detected %d stars from %d blobs (noise=%.3f, profile=%s)",
        min(len(stars), opts.max_stars), n_blobs, noise, opts.profile,
    )
    return stars[: opts.max_stars]


def detect_stars_batch(
    frames: Sequence[Frame],
    options: DetectionOptions | None = None,
    workers: int | None = None,
    should_stop: Callable[[], bool] | None = None,
    on_result: Callable[[int, list[DetectedStar]], None] | None = None,
) -> list[list[DetectedStar] | None]:
    """
    Run ``detect_stars`` over many frames on a thread pool.

    Output order follows ``frames``. When ``should_stop()`` turns true,
    pending frames are cancelled and their entries stay None. A frame whose
    detection raises is logged and gets an empty star list.
    """
    results: list[list[DetectedStar] | None] = [None] * len(frames)
    with ThreadPoolExecutor(max_workers=resolve_workers(workers)) as pool:
        futures = [pool.submit(detect_stars, frame, options) for frame in frames]
        for i, future in enumerate(futures):
            if should_stop is not None and should_stop():
                for pending in futures[i:]:
                    pending.cancel()
                break
            try:
                results[i] = future.result()
            except Exception as e:
                logger.warning("Star detection failed for %s: %s", frames[i].name or "frame", e)
                results[i] = []
            if on_result is not None:
                on_result(i, results[i])
    return results
