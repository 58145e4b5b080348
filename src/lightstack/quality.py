"""
Frame quality assessment.

Explainable, deterministic metrics: sky background and noise from the
pixels away from stars, star count, median FWHM, mean roundness and a
star-peak SNR, folded into one 0-100 score.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Sequence

import numpy as np

from .config import DetectionOptions, FrameQuality, QualityOptions
from .detect import DetectedStar, detect_stars
from .frame import Frame
from .utils import resolve_workers, shared_executor

logger = logging.getLogger(__name__)

# Sky estimates need at least this many pixels outside the star mask
MIN_SKY_PIXELS = 16


def median_absolute_deviation(data: np.ndarray) -> float:
    """
    Compute the Median Absolute Deviation (MAD), ignoring NaN.

    MAD = median(|x - median(x)|)

    Parameters
    ----------
    data : np.ndarray
        Input data array.

    Returns
    -------
    float
        MAD value (NaN for no finite data).
    """
    values = np.asarray(data, dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return float("nan")
    median = np.median(values)
    return float(np.median(np.abs(values - median)))


def estimate_noise_mad(data: np.ndarray) -> float:
    """
    Estimate noise level using MAD-based robust estimator.

    For Gaussian noise: sigma = 1.4826 * MAD
    """
    return 1.4826 * median_absolute_deviation(data)


def star_mask(
    shape: tuple[int, int],
    stars: Sequence[DetectedStar],
    scale: float = 2.0,
) -> np.ndarray:
    """
    Boolean mask of discs of radius ``scale * fwhm`` around each star.

    Only the bounding box of each disc is touched, so large frames with
    few stars stay cheap.
    """
    height, width = shape
    mask = np.zeros(shape, dtype=bool)
    for star in stars:
        radius = max(1.5, scale * star.fwhm)
        y0 = max(0, int(math.floor(star.y - radius)))
        y1 = min(height, int(math.ceil(star.y + radius)) + 1)
        x0 = max(0, int(math.floor(star.x - radius)))
        x1 = min(width, int(math.ceil(star.x + radius)) + 1)
        if y0 >= y1 or x0 >= x1:
            continue
        yy, xx = np.ogrid[y0:y1, x0:x1]
        mask[y0:y1, x0:x1] |= (yy - star.y) ** 2 + (xx - star.x) ** 2 <= radius * radius
    return mask


def compute_score(
    star_count: int,
    median_fwhm: float,
    snr: float,
    roundness: float,
    options: QualityOptions | None = None,
) -> float:
    """
    Combine sub-scores into one 0-100 quality score.

    Sub-scores (each 0-100):

    - FWHM: 100 at ``fwhm_best``, 0 at ``fwhm_worst``, linear between
    - SNR: ``20 * log10(snr)``
    - star count: ``star_count_scale`` points per star
    - roundness: ``100 * roundness``

    A frame without stars scores 0 on every term.
    """
    opts = options or QualityOptions()
    if star_count <= 0:
        return 0.0

    w_fwhm, w_snr, w_count, w_round = opts.normalized_weights()
    if median_fwhm > 0:
        span = opts.fwhm_worst - opts.fwhm_best
        fwhm_score = 100.0 * (1.0 - (median_fwhm - opts.fwhm_best) / span)
    else:
        fwhm_score = 0.0
    snr_score = 20.0 * math.log10(snr) if snr > 0 else 0.0
    count_score = opts.star_count_scale * star_count
    round_score = 100.0 * roundness

    def clamp(v: float) -> float:
        return min(100.0, max(0.0, v))

    score = (
        w_fwhm * clamp(fwhm_score)
        + w_snr * clamp(snr_score)
        + w_count * clamp(count_score)
        + w_round * clamp(round_score)
    )
    return round(clamp(score), 2)


def evaluate_frame_quality(
    frame: Frame,
    detection: DetectionOptions | None = None,
    options: QualityOptions | None = None,
    stars: Sequence[DetectedStar] | None = None,
) -> FrameQuality:
    """
    Measure the quality of one frame.

    Parameters
    ----------
    frame : Frame
        Calibrated frame.
    detection : DetectionOptions, optional
        Used only when ``stars`` is not supplied.
    options : QualityOptions, optional
        Scoring parameters.
    stars : sequence of DetectedStar, optional
        Pre-computed detections for this frame.

    Returns
    -------
    FrameQuality
        Background median and noise come from pixels outside the star
        mask (all finite pixels if too few remain). SNR is the median star
        peak over the background noise.
    """
    opts = options or QualityOptions()
    if stars is None:
        stars = detect_stars(frame, detection)

    pixels = frame.pixels
    sky_mask = np.isfinite(pixels) & ~star_mask(frame.shape, stars, opts.star_mask_scale)
    sky = pixels[sky_mask]
    if sky.size < MIN_SKY_PIXELS:
        sky = pixels[np.isfinite(pixels)]

    if sky.size == 0:
        background, noise = float("nan"), float("nan")
    else:
        background = float(np.median(sky))
        noise = estimate_noise_mad(sky)

    star_count = len(stars)
    if star_count:
        median_fwhm = float(np.median([s.fwhm for s in stars]))
        roundness = float(np.mean([s.roundness for s in stars]))
        peak = float(np.median([s.peak for s in stars]))
        snr = peak / noise if noise > 0 else 0.0
    else:
        median_fwhm = roundness = snr = 0.0

    score = compute_score(star_count, median_fwhm, snr, roundness, opts)
    logger.debug(
        "Quality %s: stars=%d fwhm=%.2f snr=%.1f round=%.2f score=%.1f",
        frame.name, star_count, median_fwhm, snr, roundness, score,
    )
    return FrameQuality(
        background_median=background,
        background_noise=noise,
        snr=snr,
        star_count=star_count,
        median_fwhm=median_fwhm,
        roundness=roundness,
        score=score,
        name=frame.name,
        stars=list(stars),
    )


def evaluate_frame_quality_async(
    frame: Frame,
    detection: DetectionOptions | None = None,
    options: QualityOptions | None = None,
    executor: Executor | None = None,
    **kwargs: Any,
) -> Future:
    """Submit ``evaluate_frame_quality`` to an executor and return its Future."""
    pool = executor or shared_executor()
    return pool.submit(evaluate_frame_quality, frame, detection, options, **kwargs)


def evaluate_frames(
    frames: Sequence[Frame],
    detection: DetectionOptions | None = None,
    options: QualityOptions | None = None,
    frame_stars: Sequence[Sequence[DetectedStar] | None] | None = None,
    workers: int | None = None,
    should_stop: Callable[[], bool] | None = None,
    on_result: Callable[[int, FrameQuality | None], None] | None = None,
) -> list[FrameQuality | None]:
    """
    Evaluate many frames on a thread pool.

    A frame whose evaluation raises gets None (logged as a warning) and is
    otherwise unaffected. Output order follows ``frames``.
    """
    stars = list(frame_stars) if frame_stars is not None else [None] * len(frames)
    results: list[FrameQuality | None] = [None] * len(frames)

    with ThreadPoolExecutor(max_workers=resolve_workers(workers)) as pool:
        futures = [
            pool.submit(evaluate_frame_quality, frame, detection, options, stars[i])
            for i, frame in enumerate(frames)
        ]
        for i, future in enumerate(futures):
            if should_stop is not None and should_stop():
                for pending in futures[i:]:
                    pending.cancel()
                break
            try:
                results[i] = future.result()
            except (ValueError, FloatingPointError) as e:
                logger.warning("Quality evaluation failed for %s: %s", frames[i].name, e)
            if on_result is not None:
                on_result(i, results[i])

    scored = [q.score for q in results if q is not None]
    if scored:
        logger.info(
            "Evaluated %d frames: score median=%.1f, range=[%.1f, %.1f]",
            len(scored), float(np.median(scored)), min(scored), max(scored),
        )
    return results


def rank_frames(qualities: Sequence[FrameQuality | None]) -> list[int]:
    """Frame indices sorted best first; unevaluated frames go last."""
    return sorted(
        range(len(qualities)),
        key=lambda i: (qualities[i] is None, -(qualities[i].score if qualities[i] else 0.0), i),
    )
