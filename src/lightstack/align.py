"""
Frame registration against a reference frame.

Stars are matched between frames with triangle side-ratio invariants (or
with all pairwise offsets in translation mode), a transform is chosen by
RANSAC and refined by least squares on its inliers, and the target is
resampled onto the reference grid with scikit-image.

Transform matrices are 3x3 homogeneous and map target pixel coordinates
``(x, y)`` onto reference pixel coordinates.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Any, Callable, Literal, Sequence

import numpy as np
from scipy.spatial import cKDTree
from skimage.transform import AffineTransform, warp

from .config import (
    ALIGNMENT_MODES,
    AlignmentMode,
    AlignmentOptions,
    DetectionOptions,
    FrameQuality,
)
from .detect import DetectedStar, detect_stars
from .frame import Frame, check_same_shape
from .utils import resolve_workers, shared_executor

logger = logging.getLogger(__name__)

TransformKind = Literal["identity", "translation", "similarity", "affine"]

# Minimal correspondences needed to fit each model
MIN_SAMPLES = {"translation": 1, "similarity": 2, "affine": 3}

# Linear part determinant outside this range is not a plausible frame-to-frame map
_DET_RANGE = (0.25, 4.0)


class AlignmentState(Enum):
    """Lifecycle of a single frame's alignment."""

    PENDING = "pending"
    DETECTING = "detecting"
    MATCHING = "matching"
    FITTING = "fitting"
    FALLBACK_FITTING = "fallback_fitting"
    RESAMPLING = "resampling"
    ALIGNED = "aligned"
    FAILED = "failed"


@dataclass
class AlignmentTransform:
    """Fitted transform and the diagnostics behind it."""

    kind: TransformKind = "identity"
    matrix: np.ndarray = field(default_factory=lambda: np.eye(3))
    matched_stars: int = 0
    """Inlier star pairs (-1 for the reference frame itself)."""

    rms_error: float = 0.0
    """RMS residual of the inliers, in pixels."""

    detection_counts: dict[str, int] = field(
        default_factory=lambda: {"reference": 0, "target": 0}
    )
    fallback_used: Literal["none", "translation"] = "none"
    name: str = ""

    @property
    def translation(self) -> tuple[float, float]:
        return float(self.matrix[0, 2]), float(self.matrix[1, 2])

    @property
    def rotation_deg(self) -> float:
        return math.degrees(math.atan2(self.matrix[1, 0], self.matrix[0, 0]))

    @property
    def scale(self) -> float:
        return math.sqrt(abs(np.linalg.det(self.matrix[:2, :2])))


@dataclass
class AlignmentResult:
    """Result of aligning a single frame."""

    name: str
    success: bool
    aligned: Frame | None
    transform: AlignmentTransform
    state: AlignmentState
    error_message: str = ""
    history: list[AlignmentState] = field(default_factory=list)


@dataclass
class _Fit:
    matrix: np.ndarray
    src_idx: np.ndarray
    ref_idx: np.ndarray
    rms: float

    @property
    def n_inliers(self) -> int:
        return int(self.src_idx.size)


def transform_to_dict(transform: AlignmentTransform) -> dict:
    """Convert an AlignmentTransform to a JSON-serializable dict."""
    tx, ty = transform.translation
    return {
        "name": transform.name,
        "kind": transform.kind,
        "matrix": np.asarray(transform.matrix, dtype=float).tolist(),
        "matched_stars": transform.matched_stars,
        "rms_error": float(transform.rms_error),
        "detection_counts": dict(transform.detection_counts),
        "fallback_used": transform.fallback_used,
        "tx": tx,
        "ty": ty,
        "rotation_deg": transform.rotation_deg,
        "scale": transform.scale,
    }


# --------------------------------------------------------------------------
# Model fitting
# --------------------------------------------------------------------------


def _apply(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    return points @ matrix[:2, :2].T + matrix[:2, 2]


def estimate_transform(
    kind: str,
    src: np.ndarray,
    dst: np.ndarray,
) -> np.ndarray | None:
    """
    Least-squares transform mapping ``src`` points onto ``dst`` points.

    Parameters
    ----------
    kind : {'translation', 'similarity', 'affine'}
        Model family.
    src, dst : np.ndarray
        Corresponding (n, 2) arrays of (x, y) coordinates.

    Returns
    -------
    np.ndarray or None
        3x3 matrix, or None for too few or degenerate correspondences.
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    n = len(src)
    if n < MIN_SAMPLES[kind]:
        return None

    matrix = np.eye(3)
    if kind == "translation":
        matrix[:2, 2] = (dst - src).mean(axis=0)
        return matrix

    if kind == "similarity":
        # [x -y 1 0] [a b tx ty]^T = u ; [y x 0 1] [...] = v
        design = np.zeros((2 * n, 4))
        design[0::2] = np.column_stack([src[:, 0], -src[:, 1], np.ones(n), np.zeros(n)])
        design[1::2] = np.column_stack([src[:, 1], src[:, 0], np.zeros(n), np.ones(n)])
        if np.linalg.matrix_rank(design) < 4:
            return None
        (a, b, tx, ty), *_ = np.linalg.lstsq(design, dst.reshape(-1), rcond=None)
        matrix[:2] = [[a, -b, tx], [b, a, ty]]
    else:
        design = np.column_stack([src, np.ones(n)])
        if np.linalg.matrix_rank(design) < 3:
            return None
        params, *_ = np.linalg.lstsq(design, dst, rcond=None)
        matrix[:2] = params.T

    det = abs(np.linalg.det(matrix[:2, :2]))
    if not _DET_RANGE[0] <= det <= _DET_RANGE[1]:
        return None
    return matrix


def _inliers(
    matrix: np.ndarray,
    src: np.ndarray,
    ref_tree: cKDTree,
    threshold: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """One-to-one nearest-neighbour matches within ``threshold`` pixels."""
    dist, ref_idx = ref_tree.query(_apply(matrix, src), distance_upper_bound=threshold)
    ok = np.isfinite(dist)
    src_idx = np.nonzero(ok)[0]
    dist, ref_idx = dist[ok], ref_idx[ok]

    # Keep the closest source star when several land on one reference star
    order = np.argsort(dist, kind="stable")
    _, first = np.unique(ref_idx[order], return_index=True)
    keep = np.sort(order[first])
    return src_idx[keep], ref_idx[keep], dist[keep]


def _score(
    kind: str,
    matrix: np.ndarray,
    src: np.ndarray,
    ref: np.ndarray,
    ref_tree: cKDTree,
    threshold: float,
    refine_rounds: int = 3,
) -> _Fit | None:
    """Refit on inliers until the inlier set stops changing."""
    src_idx, ref_idx, dist = _inliers(matrix, src, ref_tree, threshold)
    for _ in range(refine_rounds):
        if src_idx.size < MIN_SAMPLES[kind]:
            break
        refit = estimate_transform(kind, src[src_idx], ref[ref_idx])
        if refit is None:
            break
        new_src, new_ref, new_dist = _inliers(refit, src, ref_tree, threshold)
        if new_src.size < src_idx.size:
            break
        matrix = refit
        unchanged = np.array_equal(new_src, src_idx) and np.array_equal(new_ref, ref_idx)
        src_idx, ref_idx, dist = new_src, new_ref, new_dist
        if unchanged:
            break
    if src_idx.size == 0:
        return None
    rms = float(np.sqrt(np.mean(dist ** 2)))
    return _Fit(matrix, src_idx, ref_idx, rms)


def _ransac(
    kind: str,
    samples: Sequence[tuple[np.ndarray, np.ndarray]],
    src: np.ndarray,
    ref: np.ndarray,
    options: AlignmentOptions,
    rng: np.random.Generator,
) -> _Fit | None:
    """
    Best model over candidate minimal samples.

    Every sample is tried when there are no more than
    ``max_ransac_iterations`` of them; otherwise a random subset is.
    """
    if not samples:
        return None
    if len(samples) > options.max_ransac_iterations:
        picks = rng.choice(len(samples), options.max_ransac_iterations, replace=False)
    else:
        picks = range(len(samples))

    ref_tree = cKDTree(ref)
    best: _Fit | None = None
    for i in picks:
        src_sel, ref_sel = samples[i]
        matrix = estimate_transform(kind, src[src_sel], ref[ref_sel])
        if matrix is None:
            continue
        fit = _score(kind, matrix, src, ref, ref_tree, options.inlier_threshold, refine_rounds=0)
        if fit is None:
            continue
        if best is None or (fit.n_inliers, -fit.rms) > (best.n_inliers, -best.rms):
            best = fit

    if best is None:
        return None
    return _score(kind, best.matrix, src, ref, ref_tree, options.inlier_threshold)


def _star_points(stars: Sequence[DetectedStar], limit: int) -> np.ndarray:
    ranked = sorted(stars, key=lambda s: s.flux, reverse=True)[:limit]
    return np.array([(s.x, s.y) for s in ranked], dtype=np.float64).reshape(-1, 2)


def triangle_invariants(
    points: np.ndarray,
    n_neighbors: int = 5,
    min_side: float = 1.0,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Build triangles from each star and its nearest neighbours.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (invariants, vertices). ``invariants`` is (m, 2) holding the
        shortest and middle side lengths divided by the longest side.
        ``vertices`` is (m, 3) star indices ordered by the length of the
        opposite side, so matched triangles pair their vertices in order.
    """
    n = len(points)
    if n < 3:
        return np.empty((0, 2)), np.empty((0, 3), dtype=np.intp)

    k = min(n_neighbors + 1, n)
    _, neighbours = cKDTree(points).query(points, k=k)
    triangles = set()
    for row in np.atleast_2d(neighbours):
        triangles.update(combinations(sorted(int(i) for i in row), 3))
    tris = np.array(sorted(triangles), dtype=np.intp)

    p = points[tris]
    sides = np.stack(
        [
            np.linalg.norm(p[:, 1] - p[:, 2], axis=1),
            np.linalg.norm(p[:, 2] - p[:, 0], axis=1),
            np.linalg.norm(p[:, 0] - p[:, 1], axis=1),
        ],
        axis=1,
    )
    order = np.argsort(sides, axis=1, kind="stable")
    sides = np.take_along_axis(sides, order, axis=1)
    vertices = np.take_along_axis(tris, order, axis=1)

    valid = sides[:, 0] >= min_side
    sides, vertices = sides[valid], vertices[valid]
    invariants = np.column_stack([sides[:, 0] / sides[:, 2], sides[:, 1] / sides[:, 2]])
    return invariants, vertices


def _triangle_samples(
    src: np.ndarray, ref: np.ndarray, options: AlignmentOptions
) -> list[tuple[np.ndarray, np.ndarray]]:
    src_inv, src_tri = triangle_invariants(src, options.triangle_neighbors)
    ref_inv, ref_tri = triangle_invariants(ref, options.triangle_neighbors)
    if len(src_inv) == 0 or len(ref_inv) == 0:
        return []
    hits = cKDTree(ref_inv).query_ball_point(src_inv, r=options.invariant_tolerance)
    return [(src_tri[i], ref_tri[j]) for i, js in enumerate(hits) for j in js]


def _pair_samples(n_src: int, n_ref: int) -> list[tuple[np.ndarray, np.ndarray]]:
    return [
        (np.array([i]), np.array([j]))
        for i in range(n_src)
        for j in range(n_ref)
    ]


def fit_star_transform(
    reference_stars: Sequence[DetectedStar],
    target_stars: Sequence[DetectedStar],
    kind: str = "affine",
    options: AlignmentOptions | None = None,
    rng: np.random.Generator | None = None,
) -> tuple[np.ndarray, int, float] | None:
    """
    Fit a transform from target star positions to reference positions.

    Parameters
    ----------
    reference_stars, target_stars : sequence of DetectedStar
        Star lists, typically from ``detect_stars``.
    kind : {'translation', 'similarity', 'affine'}
        Model family. Translation uses all star pair offsets as RANSAC
        samples; the others use matched triangles.
    options : AlignmentOptions, optional
    rng : np.random.Generator, optional
        Source of randomness for RANSAC subsampling.

    Returns
    -------
    tuple or None
        (matrix, n_inliers, rms_error), or None if no sample produced a
        model with at least ``min_matches`` inliers.
    """
    opts = options or AlignmentOptions()
    rng = rng if rng is not None else np.random.default_rng(opts.seed)
    src = _star_points(target_stars, opts.max_control_stars)
    ref = _star_points(reference_stars, opts.max_control_stars)
    if len(src) == 0 or len(ref) == 0:
        return None

    if kind == "translation":
        samples = _pair_samples(len(src), len(ref))
    else:
        samples = _triangle_samples(src, ref, opts)

    fit = _ransac(kind, samples, src, ref, opts, rng)
    if fit is None or fit.n_inliers < opts.min_matches:
        return None
    return fit.matrix, fit.n_inliers, fit.rms


# --------------------------------------------------------------------------
# Resampling
# --------------------------------------------------------------------------


def apply_transform_to_image(
    image: np.ndarray,
    transform_matrix: np.ndarray,
    output_shape: tuple[int, int] | None = None,
    order: int = 1,
    fill_value: float = float("nan"),
) -> np.ndarray:
    """
    Resample an image onto the reference grid.

    Parameters
    ----------
    image : np.ndarray
        2D image to transform.
    transform_matrix : np.ndarray
        3x3 matrix mapping image coordinates to output coordinates.
    output_shape : tuple, optional
        Output shape. If None, uses input shape.
    order : int, default 1
        Interpolation order (1 = bilinear).
    fill_value : float, default NaN
        Value for output pixels with no source data.

    Returns
    -------
    np.ndarray
        Warped image (float32).
    """
    if output_shape is None:
        output_shape = image.shape
    if np.allclose(transform_matrix, np.eye(3)) and tuple(output_shape) == image.shape:
        return np.array(image, dtype=np.float32, copy=True)

    # warp() wants the output -> input map and a writable source buffer
    inverse = AffineTransform(matrix=np.asarray(transform_matrix, dtype=np.float64)).inverse
    warped = warp(
        np.array(image, dtype=np.float32, copy=True),
        inverse,
        output_shape=output_shape,
        order=order,
        mode="constant",
        cval=fill_value,
        clip=False,
        preserve_range=True,
    )
    return warped.astype(np.float32)


# --------------------------------------------------------------------------
# Per-frame alignment
# --------------------------------------------------------------------------


def align_frame(
    reference: Frame,
    target: Frame,
    mode: AlignmentMode = "full",
    options: AlignmentOptions | None = None,
    detection: DetectionOptions | None = None,
    reference_stars: Sequence[DetectedStar] | None = None,
    target_stars: Sequence[DetectedStar] | None = None,
    seed: Any = None,
) -> AlignmentResult:
    """
    Align one frame to a reference frame.

    Parameters
    ----------
    reference, target : Frame
        Frames of identical shape.
    mode : {'none', 'translation', 'full'}, default 'full'
        'full' fits ``options.full_model`` (affine or similarity).
    options : AlignmentOptions, optional
    detection : DetectionOptions, optional
        Used only when star lists are not supplied.
    reference_stars, target_stars : sequence of DetectedStar, optional
        Pre-computed detections (skips detection).
    seed : int or sequence of int, optional
        RANSAC seed; defaults to ``options.seed``.

    Returns
    -------
    AlignmentResult
        Failures are reported with ``success=False`` and
        ``state=AlignmentState.FAILED``; they are not raised.

    Raises
    ------
    DimensionMismatchError
        If the frames do not share a shape.
    """
    if mode not in ALIGNMENT_MODES:
        raise ValueError(f"mode must be one of {list(ALIGNMENT_MODES)}, got {mode!r}")
    opts = options or AlignmentOptions()
    check_same_shape(target, reference.shape)
    history = [AlignmentState.PENDING]
    transform = AlignmentTransform(name=target.name)

    def finish(state: AlignmentState, aligned: Frame | None, message: str = "") -> AlignmentResult:
        history.append(state)
        if state is AlignmentState.FAILED:
            logger.warning("Alignment failed for %s: %s", target.name or "frame", message)
        return AlignmentResult(
            name=target.name,
            success=state is AlignmentState.ALIGNED,
            aligned=aligned,
            transform=transform,
            state=state,
            error_message=message,
            history=history,
        )

    if mode == "none":
        return finish(AlignmentState.ALIGNED, target)

    if reference_stars is None or target_stars is None:
        history.append(AlignmentState.DETECTING)
        if reference_stars is None:
            reference_stars = detect_stars(reference, detection)
        if target_stars is None:
            target_stars = detect_stars(target, detection)
    transform.detection_counts = {
        "reference": len(reference_stars),
        "target": len(target_stars),
    }
    if min(len(reference_stars), len(target_stars)) < opts.min_matches:
        return finish(
            AlignmentState.FAILED,
            None,
            f"Too few stars (reference={len(reference_stars)}, target={len(target_stars)}, "
            f"need {opts.min_matches})",
        )

    rng = np.random.default_rng(opts.seed if seed is None else seed)
    kind = "translation" if mode == "translation" else opts.full_model
    history.extend([AlignmentState.MATCHING, AlignmentState.FITTING])
    try:
        fit = fit_star_transform(reference_stars, target_stars, kind, opts, rng)
        if fit is None and kind != "translation" and opts.fallback_to_translation:
            history.append(AlignmentState.FALLBACK_FITTING)
            logger.debug("Full fit failed for %s, trying translation", target.name)
            fit = fit_star_transform(reference_stars, target_stars, "translation", opts, rng)
            if fit is not None:
                kind = "translation"
                transform.fallback_used = "translation"
    except (ValueError, np.linalg.LinAlgError) as e:
        return finish(AlignmentState.FAILED, None, f"Transform fit failed: {e}")

    if fit is None:
        return finish(
            AlignmentState.FAILED,
            None,
            f"No transform with at least {opts.min_matches} matched stars",
        )

    transform.matrix, transform.matched_stars, transform.rms_error = fit
    transform.kind = kind

    history.append(AlignmentState.RESAMPLING)
    warped = apply_transform_to_image(
        target.pixels,
        transform.matrix,
        output_shape=reference.shape,
        order=opts.interpolation_order,
        fill_value=opts.fill_value,
    )
    logger.debug(
        "Aligned %s: %s, %d matches, rms=%.3f px",
        target.name, kind, transform.matched_stars, transform.rms_error,
    )
    return finish(AlignmentState.ALIGNED, target.with_pixels(warped))


def align_frame_async(
    reference: Frame,
    target: Frame,
    mode: AlignmentMode = "full",
    options: AlignmentOptions | None = None,
    executor: Executor | None = None,
    **kwargs: Any,
) -> Future:
    """
    Submit ``align_frame`` to an executor and return its Future.

    Uses a shared module thread pool when ``executor`` is None. Extra
    keyword arguments are passed through to ``align_frame``.
    """
    pool = executor or shared_executor()
    return pool.submit(align_frame, reference, target, mode, options, **kwargs)


def _failed_result(frame: Frame, error: Exception) -> AlignmentResult:
    """Record an exception raised while aligning one frame."""
    logger.warning("Alignment error for %s: %s", frame.name or "frame", error)
    return AlignmentResult(
        name=frame.name,
        success=False,
        aligned=None,
        transform=AlignmentTransform(name=frame.name),
        state=AlignmentState.FAILED,
        error_message=f"Alignment error: {error}",
        history=[AlignmentState.PENDING, AlignmentState.FAILED],
    )


def align_frames(
    reference: Frame,
    frames: Sequence[Frame],
    mode: AlignmentMode = "full",
    options: AlignmentOptions | None = None,
    detection: DetectionOptions | None = None,
    reference_stars: Sequence[DetectedStar] | None = None,
    frame_stars: Sequence[Sequence[DetectedStar] | None] | None = None,
    workers: int | None = None,
    should_stop: Callable[[], bool] | None = None,
    on_result: Callable[[int, AlignmentResult], None] | None = None,
) -> list[AlignmentResult | None]:
    """
    Align many frames to one reference on a thread pool.

    Frame ``i`` uses RANSAC seed ``[options.seed, i]``, so results do not
    depend on scheduling. Output order follows ``frames``; entries stay
    None for frames skipped after ``should_stop()`` turned true. A frame whose
    worker raises gets a failed result instead of aborting the batch.
    """
    opts = options or AlignmentOptions()
    if reference_stars is None and mode != "none":
        reference_stars = detect_stars(reference, detection)
    stars = list(frame_stars) if frame_stars is not None else [None] * len(frames)

    results: list[AlignmentResult | None] = [None] * len(frames)
    with ThreadPoolExecutor(max_workers=resolve_workers(workers)) as pool:
        futures = [
            pool.submit(
                align_frame,
                reference,
                frame,
                mode,
                opts,
                detection,
                reference_stars,
                stars[i],
                [opts.seed, i],
            )
            for i, frame in enumerate(frames)
        ]
        for i, future in enumerate(futures):
            if should_stop is not None and should_stop():
                for pending in futures[i:]:
                    pending.cancel()
                break
            try:
                results[i] = future.result()
            except Exception as e:
                results[i] = _failed_result(frames[i], e)
            if on_result is not None:
                on_result(i, results[i])

    n_ok = sum(1 for r in results if r is not None and r.success)
    logger.info("Aligned %d/%d frames (%s)", n_ok, len(frames), mode)
    return results


def select_reference_frame(
    qualities: Sequence[FrameQuality | None] | None,
    method: Literal["first", "best"] = "first",
) -> int:
    """
    Pick the reference frame index.

    'best' takes the highest quality score (ties go to the earlier
    frame); without any scores it falls back to frame 0.
    """
    if method == "first":
        return 0
    if method != "best":
        raise ValueError(f"Unknown reference selection method: {method}")

    scored = [(q.score, -i) for i, q in enumerate(qualities or []) if q is not None]
    if not scored:
        logger.warning("No quality scores available, using first frame as reference")
        return 0
    score, neg_index = max(scored)
    logger.info("Selected frame %d as reference (score=%.1f)", -neg_index, score)
    return -neg_index
