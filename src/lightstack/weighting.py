"""Per-frame stacking weights derived from quality scores."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .config import FrameQuality

logger = logging.getLogger(__name__)


def quality_to_weights(
    qualities: Sequence[FrameQuality | None],
    power: float = 1.0,
) -> np.ndarray:
    """
    Turn quality scores into weights that sum to 1.

    Weight ``i`` is ``score_i ** power / sum(score ** power)``. Frames
    without a score (None) or with score 0 get weight 0. If no frame has
    a positive score, every frame gets ``1 / N``.

    Parameters
    ----------
    qualities : sequence of FrameQuality or None
        One entry per frame, in stacking order.
    power : float, default 1.0
        Exponent applied to scores; > 1 favours the best frames.

    Returns
    -------
    np.ndarray
        float64 weights, same length as ``qualities``.
    """
    n = len(qualities)
    if n == 0:
        return np.zeros(0)

    scores = np.array(
        [q.score if q is not None and np.isfinite(q.score) else 0.0 for q in qualities],
        dtype=np.float64,
    )
    raw = np.clip(scores, 0.0, None) ** power
    total = raw.sum()
    if total <= 0:
        logger.warning("No positive quality scores, using equal weights for %d frames", n)
        return np.full(n, 1.0 / n)
    return raw / total


def normalize_weights(weights: Sequence[float]) -> np.ndarray:
    """
    Validate and rescale weights to sum to 1.

    Raises
    ------
    ValueError
        For negative or non-finite weights, or an all-zero vector.
    """
    w = np.asarray(weights, dtype=np.float64).ravel()
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise ValueError(f"Weights must be finite and non-negative, got {w.tolist()}")
    total = w.sum()
    if total <= 0:
        raise ValueError("Weights must not all be zero")
    return w / total
