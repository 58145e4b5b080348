"""
Pytest configuration and fixtures.

Synthetic star fields are rendered from explicit star positions, so a
"shifted" or "rotated" frame is an exact re-rendering rather than a
resampled copy.
"""

import math

import numpy as np
import pytest

from lightstack.frame import Frame

FIELD_SHAPE = (160, 160)
STAR_SIGMA = 1.5


def make_star_positions(n_stars=25, shape=FIELD_SHAPE, margin=18, min_sep=15.0, seed=7):
    """Random (x, y) star positions at least ``min_sep`` pixels apart."""
    rng = np.random.default_rng(seed)
    height, width = shape
    points = []
    for _ in range(10000):
        if len(points) == n_stars:
            break
        x = rng.uniform(margin, width - margin)
        y = rng.uniform(margin, height - margin)
        if all((x - px) ** 2 + (y - py) ** 2 >= min_sep ** 2 for px, py in points):
            points.append((x, y))
    return np.array(points)


def render_star_field(
    positions,
    shape=FIELD_SHAPE,
    amplitudes=None,
    sigma=STAR_SIGMA,
    background=100.0,
    noise=3.0,
    seed=0,
):
    """Gaussian stars on a flat background with Gaussian read noise."""
    rng = np.random.default_rng(seed)
    height, width = shape
    if amplitudes is None:
        amplitudes = np.linspace(3000.0, 400.0, len(positions))
    image = np.full(shape, background, dtype=np.float64)
    if noise > 0:
        image += rng.normal(0.0, noise, shape)
    yy, xx = np.mgrid[0:height, 0:width]
    for (x0, y0), amp in zip(positions, amplitudes):
        image += amp * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))
    return image.astype(np.float32)


def rotate_positions(positions, angle_deg, center, shift=(0.0, 0.0)):
    """Rotate (x, y) points about ``center`` then shift them."""
    theta = math.radians(angle_deg)
    c, s = math.cos(theta), math.sin(theta)
    rel = np.asarray(positions) - center
    rotated = np.column_stack([c * rel[:, 0] - s * rel[:, 1], s * rel[:, 0] + c * rel[:, 1]])
    return rotated + center + np.asarray(shift)


@pytest.fixture
def star_positions():
    """Reference star positions for the default field."""
    return make_star_positions()


@pytest.fixture
def star_field(star_positions):
    """Factory rendering the default star field, optionally displaced."""

    def _create(shift=(0.0, 0.0), angle=0.0, seed=0, sigma=STAR_SIGMA, name="", noise=3.0):
        center = np.array([FIELD_SHAPE[1] / 2.0, FIELD_SHAPE[0] / 2.0])
        positions = rotate_positions(star_positions, angle, center, shift)
        pixels = render_star_field(positions, sigma=sigma, seed=seed, noise=noise)
        return Frame(pixels, name=name)

    return _create


@pytest.fixture
def blank_frame():
    """Factory for a star-free frame of noise only."""

    def _create(shape=FIELD_SHAPE, seed=11, name="blank"):
        pixels = render_star_field(np.empty((0, 2)), shape=shape, seed=seed)
        return Frame(pixels, name=name)

    return _create


@pytest.fixture
def constant_frames():
    """Factory for small constant frames."""

    def _create(values, shape=(8, 8)):
        return [np.full(shape, v, dtype=np.float32) for v in values]

    return _create
