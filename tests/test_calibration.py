"""
Tests for frames and calibration.

Tests cover:
- Frame construction, immutability and buffer layout
- Master dark, bias and flat creation
- Light frame calibration and its numeric guards
"""

import numpy as np
import pytest

from lightstack.calibration import (
    calibrate_frame,
    create_master_bias,
    create_master_dark,
    create_master_flat,
    normalize_flat,
)
from lightstack.config import DimensionMismatchError, InsufficientFramesError
from lightstack.frame import Frame, FrameRef, check_same_shape, frame_name


def _frame(value, shape=(4, 4), name="", kind="light"):
    return Frame(np.full(shape, value, dtype=np.float32), name=name, kind=kind)


class TestFrame:
    """Tests for the Frame container."""

    def test_copies_and_freezes(self):
        """The frame keeps a private read-only copy."""
        source = np.ones((3, 5), dtype=np.float64)
        frame = Frame(source, name="a")
        source[0, 0] = 99.0

        assert frame.pixels[0, 0] == 1.0
        assert frame.pixels.dtype == np.float32
        assert not frame.pixels.flags.writeable
        with pytest.raises(ValueError):
            frame.pixels[0, 0] = 5.0

    def test_dimensions(self):
        """Width and height follow (rows, cols)."""
        frame = Frame(np.zeros((3, 5)))
        assert frame.width == 5
        assert frame.height == 3
        assert frame.shape == (3, 5)

    def test_from_buffer(self):
        """A flat row-major buffer is reshaped to (height, width)."""
        frame = Frame.from_buffer([1, 2, 3, 4, 5, 6], width=3, height=2, name="buf")
        assert frame.pixels.tolist() == [[1, 2, 3], [4, 5, 6]]
        assert frame.to_buffer().tolist() == [1, 2, 3, 4, 5, 6]
        assert frame.to_buffer().flags.writeable

    def test_from_buffer_size_mismatch(self):
        """Buffer length must equal width * height."""
        with pytest.raises(ValueError, match="does not match"):
            Frame.from_buffer([1, 2, 3], width=2, height=2)

    def test_rejects_non_2d(self):
        """Only single-channel 2D data is accepted."""
        with pytest.raises(ValueError, match="2D"):
            Frame(np.zeros((2, 2, 3)))

    def test_with_pixels_keeps_name(self):
        """Derived frames keep the name and kind."""
        frame = _frame(1.0, name="light_01")
        derived = frame.with_pixels(np.zeros((4, 4)))
        assert derived.name == "light_01"
        assert derived.kind == "light"
        assert frame.pixels[0, 0] == 1.0

    def test_frame_name(self):
        """Job entries without a name get an indexed one."""
        assert frame_name(FrameRef("a.fits"), 3) == "a.fits"
        assert frame_name(np.zeros((2, 2)), 3) == "frame_0003"

    def test_check_same_shape_message(self):
        """Mismatch errors name the frame and both sizes."""
        with pytest.raises(DimensionMismatchError, match=r"Dimension mismatch: b is 5x3, expected 4x4"):
            check_same_shape(Frame(np.zeros((3, 5)), name="b"), (4, 4))


class TestMasterFrames:
    """Tests for master calibration frames."""

    def test_master_dark_median(self):
        """Median rejects a cosmic-ray hit."""
        darks = [_frame(10.0), _frame(12.0), _frame(1000.0)]
        master = create_master_dark(darks)

        assert master.kind == "dark"
        assert np.allclose(master.pixels, 12.0)

    def test_master_dark_mean(self):
        """Mean combination on request."""
        master = create_master_dark([_frame(10.0), _frame(20.0)], method="mean")
        assert np.allclose(master.pixels, 15.0)

    def test_master_bias(self):
        """Bias masters are combined the same way."""
        master = create_master_bias([_frame(300.0), _frame(302.0), _frame(301.0)])
        assert master.kind == "bias"
        assert np.allclose(master.pixels, 301.0)

    def test_empty_list(self):
        """At least one frame is needed."""
        with pytest.raises(InsufficientFramesError):
            create_master_dark([])

    def test_shape_mismatch(self):
        """All inputs must share a shape."""
        with pytest.raises(DimensionMismatchError):
            create_master_dark([_frame(1.0), _frame(1.0, shape=(4, 5))])

    def test_unknown_method(self):
        """Only median and mean are supported."""
        with pytest.raises(ValueError, match="method"):
            create_master_dark([_frame(1.0)], method="mode")

    def test_master_flat_normalized(self):
        """Master flats have unit mean."""
        data = np.array([[1000.0, 2000.0], [3000.0, 2000.0]], dtype=np.float32)
        master = create_master_flat([Frame(data), Frame(data * 1.01)])

        assert master.kind == "flat"
        assert master.pixels.mean() == pytest.approx(1.0, rel=1e-5)
        assert master.pixels[0, 0] == pytest.approx(0.5, rel=1e-4)

    def test_master_flat_bias_subtracted(self):
        """The bias is removed before normalizing."""
        flat = Frame(np.array([[1100.0, 2100.0]], dtype=np.float32))
        bias = Frame(np.full((1, 2), 100.0, dtype=np.float32))
        master = create_master_flat([flat], bias=bias)
        np.testing.assert_allclose(master.pixels, [[2 / 3, 4 / 3]], rtol=1e-5)

    def test_normalize_flat_without_signal(self):
        """A flat with no positive pixel disables correction."""
        assert np.all(normalize_flat(np.zeros((3, 3))) == 1.0)

    def test_normalize_flat_ignores_nan(self):
        """NaN pixels do not enter the mean."""
        flat = np.array([[2.0, np.nan], [2.0, 4.0]])
        normalized = normalize_flat(flat)
        assert normalized[1, 1] == pytest.approx(1.5)


class TestCalibrateFrame:
    """Tests for light frame calibration."""

    def test_dark_and_flat(self):
        """(light - dark) / flat."""
        light = Frame(np.array([[110.0, 210.0]], dtype=np.float32))
        dark = Frame(np.array([[10.0, 10.0]], dtype=np.float32))
        flat = Frame(np.array([[0.5, 2.0]], dtype=np.float32))
        result = calibrate_frame(light, dark=dark, flat=flat)

        np.testing.assert_allclose(result.pixels, [[200.0, 100.0]], rtol=1e-5)

    def test_input_untouched(self):
        """Calibration returns a new frame."""
        light = _frame(100.0, name="l1")
        result = calibrate_frame(light, dark=_frame(10.0))

        assert result is not light
        assert result.name == "l1"
        assert np.allclose(light.pixels, 100.0)
        assert np.allclose(result.pixels, 90.0)

    def test_flat_floor(self):
        """Near-zero flat values are clamped."""
        light = _frame(1.0, shape=(1, 2))
        flat = Frame(np.array([[0.0, 1e-6]], dtype=np.float32))
        result = calibrate_frame(light, flat=flat, flat_floor=0.01)

        assert np.all(np.isfinite(result.pixels))
        np.testing.assert_allclose(result.pixels, [[100.0, 100.0]], rtol=1e-5)

    def test_bias_without_dark(self):
        """The bias is subtracted when no dark is given."""
        result = calibrate_frame(_frame(500.0), bias=_frame(300.0))
        assert np.allclose(result.pixels, 200.0)

    def test_dark_supersedes_bias(self):
        """A dark already contains the bias signal."""
        result = calibrate_frame(_frame(500.0), dark=_frame(320.0), bias=_frame(300.0))
        assert np.allclose(result.pixels, 180.0)

    def test_no_masters(self):
        """Without masters the pixels are unchanged."""
        result = calibrate_frame(_frame(42.0))
        assert np.allclose(result.pixels, 42.0)

    def test_dimension_mismatch(self):
        """Masters must match the light frame."""
        with pytest.raises(DimensionMismatchError, match="Dimension mismatch: dark"):
            calibrate_frame(_frame(1.0), dark=_frame(1.0, shape=(2, 2)))

    def test_nan_propagates_locally(self):
        """Missing light pixels stay missing."""
        pixels = np.full((2, 2), 10.0, dtype=np.float32)
        pixels[0, 0] = np.nan
        result = calibrate_frame(Frame(pixels), dark=_frame(1.0, shape=(2, 2)))

        assert np.isnan(result.pixels[0, 0])
        assert result.pixels[1, 1] == 9.0
