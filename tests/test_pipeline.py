"""
Tests for the pipeline module.

Tests cover:
- End-to-end stacking of arrays and synthetic star fields
- Fatal errors and per-frame rejections
- Cancellation and superseded jobs
- Progress reporting
- Job normalization from configuration mappings
"""

import threading

import numpy as np
import pytest

from lightstack.config import (
    AlignmentError,
    CalibrationFrames,
    DimensionMismatchError,
    InsufficientFramesError,
    RejectionReason,
    StackingError,
    StackJob,
    normalize_job,
)
from lightstack.frame import Frame, FrameRef
from lightstack.pipeline import CancelToken, Stacker


def _stages(events):
    """Stage names in order of first appearance."""
    seen = []
    for event in events:
        if not seen or seen[-1] != event.stage:
            seen.append(event.stage)
    return seen


class TestStackArrays:
    """Tests for stacking in-memory arrays without alignment."""

    def test_average(self, constant_frames):
        """Three constant frames average to their mean."""
        result = Stacker().stack_files(constant_frames([1.0, 2.0, 6.0]), "average")

        assert result.frame_count == 3
        assert result.width == 8
        assert result.height == 8
        assert result.method == "average"
        assert np.allclose(result.pixels, 3.0)
        assert result.inputs == ["frame_0000", "frame_0001", "frame_0002"]
        assert result.kept == result.inputs
        assert result.rejected == []

    def test_method_alias(self, constant_frames):
        """Aliases are resolved to canonical names."""
        result = Stacker().stack_files(constant_frames([1.0, 2.0, 3.0]), "mean")
        assert result.method == "average"

    def test_published_state(self, constant_frames):
        """Result, progress and flags are published on success."""
        stacker = Stacker()
        result = stacker.stack_files(constant_frames([1.0, 2.0]), "median")

        assert stacker.result is result
        assert stacker.error is None
        assert not stacker.is_stacking
        assert stacker.progress.stage == "done"

    def test_job_object(self, constant_frames):
        """A StackJob is accepted as-is."""
        job = StackJob(frames=constant_frames([2.0, 4.0]), method="max")
        assert np.allclose(Stacker().stack_files(job).pixels, 4.0)

    def test_keyword_overrides(self, constant_frames):
        """Keyword arguments set job fields."""
        result = Stacker().stack_files(constant_frames([2.0, 4.0]), method="min", chunk_rows=3)
        assert np.allclose(result.pixels, 2.0)

    def test_metadata(self, constant_frames):
        """Results carry version, timestamp and auto stretch."""
        result = Stacker().stack_files(constant_frames([1.0, 3.0]), "average")

        assert result.version
        assert result.timestamp.endswith("+00:00")
        assert result.auto_stretch is not None
        assert result.duration_s >= 0.0
        assert result.stats["missing_fraction"] == 0.0

    def test_weighted_without_quality(self, constant_frames):
        """Without quality evaluation every frame weighs the same."""
        result = Stacker().stack_files(constant_frames([1.0, 2.0, 6.0]), "weighted")

        assert result.weights == pytest.approx([1 / 3] * 3)
        assert np.allclose(result.pixels, 3.0)


class TestFatalErrors:
    """Tests for errors that abort a job."""

    def test_single_frame(self, constant_frames):
        """One frame is not enough."""
        stacker = Stacker()
        with pytest.raises(InsufficientFramesError, match="At least 2 frames are required for stacking"):
            stacker.stack_files(constant_frames([1.0]), "average")

        assert stacker.error == "At least 2 frames are required for stacking"
        assert stacker.result is None

    def test_empty_job(self):
        """An empty frame list is rejected."""
        with pytest.raises(InsufficientFramesError):
            Stacker().stack_files([], "median")

    def test_dimension_mismatch(self):
        """A frame of another size aborts the job."""
        stacker = Stacker()
        frames = [np.zeros((4, 4)), np.zeros((4, 5))]
        with pytest.raises(DimensionMismatchError, match="Dimension mismatch: frame_0001 is 5x4, expected 4x4"):
            stacker.stack_files(frames, "average")

        assert stacker.error.startswith("Dimension mismatch")
        assert not stacker.is_stacking

    def test_unknown_method(self, constant_frames):
        """Unknown methods are rejected before any work."""
        stacker = Stacker()
        with pytest.raises(ValueError, match="Unknown stacking method"):
            stacker.stack_files(constant_frames([1.0, 2.0]), "mode")
        assert "Unknown stacking method" in stacker.error

    def test_refs_without_loader(self):
        """References need a loader."""
        with pytest.raises(ValueError, match="No loader configured to decode a.fits"):
            Stacker().stack_files([FrameRef("a.fits"), FrameRef("b.fits")], "average")

    def test_too_few_decoded(self):
        """Fewer than two decodable frames is fatal."""

        def loader(ref):
            if ref.name != "good":
                raise OSError("truncated file")
            return Frame(np.ones((4, 4)), name=ref.name)

        frames = [FrameRef("good"), FrameRef("bad1"), FrameRef("bad2")]
        with pytest.raises(StackingError, match="Only 1 of 3 frames could be decoded"):
            Stacker(loader=loader).stack_files(frames, "average")

    def test_reset(self, constant_frames):
        """reset clears the error and result."""
        stacker = Stacker()
        stacker.stack_files(constant_frames([1.0, 2.0]), "average")
        with pytest.raises(InsufficientFramesError):
            stacker.stack_files(constant_frames([1.0]), "average")

        stacker.reset()
        assert stacker.error is None
        assert stacker.result is None
        assert stacker.progress is None


class TestRejections:
    """Tests for frames dropped without aborting the job."""

    def test_decode_failure(self):
        """A frame the loader cannot read is recorded and skipped."""

        def loader(ref):
            if ref.name == "broken.fits":
                raise OSError("bad header")
            return Frame(np.full((4, 4), 2.0), name=ref.name)

        frames = [FrameRef("a.fits"), FrameRef("broken.fits"), FrameRef("c.fits")]
        result = Stacker(loader=loader).stack_files(frames, "average")

        assert result.frame_count == 2
        assert result.kept == ["a.fits", "c.fits"]
        assert len(result.rejected) == 1
        assert result.rejected[0].name == "broken.fits"
        assert result.rejected[0].reason == RejectionReason.DECODE_FAILED
        assert "bad header" in result.rejected[0].detail

    def test_alignment_failure(self, star_field, blank_frame):
        """A frame without stars is rejected, the rest are stacked."""
        frames = [
            star_field(name="ref"),
            star_field(shift=(2.0, 1.0), seed=1, name="a"),
            blank_frame(name="empty"),
        ]
        result = Stacker().stack_files(frames, "average", alignment_mode="translation")

        assert result.frame_count == 2
        assert result.kept == ["ref", "a"]
        assert [r.reason for r in result.rejected] == [RejectionReason.ALIGNMENT_FAILED]
        assert result.rejected[0].name == "empty"

    def test_nothing_aligned(self, star_field, blank_frame):
        """When no frame aligns to the reference the job fails."""
        frames = [star_field(name="ref"), blank_frame(name="empty")]
        with pytest.raises(AlignmentError, match="No frames could be aligned"):
            Stacker().stack_files(frames, "average", alignment_mode="full")

    def test_blank_reference(self, star_field, blank_frame):
        """A reference without stars cannot anchor alignment."""
        frames = [blank_frame(name="empty"), star_field(name="a")]
        with pytest.raises(AlignmentError, match="Reference frame empty has too few stars"):
            Stacker().stack_files(frames, "average", alignment_mode="translation")

    def test_alignment_exception(self, star_field, monkeypatch):
        """A frame whose alignment raises is rejected; the job completes."""
        from lightstack.align import align_frame

        def flaky(reference, target, *args, **kwargs):
            if target.name == "bad":
                raise RuntimeError("worker crashed")
            return align_frame(reference, target, *args, **kwargs)

        monkeypatch.setattr("lightstack.align.align_frame", flaky)
        frames = [
            star_field(name="ref"),
            star_field(shift=(2.0, 1.0), seed=1, name="a"),
            star_field(shift=(-1.0, 2.0), seed=2, name="bad"),
        ]
        stacker = Stacker()
        result = stacker.stack_files(frames, "average", alignment_mode="translation")

        assert result.frame_count == 2
        assert result.kept == ["ref", "a"]
        assert [r.reason for r in result.rejected] == [RejectionReason.ALIGNMENT_FAILED]
        assert result.rejected[0].name == "bad"
        assert "worker crashed" in result.rejected[0].detail
        assert stacker.error is None

    def test_detection_exception(self, star_field, monkeypatch):
        """A frame whose star detection raises ends up rejected at alignment."""
        from lightstack.detect import detect_stars

        def flaky(frame, options=None):
            if frame.name == "bad":
                raise RuntimeError("worker crashed")
            return detect_stars(frame, options)

        monkeypatch.setattr("lightstack.detect.detect_stars", flaky)
        frames = [
            star_field(name="ref"),
            star_field(seed=1, name="bad"),
            star_field(shift=(1.0, -1.0), seed=2, name="c"),
        ]
        result = Stacker().stack_files(frames, "median", alignment_mode="translation")

        assert result.frame_count == 2
        assert result.kept == ["ref", "c"]
        assert result.rejected[0].name == "bad"
        assert result.rejected[0].reason == RejectionReason.ALIGNMENT_FAILED


class TestAlignedStacking:
    """Tests for stacking registered star fields."""

    def test_translation(self, star_field, star_positions):
        """Shifted fields are registered onto the reference grid."""
        frames = [
            star_field(name="ref"),
            star_field(shift=(2.0, 1.0), seed=1, name="a"),
            star_field(shift=(-1.5, 2.5), seed=2, name="b"),
        ]
        result = Stacker().stack_files(frames, "sigmaClip", alignment_mode="translation")

        assert result.frame_count == 3
        assert result.reference_index == 0
        assert result.reference_name == "ref"
        assert len(result.alignment) == 3
        assert result.alignment[0].matched_stars == -1
        assert result.alignment[0].name == "ref"
        assert result.alignment[1].kind == "translation"
        assert result.alignment[1].translation == pytest.approx((-2.0, -1.0), abs=0.15)
        assert all(t.matched_stars >= 3 for t in result.alignment[1:])

        x, y = star_positions[0]
        assert result.pixels[int(round(y)), int(round(x))] > 1500.0

    def test_full_model(self, star_field):
        """Rotated fields are registered in full mode."""
        frames = [
            star_field(name="ref"),
            star_field(shift=(1.0, -1.0), angle=1.0, seed=1, name="a"),
        ]
        result = Stacker().stack_files(frames, "average", alignment_mode="full")

        assert result.frame_count == 2
        assert result.alignment[1].rotation_deg == pytest.approx(-1.0, abs=0.1)

    def test_quality_weights(self, star_field):
        """Quality-weighted stacking reports weights summing to 1."""
        frames = [
            star_field(name="s1"),
            star_field(shift=(1.0, 0.0), seed=1, name="s2"),
            star_field(shift=(0.0, 1.0), seed=2, sigma=2.4, name="soft"),
        ]
        result = Stacker().stack_files(
            frames, "weighted", alignment_mode="translation", enable_quality_eval=True
        )

        assert len(result.weights) == 3
        assert sum(result.weights) == pytest.approx(1.0)
        assert result.weights[2] < result.weights[0]
        assert all(q is not None for q in result.qualities)

    def test_best_reference(self, star_field):
        """With quality evaluation the sharpest frame becomes the reference."""
        frames = [
            star_field(sigma=2.8, name="soft"),
            star_field(shift=(1.0, 1.0), seed=1, name="sharp"),
        ]
        result = Stacker().stack_files(
            frames,
            "average",
            alignment_mode="translation",
            enable_quality_eval=True,
            reference="best",
        )

        assert result.reference_name == "sharp"
        assert result.reference_index == 1
        assert result.alignment[0].name == "sharp"

    def test_missing_edges(self, star_field):
        """Pixels not covered by any frame stay NaN, covered ones do not."""
        frames = [star_field(name="ref"), star_field(shift=(5.0, 0.0), seed=1, name="a")]
        result = Stacker().stack_files(frames, "average", alignment_mode="translation")

        assert np.all(np.isfinite(result.pixels))
        assert result.stats["missing_fraction"] == 0.0


class TestCalibrationInPipeline:
    """Tests for calibration applied by the stacker."""

    def test_dark_and_flat_masters(self, constant_frames):
        """Lights are calibrated before combination."""
        dark = Frame(np.full((8, 8), 10.0))
        flat = Frame(np.full((8, 8), 2.0))
        events = []
        result = Stacker(on_progress=events.append).stack_files(
            constant_frames([110.0, 130.0]),
            "average",
            calibration=CalibrationFrames(dark=dark, flat=flat),
        )

        # a uniform flat normalizes to 1
        assert np.allclose(result.pixels, 110.0)
        assert "calibrating" in _stages(events)

    def test_raw_lists_from_mapping(self, constant_frames):
        """Raw calibration lists are combined into masters."""
        darks = [Frame(np.full((8, 8), v)) for v in (9.0, 10.0, 500.0)]
        result = Stacker().stack_files(
            constant_frames([20.0, 30.0]),
            "average",
            calibration={"darks": darks, "combineMethod": "median"},
        )
        assert np.allclose(result.pixels, 15.0)

    def test_master_mismatch(self, constant_frames):
        """A master of another size aborts the job."""
        with pytest.raises(DimensionMismatchError, match="Dimension mismatch: dark is 4x4, expected 8x8"):
            Stacker().stack_files(
                constant_frames([1.0, 2.0]),
                "average",
                calibration=CalibrationFrames(dark=Frame(np.zeros((4, 4)))),
            )


class TestProgress:
    """Tests for progress events."""

    def test_stages_without_alignment(self, constant_frames):
        """Loading, combining, done."""
        events = []
        Stacker(on_progress=events.append).stack_files(constant_frames([1.0, 2.0, 3.0]), "median")

        assert _stages(events) == ["loading", "combining", "done"]
        loading = [e for e in events if e.stage == "loading"]
        assert [e.current for e in loading] == [0, 1, 2, 3]
        assert all(e.total == 3 for e in loading)
        assert events[-1].current == events[-1].total == 1

    def test_stages_with_alignment_and_quality(self, star_field):
        """Every stage appears, in pipeline order."""
        events = []
        frames = [star_field(name="ref"), star_field(shift=(1.0, 2.0), seed=1, name="a")]
        Stacker(on_progress=events.append).stack_files(
            frames, "weighted", alignment_mode="translation", enable_quality_eval=True
        )

        assert _stages(events) == [
            "loading", "detecting", "evaluating", "aligning", "combining", "done",
        ]
        aligning = [e for e in events if e.stage == "aligning"]
        assert aligning[-1].current == aligning[-1].total == 1
        assert aligning[-1].message == "a"


class TestCancellation:
    """Tests for cancelling and superseding jobs."""

    def _blocking_loader(self, started, release):
        def loader(ref):
            started.set()
            release.wait(timeout=10)
            return Frame(np.full((4, 4), 1.0), name=ref.name)

        return loader

    def test_cancel_token(self):
        """A token only ever goes from live to cancelled."""
        token = CancelToken()
        assert not token.cancelled
        token.cancel()
        token.cancel()
        assert token.cancelled

    def test_cancel_discards_result(self):
        """A cancelled job publishes nothing."""
        started, release = threading.Event(), threading.Event()
        stacker = Stacker(loader=self._blocking_loader(started, release))
        frames = [FrameRef("a"), FrameRef("b"), FrameRef("c")]
        try:
            future = stacker.submit(frames, "average")
            assert started.wait(timeout=10)
            stacker.cancel()
            assert not stacker.is_stacking
            release.set()

            assert future.result(timeout=30) is None
            assert stacker.result is None
            assert stacker.error is None
            assert stacker.progress is None
        finally:
            release.set()
            stacker.shutdown()

    def test_superseded_job(self, constant_frames):
        """A newer submission replaces a running one."""
        started, release = threading.Event(), threading.Event()
        stacker = Stacker(loader=self._blocking_loader(started, release))
        try:
            first = stacker.submit([FrameRef("a"), FrameRef("b"), FrameRef("c")], "average")
            assert started.wait(timeout=10)
            second = stacker.submit(constant_frames([4.0, 8.0]), "average")
            release.set()

            assert first.result(timeout=30) is None
            result = second.result(timeout=30)
            assert result is not None
            assert np.allclose(result.pixels, 6.0)
            assert stacker.result is result
            assert not stacker.is_stacking
        finally:
            release.set()
            stacker.shutdown()

    def test_submit_validates_eagerly(self, constant_frames):
        """Invalid jobs raise from submit itself."""
        with Stacker() as stacker:
            with pytest.raises(InsufficientFramesError):
                stacker.submit(constant_frames([1.0]), "average")

    def test_rejected_submit_keeps_running_job(self, constant_frames):
        """An invalid submission leaves the running job and its state alone."""
        started, release = threading.Event(), threading.Event()
        stacker = Stacker(loader=self._blocking_loader(started, release))
        try:
            running = stacker.submit([FrameRef("a"), FrameRef("b"), FrameRef("c")], "average")
            assert started.wait(timeout=10)
            with pytest.raises(InsufficientFramesError):
                stacker.submit(constant_frames([1.0]), "average")

            assert stacker.is_stacking
            assert stacker.error is None
            release.set()

            result = running.result(timeout=30)
            assert result is not None
            assert np.allclose(result.pixels, 1.0)
            assert stacker.result is result
            assert stacker.error is None
        finally:
            release.set()
            stacker.shutdown()

    def test_submit_result(self, constant_frames):
        """A background job resolves to its result."""
        with Stacker() as stacker:
            result = stacker.submit(constant_frames([1.0, 3.0]), "average").result(timeout=30)
        assert np.allclose(result.pixels, 2.0)


class TestNormalizeJob:
    """Tests for accepted job shapes."""

    def test_mapping_with_camel_case(self, constant_frames):
        """Configuration mappings use camelCase keys."""
        job = normalize_job(
            {
                "frames": constant_frames([1.0, 2.0]),
                "method": "sigma",
                "alignmentMode": "translation",
                "enableQualityEval": True,
                "chunkRows": 16,
                "advanced": {
                    "detection": {"sigmaThreshold": 4.0, "profile": "fast"},
                    "alignment": {"inlierThreshold": 2.0},
                    "quality": {"weightFwhm": 0.5},
                },
            }
        )

        assert job.method == "sigmaClip"
        assert job.alignment_mode == "translation"
        assert job.enable_quality_eval is True
        assert job.chunk_rows == 16
        assert job.advanced.detection.sigma_threshold == 4.0
        assert job.advanced.detection.profile == "fast"
        assert job.advanced.alignment.inlier_threshold == 2.0
        assert job.advanced.quality.weight_fwhm == 0.5

    def test_shorthand(self, constant_frames):
        """(frames, method) builds a job with defaults."""
        job = normalize_job(constant_frames([1.0, 2.0]), "winsorized")
        assert job.method == "winsorizedSigmaClip"
        assert job.alignment_mode == "none"
        assert len(job.frames) == 2

    def test_keyword_override(self, constant_frames):
        """Keywords win over mapping values."""
        job = normalize_job({"frames": constant_frames([1.0, 2.0]), "method": "median"}, method="max")
        assert job.method == "max"

    def test_job_not_mutated(self, constant_frames):
        """Normalizing a StackJob returns a copy."""
        original = StackJob(frames=constant_frames([1.0, 2.0]), method="average")
        job = normalize_job(original, sigma=4.0)
        assert job is not original
        assert original.sigma == 2.5
        assert job.sigma == 4.0

    def test_files_key(self, constant_frames):
        """The configuration object lists its frames under ``files``."""
        config = {
            "files": constant_frames([1.0, 3.0]),
            "method": "average",
            "alignmentMode": "none",
        }
        assert len(normalize_job(config).frames) == 2

        result = Stacker().stack_files(config)
        assert result.frame_count == 2
        assert np.allclose(result.pixels, 2.0)

    def test_files_and_frames_conflict(self, constant_frames):
        """Giving both ``files`` and ``frames`` is ambiguous."""
        with pytest.raises(ValueError, match="either 'files' or 'frames'"):
            normalize_job({"files": constant_frames([1.0, 2.0]), "frames": constant_frames([3.0, 4.0])})

    def test_unknown_option(self):
        """Misspelled options are rejected."""
        with pytest.raises(ValueError, match="Unknown job options"):
            normalize_job({"frames": [], "methd": "average"})

    def test_unknown_nested_option(self):
        """Misspelled advanced options are rejected."""
        with pytest.raises(ValueError, match="Unknown DetectionOptions option"):
            normalize_job({"frames": [], "advanced": {"detection": {"treshold": 3}}})
