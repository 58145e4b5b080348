"""
Configuration dataclasses and result records for the lightstack pipeline.

Every option record documents its defaults and exposes ``validate()``,
which raises ``ValueError`` with the offending value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

import numpy as np

StackMethod = Literal[
    "average", "median", "min", "max", "sigmaClip", "winsorizedSigmaClip", "weighted"
]
AlignmentMode = Literal["none", "translation", "full"]
DetectionProfile = Literal["fast", "balanced", "accurate"]
ProgressStage = Literal[
    "loading", "calibrating", "detecting", "evaluating", "aligning", "combining", "done"
]

STACK_METHODS: tuple[str, ...] = (
    "average", "median", "min", "max", "sigmaClip", "winsorizedSigmaClip", "weighted",
)
ALIGNMENT_MODES: tuple[str, ...] = ("none", "translation", "full")

METHOD_ALIASES = {
    "mean": "average",
    "sigma": "sigmaClip",
    "sigma_clip": "sigmaClip",
    "sigmaclip": "sigmaClip",
    "winsorized": "winsorizedSigmaClip",
    "winsorized_sigma_clip": "winsorizedSigmaClip",
    "winsorizedsigmaclip": "winsorizedSigmaClip",
}


# --------------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------------


class StackingError(RuntimeError):
    """A stacking job could not produce a result."""


class InsufficientFramesError(StackingError, ValueError):
    """Fewer frames than a combination needs."""

    def __init__(self, message: str = "At least 2 frames are required for stacking"):
        super().__init__(message)


class DimensionMismatchError(StackingError, ValueError):
    """Two frames that must share a pixel grid do not."""


class AlignmentError(StackingError):
    """Alignment left nothing to stack."""


def dimension_mismatch(name: str, shape: tuple[int, ...], expected: tuple[int, ...]) -> DimensionMismatchError:
    """Build the standard mismatch error; shapes are (height, width)."""
    return DimensionMismatchError(
        f"Dimension mismatch: {name} is {shape[1]}x{shape[0]}, "
        f"expected {expected[1]}x{expected[0]}"
    )


# --------------------------------------------------------------------------
# Per-frame records
# --------------------------------------------------------------------------


class RejectionReason(Enum):
    """Reason codes for frames left out of the combination."""

    DECODE_FAILED = "decode_failed"  # Loader raised or returned nothing
    ALIGNMENT_FAILED = "alignment_failed"  # Could not align to reference


@dataclass
class RejectedFrame:
    """Record of a frame that failed a stage, with reason."""

    name: str
    reason: RejectionReason
    detail: str = ""


@dataclass
class FrameQuality:
    """Quality metrics for a single frame."""

    background_median: float
    background_noise: float  # 1.4826 * MAD of sky pixels
    snr: float  # median star peak / background noise
    star_count: int
    median_fwhm: float  # pixels, 0 when no stars
    roundness: float  # mean minor/major axis ratio, 0 when no stars
    score: float  # 0-100, higher is better
    name: str = ""
    stars: list[Any] = field(default_factory=list, repr=False)
    """Detections the metrics were computed from (``DetectedStar``)."""


# --------------------------------------------------------------------------
# Star detection
# --------------------------------------------------------------------------

# Values used when a DetectionOptions field is left as None.
DETECTION_PROFILES: dict[str, dict[str, Any]] = {
    "fast": {
        "sigma_threshold": 6.0,
        "max_stars": 160,
        "min_area": 4,
        "max_area": 550,
        "border_margin": 12,
        "mesh_size": 96,
        "sigma_clip_iters": 1,
        "apply_matched_filter": False,
        "filter_fwhm": 2.5,
        "deblend_n_levels": 1,
        "deblend_min_contrast": 0.12,
        "connectivity": 8,
        "min_fwhm": 0.7,
        "max_fwhm": 12.0,
        "max_ellipticity": 0.7,
        "min_sharpness": 0.3,
        "max_sharpness": 12.0,
        "snr_min": 2.5,
        "peak_max": None,
    },
    "balanced": {
        "sigma_threshold": 5.0,
        "max_stars": 220,
        "min_area": 3,
        "max_area": 600,
        "border_margin": 10,
        "mesh_size": 64,
        "sigma_clip_iters": 2,
        "apply_matched_filter": True,
        "filter_fwhm": 2.2,
        "deblend_n_levels": 16,
        "deblend_min_contrast": 0.08,
        "connectivity": 8,
        "min_fwhm": 0.6,
        "max_fwhm": 11.0,
        "max_ellipticity": 0.65,
        "min_sharpness": 0.25,
        "max_sharpness": 14.0,
        "snr_min": 2.0,
        "peak_max": None,
    },
    "accurate": {
        "sigma_threshold": 4.5,
        "max_stars": 320,
        "min_area": 3,
        "max_area": 800,
        "border_margin": 8,
        "mesh_size": 48,
        "sigma_clip_iters": 3,
        "apply_matched_filter": True,
        "filter_fwhm": 2.0,
        "deblend_n_levels": 32,
        "deblend_min_contrast": 0.05,
        "connectivity": 8,
        "min_fwhm": 0.5,
        "max_fwhm": 10.0,
        "max_ellipticity": 0.55,
        "min_sharpness": 0.2,
        "max_sharpness": 16.0,
        "snr_min": 1.8,
        "peak_max": None,
    },
}


@dataclass
class DetectionOptions:
    """
    Star detection parameters.

    Fields left as None take the value of the selected profile; call
    ``resolved()`` to get a fully populated copy.
    """

    profile: DetectionProfile = "balanced"
    """Preset: 'fast' (coarse mesh, no deblending), 'balanced' or 'accurate'."""

    sigma_threshold: float | None = None
    """Detection threshold above background, in units of background noise."""

    max_stars: int | None = None
    """Keep at most this many stars, brightest first."""

    min_area: int | None = None
    """Minimum connected area in pixels."""

    max_area: int | None = None
    """Maximum connected area in pixels (rejects extended objects, saturation blooms)."""

    border_margin: int | None = None
    """Pixels near the frame edge that are ignored."""

    mesh_size: int | None = None
    """Background mesh cell size in pixels."""

    sigma_clip_iters: int | None = None
    """Clipping passes for each mesh cell's robust statistics."""

    apply_matched_filter: bool | None = None
    """Smooth with a Gaussian of ``filter_fwhm`` before thresholding."""

    filter_fwhm: float | None = None
    """FWHM of the matched filter kernel in pixels."""

    deblend_n_levels: int | None = None
    """Maximum number of seeds a blended blob may be split into (1 = off)."""

    deblend_min_contrast: float | None = None
    """Minimum flux fraction a seed or sub-object must carry."""

    connectivity: Literal[4, 8] | None = None
    """Pixel connectivity used when labelling blobs."""

    min_fwhm: float | None = None
    max_fwhm: float | None = None
    """Accepted FWHM range in pixels."""

    max_ellipticity: float | None = None
    """Reject stars more elongated than this (1 - minor/major)."""

    min_sharpness: float | None = None
    max_sharpness: float | None = None
    """Accepted peak / mean-flux range (rejects hot pixels and diffuse blobs)."""

    snr_min: float | None = None
    """Minimum per-star signal-to-noise ratio."""

    peak_max: float | None = None
    """Reject stars whose background-subtracted peak exceeds this (None = no limit)."""

    def resolved(self) -> DetectionOptions:
        """Return a copy with every None field filled from the profile."""
        if self.profile not in DETECTION_PROFILES:
            raise ValueError(
                f"profile must be one of {sorted(DETECTION_PROFILES)}, got {self.profile!r}"
            )
        preset = DETECTION_PROFILES[self.profile]
        filled = {
            name: preset[name]
            for name in preset
            if getattr(self, name) is None
        }
        return replace(self, **filled)

    def validate(self) -> None:
        """Validate configuration parameters (after resolution)."""
        opts = self.resolved()
        if opts.sigma_threshold <= 0:
            raise ValueError(f"sigma_threshold must be positive, got {opts.sigma_threshold}")
        if opts.max_stars < 1:
            raise ValueError(f"max_stars must be >= 1, got {opts.max_stars}")
        if opts.min_area < 1 or opts.max_area < opts.min_area:
            raise ValueError(
                f"area range must satisfy 1 <= min_area <= max_area, "
                f"got [{opts.min_area}, {opts.max_area}]"
            )
        if opts.border_margin < 0:
            raise ValueError(f"border_margin must be >= 0, got {opts.border_margin}")
        if opts.mesh_size < 8:
            raise ValueError(f"mesh_size must be >= 8, got {opts.mesh_size}")
        if opts.deblend_n_levels < 1:
            raise ValueError(f"deblend_n_levels must be >= 1, got {opts.deblend_n_levels}")
        if not 0.0 <= opts.deblend_min_contrast < 1.0:
            raise ValueError(
                f"deblend_min_contrast must be in [0, 1), got {opts.deblend_min_contrast}"
            )
        if opts.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {opts.connectivity}")
        if not 0.0 < opts.min_fwhm < opts.max_fwhm:
            raise ValueError(
                f"FWHM range must satisfy 0 < min_fwhm < max_fwhm, "
                f"got [{opts.min_fwhm}, {opts.max_fwhm}]"
            )
        if not 0.0 < opts.max_ellipticity <= 1.0:
            raise ValueError(f"max_ellipticity must be in (0, 1], got {opts.max_ellipticity}")


# --------------------------------------------------------------------------
# Alignment and quality
# --------------------------------------------------------------------------


@dataclass
class AlignmentOptions:
    """Registration parameters."""

    inlier_threshold: float = 3.0
    """Maximum residual in pixels for a matched star to count as an inlier."""

    max_ransac_iterations: int = 500
    """Upper bound on RANSAC hypotheses per frame."""

    fallback_to_translation: bool = True
    """Retry with a translation-only fit when the full fit fails."""

    min_matches: int = 3
    """Minimum inlier star pairs for an alignment to be accepted."""

    full_model: Literal["affine", "similarity"] = "affine"
    """Transform family fitted in 'full' mode."""

    max_control_stars: int = 40
    """Brightest stars per frame used for matching."""

    triangle_neighbors: int = 5
    """Nearest neighbours per star used to build triangles."""

    invariant_tolerance: float = 0.01
    """Match radius in triangle side-ratio space."""

    seed: int = 0
    """Base RANSAC seed (combined with the frame index)."""

    interpolation_order: int = 1
    """Spline order for resampling (0 nearest, 1 bilinear, 3 bicubic)."""

    fill_value: float = float("nan")
    """Value for pixels that fall outside the source frame."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.inlier_threshold <= 0:
            raise ValueError(f"inlier_threshold must be positive, got {self.inlier_threshold}")
        if self.max_ransac_iterations < 1:
            raise ValueError(
                f"max_ransac_iterations must be >= 1, got {self.max_ransac_iterations}"
            )
        if self.min_matches < 1:
            raise ValueError(f"min_matches must be >= 1, got {self.min_matches}")
        if self.full_model not in ("affine", "similarity"):
            raise ValueError(
                f"full_model must be 'affine' or 'similarity', got {self.full_model!r}"
            )
        if self.max_control_stars < 3:
            raise ValueError(f"max_control_stars must be >= 3, got {self.max_control_stars}")
        if self.triangle_neighbors < 2:
            raise ValueError(f"triangle_neighbors must be >= 2, got {self.triangle_neighbors}")
        if self.invariant_tolerance <= 0:
            raise ValueError(
                f"invariant_tolerance must be positive, got {self.invariant_tolerance}"
            )
        if self.interpolation_order not in (0, 1, 3):
            raise ValueError(
                f"interpolation_order must be 0, 1 or 3, got {self.interpolation_order}"
            )


@dataclass
class QualityOptions:
    """Frame quality scoring parameters."""

    weight_fwhm: float = 0.4
    weight_snr: float = 0.3
    weight_star_count: float = 0.15
    weight_roundness: float = 0.15
    """Relative contribution of each sub-score (normalized to sum 1)."""

    fwhm_best: float = 1.5
    """FWHM (px) scoring 100."""

    fwhm_worst: float = 7.5
    """FWHM (px) scoring 0."""

    star_count_scale: float = 2.0
    """Points per detected star (capped at 100)."""

    star_mask_scale: float = 2.0
    """Radius of the disc excluded around each star, in FWHM units."""

    def normalized_weights(self) -> tuple[float, float, float, float]:
        """Return (fwhm, snr, star_count, roundness) weights summing to 1."""
        raw = (self.weight_fwhm, self.weight_snr, self.weight_star_count, self.weight_roundness)
        total = sum(raw)
        return tuple(w / total for w in raw)

    def validate(self) -> None:
        """Validate configuration parameters."""
        weights = (self.weight_fwhm, self.weight_snr, self.weight_star_count, self.weight_roundness)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError(f"score weights must be >= 0 with a positive sum, got {weights}")
        if self.fwhm_worst <= self.fwhm_best:
            raise ValueError(
                f"fwhm_worst must exceed fwhm_best, got {self.fwhm_best} / {self.fwhm_worst}"
            )
        if self.star_mask_scale <= 0:
            raise ValueError(f"star_mask_scale must be positive, got {self.star_mask_scale}")


@dataclass
class AdvancedOptions:
    """Tuning knobs grouped under a job's ``advanced`` key."""

    detection: DetectionOptions = field(default_factory=DetectionOptions)
    alignment: AlignmentOptions = field(default_factory=AlignmentOptions)
    quality: QualityOptions = field(default_factory=QualityOptions)

    def validate(self) -> None:
        self.detection.validate()
        self.alignment.validate()
        self.quality.validate()


# --------------------------------------------------------------------------
# Job description
# --------------------------------------------------------------------------


@dataclass
class CalibrationFrames:
    """
    Calibration inputs for a job.

    Either ready masters (``dark``, ``flat``, ``bias``) or raw lists
    (``darks``, ``flats``, ``biases``) that are combined into masters
    before the lights are calibrated. A supplied master wins over a list.
    Entries are ``Frame`` or ``FrameRef`` objects.
    """

    dark: Any = None
    flat: Any = None
    bias: Any = None
    darks: list[Any] = field(default_factory=list)
    flats: list[Any] = field(default_factory=list)
    biases: list[Any] = field(default_factory=list)

    combine_method: Literal["median", "mean"] = "median"
    """Per-pixel combination used to build masters."""

    flat_floor: float = 0.01
    """Normalized flat values below this are clamped before dividing."""

    def is_empty(self) -> bool:
        return not (
            self.dark is not None or self.flat is not None or self.bias is not None
            or self.darks or self.flats or self.biases
        )

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.combine_method not in ("median", "mean"):
            raise ValueError(
                f"combine_method must be 'median' or 'mean', got {self.combine_method!r}"
            )
        if self.flat_floor <= 0:
            raise ValueError(f"flat_floor must be positive, got {self.flat_floor}")


@dataclass
class StackJob:
    """
    A complete stacking request.

    ``frames`` holds ``Frame`` or ``FrameRef`` entries in submission order.
    """

    frames: list[Any] = field(default_factory=list)

    method: StackMethod = "average"
    """Combination method."""

    sigma: float = 2.5
    """Clipping threshold for sigmaClip and winsorizedSigmaClip."""

    maxiters: int = 5
    """Maximum clipping iterations."""

    alignment_mode: AlignmentMode = "none"
    """'none', 'translation' or 'full'."""

    enable_quality_eval: bool = False
    """Score frames; required for quality weights and 'best' reference."""

    reference: Literal["first", "best"] = "first"
    """Reference frame policy: frame 0, or highest quality score."""

    calibration: CalibrationFrames | None = None

    advanced: AdvancedOptions = field(default_factory=AdvancedOptions)

    workers: int | None = None
    """Threads for per-frame stages. None = auto-detect (CPU count - 1)."""

    chunk_rows: int = 64
    """Rows per chunk when combining."""

    def validate(self) -> None:
        """Validate the job; raises before any frame is touched."""
        if len(self.frames) < 2:
            raise InsufficientFramesError()
        if self.method not in STACK_METHODS:
            raise ValueError(f"method must be one of {list(STACK_METHODS)}, got {self.method!r}")
        if self.alignment_mode not in ALIGNMENT_MODES:
            raise ValueError(
                f"alignment_mode must be one of {list(ALIGNMENT_MODES)}, "
                f"got {self.alignment_mode!r}"
            )
        if self.reference not in ("first", "best"):
            raise ValueError(f"reference must be 'first' or 'best', got {self.reference!r}")
        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")
        if self.maxiters < 1:
            raise ValueError(f"maxiters must be >= 1, got {self.maxiters}")
        if self.chunk_rows < 1:
            raise ValueError(f"chunk_rows must be >= 1, got {self.chunk_rows}")
        if self.calibration is not None:
            self.calibration.validate()
        self.advanced.validate()


def canonical_method(method: str) -> str:
    """Map a method name or alias to its canonical spelling."""
    if method in STACK_METHODS:
        return method
    key = method.strip().lower().replace("-", "_")
    if key in METHOD_ALIASES:
        return METHOD_ALIASES[key]
    for name in STACK_METHODS:
        if name.lower() == key:
            return name
    raise ValueError(f"Unknown stacking method {method!r}; expected one of {list(STACK_METHODS)}")


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _build(cls, values: Mapping[str, Any] | None):
    """Instantiate a dataclass from a mapping with camelCase or snake_case keys."""
    if values is None:
        return cls()
    if isinstance(values, cls):
        return values
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in values.items():
        name = _snake(key)
        if name not in known:
            raise ValueError(f"Unknown {cls.__name__} option {key!r}")
        kwargs[name] = value
    return cls(**kwargs)


def _build_advanced(values: Any) -> AdvancedOptions:
    if values is None or isinstance(values, AdvancedOptions):
        return values or AdvancedOptions()
    return AdvancedOptions(
        detection=_build(DetectionOptions, values.get("detection")),
        alignment=_build(AlignmentOptions, values.get("alignment")),
        quality=_build(QualityOptions, values.get("quality")),
    )


def normalize_job(
    frames_or_job: StackJob | Mapping[str, Any] | Sequence[Any],
    method: str | None = None,
    **kwargs: Any,
) -> StackJob:
    """
    Resolve every accepted job shape into one ``StackJob``.

    Accepts the shorthand ``(frames, method)`` form, a ready ``StackJob``,
    or a mapping laid out like the full configuration object (camelCase or
    snake_case keys). The frame list may be given under ``files`` or
    ``frames``. Keyword arguments override fields in all cases.

    Parameters
    ----------
    frames_or_job : StackJob, Mapping or Sequence
        The job, a configuration mapping, or the list of frames.
    method : str, optional
        Stacking method (aliases such as 'sigma' are accepted).
    **kwargs
        Any ``StackJob`` field.

    Returns
    -------
    StackJob
        A job with canonical method name. Not yet validated.
    """
    if isinstance(frames_or_job, StackJob):
        job = replace(frames_or_job)
    elif isinstance(frames_or_job, Mapping):
        values = {_snake(k): v for k, v in frames_or_job.items()}
        if "files" in values:
            if "frames" in values:
                raise ValueError("Give either 'files' or 'frames', not both")
            values["frames"] = values.pop("files")
        known = {f.name for f in fields(StackJob)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown job options: {sorted(unknown)}")
        if "calibration" in values and not isinstance(values["calibration"], CalibrationFrames):
            values["calibration"] = _build(CalibrationFrames, values["calibration"])
        if "advanced" in values:
            values["advanced"] = _build_advanced(values["advanced"])
        job = StackJob(**values)
    else:
        job = StackJob(frames=list(frames_or_job))

    if method is not None:
        job.method = method
    if kwargs:
        if "advanced" in kwargs:
            kwargs["advanced"] = _build_advanced(kwargs["advanced"])
        if isinstance(kwargs.get("calibration"), Mapping):
            kwargs["calibration"] = _build(CalibrationFrames, kwargs["calibration"])
        job = replace(job, **kwargs)

    job.frames = list(job.frames)
    job.method = canonical_method(job.method)
    return job


# --------------------------------------------------------------------------
# Progress and results
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class StackProgress:
    """Progress event emitted by the stacker."""

    stage: ProgressStage
    current: int
    total: int
    message: str = ""


@dataclass
class AutoStretch:
    """Display black and white points for a stacked image."""

    black_point: float
    white_point: float


@dataclass
class StackResult:
    """
    Result of a stacking job.

    Contains the combined pixels plus everything needed to understand how
    they were produced.
    """

    pixels: np.ndarray
    """Combined image, float32, shape (height, width). NaN = no data."""

    width: int
    height: int

    method: str
    """Canonical stacking method used."""

    frame_count: int
    """Frames that actually contributed (decoded and aligned)."""

    auto_stretch: AutoStretch | None = None

    # --- Frame accounting ---
    inputs: list[str] = field(default_factory=list)
    """Names of all submitted frames, in submission order."""

    kept: list[str] = field(default_factory=list)
    """Frames combined into the result."""

    rejected: list[RejectedFrame] = field(default_factory=list)

    # --- Alignment ---
    alignment_mode: str = "none"
    reference_index: int = 0
    reference_name: str = ""
    alignment: list[Any] = field(default_factory=list)
    """Per-frame ``AlignmentTransform`` diagnostics, reference first."""

    # --- Quality ---
    qualities: list[FrameQuality | None] = field(default_factory=list)
    """Quality per submitted frame (None when not evaluated or failed)."""

    weights: list[float] = field(default_factory=list)
    """Weight per kept frame (empty unless method is 'weighted')."""

    # --- Statistics ---
    stats: dict[str, float] = field(default_factory=dict)
    duration_s: float = 0.0

    # --- Metadata ---
    version: str = ""
    timestamp: str = ""
    platform: str = ""
