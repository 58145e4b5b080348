"""
lightstack - calibration, registration and stacking of astronomical frames.

Light frames are calibrated against dark, flat and bias masters, registered
to a reference through star-pattern matching, optionally scored for
quality, and combined pixel by pixel.

Example
-------
>>> import numpy as np
>>> from lightstack import Stacker
>>> frames = [np.full((4, 4), v, dtype=np.float32) for v in (1.0, 2.0, 3.0)]
>>> result = Stacker().stack_files(frames, "median")
>>> float(result.pixels[0, 0])
2.0

Example (aligned sigma-clipped stack from FITS)
-----------------------------------------------
>>> from lightstack.io import load_frame
>>> stacker = Stacker(loader=load_frame)
>>> result = stacker.stack_files(paths, "sigmaClip", alignment_mode="full")
"""

from .config import (
    AdvancedOptions,
    AlignmentError,
    AlignmentOptions,
    AutoStretch,
    CalibrationFrames,
    DetectionOptions,
    DimensionMismatchError,
    FrameQuality,
    InsufficientFramesError,
    QualityOptions,
    RejectedFrame,
    RejectionReason,
    StackingError,
    StackJob,
    StackProgress,
    StackResult,
    normalize_job,
)
from .frame import Frame, FrameRef
from .utils import __version__, __version_info__, get_version_banner

# Calibration
from .calibration import (
    calibrate_frame,
    create_master_bias,
    create_master_dark,
    create_master_flat,
)

# Star detection
from .detect import DetectedStar, detect_stars, estimate_background

# Alignment
from .align import (
    AlignmentResult,
    AlignmentState,
    AlignmentTransform,
    align_frame,
    align_frame_async,
    align_frames,
    apply_transform_to_image,
    select_reference_frame,
)

# Quality and weighting
from .quality import evaluate_frame_quality, evaluate_frame_quality_async, rank_frames
from .weighting import quality_to_weights

# Stacking
from .stack import (
    combine,
    compute_auto_stretch,
    stack_average,
    stack_max,
    stack_median,
    stack_min,
    stack_sigma_clip,
    stack_weighted_average,
    stack_winsorized_sigma_clip,
)

# Orchestration
from .pipeline import CancelToken, Stacker

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Data and configuration
    "Frame",
    "FrameRef",
    "StackJob",
    "CalibrationFrames",
    "AdvancedOptions",
    "DetectionOptions",
    "AlignmentOptions",
    "QualityOptions",
    "StackProgress",
    "StackResult",
    "AutoStretch",
    "FrameQuality",
    "RejectedFrame",
    "RejectionReason",
    "normalize_job",
    # Errors
    "StackingError",
    "InsufficientFramesError",
    "DimensionMismatchError",
    "AlignmentError",
    # Calibration
    "create_master_bias",
    "create_master_dark",
    "create_master_flat",
    "calibrate_frame",
    # Detection
    "DetectedStar",
    "detect_stars",
    "estimate_background",
    # Alignment
    "AlignmentState",
    "AlignmentTransform",
    "AlignmentResult",
    "align_frame",
    "align_frame_async",
    "align_frames",
    "apply_transform_to_image",
    "select_reference_frame",
    # Quality
    "evaluate_frame_quality",
    "evaluate_frame_quality_async",
    "rank_frames",
    "quality_to_weights",
    # Stacking
    "combine",
    "compute_auto_stretch",
    "stack_average",
    "stack_median",
    "stack_min",
    "stack_max",
    "stack_sigma_clip",
    "stack_winsorized_sigma_clip",
    "stack_weighted_average",
    # Orchestration
    "Stacker",
    "CancelToken",
]
