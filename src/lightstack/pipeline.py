"""
Stacking orchestration.

``Stacker`` drives one job through
loading -> calibrating -> detecting -> evaluating -> aligning -> combining
and publishes ``is_stacking``, ``progress``, ``result`` and ``error``.

Each job carries its own ``CancelToken`` and a generation number. A job
that was cancelled, or superseded by a newer one, never writes to the
published state again.

Example
-------
>>> from lightstack import Stacker
>>> from lightstack.io import load_frame
>>> stacker = Stacker(loader=load_frame)
>>> result = stacker.stack_files(
...     ["light_001.fits", "light_002.fits", "light_003.fits"],
...     method="sigmaClip",
...     alignment_mode="full",
... )
>>> result.frame_count
3
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Sequence, Union

import numpy as np

from .align import AlignmentTransform, align_frames, select_reference_frame
from .calibration import (
    calibrate_frame,
    create_master_bias,
    create_master_dark,
    create_master_flat,
)
from .config import (
    AlignmentError,
    CalibrationFrames,
    FrameQuality,
    RejectedFrame,
    RejectionReason,
    StackingError,
    StackJob,
    StackProgress,
    StackResult,
    normalize_job,
)
from .detect import DetectedStar, detect_stars_batch
from .frame import Frame, FrameLoader, FrameRef, check_same_shape, frame_name
from .quality import evaluate_frames
from .stack import combine, compute_auto_stretch, compute_stack_statistics
from .utils import get_platform_info, get_timestamp_iso, get_version
from .weighting import quality_to_weights

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag shared by a job and its owner."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class JobCancelled(Exception):
    """Raised at a checkpoint once the job's token is cancelled."""


@dataclass
class AlignedFrame:
    """A frame ready to be combined."""

    index: int
    frame: Frame
    transform: AlignmentTransform


@dataclass
class FailedFrame:
    """A frame dropped by a per-frame stage."""

    index: int
    name: str
    reason: RejectionReason
    detail: str
    transform: AlignmentTransform | None = None


FrameOutcome = Union[AlignedFrame, FailedFrame]

ProgressCallback = Callable[[StackProgress], None]


class Stacker:
    """
    Runs stacking jobs and tracks their state.

    Parameters
    ----------
    loader : callable, optional
        Decodes a ``FrameRef`` into a ``Frame``. Required only when jobs
        contain ``FrameRef`` entries (or paths, which are wrapped in one).
    on_progress : callable, optional
        Called with every ``StackProgress`` of the current job.
    workers : int, optional
        Threads for per-frame stages when the job does not set its own.
    """

    def __init__(
        self,
        loader: FrameLoader | None = None,
        on_progress: ProgressCallback | None = None,
        workers: int | None = None,
    ):
        self.loader = loader
        self.on_progress = on_progress
        self.workers = workers

        self.is_stacking = False
        self.progress: StackProgress | None = None
        self.result: StackResult | None = None
        self.error: str | None = None

        self._lock = threading.RLock()
        self._generation = 0
        self._token: CancelToken | None = None
        self._runner: ThreadPoolExecutor | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stack_files(
        self,
        frames_or_job: StackJob | Sequence[Any] | dict,
        method: str | None = None,
        **kwargs: Any,
    ) -> StackResult | None:
        """
        Run a job on the calling thread.

        Accepts the shorthand ``stack_files(frames, method)``, a
        ``StackJob``, or a configuration mapping; keyword arguments set
        any ``StackJob`` field.

        Returns
        -------
        StackResult or None
            None when the job was cancelled or superseded.

        Raises
        ------
        InsufficientFramesError, DimensionMismatchError, AlignmentError, StackingError
            The message is also stored in ``error``.
        """
        job = self._prepare(frames_or_job, method, kwargs)
        token, generation = self._begin()
        return self._execute(job, token, generation)

    def submit(
        self,
        frames_or_job: StackJob | Sequence[Any] | dict,
        method: str | None = None,
        **kwargs: Any,
    ) -> Future:
        """
        Run a job on a background thread and return its Future.

        Validation errors are raised here, before anything is queued. A
        job already running is cancelled.
        """
        job = self._prepare(frames_or_job, method, kwargs)
        token, generation = self._begin()
        with self._lock:
            if self._runner is None:
                self._runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stacker")
            runner = self._runner
        return runner.submit(self._execute, job, token, generation)

    def cancel(self) -> None:
        """Cancel the running job; its results are discarded."""
        with self._lock:
            if self._token is not None:
                self._token.cancel()
                self._token = None
            self._generation += 1
            was_running = self.is_stacking
            self.is_stacking = False
            self.progress = None
        if was_running:
            logger.info("Stacking cancelled")

    def reset(self) -> None:
        """Clear result, progress and error."""
        with self._lock:
            self.result = None
            self.progress = None
            self.error = None

    def shutdown(self, wait: bool = True) -> None:
        """Cancel any running job and stop the background thread."""
        self.cancel()
        with self._lock:
            runner, self._runner = self._runner, None
        if runner is not None:
            runner.shutdown(wait=wait)

    def __enter__(self) -> Stacker:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _prepare(self, frames_or_job: Any, method: str | None, kwargs: dict) -> StackJob:
        try:
            job = normalize_job(frames_or_job, method, **kwargs)
            job.validate()
            if self.loader is None:
                for i, item in enumerate(job.frames):
                    if not isinstance(item, (Frame, np.ndarray)):
                        raise ValueError(
                            f"No loader configured to decode {frame_name(item, i)}"
                        )
        except ValueError as e:
            # a rejected submission must not clobber the state of a running job
            with self._lock:
                if not self.is_stacking:
                    self.error = str(e)
            raise
        return job

    def _begin(self) -> tuple[CancelToken, int]:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._generation += 1
            self._token = CancelToken()
            self.is_stacking = True
            self.progress = None
            self.result = None
            self.error = None
            return self._token, self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _execute(self, job: StackJob, token: CancelToken, generation: int) -> StackResult | None:
        try:
            result = self._run(job, token, generation)
        except JobCancelled:
            logger.info("Job %d stopped at a cancellation checkpoint", generation)
            return None
        except Exception as e:
            with self._lock:
                if self._is_current(generation) and not token.cancelled:
                    self.error = str(e)
                    self.is_stacking = False
                    self.progress = None
            logger.error("Stacking failed: %s", e)
            raise

        with self._lock:
            if token.cancelled or not self._is_current(generation):
                return None
            self.result = result
            self.is_stacking = False
            self._token = None
        return result

    def _emit(
        self,
        generation: int,
        stage: str,
        current: int,
        total: int,
        message: str = "",
    ) -> None:
        event = StackProgress(stage, current, total, message)
        with self._lock:
            if not self._is_current(generation):
                return
            self.progress = event
            if self.on_progress is not None:
                self.on_progress(event)

    @staticmethod
    def _checkpoint(token: CancelToken) -> None:
        if token.cancelled:
            raise JobCancelled()

    def _decode(self, item: Any, name: str) -> Frame:
        if isinstance(item, Frame):
            return item
        if isinstance(item, np.ndarray):
            return Frame(item, name=name)
        ref = item if isinstance(item, FrameRef) else FrameRef(name=name, source=item)
        frame = self.loader(ref)
        if not isinstance(frame, Frame):
            raise ValueError(f"Loader returned {type(frame).__name__} for {name}")
        return frame

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _build_masters(
        self,
        calibration: CalibrationFrames,
        shape: tuple[int, int],
    ) -> dict[str, Frame | None]:
        """Decode and combine calibration inputs into master frames."""

        def load(items: Sequence[Any], label: str) -> list[Frame]:
            frames = []
            for i, item in enumerate(items):
                name = frame_name(item, i) if getattr(item, "name", "") else f"{label}_{i:03d}"
                try:
                    frame = self._decode(item, name)
                except (OSError, ValueError) as e:
                    raise StackingError(f"Could not decode {label} frame {name}: {e}") from e
                check_same_shape(frame, shape, name=label)
                frames.append(frame)
            return frames

        method = calibration.combine_method
        bias = dark = flat = None
        if calibration.bias is not None:
            bias = load([calibration.bias], "bias")[0]
        elif calibration.biases:
            bias = create_master_bias(load(calibration.biases, "bias"), method)

        if calibration.dark is not None:
            dark = load([calibration.dark], "dark")[0]
        elif calibration.darks:
            dark = create_master_dark(load(calibration.darks, "dark"), method)

        raw_flats = [calibration.flat] if calibration.flat is not None else calibration.flats
        if raw_flats:
            flat = create_master_flat(load(raw_flats, "flat"), bias=bias, method=method)

        logger.info(
            "Calibration masters: dark=%s flat=%s bias=%s",
            dark is not None, flat is not None, bias is not None,
        )
        return {"dark": dark, "flat": flat, "bias": bias}

    def _run(self, job: StackJob, token: CancelToken, generation: int) -> StackResult:
        start = time.time()
        n = len(job.frames)
        names = [frame_name(item, i) for i, item in enumerate(job.frames)]
        workers = job.workers if job.workers is not None else self.workers
        advanced = job.advanced
        rejected: list[RejectedFrame] = []

        def emit(stage: str, current: int, total: int, message: str = "") -> None:
            self._emit(generation, stage, current, total, message)

        def should_stop() -> bool:
            return token.cancelled

        logger.info(
            "Stacking %d frames: method=%s, alignment=%s, quality=%s",
            n, job.method, job.alignment_mode, job.enable_quality_eval,
        )

        # --- Loading ---
        frames: list[Frame | None] = [None] * n
        expected: tuple[int, int] | None = None
        emit("loading", 0, n)
        for i, item in enumerate(job.frames):
            self._checkpoint(token)
            try:
                frame = self._decode(item, names[i])
            except Exception as e:
                logger.warning("Could not decode %s: %s", names[i], e)
                rejected.append(RejectedFrame(names[i], RejectionReason.DECODE_FAILED, str(e)))
            else:
                if expected is None:
                    expected = frame.shape
                else:
                    check_same_shape(frame, expected, name=names[i])
                frames[i] = frame
            emit("loading", i + 1, n, names[i])

        loaded = [i for i in range(n) if frames[i] is not None]
        if len(loaded) < 2:
            raise StackingError(
                f"Only {len(loaded)} of {n} frames could be decoded; at least 2 are required"
            )

        # --- Calibrating ---
        calibration = job.calibration
        if calibration is not None and not calibration.is_empty():
            self._checkpoint(token)
            masters = self._build_masters(calibration, expected)
            emit("calibrating", 0, len(loaded))
            for k, i in enumerate(loaded):
                self._checkpoint(token)
                frames[i] = calibrate_frame(frames[i], flat_floor=calibration.flat_floor, **masters)
                emit("calibrating", k + 1, len(loaded), names[i])

        # --- Detecting ---
        stars: list[list[DetectedStar] | None] = [None] * n
        if job.alignment_mode != "none" or job.enable_quality_eval:
            emit("detecting", 0, len(loaded))
            detected = detect_stars_batch(
                [frames[i] for i in loaded],
                advanced.detection,
                workers=workers,
                should_stop=should_stop,
                on_result=lambda k, found: emit("detecting", k + 1, len(loaded), names[loaded[k]]),
            )
            self._checkpoint(token)
            for k, i in enumerate(loaded):
                stars[i] = detected[k]

        # --- Evaluating ---
        qualities: list[FrameQuality | None] = [None] * n
        if job.enable_quality_eval:
            emit("evaluating", 0, len(loaded))
            evaluated = evaluate_frames(
                [frames[i] for i in loaded],
                advanced.detection,
                advanced.quality,
                frame_stars=[stars[i] for i in loaded],
                workers=workers,
                should_stop=should_stop,
                on_result=lambda k, q: emit("evaluating", k + 1, len(loaded), names[loaded[k]]),
            )
            self._checkpoint(token)
            for k, i in enumerate(loaded):
                qualities[i] = evaluated[k]
        elif job.reference == "best":
            logger.warning("Reference 'best' needs quality evaluation, using first frame")

        ref_index = loaded[select_reference_frame([qualities[i] for i in loaded], job.reference)]

        # --- Aligning ---
        outcomes = self._align(job, frames, stars, loaded, ref_index, names, workers, emit, should_stop)
        self._checkpoint(token)
        frames = None

        aligned = [o for o in outcomes if isinstance(o, AlignedFrame)]
        for o in outcomes:
            if isinstance(o, FailedFrame):
                rejected.append(RejectedFrame(o.name, o.reason, o.detail))

        # --- Weighting ---
        weights = None
        if job.method == "weighted":
            if job.enable_quality_eval:
                weights = quality_to_weights([qualities[o.index] for o in aligned])
            else:
                weights = np.full(len(aligned), 1.0 / len(aligned))

        # --- Combining ---
        self._checkpoint(token)
        emit("combining", 0, 1)
        pixels, counts = combine(
            [o.frame for o in aligned],
            job.method,
            sigma=job.sigma,
            maxiters=job.maxiters,
            weights=weights,
            chunk_rows=job.chunk_rows,
            return_counts=True,
        )
        n_valid = np.zeros(pixels.shape, dtype=np.int32)
        for o in aligned:
            n_valid += np.isfinite(o.frame.pixels)
        self._checkpoint(token)
        emit("combining", 1, 1)

        stats = compute_stack_statistics(pixels, counts, n_valid)
        height, width = pixels.shape
        result = StackResult(
            pixels=pixels,
            width=width,
            height=height,
            method=job.method,
            frame_count=len(aligned),
            auto_stretch=compute_auto_stretch(pixels),
            inputs=names,
            kept=[names[o.index] for o in aligned],
            rejected=rejected,
            alignment_mode=job.alignment_mode,
            reference_index=ref_index,
            reference_name=names[ref_index],
            alignment=[o.transform for o in outcomes if o.transform is not None],
            qualities=qualities,
            weights=[float(w) for w in weights] if weights is not None else [],
            stats={
                "mean_clipped_fraction": stats.mean_clipped_fraction,
                "missing_fraction": stats.missing_fraction,
                "snr_proxy": stats.snr_proxy,
            },
            duration_s=time.time() - start,
            version=get_version(),
            timestamp=get_timestamp_iso(),
            platform=get_platform_info(),
        )

        self._checkpoint(token)
        emit("done", 1, 1)
        logger.info(
            "Stacked %d/%d frames (%dx%d) in %.1fs",
            result.frame_count, n, width, height, result.duration_s,
        )
        return result

    def _align(
        self,
        job: StackJob,
        frames: list[Frame | None],
        stars: list[list[DetectedStar] | None],
        loaded: list[int],
        ref_index: int,
        names: list[str],
        workers: int | None,
        emit: Callable[..., None],
        should_stop: Callable[[], bool],
    ) -> list[FrameOutcome]:
        """Align every loaded frame to the reference; reference comes first."""
        if job.alignment_mode == "none":
            return [
                AlignedFrame(i, frames[i], AlignmentTransform(name=names[i]))
                for i in loaded
            ]

        options = job.advanced.alignment
        ref_stars = stars[ref_index] or []
        if len(ref_stars) < options.min_matches:
            raise AlignmentError(
                f"Reference frame {names[ref_index]} has too few stars for alignment "
                f"({len(ref_stars)} found, {options.min_matches} needed)"
            )

        others = [i for i in loaded if i != ref_index]
        emit("aligning", 0, len(others))
        results = align_frames(
            frames[ref_index],
            [frames[i] for i in others],
            mode=job.alignment_mode,
            options=options,
            detection=job.advanced.detection,
            reference_stars=ref_stars,
            frame_stars=[stars[i] for i in others],
            workers=workers,
            should_stop=should_stop,
            on_result=lambda k, r: emit("aligning", k + 1, len(others), names[others[k]]),
        )

        reference = AlignmentTransform(
            matched_stars=-1,
            detection_counts={"reference": len(ref_stars), "target": len(ref_stars)},
            name=names[ref_index],
        )
        outcomes: list[FrameOutcome] = [AlignedFrame(ref_index, frames[ref_index], reference)]
        for i, res in zip(others, results):
            if res is None:
                continue
            if res.success:
                outcomes.append(AlignedFrame(i, res.aligned, res.transform))
            else:
                outcomes.append(
                    FailedFrame(
                        i, names[i], RejectionReason.ALIGNMENT_FAILED,
                        res.error_message, res.transform,
                    )
                )

        if should_stop():
            return outcomes
        if others and len(outcomes) - sum(isinstance(o, FailedFrame) for o in outcomes) < 2:
            raise AlignmentError(
                f"No frames could be aligned to the reference frame {names[ref_index]}"
            )
        return outcomes
