"""
Command-line interface for the lightstack pipeline.

Usage:
    python -m lightstack stack <files or folder> [options]
    lightstack stack <files or folder> [options]
"""

from __future__ import annotations

import argparse
import logging
import sys
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path

import imageio.v3 as iio

from .cli_output import (
    StageProgress,
    print_banner,
    print_error,
    print_info,
    print_metric,
    print_path,
    print_success,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .config import (
    ALIGNMENT_MODES,
    DETECTION_PROFILES,
    AdvancedOptions,
    AlignmentOptions,
    CalibrationFrames,
    DetectionOptions,
    StackingError,
    StackJob,
    StackResult,
    canonical_method,
)
from .frame import FrameRef
from .io import build_result_header, list_frames, load_frame, write_fits
from .pipeline import Stacker
from .report import write_all_reports
from .utils import (
    asinh_stretch,
    format_duration,
    get_version,
    get_version_banner,
    sanitize_filename,
    to_uint8,
)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def collect_inputs(inputs: list[str]) -> list[Path]:
    """
    Expand command-line inputs into a list of FITS paths.

    Folders are scanned for FITS files; files are kept in the given order.
    """
    paths: list[Path] = []
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            paths.extend(list_frames(path))
        elif path.exists():
            paths.append(path)
        else:
            logger.warning("Input not found: %s", item)
    return paths


def _calibration_refs(items: list[str] | None, label: str) -> list[FrameRef]:
    refs = []
    for path in collect_inputs(items or []):
        refs.append(FrameRef(name=f"{label}:{path.name}", source=path))
    return refs


def build_job(args: argparse.Namespace, frames: list[Path]) -> StackJob:
    """Translate parsed arguments into a ``StackJob``."""
    calibration = CalibrationFrames(
        darks=_calibration_refs(args.dark, "dark"),
        flats=_calibration_refs(args.flat, "flat"),
        biases=_calibration_refs(args.bias, "bias"),
    )
    advanced = AdvancedOptions(
        detection=DetectionOptions(profile=args.profile),
        alignment=AlignmentOptions(
            inlier_threshold=args.inlier_threshold,
            max_ransac_iterations=args.max_iterations,
            fallback_to_translation=not args.no_fallback,
            full_model=args.full_model,
            seed=args.seed,
        ),
    )
    method = canonical_method(args.method)
    return StackJob(
        frames=[FrameRef(name=p.name, source=p) for p in frames],
        method=method,
        sigma=args.sigma,
        maxiters=args.maxiters,
        alignment_mode=args.align,
        enable_quality_eval=args.quality or method == "weighted" or args.reference == "best",
        reference=args.reference,
        calibration=None if calibration.is_empty() else calibration,
        advanced=advanced,
        workers=args.workers,
    )


def run_job(stacker: Stacker, job: StackJob) -> StackResult | None:
    """
    Run a job in the background and wait for it.

    Ctrl-C cancels the job; None is returned in that case.
    """
    future = stacker.submit(job)
    try:
        while True:
            try:
                return future.result(timeout=0.2)
            except FutureTimeoutError:
                continue
    except KeyboardInterrupt:
        stacker.cancel()
        future.cancel()
        return None


def write_outputs(
    result: StackResult,
    output_dir: Path,
    name: str,
    quicklook: bool = True,
) -> dict[str, Path]:
    """Write the stacked FITS, the quicklook PNG and the reports."""
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs = {
        "fits": write_fits(
            output_dir / f"{name}.fits",
            result.pixels,
            header=build_result_header(result),
            overwrite=True,
        )
    }
    if quicklook and result.auto_stretch is not None:
        stretched = asinh_stretch(
            result.pixels,
            result.auto_stretch.black_point,
            result.auto_stretch.white_point,
        )
        png_path = output_dir / f"{name}.png"
        iio.imwrite(png_path, to_uint8(stretched))
        logger.info("Wrote quicklook: %s", png_path)
        outputs["quicklook"] = png_path

    reports = write_all_reports(result, output_dir, outputs)
    outputs.update({f"report_{k}": v for k, v in reports.items()})
    return outputs


def stack_command(args: argparse.Namespace) -> int:
    """Handle ``lightstack stack``."""
    if not args.quiet:
        setup_terminal()
        print_banner(get_version())

    logger.info(get_version_banner())
    frames = collect_inputs(args.inputs)
    if not args.quiet:
        print_info(f"{len(frames)} light frames, method {args.method}, alignment {args.align}")

    try:
        job = build_job(args, frames)
    except ValueError as e:
        print_error(str(e))
        return 1

    progress = StageProgress(quiet=args.quiet)
    stacker = Stacker(loader=load_frame, on_progress=progress, workers=args.workers)
    try:
        result = run_job(stacker, job)
    except (StackingError, ValueError) as e:
        progress.close()
        print_error(f"Stacking failed: {e}")
        return 1
    finally:
        stacker.shutdown(wait=False)
    progress.close()

    if result is None:
        print_warning("Stacking cancelled")
        return 130

    name = sanitize_filename(args.name or f"stack_{result.method}_{result.frame_count}")
    output_dir = Path(args.out)
    outputs = write_outputs(result, output_dir, name, quicklook=not args.no_quicklook)

    if not args.quiet:
        for r in result.rejected:
            print_warning(f"{r.name}: {r.reason.value} ({r.detail})")
        print_metric("Frames stacked", f"{result.frame_count}/{len(result.inputs)}")
        print_metric("Reference", result.reference_name)
        if result.auto_stretch is not None:
            print_metric(
                "Display range",
                f"{result.auto_stretch.black_point:.2f} .. {result.auto_stretch.white_point:.2f}",
            )
        for label, path in outputs.items():
            print_path(label, str(path))
        print_summary_box(
            [
                f"Method: {result.method}",
                f"Size: {result.width}x{result.height}",
                f"Frames: {result.frame_count} stacked, {len(result.rejected)} rejected",
                f"Time: {format_duration(result.duration_s)}",
            ],
            title="Stack complete",
        )
        print_success(f"Saved {outputs['fits']}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="lightstack",
        description="Calibrate, align and stack astronomical light frames",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"lightstack {get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    stack_parser = subparsers.add_parser("stack", help="Stack FITS light frames")
    stack_parser.add_argument(
        "inputs",
        nargs="+",
        help="FITS files or folders containing them",
    )
    stack_parser.add_argument(
        "--method",
        type=str,
        default="sigmaClip",
        help="average, median, min, max, sigmaClip, winsorizedSigmaClip or weighted "
             "(default: sigmaClip)",
    )
    stack_parser.add_argument(
        "--sigma",
        type=float,
        default=2.5,
        help="Clipping threshold for sigma methods (default: 2.5)",
    )
    stack_parser.add_argument(
        "--maxiters",
        type=int,
        default=5,
        help="Max iterations for sigma clipping (default: 5)",
    )
    stack_parser.add_argument(
        "--align",
        type=str,
        choices=list(ALIGNMENT_MODES),
        default="full",
        help="Alignment mode (default: full)",
    )
    stack_parser.add_argument(
        "--full-model",
        type=str,
        choices=["affine", "similarity"],
        default="affine",
        help="Transform fitted in full alignment mode (default: affine)",
    )
    stack_parser.add_argument(
        "--quality",
        action="store_true",
        help="Score frames (implied by --method weighted and --reference best)",
    )
    stack_parser.add_argument(
        "--reference",
        type=str,
        choices=["first", "best"],
        default="first",
        help="Reference frame selection (default: first)",
    )
    stack_parser.add_argument("--dark", nargs="+", help="Dark frames or folder")
    stack_parser.add_argument("--flat", nargs="+", help="Flat frames or folder")
    stack_parser.add_argument("--bias", nargs="+", help="Bias frames or folder")
    stack_parser.add_argument(
        "--profile",
        type=str,
        choices=sorted(DETECTION_PROFILES),
        default="balanced",
        help="Star detection profile (default: balanced)",
    )
    stack_parser.add_argument(
        "--inlier-threshold",
        type=float,
        default=3.0,
        help="RANSAC inlier threshold in pixels (default: 3.0)",
    )
    stack_parser.add_argument(
        "--max-iterations",
        type=int,
        default=500,
        help="Maximum RANSAC iterations (default: 500)",
    )
    stack_parser.add_argument(
        "--no-fallback",
        action="store_true",
        help="Do not retry failed full alignments as translation-only",
    )
    stack_parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="RANSAC seed (default: 0)",
    )
    stack_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel workers (default: auto = CPU count - 1)",
    )
    stack_parser.add_argument(
        "--out",
        type=str,
        default="stacked",
        help="Output directory (default: stacked)",
    )
    stack_parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Base name for output files",
    )
    stack_parser.add_argument(
        "--no-quicklook",
        action="store_true",
        help="Skip quicklook PNG generation",
    )
    stack_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Minimal output",
    )
    stack_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "stack":
        setup_logging(args.verbose, args.quiet)
        try:
            return stack_command(args)
        except Exception as e:
            print_error(f"Stacking failed: {e}")
            logger.exception("Stacking failed: %s", e)
            return 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
