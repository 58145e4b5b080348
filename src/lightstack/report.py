"""
Report generation for stacking runs.

Produces:
- report.json: machine-readable record of the run (everything except pixels)
- report.md: human-readable Markdown summary
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

import numpy as np

from .align import transform_to_dict
from .config import RejectedFrame, StackResult
from .quality import rank_frames
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)


def _to_native(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.floating):
        value = float(obj)
        return value if np.isfinite(value) else None
    if isinstance(obj, float):
        return obj if np.isfinite(obj) else None
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.ndarray):
        return _to_native(obj.tolist())
    if isinstance(obj, dict):
        return {k: _to_native(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def _count_rejection_reasons(rejected: list[RejectedFrame]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for r in rejected:
        counts[r.reason.value] = counts.get(r.reason.value, 0) + 1
    return counts


def result_to_dict(result: StackResult, outputs: dict[str, Path] | None = None) -> dict[str, Any]:
    """
    Describe a stacking result as a JSON-compatible dict.

    Pixels are left out; ``outputs`` maps output kinds to written files.
    """
    report = {
        "version": result.version or get_version(),
        "timestamp": result.timestamp or get_timestamp_iso(),
        "platform": result.platform or get_platform_info(),
        "summary": {
            "method": result.method,
            "width": result.width,
            "height": result.height,
            "frames_submitted": len(result.inputs),
            "frames_stacked": result.frame_count,
            "frames_rejected": len(result.rejected),
            "alignment_mode": result.alignment_mode,
            "reference_frame": result.reference_name,
            "duration_s": result.duration_s,
        },
        "auto_stretch": asdict(result.auto_stretch) if result.auto_stretch else None,
        "statistics": result.stats,
        "rejection_reasons": _count_rejection_reasons(result.rejected),
        "rejected": [
            {"name": r.name, "reason": r.reason.value, "detail": r.detail}
            for r in result.rejected
        ],
        "kept": result.kept,
        "weights": dict(zip(result.kept, result.weights)) if result.weights else {},
        "alignment": [transform_to_dict(t) for t in result.alignment],
        "quality": [
            {k: v for k, v in asdict(q).items() if k != "stars"}
            for q in result.qualities
            if q is not None
        ],
        "outputs": {k: str(v) for k, v in (outputs or {}).items()},
    }
    return _to_native(report)


def write_report_json(
    result: StackResult,
    output_dir: Path,
    outputs: dict[str, Path] | None = None,
) -> Path:
    """
    Write the run record as JSON.

    Returns
    -------
    Path
        Path to written report file.
    """
    report_path = Path(output_dir) / "report.json"
    with open(report_path, "w") as f:
        json.dump(result_to_dict(result, outputs), f, indent=2)
    logger.info("Wrote report: %s", report_path)
    return report_path


def write_report_markdown(
    result: StackResult,
    output_dir: Path,
    outputs: dict[str, Path] | None = None,
) -> Path:
    """
    Write human-readable Markdown report.

    Returns
    -------
    Path
        Path to written report file.
    """
    lines = [
        f"# Stacking Report ({result.method})",
        "",
        f"**Generated:** {result.timestamp or get_timestamp_iso()}",
        f"**lightstack version:** {result.version or get_version()}",
        f"**Platform:** {result.platform or get_platform_info()}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Image size | {result.width}x{result.height} |",
        f"| Frames submitted | {len(result.inputs)} |",
        f"| Frames stacked | {result.frame_count} |",
        f"| Frames rejected | {len(result.rejected)} |",
        f"| Alignment | {result.alignment_mode} |",
        f"| Reference frame | `{result.reference_name or 'N/A'}` |",
        f"| Duration | {result.duration_s:.1f}s |",
        "",
    ]

    if result.stats:
        lines.extend(["## Statistics", "", "| Metric | Value |", "|--------|-------|"])
        for key, value in result.stats.items():
            lines.append(f"| {key} | {value:.4f} |" if isinstance(value, float) else f"| {key} | {value} |")
        lines.append("")

    if result.alignment_mode != "none" and result.alignment:
        lines.extend([
            "## Alignment",
            "",
            "| Frame | Model | Matches | RMS (px) | dx | dy | Rotation | Fallback |",
            "|-------|-------|---------|----------|----|----|----------|----------|",
        ])
        for t in result.alignment:
            tx, ty = t.translation
            lines.append(
                f"| `{t.name}` | {t.kind} | {t.matched_stars} | {t.rms_error:.3f} | "
                f"{tx:.2f} | {ty:.2f} | {t.rotation_deg:.3f} | {t.fallback_used} |"
            )
        lines.append("")

    if result.rejected:
        lines.extend(["## Rejected Frames", "", "| Frame | Reason | Detail |", "|-------|--------|--------|"])
        for r in result.rejected:
            lines.append(f"| `{r.name}` | {r.reason.value} | {r.detail} |")
        lines.append("")

    if any(q is not None for q in result.qualities):
        lines.extend([
            "## Quality Scores (Top 5)",
            "",
            "| Rank | Frame | Score | Stars | FWHM | SNR |",
            "|------|-------|-------|-------|------|-----|",
        ])
        ranked = [i for i in rank_frames(result.qualities) if result.qualities[i] is not None]
        for rank, i in enumerate(ranked[:5], 1):
            q = result.qualities[i]
            lines.append(
                f"| {rank} | `{result.inputs[i]}` | {q.score:.1f} | {q.star_count} | "
                f"{q.median_fwhm:.2f} | {q.snr:.1f} |"
            )
        lines.append("")

    if outputs:
        lines.extend(["## Outputs", ""])
        for name, path in outputs.items():
            lines.append(f"- **{name}:** `{path}`")
        lines.append("")

    report_path = Path(output_dir) / "report.md"
    with open(report_path, "w") as f:
        f.write("\n".join(lines))
    logger.info("Wrote Markdown report: %s", report_path)
    return report_path


def write_all_reports(
    result: StackResult,
    output_dir: Path,
    outputs: dict[str, Path] | None = None,
) -> dict[str, Path]:
    """
    Write all report files.

    Returns
    -------
    dict[str, Path]
        Map of report type to path.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    return {
        "json": write_report_json(result, output_dir, outputs),
        "markdown": write_report_markdown(result, output_dir, outputs),
    }
