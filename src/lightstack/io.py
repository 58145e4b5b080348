"""
FITS input and output for the command-line driver.

The stacking core never touches files; this module is the decoding
collaborator handed to ``Stacker(loader=load_frame)``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import numpy as np
from astropy.io import fits

from .config import StackResult
from .frame import Frame, FrameKind, FrameRef

logger = logging.getLogger(__name__)

FITS_PATTERNS = ("*.fits", "*.fit", "*.fts")


def list_frames(
    folder: str | Path,
    patterns: Iterable[str] = FITS_PATTERNS,
) -> list[Path]:
    """
    Discover FITS files in a folder.

    Returns
    -------
    list[Path]
        Paths sorted by name (capture software usually timestamps names,
        so this is chronological order).
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise ValueError(f"Not a directory: {folder}")

    found: set[Path] = set()
    for pattern in patterns:
        found.update(folder.glob(pattern))
        found.update(folder.glob(pattern.upper()))
    paths = sorted(found)
    logger.info("Discovered %d FITS files in %s", len(paths), folder.name)
    return paths


def read_fits(path: str | Path, dtype: np.dtype = np.float32) -> np.ndarray:
    """
    Read the first image HDU of a FITS file.

    BZERO/BSCALE are applied by astropy, so unsigned 16-bit data comes
    back as 0-65535. A colour cube with 3 planes, stored (3, H, W) or
    (H, W, 3), is averaged to luminance.

    Returns
    -------
    np.ndarray
        2D array of shape (NAXIS2, NAXIS1).
    """
    with fits.open(path) as hdul:
        hdu = next((h for h in hdul if h.data is not None and h.data.ndim >= 2), None)
        if hdu is None:
            raise ValueError(f"No image data in {path}")
        data = np.asarray(hdu.data, dtype=dtype)

    if data.ndim == 3 and data.shape[0] == 3:
        logger.debug("Averaging colour planes of %s", path)
        data = data.mean(axis=0, dtype=dtype)
    elif data.ndim == 3 and data.shape[2] == 3:
        logger.debug("Averaging colour planes of %s", path)
        data = data.mean(axis=2, dtype=dtype)
    if data.ndim != 2:
        raise ValueError(f"Unsupported image shape {data.shape} in {path}")
    return data


def read_header(path: str | Path) -> fits.Header:
    """Read the primary header of a FITS file."""
    with fits.open(path) as hdul:
        return hdul[0].header.copy()


def load_frame(ref: FrameRef | str | Path, kind: FrameKind = "light") -> Frame:
    """
    Decode a frame reference whose ``source`` (or ``name``) is a path.

    This is the loader passed to ``Stacker``.
    """
    if isinstance(ref, FrameRef):
        path = Path(ref.source if ref.source is not None else ref.name)
    else:
        path = Path(ref)
    return Frame(read_fits(path), name=path.name, kind=kind)


def build_result_header(result: StackResult) -> fits.Header:
    """FITS header cards describing how a stack was produced."""
    header = fits.Header()
    header["NCOMBINE"] = (result.frame_count, "Frames combined")
    header["STACKMTH"] = (result.method, "Combination method")
    header["ALIGNMOD"] = (result.alignment_mode, "Alignment mode")
    header["REFFRAME"] = (result.reference_name[:68], "Reference frame")
    if result.auto_stretch is not None:
        header["DISPBLK"] = (result.auto_stretch.black_point, "Display black point")
        header["DISPWHT"] = (result.auto_stretch.white_point, "Display white point")
    header["SWCREATE"] = (f"lightstack {result.version}", "Software")
    header["DATE"] = (result.timestamp[:19], "Stack creation time (UTC)")
    return header


def write_fits(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    overwrite: bool = False,
) -> Path:
    """
    Write a 2D float image to FITS.

    Parameters
    ----------
    path : str or Path
        Output path; parent folders are created.
    data : np.ndarray
        Image data to write.
    header : fits.Header, optional
        Header to include.
    overwrite : bool, default False
        Whether to overwrite an existing file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    hdu = fits.PrimaryHDU(data=np.asarray(data, dtype=np.float32), header=header or fits.Header())
    hdu.writeto(path, overwrite=overwrite)
    logger.info("Wrote FITS: %s", path)
    return path
