"""
List-mode data and image files.

List-mode files are the ``.npz`` archives written by the event-processing
stage: one entry per coincidence with keys ``x1, y1, z1, x2, y2, z2`` (mm)
and optionally ``time1, time2`` (ns), ``counts`` and ``sensitivity``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Sequence, Union

import numpy as np

from petrecon.fov import FOV
from petrecon.geometry import LOR, Point3
from petrecon.units import ns

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

COORDINATE_KEYS = ('x1', 'y1', 'z1', 'x2', 'y2', 'z2')


# ==============================================================================
# LIST-MODE
# ==============================================================================

def lors_from_arrays(data) -> List[LOR]:
    """
    Build LORs from a mapping of equally long arrays.

    Args:
        data: Mapping with at least the coordinate keys ``x1 ... z2`` in mm.

    Returns:
        list: One LOR per entry.

    Raises:
        KeyError: If a coordinate key is missing.
        ValueError: If the arrays differ in length.
    """
    missing = [k for k in COORDINATE_KEYS if k not in data]
    if missing:
        raise KeyError(f"List-mode data lacks {', '.join(missing)}")

    coords = np.column_stack([np.asarray(data[k], dtype=np.float64) for k in COORDINATE_KEYS])
    n_events = len(coords)
    counts = np.asarray(data['counts'], dtype=np.float64) if 'counts' in data else np.ones(n_events)
    sensitivity = (np.asarray(data['sensitivity'], dtype=np.float64)
                   if 'sensitivity' in data else np.ones(n_events))
    if len(counts) != n_events or len(sensitivity) != n_events:
        raise ValueError("List-mode arrays must all have the same length")

    has_tof = 'time1' in data and 'time2' in data
    if has_tof:
        dt_ns = np.asarray(data['time2'], dtype=np.float64) - np.asarray(data['time1'], dtype=np.float64)

    lors = []
    for i, (x1, y1, z1, x2, y2, z2) in enumerate(coords.tolist()):
        lors.append(LOR(
            Point3.from_mm(x1, y1, z1),
            Point3.from_mm(x2, y2, z2),
            counts=counts[i],
            sensitivity=sensitivity[i],
            dt=ns(dt_ns[i]) if has_tof else None,
        ))
    return lors


def load_listmode(filepath: PathLike) -> List[LOR]:
    """Load LORs from a list-mode ``.npz`` file."""
    logger.info(f"Loading list-mode data from {filepath}")
    with np.load(filepath) as data:
        lors = lors_from_arrays(data)

    if lors:
        lengths = np.array([lor.length.mm for lor in lors])
        logger.info(f"  Events loaded: {len(lors)}")
        logger.info(f"  LOR length range: {lengths.min():.1f} - {lengths.max():.1f} mm")
    else:
        logger.warning(f"  No events in {filepath}")
    return lors


def save_listmode(filepath: PathLike, lors: Sequence[LOR]) -> None:
    """
    Write LORs in the list-mode ``.npz`` format read by ``load_listmode``.

    Raises:
        ValueError: If only some of the LORs carry timing. The format stores
            timing for every event or for none.
    """
    n_timed = sum(lor.dt is not None for lor in lors)
    if 0 < n_timed < len(lors):
        raise ValueError(f"{n_timed} of {len(lors)} LORs carry timing; "
                         "list-mode files need timing on all LORs or none")

    data = {k: np.empty(len(lors)) for k in COORDINATE_KEYS}
    data['counts'] = np.array([lor.counts for lor in lors], dtype=np.float64)
    data['sensitivity'] = np.array([lor.sensitivity for lor in lors], dtype=np.float64)
    for i, lor in enumerate(lors):
        (data['x1'][i], data['y1'][i], data['z1'][i]) = lor.p1.as_mm()
        (data['x2'][i], data['y2'][i], data['z2'][i]) = lor.p2.as_mm()
    data['lor_length'] = np.array([lor.length.mm for lor in lors], dtype=np.float64)

    if lors and n_timed == len(lors):
        # Only the difference is meaningful; anchor the first hit at t = 0
        data['time1'] = np.zeros(len(lors))
        data['time2'] = np.array([lor.dt.ns for lor in lors], dtype=np.float64)

    Path(filepath).parent.mkdir(parents=True, exist_ok=True)
    np.savez(filepath, **data)
    logger.info(f"Saved {len(lors)} LORs to {filepath}")


# ==============================================================================
# IMAGES
# ==============================================================================

def save_image(filepath: PathLike, image: np.ndarray, fov: FOV) -> Path:
    """
    Save an image as ``.npy`` (with a JSON metadata sidecar) or ``.raw``.

    ``.raw`` files hold little-endian float32 values in the FOV's flat order,
    without a header.

    Returns:
        Path: The written image file.

    Raises:
        ValueError: If the file extension is not supported.
    """
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix == '.npy':
        np.save(path, image)
        metadata = {
            'shape': list(fov.shape),
            'voxel_size_mm': fov.voxel_size_mm().tolist(),
            'lower_corner_mm': fov.lower_corner_mm().tolist(),
            'order': fov.order,
        }
        path.with_suffix('.json').write_text(json.dumps(metadata, indent=2))
    elif path.suffix == '.raw':
        fov.flatten(np.asarray(image)).astype('<f4').tofile(path)
    else:
        raise ValueError(f"Unsupported image format: {path.suffix}")

    logger.info(f"Saved image to {path}")
    return path


def load_raw_image(filepath: PathLike, fov: FOV) -> np.ndarray:
    """Read a ``.raw`` image written by ``save_image``."""
    flat = np.fromfile(filepath, dtype='<f4')
    if flat.size != fov.n_voxels_total:
        raise ValueError(f"{filepath} holds {flat.size} values, FOV needs {fov.n_voxels_total}")
    return fov.unflatten(flat.astype(np.float64))
