"""
Plots of reconstructed images and of single-LOR system-matrix rows.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import numpy as np

from petrecon.fov import FOV
from petrecon.geometry import LOR
from petrecon.system_response import SystemResponse

logger = logging.getLogger(__name__)


def _extents(fov: FOV):
    lo = fov.lower_corner_mm()
    hi = lo + 2.0 * fov.half_extents_mm()
    return lo, hi


def plot_image_slices(image: np.ndarray, fov: FOV, output_path, title: str = "Reconstructed Image",
                      slice_index: Optional[Tuple[int, int, int]] = None) -> Path:
    """
    Save transaxial (XY), coronal (XZ) and sagittal (YZ) slices of ``image``.

    Args:
        image: Volume of shape ``fov.shape``.
        fov: FOV the image lives on (for mm axes).
        output_path: PNG file to write.
        title: Figure title.
        slice_index: Voxel (ix, iy, iz) the slices pass through; the
            central voxel when None.
    """
    if slice_index is None:
        slice_index = tuple(n // 2 for n in image.shape)
    ix, iy, iz = (int(i) for i in slice_index)
    lo, hi = _extents(fov)

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    fig.suptitle(title, fontsize=16, fontweight='bold')

    views = [
        (image[:, :, iz].T, (lo[0], hi[0], lo[1], hi[1]), 'X (mm)', 'Y (mm)', f'Transaxial (z index {iz})'),
        (image[:, iy, :].T, (lo[0], hi[0], lo[2], hi[2]), 'X (mm)', 'Z (mm)', f'Coronal (y index {iy})'),
        (image[ix, :, :].T, (lo[1], hi[1], lo[2], hi[2]), 'Y (mm)', 'Z (mm)', f'Sagittal (x index {ix})'),
    ]
    for ax, (data, extent, xlabel, ylabel, name) in zip(axes, views):
        im = ax.imshow(data, origin='lower', extent=extent, cmap='hot', interpolation='nearest')
        ax.set_xlabel(xlabel)
        ax.set_ylabel(ylabel)
        ax.set_title(name)
        plt.colorbar(im, ax=ax, label='Activity')

    plt.tight_layout()
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved: {output_path}")
    return output_path


def plot_lor_weights(lor: LOR, fov: FOV, response: SystemResponse, output_path) -> Path:
    """
    Save the voxel weights of one LOR, summed along z, with the LOR on top.

    With a TOF model in ``response`` and timing on the LOR, the weights show
    the TOF Gaussian along the line.
    """
    voxels, weights, _ = response.row(lor)
    grid = np.zeros(fov.n_voxels_total)
    np.add.at(grid, voxels, weights)
    transaxial = fov.unflatten(grid).sum(axis=2)
    lo, hi = _extents(fov)

    fig, ax = plt.subplots(figsize=(8, 8))
    im = ax.imshow(transaxial.T, origin='lower', extent=(lo[0], hi[0], lo[1], hi[1]),
                   cmap='viridis', interpolation='nearest')
    (x1, y1, _), (x2, y2, _) = lor.p1.as_mm(), lor.p2.as_mm()
    ax.plot([x1, x2], [y1, y2], 'r-', linewidth=1, label='LOR')
    ax.set_xlim(lo[0], hi[0])
    ax.set_ylim(lo[1], hi[1])
    ax.set_xlabel('X (mm)')
    ax.set_ylabel('Y (mm)')
    ax.set_title(f'LOR weights ({len(voxels)} voxels)', fontweight='bold')
    ax.set_aspect('equal')
    ax.legend()
    plt.colorbar(im, ax=ax, label='Weight')

    plt.tight_layout()
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved: {output_path}")
    return output_path
