"""
System response model: the implicit system matrix.

A row of the system matrix holds, for one LOR, the weight with which every
voxel contributes to that LOR's expected counts. Geometry provides the chord
lengths (``raytrace``); this module scales them by the LOR's detector
sensitivity, an optional attenuation factor and, for LORs carrying timing
information, a time-of-flight Gaussian.

Rows are gathered into ``RowBlock`` objects: flat numpy arrays covering many
LORs at once, so that forward and back projection are single vectorised
operations.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Mapping, Optional, Sequence, Union

import numpy as np

from petrecon.errors import ReconstructionError
from petrecon.fov import FOV
from petrecon.geometry import LOR
from petrecon.raytrace import RayTraceResult, trace
from petrecon.units import C, Time

logger = logging.getLogger(__name__)

AttenuationModel = Callable[[LOR], float]


# ==============================================================================
# TIME OF FLIGHT
# ==============================================================================

def make_gauss(sigma_mm: float, cutoff: Optional[float] = None) -> Callable[[np.ndarray], np.ndarray]:
    """
    Normalised Gaussian (per mm) of width ``sigma_mm``.

    Args:
        sigma_mm: Standard deviation in mm.
        cutoff: Distances beyond ``cutoff * sigma_mm`` get zero weight.
            None disables the cutoff.
    """
    peak_height = 1.0 / (sigma_mm * math.sqrt(2.0 * math.pi))
    limit = math.inf if cutoff is None else cutoff * sigma_mm

    def gauss(dx: np.ndarray) -> np.ndarray:
        dx = np.asarray(dx, dtype=np.float64)
        y = dx / sigma_mm
        values = peak_height * np.exp(-0.5 * y * y)
        return np.where(np.abs(dx) < limit, values, 0.0)

    return gauss


class TOFModel:
    """
    Time-of-flight weighting along a LOR.

    Args:
        sigma: Timing resolution (standard deviation of ``dt``).
        cutoff: Truncate the Gaussian at this many sigmas; None keeps the
            full Gaussian.
    """

    def __init__(self, sigma: Time, cutoff: Optional[float] = 3.0):
        if not isinstance(sigma, Time):
            raise TypeError("TOF sigma must be a Time")
        if sigma.ps <= 0:
            raise ValueError(f"TOF sigma must be positive, got {sigma!r}")
        if cutoff is not None and cutoff <= 0:
            raise ValueError(f"TOF cutoff must be positive, got {cutoff}")
        self.sigma = sigma
        self.cutoff = cutoff
        # The timing spread of dt maps onto half as much spread along the LOR
        self.sigma_mm = (C * sigma).mm / 2.0

    def factors(self, lor: LOR, traced: RayTraceResult) -> np.ndarray:
        """TOF factor (per mm) for every voxel of ``traced``."""
        peak = lor.tof_peak
        if peak is None or not traced:
            return np.ones(len(traced))
        # Distance from p1 to the middle of each chord
        ends = traced.start_mm + np.cumsum(traced.lengths_mm)
        midpoints = ends - traced.lengths_mm / 2.0
        return make_gauss(self.sigma_mm, self.cutoff)(midpoints - peak.mm)

    def __repr__(self):
        return f"TOFModel(sigma={self.sigma!r}, cutoff={self.cutoff})"


# ==============================================================================
# ROW BLOCKS
# ==============================================================================

class RowBlock:
    """
    A set of system-matrix rows in coordinate form.

    Attributes:
        lor_ids: Positions (in the caller's LOR sequence) of the LORs kept in
            this block, one per row.
        counts: Observed counts, one per row.
        row: Row number (into ``lor_ids``) of every non-zero entry.
        voxel: Flat voxel index of every non-zero entry.
        weight: Projection weight of every entry (includes TOF).
        sensitivity_weight: Weight used for the sensitivity image (no TOF).
        skipped: Number of LORs rejected as malformed or degenerate.
    """

    __slots__ = ("lor_ids", "counts", "row", "voxel", "weight", "sensitivity_weight", "skipped")

    def __init__(self, lor_ids, counts, row, voxel, weight, sensitivity_weight, skipped=0):
        self.lor_ids = lor_ids
        self.counts = counts
        self.row = row
        self.voxel = voxel
        self.weight = weight
        self.sensitivity_weight = sensitivity_weight
        self.skipped = skipped

    @property
    def n_rows(self) -> int:
        return len(self.lor_ids)

    @property
    def n_entries(self) -> int:
        return len(self.voxel)

    def forward(self, image_flat: np.ndarray) -> np.ndarray:
        """Expected counts for every row, given a flat image."""
        contributions = self.weight * image_flat[self.voxel]
        return np.bincount(self.row, weights=contributions, minlength=self.n_rows)

    def backproject(self, row_values: np.ndarray, n_voxels: int) -> np.ndarray:
        """Distribute one value per row back over the voxels of each row."""
        return np.bincount(self.voxel, weights=self.weight * row_values[self.row],
                           minlength=n_voxels)

    def sensitivity(self, n_voxels: int) -> np.ndarray:
        return np.bincount(self.voxel, weights=self.sensitivity_weight, minlength=n_voxels)

    def __repr__(self):
        return f"RowBlock({self.n_rows} rows, {self.n_entries} entries, {self.skipped} skipped)"


# ==============================================================================
# SYSTEM RESPONSE
# ==============================================================================

class SystemResponse:
    """
    Turns LORs into system-matrix rows over one FOV.

    Args:
        fov: Voxel grid.
        tof: Time-of-flight model. LORs without ``dt`` are never TOF-weighted.
        attenuation: Optional callable returning a multiplicative survival
            factor in ``[0, 1]`` for a LOR. With more than one worker the
            response is sent to worker processes, so it must be picklable
            (a module-level function, not a lambda).
    """

    def __init__(self, fov: FOV, tof: Optional[TOFModel] = None,
                 attenuation: Optional[AttenuationModel] = None):
        self.fov = fov
        self.tof = tof
        self.attenuation = attenuation

    def trace(self, lor: LOR) -> RayTraceResult:
        return trace(lor, self.fov)

    def lor_factor(self, lor: LOR) -> float:
        """Scalar weight shared by all voxels of a LOR."""
        factor = lor.sensitivity
        if self.attenuation is not None:
            factor *= float(self.attenuation(lor))
        return factor

    def row(self, lor: LOR):
        """
        System-matrix row of a single LOR.

        Returns:
            tuple: ``(flat_voxels, weights, sensitivity_weights)`` numpy arrays.
        """
        traced = self.trace(lor)
        voxels = traced.flat_indices(self.fov)
        sensitivity_weights = traced.lengths_mm * self.lor_factor(lor)
        if self.tof is not None and lor.dt is not None:
            weights = sensitivity_weights * self.tof.factors(lor, traced)
        else:
            weights = sensitivity_weights
        return voxels, weights, sensitivity_weights

    def block(self, lors: Union[Sequence[LOR], Mapping[int, LOR]],
              lor_ids: Optional[Sequence[int]] = None) -> RowBlock:
        """
        Rows for ``lors[i]`` for every ``i`` in ``lor_ids`` (all LORs by default).

        ``lors`` may also be a mapping from LOR id to LOR holding only the
        requested ids, which is what worker processes receive.

        Malformed and degenerate LORs are skipped and counted; they never
        abort the block.
        """
        if lor_ids is None:
            lor_ids = range(len(lors))

        kept, counts = [], []
        rows, voxels, weights, sens_weights = [], [], [], []
        skipped = 0
        for lor_id in lor_ids:
            lor = lors[lor_id]
            try:
                lor.check()
            except ReconstructionError as e:
                logger.debug(f"Skipping LOR {lor_id}: {e}")
                skipped += 1
                continue
            v, w, s = self.row(lor)
            rows.append(np.full(len(v), len(kept), dtype=np.int64))
            kept.append(lor_id)
            counts.append(lor.counts)
            voxels.append(v)
            weights.append(w)
            sens_weights.append(s)

        def join(parts, dtype):
            return np.concatenate(parts).astype(dtype, copy=False) if parts else np.empty(0, dtype=dtype)

        return RowBlock(
            lor_ids=np.asarray(kept, dtype=np.int64),
            counts=np.asarray(counts, dtype=np.float64),
            row=join(rows, np.int64),
            voxel=join(voxels, np.int64),
            weight=join(weights, np.float64),
            sensitivity_weight=join(sens_weights, np.float64),
            skipped=skipped,
        )

    def __repr__(self):
        return f"SystemResponse({self.fov!r}, tof={self.tof!r})"
