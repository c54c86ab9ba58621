"""
Field Of View and voxel grid.

The FOV is an axis-aligned box given by its centre and half-extents,
divided into ``nx * ny * nz`` voxels of uniform size per axis.

Boundary convention:
    A point lying exactly on a face shared by two voxels belongs to the voxel
    on the positive side of that face. Consequently a point on the FOV's
    lower face is inside (voxel 0) and a point on its upper face is outside.
"""

from __future__ import annotations

import math
from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np

from petrecon.errors import IndexOutOfRange, InvalidGeometry
from petrecon.geometry import ORIGIN, Point3
from petrecon.units import Length, mm


class VoxelIndex(NamedTuple):
    ix: int
    iy: int
    iz: int


class FOV:
    """
    Reconstructed volume.

    Args:
        half_extents: Half of the FOV's full width along x, y and z.
        n_voxels: Number of voxels along x, y and z.
        center: Centre of the FOV. Defaults to the origin.
        order: Flat index ordering, ``"C"`` (row-major, z fastest) or ``"F"``
            (column-major, x fastest). Images share this ordering when
            flattened.

    Raises:
        InvalidGeometry: If a voxel count is not a positive integer or a
            half-extent is not a positive finite length.
    """

    __slots__ = ("_half", "_center", "_n", "_order")

    def __init__(self, half_extents: Sequence[Length], n_voxels: Sequence[int],
                 center: Point3 = ORIGIN, order: str = "C"):
        if len(half_extents) != 3 or len(n_voxels) != 3:
            raise InvalidGeometry("FOV needs exactly three half-extents and three voxel counts")
        half = []
        for h in half_extents:
            if not isinstance(h, Length):
                raise TypeError(f"half-extents must be Length quantities, got {type(h).__name__}")
            if not math.isfinite(h.mm) or h.mm <= 0:
                raise InvalidGeometry(f"half-extent must be positive, got {h!r}")
            half.append(h.mm)
        counts = []
        for n in n_voxels:
            if isinstance(n, bool) or int(n) != n or n <= 0:
                raise InvalidGeometry(f"voxel counts must be positive integers, got {n!r}")
            counts.append(int(n))
        if order not in ("C", "F"):
            raise InvalidGeometry(f"order must be 'C' or 'F', got {order!r}")
        if not isinstance(center, Point3):
            raise TypeError("center must be a Point3")

        self._half = tuple(half)
        self._n = tuple(counts)
        self._center = center
        self._order = order

    @classmethod
    def from_full_size(cls, size_mm: Sequence[float], n_voxels: Sequence[int], **kwargs) -> FOV:
        """Convenience constructor taking full widths in mm, as the CLI does."""
        return cls([mm(s / 2.0) for s in size_mm], n_voxels, **kwargs)

    # --------------------------------------------------------------------------
    # Shape and extent
    # --------------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self._n

    @property
    def n_voxels_total(self) -> int:
        nx, ny, nz = self._n
        return nx * ny * nz

    @property
    def order(self) -> str:
        return self._order

    @property
    def center(self) -> Point3:
        return self._center

    @property
    def half_extents(self) -> Tuple[Length, Length, Length]:
        return tuple(mm(h) for h in self._half)

    def half_extents_mm(self) -> np.ndarray:
        return np.array(self._half)

    def voxel_size(self) -> Tuple[Length, Length, Length]:
        return tuple(mm(v) for v in self.voxel_size_mm())

    def voxel_size_mm(self) -> np.ndarray:
        return 2.0 * np.array(self._half) / np.array(self._n)

    def lower_corner_mm(self) -> np.ndarray:
        return self._center.as_array() - np.array(self._half)

    @property
    def lower_corner(self) -> Point3:
        return Point3.from_mm(*self.lower_corner_mm())

    # --------------------------------------------------------------------------
    # Point lookup
    # --------------------------------------------------------------------------

    def index_of(self, point: Point3) -> Optional[VoxelIndex]:
        """
        Voxel containing ``point``, or None when the point is outside the FOV.

        Points on a voxel face go to the voxel on the positive side.
        """
        u = (point.as_array() - self.lower_corner_mm()) / self.voxel_size_mm()
        index = np.floor(u).astype(np.int64)
        if np.any(index < 0) or np.any(index >= np.array(self._n)):
            return None
        return VoxelIndex(*(int(i) for i in index))

    def voxel_centre(self, index: VoxelIndex) -> Point3:
        self._check_index(index)
        centre = self.lower_corner_mm() + (np.array(index) + 0.5) * self.voxel_size_mm()
        return Point3.from_mm(*centre)

    # --------------------------------------------------------------------------
    # Flat indexing
    # --------------------------------------------------------------------------

    def _check_index(self, index: Sequence[int]) -> None:
        if len(index) != 3:
            raise IndexOutOfRange(f"voxel index must have three components, got {index!r}")
        for i, n in zip(index, self._n):
            if not 0 <= i < n:
                raise IndexOutOfRange(f"voxel index {tuple(index)} outside grid {self._n}")

    def to_flat(self, index: VoxelIndex) -> int:
        self._check_index(index)
        ix, iy, iz = index
        nx, ny, nz = self._n
        if self._order == "C":
            return (ix * ny + iy) * nz + iz
        return (iz * ny + iy) * nx + ix

    def from_flat(self, flat: int) -> VoxelIndex:
        nx, ny, nz = self._n
        if isinstance(flat, bool) or not 0 <= flat < nx * ny * nz:
            raise IndexOutOfRange(f"flat index {flat!r} outside [0, {nx * ny * nz})")
        flat = int(flat)
        if self._order == "C":
            rest, iz = divmod(flat, nz)
            ix, iy = divmod(rest, ny)
        else:
            rest, ix = divmod(flat, nx)
            iz, iy = divmod(rest, ny)
        return VoxelIndex(ix, iy, iz)

    def to_flat_array(self, indices: np.ndarray) -> np.ndarray:
        """Vectorised ``to_flat`` for an ``(n, 3)`` integer array."""
        indices = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
        return np.ravel_multi_index(indices.T, self._n, order=self._order).astype(np.int64)

    # --------------------------------------------------------------------------
    # Images
    # --------------------------------------------------------------------------

    def flatten(self, image: np.ndarray) -> np.ndarray:
        if image.shape != self._n:
            raise IndexOutOfRange(f"image shape {image.shape} does not match FOV {self._n}")
        return image.ravel(order=self._order)

    def unflatten(self, flat_image: np.ndarray) -> np.ndarray:
        return np.asarray(flat_image).reshape(self._n, order=self._order)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FOV):
            return NotImplemented
        return (self._half, self._n, self._center, self._order) == \
            (other._half, other._n, other._center, other._order)

    def __hash__(self):
        return hash((self._half, self._n, self._center, self._order))

    def __repr__(self):
        full = " x ".join(f"{2 * h:g}" for h in self._half)
        return f"FOV({full} mm, voxels={self._n}, centre={self._center!r})"
