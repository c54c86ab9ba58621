"""
Points, vectors and Lines Of Response.

Coordinates enter as ``Length`` quantities and are stored as millimetre
floats, so everything downstream of this module works on plain numbers in a
single, known unit.
"""

from __future__ import annotations

import math
from typing import Iterator, Optional, Tuple

import numpy as np

from petrecon.errors import DegenerateLOR, MalformedLOR
from petrecon.units import C, Length, Time, mm


def _as_mm(value: Length, name: str) -> float:
    if not isinstance(value, Length):
        raise TypeError(f"{name} must be a Length (use mm(...) or cm(...)), got {type(value).__name__}")
    return value.mm


# ==============================================================================
# POINTS AND VECTORS
# ==============================================================================

class _Triple:
    __slots__ = ("_xyz",)

    def __init__(self, x: Length, y: Length, z: Length):
        self._xyz = (_as_mm(x, "x"), _as_mm(y, "y"), _as_mm(z, "z"))

    @classmethod
    def from_mm(cls, x: float, y: float, z: float):
        obj = cls.__new__(cls)
        obj._xyz = (float(x), float(y), float(z))
        return obj

    @property
    def x(self) -> Length:
        return mm(self._xyz[0])

    @property
    def y(self) -> Length:
        return mm(self._xyz[1])

    @property
    def z(self) -> Length:
        return mm(self._xyz[2])

    def as_mm(self) -> Tuple[float, float, float]:
        return self._xyz

    def as_array(self) -> np.ndarray:
        return np.array(self._xyz, dtype=np.float64)

    def __iter__(self) -> Iterator[Length]:
        return (mm(v) for v in self._xyz)

    def __eq__(self, other) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._xyz == other._xyz

    def __hash__(self):
        return hash((type(self).__name__, self._xyz))

    def __repr__(self):
        x, y, z = self._xyz
        return f"{type(self).__name__}({x:g}, {y:g}, {z:g} mm)"


class Vector3(_Triple):
    """A displacement in space."""

    __slots__ = ()

    def __add__(self, other: Vector3) -> Vector3:
        if not isinstance(other, Vector3):
            return NotImplemented
        return Vector3.from_mm(*(a + b for a, b in zip(self._xyz, other._xyz)))

    def __mul__(self, factor: float) -> Vector3:
        if not isinstance(factor, (int, float)):
            return NotImplemented
        return Vector3.from_mm(*(a * factor for a in self._xyz))

    __rmul__ = __mul__

    def norm(self) -> Length:
        return mm(math.sqrt(sum(a * a for a in self._xyz)))


class Point3(_Triple):
    """A position in space."""

    __slots__ = ()

    def __sub__(self, other: Point3) -> Vector3:
        if not isinstance(other, Point3):
            return NotImplemented
        return Vector3.from_mm(*(a - b for a, b in zip(self._xyz, other._xyz)))

    def __add__(self, other: Vector3) -> Point3:
        if not isinstance(other, Vector3):
            return NotImplemented
        return Point3.from_mm(*(a + b for a, b in zip(self._xyz, other._xyz)))


ORIGIN = Point3.from_mm(0.0, 0.0, 0.0)


# ==============================================================================
# LINE OF RESPONSE
# ==============================================================================

class LOR:
    """
    Line Of Response between two detector hits.

    Args:
        p1: First detector hit.
        p2: Second detector hit.
        counts: Observed (or expected) counts along this LOR. List-mode
            events carry 1.
        sensitivity: Detector-pair efficiency from calibration.
        dt: Arrival time difference ``t2 - t1``. When given, the LOR carries
            time-of-flight information.
    """

    __slots__ = ("_p1", "_p2", "_counts", "_sensitivity", "_dt")

    def __init__(self, p1: Point3, p2: Point3, counts: float = 1.0,
                 sensitivity: float = 1.0, dt: Optional[Time] = None):
        if not isinstance(p1, Point3) or not isinstance(p2, Point3):
            raise TypeError("LOR endpoints must be Point3 instances")
        if dt is not None and not isinstance(dt, Time):
            raise TypeError(f"dt must be a Time, got {type(dt).__name__}")
        self._p1 = p1
        self._p2 = p2
        self._counts = float(counts)
        self._sensitivity = float(sensitivity)
        self._dt = dt

    @classmethod
    def from_direction(cls, origin: Point3, direction: Vector3, length: Length, **kwargs) -> LOR:
        """Build a LOR starting at ``origin`` and running ``length`` along ``direction``."""
        norm = direction.norm().mm
        if norm == 0.0:
            raise DegenerateLOR("direction vector has zero length")
        p2 = origin + direction * (length.mm / norm)
        return cls(origin, p2, **kwargs)

    # LORs are immutable once built

    @property
    def p1(self) -> Point3:
        return self._p1

    @property
    def p2(self) -> Point3:
        return self._p2

    @property
    def counts(self) -> float:
        return self._counts

    @property
    def sensitivity(self) -> float:
        return self._sensitivity

    @property
    def dt(self) -> Optional[Time]:
        return self._dt

    @property
    def length(self) -> Length:
        return (self.p2 - self.p1).norm()

    @property
    def tof_peak(self) -> Optional[Length]:
        """Distance from p1 to the most likely emission point, if TOF is known."""
        if self.dt is None:
            return None
        return (self.length - C * self.dt) * 0.5

    def is_degenerate(self) -> bool:
        return self.p1.as_mm() == self.p2.as_mm()

    def check(self) -> None:
        """
        Raise if this LOR cannot take part in a reconstruction.

        Raises:
            MalformedLOR: Non-finite coordinates, or negative counts or sensitivity.
            DegenerateLOR: Coincident endpoints.
        """
        coords = self.p1.as_mm() + self.p2.as_mm()
        if not all(math.isfinite(c) for c in coords):
            raise MalformedLOR(f"non-finite endpoint in {self!r}")
        if not math.isfinite(self.counts) or self.counts < 0:
            raise MalformedLOR(f"invalid counts {self.counts} in {self!r}")
        if not math.isfinite(self.sensitivity) or self.sensitivity < 0:
            raise MalformedLOR(f"invalid sensitivity {self.sensitivity} in {self!r}")
        if self.dt is not None and not math.isfinite(self.dt.ps):
            raise MalformedLOR(f"non-finite TOF in {self!r}")
        if self.is_degenerate():
            raise DegenerateLOR(f"coincident endpoints in {self!r}")

    def __repr__(self):
        tof = f", dt={self.dt!r}" if self.dt is not None else ""
        return f"LOR({self.p1!r} -> {self.p2!r}, counts={self.counts:g}{tof})"
