"""
Physical quantities used by the reconstruction core.

Every quantity stores its value in a canonical unit (mm for lengths, ps for
times) and only combines with other quantities where the result is
dimensionally sound. Mixing dimensions (``mm(1) + ns(1)``) returns
``NotImplemented`` from the operator, so Python raises ``TypeError`` and a
static type checker flags the expression from the annotations alone.

Dimensionless results (``Length / Length``) are plain floats.

Example:
    >>> d = cm(3) + mm(4)
    >>> d.mm
    34.0
    >>> (d / ps(100)).mm_per_ps
    0.34
"""

from __future__ import annotations

import math
from functools import total_ordering
from typing import Union, overload

Ratio = float


# ==============================================================================
# LENGTH
# ==============================================================================

@total_ordering
class Length:
    """A length, stored in millimetres."""

    __slots__ = ("_mm",)

    def __init__(self, millimetres: float):
        self._mm = float(millimetres)

    @property
    def mm(self) -> float:
        return self._mm

    @property
    def cm(self) -> float:
        return self._mm / 10.0

    @property
    def m(self) -> float:
        return self._mm / 1000.0

    def __add__(self, other: Length) -> Length:
        if not isinstance(other, Length):
            return NotImplemented
        return Length(self._mm + other._mm)

    def __sub__(self, other: Length) -> Length:
        if not isinstance(other, Length):
            return NotImplemented
        return Length(self._mm - other._mm)

    def __mul__(self, factor: float) -> Length:
        if isinstance(factor, bool) or not isinstance(factor, (int, float)):
            return NotImplemented
        return Length(self._mm * factor)

    __rmul__ = __mul__

    @overload
    def __truediv__(self, other: Length) -> Ratio: ...
    @overload
    def __truediv__(self, other: Time) -> Velocity: ...
    @overload
    def __truediv__(self, other: float) -> Length: ...

    def __truediv__(self, other):
        if isinstance(other, Length):
            return self._mm / other._mm
        if isinstance(other, Time):
            return Velocity(self._mm / other.ps)
        if isinstance(other, (int, float)) and not isinstance(other, bool):
            return Length(self._mm / other)
        return NotImplemented

    def __neg__(self) -> Length:
        return Length(-self._mm)

    def __abs__(self) -> Length:
        return Length(abs(self._mm))

    def __eq__(self, other) -> bool:
        if not isinstance(other, Length):
            return NotImplemented
        return self._mm == other._mm

    def __lt__(self, other: Length) -> bool:
        if not isinstance(other, Length):
            return NotImplemented
        return self._mm < other._mm

    def __hash__(self):
        return hash(("Length", self._mm))

    def isclose(self, other: Length, rel_tol: float = 1e-9, abs_tol: float = 0.0) -> bool:
        return math.isclose(self._mm, other.mm, rel_tol=rel_tol, abs_tol=abs_tol)

    def __repr__(self):
        return f"{self._mm:g} mm"


# ==============================================================================
# TIME
# ==============================================================================

@total_ordering
class Time:
    """A time interval, stored in picoseconds."""

    __slots__ = ("_ps",)

    def __init__(self, picoseconds: float):
        self._ps = float(picoseconds)

    @property
    def ps(self) -> float:
        return self._ps

    @property
    def ns(self) -> float:
        return self._ps / 1000.0

    def __add__(self, other: Time) -> Time:
        if not isinstance(other, Time):
            return NotImplemented
        return Time(self._ps + other._ps)

    def __sub__(self, other: Time) -> Time:
        if not isinstance(other, Time):
            return NotImplemented
        return Time(self._ps - other._ps)

    @overload
    def __mul__(self, other: Velocity) -> Length: ...
    @overload
    def __mul__(self, other: float) -> Time: ...

    def __mul__(self, other):
        if isinstance(other, Velocity):
            return Length(self._ps * other.mm_per_ps)
        if isinstance(other, (int, float)) and not isinstance(other, bool):
            return Time(self._ps * other)
        return NotImplemented

    __rmul__ = __mul__

    @overload
    def __truediv__(self, other: Time) -> Ratio: ...
    @overload
    def __truediv__(self, other: float) -> Time: ...

    def __truediv__(self, other):
        if isinstance(other, Time):
            return self._ps / other._ps
        if isinstance(other, (int, float)) and not isinstance(other, bool):
            return Time(self._ps / other)
        return NotImplemented

    def __neg__(self) -> Time:
        return Time(-self._ps)

    def __abs__(self) -> Time:
        return Time(abs(self._ps))

    def __eq__(self, other) -> bool:
        if not isinstance(other, Time):
            return NotImplemented
        return self._ps == other._ps

    def __lt__(self, other: Time) -> bool:
        if not isinstance(other, Time):
            return NotImplemented
        return self._ps < other._ps

    def __hash__(self):
        return hash(("Time", self._ps))

    def __repr__(self):
        return f"{self._ps:g} ps"


# ==============================================================================
# VELOCITY
# ==============================================================================

class Velocity:
    """A speed, stored in millimetres per picosecond."""

    __slots__ = ("_mm_per_ps",)

    def __init__(self, mm_per_ps: float):
        self._mm_per_ps = float(mm_per_ps)

    @property
    def mm_per_ps(self) -> float:
        return self._mm_per_ps

    def __mul__(self, other: Union[Time, float]):
        if isinstance(other, Time):
            return Length(self._mm_per_ps * other.ps)
        if isinstance(other, (int, float)) and not isinstance(other, bool):
            return Velocity(self._mm_per_ps * other)
        return NotImplemented

    __rmul__ = __mul__

    def __eq__(self, other) -> bool:
        if not isinstance(other, Velocity):
            return NotImplemented
        return self._mm_per_ps == other._mm_per_ps

    def __hash__(self):
        return hash(("Velocity", self._mm_per_ps))

    def __repr__(self):
        return f"{self._mm_per_ps:g} mm/ps"


# ==============================================================================
# CONSTRUCTORS
# ==============================================================================

def mm(value: float) -> Length:
    return Length(value)


def cm(value: float) -> Length:
    return Length(value * 10.0)


def m(value: float) -> Length:
    return Length(value * 1000.0)


def ps(value: float) -> Time:
    return Time(value)


def ns(value: float) -> Time:
    return Time(value * 1000.0)


# Speed of light in vacuum
C = Velocity(0.299792458)
