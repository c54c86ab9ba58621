import logging

import pytest

from petrecon.fov import FOV
from petrecon.geometry import LOR, Point3
from petrecon.units import mm

VOXEL_CENTRES = (-10.0, 0.0, 10.0)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """setup_logging() detaches the package logger from the root; undo that."""
    yield
    logger = logging.getLogger("petrecon")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def cube_fov():
    """30 mm cube centred on the origin, 3x3x3 voxels of 10 mm."""
    return FOV([mm(15), mm(15), mm(15)], (3, 3, 3))


def axis_lines(counts_for):
    """
    All 27 axis-parallel LORs through the voxel centres of ``cube_fov``.

    ``counts_for(axis, a, b)`` gives the counts of the line along ``axis``
    whose other two coordinates are ``a`` and ``b``.
    """
    lors = []
    for axis in range(3):
        for a in VOXEL_CENTRES:
            for b in VOXEL_CENTRES:
                start, end = [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]
                others = [i for i in range(3) if i != axis]
                start[others[0]] = end[others[0]] = a
                start[others[1]] = end[others[1]] = b
                start[axis], end[axis] = -20.0, 20.0
                lors.append(LOR(Point3.from_mm(*start), Point3.from_mm(*end),
                                counts=counts_for(axis, a, b)))
    return lors


@pytest.fixture
def point_phantom():
    """
    LORs consistent with activity ``rho`` in the centre voxel only.

    Every voxel lies on exactly three of the lines, each crossing it over
    10 mm, so the system is consistent and has a unique solution.
    """
    rho = 4.0

    def counts(axis, a, b):
        return rho * 10.0 if (a, b) == (0.0, 0.0) else 0.0

    return rho, axis_lines(counts)
