"""
petrecon: list-mode PET image reconstruction.

Exact Siddon ray tracing through a voxel grid, an implicit system matrix
with optional time-of-flight weighting, and MLEM/OSEM iteration.
"""

from petrecon.config import ReconConfig
from petrecon.errors import (DegenerateLOR, IndexOutOfRange, InvalidConfiguration, InvalidGeometry,
                             MalformedLOR, ReconstructionError, ZeroSensitivityVoxel)
from petrecon.fov import FOV, VoxelIndex
from petrecon.geometry import LOR, Point3, Vector3
from petrecon.mlem import MLEMReconstructor, ReconstructionResult, ReconstructionState, reconstruct
from petrecon.raytrace import RayTraceResult, trace
from petrecon.system_response import SystemResponse, TOFModel
from petrecon.units import Length, Time, Velocity, C, cm, m, mm, ns, ps

__version__ = "0.1.0"
