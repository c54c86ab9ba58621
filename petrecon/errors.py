"""Exceptions and warnings raised by the reconstruction core."""


class ReconstructionError(Exception):
    """Base class for all petrecon errors."""


class InvalidGeometry(ReconstructionError, ValueError):
    """FOV with non-positive extents or zero voxel counts."""


class IndexOutOfRange(ReconstructionError, IndexError):
    """Voxel index or flat index outside the FOV grid."""


class DegenerateLOR(ReconstructionError, ValueError):
    """LOR whose endpoints coincide, so it has no direction."""


class MalformedLOR(ReconstructionError, ValueError):
    """LOR with non-finite coordinates or negative counts/sensitivity."""


class InvalidConfiguration(ReconstructionError, ValueError):
    """Reconstruction parameters that make a run impossible."""


class ZeroSensitivityVoxel(UserWarning):
    """Voxels never seen by any LOR; they are excluded from image updates."""
