"""
Reconstruction configuration.

Defaults live in the module-level dictionaries below. A JSON file may
override any subset of their keys, and the command line overrides both.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from petrecon.errors import InvalidConfiguration
from petrecon.fov import FOV
from petrecon.geometry import Point3


# ==============================================================================
# DEFAULTS
# ==============================================================================

# Field of view (full widths, as the scanner geometry scripts report them)
FOV_CONFIG = {
    'size_mm': [180.0, 180.0, 180.0],
    'n_voxels': [60, 60, 60],
    'center_mm': [0.0, 0.0, 0.0],
    'order': 'C',
}

# Reconstruction parameters
RECON_CONFIG = {
    'iterations': 5,
    'subsets': 1,
    'workers': 1,
    'cache_traces': True,
    'initial_value': 1.0,
    'zero_sensitivity': 'retain',     # 'retain' or 'zero'
    'tolerance': None,                # relative image change to stop at
    'tof_sigma_ps': None,             # TOF ignored when None
    'tof_cutoff': 3.0,                # sigmas, None for no cutoff
    'postfilter_fwhm_mm': None,
    'show_progress': False,
}


@dataclass
class ReconConfig:
    """Validated reconstruction parameters."""

    iterations: int = RECON_CONFIG['iterations']
    subsets: int = RECON_CONFIG['subsets']
    workers: int = RECON_CONFIG['workers']
    cache_traces: bool = RECON_CONFIG['cache_traces']
    initial_value: float = RECON_CONFIG['initial_value']
    zero_sensitivity: str = RECON_CONFIG['zero_sensitivity']
    tolerance: Optional[float] = RECON_CONFIG['tolerance']
    tof_sigma_ps: Optional[float] = RECON_CONFIG['tof_sigma_ps']
    tof_cutoff: Optional[float] = RECON_CONFIG['tof_cutoff']
    postfilter_fwhm_mm: Optional[float] = RECON_CONFIG['postfilter_fwhm_mm']
    show_progress: bool = RECON_CONFIG['show_progress']

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            InvalidConfiguration: On any value that makes a run impossible.
        """
        for name in ('iterations', 'subsets', 'workers'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidConfiguration(f"{name} must be a positive integer, got {value!r}")
        if not self.initial_value > 0:
            raise InvalidConfiguration(f"initial_value must be positive, got {self.initial_value!r}")
        if self.zero_sensitivity not in ('retain', 'zero'):
            raise InvalidConfiguration(
                f"zero_sensitivity must be 'retain' or 'zero', got {self.zero_sensitivity!r}")
        for name in ('tolerance', 'tof_sigma_ps', 'tof_cutoff', 'postfilter_fwhm_mm'):
            value = getattr(self, name)
            if value is not None and not value > 0:
                raise InvalidConfiguration(f"{name} must be positive or None, got {value!r}")

    def replace(self, **changes) -> ReconConfig:
        """Copy with ``changes`` applied; None values are ignored."""
        values = asdict(self)
        values.update({k: v for k, v in changes.items() if v is not None})
        return ReconConfig(**values)


# ==============================================================================
# LOADING
# ==============================================================================

def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any], section: str) -> Dict[str, Any]:
    unknown = set(overrides) - set(defaults)
    if unknown:
        raise InvalidConfiguration(f"Unknown {section} keys: {', '.join(sorted(unknown))}")
    merged = dict(defaults)
    merged.update(overrides)
    return merged


def load_config(path: Optional[str] = None) -> Tuple[Dict[str, Any], ReconConfig]:
    """
    Load FOV and reconstruction settings.

    The JSON file may contain a ``"fov"`` and a ``"recon"`` object, each
    overriding keys of ``FOV_CONFIG`` and ``RECON_CONFIG``.

    Args:
        path: JSON file. None returns the defaults.

    Returns:
        tuple: (fov settings dictionary, ReconConfig)

    Raises:
        InvalidConfiguration: Unreadable file, unknown keys or invalid values.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidConfiguration(f"Cannot read configuration {path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidConfiguration(f"Configuration {path} must contain a JSON object")
        unknown = set(data) - {'fov', 'recon'}
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

    fov_settings = _merge(FOV_CONFIG, data.get('fov', {}), 'fov')
    recon_settings = _merge(RECON_CONFIG, data.get('recon', {}), 'recon')
    known = {f.name for f in fields(ReconConfig)}
    try:
        recon = ReconConfig(**{k: v for k, v in recon_settings.items() if k in known})
    except TypeError as e:
        raise InvalidConfiguration(str(e)) from e
    return fov_settings, recon


def fov_from_settings(settings: Dict[str, Any]) -> FOV:
    """Build the FOV described by a ``FOV_CONFIG``-shaped dictionary."""
    try:
        center = Point3.from_mm(*settings['center_mm'])
        return FOV.from_full_size(settings['size_mm'], settings['n_voxels'],
                                  center=center, order=settings['order'])
    except (KeyError, TypeError) as e:
        raise InvalidConfiguration(f"Invalid FOV settings: {e}") from e
