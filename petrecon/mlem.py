"""
MLEM / OSEM reconstruction.

Each (sub-)iteration forward-projects the current image through the LORs of
one subset, compares with the observed counts, back-projects the ratio and
rescales the image by the subset's sensitivity:

    x_j <- x_j / s_j * sum_i a_ij * y_i / (sum_k a_ik x_k)

With one subset this is plain MLEM. LORs are interleaved over subsets
(LOR ``i`` belongs to subset ``i % subsets``).

Within a sub-iteration, the subset's LORs are split into ``workers``
contiguous blocks. Each block is projected independently against the same
read-only image and produces its own back-projection array; the arrays are
summed in block order before the image is touched. The result does not
depend on thread scheduling, and depends on the worker count only through
floating-point summation order.

Building the row blocks traces every LOR in pure Python, so with more than
one worker the blocks are built in a process pool. Projection against
cached blocks is vectorised numpy and runs in a thread pool.
"""

from __future__ import annotations

import enum
import logging
import warnings
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Sequence

import numpy as np
from scipy.ndimage import gaussian_filter
from tqdm.auto import tqdm

from petrecon.config import ReconConfig
from petrecon.errors import InvalidConfiguration, ZeroSensitivityVoxel
from petrecon.fov import FOV
from petrecon.geometry import LOR
from petrecon.system_response import RowBlock, SystemResponse, TOFModel
from petrecon.units import ps

logger = logging.getLogger(__name__)

StopCriterion = Callable[[np.ndarray, np.ndarray, int], bool]

FWHM_TO_SIGMA = 1.0 / (2.0 * np.sqrt(2.0 * np.log(2.0)))


class ReconstructionState(enum.Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"


# ==============================================================================
# STOPPING HOOKS
# ==============================================================================

def relative_change(previous: np.ndarray, current: np.ndarray) -> float:
    """L2 norm of the image change relative to the previous image."""
    norm = np.linalg.norm(previous)
    if norm == 0.0:
        return 0.0 if not np.any(current) else np.inf
    return float(np.linalg.norm(current - previous) / norm)


def relative_change_below(threshold: float) -> StopCriterion:
    """Stop once an iteration changes the image by less than ``threshold``."""
    def criterion(previous: np.ndarray, current: np.ndarray, iteration: int) -> bool:
        return relative_change(previous, current) < threshold
    return criterion


@dataclass
class ReconstructionResult:
    """
    Outcome of a reconstruction run.

    Attributes:
        image: Activity estimate, shape ``fov.shape``.
        sensitivity: Sensitivity image, shape ``fov.shape``.
        zero_sensitivity: Boolean mask of voxels excluded from updates.
        state: Final engine state.
        iterations: Number of full iterations performed.
        skipped_lors: LORs rejected as malformed or degenerate.
        history: Relative image change of every full iteration.
    """

    image: np.ndarray
    sensitivity: np.ndarray
    zero_sensitivity: np.ndarray
    state: ReconstructionState
    iterations: int
    skipped_lors: int
    history: List[float] = field(default_factory=list)


# ==============================================================================
# ENGINE
# ==============================================================================

class MLEMReconstructor:
    """
    Iterative MLEM/OSEM reconstruction over a fixed FOV and LOR set.

    The engine owns its working image and sensitivity image; ``fov`` and
    ``lors`` are only read.

    Args:
        fov: Voxel grid of the reconstructed image.
        lors: Measured LORs.
        config: Iteration, subset and worker settings.
        response: System response to use. Built from ``config`` (TOF
            settings) when omitted.
        initial_image: Prior estimate of shape ``fov.shape``; a uniform image
            of ``config.initial_value`` when omitted.
        stop: Extra stopping hook, called after each full iteration with the
            previous image, the new image and the iteration number.

    Raises:
        InvalidConfiguration: Invalid initial image or a response built for a
            different FOV. Raised before any iteration runs.
    """

    def __init__(self, fov: FOV, lors: Sequence[LOR], config: Optional[ReconConfig] = None,
                 response: Optional[SystemResponse] = None,
                 initial_image: Optional[np.ndarray] = None,
                 stop: Optional[StopCriterion] = None):
        self.fov = fov
        self.lors = lors
        self.config = config if config is not None else ReconConfig()
        self.config.validate()

        if response is None:
            tof = None
            if self.config.tof_sigma_ps is not None:
                tof = TOFModel(ps(self.config.tof_sigma_ps), self.config.tof_cutoff)
            response = SystemResponse(fov, tof=tof)
        elif response.fov != fov:
            raise InvalidConfiguration("System response was built for a different FOV")
        self.response = response

        self._stops: List[StopCriterion] = []
        if self.config.tolerance is not None:
            self._stops.append(relative_change_below(self.config.tolerance))
        if stop is not None:
            self._stops.append(stop)

        n_voxels = fov.n_voxels_total
        if initial_image is None:
            self._image = np.full(n_voxels, float(self.config.initial_value))
        else:
            initial_image = np.asarray(initial_image, dtype=np.float64)
            if initial_image.shape != fov.shape:
                raise InvalidConfiguration(
                    f"Initial image shape {initial_image.shape} does not match FOV {fov.shape}")
            if not np.all(np.isfinite(initial_image)) or np.any(initial_image < 0):
                raise InvalidConfiguration("Initial image must be finite and non-negative")
            self._image = fov.flatten(initial_image).astype(np.float64, copy=True)

        self.state = ReconstructionState.INITIALIZED
        self.iterations_done = 0
        self.history: List[float] = []

        logger.info(f"MLEM setup: {len(lors)} LORs, {fov!r}")
        logger.info(f"  Iterations: {self.config.iterations}, subsets: {self.config.subsets}, "
                    f"workers: {self.config.workers}, cached traces: {self.config.cache_traces}")

        self._subset_ids = [np.arange(s, len(lors), self.config.subsets)
                            for s in range(self.config.subsets)]
        self._cache: Optional[List[List[RowBlock]]] = None
        self._compute_sensitivity()

    # --------------------------------------------------------------------------
    # Initialization
    # --------------------------------------------------------------------------

    def _worker_chunks(self, subset: int) -> List[np.ndarray]:
        ids = self._subset_ids[subset]
        n_chunks = min(self.config.workers, max(len(ids), 1))
        return np.array_split(ids, n_chunks)

    def _build_blocks(self, subset: int) -> List[RowBlock]:
        chunks = self._worker_chunks(subset)
        if self.config.workers == 1 or len(chunks) == 1:
            return [self.response.block(self.lors, ids) for ids in chunks]
        # Tracing is pure Python and holds the GIL, so it runs in processes.
        # Each process receives only the LORs of its own chunk.
        chunk_lors = [{int(i): self.lors[i] for i in ids} for ids in chunks]
        with ProcessPoolExecutor(max_workers=self.config.workers) as pool:
            return list(pool.map(self.response.block, chunk_lors, chunks))

    def _compute_sensitivity(self) -> None:
        n_voxels = self.fov.n_voxels_total
        cache = []
        self.subset_sensitivity = []
        self.skipped_lors = 0
        for subset in range(self.config.subsets):
            blocks = self._build_blocks(subset)
            sensitivity = np.zeros(n_voxels)
            for block in blocks:
                sensitivity += block.sensitivity(n_voxels)
                self.skipped_lors += block.skipped
            self.subset_sensitivity.append(sensitivity)
            if self.config.cache_traces:
                cache.append(blocks)
        if self.config.cache_traces:
            self._cache = cache

        self._sensitivity = np.sum(self.subset_sensitivity, axis=0)
        self._zero_mask = self._sensitivity <= 0.0
        if self.skipped_lors:
            logger.warning(f"Skipped {self.skipped_lors} malformed or degenerate LORs")
        n_zero = int(self._zero_mask.sum())
        if n_zero:
            policy = "pinned at zero" if self.config.zero_sensitivity == 'zero' else "left unchanged"
            logger.warning(f"{n_zero} of {n_voxels} voxels have zero sensitivity; {policy}")
            warnings.warn(f"{n_zero} voxels have zero sensitivity and are excluded from updates",
                          ZeroSensitivityVoxel, stacklevel=3)
            if self.config.zero_sensitivity == 'zero':
                self._image[self._zero_mask] = 0.0

    # --------------------------------------------------------------------------
    # Accessors
    # --------------------------------------------------------------------------

    @property
    def image(self) -> np.ndarray:
        """Copy of the current estimate, shape ``fov.shape``."""
        return self.fov.unflatten(self._image.copy())

    @property
    def sensitivity(self) -> np.ndarray:
        return self.fov.unflatten(self._sensitivity.copy())

    @property
    def zero_sensitivity(self) -> np.ndarray:
        return self.fov.unflatten(self._zero_mask.copy())

    # --------------------------------------------------------------------------
    # Iteration
    # --------------------------------------------------------------------------

    def _map(self, func, chunks):
        if self.config.workers == 1 or len(chunks) == 1:
            return [func(chunk) for chunk in chunks]
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            return list(pool.map(func, chunks))

    def _backproject_ratios(self, block: RowBlock, image: np.ndarray) -> np.ndarray:
        expected = block.forward(image)
        ratio = np.zeros_like(expected)
        # An LOR the current image cannot produce contributes nothing
        np.divide(block.counts, expected, out=ratio, where=expected > 0)
        return block.backproject(ratio, image.size)

    def update_subset(self, subset: int) -> None:
        """One OSEM sub-iteration over the LORs of ``subset``."""
        image = self._image
        image.flags.writeable = False
        try:
            blocks = self._cache[subset] if self._cache is not None else self._build_blocks(subset)
            partials = self._map(lambda b: self._backproject_ratios(b, image), blocks)
        finally:
            image.flags.writeable = True

        backprojection = np.zeros_like(image)
        for partial in partials:
            backprojection += partial

        sensitivity = self.subset_sensitivity[subset]
        active = sensitivity > 0.0
        image[active] *= backprojection[active] / sensitivity[active]

    def iterate(self) -> np.ndarray:
        """
        One full iteration (all subsets in order).

        Returns:
            np.ndarray: The new estimate, shape ``fov.shape``.
        """
        self.state = ReconstructionState.ITERATING
        subsets = range(self.config.subsets)
        for subset in tqdm(subsets, desc=f"  Iteration {self.iterations_done + 1}", unit="subset",
                           disable=not self.config.show_progress, leave=False):
            self.update_subset(subset)
        self.iterations_done += 1
        return self.image

    def iterations(self) -> Iterator[np.ndarray]:
        """
        Yield the estimate after every full iteration until the iteration
        limit is reached or a stopping hook fires.
        """
        while self.iterations_done < self.config.iterations:
            previous = self._image.copy()
            current = self.iterate()
            change = relative_change(previous, self._image)
            self.history.append(change)
            logger.info(f"Iteration {self.iterations_done}/{self.config.iterations}: "
                        f"relative change {change:.3e}")
            stop = any(hook(self.fov.unflatten(previous), current, self.iterations_done)
                       for hook in self._stops)
            yield current
            if stop:
                self.state = ReconstructionState.CONVERGED
                logger.info(f"Converged after {self.iterations_done} iterations")
                return
        self.state = ReconstructionState.ITERATION_LIMIT_REACHED

    def run(self, callback: Optional[Callable[[int, np.ndarray], None]] = None) -> ReconstructionResult:
        """
        Iterate to completion.

        Args:
            callback: Called as ``callback(iteration, image)`` after every full
                iteration, e.g. to save intermediate images.
        """
        for image in self.iterations():
            if callback is not None:
                callback(self.iterations_done, image)

        image = self.image
        if self.config.postfilter_fwhm_mm is not None:
            sigma_voxels = self.config.postfilter_fwhm_mm * FWHM_TO_SIGMA / self.fov.voxel_size_mm()
            logger.info(f"Post-filtering with FWHM {self.config.postfilter_fwhm_mm} mm")
            image = gaussian_filter(image, sigma=sigma_voxels)

        return ReconstructionResult(
            image=image,
            sensitivity=self.sensitivity,
            zero_sensitivity=self.zero_sensitivity,
            state=self.state,
            iterations=self.iterations_done,
            skipped_lors=self.skipped_lors,
            history=list(self.history),
        )


def reconstruct(fov: FOV, lors: Sequence[LOR], config: Optional[ReconConfig] = None,
                **kwargs) -> ReconstructionResult:
    """Run a complete MLEM/OSEM reconstruction; see ``MLEMReconstructor``."""
    return MLEMReconstructor(fov, lors, config, **kwargs).run()
