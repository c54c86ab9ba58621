import logging
import warnings

import numpy as np
import pytest

from petrecon.config import ReconConfig
from petrecon.errors import InvalidConfiguration, ZeroSensitivityVoxel
from petrecon.fov import FOV, VoxelIndex
from petrecon.geometry import LOR, Point3
from petrecon.mlem import (MLEMReconstructor, ReconstructionState, reconstruct, relative_change,
                           relative_change_below)
from petrecon.simulate import ring_scanner_lors
from petrecon.system_response import SystemResponse
from petrecon.units import mm, ps

CENTRE = VoxelIndex(1, 1, 1)


def off_centre(image):
    mask = np.ones(image.shape, dtype=bool)
    mask[CENTRE] = False
    return image[mask]


# ==============================================================================
# CONVERGENCE
# ==============================================================================

def test_point_phantom_converges(cube_fov, point_phantom):
    rho, lors = point_phantom
    result = reconstruct(cube_fov, lors, ReconConfig(iterations=50))

    assert result.state is ReconstructionState.ITERATION_LIMIT_REACHED
    assert result.iterations == 50
    assert result.image.shape == (3, 3, 3)
    assert result.image[CENTRE] == pytest.approx(rho, rel=1e-3)
    assert np.all(off_centre(result.image) < 1e-3 * rho)
    np.testing.assert_allclose(result.sensitivity, 30.0)
    assert not result.zero_sensitivity.any()
    assert result.skipped_lors == 0
    assert len(result.history) == 50


def test_osem_point_phantom(cube_fov, point_phantom):
    rho, lors = point_phantom
    result = reconstruct(cube_fov, lors, ReconConfig(iterations=20, subsets=3))
    assert result.image[CENTRE] > 0.9 * rho
    assert np.all(off_centre(result.image) < 0.1 * rho)


def test_subset_sensitivities_sum_to_total(cube_fov, point_phantom):
    _, lors = point_phantom
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ZeroSensitivityVoxel)
        engine = MLEMReconstructor(cube_fov, lors, ReconConfig(subsets=4))
    assert len(engine.subset_sensitivity) == 4
    np.testing.assert_allclose(np.sum(engine.subset_sensitivity, axis=0),
                               cube_fov.flatten(engine.sensitivity))


def test_total_activity_matches_counts(cube_fov, point_phantom):
    rho, lors = point_phantom
    engine = MLEMReconstructor(cube_fov, lors, ReconConfig(iterations=1))
    engine.iterate()
    # After one MLEM update, sum_j s_j x_j equals the total counts
    weighted = np.sum(engine.sensitivity * engine.image)
    assert weighted == pytest.approx(sum(lor.counts for lor in lors))


def test_image_stays_non_negative():
    rng = np.random.default_rng(3)
    fov = FOV.from_full_size([60, 60, 60], [6, 6, 6])
    events = ring_scanner_lors([(0, 0, 0), (15, -10, 5)], 3000, radius=mm(100), half_length=mm(60),
                               source_sigma_mm=5.0, seed=11)
    lors = [LOR(lor.p1, lor.p2, counts=float(rng.integers(0, 4))) for lor in events]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ZeroSensitivityVoxel)
        engine = MLEMReconstructor(fov, lors, ReconConfig(iterations=5, subsets=2))
    for image in engine.iterations():
        assert np.all(image >= 0)
        assert np.all(np.isfinite(image))


# ==============================================================================
# DETERMINISM
# ==============================================================================

@pytest.fixture
def simulated():
    fov = FOV.from_full_size([60, 60, 40], [6, 6, 4])
    lors = ring_scanner_lors([(5, 5, 0), (-10, 0, 5)], 2000, radius=mm(100), half_length=mm(50),
                             source_sigma_mm=3.0, seed=5)
    return fov, lors


def run_quietly(fov, lors, config):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ZeroSensitivityVoxel)
        return reconstruct(fov, lors, config)


def test_worker_count_does_not_change_result(simulated):
    fov, lors = simulated
    single = run_quietly(fov, lors, ReconConfig(iterations=4, workers=1))
    parallel = run_quietly(fov, lors, ReconConfig(iterations=4, workers=4))
    np.testing.assert_allclose(parallel.image, single.image, rtol=1e-10, atol=1e-12)


def test_parallel_runs_are_reproducible(simulated):
    fov, lors = simulated
    first = run_quietly(fov, lors, ReconConfig(iterations=3, workers=3, subsets=2))
    second = run_quietly(fov, lors, ReconConfig(iterations=3, workers=3, subsets=2))
    np.testing.assert_array_equal(first.image, second.image)


def test_tof_workers_match_single_process():
    fov = FOV.from_full_size([60, 60, 40], [6, 6, 4])
    lors = ring_scanner_lors([(5, 5, 0)], 1500, radius=mm(100), half_length=mm(50),
                             tof_sigma=ps(150), seed=8)
    config = ReconConfig(iterations=2, subsets=2, tof_sigma_ps=150.0)
    single = run_quietly(fov, lors, config)
    parallel = run_quietly(fov, lors, config.replace(workers=3))
    np.testing.assert_allclose(parallel.image, single.image, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(parallel.sensitivity, single.sensitivity, rtol=1e-12)


def test_cached_and_recomputed_traces_agree(simulated):
    fov, lors = simulated
    cached = run_quietly(fov, lors, ReconConfig(iterations=3, cache_traces=True))
    recomputed = run_quietly(fov, lors, ReconConfig(iterations=3, cache_traces=False))
    np.testing.assert_allclose(recomputed.image, cached.image, rtol=1e-12)


# ==============================================================================
# ZERO SENSITIVITY
# ==============================================================================

@pytest.fixture
def single_line(cube_fov):
    return [LOR(Point3.from_mm(-20, 0, 0), Point3.from_mm(20, 0, 0), counts=30.0)]


def test_zero_sensitivity_retained(cube_fov, single_line):
    with pytest.warns(ZeroSensitivityVoxel):
        engine = MLEMReconstructor(cube_fov, single_line,
                                   ReconConfig(iterations=3, initial_value=2.0))
    result = engine.run()

    assert result.zero_sensitivity.sum() == 24
    np.testing.assert_array_equal(result.image[result.zero_sensitivity], 2.0)
    assert np.all(result.image[~result.zero_sensitivity] > 0)


def test_zero_sensitivity_pinned_to_zero(cube_fov, single_line):
    with pytest.warns(ZeroSensitivityVoxel):
        result = reconstruct(cube_fov, single_line,
                             ReconConfig(iterations=3, zero_sensitivity='zero'))
    np.testing.assert_array_equal(result.image[result.zero_sensitivity], 0.0)
    # The three voxels on the line share the 30 counts over 10 mm chords
    np.testing.assert_allclose(result.image[~result.zero_sensitivity], 1.0)


def test_grazing_lor_leaves_image_unchanged(cube_fov, point_phantom):
    rho, lors = point_phantom
    # Touches the FOV only along the edge x = y = -15, a rounding error inside
    grazing = LOR(Point3.from_mm(-25 + 1e-12, -5, 0), Point3.from_mm(-5 + 1e-12, -25, 0), counts=5.0)
    reference = reconstruct(cube_fov, lors, ReconConfig(iterations=5))
    result = reconstruct(cube_fov, lors + [grazing], ReconConfig(iterations=5))

    np.testing.assert_array_equal(result.sensitivity, reference.sensitivity)
    np.testing.assert_allclose(result.image, reference.image, rtol=1e-12)
    assert result.image.max() < 2 * rho


# ==============================================================================
# CONFIGURATION AND INPUT ERRORS
# ==============================================================================

@pytest.mark.parametrize("kwargs", [
    {"iterations": 0},
    {"subsets": -1},
    {"workers": 0},
    {"initial_value": 0.0},
    {"zero_sensitivity": "ignore"},
    {"tolerance": -1e-3},
])
def test_invalid_configuration(kwargs):
    with pytest.raises(InvalidConfiguration):
        ReconConfig(**kwargs)


def test_invalid_initial_image(cube_fov, point_phantom):
    _, lors = point_phantom
    with pytest.raises(InvalidConfiguration):
        MLEMReconstructor(cube_fov, lors, initial_image=np.ones((3, 3, 2)))
    with pytest.raises(InvalidConfiguration):
        MLEMReconstructor(cube_fov, lors, initial_image=-np.ones((3, 3, 3)))


def test_response_for_other_fov_rejected(cube_fov, point_phantom):
    _, lors = point_phantom
    other = SystemResponse(FOV([mm(10)] * 3, (2, 2, 2)))
    with pytest.raises(InvalidConfiguration):
        MLEMReconstructor(cube_fov, lors, response=other)


def test_initial_image_used(cube_fov, point_phantom):
    rho, lors = point_phantom
    start = np.zeros((3, 3, 3))
    start[CENTRE] = 1.0
    result = reconstruct(cube_fov, lors, ReconConfig(iterations=1), initial_image=start)
    # Starting from the right support, one update lands on the solution
    assert result.image[CENTRE] == pytest.approx(rho)
    assert np.all(off_centre(result.image) == 0.0)


def test_bad_lors_are_skipped_and_counted(cube_fov, point_phantom, caplog):
    rho, lors = point_phantom
    lors = lors + [
        LOR(Point3.from_mm(1, 1, 1), Point3.from_mm(1, 1, 1)),
        LOR(Point3.from_mm(float("inf"), 0, 0), Point3.from_mm(0, 0, 0)),
    ]
    with caplog.at_level(logging.WARNING, logger="petrecon"):
        result = reconstruct(cube_fov, lors, ReconConfig(iterations=30))

    assert result.skipped_lors == 2
    assert result.image[CENTRE] == pytest.approx(rho, rel=1e-3)
    assert "Skipped 2" in caplog.text


# ==============================================================================
# STOPPING
# ==============================================================================

def test_tolerance_stops_early(cube_fov, point_phantom):
    rho, lors = point_phantom
    result = reconstruct(cube_fov, lors, ReconConfig(iterations=200, tolerance=1e-6))
    assert result.state is ReconstructionState.CONVERGED
    assert result.iterations < 200
    assert result.history[-1] < 1e-6
    assert result.image[CENTRE] == pytest.approx(rho, rel=1e-4)


def test_custom_stop_hook(cube_fov, point_phantom):
    _, lors = point_phantom
    calls = []

    def stop(previous, current, iteration):
        calls.append(iteration)
        assert previous.shape == current.shape == (3, 3, 3)
        return iteration >= 3

    result = reconstruct(cube_fov, lors, ReconConfig(iterations=10), stop=stop)
    assert result.iterations == 3
    assert result.state is ReconstructionState.CONVERGED
    assert calls == [1, 2, 3]


def test_iterations_generator(cube_fov, point_phantom):
    _, lors = point_phantom
    engine = MLEMReconstructor(cube_fov, lors, ReconConfig(iterations=4))
    assert engine.state is ReconstructionState.INITIALIZED
    images = list(engine.iterations())
    assert len(images) == 4
    assert engine.state is ReconstructionState.ITERATION_LIMIT_REACHED
    # Yielded images are snapshots, not views of the working image
    assert not np.array_equal(images[0], images[-1])


def test_run_callback(cube_fov, point_phantom):
    _, lors = point_phantom
    seen = []
    MLEMReconstructor(cube_fov, lors, ReconConfig(iterations=3)).run(
        callback=lambda i, image: seen.append((i, image.sum())))
    assert [i for i, _ in seen] == [1, 2, 3]


def test_relative_change():
    a = np.ones(4)
    assert relative_change(a, a) == 0.0
    assert relative_change(a, 2 * a) == pytest.approx(1.0)
    assert relative_change(np.zeros(4), np.zeros(4)) == 0.0
    assert relative_change(np.zeros(4), a) == np.inf
    assert relative_change_below(0.5)(a, 1.2 * a, 1)
    assert not relative_change_below(0.1)(a, 1.2 * a, 1)


# ==============================================================================
# POST-FILTER
# ==============================================================================

def test_postfilter_smooths_peak(cube_fov, point_phantom):
    rho, lors = point_phantom
    sharp = reconstruct(cube_fov, lors, ReconConfig(iterations=20))
    smooth = reconstruct(cube_fov, lors, ReconConfig(iterations=20, postfilter_fwhm_mm=10.0))
    assert smooth.image[CENTRE] < sharp.image[CENTRE]
    assert np.all(smooth.image >= 0)
    assert smooth.image.sum() == pytest.approx(sharp.image.sum(), rel=1e-6)
