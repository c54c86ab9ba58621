import numpy as np
import pytest

from petrecon.simulate import cylinder_hits, isotropic_directions, ring_scanner_lors
from petrecon.units import mm, ps


def test_isotropic_directions_are_unit_vectors():
    directions = isotropic_directions(np.random.default_rng(0), 1000)
    np.testing.assert_allclose(np.linalg.norm(directions, axis=1), 1.0)
    # Roughly no preferred direction
    assert np.all(np.abs(directions.mean(axis=0)) < 0.1)


def test_cylinder_hits():
    origins = np.array([[0.0, 0.0, 0.0], [10.0, 0.0, 0.0]])
    directions = np.array([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    s_minus, s_plus = cylinder_hits(origins, directions, 100.0)
    np.testing.assert_allclose(s_minus, [-100.0, -110.0])
    np.testing.assert_allclose(s_plus, [100.0, 90.0])


def test_axial_direction_never_hits():
    s_minus, s_plus = cylinder_hits(np.zeros((1, 3)), np.array([[0.0, 0.0, 1.0]]), 100.0)
    assert not np.isfinite(s_minus[0])
    assert not np.isfinite(s_plus[0])


def test_detected_lors_lie_on_scanner():
    lors = ring_scanner_lors([(0, 0, 0), (20, -10, 5)], 2000, radius=mm(200), half_length=mm(50))
    assert 0 < len(lors) < 2000
    for lor in lors[:200]:
        for point in (lor.p1, lor.p2):
            x, y, z = point.as_mm()
            assert np.hypot(x, y) == pytest.approx(200.0)
            assert abs(z) <= 50.0
        assert lor.counts == 1.0
        assert lor.dt is None


def test_seed_makes_data_reproducible():
    a = ring_scanner_lors([(0, 0, 0)], 500, seed=7)
    b = ring_scanner_lors([(0, 0, 0)], 500, seed=7)
    c = ring_scanner_lors([(0, 0, 0)], 500, seed=8)
    assert [lor.p1 for lor in a] == [lor.p1 for lor in b]
    assert [lor.p1 for lor in a] != [lor.p1 for lor in c]


def test_tof_points_at_source():
    source = (30.0, -20.0, 10.0)
    lors = ring_scanner_lors([source], 300, radius=mm(200), half_length=mm(100),
                             tof_sigma=ps(1e-6), seed=3)
    assert lors
    for lor in lors:
        distance = np.linalg.norm(np.array(lor.p1.as_mm()) - source)
        assert lor.tof_peak.mm == pytest.approx(distance, abs=1e-3)


def test_source_weights():
    lors = ring_scanner_lors([(-50, 0, 0), (50, 0, 0)], 4000, weights=[0.0, 1.0],
                             radius=mm(200), half_length=mm(100), seed=1)
    # Every LOR passes through the only active source
    for lor in lors[:100]:
        p1, p2 = np.array(lor.p1.as_mm()), np.array(lor.p2.as_mm())
        d = (p2 - p1) / np.linalg.norm(p2 - p1)
        offset = np.array([50.0, 0.0, 0.0]) - p1
        assert np.linalg.norm(offset - np.dot(offset, d) * d) == pytest.approx(0.0, abs=1e-6)
