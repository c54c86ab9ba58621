import json

import pytest

from petrecon.config import FOV_CONFIG, RECON_CONFIG, ReconConfig, fov_from_settings, load_config
from petrecon.errors import InvalidConfiguration, InvalidGeometry
from petrecon.geometry import Point3


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_defaults():
    fov_settings, recon = load_config()
    assert fov_settings == FOV_CONFIG
    assert fov_settings is not FOV_CONFIG
    assert recon == ReconConfig()
    assert recon.iterations == RECON_CONFIG['iterations']

    fov = fov_from_settings(fov_settings)
    assert fov.shape == (60, 60, 60)
    assert fov.voxel_size_mm().tolist() == [3.0, 3.0, 3.0]


def test_file_overrides(tmp_path):
    path = write_config(tmp_path, {
        "fov": {"size_mm": [100, 100, 50], "n_voxels": [50, 50, 25], "center_mm": [0, 0, 5]},
        "recon": {"iterations": 12, "subsets": 4, "tof_sigma_ps": 150.0},
    })
    fov_settings, recon = load_config(path)

    assert recon.iterations == 12
    assert recon.subsets == 4
    assert recon.tof_sigma_ps == 150.0
    assert recon.workers == RECON_CONFIG['workers']

    fov = fov_from_settings(fov_settings)
    assert fov.shape == (50, 50, 25)
    assert fov.center == Point3.from_mm(0, 0, 5)
    assert fov.order == 'C'


@pytest.mark.parametrize("data", [
    {"scanner": {}},
    {"recon": {"iteration": 3}},
    {"fov": {"voxels": [1, 1, 1]}},
    {"recon": {"iterations": 0}},
    {"recon": {"zero_sensitivity": "drop"}},
    {"recon": {"tolerance": "small"}},
    [1, 2, 3],
])
def test_invalid_files(tmp_path, data):
    with pytest.raises(InvalidConfiguration):
        load_config(write_config(tmp_path, data))


def test_unreadable_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(InvalidConfiguration):
        load_config(str(path))
    with pytest.raises(InvalidConfiguration):
        load_config(str(tmp_path / "missing.json"))


def test_fov_settings_errors():
    settings = dict(FOV_CONFIG)
    del settings['n_voxels']
    with pytest.raises(InvalidConfiguration):
        fov_from_settings(settings)

    settings = dict(FOV_CONFIG, n_voxels=[0, 10, 10])
    with pytest.raises(InvalidGeometry):
        fov_from_settings(settings)


def test_replace_ignores_none():
    config = ReconConfig(iterations=3)
    changed = config.replace(iterations=None, subsets=2, tof_sigma_ps=None)
    assert changed.iterations == 3
    assert changed.subsets == 2
    assert config.subsets == 1
    with pytest.raises(InvalidConfiguration):
        config.replace(workers=0)
