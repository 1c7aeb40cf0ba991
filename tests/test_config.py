# tests/test_config.py
import json
import pickle

import numpy as np
import pytest

from noisemap import ConfigurationError, MissingColumnError, MissingPrimaryKeyError, NoiseMapConfig, PathData, load_config
from noisemap.config import OCTAVE_BANDS


def test_defaults():
    config = NoiseMapConfig("b", "s", "r")
    assert config.maximum_propagation_distance == 750
    assert config.maximum_reflection_distance == 100
    assert config.sound_reflection_order == 2
    assert config.alpha_field == "ALPHA"
    assert config.sound_level_field == "DB_M"
    assert config.fetch_size == 300
    assert config.maximum_error == float("-inf")
    assert config.do_multi_threading
    config.validate()


def test_worker_count():
    assert NoiseMapConfig("b", "s", "r", parallel_computation_count=3).worker_count == 3
    assert NoiseMapConfig("b", "s", "r").worker_count >= 1
    assert not NoiseMapConfig("b", "s", "r", parallel_computation_count=1).do_multi_threading


@pytest.mark.parametrize(
    "changes",
    [
        {"sound_reflection_order": -1},
        {"parallel_computation_count": -2},
        {"fetch_size": 0},
        {"receivers_table": ""},
    ],
)
def test_invalid_settings(changes):
    with pytest.raises(ConfigurationError):
        NoiseMapConfig("b", "s", "r").with_changes(**changes).validate()


def test_load_json(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(
        json.dumps(
            {
                "buildings_table": "buildings",
                "sources_table": "roads",
                "receivers_table": "receivers",
                "maximum_propagation_distance": 300,
                "path_data": {"frequencies": [500, 1000], "temperature": 20},
            }
        )
    )
    config, path_data = load_config(path)
    assert config.sources_table == "roads"
    assert config.maximum_propagation_distance == 300
    assert path_data.frequencies == (500, 1000)
    assert path_data.temperature == 20


def test_load_toml(tmp_path):
    path = tmp_path / "run.toml"
    path.write_text(
        'buildings_table = "buildings"\n'
        'sources_table = "roads"\n'
        'receivers_table = "receivers"\n'
        'soil_table = "soil"\n'
    )
    config, path_data = load_config(path)
    assert config.soil_table == "soil"
    assert path_data == PathData()


def test_unknown_keys_rejected(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({"buildings_table": "b", "sources_table": "s", "receivers_table": "r", "speed": 1}))
    with pytest.raises(ConfigurationError, match="speed"):
        load_config(path)


def test_unsupported_format(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("a: 1")
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_atmospheric_absorption_grows_with_frequency():
    alpha = PathData().alpha_atm
    assert alpha.shape == (len(OCTAVE_BANDS),)
    assert np.all(alpha > 0)
    assert np.all(np.diff(alpha) > 0)
    # ISO 9613-1 table value at 1 kHz, 15 C, 70 %
    assert alpha[4] == pytest.approx(3.7, abs=0.6)


def test_celerity():
    assert PathData(temperature=20.0).celerity == pytest.approx(343.2)


def test_errors_survive_pickling():
    for exc in (MissingPrimaryKeyError("sources", "source identification"), MissingColumnError("soil", "G")):
        restored = pickle.loads(pickle.dumps(exc))
        assert type(restored) is type(exc)
        assert str(restored) == str(exc)
