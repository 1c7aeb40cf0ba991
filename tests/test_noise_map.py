# tests/test_noise_map.py
import math

import numpy as np
import pytest
from shapely.geometry import Point, box

from noisemap import (
    ConfigurationError,
    DefaultResultFactory,
    Envelope,
    PathData,
    PointNoiseMap,
    ProgressVisitor,
    ResultFactory,
)
from noisemap.cell_input import CellInput
from noisemap.compute import ComputeRays, ComputeRaysOut
from noisemap.noise_map import CellInputFactory


def test_initialize_plans_from_receivers(city, config):
    noise_map = PointNoiseMap(config)
    plan = noise_map.initialize(city)
    assert noise_map.main_envelope.bounds == (0.0, 0.0, 1000.0, 1000.0)
    assert plan.grid_dim == 1
    assert noise_map.cell_width == pytest.approx(1000.0)


def test_setting_area_replans_grid(config):
    noise_map = PointNoiseMap(config.with_changes(maximum_propagation_distance=100))
    noise_map.main_envelope = Envelope(0, 0, 1000, 1000)
    assert noise_map.grid_dim == 4
    assert noise_map.subdivision_level == 2
    noise_map.main_envelope = Envelope(0, 0, 200, 200)
    assert noise_map.grid_dim == 1


def test_grid_requires_area(config):
    with pytest.raises(ConfigurationError):
        PointNoiseMap(config).grid_dim


def test_reflection_beyond_propagation_rejected(city, config):
    bad = config.with_changes(maximum_propagation_distance=50, maximum_reflection_distance=100)
    with pytest.raises(ConfigurationError, match="wall seeking distance"):
        PointNoiseMap(bad).initialize(city)


def test_missing_source_table_rejected(city, config):
    with pytest.raises(ConfigurationError, match="sound source table"):
        PointNoiseMap(config.with_changes(sources_table="")).initialize(city)


def test_prepare_cell(city, config):
    noise_map = PointNoiseMap(config.with_changes(maximum_propagation_distance=100))
    noise_map.initialize(city)
    progress = ProgressVisitor(noise_map.plan.cell_count)
    cell_input = noise_map.prepare_cell(city, 2, 2, progress, set())
    assert cell_input.cell_id == 10
    assert [s.pk for s in cell_input.sources] == [1]
    assert [r.pk for r in cell_input.receivers] == [2]
    assert cell_input.max_src_dist == 100
    assert cell_input.cell_progress.step_count == 1


def test_prepare_cell_is_repeatable(city, config):
    noise_map = PointNoiseMap(config.with_changes(maximum_propagation_distance=100))
    noise_map.initialize(city)
    first = noise_map.prepare_cell(city, 2, 2, ProgressVisitor(), set())
    second = noise_map.prepare_cell(city, 2, 2, ProgressVisitor(), set())
    assert [r.pk for r in first.receivers] == [r.pk for r in second.receivers]
    assert [s.pk for s in first.sources] == [s.pk for s in second.sources]


def test_prepare_cell_does_not_touch_skip_set(city, config):
    noise_map = PointNoiseMap(config)
    noise_map.initialize(city)
    skip = frozenset({2})
    cell_input = noise_map.prepare_cell(city, 0, 0, ProgressVisitor(), skip)
    assert [r.pk for r in cell_input.receivers] == [1, 3]


def test_buildings_pk_collected(store, config, create_buildings, create_sources, create_receivers, source_row):
    create_buildings(store, rows=[{"pk": 5, "the_geom": box(400, 400, 420, 420), "HEIGHT": 9.0, "ALPHA": 0.2}])
    create_sources(store, rows=[source_row(1, 500, 500)])
    create_receivers(store, points=[Point(0, 0), Point(1000, 1000)])
    noise_map = PointNoiseMap(config)
    noise_map.initialize(store)
    pks = []
    noise_map.prepare_cell(store, 0, 0, ProgressVisitor(), set(), pks)
    assert pks == [5]


def test_evaluate_cell_direct_path(city, config):
    noise_map = PointNoiseMap(config)
    noise_map.initialize(city)
    out = noise_map.evaluate_cell(city, 0, 0, ProgressVisitor(), set())
    levels = out.receiver_levels()
    # 10 m from a 100 dB source on hard ground
    assert set(levels) == {1, 2, 3}
    assert levels[2][4] == pytest.approx(100.0 - 31.0 + 3.0, abs=0.2)
    assert np.all(levels[1] < levels[2])


def test_unbounded_building_drops_path(store, config, create_buildings, create_sources, create_receivers, source_row):
    create_buildings(store, rows=[{"pk": 1, "the_geom": box(503, 490, 506, 510)}], with_height=False)
    create_sources(store, rows=[source_row(1, 500, 500)])
    create_receivers(store, points=[Point(0, 0), Point(510, 500), Point(1000, 1000)])
    noise_map = PointNoiseMap(config)
    noise_map.initialize(store)
    out = noise_map.evaluate_cell(store, 0, 0, ProgressVisitor(), set())
    assert 2 not in out.receiver_levels()


def test_diffraction_attenuates_path(store, config, create_buildings, create_sources, create_receivers, source_row):
    create_buildings(store, rows=[{"pk": 1, "the_geom": box(503, 490, 506, 510), "HEIGHT": 10.0, "ALPHA": 0.1}])
    create_sources(store, rows=[source_row(1, 500, 500)])
    create_receivers(store, points=[Point(0, 0), Point(510, 500), Point(1000, 1000)])
    noise_map = PointNoiseMap(config.with_changes(height_field="HEIGHT"))
    noise_map.initialize(store)
    out = noise_map.evaluate_cell(store, 0, 0, ProgressVisitor(), set())
    assert out.receiver_levels()[2][4] < 100.0 - 31.0 + 3.0 - 5.0

    no_diffraction = PointNoiseMap(config.with_changes(height_field="HEIGHT", compute_vertical_diffraction=False))
    no_diffraction.initialize(store)
    out = no_diffraction.evaluate_cell(store, 0, 0, ProgressVisitor(), set())
    assert 2 not in out.receiver_levels()


def test_maximum_error_filters_weak_contributions(city, config):
    noise_map = PointNoiseMap(config.with_changes(maximum_error=60.0))
    noise_map.initialize(city)
    out = noise_map.evaluate_cell(city, 0, 0, ProgressVisitor(), set())
    assert set(out.receiver_levels()) == {2}


def test_relative_heights_follow_terrain(store, config, create_buildings, create_sources, source_row):
    store.create_table("dem", [("id", "INTEGER"), ("the_geom", "POINTZ")], primary_key="id")
    store.insert_rows("dem", [{"id": 1, "the_geom": Point(500, 500, 50.0)}])
    create_buildings(store)
    create_sources(store, rows=[source_row(1, 500, 500)])
    store.create_table("receivers", [("pk", "INTEGER"), ("the_geom", "POINTZ")], primary_key="pk")
    store.insert_rows(
        "receivers",
        [
            {"pk": 1, "the_geom": Point(0, 0, 4.0)},
            {"pk": 2, "the_geom": Point(1000, 1000, 4.0)},
        ],
    )
    config = config.with_changes(dem_table="dem")

    relative = PointNoiseMap(config)
    relative.initialize(store)
    out = relative.evaluate_cell(store, 0, 0, ProgressVisitor(), set())
    assert out.cell_input.sources[0].geometry.z == pytest.approx(50.0)
    assert out.cell_input.receivers[0].coordinate[2] == pytest.approx(54.0)

    # Sources are always lifted onto the terrain, receivers only in relative mode
    absolute = PointNoiseMap(config.with_changes(absolute_z_coordinates=True))
    absolute.initialize(store)
    out = absolute.evaluate_cell(store, 0, 0, ProgressVisitor(), set())
    assert out.cell_input.sources[0].geometry.z == pytest.approx(50.0)
    assert out.cell_input.receivers[0].coordinate[2] == pytest.approx(4.0)


class TaggedCellInput(CellInput):
    tag = "custom"


class TaggedCellInputFactory(CellInputFactory):
    def create(self, obstruction):
        return TaggedCellInput(obstruction)


class RecordingResultFactory(ResultFactory):
    def __init__(self):
        self.created = []

    def create(self, cell_input, path_data):
        out = ComputeRaysOut(True, path_data, cell_input)
        self.created.append(out)
        return out


def test_custom_factories(city, config):
    results = RecordingResultFactory()
    noise_map = PointNoiseMap(config, cell_input_factory=TaggedCellInputFactory(), result_factory=results)
    noise_map.initialize(city)
    out = noise_map.evaluate_cell(city, 0, 0, ProgressVisitor(), set())
    assert results.created == [out]
    assert isinstance(out.cell_input, TaggedCellInput)
    assert len(out.propagation_paths) == 3
    assert out.propagation_paths[1].distance == pytest.approx(10.0)


def test_default_factory_drops_rays(city, config):
    noise_map = PointNoiseMap(config, result_factory=DefaultResultFactory())
    noise_map.initialize(city)
    out = noise_map.evaluate_cell(city, 0, 0, ProgressVisitor(), set())
    assert out.propagation_paths == []
    assert len(out.verts) == 3


def test_band_mismatch_rejected(city, config):
    noise_map = PointNoiseMap(config, path_data=PathData(frequencies=(500, 1000)))
    noise_map.initialize(city)
    cell_input = noise_map.prepare_cell(city, 0, 0, ProgressVisitor(), set())
    assert len(cell_input.sources[0].spectrum) == 2
    out = ComputeRaysOut(False, PathData(), cell_input)
    with pytest.raises(ValueError):
        ComputeRays(cell_input).run(out)


def test_progress_advances_once_per_cell(city, config):
    noise_map = PointNoiseMap(config)
    noise_map.initialize(city)
    progress = ProgressVisitor(1)
    noise_map.evaluate_cell(city, 0, 0, progress, set())
    assert math.isclose(progress.progression, 1.0)


def test_receiver_on_far_area_edge_is_fetched(store, config, create_buildings, create_sources, create_receivers):
    create_buildings(store)
    create_sources(store)
    create_receivers(store, points=[Point(303.18594544552593, 0.0), Point(4247.013977771956, 100.0)])
    noise_map = PointNoiseMap(config.with_changes(maximum_propagation_distance=50, maximum_reflection_distance=50))
    plan = noise_map.initialize(store)
    last = plan.grid_dim - 1
    first_cell = noise_map.prepare_cell(store, 0, 0, ProgressVisitor(), set())
    last_cell = noise_map.prepare_cell(store, last, last, ProgressVisitor(), set())
    assert [r.pk for r in first_cell.receivers] == [1]
    assert [r.pk for r in last_cell.receivers] == [2]
