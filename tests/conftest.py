# tests/conftest.py
import pytest
from shapely.geometry import Point

from noisemap import NoiseMapConfig, SpatialStore
from noisemap.config import OCTAVE_BANDS

SOURCE_COLUMNS = [(f"DB_M{freq}", "REAL") for freq in OCTAVE_BANDS]


def _create_buildings(store, table="buildings", rows=(), with_height=True, with_alpha=True):
    columns = [("pk", "INTEGER"), ("the_geom", "POLYGON")]
    if with_height:
        columns.append(("HEIGHT", "REAL"))
    if with_alpha:
        columns.append(("ALPHA", "REAL"))
    store.create_table(table, columns, primary_key="pk")
    store.insert_rows(table, rows)


def _create_sources(store, table="sources", rows=(), primary_key="pk"):
    store.create_table(table, [("pk", "INTEGER"), ("the_geom", "POINT")] + SOURCE_COLUMNS, primary_key=primary_key)
    store.insert_rows(table, rows)


def _create_receivers(store, table="receivers", points=(), start=1, primary_key="pk"):
    store.create_table(table, [("pk", "INTEGER"), ("the_geom", "POINT")], primary_key=primary_key)
    store.insert_rows(table, ({"pk": start + k, "the_geom": p} for k, p in enumerate(points)))


def _source_row(pk, x, y, level=100.0):
    row = {"pk": pk, "the_geom": Point(x, y)}
    row.update({name: level for name, _ in SOURCE_COLUMNS})
    return row


@pytest.fixture
def create_buildings():
    return _create_buildings


@pytest.fixture
def create_sources():
    return _create_sources


@pytest.fixture
def create_receivers():
    return _create_receivers


@pytest.fixture
def source_row():
    return _source_row


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "city.sqlite"


@pytest.fixture
def store(db_path):
    with SpatialStore.connect(db_path) as s:
        yield s


@pytest.fixture
def config():
    return NoiseMapConfig("buildings", "sources", "receivers", parallel_computation_count=1)


@pytest.fixture
def city(store):
    """1 km square with one source in the middle and no buildings."""
    _create_buildings(store)
    _create_sources(store, rows=[_source_row(1, 500, 500)])
    _create_receivers(store, points=[Point(0, 0), Point(510, 500), Point(1000, 1000)])
    return store
