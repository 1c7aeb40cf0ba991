# tests/test_store.py
import pytest
from shapely.geometry import Point, box

from noisemap import DataSourceError, Envelope, SpatialStore
from noisemap.errors import ConfigurationError


def test_geometry_and_key_discovery(store):
    store.create_table("dem", [("id", "INTEGER"), ("the_geom", "POINTZ"), ("name", "TEXT")], primary_key="id")
    info = store.table_info("dem")
    assert info.geometry_columns == ("the_geom",)
    assert info.primary_key == "id"
    assert store.find_column("dem", "NAME") == "name"
    assert not store.has_column("dem", "height")


def test_text_key_is_not_row_identifier(store):
    store.create_table("zones", [("code", "TEXT"), ("the_geom", "POLYGON")], primary_key="code")
    assert store.integer_primary_key("zones") is None


def test_table_without_geometry(store):
    store.create_table("plain", [("id", "INTEGER")], primary_key="id")
    with pytest.raises(ConfigurationError):
        store.geometry_column("plain")


def test_missing_table(store):
    with pytest.raises(DataSourceError):
        store.table_info("nowhere")


def test_query_envelope_filters_on_bounding_box(store):
    store.create_table("pts", [("id", "INTEGER"), ("the_geom", "POINT"), ("v", "REAL")], primary_key="id")
    store.insert_rows(
        "pts",
        [
            {"id": 1, "the_geom": Point(5, 5), "v": 1.0},
            {"id": 2, "the_geom": Point(10, 10), "v": 2.0},
            {"id": 3, "the_geom": Point(50, 50), "v": 3.0},
        ],
    )
    found = {row["id"]: geom for geom, row in store.query_envelope("pts", Envelope(0, 0, 10, 10), ["id"], fetch_size=1)}
    assert set(found) == {1, 2}
    assert found[1].equals(Point(5, 5))


def test_polygon_straddling_envelope_is_returned(store):
    store.create_table("b", [("id", "INTEGER"), ("the_geom", "POLYGON")], primary_key="id")
    store.insert_rows("b", [{"id": 1, "the_geom": box(8, 8, 20, 20)}])
    rows = list(store.query_envelope("b", Envelope(0, 0, 10, 10)))
    assert len(rows) == 1


def test_table_envelope(store):
    store.create_table("pts", [("id", "INTEGER"), ("the_geom", "POINT")], primary_key="id")
    assert store.table_envelope("pts").is_null
    store.insert_rows("pts", [{"id": 1, "the_geom": Point(-5, 2)}, {"id": 2, "the_geom": Point(40, 30)}])
    assert store.table_envelope("pts").bounds == (-5.0, 2.0, 40.0, 30.0)


def test_transaction_scope_restores_autocommit(store):
    assert store.autocommit
    with store.transaction_scope():
        assert not store.autocommit
        assert store.connection.in_transaction
    assert store.autocommit


def test_transaction_scope_rolls_back_on_error(store):
    store.create_table("t", [("id", "INTEGER"), ("the_geom", "POINT")], primary_key="id")
    with pytest.raises(RuntimeError):
        with store.transaction_scope():
            store.insert_rows("t", [{"id": 1, "the_geom": Point(0, 0)}])
            raise RuntimeError("boom")
    assert store.autocommit
    assert store.connection.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0


def test_manual_commit_connection_is_left_alone(db_path):
    with SpatialStore.connect(db_path, isolation_level="DEFERRED") as s:
        assert not s.autocommit
        with s.transaction_scope():
            pass
        assert not s.autocommit


def test_bad_query_is_wrapped(store):
    store.create_table("pts", [("id", "INTEGER"), ("the_geom", "POINT")], primary_key="id")
    with pytest.raises(DataSourceError):
        list(store.query_envelope("pts", Envelope(0, 0, 1, 1), ["missing_column"]))
