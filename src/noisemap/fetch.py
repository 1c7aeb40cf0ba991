"""
Per-cell spatial fetchers.

Every fetcher issues one bounding-box query against a configured table of the
store, streams the matching rows and folds them into a sink (the cell mesh, the
ground area list or the cell input). Buildings, DEM points, ground areas and
sources are fetched in the expanded cell envelope; receivers only in the cell
envelope itself.
"""

from __future__ import annotations

import logging
from typing import AbstractSet, List, Optional

from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Polygon
from shapely.validation import explain_validity

from .cell_input import CellInput
from .config import NoiseMapConfig
from .envelope import Envelope
from .errors import MeshBuildError, MissingColumnError, MissingPrimaryKeyError
from .mesh import UNBOUNDED_HEIGHT, MeshBuilder
from .store import SpatialStore

logger = logging.getLogger(__name__)


def fetch_cell_buildings(
    store: SpatialStore,
    fetch_envelope: Envelope,
    config: NoiseMapConfig,
    mesh: MeshBuilder,
    buildings_pk: Optional[List[int]] = None,
) -> int:
    """
    Add buildings intersecting ``fetch_envelope`` to ``mesh``, clipped to it.

    Only polygonal clip results are kept. Height comes from
    ``config.height_field`` (unbounded when not configured) and absorption
    from the alpha column when the table has one, else from
    ``config.wall_absorption``. When ``buildings_pk`` is given it receives the
    primary key of each kept building.
    """
    table = config.buildings_table
    envelope_geometry = fetch_envelope.to_polygon()
    columns = []
    height_column = None
    if config.height_field:
        height_column = store.find_column(table, config.height_field)
        if height_column is None:
            raise MissingColumnError(table, config.height_field)
        columns.append(height_column)
    alpha_column = store.find_column(table, config.alpha_field) if config.alpha_field else None
    if alpha_column is not None:
        columns.append(alpha_column)
    pk_column = None
    if buildings_pk is not None:
        pk_column = store.integer_primary_key(table)
        if pk_column is not None:
            columns.append(pk_column)

    count = 0
    for building, row in store.query_envelope(table, fetch_envelope, columns, fetch_size=config.fetch_size):
        if building is None:
            continue
        if not building.is_valid:
            raise MeshBuildError(f"Invalid building geometry in {table}: {explain_validity(building)}")
        try:
            clipped = building.intersection(envelope_geometry)
        except ShapelyError as exc:
            raise MeshBuildError(f"Cannot clip building of {table}: {exc}") from exc
        if not isinstance(clipped, (Polygon, MultiPolygon)) or clipped.is_empty:
            continue
        height = UNBOUNDED_HEIGHT if height_column is None else _as_float(row[height_column], UNBOUNDED_HEIGHT)
        alpha = config.wall_absorption if alpha_column is None else _as_float(row[alpha_column], config.wall_absorption)
        pk = row[pk_column] if pk_column is not None else None
        mesh.add_geometry(clipped, height, alpha, pk)
        if pk_column is not None:
            buildings_pk.append(int(pk))
        count += 1
    logger.debug("Fetched %d buildings from %s", count, table)
    return count


def fetch_cell_dem(
    store: SpatialStore, fetch_envelope: Envelope, config: NoiseMapConfig, mesh: MeshBuilder
) -> int:
    """Add every elevation point of ``config.dem_table`` to the mesh."""
    if not config.dem_table:
        return 0
    count = 0
    for point, _ in store.query_envelope(config.dem_table, fetch_envelope, [], fetch_size=config.fetch_size):
        if point is None or point.is_empty:
            continue
        mesh.add_topographic_point(point.coords[0])
        count += 1
    logger.debug("Fetched %d elevation points from %s", count, config.dem_table)
    return count


def fetch_cell_soil_areas(
    store: SpatialStore, fetch_envelope: Envelope, config: NoiseMapConfig, cell_input: CellInput
) -> int:
    """Append ground areas (polygon, G) of ``config.soil_table``; a NULL G is hard ground."""
    table = config.soil_table
    if not table:
        return 0
    g_column = store.find_column(table, config.ground_field)
    if g_column is None:
        raise MissingColumnError(table, config.ground_field)
    count = 0
    for polygon, row in store.query_envelope(table, fetch_envelope, [g_column], fetch_size=config.fetch_size):
        if polygon is None:
            continue
        cell_input.add_ground_area(polygon, _as_float(row[g_column], 0.0))
        count += 1
    return count


def fetch_cell_sources(
    store: SpatialStore, fetch_envelope: Envelope, config: NoiseMapConfig, cell_input: CellInput
) -> int:
    """
    Add every source of the fetch envelope with its emission spectrum.

    Rows are streamed inside a transaction scope: autocommit connections are
    switched to manual commit for the fetch and restored on every exit path.
    """
    table = config.sources_table
    pk_column = store.integer_primary_key(table)
    if pk_column is None:
        raise MissingPrimaryKeyError(table, "source identification")
    count = 0
    with store.transaction_scope():
        for geometry, row in store.query_envelope(table, fetch_envelope, fetch_size=config.fetch_size):
            if geometry is None:
                continue
            cell_input.add_source(row[pk_column], geometry, row)
            count += 1
    logger.debug("Fetched %d sources from %s", count, table)
    return count


def fetch_cell_receivers(
    store: SpatialStore,
    cell_envelope: Envelope,
    config: NoiseMapConfig,
    skip_receivers: AbstractSet[int],
    cell_input: CellInput,
) -> int:
    """Add receivers of the cell envelope whose key is not in ``skip_receivers``."""
    table = config.receivers_table
    pk_column = store.integer_primary_key(table)
    if pk_column is None:
        raise MissingPrimaryKeyError(table, "receiver identification")
    count = 0
    for point, row in store.query_envelope(table, cell_envelope, [pk_column], fetch_size=config.fetch_size):
        receiver_pk = int(row[pk_column])
        if receiver_pk in skip_receivers:
            continue
        if point is None or point.is_empty:
            continue
        coords = point.coords[0] if point.geom_type == "Point" else point.representative_point().coords[0]
        cell_input.add_receiver(receiver_pk, coords, row)
        count += 1
    return count


def _as_float(value, default: float) -> float:
    return default if value is None else float(value)


__all__ = [
    "fetch_cell_buildings",
    "fetch_cell_dem",
    "fetch_cell_receivers",
    "fetch_cell_soil_areas",
    "fetch_cell_sources",
]
