"""
Cell mesh accumulation and terrain triangulation.

Buildings and elevation samples of one (expanded) cell are fed into a
``MeshBuilder``; ``finish_polygon_feeding`` validates the footprints and
triangulates the terrain samples with Qhull (``scipy.spatial.Delaunay``).
Ground elevation anywhere inside the envelope is then obtained by barycentric
interpolation over the triangle containing the query point.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from numba import njit
from scipy.spatial import Delaunay, QhullError, cKDTree
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from .envelope import Envelope
from .errors import MeshBuildError

logger = logging.getLogger(__name__)

# Height of a building whose table has no height column
UNBOUNDED_HEIGHT = math.inf


@dataclass
class PolygonWithHeight:
    geometry: Polygon
    height: float = UNBOUNDED_HEIGHT
    alpha: float = 0.0
    pk: Optional[int] = None

    @property
    def has_height(self) -> bool:
        return math.isfinite(self.height)


@njit(cache=True, fastmath=True)
def _interpolate_heights(transform, simplices, z, simplex_ids, xy):
    """
    Barycentric interpolation of vertex z over the triangle holding each point.
    Points outside the triangulation (simplex id -1) get 0.
    """
    n = xy.shape[0]
    out = np.zeros(n, dtype=np.float64)
    for k in range(n):
        s = simplex_ids[k]
        if s < 0:
            continue
        dx = xy[k, 0] - transform[s, 2, 0]
        dy = xy[k, 1] - transform[s, 2, 1]
        b0 = transform[s, 0, 0] * dx + transform[s, 0, 1] * dy
        b1 = transform[s, 1, 0] * dx + transform[s, 1, 1] * dy
        b2 = 1.0 - b0 - b1
        out[k] = b0 * z[simplices[s, 0]] + b1 * z[simplices[s, 1]] + b2 * z[simplices[s, 2]]
    return out


class MeshBuilder:
    """Collects building footprints and terrain samples for one cell."""

    def __init__(self) -> None:
        self.polygons_with_height: List[PolygonWithHeight] = []
        self._topo_points: List[tuple] = []
        self.envelope: Optional[Envelope] = None
        self.vertices: Optional[np.ndarray] = None
        self.triangles: Optional[np.ndarray] = None
        self.tri_neighbors: Optional[np.ndarray] = None
        self._delaunay: Optional[Delaunay] = None

    # ------------------------------------------------------------------ feeding
    def add_geometry(
        self,
        geometry: BaseGeometry,
        height: float = UNBOUNDED_HEIGHT,
        alpha: float = 0.0,
        pk: Optional[int] = None,
    ) -> None:
        """Add a building footprint; multi polygons are split in parts."""
        if isinstance(geometry, MultiPolygon):
            for part in geometry.geoms:
                self.add_geometry(part, height, alpha, pk)
            return
        if not isinstance(geometry, Polygon):
            raise TypeError(f"Building geometry must be polygonal, got {geometry.geom_type}")
        if geometry.is_empty:
            return
        self.polygons_with_height.append(PolygonWithHeight(geometry, height, alpha, pk))

    def add_topographic_point(self, coordinate: Sequence[float]) -> None:
        x, y = float(coordinate[0]), float(coordinate[1])
        z = float(coordinate[2]) if len(coordinate) > 2 else 0.0
        if math.isnan(z):
            z = 0.0
        self._topo_points.append((x, y, z))

    @property
    def topographic_point_count(self) -> int:
        return len(self._topo_points)

    # ------------------------------------------------------------------ finalize
    def finish_polygon_feeding(self, envelope: Envelope) -> None:
        """
        Validate footprints and triangulate terrain bounded by ``envelope``.

        The envelope corners are always part of the triangulation so that every
        position of the cell has a ground height; a corner takes the elevation
        of its nearest terrain sample (0 without any sample).
        """
        if envelope.is_null or envelope.width <= 0 or envelope.height <= 0:
            raise MeshBuildError(f"Cannot triangulate degenerate envelope {envelope}")
        for building in self.polygons_with_height:
            if not building.geometry.is_valid:
                raise MeshBuildError(
                    f"Invalid building geometry (pk={building.pk}): "
                    f"{explain_validity(building.geometry)}"
                )

        if self._topo_points:
            topo = np.asarray(self._topo_points, dtype=np.float64)
            inside = (
                (topo[:, 0] >= envelope.min_x)
                & (topo[:, 0] <= envelope.max_x)
                & (topo[:, 1] >= envelope.min_y)
                & (topo[:, 1] <= envelope.max_y)
            )
            topo = topo[inside]
        else:
            topo = np.zeros((0, 3), dtype=np.float64)

        corners_xy = np.array(
            [
                [envelope.min_x, envelope.min_y],
                [envelope.max_x, envelope.min_y],
                [envelope.max_x, envelope.max_y],
                [envelope.min_x, envelope.max_y],
            ],
            dtype=np.float64,
        )
        if topo.shape[0] > 0:
            _, nearest = cKDTree(topo[:, :2]).query(corners_xy)
            corners_z = topo[nearest, 2]
        else:
            corners_z = np.zeros(4, dtype=np.float64)
        corners = np.column_stack((corners_xy, corners_z))

        points = np.vstack((corners, topo))
        # Drop duplicated horizontal positions, first one wins
        _, keep = np.unique(points[:, :2], axis=0, return_index=True)
        points = points[np.sort(keep)]

        try:
            delaunay = Delaunay(points[:, :2])
        except (QhullError, ValueError) as exc:
            raise MeshBuildError(f"Terrain triangulation failed: {exc}") from exc

        self.envelope = envelope
        self.vertices = points
        self.triangles = delaunay.simplices.astype(np.int64)
        self.tri_neighbors = delaunay.neighbors.astype(np.int64)
        self._delaunay = delaunay
        logger.debug(
            "Mesh finished: %d buildings, %d vertices, %d triangles",
            len(self.polygons_with_height),
            points.shape[0],
            self.triangles.shape[0],
        )

    @property
    def is_finished(self) -> bool:
        return self._delaunay is not None

    # ------------------------------------------------------------------ sampling
    def get_heights(self, xy: np.ndarray) -> np.ndarray:
        """Ground elevation at each (x, y) row of ``xy``."""
        if self._delaunay is None:
            raise RuntimeError("Mesh must be finished before sampling elevations")
        xy = np.ascontiguousarray(np.asarray(xy, dtype=np.float64).reshape(-1, 2))
        simplex_ids = self._delaunay.find_simplex(xy).astype(np.int64)
        return _interpolate_heights(
            self._delaunay.transform,
            self.triangles,
            np.ascontiguousarray(self.vertices[:, 2]),
            simplex_ids,
            xy,
        )

    def get_height_at(self, x: float, y: float) -> float:
        return float(self.get_heights(np.array([[x, y]]))[0])


__all__ = ["MeshBuilder", "PolygonWithHeight", "UNBOUNDED_HEIGHT"]
