from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
import shapely
from shapely.geometry import LineString
from shapely.strtree import STRtree

from .mesh import MeshBuilder, PolygonWithHeight


@dataclass
class Obstacle:
    """A building crossed by a sight line, at its highest crossing point."""

    building: PolygonWithHeight
    x: float
    y: float
    ground_z: float
    top_z: float
    line_z: float


class ObstructionTest:
    """
    Visibility queries over the buildings and terrain of one cell.

    Built once from a finished mesh and only read afterwards.
    """

    def __init__(self, mesh: MeshBuilder) -> None:
        if not mesh.is_finished:
            raise RuntimeError("Obstruction test requires a finished mesh")
        self.mesh = mesh
        self.buildings: List[PolygonWithHeight] = list(mesh.polygons_with_height)
        self.triangles = mesh.triangles
        self.tri_neighbors = mesh.tri_neighbors
        self.vertices = mesh.vertices
        self._tree = STRtree([b.geometry for b in self.buildings]) if self.buildings else None

    @property
    def building_count(self) -> int:
        return len(self.buildings)

    def get_height_at(self, x: float, y: float) -> float:
        return self.mesh.get_height_at(x, y)

    def get_heights(self, xy: np.ndarray) -> np.ndarray:
        return self.mesh.get_heights(xy)

    def obstacles_between(self, p0: Sequence[float], p1: Sequence[float]) -> List[Obstacle]:
        """
        Buildings whose top is above the 3D segment ``p0 -> p1``.

        The segment z is linearly interpolated along its horizontal length and
        compared with ground + height at every point where it crosses a
        footprint.
        """
        x0, y0, z0 = p0
        x1, y1, z1 = p1
        length = math.hypot(x1 - x0, y1 - y0)
        if length == 0.0 or self._tree is None:
            return []
        line = LineString([(x0, y0), (x1, y1)])
        obstacles = []
        for index in self._tree.query(line, predicate="intersects"):
            building = self.buildings[int(index)]
            crossing = shapely.get_coordinates(building.geometry.intersection(line))
            if crossing.shape[0] == 0:
                continue
            t = np.hypot(crossing[:, 0] - x0, crossing[:, 1] - y0) / length
            line_z = z0 + t * (z1 - z0)
            ground_z = self.mesh.get_heights(crossing)
            top_z = ground_z + building.height
            clearance = top_z - line_z
            k = int(np.argmax(clearance))
            if clearance[k] > 0.0:
                obstacles.append(
                    Obstacle(
                        building=building,
                        x=float(crossing[k, 0]),
                        y=float(crossing[k, 1]),
                        ground_z=float(ground_z[k]),
                        top_z=float(top_z[k]),
                        line_z=float(line_z[k]),
                    )
                )
        return obstacles

    def is_free_field(self, p0: Sequence[float], p1: Sequence[float]) -> bool:
        return not self.obstacles_between(p0, p1)


__all__ = ["Obstacle", "ObstructionTest"]
