"""
Reference propagation engine and result accumulator.

``ComputeRays`` evaluates the direct path between every receiver of a cell and
every source within the propagation distance. Per octave band the attenuation
is the sum of:

1.  **Geometric divergence:** ``20 log10(d) + 11`` (point source, free field).
2.  **Atmospheric absorption:** ``alpha_atm * d / 1000`` (ISO 9613-1).
3.  **Ground effect:** ISO 9613-2 simplified porous ground term weighted by the
    mean G of the ground areas crossed by the path; hard ground (G = 0) gives
    a -3 dB reflection gain.
4.  **Top-edge diffraction:** when buildings block the path and vertical
    diffraction is enabled, ``10 log10(3 + 20 delta f / c)`` over the highest
    obstacle, capped at 20 dB. Paths blocked by a building of unbounded height
    are dropped.

Reflections are not traced here; ``reflection_order`` is carried for engines
plugged in through the result factory.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import shapely
from numba import njit
from shapely.geometry import LineString, Point
from shapely.ops import nearest_points

from .cell_input import CellInput, SourceEntry
from .config import PathData

logger = logging.getLogger(__name__)

# Smallest source-receiver distance used in the divergence term
MIN_DISTANCE = 1.0
MAX_DIFFRACTION_ATTENUATION = 20.0
HARD_GROUND_GAIN = -3.0


###############################################################################
# Level arithmetic
###############################################################################


def dba_to_w(dba):
    return np.power(10.0, np.asarray(dba, dtype=np.float64) / 10.0)


def w_to_dba(w):
    with np.errstate(divide="ignore"):
        return 10.0 * np.log10(np.asarray(w, dtype=np.float64))


@njit(cache=True, fastmath=False)
def _energetic_sum(levels: np.ndarray) -> np.ndarray:
    """Energetic sum over rows of a (n_contributions, n_bands) dB array."""
    n, bands = levels.shape
    out = np.empty(bands, dtype=np.float64)
    for b in range(bands):
        total = 0.0
        for k in range(n):
            if levels[k, b] > -np.inf:
                total += 10.0 ** (levels[k, b] / 10.0)
        if total > 0.0:
            out[b] = 10.0 * math.log10(total)
        else:
            out[b] = -np.inf
    return out


def energetic_sum(levels) -> np.ndarray:
    levels = np.atleast_2d(np.asarray(levels, dtype=np.float64))
    return _energetic_sum(np.ascontiguousarray(levels))


###############################################################################
# Result accumulator
###############################################################################


@dataclass
class ReceiverContribution:
    receiver_id: int
    source_id: int
    levels: np.ndarray


@dataclass
class PropagationPath:
    source_id: int
    receiver_id: int
    distance: float
    ground_factor: float
    attenuation: np.ndarray
    diffraction_delta: Optional[float] = None


class ComputeRaysOut:
    """
    Collects source contributions per receiver.

    With ``keep_rays`` the path description of every contribution is kept as
    well, for debugging or export.
    """

    def __init__(self, keep_rays: bool, path_data: PathData, cell_input: Optional[CellInput] = None) -> None:
        self.keep_rays = keep_rays
        self.path_data = path_data
        self.cell_input = cell_input
        self.verts: List[ReceiverContribution] = []
        self.propagation_paths: List[PropagationPath] = []

    def add_values(self, receiver_id: int, source_id: int, levels: np.ndarray) -> None:
        self.verts.append(ReceiverContribution(receiver_id, source_id, np.asarray(levels, dtype=np.float64)))

    def add_propagation_path(self, path: PropagationPath) -> None:
        if self.keep_rays:
            self.propagation_paths.append(path)

    def receiver_levels(self) -> Dict[int, np.ndarray]:
        """Energetic sum of all contributions, per receiver and band."""
        grouped: Dict[int, List[np.ndarray]] = {}
        for contribution in self.verts:
            grouped.setdefault(contribution.receiver_id, []).append(contribution.levels)
        return {pk: energetic_sum(np.vstack(levels)) for pk, levels in grouped.items()}


###############################################################################
# Engine
###############################################################################


class ComputeRays:
    def __init__(self, data: CellInput) -> None:
        self.data = data

    def make_relative_z_to_absolute(self) -> None:
        self.data.make_relative_z_to_absolute_only_receivers()

    # ------------------------------------------------------------------ geometry
    @staticmethod
    def _source_position(source: SourceEntry, receiver_xy: Tuple[float, float]) -> Tuple[float, float, float]:
        """Point sources use their point, other shapes their nearest point."""
        geometry = source.geometry
        coords = shapely.get_coordinates(geometry, include_z=True)
        zs = coords[:, 2]
        z = float(np.nanmean(zs)) if np.any(~np.isnan(zs)) else 0.0
        if geometry.geom_type == "Point":
            return float(coords[0, 0]), float(coords[0, 1]), z
        nearest = nearest_points(geometry, Point(receiver_xy))[0]
        return float(nearest.x), float(nearest.y), z

    def _ground_factor(self, src, rcv) -> float:
        """Mean G along the horizontal projection of the path."""
        line = LineString([src[:2], rcv[:2]])
        length = line.length
        if length == 0.0 or not self.data.ground_areas:
            return 0.0
        weighted = 0.0
        for area in self.data.ground_areas:
            weighted += line.intersection(area.geometry).length * area.g
        return min(1.0, weighted / length)

    def _ground_attenuation(self, src, rcv, distance: float, ground_factor: float) -> float:
        obstruction = self.data.obstruction
        hs = max(0.0, src[2] - obstruction.get_height_at(src[0], src[1]))
        hr = max(0.0, rcv[2] - obstruction.get_height_at(rcv[0], rcv[1]))
        hm = (hs + hr) / 2.0
        porous = max(0.0, 4.8 - (2.0 * hm / distance) * (17.0 + 300.0 / distance))
        return ground_factor * porous + (1.0 - ground_factor) * HARD_GROUND_GAIN

    # ------------------------------------------------------------------ paths
    def compute_path(self, source: SourceEntry, receiver_pk: int, rcv, path_data: PathData) -> Optional[PropagationPath]:
        if source.geometry.is_empty:
            return None
        src = self._source_position(source, rcv[:2])
        distance = math.dist(src, rcv)
        if distance > self.data.max_src_dist:
            return None
        distance = max(distance, MIN_DISTANCE)
        freqs = np.asarray(path_data.frequencies, dtype=np.float64)

        delta = None
        diffraction = np.zeros(freqs.shape[0], dtype=np.float64)
        obstacles = self.data.obstruction.obstacles_between(src, rcv)
        if obstacles:
            if not self.data.compute_vertical_diffraction:
                return None
            if any(not o.building.has_height for o in obstacles):
                return None
            top = max(obstacles, key=lambda o: o.top_z - o.line_z)
            edge = (top.x, top.y, top.top_z)
            delta = math.dist(src, edge) + math.dist(edge, rcv) - distance
            diffraction = np.minimum(
                10.0 * np.log10(3.0 + 20.0 * delta * freqs / path_data.celerity),
                MAX_DIFFRACTION_ATTENUATION,
            )

        ground_factor = self._ground_factor(src, rcv)
        attenuation = (
            20.0 * math.log10(distance)
            + 11.0
            + path_data.alpha_atm * distance / 1000.0
            + self._ground_attenuation(src, rcv, distance, ground_factor)
            + diffraction
        )
        return PropagationPath(
            source_id=source.pk,
            receiver_id=receiver_pk,
            distance=distance,
            ground_factor=ground_factor,
            attenuation=attenuation,
            diffraction_delta=delta,
        )

    def run(self, out: ComputeRaysOut) -> None:
        """Evaluate every receiver of the cell and feed ``out``."""
        path_data = out.path_data
        if len(path_data.frequencies) != len(self.data.frequencies):
            raise ValueError(
                f"Path data has {len(path_data.frequencies)} bands, "
                f"cell sources have {len(self.data.frequencies)}"
            )
        progress = self.data.cell_progress
        for receiver in self.data.receivers:
            for source in self.data.sources:
                path = self.compute_path(source, receiver.pk, receiver.coordinate, path_data)
                if path is None:
                    continue
                levels = source.spectrum - path.attenuation
                if np.max(levels) < self.data.maximum_error:
                    continue
                out.add_values(receiver.pk, source.pk, levels)
                out.add_propagation_path(path)
            if progress is not None:
                progress.end_step()
        logger.debug(
            "Cell %d: %d contributions for %d receivers",
            self.data.cell_id,
            len(out.verts),
            len(self.data.receivers),
        )


__all__ = [
    "ComputeRays",
    "ComputeRaysOut",
    "PropagationPath",
    "ReceiverContribution",
    "dba_to_w",
    "energetic_sum",
    "w_to_dba",
]
