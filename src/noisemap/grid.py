"""
Computation grid planning.

The study area is split into ``grid_dim x grid_dim`` cells (a quadtree level,
``4**subdivision_level`` cells in total). Each cell is simulated on its own
with every geometry lying within ``maximum_propagation_distance`` of it, so the
cell size is chosen to keep that buffer large compared to the cell itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple

from .envelope import Envelope
from .errors import ConfigurationError

###############################################################################
# Constants
###############################################################################

# When computing cell size, keep the propagation distance away from the cell
# at least this ratio of the cell width
MINIMAL_BUFFER_RATIO = 0.3


@dataclass(frozen=True)
class GridPlan:
    area: Envelope
    subdivision_level: int
    grid_dim: int
    cell_width: float
    cell_height: float

    @property
    def cell_count(self) -> int:
        return self.grid_dim * self.grid_dim

    def cell_id(self, cell_i: int, cell_j: int) -> int:
        """Stable integer identifier of cell (i, j)."""
        return cell_i * self.grid_dim + cell_j

    def cell_envelope(self, cell_i: int, cell_j: int) -> Envelope:
        if not (0 <= cell_i < self.grid_dim and 0 <= cell_j < self.grid_dim):
            raise IndexError(
                f"Cell ({cell_i}, {cell_j}) outside of {self.grid_dim}x{self.grid_dim} grid"
            )
        env = cell_envelope(self.area, cell_i, cell_j, self.cell_width, self.cell_height)
        # Last row and column end exactly on the area bounds whatever the rounding
        return Envelope(
            env.min_x,
            env.min_y,
            self.area.max_x if cell_i == self.grid_dim - 1 else env.max_x,
            self.area.max_y if cell_j == self.grid_dim - 1 else env.max_y,
        )


def subdivision_level_for(greatest_side_length: float, max_propagation_distance: float) -> int:
    """Smallest level whose cell size satisfies the buffer ratio."""
    level = 0
    while max_propagation_distance / (greatest_side_length / 2 ** level) < MINIMAL_BUFFER_RATIO:
        level += 1
    return level


def plan_grid(area: Envelope, max_propagation_distance: float) -> GridPlan:
    """
    Derive the subdivision of ``area`` for a given propagation horizon.

    The level starts at 0 and grows while the ratio between the propagation
    distance and the cell side stays under ``MINIMAL_BUFFER_RATIO``.
    """
    if area.is_null or area.width <= 0 or area.height <= 0:
        raise ConfigurationError(f"Computation area must be a non-empty envelope, got {area}")
    if max_propagation_distance <= 0:
        raise ConfigurationError(
            f"Maximum propagation distance must be positive, got {max_propagation_distance}"
        )
    level = subdivision_level_for(area.max_extent, max_propagation_distance)
    grid_dim = 2 ** level
    return GridPlan(
        area=area,
        subdivision_level=level,
        grid_dim=grid_dim,
        cell_width=area.width / grid_dim,
        cell_height=area.height / grid_dim,
    )


def cell_envelope(
    area: Envelope, cell_i: int, cell_j: int, cell_width: float, cell_height: float
) -> Envelope:
    """Envelope of cell (i, j); i walks along X and j along Y."""
    return Envelope(
        area.min_x + cell_i * cell_width,
        area.min_y + cell_height * cell_j,
        area.min_x + cell_i * cell_width + cell_width,
        area.min_y + cell_height * cell_j + cell_height,
    )


def expand_cell_envelope(envelope: Envelope, max_propagation_distance: float) -> Envelope:
    """Grow a cell envelope by the propagation distance on every side."""
    return envelope.expanded_by(max_propagation_distance)


def iter_cells(plan: GridPlan) -> Iterator[Tuple[int, int]]:
    for cell_i in range(plan.grid_dim):
        for cell_j in range(plan.grid_dim):
            yield cell_i, cell_j


__all__ = [
    "MINIMAL_BUFFER_RATIO",
    "GridPlan",
    "plan_grid",
    "cell_envelope",
    "expand_cell_envelope",
    "iter_cells",
    "subdivision_level_for",
]
