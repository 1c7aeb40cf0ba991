"""
Grid-partitioned noise map computation at receiver points.

``PointNoiseMap`` owns the run configuration and the grid plan of the study
area. For each cell it:

1.  Fetches buildings and elevation points around the cell (cell envelope
    expanded by the maximum propagation distance) and triangulates them.
2.  Fetches sources and ground areas in the same expanded envelope.
3.  Fetches receivers of the cell itself, skipping already processed ones.
4.  Hands the assembled ``CellInput`` to the propagation engine.

Cells share nothing, so a driver may evaluate them in any order or in
parallel as long as each worker uses its own store connection.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AbstractSet, List, Optional

from .cell_input import CellInput
from .compute import ComputeRays, ComputeRaysOut
from .config import NoiseMapConfig, PathData
from .envelope import Envelope
from .errors import ConfigurationError
from .fetch import (
    fetch_cell_buildings,
    fetch_cell_dem,
    fetch_cell_receivers,
    fetch_cell_soil_areas,
    fetch_cell_sources,
)
from .grid import GridPlan, expand_cell_envelope, plan_grid
from .mesh import MeshBuilder
from .obstruction import ObstructionTest
from .progress import ProgressVisitor
from .store import SpatialStore

logger = logging.getLogger(__name__)


class CellInputFactory(ABC):
    @abstractmethod
    def create(self, obstruction: ObstructionTest) -> CellInput:
        """Build an empty cell input around an obstruction structure."""


class ResultFactory(ABC):
    @abstractmethod
    def create(self, cell_input: CellInput, path_data: PathData) -> ComputeRaysOut:
        """Build the accumulator that receives the cell results."""


class DefaultCellInputFactory(CellInputFactory):
    def create(self, obstruction: ObstructionTest) -> CellInput:
        return CellInput(obstruction)


class DefaultResultFactory(ResultFactory):
    def __init__(self, keep_rays: bool = False) -> None:
        self.keep_rays = keep_rays

    def create(self, cell_input: CellInput, path_data: PathData) -> ComputeRaysOut:
        return ComputeRaysOut(self.keep_rays, path_data, cell_input)


class PointNoiseMap:
    """
    The Manager Class.

    Responsibilities:
    1. Validate the configuration and plan the computation grid.
    2. Assemble the input of one cell from the spatial store.
    3. Run the propagation engine on it.
    """

    def __init__(
        self,
        config: NoiseMapConfig,
        *,
        path_data: Optional[PathData] = None,
        cell_input_factory: Optional[CellInputFactory] = None,
        result_factory: Optional[ResultFactory] = None,
    ) -> None:
        self.config = config
        self.path_data = path_data or PathData()
        self.cell_input_factory = cell_input_factory or DefaultCellInputFactory()
        self.result_factory = result_factory or DefaultResultFactory()
        self._main_envelope = Envelope.null()
        self._plan: Optional[GridPlan] = None

    # ------------------------------------------------------------------ grid
    @property
    def main_envelope(self) -> Envelope:
        return self._main_envelope

    @main_envelope.setter
    def main_envelope(self, envelope: Envelope) -> None:
        """Set the computation area and re-plan the grid."""
        self._plan = plan_grid(envelope, self.config.maximum_propagation_distance)
        self._main_envelope = envelope

    @property
    def plan(self) -> GridPlan:
        if self._plan is None:
            raise ConfigurationError("Computation area is not set, call initialize() first")
        return self._plan

    @property
    def grid_dim(self) -> int:
        return self.plan.grid_dim

    @property
    def subdivision_level(self) -> int:
        return self.plan.subdivision_level

    @property
    def cell_width(self) -> float:
        return self.plan.cell_width

    @property
    def cell_height(self) -> float:
        return self.plan.cell_height

    def get_computation_envelope(self, store: SpatialStore) -> Envelope:
        """Area covered by the receivers."""
        return store.table_envelope(self.config.receivers_table)

    def initialize(self, store: SpatialStore, progress: Optional[ProgressVisitor] = None) -> GridPlan:
        """Validate the configuration and compute the grid when no area was set."""
        self.config.validate()
        if self._main_envelope.is_null:
            self.main_envelope = self.get_computation_envelope(store)
        logger.info(
            "Computation area %s split into %dx%d cells (level %d)",
            self._main_envelope.bounds,
            self.grid_dim,
            self.grid_dim,
            self.subdivision_level,
        )
        return self.plan

    # ------------------------------------------------------------------ cells
    def prepare_cell(
        self,
        store: SpatialStore,
        cell_i: int,
        cell_j: int,
        progress: ProgressVisitor,
        skip_receivers: AbstractSet[int],
        buildings_pk: Optional[List[int]] = None,
    ) -> CellInput:
        """
        Gather everything needed to compute cell (i, j).

        ``skip_receivers`` is only read. ``buildings_pk``, when given, receives
        the primary keys of the buildings used for the cell.
        """
        config = self.config
        plan = self.plan
        logger.info(
            "Begin processing of cell %d,%d of the %dx%d grid..",
            cell_i + 1,
            cell_j + 1,
            plan.grid_dim,
            plan.grid_dim,
        )
        cell_envelope = plan.cell_envelope(cell_i, cell_j)
        expanded_envelope = expand_cell_envelope(cell_envelope, config.maximum_propagation_distance)

        mesh = MeshBuilder()
        fetch_cell_buildings(store, expanded_envelope, config, mesh, buildings_pk)
        fetch_cell_dem(store, expanded_envelope, config, mesh)
        mesh.finish_polygon_feeding(expanded_envelope)
        obstruction = ObstructionTest(mesh)

        cell_input = self.cell_input_factory.create(obstruction)
        cell_input.frequencies = tuple(self.path_data.frequencies)
        cell_input.sound_level_field = config.sound_level_field
        cell_input.reflection_order = config.sound_reflection_order
        cell_input.max_ref_dist = config.maximum_reflection_distance
        cell_input.max_src_dist = config.maximum_propagation_distance
        cell_input.compute_horizontal_diffraction = config.compute_horizontal_diffraction
        cell_input.compute_vertical_diffraction = config.compute_vertical_diffraction
        cell_input.maximum_error = config.maximum_error
        cell_input.cell_progress = progress.sub_process(len(cell_input.receivers))

        fetch_cell_sources(store, expanded_envelope, config, cell_input)
        cell_input.make_relative_z_to_absolute_only_sources()
        cell_input.cell_id = plan.cell_id(cell_i, cell_j)

        fetch_cell_soil_areas(store, expanded_envelope, config, cell_input)
        fetch_cell_receivers(store, cell_envelope, config, skip_receivers, cell_input)
        cell_input.cell_progress.reset(len(cell_input.receivers))

        logger.debug(
            "Cell %d: %d buildings, %d sources, %d receivers, %d ground areas",
            cell_input.cell_id,
            obstruction.building_count,
            len(cell_input.sources),
            len(cell_input.receivers),
            len(cell_input.ground_areas),
        )
        return cell_input

    def evaluate_cell(
        self,
        store: SpatialStore,
        cell_i: int,
        cell_j: int,
        progress: ProgressVisitor,
        skip_receivers: AbstractSet[int],
    ) -> ComputeRaysOut:
        """Prepare cell (i, j) and run the propagation engine on it."""
        cell_input = self.prepare_cell(store, cell_i, cell_j, progress, skip_receivers)
        out = self.result_factory.create(cell_input, self.path_data)

        compute_rays = ComputeRays(cell_input)
        if not self.config.absolute_z_coordinates:
            compute_rays.make_relative_z_to_absolute()
        compute_rays.run(out)
        return out


__all__ = [
    "CellInputFactory",
    "DefaultCellInputFactory",
    "DefaultResultFactory",
    "PointNoiseMap",
    "ResultFactory",
]
