"""
noisemap - grid-partitioned noise map computation

This package splits a study area into independent computation cells and
gathers, for each cell, the spatial data a sound propagation engine needs:
- Grid planning: subdivision level and cell envelopes from the area extent
- Spatial fetchers: buildings, DEM points, ground areas, sources, receivers
- PointNoiseMap: cell assembly (prepare_cell) and evaluation (evaluate_cell)
- compute_noise_map: whole-area driver with process pool fan-out
"""

from .config import NoiseMapConfig, PathData, load_config
from .envelope import Envelope
from .errors import (
    ConfigurationError,
    DataSourceError,
    MeshBuildError,
    MissingColumnError,
    MissingPrimaryKeyError,
    NoiseMapError,
)
from .grid import MINIMAL_BUFFER_RATIO, GridPlan, cell_envelope, expand_cell_envelope, plan_grid
from .noise_map import (
    CellInputFactory,
    DefaultCellInputFactory,
    DefaultResultFactory,
    PointNoiseMap,
    ResultFactory,
)
from .progress import ProgressVisitor
from .runner import compute_noise_map
from .store import SpatialStore
from . import utils

__all__ = [
    # Grid
    "Envelope",
    "GridPlan",
    "MINIMAL_BUFFER_RATIO",
    "cell_envelope",
    "expand_cell_envelope",
    "plan_grid",
    # Computation
    "PointNoiseMap",
    "CellInputFactory",
    "DefaultCellInputFactory",
    "DefaultResultFactory",
    "ResultFactory",
    "ProgressVisitor",
    "SpatialStore",
    "compute_noise_map",
    # Configuration classes
    "NoiseMapConfig",
    "PathData",
    "load_config",
    # Errors
    "NoiseMapError",
    "ConfigurationError",
    "MissingPrimaryKeyError",
    "MissingColumnError",
    "DataSourceError",
    "MeshBuildError",
    # Utilities
    "utils",
]
