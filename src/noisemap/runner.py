"""
Whole-area driver.

Evaluates every cell of the grid, serially or on a process pool sized by
``parallel_computation_count``, and merges the receiver levels. The receiver
exclusion set lives in the driver only: cells read a snapshot of it and the
driver adds a cell's receivers once the cell is merged, so a receiver lying on
a shared cell edge is reported once.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, List, Optional, Set, Tuple

import numpy as np

from . import utils
from .config import NoiseMapConfig, PathData
from .envelope import Envelope
from .errors import DataSourceError, MeshBuildError
from .grid import iter_cells
from .noise_map import PointNoiseMap
from .progress import ProgressVisitor
from .store import SpatialStore

logger = logging.getLogger(__name__)


@dataclass
class CellOutcome:
    cell_i: int
    cell_j: int
    cell_id: int
    receiver_ids: List[int] = field(default_factory=list)
    coordinates: List[Tuple[float, float, float]] = field(default_factory=list)
    levels: List[np.ndarray] = field(default_factory=list)
    elapsed: float = 0.0


def evaluate_cell_task(
    database: str,
    config: NoiseMapConfig,
    path_data: PathData,
    main_envelope: Envelope,
    cell_i: int,
    cell_j: int,
    skip_receivers: AbstractSet[int],
) -> CellOutcome:
    """
    Evaluate one cell on its own store connection.

    Module level so that ProcessPoolExecutor can pickle it.
    """
    start = time.time()
    noise_map = PointNoiseMap(config, path_data=path_data)
    noise_map.main_envelope = main_envelope
    with SpatialStore.connect(database) as store:
        out = noise_map.evaluate_cell(
            store, cell_i, cell_j, ProgressVisitor(1, name=f"cell {cell_i},{cell_j}"), skip_receivers
        )
    receiver_levels = out.receiver_levels()
    silent = np.full(len(path_data.frequencies), -np.inf)
    outcome = CellOutcome(cell_i, cell_j, noise_map.plan.cell_id(cell_i, cell_j))
    receivers = out.cell_input.receivers if out.cell_input is not None else []
    if receivers:
        for receiver in receivers:
            outcome.receiver_ids.append(receiver.pk)
            outcome.coordinates.append(receiver.coordinate)
            outcome.levels.append(receiver_levels.get(receiver.pk, silent))
    else:
        for pk, levels in receiver_levels.items():
            outcome.receiver_ids.append(pk)
            outcome.coordinates.append((np.nan, np.nan, np.nan))
            outcome.levels.append(levels)
    outcome.elapsed = time.time() - start
    return outcome


class _Merger:
    def __init__(self, processed: Set[int]) -> None:
        self.processed = processed
        self.receiver_ids: List[int] = []
        self.coordinates: List[Tuple[float, float, float]] = []
        self.levels: List[np.ndarray] = []

    def merge(self, outcome: CellOutcome) -> int:
        added = 0
        for pk, coordinate, levels in zip(outcome.receiver_ids, outcome.coordinates, outcome.levels):
            # Receivers on a shared edge can be returned by concurrent cells
            if pk in self.processed:
                continue
            self.processed.add(pk)
            self.receiver_ids.append(pk)
            self.coordinates.append(coordinate)
            self.levels.append(levels)
            added += 1
        return added


def compute_noise_map(
    database: str | os.PathLike[str],
    config: NoiseMapConfig,
    path_data: Optional[PathData] = None,
    *,
    skip_receivers: Optional[AbstractSet[int]] = None,
    main_envelope: Optional[Envelope] = None,
    progress: Optional[ProgressVisitor] = None,
) -> utils.NoiseMapResult:
    """
    Compute receiver levels over the whole area stored in ``database``.

    Cells failing on invalid geometry or store errors are reported in the
    result metadata and do not stop their siblings. Configuration errors are
    raised immediately.
    """
    database = str(database)
    path_data = path_data or PathData()
    noise_map = PointNoiseMap(config, path_data=path_data)
    if main_envelope is not None:
        noise_map.main_envelope = main_envelope
    with SpatialStore.connect(database) as store:
        plan = noise_map.initialize(store)

    merger = _Merger(set(skip_receivers or ()))
    progress = progress or ProgressVisitor(plan.cell_count, name="noise map")
    failures: List[Dict[str, Any]] = []
    start = time.time()

    def record(outcome: CellOutcome) -> None:
        added = merger.merge(outcome)
        logger.info(
            "Cell %d,%d done: %d receivers in %.2fs",
            outcome.cell_i + 1,
            outcome.cell_j + 1,
            added,
            outcome.elapsed,
        )

    def record_failure(cell: Tuple[int, int], exc: Exception) -> None:
        failures.append({"cell": list(cell), "error": f"{type(exc).__name__}: {exc}"})
        logger.error("Cell %d,%d failed: %s", cell[0] + 1, cell[1] + 1, exc)

    workers = config.worker_count
    if workers == 1:
        for cell in iter_cells(plan):
            try:
                outcome = evaluate_cell_task(
                    database, config, path_data, plan.area, cell[0], cell[1], frozenset(merger.processed)
                )
            except (MeshBuildError, DataSourceError) as exc:
                record_failure(cell, exc)
            else:
                record(outcome)
            progress.end_step()
    else:
        logger.info("Evaluating %d cells on %d processes", plan.cell_count, workers)
        with ProcessPoolExecutor(max_workers=workers) as executor:
            future_to_cell = {
                executor.submit(
                    evaluate_cell_task,
                    database,
                    config,
                    path_data,
                    plan.area,
                    cell[0],
                    cell[1],
                    frozenset(merger.processed),
                ): cell
                for cell in iter_cells(plan)
            }
            for future in as_completed(future_to_cell):
                cell = future_to_cell[future]
                try:
                    outcome = future.result()
                except (MeshBuildError, DataSourceError) as exc:
                    record_failure(cell, exc)
                except BaseException:
                    # Any other error fails every cell: drop the queued ones
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise
                else:
                    record(outcome)
                progress.end_step()

    bands = len(path_data.frequencies)
    result = utils.NoiseMapResult(
        receiver_ids=np.asarray(merger.receiver_ids, dtype=np.int64),
        levels=np.vstack(merger.levels) if merger.levels else np.zeros((0, bands)),
        coordinates=np.asarray(merger.coordinates, dtype=np.float64).reshape(-1, 3),
    )
    meta = result.ensure_meta()
    meta.update(
        {
            "area": list(plan.area.bounds),
            "subdivision_level": plan.subdivision_level,
            "grid_dim": plan.grid_dim,
            "frequencies": list(path_data.frequencies),
            "workers": workers,
            "elapsed_seconds": time.time() - start,
            "failures": failures,
        }
    )
    return result


__all__ = ["CellOutcome", "compute_noise_map", "evaluate_cell_task"]
