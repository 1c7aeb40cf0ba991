"""
Per-cell computation input.

A ``CellInput`` holds everything the propagation engine needs for one cell:
the obstruction structure, the sources found in the expanded cell envelope,
the receivers of the cell itself, the ground areas and the propagation
parameters. It is built fresh for each cell and consumed once.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry.base import BaseGeometry

from .config import OCTAVE_BANDS
from .obstruction import ObstructionTest
from .progress import ProgressVisitor


@dataclass
class GroundArea:
    geometry: BaseGeometry
    g: float


@dataclass
class SourceEntry:
    pk: int
    geometry: BaseGeometry
    spectrum: np.ndarray


@dataclass
class ReceiverEntry:
    pk: int
    coordinate: Tuple[float, float, float]


def _coordinate3d(coordinate: Sequence[float]) -> Tuple[float, float, float]:
    z = float(coordinate[2]) if len(coordinate) > 2 else 0.0
    if math.isnan(z):
        z = 0.0
    return float(coordinate[0]), float(coordinate[1]), z


class CellInput:
    def __init__(
        self,
        obstruction: ObstructionTest,
        *,
        frequencies: Sequence[int] = OCTAVE_BANDS,
        sound_level_field: str = "DB_M",
    ) -> None:
        self.obstruction = obstruction
        self.frequencies: Tuple[int, ...] = tuple(frequencies)
        self.sound_level_field = sound_level_field
        self.reflection_order = 2
        self.max_ref_dist = 100.0
        self.max_src_dist = 750.0
        self.compute_horizontal_diffraction = True
        self.compute_vertical_diffraction = True
        self.maximum_error = float("-inf")
        self.ground_areas: List[GroundArea] = []
        self.sources: List[SourceEntry] = []
        self.receivers: List[ReceiverEntry] = []
        self.cell_id = -1
        self.cell_progress: Optional[ProgressVisitor] = None

    def read_spectrum(self, row: Any) -> np.ndarray:
        """
        Emission spectrum from ``<sound_level_field><Hz>`` columns of a row.
        Bands without a column or with NULL carry no power (-inf dB).
        """
        spectrum = np.full(len(self.frequencies), -np.inf, dtype=np.float64)
        if row is None:
            return spectrum
        keys = {key.lower(): key for key in row.keys()}
        for k, freq in enumerate(self.frequencies):
            key = keys.get(f"{self.sound_level_field}{freq}".lower())
            if key is not None and row[key] is not None:
                spectrum[k] = float(row[key])
        return spectrum

    def add_source(self, pk: int, geometry: BaseGeometry, row: Any = None) -> None:
        self.sources.append(SourceEntry(int(pk), geometry, self.read_spectrum(row)))

    def add_receiver(self, pk: int, coordinate: Sequence[float], row: Any = None) -> None:
        self.receivers.append(ReceiverEntry(int(pk), _coordinate3d(coordinate)))

    def add_ground_area(self, geometry: BaseGeometry, g: float) -> None:
        self.ground_areas.append(GroundArea(geometry, float(g)))

    # ------------------------------------------------------------------ elevation
    def _to_absolute(self, coords: np.ndarray) -> np.ndarray:
        z = np.nan_to_num(coords[:, 2], nan=0.0)
        coords = coords.copy()
        coords[:, 2] = z + self.obstruction.get_heights(coords[:, :2])
        return coords

    def make_relative_z_to_absolute_only_sources(self) -> None:
        """Add the ground elevation under each source vertex to its z."""
        for source in self.sources:
            geometry = shapely.force_3d(source.geometry)
            source.geometry = shapely.transform(geometry, self._to_absolute, include_z=True)

    def make_relative_z_to_absolute_only_receivers(self) -> None:
        for receiver in self.receivers:
            x, y, z = receiver.coordinate
            receiver.coordinate = (x, y, z + self.obstruction.get_height_at(x, y))


__all__ = ["CellInput", "GroundArea", "ReceiverEntry", "SourceEntry"]
