from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, Tuple

import numpy as np

from . import utils
from .errors import ConfigurationError

###############################################################################
# Defaults
###############################################################################

DEFAULT_FETCH_SIZE = 300
# Cement wall, sigma = 1175 kN.s.m-4
DEFAULT_WALL_ABSORPTION = 1175.0
OCTAVE_BANDS: Tuple[int, ...] = (63, 125, 250, 500, 1000, 2000, 4000, 8000)

K_0 = 273.15
REFERENCE_TEMPERATURE = 293.15
TRIPLE_POINT_TEMPERATURE = 273.16
REFERENCE_PRESSURE = 101325.0


@dataclass(frozen=True)
class NoiseMapConfig:
    """Tables, distances and flags shared by every cell of a run."""

    buildings_table: str
    sources_table: str
    receivers_table: str
    soil_table: str = ""
    dem_table: str = ""
    height_field: str = ""
    alpha_field: str = "ALPHA"
    ground_field: str = "G"
    sound_level_field: str = "DB_M"
    # True if Z of sources and receivers are already absolute (sea level)
    absolute_z_coordinates: bool = False
    maximum_propagation_distance: float = 750.0
    maximum_reflection_distance: float = 100.0
    sound_reflection_order: int = 2
    compute_horizontal_diffraction: bool = True
    compute_vertical_diffraction: bool = True
    wall_absorption: float = DEFAULT_WALL_ABSORPTION
    # Stop summing contributions once they fall under this level (dB)
    maximum_error: float = float("-inf")
    parallel_computation_count: int = 0
    fetch_size: int = DEFAULT_FETCH_SIZE

    def validate(self) -> None:
        if self.maximum_propagation_distance < self.maximum_reflection_distance:
            raise ConfigurationError(
                "Maximum wall seeking distance cannot be superior than maximum propagation distance"
            )
        if not self.sources_table:
            raise ConfigurationError("A sound source table must be provided")
        if not self.buildings_table:
            raise ConfigurationError("A buildings table must be provided")
        if not self.receivers_table:
            raise ConfigurationError("A receivers table must be provided")
        if self.sound_reflection_order < 0:
            raise ConfigurationError("Sound reflection order cannot be negative")
        if self.parallel_computation_count < 0:
            raise ConfigurationError("Parallel computation count cannot be negative")
        if self.fetch_size < 1:
            raise ConfigurationError("Fetch size must be at least 1")

    @property
    def do_multi_threading(self) -> bool:
        return self.parallel_computation_count != 1

    @property
    def worker_count(self) -> int:
        """Number of worker processes, resolving 0 to every available core."""
        if self.parallel_computation_count == 0:
            return os.cpu_count() or 1
        return self.parallel_computation_count

    def with_changes(self, **changes: Any) -> NoiseMapConfig:
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> NoiseMapConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        try:
            return cls(**data)
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc


@dataclass(frozen=True)
class PathData:
    """
    Atmospheric settings used by the path-loss model.

    Atmospheric absorption follows ISO 9613-1 for the configured
    temperature (Celsius), relative humidity (%) and pressure (Pa).
    """

    frequencies: Tuple[int, ...] = OCTAVE_BANDS
    temperature: float = 15.0
    humidity: float = 70.0
    pressure: float = REFERENCE_PRESSURE

    @property
    def celerity(self) -> float:
        """Speed of sound in m/s."""
        return 343.2 * np.sqrt((self.temperature + K_0) / REFERENCE_TEMPERATURE)

    @property
    def alpha_atm(self) -> np.ndarray:
        """Atmospheric absorption per band in dB/km."""
        t_kel = self.temperature + K_0
        pa_ratio = self.pressure / REFERENCE_PRESSURE
        t_ratio = t_kel / REFERENCE_TEMPERATURE
        psat_ratio = 10 ** (-6.8346 * (TRIPLE_POINT_TEMPERATURE / t_kel) ** 1.261 + 4.6151)
        h = self.humidity * psat_ratio / pa_ratio
        fr_o = pa_ratio * (24 + 4.04e4 * h * (0.02 + h) / (0.391 + h))
        fr_n = pa_ratio * t_ratio ** -0.5 * (
            9 + 280 * h * np.exp(-4.170 * (t_ratio ** (-1.0 / 3.0) - 1))
        )
        freq = np.asarray(self.frequencies, dtype=np.float64)
        f2 = freq * freq
        alpha = 8.686 * f2 * (
            1.84e-11 / pa_ratio * np.sqrt(t_ratio)
            + t_ratio ** -2.5
            * (
                0.01275 * np.exp(-2239.1 / t_kel) / (fr_o + f2 / fr_o)
                + 0.1068 * np.exp(-3352.0 / t_kel) / (fr_n + f2 / fr_n)
            )
        )
        return alpha * 1000.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PathData:
        data = dict(data)
        if "frequencies" in data:
            data["frequencies"] = tuple(int(f) for f in data["frequencies"])
        try:
            return cls(**data)
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc


def load_config(path: str | os.PathLike[str]) -> Tuple[NoiseMapConfig, PathData]:
    """
    Load a run configuration from JSON or TOML.

    The file holds the ``NoiseMapConfig`` keys at top level and an optional
    ``path_data`` table for the atmospheric settings.
    """
    try:
        params = utils.load_params(path)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    path_params = params.pop("path_data", {})
    config = NoiseMapConfig.from_mapping(params)
    config.validate()
    return config, PathData.from_mapping(path_params)


__all__ = [
    "DEFAULT_FETCH_SIZE",
    "DEFAULT_WALL_ABSORPTION",
    "OCTAVE_BANDS",
    "NoiseMapConfig",
    "PathData",
    "load_config",
]
