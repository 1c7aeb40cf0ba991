# src/noisemap/utils.py
from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    tomllib = None  # type: ignore


@dataclass
class NoiseMapResult:
    """Common container for merged receiver levels of a run."""

    receiver_ids: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    levels: np.ndarray = field(default_factory=lambda: np.zeros((0, 0), dtype=np.float64))
    coordinates: Optional[np.ndarray] = None
    meta: Optional[Dict[str, Any]] = None

    def ensure_meta(self) -> Dict[str, Any]:
        if self.meta is None:
            self.meta = {}
        return self.meta


def now_str() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def save_result(
    path: str | os.PathLike[str], result: NoiseMapResult, *, overwrite: bool = True
) -> None:
    """Serialize a NoiseMapResult to a compressed .npz file."""
    out_dir = Path(path).parent
    out_dir.mkdir(parents=True, exist_ok=True)
    out: Dict[str, Any] = {
        "receiver_ids": np.asarray(result.receiver_ids, dtype=np.int64),
        "levels": np.asarray(result.levels, dtype=np.float64),
    }
    if result.coordinates is not None:
        out["coordinates"] = np.asarray(result.coordinates, dtype=np.float64)
    out["meta"] = json.dumps(result.meta or {})

    if not overwrite and Path(path).exists():
        raise FileExistsError(f"{path} already exists")
    np.savez_compressed(path, **out)


def load_result(path: str | os.PathLike[str]) -> NoiseMapResult:
    """
    Load a result .npz into a NoiseMapResult.
    """
    with np.load(path, allow_pickle=False) as data:
        coordinates = data["coordinates"] if "coordinates" in data else None
        meta = json.loads(str(data["meta"])) if "meta" in data else {}
        return NoiseMapResult(
            receiver_ids=data["receiver_ids"].astype(np.int64),
            levels=data["levels"].astype(np.float64),
            coordinates=coordinates,
            meta=meta,
        )


def load_params(path: str | os.PathLike[str]) -> Dict[str, Any]:
    """
    Load parameters from JSON or TOML.
    """
    path = str(path)
    with open(path, "rb") as fh:
        data = fh.read()
    suffix = Path(path).suffix.lower()
    if suffix in {".json", ""}:
        return json.loads(data.decode("utf-8"))
    if suffix in {".toml", ".tml"}:
        if tomllib is None:
            raise RuntimeError("tomllib is unavailable; cannot parse TOML files")
        return tomllib.loads(data.decode("utf-8"))
    raise ValueError(f"Unsupported parameter file format: {suffix}")
