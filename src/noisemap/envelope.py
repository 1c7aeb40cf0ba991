from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Tuple

from shapely.geometry import Polygon, box


@dataclass(frozen=True)
class Envelope:
    """
    Axis-aligned bounding rectangle.

    The null envelope (all bounds NaN) stands for "not initialised yet"; it
    never intersects or contains anything and expanding it is a no-op.
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def null(cls) -> Envelope:
        nan = float("nan")
        return cls(nan, nan, nan, nan)

    @classmethod
    def from_bounds(cls, bounds: Iterable[float]) -> Envelope:
        """Build from a shapely style (minx, miny, maxx, maxy) tuple."""
        min_x, min_y, max_x, max_y = (float(v) for v in bounds)
        if any(math.isnan(v) for v in (min_x, min_y, max_x, max_y)):
            return cls.null()
        return cls(min_x, min_y, max_x, max_y)

    @property
    def is_null(self) -> bool:
        return math.isnan(self.min_x)

    @property
    def width(self) -> float:
        return 0.0 if self.is_null else self.max_x - self.min_x

    @property
    def height(self) -> float:
        return 0.0 if self.is_null else self.max_y - self.min_y

    @property
    def max_extent(self) -> float:
        return max(self.width, self.height)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def expanded_by(self, distance: float) -> Envelope:
        if self.is_null:
            return self
        return Envelope(
            self.min_x - distance,
            self.min_y - distance,
            self.max_x + distance,
            self.max_y + distance,
        )

    def expanded_to_include(self, other: Envelope) -> Envelope:
        if other.is_null:
            return self
        if self.is_null:
            return other
        return Envelope(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y),
        )

    def contains(self, other: Envelope) -> bool:
        if self.is_null or other.is_null:
            return False
        return (
            self.min_x <= other.min_x
            and self.min_y <= other.min_y
            and self.max_x >= other.max_x
            and self.max_y >= other.max_y
        )

    def intersects(self, other: Envelope) -> bool:
        if self.is_null or other.is_null:
            return False
        return not (
            other.min_x > self.max_x
            or other.max_x < self.min_x
            or other.min_y > self.max_y
            or other.max_y < self.min_y
        )

    def to_polygon(self) -> Polygon:
        return box(self.min_x, self.min_y, self.max_x, self.max_y)


__all__ = ["Envelope"]
