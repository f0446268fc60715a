"""
Depth feature extraction.

Turns one 10x10 depth grid (meters, row-major) into the statistics the
decision engine votes on. Cells that are non-positive or not finite are
treated as missing: they take no part in any statistic and every gradient
touching them is dropped. All spreads are population standard deviations.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Optional, Sequence, Union

import numpy as np

GRID_SIZE = 10
CENTER_BORDER = 2
MIN_VALID_POINTS = 30

_rows, _cols = np.indices((GRID_SIZE, GRID_SIZE))
EDGE_MASK = (_rows == 0) | (_rows == GRID_SIZE - 1) | (_cols == 0) | (_cols == GRID_SIZE - 1)
CENTER_MASK = (
    (_rows >= CENTER_BORDER)
    & (_rows < GRID_SIZE - CENTER_BORDER)
    & (_cols >= CENTER_BORDER)
    & (_cols < GRID_SIZE - CENTER_BORDER)
)
del _rows, _cols

DepthGrid = Union[np.ndarray, Sequence[float], Sequence[Sequence[float]]]


@dataclass(frozen=True)
class FrameStatistics:
    mean: float
    std_dev: float
    range: float
    edge_std_dev: float
    center_std_dev: float
    gradient_mean: float
    gradient_std_dev: float

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True, eq=False)
class FrameSample:
    """A validated depth grid; missing cells hold NaN. Read-only."""

    grid: np.ndarray

    @property
    def valid_mask(self) -> np.ndarray:
        return ~np.isnan(self.grid)

    @property
    def valid_count(self) -> int:
        return int(self.valid_mask.sum())

    @property
    def values(self) -> np.ndarray:
        return self.grid[self.valid_mask]

    @property
    def edge_values(self) -> np.ndarray:
        return self.grid[EDGE_MASK & self.valid_mask]

    @property
    def center_values(self) -> np.ndarray:
        return self.grid[CENTER_MASK & self.valid_mask]

    @property
    def gradient_pattern(self) -> np.ndarray:
        """Absolute right and bottom neighbour differences, 180 slots, NaN where a cell is missing."""
        horizontal = np.abs(np.diff(self.grid, axis=1)).ravel()
        vertical = np.abs(np.diff(self.grid, axis=0)).ravel()
        return np.concatenate([horizontal, vertical])

    @property
    def gradients(self) -> np.ndarray:
        pattern = self.gradient_pattern
        return pattern[~np.isnan(pattern)]


@dataclass(frozen=True)
class ExtractedFrame:
    """Outcome of feature extraction; ``sample`` and ``statistics`` are None when insufficient."""

    valid_count: int
    sample: Optional[FrameSample] = None
    statistics: Optional[FrameStatistics] = None

    @property
    def insufficient(self) -> bool:
        return self.sample is None


def _population_std(values: np.ndarray) -> float:
    if values.size < 2:
        return 0.0
    return float(np.std(values))


def to_grid(depth_grid: DepthGrid) -> np.ndarray:
    """Coerce a flat or nested 100-cell input into a read-only 10x10 grid with NaN holes."""
    grid = np.array(depth_grid, dtype=np.float64)
    if grid.size != GRID_SIZE * GRID_SIZE:
        raise ValueError(f"depth grid must contain {GRID_SIZE * GRID_SIZE} cells, got {grid.size}")
    grid = grid.reshape(GRID_SIZE, GRID_SIZE)
    with np.errstate(invalid="ignore"):
        invalid = ~np.isfinite(grid) | (grid <= 0)
    grid[invalid] = np.nan
    grid.setflags(write=False)
    return grid


def compute_statistics(sample: FrameSample) -> FrameStatistics:
    values = sample.values
    gradients = sample.gradients
    return FrameStatistics(
        mean=float(np.mean(values)),
        std_dev=_population_std(values),
        range=float(np.ptp(values)),
        edge_std_dev=_population_std(sample.edge_values),
        center_std_dev=_population_std(sample.center_values),
        gradient_mean=float(np.mean(gradients)) if gradients.size else 0.0,
        gradient_std_dev=_population_std(gradients),
    )


def extract_features(depth_grid: DepthGrid, *, min_valid_points: int = MIN_VALID_POINTS) -> ExtractedFrame:
    """Pure: the same grid always yields the same result."""
    sample = FrameSample(grid=to_grid(depth_grid))
    valid_count = sample.valid_count
    if valid_count < min_valid_points:
        return ExtractedFrame(valid_count=valid_count)
    return ExtractedFrame(valid_count=valid_count, sample=sample, statistics=compute_statistics(sample))


__all__ = [
    "GRID_SIZE",
    "MIN_VALID_POINTS",
    "EDGE_MASK",
    "CENTER_MASK",
    "FrameStatistics",
    "FrameSample",
    "ExtractedFrame",
    "to_grid",
    "compute_statistics",
    "extract_features",
]
