"""Synthetic depth grids and shared fixtures."""
from pathlib import Path

import numpy as np
import pytest

from liveness_controller.config import Settings

GRID = 10


def face_grid(base: float = 0.6, *, amplitude: float = 0.12, noise: float = 0.004, seed: int = 0) -> np.ndarray:
    """A rounded face: nose and cheeks closer to the camera than the border, plus sensor noise."""
    rng = np.random.default_rng(seed)
    rows, cols = np.indices((GRID, GRID))
    distance_sq = (rows - 4.5) ** 2 + (cols - 4.5) ** 2
    dome = amplitude * np.exp(-distance_sq / (2 * 2.5 ** 2))
    return base - dome + rng.normal(0.0, noise, size=(GRID, GRID))


def flat_grid(depth: float = 0.5, *, noise: float = 0.0005, seed: int = 0) -> np.ndarray:
    """A photo or screen held in front of the camera."""
    rng = np.random.default_rng(seed)
    return np.full((GRID, GRID), depth) + rng.normal(0.0, noise, size=(GRID, GRID))


def sparse_grid(valid_cells: int = 20, depth: float = 0.6) -> np.ndarray:
    grid = np.zeros(GRID * GRID)
    grid[:valid_cells] = depth
    return grid.reshape(GRID, GRID)


def face_frames(count: int, *, base: float = 0.6, drift: float = 0.004, seed: int = 0):
    """Consecutive frames of a slightly moving face."""
    return [face_grid(base + i * drift, seed=seed + i) for i in range(count)]


@pytest.fixture
def face() -> np.ndarray:
    return face_grid()


@pytest.fixture
def flat() -> np.ndarray:
    return flat_grid()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        data_directory=tmp_path / "data",
        log_directory=tmp_path / "logs",
    )


def make_settings(tmp_path: Path, **overrides) -> Settings:
    return Settings(
        _env_file=None,
        data_directory=tmp_path / "data",
        log_directory=tmp_path / "logs",
        **overrides,
    )


# Left turn and back, from the challenge walkthrough
LEFT_TURN_YAWS = [0.0, -2.0, 3.0, 10.0, 20.0, 26.0, 15.0, 10.0, 4.0]


def yaw_stream(yaws, *, sign: float = 1.0, start: float = 0.1, step: float = 0.1):
    """(yaw, timestamp) pairs, mirrored for a right turn when sign is -1."""
    return [(sign * yaw, start + i * step) for i, yaw in enumerate(yaws)]
