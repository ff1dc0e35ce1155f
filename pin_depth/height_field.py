"""
深度バッファからピン高さグリッドへの変換

Maps a full-frame depth buffer onto a fixed gridSize x gridSize field of
normalized pin heights.
"""

import logging
from dataclasses import dataclass

import numpy as np

from .sampler import sample_depth_quadratic_batch

logger = logging.getLogger("pin_depth.height_field")

# 一様な深度（max == min）のときの高さ
DEFAULT_FALLBACK_HEIGHT = 0.0
MIN_BUFFER_DIM = 3
MIN_GRID_SIZE = 2


@dataclass(frozen=True)
class DepthBuffer:
    """One frame of depth values, row-major, with explicit dimensions."""
    data: np.ndarray  # 1-D float32, length width * height
    width: int
    height: int

    def __post_init__(self):
        validate_depth_buffer(self.data, self.width, self.height)

    @classmethod
    def from_values(cls, values, width: int, height: int) -> "DepthBuffer":
        data = np.array(values, dtype=np.float32).reshape(-1)
        data.setflags(write=False)
        return cls(data, int(width), int(height))

    @classmethod
    def from_array(cls, depth_map: np.ndarray) -> "DepthBuffer":
        """Build from a 2-D (H, W) array, or any array that squeezes to one."""
        depth_2d = np.squeeze(np.asarray(depth_map))
        if depth_2d.ndim != 2:
            raise ValueError(f"Depth map must squeeze to 2 dimensions, got shape {np.shape(depth_map)}")
        height, width = depth_2d.shape
        return cls.from_values(depth_2d, width, height)

    def as_2d(self) -> np.ndarray:
        return self.data.reshape(self.height, self.width)


def validate_depth_buffer(buffer, width: int, height: int):
    """Raise ValueError if buffer is not a usable width x height depth buffer."""
    if width < MIN_BUFFER_DIM or height < MIN_BUFFER_DIM:
        raise ValueError(
            f"Depth buffer must be at least {MIN_BUFFER_DIM}x{MIN_BUFFER_DIM}, got {width}x{height}"
        )
    length = np.size(buffer)
    if length != width * height:
        raise ValueError(
            f"Depth buffer length {length} does not match width*height = {width}*{height} = {width * height}"
        )


def validate_grid_size(grid_size) -> int:
    if isinstance(grid_size, bool) or not isinstance(grid_size, (int, np.integer)):
        raise ValueError(f"grid_size must be an integer, got {grid_size!r}")
    if grid_size < MIN_GRID_SIZE:
        raise ValueError(f"grid_size must be >= {MIN_GRID_SIZE}, got {grid_size}")
    return int(grid_size)


def grid_sample_coordinates(width: int, height: int, grid_size: int):
    """
    Per-axis source coordinates used for each grid column / row.

    The grid spans the buffer edge to edge: cell g samples at
    (g + 0.5) * dim / (grid_size - 1), clamped to the 3x3 interior.

    Returns:
        (us, vs): two float64 arrays of length grid_size
    """
    grid_size = validate_grid_size(grid_size)
    cells = np.arange(grid_size, dtype=np.float64) + 0.5
    us = np.clip(cells * (width / (grid_size - 1)), 1.0, width - 2)
    vs = np.clip(cells * (height / (grid_size - 1)), 1.0, height - 2)
    return us, vs


def compute_heights(buffer, width: int, height: int, grid_size: int,
                    fallback: float = DEFAULT_FALLBACK_HEIGHT) -> np.ndarray:
    """
    Compute normalized pin heights for a depth buffer.

    Args:
        buffer: row-major depth values, length width * height
        width: buffer width in pixels
        height: buffer height in pixels
        grid_size: number of pins per row / column (>= 2)
        fallback: height used for every cell when the depth range is zero

    Returns:
        numpy.ndarray: (grid_size, grid_size) float32 heights in [0, 1],
                       indexed [gy, gx]
    """
    grid_size = validate_grid_size(grid_size)
    validate_depth_buffer(buffer, width, height)
    data = np.asarray(buffer, dtype=np.float64).reshape(-1)

    # 全体の min / max（フレーム全体の深度分布で正規化する）
    min_val = float(np.min(data))
    max_val = float(np.max(data))
    depth_range = max_val - min_val

    if depth_range == 0.0:
        logger.debug(f"Uniform depth field ({min_val:.4f}), using fallback height {fallback}")
        return np.full((grid_size, grid_size), fallback, dtype=np.float32)

    us, vs = grid_sample_coordinates(width, height, grid_size)
    raw = sample_depth_quadratic_batch(data, width, height, us[np.newaxis, :], vs[:, np.newaxis])

    # 二次補間はわずかに範囲外へはみ出すことがあるので [0, 1] に収める
    normalized = np.clip((raw - min_val) / depth_range, 0.0, 1.0)
    return normalized.astype(np.float32)


class HeightFieldMapper:
    """Fixed-resolution mapper from DepthBuffer to a pin height grid."""

    def __init__(self, grid_size: int, fallback: float = DEFAULT_FALLBACK_HEIGHT):
        self.grid_size = validate_grid_size(grid_size)
        self.fallback = float(fallback)

    @property
    def cell_count(self) -> int:
        return self.grid_size * self.grid_size

    def map(self, depth_buffer: DepthBuffer) -> np.ndarray:
        return compute_heights(
            depth_buffer.data, depth_buffer.width, depth_buffer.height,
            self.grid_size, fallback=self.fallback,
        )
