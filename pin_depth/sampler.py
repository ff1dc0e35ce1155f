"""
深度バッファの二次補間サンプリング

Quadratic (3x3 neighborhood) reconstruction of a depth buffer at fractional
pixel coordinates.
"""

import math

import numpy as np


def lagrange_interpolate(y0, y1, y2, t):
    """
    1D quadratic Lagrange interpolation through (0, y0), (1, y1), (2, y2).

    Args:
        y0, y1, y2: sample values at x = 0, 1, 2
        t: evaluation position (normally in [1, 2))

    Returns:
        Interpolated value at x = t
    """
    c0 = y0 * ((t - 1) * (t - 2)) / 2.0
    c1 = y1 * ((t - 0) * (t - 2)) / -1.0
    c2 = y2 * ((t - 0) * (t - 1)) / 2.0
    return c0 + c1 + c2


def clamp_to_interior(u, v, width, height):
    """Clamp (u, v) so that a full 3x3 neighborhood exists around it."""
    u = max(1.0, min(float(width - 2), float(u)))
    v = max(1.0, min(float(height - 2), float(v)))
    return u, v


def sample_depth_quadratic(buffer, width, height, u, v):
    """
    Sample a row-major depth buffer at (u, v) with 2D quadratic interpolation.

    Each of the three rows of the 3x3 block is interpolated along x, then the
    three row results are interpolated along y. At integer (u, v) inside the
    interior this returns the stored value exactly.

    Args:
        buffer: row-major depth values, length width * height
        width: buffer width in pixels
        height: buffer height in pixels
        u: fractional x coordinate (clamped to [1, width-2])
        v: fractional y coordinate (clamped to [1, height-2])

    Returns:
        float: interpolated depth
    """
    u, v = clamp_to_interior(u, v, width, height)

    # 3x3 ブロックの左上
    x0 = int(math.floor(u)) - 1
    y0 = int(math.floor(v)) - 1
    fx = u - x0
    fy = v - y0

    def d(x, y):
        return float(buffer[y * width + x])

    row0 = lagrange_interpolate(d(x0, y0), d(x0 + 1, y0), d(x0 + 2, y0), fx)
    row1 = lagrange_interpolate(d(x0, y0 + 1), d(x0 + 1, y0 + 1), d(x0 + 2, y0 + 1), fx)
    row2 = lagrange_interpolate(d(x0, y0 + 2), d(x0 + 1, y0 + 2), d(x0 + 2, y0 + 2), fx)

    return float(lagrange_interpolate(row0, row1, row2, fy))


def sample_depth_quadratic_batch(buffer, width, height, us, vs):
    """
    Vectorized form of sample_depth_quadratic.

    Args:
        buffer: row-major depth values, length width * height
        width: buffer width in pixels
        height: buffer height in pixels
        us: array of x coordinates
        vs: array of y coordinates, broadcastable against us

    Returns:
        numpy.ndarray: interpolated depths (float64) with the broadcast shape of us and vs
    """
    depth = np.asarray(buffer, dtype=np.float64).reshape(height, width)
    us, vs = np.broadcast_arrays(
        np.clip(np.asarray(us, dtype=np.float64), 1.0, width - 2),
        np.clip(np.asarray(vs, dtype=np.float64), 1.0, height - 2),
    )

    x0 = np.floor(us).astype(np.intp) - 1
    y0 = np.floor(vs).astype(np.intp) - 1
    fx = us - x0
    fy = vs - y0

    rows = [
        lagrange_interpolate(
            depth[y0 + r, x0], depth[y0 + r, x0 + 1], depth[y0 + r, x0 + 2], fx
        )
        for r in range(3)
    ]
    return lagrange_interpolate(rows[0], rows[1], rows[2], fy)
