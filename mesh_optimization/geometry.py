"""Planar geometry helpers for triangle rasterization.

This module implements the half-plane point-in-triangle test, barycentric
decomposition and bounding-box clipping used to bin point-cloud samples into
the triangles of a 2D mesh.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# OpenCV's reprojectImageTo3D marks missing disparities with this depth.
MISSING_Z = 10000.0

# Doubled-area threshold below which a triangle is treated as degenerate.
DEGENERATE_AREA_EPS = 1e-9


def sign(p1: np.ndarray, p2: np.ndarray, p3: np.ndarray) -> np.ndarray:
    """Signed (doubled) area of the triangle (p1, p2, p3).

    Positive or negative depending on which side of the edge p2-p3 the point
    p1 lies. Works on single points or on (N, 2) arrays of points for p1.

    Args:
        p1: Query point(s), shape (2,) or (N, 2)
        p2: First edge endpoint, shape (2,)
        p3: Second edge endpoint, shape (2,)

    Returns:
        Signed area(s)
    """
    p1 = np.asarray(p1, dtype=np.float64)
    p2 = np.asarray(p2, dtype=np.float64)
    p3 = np.asarray(p3, dtype=np.float64)
    return (p1[..., 0] - p3[0]) * (p2[1] - p3[1]) - (p2[0] - p3[0]) * (p1[..., 1] - p3[1])


def point_in_triangle(
    pt: np.ndarray,
    v1: np.ndarray,
    v2: np.ndarray,
    v3: np.ndarray
) -> np.ndarray:
    """Check whether point(s) lie inside a triangle.

    A point is inside when it is not strictly on opposite sides of two
    edges. Points on an edge or a vertex, and any point tested against a
    zero-area triangle on its supporting line, are reported as inside.

    Args:
        pt: Query point (2,) or (N, 2) array of points
        v1: First triangle vertex
        v2: Second triangle vertex
        v3: Third triangle vertex

    Returns:
        Boolean (or boolean mask of length N)
    """
    d1 = sign(pt, v1, v2)
    d2 = sign(pt, v2, v3)
    d3 = sign(pt, v3, v1)

    has_neg = (d1 < 0) | (d2 < 0) | (d3 < 0)
    has_pos = (d1 > 0) | (d2 > 0) | (d3 > 0)

    inside = ~(has_neg & has_pos)
    if np.ndim(inside) == 0:
        return bool(inside)
    return inside


def barycentric_coordinates(
    v1: np.ndarray,
    v2: np.ndarray,
    v3: np.ndarray,
    p: np.ndarray
) -> Optional[Tuple[float, float, float]]:
    """Compute barycentric coordinates of a point w.r.t. a triangle.

    Uses the ratio of sub-triangle areas to the full triangle area, so that
    p = b0 * v1 + b1 * v2 + b2 * v3 and b0 + b1 + b2 = 1.

    Args:
        v1: First triangle vertex (2,)
        v2: Second triangle vertex (2,)
        v3: Third triangle vertex (2,)
        p: Query point (2,)

    Returns:
        Tuple (b0, b1, b2), or None if the triangle is degenerate
    """
    x1, y1 = float(v1[0]), float(v1[1])
    x2, y2 = float(v2[0]), float(v2[1])
    x3, y3 = float(v3[0]), float(v3[1])
    px, py = float(p[0]), float(p[1])

    # Doubled signed area of the full triangle
    denom = (y2 - y3) * (x1 - x3) + (x3 - x2) * (y1 - y3)
    if abs(denom) < DEGENERATE_AREA_EPS:
        logger.debug(
            f"Degenerate triangle ({x1}, {y1}), ({x2}, {y2}), ({x3}, {y3}): "
            f"area={denom / 2.0:.3e}"
        )
        return None

    b0 = ((y2 - y3) * (px - x3) + (x3 - x2) * (py - y3)) / denom
    b1 = ((y3 - y1) * (px - x3) + (x1 - x3) * (py - y3)) / denom
    b2 = 1.0 - b0 - b1

    if not (np.isfinite(b0) and np.isfinite(b1)):
        return None

    return b0, b1, b2


def triangle_bounding_box(
    v1: np.ndarray,
    v2: np.ndarray,
    v3: np.ndarray,
    width: int,
    height: int
) -> Optional[Tuple[int, int, int, int]]:
    """Pixel bounding box of a triangle, clipped to the image.

    Args:
        v1: First triangle vertex (x, y)
        v2: Second triangle vertex (x, y)
        v3: Third triangle vertex (x, y)
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        Inclusive (x0, x1, y0, y1) pixel bounds, or None if the triangle
        lies entirely outside the image
    """
    xs = (float(v1[0]), float(v2[0]), float(v3[0]))
    ys = (float(v1[1]), float(v2[1]), float(v3[1]))
    xmin, xmax = min(xs), max(xs)
    ymin, ymax = min(ys), max(ys)

    # x is the column (width), y is the row (height)
    if xmin > width - 1 or xmax < 0 or ymin > height - 1 or ymax < 0:
        return None

    x0 = max(0, int(np.floor(xmin)))
    x1 = min(width - 1, int(np.floor(xmax)))
    y0 = max(0, int(np.floor(ymin)))
    y1 = min(height - 1, int(np.floor(ymax)))

    return x0, x1, y0, y1


def is_valid_point(points: np.ndarray) -> np.ndarray:
    """Mask of measured points in a point cloud.

    A point is invalid when any coordinate is non-finite or when its depth
    carries OpenCV's missing-value marker.

    Args:
        points: (..., 3) array of 3D points

    Returns:
        Boolean mask with the leading shape of points
    """
    points = np.asarray(points, dtype=np.float64)
    finite = np.all(np.isfinite(points), axis=-1)
    missing = np.abs(points[..., 2]) == MISSING_Z
    valid = finite & ~missing
    if np.ndim(valid) == 0:
        return bool(valid)
    return valid
