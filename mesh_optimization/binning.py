"""Assignment of point-cloud samples to mesh triangles.

This module bins the valid samples of an organized point cloud into the
triangles of a 2D mesh, either by scanning all triangles for every pixel or
by rasterizing each triangle's bounding box. A pixel on a shared edge is
assigned to the lowest-index triangle containing it in both strategies.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np
from tqdm import tqdm

from mesh_optimization.camera import CheiralityError, StereoCamera, transform_from
from mesh_optimization.geometry import is_valid_point, point_in_triangle, triangle_bounding_box
from mesh_optimization.mesh import Mesh2D

logger = logging.getLogger(__name__)

# Tolerance (pixels) between a sample's source pixel and its reprojection.
REPROJECTION_TOLERANCE_PX = 1e-3


@dataclass
class TriangleDatapoints:
    """Samples falling inside each triangle, keyed by triangle index.

    Points are in the rectified left camera frame; pixels are (u, v).
    """

    points: Dict[int, np.ndarray] = field(default_factory=dict)
    pixels: Dict[int, np.ndarray] = field(default_factory=dict)
    n_valid: int = 0

    def points_for(self, tri_idx: int) -> np.ndarray:
        """Kx3 array of samples inside the triangle (empty if none)."""
        return self.points.get(tri_idx, np.zeros((0, 3)))

    def pixels_for(self, tri_idx: int) -> np.ndarray:
        """Kx2 array of source pixels inside the triangle (empty if none)."""
        return self.pixels.get(tri_idx, np.zeros((0, 2)))

    def correspondences(self) -> List[Tuple[int, int, int]]:
        """Sorted (triangle, u, v) assignments, for comparing strategies."""
        result = []
        for tri_idx, pixels in self.pixels.items():
            for u, v in pixels:
                result.append((tri_idx, int(u), int(v)))
        return sorted(result)


def _check_point_cloud(point_cloud: np.ndarray) -> None:
    if point_cloud.ndim != 3 or point_cloud.shape[2] != 3:
        raise ValueError(f"Expected HxWx3 point cloud, got shape {point_cloud.shape}")


def _depth_range_mask(point_cloud: np.ndarray, min_z: float, max_z: float) -> np.ndarray:
    """Valid samples whose depth lies within [min_z, max_z]."""
    valid = is_valid_point(point_cloud)
    z = point_cloud[..., 2]
    with np.errstate(invalid="ignore"):
        in_range = (z >= min_z) & (z <= max_z)
    return valid & in_range


def collect_triangle_datapoints(
    point_cloud: np.ndarray,
    mesh_2d: Mesh2D,
    camera: StereoCamera,
    min_z: float,
    max_z: float,
    show_progress: bool = False
) -> TriangleDatapoints:
    """Bin samples by projecting every valid pixel and scanning all triangles.

    Each sample is moved to the body frame and projected through the camera;
    its reprojection must land on its source pixel. The first (lowest index)
    triangle containing the pixel receives the sample.

    Samples that do not reproject onto their own pixel, such as depth-sensor
    clouds with lateral noise, are discarded. The result matches
    collect_triangle_datapoints_fast only for clouds consistent with their
    pixel rays.

    Args:
        point_cloud: HxWx3 organized point cloud in the left camera frame
        mesh_2d: 2D mesh over image landmarks
        camera: Stereo camera used for projection
        min_z: Minimum accepted depth
        max_z: Maximum accepted depth
        show_progress: Whether to show a progress bar

    Returns:
        Samples per triangle and the total number of assigned samples
    """
    _check_point_cloud(point_cloud)
    start_time = time.perf_counter()

    height, width = point_cloud.shape[:2]
    mask = _depth_range_mask(point_cloud, min_z, max_z)
    body_pose_cam = camera.body_pose_left_cam_rect

    points: Dict[int, List[np.ndarray]] = {}
    pixels: Dict[int, List[Tuple[int, int]]] = {}
    n_valid = 0
    n_reprojection_failures = 0

    rows = tqdm(range(height), desc="Binning pixels", disable=not show_progress)
    for v in rows:
        for u in range(width):
            if not mask[v, u]:
                continue
            lmk = point_cloud[v, u].astype(np.float64)

            # Projection expects landmarks in the body frame
            pt_body = transform_from(body_pose_cam, lmk)
            try:
                left_pixel, _ = camera.project(pt_body)
            except CheiralityError as e:
                logger.warning(f"Pixel ({u}, {v}): {e}")
                continue

            if (abs(left_pixel[0] - u) > REPROJECTION_TOLERANCE_PX
                    or abs(left_pixel[1] - v) > REPROJECTION_TOLERANCE_PX):
                n_reprojection_failures += 1
                logger.debug(
                    f"Pixel ({u}, {v}) reprojects to ({left_pixel[0]:.4f}, {left_pixel[1]:.4f})"
                )
                continue

            pixel = np.array([u, v], dtype=np.float64)
            for k in range(mesh_2d.n_polygons):
                v1, v2, v3 = mesh_2d.positions[mesh_2d.polygons[k]]
                if point_in_triangle(pixel, v1, v2, v3):
                    # A sample belongs to one triangle only
                    points.setdefault(k, []).append(lmk)
                    pixels.setdefault(k, []).append((u, v))
                    n_valid += 1
                    break

    if n_reprojection_failures > 0:
        logger.error(
            f"{n_reprojection_failures} samples did not reproject onto their pixel "
            f"and were discarded"
        )

    datapoints = TriangleDatapoints(
        points={k: np.array(pts) for k, pts in points.items()},
        pixels={k: np.array(pxs, dtype=np.float64) for k, pxs in pixels.items()},
        n_valid=n_valid
    )

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Exhaustive binning: {n_valid} datapoints in {len(points)}/{mesh_2d.n_polygons} "
        f"triangles (elapsed time: {elapsed_time:.3f}s)"
    )
    return datapoints


def collect_triangle_datapoints_fast(
    point_cloud: np.ndarray,
    mesh_2d: Mesh2D,
    min_z: float,
    max_z: float,
    show_progress: bool = False
) -> TriangleDatapoints:
    """Bin samples by rasterizing the bounding box of every triangle.

    Assumes an organized point cloud whose pixel grid is the image grid.
    Triangles entirely outside the image are skipped. A pixel already
    claimed by a lower-index triangle is not assigned again.

    Args:
        point_cloud: HxWx3 organized point cloud in the left camera frame
        mesh_2d: 2D mesh over image landmarks
        min_z: Minimum accepted depth
        max_z: Maximum accepted depth
        show_progress: Whether to show a progress bar

    Returns:
        Samples per triangle and the total number of assigned samples
    """
    _check_point_cloud(point_cloud)
    if mesh_2d.n_polygons == 0:
        raise ValueError("Mesh has no polygons")
    start_time = time.perf_counter()

    height, width = point_cloud.shape[:2]
    mask = _depth_range_mask(point_cloud, min_z, max_z)
    claimed = np.zeros((height, width), dtype=bool)

    datapoints = TriangleDatapoints()
    polygons = tqdm(range(mesh_2d.n_polygons), desc="Binning triangles", disable=not show_progress)
    for k in polygons:
        v1, v2, v3 = mesh_2d.positions[mesh_2d.polygons[k]]

        # 1. Bounding box of the triangle
        bbox = triangle_bounding_box(v1, v2, v3, width, height)
        if bbox is None:
            logger.error(
                f"Triangle {k} out of screen: vertices {v1.tolist()}, {v2.tolist()}, "
                f"{v3.tolist()} for image {width}x{height}"
            )
            continue
        x0, x1, y0, y1 = bbox

        # 2. Half-plane test over the pixels of the bounding box
        vs, us = np.mgrid[y0:y1 + 1, x0:x1 + 1]
        candidates = np.column_stack((us.ravel(), vs.ravel()))
        inside = point_in_triangle(candidates.astype(np.float64), v1, v2, v3)
        candidates = candidates[inside]

        keep = mask[candidates[:, 1], candidates[:, 0]] & ~claimed[candidates[:, 1], candidates[:, 0]]
        candidates = candidates[keep]
        if candidates.shape[0] == 0:
            continue

        claimed[candidates[:, 1], candidates[:, 0]] = True
        datapoints.points[k] = point_cloud[candidates[:, 1], candidates[:, 0]].astype(np.float64)
        datapoints.pixels[k] = candidates.astype(np.float64)
        datapoints.n_valid += candidates.shape[0]

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Fast binning: {datapoints.n_valid} datapoints in "
        f"{len(datapoints.points)}/{mesh_2d.n_polygons} triangles "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )
    return datapoints
