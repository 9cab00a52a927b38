"""Bearing vectors and inverse-depth measurements.

Bearing vectors are unit rays from the left camera center, expressed in the
body frame. Depths are distances along those rays.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from mesh_optimization.camera import Camera, transform_from

logger = logging.getLogger(__name__)

UNIT_NORM_TOLERANCE = 1e-4


def _normalize(ray: np.ndarray) -> Tuple[np.ndarray, float]:
    norm = float(np.linalg.norm(ray))
    if not norm > 0.0:
        raise ValueError(f"Cannot normalize ray {ray.tolist()} with norm {norm}")
    bearing = ray / norm
    if not abs(bearing @ bearing - 1.0) < UNIT_NORM_TOLERANCE:
        raise ValueError(f"Bearing {bearing.tolist()} is not a unit vector")
    return bearing, norm


def bearing_vector_from_pixel(camera: Camera, pixel: np.ndarray) -> np.ndarray:
    """Unit ray through a pixel, in body coordinates.

    Args:
        camera: Camera used to back-project the pixel
        pixel: Pixel coordinates (u, v)

    Returns:
        Unit bearing vector (3,)

    Raises:
        ValueError: If the back-projected ray has non-positive norm
    """
    lmk = camera.back_project_depth(pixel, 1.0)
    bearing, _ = _normalize(lmk - camera.center)
    return bearing


def bearing_vector_from_landmark(
    body_pose_cam: np.ndarray,
    point_cam: np.ndarray
) -> Tuple[np.ndarray, float]:
    """Bearing vector and inverse depth of a camera-frame sample.

    The sample is moved to the body frame and measured from the camera
    center, so the bearing is collinear with the ray of its source pixel.

    Args:
        body_pose_cam: 4x4 camera-to-body transform
        point_cam: 3D point in camera coordinates

    Returns:
        Tuple of (unit bearing vector, inverse depth)

    Raises:
        ValueError: If the sample coincides with the camera center
    """
    ray = transform_from(body_pose_cam, point_cam) - body_pose_cam[:3, 3]
    bearing, norm = _normalize(ray)
    return bearing, 1.0 / norm


def inverse_depth_measurements(points_cam: np.ndarray) -> np.ndarray:
    """Inverse distances of camera-frame samples to the camera center.

    Rigid transforms preserve distance, so this equals the inverse depth of
    each sample along its body-frame bearing.

    Args:
        points_cam: Kx3 array of camera-frame samples

    Returns:
        Array of K inverse depths

    Raises:
        ValueError: If any sample lies at the camera center
    """
    norms = np.linalg.norm(np.asarray(points_cam, dtype=np.float64).reshape(-1, 3), axis=1)
    if np.any(~(norms > 0.0)):
        raise ValueError("Datapoint at the camera center has no inverse depth")
    return 1.0 / norms
