"""Pinhole and rectified stereo camera models.

This module provides the projection and back-projection primitives the mesh
optimizer consumes: projecting body-frame landmarks to pixels, lifting pixels
at a given depth, and converting a disparity map into a per-pixel point cloud
in the rectified left camera frame.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class CheiralityError(ValueError):
    """Raised when a landmark projects from behind the camera."""


def make_pose(R: Optional[np.ndarray] = None, t: Optional[np.ndarray] = None) -> np.ndarray:
    """Build a 4x4 rigid transform from a rotation and a translation.

    Args:
        R: 3x3 rotation matrix (identity if None)
        t: Translation vector (zero if None)

    Returns:
        4x4 homogeneous transform
    """
    T = np.eye(4)
    if R is not None:
        T[:3, :3] = np.asarray(R, dtype=np.float64)
    if t is not None:
        T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def transform_from(pose: np.ndarray, point: np.ndarray) -> np.ndarray:
    """Map a point from the pose's local frame into its parent frame."""
    return pose[:3, :3] @ np.asarray(point, dtype=np.float64).reshape(3) + pose[:3, 3]


def transform_to(pose: np.ndarray, point: np.ndarray) -> np.ndarray:
    """Map a point from the parent frame into the pose's local frame."""
    return pose[:3, :3].T @ (np.asarray(point, dtype=np.float64).reshape(3) - pose[:3, 3])


class Camera:
    """Monocular pinhole camera with a body-to-camera extrinsic pose."""

    def __init__(
        self,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        body_pose_cam: Optional[np.ndarray] = None,
        width: int = 0,
        height: int = 0
    ):
        """Initialize camera.

        Args:
            fx: Focal length along x in pixels
            fy: Focal length along y in pixels
            cx: Principal point x
            cy: Principal point y
            body_pose_cam: 4x4 camera-to-body transform (identity if None)
            width: Image width in pixels
            height: Image height in pixels
        """
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.body_pose_cam = make_pose() if body_pose_cam is None else np.asarray(body_pose_cam, dtype=np.float64)
        self.width = int(width)
        self.height = int(height)

    @property
    def K(self) -> np.ndarray:
        """3x3 intrinsic matrix."""
        return np.array([
            [self.fx, 0, self.cx],
            [0, self.fy, self.cy],
            [0, 0, 1]
        ])

    def project(self, landmark: np.ndarray) -> np.ndarray:
        """Project a body-frame landmark to a pixel.

        Args:
            landmark: 3D point in body coordinates

        Returns:
            Pixel coordinates (u, v)

        Raises:
            CheiralityError: If the landmark is not in front of the camera
        """
        p_cam = transform_to(self.body_pose_cam, landmark)
        if p_cam[2] <= 0:
            raise CheiralityError(f"Landmark {np.asarray(landmark).tolist()} is behind the camera")
        return np.array([
            self.fx * p_cam[0] / p_cam[2] + self.cx,
            self.fy * p_cam[1] / p_cam[2] + self.cy
        ])

    def back_project_depth(self, pixel: np.ndarray, depth: float) -> np.ndarray:
        """Lift a pixel to a body-frame landmark at the given camera depth.

        Args:
            pixel: Pixel coordinates (u, v)
            depth: Depth along the camera z axis

        Returns:
            3D landmark in body coordinates
        """
        x = (float(pixel[0]) - self.cx) / self.fx
        y = (float(pixel[1]) - self.cy) / self.fy
        p_cam = np.array([x * depth, y * depth, depth])
        return transform_from(self.body_pose_cam, p_cam)

    @property
    def center(self) -> np.ndarray:
        """Camera optical center in body coordinates."""
        return self.body_pose_cam[:3, 3].copy()


class StereoCamera(Camera):
    """Rectified stereo pair modelled by its left camera and a baseline.

    After rectification both cameras share intrinsics and orientation; the
    right camera sits `baseline` meters along the left camera's x axis.
    """

    def __init__(
        self,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        baseline: float,
        body_pose_cam: Optional[np.ndarray] = None,
        width: int = 0,
        height: int = 0
    ):
        super().__init__(fx, fy, cx, cy, body_pose_cam, width, height)
        if baseline <= 0:
            raise ValueError(f"Stereo baseline must be positive, got {baseline}")
        self.baseline = float(baseline)

    @classmethod
    def from_config(cls, config: Dict) -> "StereoCamera":
        """Create a stereo camera from the `camera` section of the config.

        Args:
            config: Dictionary with fx, fy, cx, cy, baseline and optional
                width, height and body_pose_cam (4x4 nested list)

        Returns:
            StereoCamera instance
        """
        body_pose_cam = config.get("body_pose_cam")
        if body_pose_cam is not None:
            body_pose_cam = np.array(body_pose_cam, dtype=np.float64).reshape(4, 4)
        return cls(
            fx=config["fx"],
            fy=config["fy"],
            cx=config["cx"],
            cy=config["cy"],
            baseline=config["baseline"],
            body_pose_cam=body_pose_cam,
            width=config.get("width", 0),
            height=config.get("height", 0)
        )

    @property
    def body_pose_left_cam_rect(self) -> np.ndarray:
        """4x4 transform from the rectified left camera frame to the body frame."""
        return self.body_pose_cam

    def project(self, landmark: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Project a body-frame landmark into both rectified images.

        Args:
            landmark: 3D point in body coordinates

        Returns:
            Tuple of (left_pixel, right_pixel)

        Raises:
            CheiralityError: If the landmark is not in front of the camera
        """
        left = super().project(landmark)
        p_cam = transform_to(self.body_pose_cam, landmark)
        right = np.array([
            self.fx * (p_cam[0] - self.baseline) / p_cam[2] + self.cx,
            left[1]
        ])
        return left, right

    def back_project_disparity_to_3d(self, disparity: np.ndarray) -> np.ndarray:
        """Convert a disparity map into a point cloud in the left camera frame.

        Equivalent to cv2.reprojectImageTo3D with the rectified Q matrix,
        except that pixels with non-positive or non-finite disparity are set
        to NaN instead of a large sentinel depth.

        Args:
            disparity: HxW disparity map in pixels

        Returns:
            HxWx3 point cloud, indexed [v, u]
        """
        disparity = np.asarray(disparity, dtype=np.float64)
        if disparity.ndim != 2:
            raise ValueError(f"Expected HxW disparity map, got shape {disparity.shape}")

        h, w = disparity.shape
        v, u = np.mgrid[0:h, 0:w]

        valid_mask = np.isfinite(disparity) & (disparity > 0)
        depth = np.full_like(disparity, np.nan)
        depth[valid_mask] = self.fx * self.baseline / disparity[valid_mask]

        x = (u - self.cx) / self.fx * depth
        y = (v - self.cy) / self.fy * depth
        point_cloud = np.dstack((x, y, depth))

        logger.debug(
            f"Back-projected disparity map {w}x{h}: "
            f"{np.count_nonzero(valid_mask)} valid pixels"
        )
        return point_cloud
