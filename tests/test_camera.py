"""Tests for camera module.

This module tests projection, back-projection and disparity conversion of
the pinhole and rectified stereo camera models.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from mesh_optimization.camera import (
    Camera,
    CheiralityError,
    StereoCamera,
    make_pose,
    transform_from,
    transform_to,
)


class TestCamera(unittest.TestCase):
    """Test camera models."""

    def setUp(self):
        """Set up a stereo camera with a non-trivial body pose."""
        angle = np.deg2rad(10.0)
        R = np.array([
            [np.cos(angle), 0, np.sin(angle)],
            [0, 1, 0],
            [-np.sin(angle), 0, np.cos(angle)]
        ])
        self.body_pose_cam = make_pose(R, [0.1, -0.05, 0.2])

        self.camera = StereoCamera(
            fx=500.0, fy=500.0, cx=320.0, cy=240.0, baseline=0.1, width=640, height=480
        )
        self.posed_camera = StereoCamera(
            fx=500.0, fy=480.0, cx=320.0, cy=240.0, baseline=0.1,
            body_pose_cam=self.body_pose_cam, width=640, height=480
        )

    def test_transforms(self):
        """Test that transform_to inverts transform_from."""
        point = np.array([0.3, -0.2, 1.5])
        moved = transform_from(self.body_pose_cam, point)
        np.testing.assert_allclose(transform_to(self.body_pose_cam, moved), point, atol=1e-12)

    def test_project(self):
        """Test projection of known landmarks into both images."""
        left, right = self.camera.project(np.array([0.1, 0.2, 2.0]))
        np.testing.assert_allclose(left, [345.0, 290.0])
        np.testing.assert_allclose(right, [320.0, 290.0])

        # Disparity is fx * baseline / z
        left, right = self.camera.project(np.array([0.0, 0.0, 5.0]))
        self.assertAlmostEqual(left[0] - right[0], 500.0 * 0.1 / 5.0, delta=1e-12)
        self.assertAlmostEqual(left[1], right[1])

    def test_mono_project(self):
        """Test the monocular camera returns a single pixel."""
        camera = Camera(fx=400.0, fy=400.0, cx=100.0, cy=50.0)
        np.testing.assert_allclose(camera.project(np.array([1.0, -1.0, 4.0])), [200.0, -50.0])
        np.testing.assert_allclose(camera.K, [[400, 0, 100], [0, 400, 50], [0, 0, 1]])

    def test_cheirality(self):
        """Test projection of landmarks behind or on the camera plane."""
        with self.assertRaises(CheiralityError):
            self.camera.project(np.array([0.0, 0.0, -1.0]))
        with self.assertRaises(ValueError):
            self.camera.project(np.array([1.0, 0.0, 0.0]))

        # Behind the camera once the body pose is applied
        behind = transform_from(self.body_pose_cam, np.array([0.0, 0.0, -2.0]))
        with self.assertRaises(CheiralityError):
            self.posed_camera.project(behind)

    def test_back_project_depth(self):
        """Test that back-projection inverts projection."""
        for camera in (self.camera, self.posed_camera):
            pixel = np.array([100.0, 400.0])
            landmark = camera.back_project_depth(pixel, 3.0)
            left, _ = camera.project(landmark)
            np.testing.assert_allclose(left, pixel, atol=1e-9)

            # Depth is measured along the camera z axis
            self.assertAlmostEqual(transform_to(camera.body_pose_cam, landmark)[2], 3.0, delta=1e-12)

    def test_center(self):
        """Test camera center in body frame."""
        np.testing.assert_allclose(self.camera.center, np.zeros(3))
        np.testing.assert_allclose(self.posed_camera.center, [0.1, -0.05, 0.2])
        np.testing.assert_allclose(self.posed_camera.body_pose_left_cam_rect, self.body_pose_cam)

    def test_invalid_baseline(self):
        """Test that the baseline must be positive."""
        with self.assertRaises(ValueError):
            StereoCamera(fx=500.0, fy=500.0, cx=320.0, cy=240.0, baseline=0.0)
        with self.assertRaises(ValueError):
            StereoCamera(fx=500.0, fy=500.0, cx=320.0, cy=240.0, baseline=-0.1)

    def test_from_config(self):
        """Test creation from the camera config section."""
        config = {
            "fx": 458.654, "fy": 457.296, "cx": 367.215, "cy": 248.375,
            "baseline": 0.11, "width": 752, "height": 480,
            "body_pose_cam": self.body_pose_cam.tolist(),
        }
        camera = StereoCamera.from_config(config)

        self.assertEqual(camera.width, 752)
        self.assertEqual(camera.height, 480)
        self.assertAlmostEqual(camera.baseline, 0.11)
        np.testing.assert_allclose(camera.body_pose_cam, self.body_pose_cam)

        del config["body_pose_cam"]
        np.testing.assert_allclose(StereoCamera.from_config(config).body_pose_cam, np.eye(4))

    def test_disparity_round_trip(self):
        """Test that every back-projected disparity reprojects onto its pixel."""
        rng = np.random.default_rng(1)
        disparity = rng.uniform(5.0, 50.0, size=(48, 64))
        disparity[rng.random((48, 64)) < 0.1] = 0.0

        for camera in (self.camera, self.posed_camera):
            cloud = camera.back_project_disparity_to_3d(disparity)
            self.assertEqual(cloud.shape, (48, 64, 3))

            valid = np.argwhere(disparity > 0)
            self.assertGreater(len(valid), 0)
            for v, u in valid:
                # The cloud is in the camera frame, projection expects body coordinates
                left, right = camera.project(transform_from(camera.body_pose_cam, cloud[v, u]))
                np.testing.assert_allclose(left, [u, v], atol=1e-6)
                self.assertAlmostEqual(left[0] - right[0], disparity[v, u], delta=1e-6)

    def test_disparity_depth_monotonic(self):
        """Test depths recovered from disparities for depths 1 to 20 m."""
        depths = np.linspace(1.0, 20.0, 40)
        disparity = np.tile(self.camera.fx * self.camera.baseline / depths, (4, 1))
        cloud = self.camera.back_project_disparity_to_3d(disparity)

        np.testing.assert_allclose(cloud[0, :, 2], depths, rtol=1e-5)
        self.assertTrue(np.all(np.diff(cloud[0, :, 2]) > 0))

    def test_principal_axis_depth(self):
        """Test back-projection along the principal axis of a posed camera."""
        camera = self.posed_camera
        principal_point = np.array([camera.cx, camera.cy])

        ranges = []
        for depth in np.linspace(1.0, 20.0, 20):
            landmark = camera.back_project_depth(principal_point, depth)
            np.testing.assert_allclose(
                transform_to(camera.body_pose_cam, landmark), [0.0, 0.0, depth], atol=1e-5
            )
            np.testing.assert_allclose(camera.project(landmark)[0], principal_point, atol=1e-5)
            ranges.append(np.linalg.norm(landmark - camera.center))

        np.testing.assert_allclose(ranges, np.linspace(1.0, 20.0, 20), atol=1e-5)
        self.assertTrue(np.all(np.diff(ranges) > 0))

    def test_invalid_disparity(self):
        """Test that non-positive and non-finite disparities yield NaN."""
        disparity = np.array([[10.0, 0.0, -1.0, np.nan]])
        cloud = self.camera.back_project_disparity_to_3d(disparity)

        self.assertTrue(np.all(np.isfinite(cloud[0, 0])))
        self.assertTrue(np.all(np.isnan(cloud[0, 1:])))

        with self.assertRaises(ValueError):
            self.camera.back_project_disparity_to_3d(np.ones((2, 2, 2)))


if __name__ == "__main__":
    unittest.main()
