"""Tests for the mesh optimization script.

This module runs the script on a small synthetic scene and on a scene saved
to disk, checking the files it produces.
"""

import json
import logging
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pytest
import yaml

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from mesh_optimization.camera import StereoCamera
from scripts import run_mesh_optimization


class TestRunMeshOptimization(unittest.TestCase):
    """Test the mesh optimization script."""

    def setUp(self):
        """Write a configuration for a small synthetic scene."""
        self.test_output_dir = tempfile.mkdtemp()
        self.config = {
            "camera": {
                "fx": 400.0, "fy": 400.0, "cx": 79.5, "cy": 59.5,
                "baseline": 0.1, "width": 160, "height": 120,
            },
            "mesh_optimization": {
                "solver_type": "lsqr",
                "color_type": "depth_variance",
                "binning": "fast",
            },
            "synthetic": {
                "depth": 2.0,
                "slope": 0.2,
                "disparity_noise": 0.01,
                "n_landmarks": 12,
                "margin": 5,
                "seed": 0,
            },
            "io": {"mesh_format": "ply"},
        }
        self.config_path = os.path.join(self.test_output_dir, "config.yaml")
        with open(self.config_path, "w") as f:
            yaml.safe_dump(self.config, f)

    def tearDown(self):
        """Detach file logging and remove outputs."""
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, logging.FileHandler) and handler.baseFilename.startswith(self.test_output_dir):
                root.removeHandler(handler)
                handler.close()
        if os.path.exists(self.test_output_dir):
            shutil.rmtree(self.test_output_dir)

    def test_synthetic_scene(self):
        """Test the script on a generated slanted plane."""
        output_dir = os.path.join(self.test_output_dir, "synthetic")
        metrics = run_mesh_optimization.run_mesh_optimization(output_dir, config_path=self.config_path)

        for name in ("mesh.ply", "mesh_2d.png", "report.json", "params.json", "log.txt"):
            self.assertTrue(os.path.exists(os.path.join(output_dir, name)), f"{name} should be written")

        with open(os.path.join(output_dir, "report.json")) as f:
            report = json.load(f)
        self.assertGreater(report["n_output_polygons"], 0)
        self.assertLess(report["landmark_rmse"], 0.1)
        self.assertEqual(report["n_output_polygons"], metrics["n_output_polygons"])

        with open(os.path.join(output_dir, "params.json")) as f:
            self.assertEqual(json.load(f)["color_type"], "depth_variance")

    def test_overrides(self):
        """Test that overrides replace configuration values."""
        output_dir = os.path.join(self.test_output_dir, "overrides")
        metrics = run_mesh_optimization.run_mesh_optimization(
            output_dir,
            overrides={"solver_type": "normal_equations", "use_spring_energies": True, "binning": None},
            config_path=self.config_path
        )

        self.assertGreater(metrics["n_spring_constraints"], 0)
        with open(os.path.join(output_dir, "params.json")) as f:
            params = json.load(f)
        self.assertEqual(params["solver_type"], "normal_equations")
        self.assertEqual(params["binning"], "fast")

    def test_saved_scene(self):
        """Test the script on a point cloud and mesh loaded from disk."""
        camera = StereoCamera.from_config(self.config["camera"])
        cloud = camera.back_project_disparity_to_3d(np.full((120, 160), 20.0))
        cloud_path = os.path.join(self.test_output_dir, "cloud.npy")
        np.save(cloud_path, cloud)

        mesh_path = os.path.join(self.test_output_dir, "mesh.json")
        with open(mesh_path, "w") as f:
            json.dump({
                "lmk_ids": [7, 8, 9, 10],
                "positions": [[10, 10], [150, 10], [150, 110], [10, 110]],
                "polygons": [[7, 8, 10], [8, 9, 10]],
            }, f)

        output_dir = os.path.join(self.test_output_dir, "saved")
        metrics = run_mesh_optimization.run_mesh_optimization(
            output_dir, cloud_path, mesh_path, config_path=self.config_path
        )

        self.assertEqual(metrics["n_output_polygons"], 2)
        self.assertNotIn("landmark_rmse", metrics)
        self.assertLess(metrics["mesh_to_cloud_distance"], 0.05)

    def test_delaunay_mesh(self):
        """Test triangulation of landmark pixels."""
        pixels = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 10.0], [0.0, 10.0], [5.0, 5.0]])
        mesh_2d = run_mesh_optimization.delaunay_mesh(pixels, np.array([3, 4, 5, 6, 7]))

        self.assertEqual(mesh_2d.n_vertices, 5)
        self.assertEqual(mesh_2d.n_polygons, 4)
        self.assertEqual(mesh_2d.get_vtx_id_for_lmk_id(7), 4)

    def test_missing_mesh(self):
        """Test that a point cloud requires a mesh."""
        with self.assertRaises(ValueError):
            run_mesh_optimization.run_mesh_optimization(
                os.path.join(self.test_output_dir, "missing"), "cloud.npy", config_path=self.config_path
            )


if __name__ == "__main__":
    unittest.main()
