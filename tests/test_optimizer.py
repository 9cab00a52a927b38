"""Tests for the mesh optimizer.

This module runs the complete optimization on synthetic stereo scenes and
checks the reconstructed meshes against the known geometry.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from mesh_optimization.camera import StereoCamera
from mesh_optimization.config import MeshOptimizationParams
from mesh_optimization.mesh import Mesh2D
from mesh_optimization.optimizer import MeshOptimizationInput, MeshOptimizer
from mesh_optimization.reconstruct import FLAT_PALETTE, MeshColorType
from mesh_optimization.visualise import MeshVisualizer


def fronto_parallel_cloud(camera: StereoCamera, depth: float) -> np.ndarray:
    """Point cloud of a plane at constant depth filling the image."""
    disparity = np.full((camera.height, camera.width), camera.fx * camera.baseline / depth)
    return camera.back_project_disparity_to_3d(disparity)


class TestMeshOptimizer(unittest.TestCase):
    """Test mesh optimization end to end."""

    def setUp(self):
        """Set up a long focal length camera and a fan mesh over the image."""
        self.camera = StereoCamera(
            fx=1000.0, fy=1000.0, cx=31.5, cy=23.5, baseline=0.1, width=64, height=48
        )
        self.depth = 2.0
        self.cloud = fronto_parallel_cloud(self.camera, self.depth)

        positions = np.array([
            [0.0, 0.0], [63.0, 0.0], [0.0, 47.0], [63.0, 47.0], [31.5, 23.5]
        ])
        self.mesh = Mesh2D.from_vertex_indices(
            positions, [[0, 1, 4], [1, 3, 4], [3, 2, 4], [2, 0, 4]], [100, 101, 102, 103, 104]
        )

    def test_plane_recovery(self):
        """Test that a fronto-parallel plane is recovered."""
        for solver_type in ("lsqr", "normal_equations"):
            optimizer = MeshOptimizer(self.camera, MeshOptimizationParams(solver_type=solver_type))
            mesh_3d = optimizer.solve_optimal_mesh(self.cloud, self.mesh)

            self.assertEqual(mesh_3d.n_polygons, 4)
            self.assertEqual(mesh_3d.n_vertices, 5)
            np.testing.assert_allclose(mesh_3d.vertices[:, 2], self.depth, rtol=1e-2)

            for vtx_id in range(self.mesh.n_vertices):
                lmk_id = self.mesh.get_lmk_id_for_vtx_id(vtx_id)
                expected = self.camera.back_project_depth(self.mesh.positions[vtx_id], self.depth)
                np.testing.assert_allclose(mesh_3d.get_vertex(lmk_id).position, expected, rtol=1e-2, atol=1e-3)

    def test_binning_strategies_agree(self):
        """Test that both binning strategies give the same mesh."""
        rng = np.random.default_rng(4)
        disparity = np.full((48, 64), 50.0) + rng.normal(0.0, 0.2, size=(48, 64))
        cloud = self.camera.back_project_disparity_to_3d(disparity)

        meshes = []
        for binning in ("fast", "exhaustive"):
            optimizer = MeshOptimizer(self.camera, MeshOptimizationParams(binning=binning))
            meshes.append(optimizer.solve_optimal_mesh(cloud, self.mesh))

        np.testing.assert_allclose(meshes[0].vertices, meshes[1].vertices, atol=1e-9)

    def test_spin_once(self):
        """Test the output of a single optimization step."""
        optimizer = MeshOptimizer(self.camera)
        output = optimizer.spin_once(MeshOptimizationInput(self.cloud, self.mesh))

        self.assertEqual(output.optimized_mesh_3d.n_polygons, 4)
        self.assertEqual(sorted(output.solution), [0, 1, 2, 3, 4])
        self.assertEqual(output.metrics["n_input_polygons"], 4)
        self.assertEqual(output.metrics["n_output_polygons"], 4)
        self.assertEqual(output.metrics["n_datapoints"], 64 * 48)
        self.assertEqual(output.metrics["n_constraints"], 64 * 48)
        self.assertEqual(output.metrics["n_spring_constraints"], 0)
        self.assertEqual(output.metrics["n_solved_vertices"], 5)
        self.assertIn("solve", output.metrics["stage_timings"])
        self.assertTrue(output.metrics["solver_converged"])
        self.assertIn(output.metrics["solver_status"], (0, 1, 2))
        # The center vertex touches every triangle
        self.assertEqual(output.vertex_supports[4], 64 * 48)
        for solved in output.solution.values():
            self.assertGreaterEqual(solved.inv_depth_variance, 0.0)

    def test_spring_energies(self):
        """Test that springs add one row per edge."""
        params = MeshOptimizationParams(use_spring_energies=True)
        output = MeshOptimizer(self.camera, params).spin_once(MeshOptimizationInput(self.cloud, self.mesh))

        self.assertEqual(output.metrics["n_spring_constraints"], 8)
        self.assertEqual(output.metrics["n_constraints"], 64 * 48 + 8)
        np.testing.assert_allclose(output.optimized_mesh_3d.vertices[:, 2], self.depth, rtol=1e-2)

    def test_mesh_count(self):
        """Test that flat colours change between consecutive meshes."""
        optimizer = MeshOptimizer(self.camera)
        first = optimizer.solve_optimal_mesh(self.cloud, self.mesh)
        second = optimizer.solve_optimal_mesh(self.cloud, self.mesh)

        self.assertEqual(optimizer.mesh_count, 2)
        np.testing.assert_allclose(first.colors[0], FLAT_PALETTE[0])
        np.testing.assert_allclose(second.colors[0], FLAT_PALETTE[1])

    def test_depth_variance_colors(self):
        """Test that variance colouring yields red shades only."""
        params = MeshOptimizationParams(color_type=MeshColorType.DEPTH_VARIANCE)
        mesh_3d = MeshOptimizer(self.camera, params).solve_optimal_mesh(self.cloud, self.mesh)

        colors = mesh_3d.colors
        self.assertTrue(np.all(colors[:, 1:] == 0.0))
        self.assertTrue(np.all((colors[:, 0] >= 0.0) & (colors[:, 0] <= 1.0)))

    def test_minimal_datapoints(self):
        """Test a scene with exactly four valid samples."""
        camera = StereoCamera(fx=100.0, fy=100.0, cx=5.0, cy=5.0, baseline=0.1, width=11, height=11)
        positions = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 10.0], [0.0, 10.0]])
        mesh = Mesh2D.from_vertex_indices(positions, [[0, 1, 3], [1, 2, 3]])

        full = fronto_parallel_cloud(camera, 2.0)
        cloud = np.full_like(full, np.nan)
        for u, v in [(2, 2), (5, 2), (2, 5), (8, 8)]:
            cloud[v, u] = full[v, u]

        output = MeshOptimizer(camera).spin_once(MeshOptimizationInput(cloud, mesh))

        # Only the first triangle has enough datapoints
        self.assertEqual(output.metrics["n_datapoints"], 4)
        self.assertEqual(output.metrics["n_constraints"], 3)
        self.assertEqual(output.optimized_mesh_3d.n_polygons, 1)
        self.assertEqual(sorted(output.optimized_mesh_3d.lmk_ids), [0, 1, 3])
        self.assertNotIn(2, output.solution)

    def test_too_few_datapoints(self):
        """Test that three or fewer samples are rejected."""
        cloud = np.full_like(self.cloud, np.nan)
        for u, v in [(10, 10), (20, 10), (10, 20)]:
            cloud[v, u] = self.cloud[v, u]

        with self.assertRaises(ValueError):
            MeshOptimizer(self.camera).solve_optimal_mesh(cloud, self.mesh)

        # Samples outside the depth range do not count
        params = MeshOptimizationParams(min_z=3.0, max_z=5.0)
        with self.assertRaises(ValueError):
            MeshOptimizer(self.camera, params).solve_optimal_mesh(self.cloud, self.mesh)

    def test_preconditions(self):
        """Test rejection of empty meshes and malformed point clouds."""
        optimizer = MeshOptimizer(self.camera)
        with self.assertRaises(ValueError):
            optimizer.solve_optimal_mesh(self.cloud, Mesh2D([], np.zeros((0, 2)), []))
        with self.assertRaises(ValueError):
            optimizer.solve_optimal_mesh(self.cloud.reshape(-1, 3), self.mesh)
        with self.assertRaises(ValueError):
            optimizer.solve_optimal_mesh(self.cloud[..., :2], self.mesh)
        with self.assertRaises(ValueError):
            MeshOptimizer(None)

        # Failed calls do not advance the mesh counter
        self.assertEqual(optimizer.mesh_count, 0)

    def test_visualizer(self):
        """Test the geometries sent to the visualizer."""
        visualizer = MeshVisualizer()
        optimizer = MeshOptimizer(self.camera, visualizer=visualizer)
        optimizer.solve_optimal_mesh(self.cloud, self.mesh)

        self.assertIn("Noisy Point Cloud", visualizer.widgets)
        self.assertIn("Reconstructed Mesh 0", visualizer.widgets)
        for lmk_id in range(100, 105):
            self.assertIn(f"Bearing {lmk_id}", visualizer.widgets)
            self.assertIn(f"Variance for Lmk: {lmk_id}", visualizer.widgets)
        self.assertEqual(len(visualizer.widgets["Noisy Point Cloud"].points), 64 * 48)


if __name__ == "__main__":
    unittest.main()
