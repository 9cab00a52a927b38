"""Mesh optimization from depth data.

This module ties the pipeline together: bin the point cloud into the
triangles of the 2D mesh, build the sparse inverse-depth system, solve it,
and reconstruct a colored 3D mesh with per-vertex depth variance.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from mesh_optimization.bearing import bearing_vector_from_pixel
from mesh_optimization.binning import (
    TriangleDatapoints,
    collect_triangle_datapoints,
    collect_triangle_datapoints_fast,
)
from mesh_optimization.camera import StereoCamera
from mesh_optimization.config import MeshOptimizationParams
from mesh_optimization.constraints import (
    LinearConstraintSystem,
    add_spring_constraints,
    build_datapoint_constraints,
)
from mesh_optimization.evaluate import OptimizationMetrics, Timer, weighted_residual_rmse
from mesh_optimization.mesh import Mesh2D, Mesh3D
from mesh_optimization.reconstruct import reconstruct_mesh
from mesh_optimization.solver import SolvedVertex, solve_linear_system
from mesh_optimization.visualise import MeshVisualizer

logger = logging.getLogger(__name__)

# At least this many datapoints are needed for the system to be solvable.
MIN_TOTAL_DATAPOINTS = 4


@dataclass
class MeshOptimizationInput:
    """One noisy point cloud and the 2D mesh to fit to it."""

    noisy_point_cloud: np.ndarray
    mesh_2d: Mesh2D
    image: Optional[np.ndarray] = None


@dataclass
class MeshOptimizationOutput:
    """Result of one mesh optimization call."""

    optimized_mesh_3d: Mesh3D
    solution: Dict[int, SolvedVertex] = field(default_factory=dict)
    vertex_supports: Counter = field(default_factory=Counter)
    metrics: Dict = field(default_factory=dict)


class MeshOptimizer:
    """Fits the inverse depths of a 2D mesh's vertices to a point cloud."""

    def __init__(
        self,
        stereo_camera: StereoCamera,
        params: Optional[MeshOptimizationParams] = None,
        visualizer: Optional[MeshVisualizer] = None
    ):
        """Initialize optimizer.

        Args:
            stereo_camera: Camera model of the rectified stereo pair
            params: Solver, coloring and binning parameters
            visualizer: Optional display sink
        """
        if stereo_camera is None:
            raise ValueError("A stereo camera is required")
        self.stereo_camera = stereo_camera
        self.params = params or MeshOptimizationParams()
        self.visualizer = visualizer
        self.mesh_count = 0

    def spin_once(self, optimization_input: MeshOptimizationInput) -> MeshOptimizationOutput:
        """Run one optimization and return the mesh with its diagnostics."""
        return self._optimize(
            optimization_input.noisy_point_cloud,
            optimization_input.mesh_2d,
            optimization_input.image
        )

    def solve_optimal_mesh(
        self,
        noisy_point_cloud: np.ndarray,
        mesh_2d: Mesh2D,
        image: Optional[np.ndarray] = None
    ) -> Mesh3D:
        """Reconstruct the 3D mesh best supported by the point cloud.

        Args:
            noisy_point_cloud: HxWx3 point cloud in the rectified left camera frame
            mesh_2d: 2D mesh over image landmarks
            image: Optional image for RGB vertex coloring

        Returns:
            Reconstructed mesh in body frame

        Raises:
            ValueError: If the mesh is empty, the point cloud is not HxWx3 or
                too few datapoints fall inside the mesh
        """
        return self._optimize(noisy_point_cloud, mesh_2d, image).optimized_mesh_3d

    def collect_datapoints(self, noisy_point_cloud: np.ndarray, mesh_2d: Mesh2D) -> TriangleDatapoints:
        """Bin the point cloud with the configured strategy."""
        if self.params.binning == "exhaustive":
            return collect_triangle_datapoints(
                noisy_point_cloud,
                mesh_2d,
                self.stereo_camera,
                self.params.min_z,
                self.params.max_z,
                show_progress=self.params.show_progress
            )
        return collect_triangle_datapoints_fast(
            noisy_point_cloud,
            mesh_2d,
            self.params.min_z,
            self.params.max_z,
            show_progress=self.params.show_progress
        )

    def _optimize(
        self,
        noisy_point_cloud: np.ndarray,
        mesh_2d: Mesh2D,
        image: Optional[np.ndarray]
    ) -> MeshOptimizationOutput:
        noisy_point_cloud = np.asarray(noisy_point_cloud)
        if mesh_2d.n_polygons == 0:
            raise ValueError("Mesh has no polygons")
        if mesh_2d.n_vertices == 0:
            raise ValueError("Mesh has no vertices")
        if noisy_point_cloud.ndim != 3 or noisy_point_cloud.shape[2] != 3:
            raise ValueError(f"Expected HxWx3 point cloud, got shape {noisy_point_cloud.shape}")

        timer = Timer("Mesh Optimization", logger)
        timer.start()
        metrics = OptimizationMetrics()
        metrics.update("n_input_polygons", mesh_2d.n_polygons)

        body_pose_cam = self.stereo_camera.body_pose_left_cam_rect
        if self.visualizer is not None:
            self.visualizer.add_point_cloud("Noisy Point Cloud", noisy_point_cloud, body_pose_cam, image)

        # Step 1: collect datapoints falling within each triangle
        logger.info("Collecting triangle data points")
        with Timer("Binning", logger) as stage:
            datapoints = self.collect_datapoints(noisy_point_cloud, mesh_2d)
        metrics.update_stage_timing("binning", stage.elapsed)
        metrics.update("n_datapoints", datapoints.n_valid)

        if datapoints.n_valid < MIN_TOTAL_DATAPOINTS:
            raise ValueError(
                f"Only {datapoints.n_valid} valid datapoints inside the mesh, "
                f"need at least {MIN_TOTAL_DATAPOINTS}"
            )
        if len(datapoints.points) != mesh_2d.n_polygons:
            logger.error(
                f"Only {len(datapoints.points)}/{mesh_2d.n_polygons} triangles have datapoints"
            )

        # Step 2: build the sparse inverse-depth system
        logger.info("Building optimization problem")
        with Timer("Build", logger) as stage:
            bearing_vectors = {
                vtx_id: bearing_vector_from_pixel(self.stereo_camera, mesh_2d.positions[vtx_id])
                for vtx_id in range(mesh_2d.n_vertices)
            }
            system = LinearConstraintSystem(mesh_2d.n_vertices)
            vertex_supports = build_datapoint_constraints(
                system, mesh_2d, datapoints, self.params.depth_meas_noise_sigma
            )
            n_datapoint_constraints = len(system)
            n_springs = 0
            if self.params.use_spring_energies:
                n_springs = add_spring_constraints(system, mesh_2d, self.params.spring_noise_sigma)
        metrics.update_stage_timing("build", stage.elapsed)
        metrics.update("n_constraints", len(system))
        metrics.update("n_spring_constraints", n_springs)

        if n_datapoint_constraints == 0:
            raise ValueError("No triangle has enough datapoints to constrain its vertices")

        # Step 3: solve for the inverse depths and their variances
        logger.info("Solving optimization problem")
        with Timer("Solve", logger) as stage:
            diagnostics = {}
            solution = solve_linear_system(system, self.params.solver_type, diagnostics)
        metrics.update_stage_timing("solve", stage.elapsed)
        for key, value in diagnostics.items():
            metrics.update(key, value)
        metrics.update("n_solved_vertices", len(solution))
        metrics.update("residual_rmse", weighted_residual_rmse(system, solution))

        # Step 4: lift the mesh to 3D
        with Timer("Reconstruct", logger) as stage:
            mesh_3d = reconstruct_mesh(
                mesh_2d,
                solution,
                bearing_vectors,
                self.stereo_camera.center,
                color_type=self.params.color_type,
                vertex_supports=vertex_supports,
                mesh_count=self.mesh_count,
                image=image
            )
        metrics.update_stage_timing("reconstruct", stage.elapsed)
        metrics.update("n_output_polygons", mesh_3d.n_polygons)

        if self.visualizer is not None:
            self._draw_solution(mesh_2d, solution, bearing_vectors)
            logger.info("Drawing optimized reconstructed mesh")
            self.visualizer.add_mesh(f"Reconstructed Mesh {self.mesh_count}", mesh_3d, False, 0.9)

        metrics.update("runtime_s", timer.stop())
        logger.info("\n" + metrics.summary())

        self.mesh_count += 1
        return MeshOptimizationOutput(
            optimized_mesh_3d=mesh_3d,
            solution=solution,
            vertex_supports=vertex_supports,
            metrics=metrics.to_dict()
        )

    def _draw_solution(
        self,
        mesh_2d: Mesh2D,
        solution: Dict[int, SolvedVertex],
        bearing_vectors: Dict[int, np.ndarray]
    ) -> None:
        """Send bearing rays and depth confidence intervals to the visualizer."""
        origin = self.stereo_camera.center
        for vtx_id, bearing in bearing_vectors.items():
            lmk_id = mesh_2d.get_lmk_id_for_vtx_id(vtx_id)
            self.visualizer.add_arrow(f"Bearing {lmk_id}", origin, origin + bearing)

            solved = solution.get(vtx_id)
            if solved is None or solved.inv_depth <= 0.0:
                continue
            std = solved.depth_std
            if not np.isfinite(std):
                continue
            # Only the extent along the ray is meaningful
            self.visualizer.add_cylinder(
                f"Variance for Lmk: {lmk_id}",
                origin + (solved.depth + std) * bearing,
                origin + (solved.depth - std) * bearing,
                radius=0.01
            )
