"""Evaluation metrics for mesh optimization.

This module implements quality metrics for a reconstructed mesh (residuals
of the solved system, distances to the input point cloud and to ground
truth) together with timing utilities.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Mapping, Optional, Union

import numpy as np
from scipy import spatial

from mesh_optimization.constraints import LinearConstraintSystem
from mesh_optimization.geometry import is_valid_point
from mesh_optimization.mesh import Mesh3D
from mesh_optimization.solver import SolvedVertex

logger = logging.getLogger(__name__)


def weighted_residual_rmse(
    system: LinearConstraintSystem,
    solution: Mapping[int, SolvedVertex]
) -> float:
    """Root mean square of the whitened residuals of the solved system.

    Constraints touching an unsolved vertex are ignored.

    Args:
        system: Constraint system that was solved
        solution: Solved inverse depth per vertex id

    Returns:
        RMSE of the whitened residuals (inf if no constraint is evaluable)
    """
    squared = []
    for constraint in system:
        if not all(key in solution for key in constraint.keys):
            continue
        prediction = sum(
            c * solution[key].inv_depth for key, c in zip(constraint.keys, constraint.coefficients)
        )
        squared.append((constraint.weight * (prediction - constraint.rhs)) ** 2)

    if not squared:
        logger.warning("No evaluable constraints for residual calculation")
        return float("inf")

    return float(np.sqrt(np.mean(squared)))


def mesh_to_cloud_distance(mesh_3d: Mesh3D, point_cloud: np.ndarray) -> float:
    """Mean distance from mesh vertices to their nearest point-cloud sample.

    Args:
        mesh_3d: Reconstructed mesh (body frame)
        point_cloud: HxWx3 or Nx3 samples, in the same frame as the mesh

    Returns:
        Mean nearest-neighbour distance
    """
    points = np.asarray(point_cloud, dtype=np.float64).reshape(-1, 3)
    points = points[is_valid_point(points)]
    if points.shape[0] == 0 or mesh_3d.n_vertices == 0:
        logger.warning("Empty point set provided for mesh-to-cloud distance")
        return float("inf")

    tree = spatial.KDTree(points)
    distances, _ = tree.query(mesh_3d.vertices, k=1)
    return float(np.mean(distances))


def landmark_rmse(mesh_3d: Mesh3D, expected: Mapping[int, np.ndarray]) -> float:
    """RMSE between reconstructed vertices and ground-truth landmarks.

    Args:
        mesh_3d: Reconstructed mesh
        expected: Ground-truth position per landmark id

    Returns:
        Root mean square position error over landmarks present in both
    """
    errors = []
    for lmk_id, position in expected.items():
        vertex = mesh_3d.get_vertex(lmk_id)
        if vertex is None:
            continue
        errors.append(np.sum((vertex.position - np.asarray(position)) ** 2))

    if not errors:
        logger.warning("No common landmarks for RMSE calculation")
        return float("inf")

    return float(np.sqrt(np.mean(errors)))


class Timer:
    """Wall-clock timer usable as a context manager."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed time in seconds."""
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    @property
    def elapsed(self) -> float:
        """Elapsed time, frozen once the timer is stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class OptimizationMetrics:
    """Counters and timings of one mesh optimization call."""

    def __init__(self):
        self.metrics = {
            "n_input_polygons": 0,
            "n_output_polygons": 0,
            "n_datapoints": 0,
            "n_constraints": 0,
            "n_spring_constraints": 0,
            "n_solved_vertices": 0,
            "residual_rmse": None,
            "solver_converged": None,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def to_dict(self) -> Dict:
        metrics = self.metrics.copy()
        metrics["stage_timings"] = dict(self.metrics["stage_timings"])
        return metrics

    def summary(self) -> str:
        """Generate a human-readable summary of metrics."""
        lines = [
            "Mesh Optimization Metrics:",
            f"  Polygons: {self.metrics['n_output_polygons']}/{self.metrics['n_input_polygons']}",
            f"  Datapoints: {self.metrics['n_datapoints']}",
            f"  Constraints: {self.metrics['n_constraints']} "
            f"({self.metrics['n_spring_constraints']} springs)",
            f"  Solved vertices: {self.metrics['n_solved_vertices']}",
        ]

        if self.metrics["residual_rmse"] is not None:
            lines.append(f"  Whitened residual RMSE: {self.metrics['residual_rmse']:.4f}")

        if self.metrics["solver_converged"] is not None:
            lines.append(
                f"  Solver converged: {self.metrics['solver_converged']} "
                f"(status {self.metrics.get('solver_status')})"
            )

        if "mesh_to_cloud_distance" in self.metrics:
            lines.append(f"  Mesh-to-cloud distance: {self.metrics['mesh_to_cloud_distance']:.4f}")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.3f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.3f}s")

        return "\n".join(lines)
