"""Sparse linear constraints over per-vertex inverse depths.

Each datapoint inside a triangle yields one row

    b0 * y0 + b1 * y1 + b2 * y2 = 1 / depth

where (b0, b1, b2) are the barycentric coordinates of its pixel and y_i the
unknown inverse depths of the triangle's vertices. Optional spring rows
y_i - y_j = 0 tie adjacent vertices together.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse

from mesh_optimization.binning import TriangleDatapoints
from mesh_optimization.bearing import inverse_depth_measurements
from mesh_optimization.geometry import barycentric_coordinates
from mesh_optimization.mesh import Mesh2D

logger = logging.getLogger(__name__)

# Fewer datapoints than unknowns leaves a triangle under-constrained.
MIN_DATAPOINTS_PER_TRIANGLE = 3


@dataclass(frozen=True)
class LinearConstraint:
    """One weighted linear equation: sum(coefficients * y[keys]) = rhs."""

    keys: Tuple[int, ...]
    coefficients: Tuple[float, ...]
    rhs: float
    sigma: float

    @property
    def weight(self) -> float:
        return 1.0 / self.sigma


class LinearConstraintSystem:
    """Append-only collection of weighted linear constraints."""

    def __init__(self, n_vertices: int):
        """Initialize an empty system.

        Args:
            n_vertices: Number of unknowns; keys must lie in [0, n_vertices)
        """
        self.n_vertices = int(n_vertices)
        self._constraints: List[LinearConstraint] = []

    def add(
        self,
        keys: Sequence[int],
        coefficients: Sequence[float],
        rhs: float,
        sigma: float
    ) -> LinearConstraint:
        """Append a constraint.

        Args:
            keys: Vertex ids of the non-zero coefficients (1 to 3)
            coefficients: Coefficient for each key
            rhs: Right-hand side
            sigma: Standard deviation of the equation's noise

        Returns:
            The added constraint
        """
        if not 1 <= len(keys) <= 3 or len(keys) != len(coefficients):
            raise ValueError(
                f"Constraint needs 1-3 keys with matching coefficients, "
                f"got keys={list(keys)} coefficients={list(coefficients)}"
            )
        for key in keys:
            if not 0 <= key < self.n_vertices:
                raise ValueError(f"Vertex id {key} out of range [0, {self.n_vertices})")
        if not sigma > 0:
            raise ValueError(f"Noise sigma must be positive, got {sigma}")

        constraint = LinearConstraint(
            tuple(int(k) for k in keys),
            tuple(float(c) for c in coefficients),
            float(rhs),
            float(sigma)
        )
        self._constraints.append(constraint)
        return constraint

    def __len__(self) -> int:
        return len(self._constraints)

    def __iter__(self):
        return iter(self._constraints)

    def to_sparse(self) -> Tuple[sparse.csr_matrix, np.ndarray]:
        """Assemble the whitened system.

        Every row is scaled by its weight, so that least squares on the
        result minimizes the weighted residual.

        Returns:
            Tuple of (A, b) with A of shape (n_constraints, n_vertices)
        """
        rows, cols, data = [], [], []
        b = np.zeros(len(self._constraints))
        for i, constraint in enumerate(self._constraints):
            w = constraint.weight
            for key, coefficient in zip(constraint.keys, constraint.coefficients):
                rows.append(i)
                cols.append(key)
                data.append(w * coefficient)
            b[i] = w * constraint.rhs

        A = sparse.coo_matrix(
            (data, (rows, cols)), shape=(len(self._constraints), self.n_vertices)
        ).tocsr()
        return A, b


def build_datapoint_constraints(
    system: LinearConstraintSystem,
    mesh_2d: Mesh2D,
    datapoints: TriangleDatapoints,
    sigma: float,
    vertex_supports: Optional[Counter] = None
) -> Counter:
    """Add one barycentric constraint per datapoint of every triangle.

    Triangles with fewer than three datapoints are skipped. Datapoints whose
    barycentric coordinates cannot be computed are discarded.

    Args:
        system: Constraint system to append to
        mesh_2d: 2D mesh whose vertex ids are the unknowns
        datapoints: Samples binned per triangle
        sigma: Inverse-depth measurement noise
        vertex_supports: Counter to update (a new one if None)

    Returns:
        Number of datapoints supporting each vertex id
    """
    if vertex_supports is None:
        vertex_supports = Counter()

    n_added = 0
    n_skipped_triangles = 0
    for tri_idx in range(mesh_2d.n_polygons):
        vtx_ids = mesh_2d.polygons[tri_idx]
        v1, v2, v3 = mesh_2d.positions[vtx_ids]
        points = datapoints.points_for(tri_idx)
        pixels = datapoints.pixels_for(tri_idx)
        if points.shape[0] != pixels.shape[0]:
            raise ValueError(
                f"Triangle {tri_idx} has {points.shape[0]} points but {pixels.shape[0]} pixels"
            )

        # Not enough info to solve for the three vertices of this triangle
        if points.shape[0] < MIN_DATAPOINTS_PER_TRIANGLE:
            logger.warning(
                f"Under-constrained triangle {tri_idx}: {points.shape[0]} datapoints, "
                f"need at least {MIN_DATAPOINTS_PER_TRIANGLE}"
            )
            n_skipped_triangles += 1
            continue

        logger.debug(f"Adding {points.shape[0]} datapoints to triangle {tri_idx}")
        inv_depths = inverse_depth_measurements(points)
        for pixel, inv_depth_meas in zip(pixels, inv_depths):
            bary = barycentric_coordinates(v1, v2, v3, pixel)
            if bary is None:
                logger.warning(
                    f"Discarding datapoint at pixel {pixel.tolist()} of degenerate "
                    f"triangle {tri_idx}: {v1.tolist()}, {v2.tolist()}, {v3.tolist()}"
                )
                continue

            system.add(vtx_ids, bary, inv_depth_meas, sigma)
            for vtx_id in vtx_ids:
                vertex_supports[int(vtx_id)] += 1
            n_added += 1

    logger.info(
        f"Added {n_added} datapoint constraints "
        f"({n_skipped_triangles} under-constrained triangles skipped)"
    )
    return vertex_supports


def add_spring_constraints(
    system: LinearConstraintSystem,
    mesh_2d: Mesh2D,
    sigma: float,
    spring_constant: float = 1.0
) -> int:
    """Add one spring constraint y_i - y_j = 0 per undirected mesh edge.

    Args:
        system: Constraint system to append to
        mesh_2d: 2D mesh providing the adjacency
        sigma: Spring noise
        spring_constant: Coefficient magnitude of the spring

    Returns:
        Number of springs added
    """
    edges = mesh_2d.edges()
    for i, j in edges:
        system.add((i, j), (spring_constant, -spring_constant), 0.0, sigma)

    logger.info(f"Added {len(edges)} spring constraints")
    return len(edges)
