"""2D landmark meshes and reconstructed 3D meshes.

This module holds the input mesh (triangles over tracked image landmarks)
and the output mesh (triangles over reconstructed 3D landmarks with colour
and depth uncertainty), plus export of the latter through Open3D.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import open3d as o3d

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Vertex2D:
    """A mesh vertex: landmark id and pixel position (x=u, y=v)."""

    lmk_id: int
    position: Tuple[float, float]


class Mesh2D:
    """Immutable triangle mesh over image landmarks.

    Vertices are addressed by a dense vertex id (0..n-1) which is the index
    of the corresponding unknown in the optimization. Landmark ids are the
    stable identifiers given by the tracker.
    """

    def __init__(
        self,
        lmk_ids: Sequence[int],
        positions: np.ndarray,
        polygons: Sequence[Sequence[int]]
    ):
        """Initialize mesh.

        Args:
            lmk_ids: Unique landmark id for every vertex
            positions: Nx2 array of vertex pixel positions (u, v)
            polygons: Triangles given as triples of landmark ids

        Raises:
            ValueError: On duplicated landmark ids, unknown landmark ids in a
                polygon, non-triangular polygons or vertices that belong to
                no polygon
        """
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        lmk_ids = [int(lmk_id) for lmk_id in lmk_ids]
        if len(lmk_ids) != positions.shape[0]:
            raise ValueError(
                f"Got {len(lmk_ids)} landmark ids for {positions.shape[0]} vertex positions"
            )
        if len(set(lmk_ids)) != len(lmk_ids):
            raise ValueError("Landmark ids must be unique")

        self._lmk_ids = tuple(lmk_ids)
        self._lmk_to_vtx = {lmk_id: vtx_id for vtx_id, lmk_id in enumerate(lmk_ids)}
        self._positions = positions.copy()
        self._positions.setflags(write=False)

        triangles = []
        for polygon in polygons:
            if len(polygon) != 3:
                raise ValueError(f"Only triangles are supported, got polygon of size {len(polygon)}")
            try:
                triangles.append([self._lmk_to_vtx[int(lmk_id)] for lmk_id in polygon])
            except KeyError as e:
                raise ValueError(f"Polygon {list(polygon)} references unknown landmark {e}") from None
        self._polygons = np.array(triangles, dtype=np.int64).reshape(-1, 3)
        self._polygons.setflags(write=False)

        used = np.zeros(len(lmk_ids), dtype=bool)
        used[self._polygons.ravel()] = True
        if not np.all(used):
            orphans = [self._lmk_ids[i] for i in np.flatnonzero(~used)]
            raise ValueError(f"Vertices with landmark ids {orphans} belong to no polygon")

    @classmethod
    def from_vertex_indices(
        cls,
        positions: np.ndarray,
        triangles: np.ndarray,
        lmk_ids: Optional[Sequence[int]] = None
    ) -> "Mesh2D":
        """Build a mesh from positions and triangles given as vertex indices.

        Args:
            positions: Nx2 array of pixel positions
            triangles: Mx3 array of indices into positions
            lmk_ids: Landmark ids (defaults to 0..N-1)

        Returns:
            Mesh2D instance
        """
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        if lmk_ids is None:
            lmk_ids = list(range(positions.shape[0]))
        lmk_ids = list(lmk_ids)
        polygons = [[lmk_ids[i] for i in tri] for tri in np.asarray(triangles, dtype=np.int64)]
        return cls(lmk_ids, positions, polygons)

    @property
    def n_polygons(self) -> int:
        return self._polygons.shape[0]

    @property
    def n_vertices(self) -> int:
        return len(self._lmk_ids)

    @property
    def polygons(self) -> np.ndarray:
        """Mx3 read-only array of vertex ids."""
        return self._polygons

    @property
    def positions(self) -> np.ndarray:
        """Nx2 read-only array of vertex pixel positions."""
        return self._positions

    def get_polygon(self, k: int) -> Tuple[Vertex2D, Vertex2D, Vertex2D]:
        """Get the three vertices of polygon k."""
        if not 0 <= k < self.n_polygons:
            raise IndexError(f"Polygon index {k} out of range [0, {self.n_polygons})")
        return tuple(
            Vertex2D(self._lmk_ids[vtx_id], tuple(self._positions[vtx_id]))
            for vtx_id in self._polygons[k]
        )

    def iter_polygons(self) -> Iterator[Tuple[Vertex2D, Vertex2D, Vertex2D]]:
        for k in range(self.n_polygons):
            yield self.get_polygon(k)

    def get_vtx_id_for_lmk_id(self, lmk_id: int) -> Optional[int]:
        return self._lmk_to_vtx.get(int(lmk_id))

    def get_lmk_id_for_vtx_id(self, vtx_id: int) -> int:
        return self._lmk_ids[vtx_id]

    def adjacency_matrix(self) -> np.ndarray:
        """Symmetric vertex adjacency matrix.

        Returns:
            NxN uint8 matrix with 1 where two vertices share a triangle edge
        """
        n = self.n_vertices
        adjacency = np.zeros((n, n), dtype=np.uint8)
        for a, b, c in self._polygons:
            for i, j in ((a, b), (b, c), (c, a)):
                adjacency[i, j] = 1
                adjacency[j, i] = 1
        return adjacency

    def edges(self) -> List[Tuple[int, int]]:
        """Undirected edges (i, j) with j < i, each listed once."""
        adjacency = self.adjacency_matrix()
        rows, cols = np.nonzero(np.tril(adjacency, k=-1))
        return [(int(i), int(j)) for i, j in zip(rows, cols)]


@dataclass
class Vertex3D:
    """A reconstructed vertex in body coordinates."""

    lmk_id: int
    position: np.ndarray
    color: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    depth_variance: float = 0.0


class Mesh3D:
    """Triangle mesh with unique vertices keyed by landmark id."""

    def __init__(self):
        self._lmk_to_vtx: Dict[int, int] = {}
        self._vertices: List[Vertex3D] = []
        self._polygons: List[Tuple[int, int, int]] = []

    def add_polygon(self, polygon: Sequence[Vertex3D]) -> None:
        """Add a triangle, reusing vertices already in the mesh.

        A vertex seen again overwrites the stored position, colour and
        variance for its landmark.

        Args:
            polygon: Three Vertex3D
        """
        if len(polygon) != 3:
            raise ValueError(f"Only triangles are supported, got polygon of size {len(polygon)}")

        indices = []
        for vertex in polygon:
            idx = self._lmk_to_vtx.get(vertex.lmk_id)
            if idx is None:
                idx = len(self._vertices)
                self._lmk_to_vtx[vertex.lmk_id] = idx
                self._vertices.append(vertex)
            else:
                self._vertices[idx] = vertex
            indices.append(idx)
        self._polygons.append(tuple(indices))

    @property
    def n_polygons(self) -> int:
        return len(self._polygons)

    @property
    def n_vertices(self) -> int:
        return len(self._vertices)

    def get_vertex(self, lmk_id: int) -> Optional[Vertex3D]:
        idx = self._lmk_to_vtx.get(lmk_id)
        return None if idx is None else self._vertices[idx]

    @property
    def vertices(self) -> np.ndarray:
        """Nx3 array of vertex positions."""
        if not self._vertices:
            return np.zeros((0, 3))
        return np.array([v.position for v in self._vertices], dtype=np.float64)

    @property
    def polygons(self) -> np.ndarray:
        """Mx3 array of vertex indices."""
        return np.array(self._polygons, dtype=np.int64).reshape(-1, 3)

    @property
    def colors(self) -> np.ndarray:
        """Nx3 array of RGB colours in [0, 1]."""
        return np.array([v.color for v in self._vertices], dtype=np.float64).reshape(-1, 3)

    @property
    def depth_variances(self) -> np.ndarray:
        return np.array([v.depth_variance for v in self._vertices], dtype=np.float64)

    @property
    def lmk_ids(self) -> List[int]:
        return [v.lmk_id for v in self._vertices]

    def to_open3d(self) -> o3d.geometry.TriangleMesh:
        """Convert to an Open3D triangle mesh with vertex colours."""
        mesh = o3d.geometry.TriangleMesh()
        mesh.vertices = o3d.utility.Vector3dVector(self.vertices)
        mesh.triangles = o3d.utility.Vector3iVector(self.polygons.astype(np.int32))
        if self._vertices:
            mesh.vertex_colors = o3d.utility.Vector3dVector(self.colors)
        return mesh


def save_mesh(
    mesh: Mesh3D,
    output_path: str,
    file_format: str = "ply"
) -> bool:
    """Save mesh to file.

    Args:
        mesh: Reconstructed mesh to save
        output_path: Output file path
        file_format: Output file format (ply, obj, etc.)

    Returns:
        True if successful, False otherwise
    """
    o3d_mesh = mesh.to_open3d()
    o3d_mesh.remove_degenerate_triangles()
    o3d_mesh.compute_vertex_normals()

    try:
        if file_format.lower() == "obj":
            ok = o3d.io.write_triangle_mesh(output_path, o3d_mesh, write_vertex_colors=True)
        else:
            ok = o3d.io.write_triangle_mesh(output_path, o3d_mesh)
    except Exception as e:
        logger.error(f"Failed to save mesh: {e}")
        return False

    if ok:
        logger.info(f"Mesh saved to {output_path}")
    else:
        logger.error(f"Open3D could not write mesh to {output_path}")
    return bool(ok)
