"""Visualization utilities for mesh optimization.

This module provides a display-only sink collecting Open3D geometries (noisy
point clouds, reconstructed meshes, bearing arrows and confidence cylinders)
and helpers to overlay the 2D mesh and its binned datapoints on images.
Nothing here feeds back into the optimization.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import cv2
import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d

from mesh_optimization.binning import TriangleDatapoints
from mesh_optimization.geometry import is_valid_point
from mesh_optimization.mesh import Mesh2D, Mesh3D

logger = logging.getLogger(__name__)


def array_to_pcd(
    points: np.ndarray,
    colors: Optional[np.ndarray] = None
) -> o3d.geometry.PointCloud:
    """Convert numpy arrays to Open3D point cloud.

    Args:
        points: Nx3 array of point coordinates
        colors: Nx3 array of RGB colors (optional)

    Returns:
        Open3D PointCloud object
    """
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(points)

    if colors is not None:
        if np.max(colors) > 1.0:
            colors = colors / 255.0
        pcd.colors = o3d.utility.Vector3dVector(colors)

    return pcd


def _rotation_from_z(direction: np.ndarray) -> np.ndarray:
    """Rotation taking the +z axis onto the given unit direction."""
    z = np.array([0.0, 0.0, 1.0])
    axis = np.cross(z, direction)
    s = np.linalg.norm(axis)
    c = float(np.dot(z, direction))
    if s < 1e-12:
        return np.eye(3) if c > 0 else np.diag([1.0, -1.0, -1.0])
    axis = axis / s
    angle = np.arctan2(s, c)
    return o3d.geometry.get_rotation_matrix_from_axis_angle(axis * angle)


class MeshVisualizer:
    """Collects named geometries and displays them in an Open3D window.

    Widgets with an existing id are replaced. The window is only opened by
    `spin`, so the sink can be used headless.
    """

    def __init__(self, window_name: str = "Mesh Optimization", window_size: Tuple[int, int] = (1280, 720)):
        self.window_name = window_name
        self.window_size = window_size
        self.widgets: Dict[str, o3d.geometry.Geometry] = {}

    def add_point_cloud(
        self,
        widget_id: str,
        point_cloud: np.ndarray,
        pose: Optional[np.ndarray] = None,
        image: Optional[np.ndarray] = None
    ) -> o3d.geometry.PointCloud:
        """Show the valid samples of an organized point cloud.

        Args:
            widget_id: Widget name
            point_cloud: HxWx3 point cloud in camera frame
            pose: 4x4 camera-to-body transform applied to the cloud
            image: Optional HxW or HxWx3 image giving the sample colors

        Returns:
            The created Open3D point cloud
        """
        mask = is_valid_point(point_cloud)
        points = np.asarray(point_cloud, dtype=np.float64)[mask]

        colors = None
        if image is not None:
            colors = np.asarray(image, dtype=np.float64)[mask]
            if colors.ndim == 1:
                colors = np.repeat(colors.reshape(-1, 1), 3, axis=1)
        pcd = array_to_pcd(points, colors)
        if colors is None:
            pcd.paint_uniform_color([1.0, 0.0, 0.0])
        if pose is not None:
            pcd.transform(pose)

        self.widgets[widget_id] = pcd
        return pcd

    def add_mesh(
        self,
        widget_id: str,
        mesh_3d: Mesh3D,
        wireframe: bool = False,
        opacity: float = 1.0
    ) -> o3d.geometry.Geometry:
        """Show a reconstructed mesh, solid or as a wireframe.

        Open3D's legacy renderer has no per-widget opacity, so opacity
        darkens the vertex colors towards the background instead.
        """
        o3d_mesh = mesh_3d.to_open3d()
        if mesh_3d.n_vertices > 0 and len(o3d_mesh.vertex_colors) == 0:
            o3d_mesh.paint_uniform_color([1.0, 1.0, 0.0])
        if mesh_3d.n_vertices > 0:
            colors = np.asarray(o3d_mesh.vertex_colors) * float(np.clip(opacity, 0.0, 1.0))
            o3d_mesh.vertex_colors = o3d.utility.Vector3dVector(colors)
        o3d_mesh.compute_vertex_normals()

        geometry = o3d_mesh
        if wireframe:
            geometry = o3d.geometry.LineSet.create_from_triangle_mesh(o3d_mesh)

        self.widgets[widget_id] = geometry
        return geometry

    def add_arrow(
        self,
        widget_id: str,
        start: np.ndarray,
        end: np.ndarray,
        thickness: float = 0.001,
        color: Tuple[float, float, float] = (1.0, 0.0, 0.0)
    ) -> Optional[o3d.geometry.TriangleMesh]:
        """Show an arrow from start to end."""
        start = np.asarray(start, dtype=np.float64)
        direction = np.asarray(end, dtype=np.float64) - start
        length = float(np.linalg.norm(direction))
        if length <= 0.0:
            logger.debug(f"Skipping zero-length arrow {widget_id}")
            return None

        cone_height = 0.2 * length
        arrow = o3d.geometry.TriangleMesh.create_arrow(
            cylinder_radius=thickness,
            cone_radius=2.0 * thickness,
            cylinder_height=length - cone_height,
            cone_height=cone_height
        )
        arrow.rotate(_rotation_from_z(direction / length), center=np.zeros(3))
        arrow.translate(start)
        arrow.paint_uniform_color(color)

        self.widgets[widget_id] = arrow
        return arrow

    def add_cylinder(
        self,
        widget_id: str,
        axis_point1: np.ndarray,
        axis_point2: np.ndarray,
        radius: float = 0.01,
        resolution: int = 30,
        color: Tuple[float, float, float] = (0.0, 0.5, 1.0)
    ) -> Optional[o3d.geometry.TriangleMesh]:
        """Show a cylinder between two axis points (e.g. a depth interval)."""
        p1 = np.asarray(axis_point1, dtype=np.float64)
        p2 = np.asarray(axis_point2, dtype=np.float64)
        axis = p2 - p1
        height = float(np.linalg.norm(axis))
        if not np.isfinite(height) or height <= 0.0:
            logger.debug(f"Skipping degenerate cylinder {widget_id}")
            return None

        cylinder = o3d.geometry.TriangleMesh.create_cylinder(
            radius=radius, height=height, resolution=resolution
        )
        cylinder.rotate(_rotation_from_z(axis / height), center=np.zeros(3))
        cylinder.translate((p1 + p2) / 2.0)
        cylinder.paint_uniform_color(color)

        self.widgets[widget_id] = cylinder
        return cylinder

    def clear(self) -> None:
        self.widgets.clear()

    def spin(self) -> None:
        """Open a window showing every widget until it is closed."""
        if not self.widgets:
            logger.warning("Nothing to visualize")
            return
        geometries = [o3d.geometry.TriangleMesh.create_coordinate_frame(size=0.5)]
        geometries.extend(self.widgets.values())
        o3d.visualization.draw_geometries(
            geometries,
            window_name=self.window_name,
            width=self.window_size[0],
            height=self.window_size[1]
        )


def draw_2d_mesh_on_image(
    mesh_2d: Mesh2D,
    image: np.ndarray,
    color: Tuple[int, int, int] = (0, 0, 255),
    thickness: int = 1,
    line_type: int = cv2.LINE_8
) -> np.ndarray:
    """Draw the edges of a 2D mesh on a copy of an image.

    Args:
        mesh_2d: Mesh to draw
        image: Grayscale or BGR image
        color: BGR line color
        thickness: Line thickness in pixels
        line_type: OpenCV line type

    Returns:
        BGR image with the mesh drawn
    """
    if mesh_2d.n_polygons == 0:
        raise ValueError("Mesh has no polygons")

    canvas = image.copy()
    if canvas.ndim == 2:
        canvas = cv2.cvtColor(canvas, cv2.COLOR_GRAY2BGR)

    for k in range(mesh_2d.n_polygons):
        v0, v1, v2 = (tuple(int(round(c)) for c in p) for p in mesh_2d.positions[mesh_2d.polygons[k]])
        cv2.line(canvas, v0, v1, color, thickness, line_type)
        cv2.line(canvas, v1, v2, color, thickness, line_type)
        cv2.line(canvas, v2, v0, color, thickness, line_type)

    return canvas


def save_datapoint_overlay(
    mesh_2d: Mesh2D,
    datapoints: TriangleDatapoints,
    image_shape: Tuple[int, int],
    output_path: str,
    image: Optional[np.ndarray] = None
) -> None:
    """Plot the 2D mesh and the datapoints binned to each triangle.

    Args:
        mesh_2d: Input 2D mesh
        datapoints: Samples binned per triangle
        image_shape: Image (height, width)
        output_path: Path to save the figure
        image: Optional background image
    """
    height, width = image_shape[:2]
    fig, ax = plt.subplots(figsize=(10, 10 * height / max(width, 1)))

    if image is not None:
        ax.imshow(image, cmap="gray" if image.ndim == 2 else None)

    cmap = plt.get_cmap("tab10")
    for tri_idx, pixels in datapoints.pixels.items():
        ax.scatter(pixels[:, 0], pixels[:, 1], s=2, color=cmap(tri_idx % 10))

    ax.triplot(
        mesh_2d.positions[:, 0], mesh_2d.positions[:, 1], mesh_2d.polygons,
        color="k", linewidth=0.8
    )
    ax.set_xlim(0, width - 1)
    ax.set_ylim(height - 1, 0)
    ax.set_title(f"{datapoints.n_valid} datapoints in {mesh_2d.n_polygons} triangles")

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Datapoint overlay saved to {output_path}")
