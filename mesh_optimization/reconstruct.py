"""Reconstruction of the 3D mesh from solved inverse depths.

This module lifts every triangle of the 2D mesh along the bearing vectors
of its vertices, colours the vertices according to a configurable policy and
drops triangles that cannot be fully resolved.
"""

from __future__ import annotations

import logging
from collections import Counter
from enum import Enum
from typing import Dict, Optional, Tuple, Union

import numpy as np

from mesh_optimization.mesh import Mesh2D, Mesh3D, Vertex3D
from mesh_optimization.solver import SolvedVertex

logger = logging.getLogger(__name__)

# Depth standard deviation mapped to full intensity in variance colouring.
SCALE_STD_DEVIATION = 0.1

# Red, apricot, purple, brown, pink
FLAT_PALETTE = (
    (1.0, 0.0, 0.0),
    (251 / 255.0, 206 / 255.0, 177 / 255.0),
    (128 / 255.0, 0.0, 128 / 255.0),
    (165 / 255.0, 42 / 255.0, 42 / 255.0),
    (1.0, 192 / 255.0, 203 / 255.0),
)

DEFAULT_COLOR = (0.7, 0.7, 0.7)


class MeshColorType(str, Enum):
    """Vertex colouring policies for the reconstructed mesh."""

    FLAT = "flat"
    RGB = "rgb"
    DEPTH_VARIANCE = "depth_variance"
    SUPPORT = "support"


def _integer_scale(dtype: np.dtype) -> float:
    return 65535.0 if dtype == np.uint16 else 255.0


def image_to_unit_range(image: np.ndarray) -> np.ndarray:
    """Convert an image to float colours in [0, 1].

    The scale is decided once for the whole image: 16-bit images are divided
    by 65535, other integer images by 255 and float images by 255 when any
    value exceeds 1.

    Args:
        image: HxW or HxWxC image

    Returns:
        Float64 image in [0, 1]
    """
    image = np.asarray(image)
    if np.issubdtype(image.dtype, np.integer):
        return image.astype(np.float64) / _integer_scale(image.dtype)

    image = image.astype(np.float64)
    if image.size > 0 and np.nanmax(image) > 1.0:
        image = image / 255.0
    return np.clip(image, 0.0, 1.0)


def _sample_image_color(image: Optional[np.ndarray], pixel: np.ndarray) -> Tuple[float, float, float]:
    """RGB colour in [0, 1] of the image at the nearest pixel.

    Integer images are scaled by _integer_scale, float images are taken as
    already in [0, 1].
    """
    if image is None:
        return DEFAULT_COLOR

    h, w = image.shape[:2]
    u = int(np.clip(np.round(pixel[0]), 0, w - 1))
    v = int(np.clip(np.round(pixel[1]), 0, h - 1))
    value = np.asarray(image[v, u], dtype=np.float64)
    if value.ndim == 0:
        value = np.repeat(value, 3)
    value = value[:3]
    if np.issubdtype(image.dtype, np.integer):
        value = value / _integer_scale(image.dtype)
    value = np.clip(value, 0.0, 1.0)
    return tuple(float(c) for c in value)


def vertex_color(
    color_type: MeshColorType,
    solved: SolvedVertex,
    support: int = 0,
    max_support: int = 0,
    mesh_count: int = 0,
    image: Optional[np.ndarray] = None,
    pixel: Optional[np.ndarray] = None
) -> Tuple[float, float, float]:
    """Colour of a reconstructed vertex.

    Args:
        color_type: Colouring policy
        solved: Solved inverse depth of the vertex
        support: Number of datapoints supporting the vertex
        max_support: Largest support over all vertices
        mesh_count: Index of the mesh being reconstructed
        image: Optional image to sample colours from, integer or float in [0, 1]
        pixel: Pixel position of the vertex

    Returns:
        RGB colour in [0, 1]
    """
    if color_type == MeshColorType.FLAT:
        return FLAT_PALETTE[mesh_count % len(FLAT_PALETTE)]
    elif color_type == MeshColorType.RGB:
        return _sample_image_color(image, pixel)
    elif color_type == MeshColorType.DEPTH_VARIANCE:
        # Darker means more confident
        red = np.clip(solved.depth_std / SCALE_STD_DEVIATION, 0.0, 1.0)
        return (float(red), 0.0, 0.0)
    elif color_type == MeshColorType.SUPPORT:
        blue = support / max_support if max_support > 0 else 0.0
        return (0.0, 0.0, float(blue))
    raise ValueError(f"Unrecognized mesh color type: {color_type}")


def _is_resolved(vtx_id: int, solved: Optional[SolvedVertex]) -> bool:
    if solved is None:
        logger.warning(f"Vertex {vtx_id} is not in the optimization")
        return False
    if not np.isfinite(solved.inv_depth) or solved.inv_depth <= 0.0:
        logger.warning(f"Vertex {vtx_id} has non-positive or infinite depth (inv_depth={solved.inv_depth})")
        return False
    variance = solved.depth_variance
    if not np.isfinite(variance) or variance < 0.0:
        logger.warning(f"Vertex {vtx_id} has invalid depth variance {variance}")
        return False
    return True


def reconstruct_mesh(
    mesh_2d: Mesh2D,
    solution: Dict[int, SolvedVertex],
    bearing_vectors: Dict[int, np.ndarray],
    camera_center: np.ndarray,
    color_type: Union[MeshColorType, str] = MeshColorType.FLAT,
    vertex_supports: Optional[Counter] = None,
    mesh_count: int = 0,
    image: Optional[np.ndarray] = None
) -> Mesh3D:
    """Build the 3D mesh from the solved inverse depths.

    Vertex positions are camera_center + depth * bearing, in body frame.
    A triangle is emitted only if all three vertices resolve.

    Args:
        mesh_2d: Input 2D mesh
        solution: Solved inverse depth per vertex id
        bearing_vectors: Unit bearing vector per vertex id
        camera_center: Camera optical center in body frame
        color_type: Vertex colouring policy
        vertex_supports: Datapoints supporting each vertex id
        mesh_count: Index of this mesh, used by flat colouring
        image: Optional image used by RGB colouring, uint8 or float

    Returns:
        Reconstructed mesh
    """
    try:
        color_type = MeshColorType(color_type)
    except ValueError:
        raise ValueError(f"Unrecognized mesh color type: {color_type}") from None

    if vertex_supports is None:
        vertex_supports = Counter()
    max_support = max(vertex_supports.values(), default=0)
    camera_center = np.asarray(camera_center, dtype=np.float64).reshape(3)
    if color_type == MeshColorType.RGB and image is not None:
        image = image_to_unit_range(image)

    mesh_3d = Mesh3D()
    n_dropped = 0
    for k in range(mesh_2d.n_polygons):
        polygon = []
        for vtx_id in mesh_2d.polygons[k]:
            vtx_id = int(vtx_id)
            solved = solution.get(vtx_id)
            if not _is_resolved(vtx_id, solved):
                break

            position = camera_center + solved.depth * bearing_vectors[vtx_id]
            color = vertex_color(
                color_type,
                solved,
                support=vertex_supports.get(vtx_id, 0),
                max_support=max_support,
                mesh_count=mesh_count,
                image=image,
                pixel=mesh_2d.positions[vtx_id]
            )
            polygon.append(Vertex3D(
                lmk_id=mesh_2d.get_lmk_id_for_vtx_id(vtx_id),
                position=position,
                color=color,
                depth_variance=solved.depth_variance
            ))

        if len(polygon) == 3:
            mesh_3d.add_polygon(polygon)
        else:
            logger.warning(f"Non-reconstructed polygon: {k}")
            n_dropped += 1

    logger.info(
        f"Reconstructed {mesh_3d.n_polygons}/{mesh_2d.n_polygons} polygons "
        f"({n_dropped} dropped), {mesh_3d.n_vertices} vertices"
    )
    return mesh_3d
