#!/usr/bin/env python3
"""
Mesh Optimization

This script reconstructs a 3D mesh from a 2D landmark mesh and a noisy
per-pixel point cloud, either generated from a synthetic stereo scene or
loaded from disk, and saves the mesh together with a metrics report.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
from scipy.spatial import Delaunay

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from mesh_optimization import evaluate, visualise
from mesh_optimization.camera import StereoCamera, transform_from
from mesh_optimization.config import MeshOptimizationParams, load_config
from mesh_optimization.mesh import Mesh2D, save_mesh
from mesh_optimization.optimizer import MeshOptimizationInput, MeshOptimizer


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("mesh_optimization")


def delaunay_mesh(
    pixels: np.ndarray,
    lmk_ids: Optional[np.ndarray] = None
) -> Mesh2D:
    """Triangulate landmark pixels into a 2D mesh.

    Args:
        pixels: Nx2 array of landmark pixels (u, v)
        lmk_ids: Landmark ids (defaults to 0..N-1)

    Returns:
        Delaunay mesh over the landmarks
    """
    tri = Delaunay(pixels)
    # Drop landmarks that ended up in no triangle (coplanar or duplicated)
    used = np.unique(tri.simplices)
    if lmk_ids is None:
        lmk_ids = np.arange(pixels.shape[0])
    remap = -np.ones(pixels.shape[0], dtype=np.int64)
    remap[used] = np.arange(used.shape[0])
    return Mesh2D.from_vertex_indices(pixels[used], remap[tri.simplices], lmk_ids[used])


def make_synthetic_scene(
    camera: StereoCamera,
    config: Dict
) -> Tuple[np.ndarray, Mesh2D, Dict[int, np.ndarray]]:
    """Generate a noisy point cloud of a slanted plane and a mesh over it.

    The plane is rendered as a disparity map, corrupted with Gaussian
    disparity noise and back-projected through the stereo camera.

    Args:
        camera: Stereo camera with image width and height set
        config: The `synthetic` config section

    Returns:
        Tuple of (point_cloud, mesh_2d, ground-truth landmarks per landmark id)
    """
    width, height = camera.width, camera.height
    if width <= 0 or height <= 0:
        raise ValueError("Synthetic scene requires camera width and height")

    rng = np.random.default_rng(config.get("seed", 0))
    depth = float(config.get("depth", 2.0))
    slope = float(config.get("slope", 0.0))
    noise = float(config.get("disparity_noise", 0.1))
    n_landmarks = int(config.get("n_landmarks", 50))
    margin = int(config.get("margin", 10))

    def plane_depth(u, v):
        return depth + slope * (np.asarray(u, dtype=np.float64) - camera.cx) / camera.fx

    v, u = np.mgrid[0:height, 0:width]
    disparity = camera.fx * camera.baseline / plane_depth(u, v)
    disparity += rng.normal(0.0, noise, size=disparity.shape)
    point_cloud = camera.back_project_disparity_to_3d(disparity)

    corners = np.array([
        [margin, margin],
        [width - 1 - margin, margin],
        [margin, height - 1 - margin],
        [width - 1 - margin, height - 1 - margin],
    ], dtype=np.float64)
    interior = np.column_stack((
        rng.uniform(margin, width - 1 - margin, n_landmarks),
        rng.uniform(margin, height - 1 - margin, n_landmarks),
    ))
    pixels = np.vstack((corners, interior))
    mesh_2d = delaunay_mesh(pixels)

    ground_truth = {}
    for vtx_id in range(mesh_2d.n_vertices):
        pixel = mesh_2d.positions[vtx_id]
        lmk_id = mesh_2d.get_lmk_id_for_vtx_id(vtx_id)
        ground_truth[lmk_id] = camera.back_project_depth(pixel, float(plane_depth(pixel[0], pixel[1])))

    logger.info(
        f"Synthetic scene: {width}x{height} plane at {depth}m, "
        f"{mesh_2d.n_vertices} landmarks, {mesh_2d.n_polygons} triangles"
    )
    return point_cloud, mesh_2d, ground_truth


def load_scene(point_cloud_path: str, mesh_path: str) -> Tuple[np.ndarray, Mesh2D]:
    """Load a point cloud (.npy, HxWx3) and a 2D mesh (JSON).

    The mesh file holds `lmk_ids`, `positions` (Nx2 pixels) and `polygons`
    (triples of landmark ids). If `polygons` is missing the landmarks are
    triangulated.

    Args:
        point_cloud_path: Path to the point cloud
        mesh_path: Path to the mesh description

    Returns:
        Tuple of (point_cloud, mesh_2d)
    """
    logger.info(f"Reading point cloud from {point_cloud_path}")
    point_cloud = np.load(point_cloud_path)

    logger.info(f"Reading mesh from {mesh_path}")
    with open(mesh_path, "r") as f:
        mesh_dict = json.load(f)

    positions = np.array(mesh_dict["positions"], dtype=np.float64)
    lmk_ids = np.array(mesh_dict.get("lmk_ids", range(positions.shape[0])), dtype=np.int64)
    if "polygons" in mesh_dict:
        mesh_2d = Mesh2D(lmk_ids, positions, mesh_dict["polygons"])
    else:
        mesh_2d = delaunay_mesh(positions, lmk_ids)

    return point_cloud, mesh_2d


def read_image(image_path: str) -> np.ndarray:
    """Read an image and convert it to RGB."""
    image = cv2.imread(image_path)
    if image is None:
        raise ValueError(f"Failed to read {image_path}")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def save_results(
    output_dir: str,
    optimizer: MeshOptimizer,
    mesh_3d,
    mesh_2d: Mesh2D,
    metrics: Dict,
    image_shape: Tuple[int, int],
    image: Optional[np.ndarray] = None,
    mesh_format: str = "ply"
) -> None:
    """Save reconstruction results to output directory.

    Args:
        output_dir: Path to output directory
        optimizer: Optimizer that produced the mesh
        mesh_3d: Reconstructed mesh
        mesh_2d: Input 2D mesh
        metrics: Reconstruction metrics
        image_shape: Image (height, width)
        image: Optional RGB image the mesh was built on
        mesh_format: Mesh file format (ply, obj)
    """
    logger.info(f"Saving results to {output_dir}")
    os.makedirs(output_dir, exist_ok=True)

    # Save mesh
    mesh_file = os.path.join(output_dir, f"mesh.{mesh_format}")
    save_mesh(mesh_3d, mesh_file, mesh_format)

    # Save 2D mesh overlay
    if image is not None:
        canvas = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    else:
        canvas = np.zeros((image_shape[0], image_shape[1], 3), dtype=np.uint8)
    overlay = visualise.draw_2d_mesh_on_image(mesh_2d, canvas)
    cv2.imwrite(os.path.join(output_dir, "mesh_2d.png"), overlay)

    # Save metrics
    metrics_file = os.path.join(output_dir, "report.json")
    with open(metrics_file, "w") as f:
        json.dump(metrics, f, indent=2)

    # Save parameters used
    params_file = os.path.join(output_dir, "params.json")
    with open(params_file, "w") as f:
        json.dump(optimizer.params.to_dict(), f, indent=2)

    logger.info("Results saved successfully")


def run_mesh_optimization(
    output_dir: str,
    point_cloud_path: Optional[str] = None,
    mesh_path: Optional[str] = None,
    image_path: Optional[str] = None,
    overrides: Optional[Dict] = None,
    visualise_results: bool = False,
    config_path: Optional[str] = None
) -> Dict:
    """Run mesh optimization on a synthetic or saved scene.

    Args:
        output_dir: Path to output directory
        point_cloud_path: Point cloud file (synthetic scene if None)
        mesh_path: Mesh file, required with point_cloud_path
        image_path: Optional image for RGB colouring
        overrides: Values replacing the `mesh_optimization` config entries
        visualise_results: Whether to visualize results
        config_path: Path to configuration file

    Returns:
        Dictionary of reconstruction metrics
    """
    run_timer = evaluate.Timer("Mesh Optimization Run")
    run_timer.start()

    # Create output directory if it doesn't exist
    os.makedirs(output_dir, exist_ok=True)

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"))
    logging.getLogger().addHandler(file_handler)

    # Load configuration
    config = load_config(config_path)
    optimization_config = dict(config.get("mesh_optimization", {}))
    optimization_config.update({k: v for k, v in (overrides or {}).items() if v is not None})
    params = MeshOptimizationParams.from_dict(optimization_config)
    camera = StereoCamera.from_config(config["camera"])
    logger.info(f"Camera matrix:\n{camera.K}\nbaseline: {camera.baseline}")

    # === Stage 1: Load or generate the scene ===
    ground_truth = None
    if point_cloud_path is not None:
        if mesh_path is None:
            raise ValueError("A mesh file is required with a point cloud file")
        point_cloud, mesh_2d = load_scene(point_cloud_path, mesh_path)
    else:
        point_cloud, mesh_2d, ground_truth = make_synthetic_scene(camera, config.get("synthetic", {}))
    image = read_image(image_path) if image_path is not None else None

    # === Stage 2: Optimize ===
    visualizer = visualise.MeshVisualizer() if visualise_results else None
    optimizer = MeshOptimizer(camera, params, visualizer)
    output = optimizer.spin_once(MeshOptimizationInput(point_cloud, mesh_2d, image))
    mesh_3d = output.optimized_mesh_3d

    # === Stage 3: Evaluate ===
    metrics = dict(output.metrics)
    body_pose_cam = camera.body_pose_left_cam_rect
    cloud_body = point_cloud.reshape(-1, 3) @ body_pose_cam[:3, :3].T + body_pose_cam[:3, 3]
    metrics["mesh_to_cloud_distance"] = evaluate.mesh_to_cloud_distance(mesh_3d, cloud_body)
    if ground_truth is not None:
        metrics["landmark_rmse"] = evaluate.landmark_rmse(mesh_3d, ground_truth)
        logger.info(f"Landmark RMSE w.r.t. ground truth: {metrics['landmark_rmse']:.4f}m")
    metrics["runtime_s"] = run_timer.elapsed
    metrics["datetime"] = datetime.datetime.now().isoformat()

    # === Stage 4: Save ===
    save_results(
        output_dir, optimizer, mesh_3d, mesh_2d, metrics,
        point_cloud.shape[:2], image, config.get("io", {}).get("mesh_format", "ply")
    )

    # === Stage 5: Visualization (optional) ===
    if visualise_results:
        datapoints = optimizer.collect_datapoints(point_cloud, mesh_2d)
        visualise.save_datapoint_overlay(
            mesh_2d, datapoints, point_cloud.shape[:2],
            os.path.join(output_dir, "datapoints.png"), image
        )
        visualizer.spin()

    return metrics


def main():
    """Main function to parse arguments and run mesh optimization."""
    parser = argparse.ArgumentParser(description="Mesh Optimization")
    parser.add_argument(
        "--point-cloud", "-p", dest="point_cloud_path", default=None,
        help="Path to an HxWx3 .npy point cloud (synthetic scene if omitted)"
    )
    parser.add_argument(
        "--mesh", "-m", dest="mesh_path", default=None,
        help="Path to a JSON 2D mesh"
    )
    parser.add_argument(
        "--image", dest="image_path", default=None,
        help="Path to an image for RGB colouring"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default=None,
        help="Path to output directory"
    )
    parser.add_argument(
        "--solver", "-s", dest="solver_type", default=None,
        choices=["lsqr", "normal_equations"],
        help="Sparse solver"
    )
    parser.add_argument(
        "--color", dest="color_type", default=None,
        choices=["flat", "rgb", "depth_variance", "support"],
        help="Vertex colouring"
    )
    parser.add_argument(
        "--binning", "-b", dest="binning", default=None,
        choices=["fast", "exhaustive"],
        help="Datapoint binning strategy"
    )
    parser.add_argument(
        "--springs", dest="use_spring_energies", action="store_true", default=None,
        help="Add spring constraints between adjacent vertices"
    )
    parser.add_argument(
        "--visualise", "-v", dest="visualise", action="store_true",
        help="Visualize results"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )

    args = parser.parse_args()

    output_dir = args.output_dir
    if output_dir is None:
        output_dir = load_config(args.config_path).get("io", {}).get("output_dir", "results/run1")

    overrides = {
        "solver_type": args.solver_type,
        "color_type": args.color_type,
        "binning": args.binning,
        "use_spring_energies": args.use_spring_energies,
    }

    # Run mesh optimization
    try:
        run_mesh_optimization(
            output_dir,
            args.point_cloud_path,
            args.mesh_path,
            args.image_path,
            overrides,
            args.visualise,
            args.config_path
        )
    except Exception as e:
        logger.exception(f"Error running mesh optimization: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
