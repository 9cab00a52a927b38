"""Tests for configuration loading and optimizer parameters."""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import pytest
import yaml

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

import mesh_optimization
from mesh_optimization.config import DEFAULT_CONFIG_PATH, MeshOptimizationParams, load_config
from mesh_optimization.reconstruct import MeshColorType
from mesh_optimization.solver import MeshOptimizerType


class TestConfig(unittest.TestCase):
    """Test configuration handling."""

    def setUp(self):
        self.test_output_dir = tempfile.mkdtemp()

    def tearDown(self):
        if os.path.exists(self.test_output_dir):
            shutil.rmtree(self.test_output_dir)

    def test_default_config(self):
        """Test that the shipped configuration is complete."""
        self.assertTrue(DEFAULT_CONFIG_PATH.exists())
        # The default configuration ships inside the package
        self.assertEqual(DEFAULT_CONFIG_PATH.parent, Path(mesh_optimization.__file__).resolve().parent)
        config = load_config()

        for key in ("fx", "fy", "cx", "cy", "baseline"):
            self.assertIn(key, config["camera"])
        params = MeshOptimizationParams.from_dict(config["mesh_optimization"])
        self.assertEqual(params, MeshOptimizationParams())

    def test_load_config(self):
        """Test loading a configuration from a given path."""
        config_path = os.path.join(self.test_output_dir, "config.yaml")
        with open(config_path, "w") as f:
            yaml.safe_dump({"mesh_optimization": {"solver_type": "normal_equations"}}, f)

        config = load_config(config_path)
        self.assertEqual(config["mesh_optimization"]["solver_type"], "normal_equations")

        # An empty file is an empty configuration
        open(config_path, "w").close()
        self.assertEqual(load_config(config_path), {})

    def test_defaults(self):
        """Test default parameter values."""
        params = MeshOptimizationParams()
        self.assertEqual(params.solver_type, MeshOptimizerType.LSQR)
        self.assertEqual(params.color_type, MeshColorType.FLAT)
        self.assertEqual(params.binning, "fast")
        self.assertEqual(params.min_z, 0.1)
        self.assertEqual(params.max_z, 5.0)
        self.assertEqual(params.depth_meas_noise_sigma, 0.01)
        self.assertFalse(params.use_spring_energies)
        self.assertEqual(params.spring_noise_sigma, 0.1)

    def test_from_dict(self):
        """Test partial dictionaries and string enums."""
        params = MeshOptimizationParams.from_dict({
            "solver_type": "normal_equations",
            "color_type": "support",
            "max_z": 10.0,
        })
        self.assertEqual(params.solver_type, MeshOptimizerType.NORMAL_EQUATIONS)
        self.assertEqual(params.color_type, MeshColorType.SUPPORT)
        self.assertEqual(params.max_z, 10.0)
        self.assertEqual(params.min_z, 0.1)

        self.assertEqual(MeshOptimizationParams.from_dict(None), MeshOptimizationParams())

    def test_to_dict(self):
        """Test serialization to plain values."""
        params = MeshOptimizationParams(color_type="depth_variance")
        params_dict = params.to_dict()

        self.assertEqual(params_dict["solver_type"], "lsqr")
        self.assertEqual(params_dict["color_type"], "depth_variance")
        self.assertEqual(MeshOptimizationParams.from_dict(params_dict), params)

    def test_invalid_params(self):
        """Test rejection of invalid parameters."""
        with self.assertRaises(ValueError):
            MeshOptimizationParams(solver_type="cholesky")
        with self.assertRaises(ValueError):
            MeshOptimizationParams(color_type="rainbow")
        with self.assertRaises(ValueError):
            MeshOptimizationParams(binning="random")
        with self.assertRaises(ValueError):
            MeshOptimizationParams(min_z=2.0, max_z=1.0)
        with self.assertRaises(ValueError):
            MeshOptimizationParams(min_z=0.0)
        with self.assertRaises(ValueError):
            MeshOptimizationParams(depth_meas_noise_sigma=0.0)
        with self.assertRaises(ValueError):
            MeshOptimizationParams(spring_noise_sigma=-1.0)


if __name__ == "__main__":
    unittest.main()
