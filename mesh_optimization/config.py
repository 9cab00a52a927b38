"""Configuration loading for mesh optimization."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

from mesh_optimization.reconstruct import MeshColorType
from mesh_optimization.solver import MeshOptimizerType

logger = logging.getLogger(__name__)

# Shipped inside the package so installed copies can load it
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

BINNING_METHODS = ("fast", "exhaustive")


def load_config(config_path: Optional[str] = None) -> Dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    logger.debug(f"Loaded configuration from {config_path}")
    return config


@dataclass
class MeshOptimizationParams:
    """Parameters of the mesh optimizer."""

    solver_type: MeshOptimizerType = MeshOptimizerType.LSQR
    color_type: MeshColorType = MeshColorType.FLAT
    binning: str = "fast"
    min_z: float = 0.1
    max_z: float = 5.0
    depth_meas_noise_sigma: float = 0.01
    use_spring_energies: bool = False
    spring_noise_sigma: float = 0.1
    show_progress: bool = False

    def __post_init__(self):
        try:
            self.solver_type = MeshOptimizerType(self.solver_type)
        except ValueError:
            raise ValueError(f"Unknown mesh optimization type: {self.solver_type}") from None
        try:
            self.color_type = MeshColorType(self.color_type)
        except ValueError:
            raise ValueError(f"Unrecognized mesh color type: {self.color_type}") from None
        if self.binning not in BINNING_METHODS:
            raise ValueError(f"Unknown binning method: {self.binning}")
        if not 0 < self.min_z <= self.max_z:
            raise ValueError(f"Invalid depth range [{self.min_z}, {self.max_z}]")
        if self.depth_meas_noise_sigma <= 0 or self.spring_noise_sigma <= 0:
            raise ValueError("Noise sigmas must be positive")

    @classmethod
    def from_dict(cls, config: Optional[Dict] = None) -> "MeshOptimizationParams":
        """Create parameters from the `mesh_optimization` config section.

        Args:
            config: Configuration parameters; missing keys take defaults

        Returns:
            MeshOptimizationParams instance
        """
        if config is None:
            config = {}
        defaults = cls.__dataclass_fields__
        return cls(**{
            name: config.get(name, field.default) for name, field in defaults.items()
        })

    def to_dict(self) -> Dict:
        params = asdict(self)
        params["solver_type"] = self.solver_type.value
        params["color_type"] = self.color_type.value
        return params
