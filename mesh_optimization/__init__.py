"""Depth-supported 3D mesh optimization.

Fits the inverse depths of a 2D landmark mesh to a noisy per-pixel point
cloud by sparse linear least squares, and reconstructs a colored 3D mesh with
per-vertex depth uncertainty.
"""

from __future__ import annotations

__version__ = "0.1.0"
