"""
Backend module for the RGB-D odometry library.

This module contains rigid transformation helpers and the dense solver for
the 6-DoF Gauss-Newton normal equations.
"""

from .optimization import LinearSystem
from .se3 import SE3, pose_to_transformation, skew_symmetric, so3_exp

__all__ = [
    "SE3",
    "pose_to_transformation",
    "skew_symmetric",
    "so3_exp",
    "LinearSystem",
]
