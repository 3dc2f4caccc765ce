"""
Odometry module for the RGB-D odometry library.

This module contains the image pyramid builder, the per-level point-to-plane,
intensity and hybrid kernels, and the multi-scale driver estimating camera
motion between two RGB-D frames.
"""

from .base import (
    BaseOdometry,
    OdometryConvergenceCriteria,
    OdometryMethod,
    OdometryResult,
    OdometryStatus,
)
from .kernels import (
    compute_pose_hybrid,
    compute_pose_intensity,
    compute_pose_point_to_plane,
)
from .pyramid import PyramidLevel, build_pyramid, intrinsics_pyramid
from .rgbd import DEFAULT_CONFIG, RGBDOdometry, rgbd_odometry_multi_scale

__all__ = [
    "BaseOdometry",
    "OdometryConvergenceCriteria",
    "OdometryMethod",
    "OdometryResult",
    "OdometryStatus",
    "PyramidLevel",
    "build_pyramid",
    "intrinsics_pyramid",
    "compute_pose_point_to_plane",
    "compute_pose_intensity",
    "compute_pose_hybrid",
    "DEFAULT_CONFIG",
    "RGBDOdometry",
    "rgbd_odometry_multi_scale",
]
