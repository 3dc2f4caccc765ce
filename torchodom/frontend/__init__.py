"""
Frontend module for the RGB-D odometry library.

This module contains the frame-to-frame odometry estimation components.
"""

from .odometry import OdometryMethod, RGBDOdometry, rgbd_odometry_multi_scale

__all__ = ["OdometryMethod", "RGBDOdometry", "rgbd_odometry_multi_scale"]
