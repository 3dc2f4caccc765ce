"""
Geometry module for the RGB-D odometry library.

This module contains the RGB-D frame container, depth preprocessing and the
image-space operations used to build odometry pyramids.
"""

from .image import (
    create_normal_map,
    create_vertex_map,
    filter_sobel,
    pyr_down,
    pyr_down_depth,
    sample_bilinear,
)
from .rgbd import (
    RGBDFrame,
    clip_transform,
    color_from_numpy,
    depth_from_numpy,
    rgb_to_gray,
)

__all__ = [
    "RGBDFrame",
    "clip_transform",
    "rgb_to_gray",
    "depth_from_numpy",
    "color_from_numpy",
    "pyr_down_depth",
    "pyr_down",
    "filter_sobel",
    "create_vertex_map",
    "create_normal_map",
    "sample_bilinear",
]
