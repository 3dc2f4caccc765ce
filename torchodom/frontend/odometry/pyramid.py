"""
Image pyramids for coarse-to-fine RGB-D odometry.

Levels are returned coarsest first so the optimizer can walk them in index
order: coarse levels settle the gross alignment before fine levels refine it.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from ...backend.se3 import HOST
from ...errors import ConfigurationError
from ...geometry import image
from ...geometry.rgbd import RGBDFrame
from .base import OdometryMethod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PyramidLevel:
    """Per-level maps of one frame; which maps are set depends on the method."""

    intrinsics: torch.Tensor  # 3x3, float64 on host
    depth: torch.Tensor  # (H, W) metric depth, NaN invalid
    vertex_map: Optional[torch.Tensor] = None  # (H, W, 3)
    normal_map: Optional[torch.Tensor] = None  # (H, W, 3), point-to-plane target
    intensity: Optional[torch.Tensor] = None  # (H, W)
    intensity_dx: Optional[torch.Tensor] = None  # (H, W), target only
    intensity_dy: Optional[torch.Tensor] = None
    depth_dx: Optional[torch.Tensor] = None  # (H, W), hybrid target only
    depth_dy: Optional[torch.Tensor] = None

    @property
    def height(self) -> int:
        return self.depth.shape[0]

    @property
    def width(self) -> int:
        return self.depth.shape[1]


def intrinsics_pyramid(
    intrinsics: torch.Tensor, num_levels: int
) -> Tuple[torch.Tensor, ...]:
    """
    Camera matrices for every pyramid level, coarsest first.

    Focal lengths and principal point are halved per level and the
    homogeneous entry is kept at 1. Each level gets its own float64 copy.

    Args:
        intrinsics: 3x3 camera matrix of the full resolution image
        num_levels: Number of pyramid levels

    Returns:
        Tuple of ``num_levels`` 3x3 matrices
    """
    intrinsics = torch.as_tensor(intrinsics)
    if intrinsics.shape != (3, 3):
        raise ConfigurationError(
            f"Expected 3x3 intrinsics, got {tuple(intrinsics.shape)}"
        )
    if num_levels < 1:
        raise ConfigurationError(f"num_levels must be at least 1, got {num_levels}")

    K = intrinsics.detach().to(HOST, torch.float64).clone()
    levels = []
    for _ in range(num_levels):
        levels.append(K)
        K = K / 2
        K[2, 2] = 1.0

    return tuple(reversed(levels))


def check_pyramid_size(height: int, width: int, num_levels: int) -> None:
    """Raise if ``num_levels`` halvings would leave an empty image."""
    if num_levels < 1:
        raise ConfigurationError(f"num_levels must be at least 1, got {num_levels}")

    rows, cols = height, width
    for level in range(num_levels):
        if rows <= 0 or cols <= 0:
            raise ConfigurationError(
                f"Pyramid level {level} of a {height}x{width} image would be empty "
                f"({rows}x{cols}); use fewer than {num_levels} levels"
            )
        rows, cols = rows // 2, cols // 2


def build_pyramid(
    frame: RGBDFrame,
    intrinsics: torch.Tensor,
    num_levels: int,
    depth_diff: float,
    method: OdometryMethod,
    is_target: bool,
) -> Tuple[PyramidLevel, ...]:
    """
    Build the image pyramid one frame needs for a given cost method.

    Args:
        frame: Preprocessed frame (metric depth, intensity if photometric)
        intrinsics: 3x3 camera matrix of the full resolution image
        num_levels: Number of pyramid levels
        depth_diff: Depth discontinuity threshold; depth blocks spreading
            more than twice this value are invalidated when downsampling
        method: Cost method deciding which maps are built
        is_target: Build the target-side maps (normals, gradients)

    Returns:
        Tuple of PyramidLevel, coarsest first
    """
    method = OdometryMethod.parse(method)
    check_pyramid_size(frame.height, frame.width, num_levels)
    if method.needs_intensity and frame.intensity is None:
        raise ConfigurationError(f"{method.name} odometry needs an intensity image")

    intrinsic_levels = intrinsics_pyramid(intrinsics, num_levels)

    depth = frame.depth[0]
    intensity = frame.intensity[0] if method.needs_intensity else None

    levels = []
    for i in range(num_levels):
        K = intrinsic_levels[num_levels - 1 - i]
        maps = {"intrinsics": K, "depth": depth}

        if method == OdometryMethod.POINT_TO_PLANE:
            vertex_map = image.create_vertex_map(depth, K)
            maps["vertex_map"] = vertex_map
            if is_target:
                maps["normal_map"] = image.create_normal_map(vertex_map)
        else:
            maps["intensity"] = intensity
            if is_target:
                maps["intensity_dx"], maps["intensity_dy"] = image.filter_sobel(
                    intensity
                )
                if method == OdometryMethod.HYBRID:
                    maps["depth_dx"], maps["depth_dy"] = image.filter_sobel(depth)
            else:
                maps["vertex_map"] = image.create_vertex_map(depth, K)

        levels.append(PyramidLevel(**maps))

        if i != num_levels - 1:
            depth = image.pyr_down_depth(depth, depth_diff * 2)
            if intensity is not None:
                intensity = image.pyr_down(intensity)

    logger.debug(
        "Built %d level %s pyramid (%s), finest %dx%d",
        num_levels,
        "target" if is_target else "source",
        method.name,
        frame.height,
        frame.width,
    )
    return tuple(reversed(levels))
