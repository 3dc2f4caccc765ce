"""
Image-space primitives for RGB-D odometry.

All functions work on single-channel (H, W) tensors (vertex and normal maps
are (H, W, 3)) and keep their results on the input device. Invalid values
are NaN and propagate through every operation.
"""
import math
from typing import Tuple

import torch
import torch.nn.functional as F

from ..errors import ConfigurationError

# 5-tap binomial approximation of a Gaussian, as used for image pyramids
GAUSSIAN_5 = (1.0 / 16, 4.0 / 16, 6.0 / 16, 4.0 / 16, 1.0 / 16)


def _check_image(image: torch.Tensor, name: str) -> None:
    if image.dim() != 2:
        raise ConfigurationError(
            f"Expected a single channel (H, W) {name}, got {tuple(image.shape)}"
        )
    if image.shape[0] <= 0 or image.shape[1] <= 0:
        raise ConfigurationError(f"Empty {name} of shape {tuple(image.shape)}")


def _downsampled_size(image: torch.Tensor) -> Tuple[int, int]:
    rows, cols = image.shape[0] // 2, image.shape[1] // 2
    if rows <= 0 or cols <= 0:
        raise ConfigurationError(
            f"Cannot downsample an image of size {tuple(image.shape)}; "
            f"reduce the number of pyramid levels"
        )
    return rows, cols


def pyr_down_depth(
    depth: torch.Tensor, diff_threshold: float, invalid_fill: float = math.nan
) -> torch.Tensor:
    """
    Halve a depth image without averaging across depth discontinuities.

    Every output pixel reduces the 2x2 block below it. The block is averaged
    over its finite samples only if all of them lie within ``diff_threshold``
    of each other; otherwise, or if no sample is finite, the output is
    ``invalid_fill``.

    Args:
        depth: Depth image (H, W), float32, invalid pixels NaN
        diff_threshold: Maximum spread allowed inside a block
        invalid_fill: Value for rejected blocks

    Returns:
        Depth image (H // 2, W // 2)
    """
    _check_image(depth, "depth image")
    if depth.dtype != torch.float32:
        raise ConfigurationError(f"Expected a float32 depth image, got {depth.dtype}")
    rows, cols = _downsampled_size(depth)

    blocks = (
        depth[: 2 * rows, : 2 * cols]
        .reshape(rows, 2, cols, 2)
        .permute(0, 2, 1, 3)
        .reshape(rows, cols, 4)
    )
    valid = torch.isfinite(blocks)
    count = valid.sum(dim=-1)

    total = torch.where(valid, blocks, torch.zeros_like(blocks)).sum(dim=-1)
    high = torch.where(valid, blocks, torch.full_like(blocks, -math.inf)).amax(dim=-1)
    low = torch.where(valid, blocks, torch.full_like(blocks, math.inf)).amin(dim=-1)

    keep = (count > 0) & ((high - low) < diff_threshold)
    mean = total / count.clamp(min=1).to(depth.dtype)
    return torch.where(keep, mean, torch.full_like(mean, invalid_fill))


def pyr_down(image: torch.Tensor) -> torch.Tensor:
    """
    Gaussian-smooth and halve an intensity image.

    Args:
        image: Intensity image (H, W)

    Returns:
        Image (H // 2, W // 2)
    """
    _check_image(image, "image")
    rows, cols = _downsampled_size(image)

    kernel = torch.tensor(GAUSSIAN_5, dtype=image.dtype, device=image.device)
    padded = F.pad(image[None, None], (2, 2, 2, 2), mode="replicate")
    blurred = F.conv2d(padded, kernel.view(1, 1, 1, 5))
    blurred = F.conv2d(blurred, kernel.view(1, 1, 5, 1))

    return blurred[0, 0, 0 : 2 * rows : 2, 0 : 2 * cols : 2].contiguous()


def filter_sobel(image: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Compute horizontal and vertical image derivatives with Sobel operators.

    The responses are divided by 8 so they are in units per pixel.

    Args:
        image: Single-channel image (H, W)

    Returns:
        Tuple of (dx, dy) gradient images, each (H, W)
    """
    _check_image(image, "image")
    device = image.device

    sobel_x = torch.tensor(
        [[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=image.dtype, device=device
    ).view(1, 1, 3, 3) / 8.0
    sobel_y = torch.tensor(
        [[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=image.dtype, device=device
    ).view(1, 1, 3, 3) / 8.0

    padded = F.pad(image[None, None], (1, 1, 1, 1), mode="replicate")
    dx = F.conv2d(padded, sobel_x)[0, 0]
    dy = F.conv2d(padded, sobel_y)[0, 0]

    return dx, dy


def create_vertex_map(depth: torch.Tensor, intrinsics: torch.Tensor) -> torch.Tensor:
    """
    Back-project every depth pixel through the pinhole model.

    Args:
        depth: Metric depth image (H, W), invalid pixels NaN
        intrinsics: 3x3 camera matrix

    Returns:
        Vertex map (H, W, 3) in camera coordinates; NaN where depth is invalid
    """
    _check_image(depth, "depth image")
    rows, cols = depth.shape
    device = depth.device

    fx, fy = float(intrinsics[0, 0]), float(intrinsics[1, 1])
    cx, cy = float(intrinsics[0, 2]), float(intrinsics[1, 2])

    v, u = torch.meshgrid(
        torch.arange(rows, dtype=depth.dtype, device=device),
        torch.arange(cols, dtype=depth.dtype, device=device),
        indexing="ij",
    )
    x = (u - cx) * depth / fx
    y = (v - cy) * depth / fy

    return torch.stack([x, y, depth], dim=-1)


def create_normal_map(vertex_map: torch.Tensor) -> torch.Tensor:
    """
    Estimate per-pixel normals from the right and lower neighbouring vertices.

    Args:
        vertex_map: Vertex map (H, W, 3)

    Returns:
        Unit normal map (H, W, 3); the last row and column, and pixels with an
        invalid neighbour, are NaN
    """
    if vertex_map.dim() != 3 or vertex_map.shape[-1] != 3:
        raise ConfigurationError(
            f"Expected an (H, W, 3) vertex map, got {tuple(vertex_map.shape)}"
        )

    normals = torch.full_like(vertex_map, math.nan)
    if vertex_map.shape[0] < 2 or vertex_map.shape[1] < 2:
        return normals

    center = vertex_map[:-1, :-1]
    dx = vertex_map[:-1, 1:] - center
    dy = vertex_map[1:, :-1] - center

    n = torch.cross(dx, dy, dim=-1)
    # Zero-length normals turn into NaN here
    normals[:-1, :-1] = n / n.norm(dim=-1, keepdim=True)

    return normals


def sample_bilinear(image: torch.Tensor, u: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
    """
    Bilinearly sample an image at floating point pixel coordinates.

    Args:
        image: Image (H, W) or (H, W, C)
        u: Column coordinates (N,)
        v: Row coordinates (N,)

    Returns:
        Sampled values (N,) or (N, C); any NaN neighbour yields NaN
    """
    squeeze = image.dim() == 2
    if squeeze:
        image = image.unsqueeze(-1)
    rows, cols = image.shape[0], image.shape[1]

    # align_corners=True maps -1 and 1 to the first and last pixel centers
    gx = 2.0 * u / max(cols - 1, 1) - 1.0
    gy = 2.0 * v / max(rows - 1, 1) - 1.0
    grid = torch.stack([gx, gy], dim=-1).view(1, 1, -1, 2).to(image.dtype)

    sampled = F.grid_sample(
        image.permute(2, 0, 1).unsqueeze(0),
        grid,
        mode="bilinear",
        padding_mode="border",
        align_corners=True,
    )
    sampled = sampled[0, :, 0, :].t()

    return sampled[:, 0] if squeeze else sampled
