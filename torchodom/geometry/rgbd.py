"""
RGB-D frame container and per-frame preprocessing.

Depth is stored channel first as a (1, H, W) float32 tensor and color as a
(3, H, W) tensor, matching the (C, H, W) layout used across the library.
"""
import logging
import math
from typing import Optional, Union

import numpy as np
import torch

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights
GRAY_WEIGHTS = (0.299, 0.587, 0.114)


def _check_depth(depth: torch.Tensor) -> None:
    if depth.dim() != 3 or depth.shape[0] != 1:
        raise ConfigurationError(
            f"Invalid depth shape, expected a 1 channel image (1, H, W), "
            f"got {tuple(depth.shape)}"
        )
    if depth.dtype != torch.float32:
        raise ConfigurationError(f"Expected a float32 depth image, got {depth.dtype}")
    if depth.shape[1] <= 0 or depth.shape[2] <= 0:
        raise ConfigurationError(f"Empty depth image of shape {tuple(depth.shape)}")


def _check_aligned(
    image: torch.Tensor, depth: torch.Tensor, channels: int, name: str
) -> None:
    """Check that an image matches the depth image in size and device."""
    if not isinstance(image, torch.Tensor):
        raise ConfigurationError(
            f"Expected a tensor {name}, got {type(image).__name__}; "
            f"use RGBDFrame.from_numpy for arrays"
        )
    if image.dim() != 3 or image.shape[0] != channels:
        raise ConfigurationError(
            f"Expected a ({channels}, H, W) {name}, got {tuple(image.shape)}"
        )
    if image.shape[1:] != depth.shape[1:]:
        raise ConfigurationError(
            f"Size of the {name} {tuple(image.shape[1:])} does not match depth "
            f"size {tuple(depth.shape[1:])}"
        )
    if image.device != depth.device:
        raise ConfigurationError(
            f"The {name} is on {image.device} but depth is on {depth.device}"
        )


def depth_from_numpy(
    depth: np.ndarray, device: Union[str, torch.device, None] = None
) -> torch.Tensor:
    """Convert an (H, W) or (H, W, 1) depth array to an (H, W) float32 tensor."""
    depth_tensor = torch.as_tensor(
        np.ascontiguousarray(depth, dtype=np.float32), device=device
    )
    if depth_tensor.dim() == 3 and depth_tensor.shape[-1] == 1:
        depth_tensor = depth_tensor[..., 0]
    return depth_tensor


def color_from_numpy(
    color: np.ndarray, device: Union[str, torch.device, None] = None
) -> torch.Tensor:
    """
    Convert an (H, W, 3) color array to a (3, H, W) tensor.

    uint8 data is kept as is, anything else becomes float32.
    """
    color = np.asarray(color)
    if color.ndim != 3 or color.shape[-1] != 3:
        raise ConfigurationError(
            f"Expected an (H, W, 3) color array, got {color.shape}"
        )
    color_tensor = torch.as_tensor(np.ascontiguousarray(color), device=device)
    color_tensor = color_tensor.permute(2, 0, 1)
    if color_tensor.dtype != torch.uint8:
        color_tensor = color_tensor.float()
    return color_tensor


def clip_transform(
    depth: torch.Tensor,
    depth_scale: float,
    depth_min: float = 0.0,
    depth_max: float = 3.0,
    invalid_fill: float = math.nan,
) -> torch.Tensor:
    """
    Convert raw depth to metric units and invalidate out of range values.

    Values are divided by ``depth_scale``; results ``<= depth_min`` or
    ``> depth_max`` (zero depth marks a missing measurement) and non-finite
    results are replaced by ``invalid_fill``.

    Args:
        depth: Depth image (1, H, W), float32
        depth_scale: Raw units per meter (e.g. 1000 for millimeters)
        depth_min: Lower bound, exclusive
        depth_max: Upper bound, inclusive
        invalid_fill: Value written to rejected pixels

    Returns:
        New depth image (1, H, W) in meters
    """
    _check_depth(depth)
    if depth_scale <= 0:
        raise ConfigurationError(f"depth_scale must be positive, got {depth_scale}")
    if depth_max <= depth_min:
        raise ConfigurationError(
            f"depth_max ({depth_max}) must be greater than depth_min ({depth_min})"
        )

    metric = depth / depth_scale
    invalid = (metric <= depth_min) | (metric > depth_max) | ~torch.isfinite(metric)
    return torch.where(invalid, torch.full_like(metric, invalid_fill), metric)


def rgb_to_gray(color: torch.Tensor) -> torch.Tensor:
    """
    Convert a (3, H, W) color image to a (1, H, W) float32 intensity image.

    uint8 inputs are rescaled to [0, 1]; floating point inputs are assumed
    to be in [0, 1] already.
    """
    if color.dim() != 3 or color.shape[0] != 3:
        raise ConfigurationError(
            f"Expected a (3, H, W) color image, got {tuple(color.shape)}"
        )

    if color.dtype == torch.uint8:
        color = color.float() / 255.0
    else:
        color = color.float()

    weights = torch.tensor(GRAY_WEIGHTS, dtype=torch.float32, device=color.device)
    return (color * weights.view(3, 1, 1)).sum(dim=0, keepdim=True)


class RGBDFrame:
    """A depth image with an optional aligned color image on one device."""

    def __init__(
        self,
        depth: torch.Tensor,
        color: Optional[torch.Tensor] = None,
        intensity: Optional[torch.Tensor] = None,
    ):
        """
        Initialize an RGB-D frame.

        Args:
            depth: Depth image (1, H, W) or (H, W), float32
            color: Optional color image (3, H, W)
            intensity: Optional precomputed intensity image (1, H, W) or (H, W)
        """
        if not isinstance(depth, torch.Tensor):
            raise ConfigurationError(
                f"Expected a tensor depth image, got {type(depth).__name__}; "
                f"use RGBDFrame.from_numpy for arrays"
            )
        if depth.dim() == 2:
            depth = depth.unsqueeze(0)
        _check_depth(depth)

        if color is not None:
            _check_aligned(color, depth, 3, "color image")
        if intensity is not None:
            if isinstance(intensity, torch.Tensor) and intensity.dim() == 2:
                intensity = intensity.unsqueeze(0)
            _check_aligned(intensity, depth, 1, "intensity image")

        self.depth = depth
        self.color = color
        self.intensity = intensity

    @property
    def device(self) -> torch.device:
        """Device the frame lives on."""
        return self.depth.device

    @property
    def height(self) -> int:
        return self.depth.shape[1]

    @property
    def width(self) -> int:
        return self.depth.shape[2]

    @property
    def has_color(self) -> bool:
        return self.color is not None

    def to(self, device: Union[str, torch.device]) -> "RGBDFrame":
        """
        Copy the frame to another device.

        This is a synchronous transfer point; the frame itself is unchanged.
        """
        device = torch.device(device)
        return RGBDFrame(
            self.depth.to(device),
            self.color.to(device) if self.color is not None else None,
            self.intensity.to(device) if self.intensity is not None else None,
        )

    def preprocess(
        self, depth_scale: float, depth_max: float, need_intensity: bool = False
    ) -> "RGBDFrame":
        """
        Produce a new frame with metric, range-clipped depth.

        Args:
            depth_scale: Raw depth units per meter
            depth_max: Maximum valid depth in meters
            need_intensity: Also compute the grayscale intensity image

        Returns:
            Preprocessed frame; this frame is left untouched
        """
        depth = clip_transform(self.depth, depth_scale, 0.0, depth_max)

        intensity = None
        if need_intensity:
            if self.intensity is not None:
                intensity = self.intensity.float()
            elif self.color is not None:
                intensity = rgb_to_gray(self.color)
            else:
                raise ConfigurationError(
                    "Photometric odometry requires a color image in both frames"
                )
        return RGBDFrame(depth, self.color, intensity)

    @classmethod
    def from_numpy(
        cls,
        depth: np.ndarray,
        color: Optional[np.ndarray] = None,
        device: Union[str, torch.device, None] = None,
    ) -> "RGBDFrame":
        """
        Create a frame from NumPy arrays.

        Args:
            depth: Depth array (H, W), any numeric dtype (converted to float32)
            color: Optional color array (H, W, 3), uint8 or float in [0, 1]
            device: PyTorch device

        Returns:
            RGBDFrame object
        """
        color_tensor = color_from_numpy(color, device) if color is not None else None
        return cls(depth_from_numpy(depth, device), color_tensor)

    def __repr__(self) -> str:
        return (
            f"RGBDFrame(size=({self.height}, {self.width}), "
            f"color={self.has_color}, device={self.device})"
        )
