"""
Exceptions raised by the odometry engine.

Configuration and numerical errors are fatal for a call. A data error means
the frames did not provide enough valid correspondences and the caller may
choose to keep the previous pose, relax thresholds, or retry.
"""
from typing import Optional

import torch


class OdometryError(Exception):
    """Base class for all odometry errors."""


class ConfigurationError(OdometryError, ValueError):
    """Invalid inputs or settings, detected before any expensive work."""


class NumericalError(OdometryError, ArithmeticError):
    """Non-finite pose increment or singular normal equations."""


class DataError(OdometryError):
    """Too few valid correspondences to constrain the pose."""

    def __init__(
        self,
        message: str,
        count: int = 0,
        level: Optional[int] = None,
        transformation: Optional[torch.Tensor] = None,
    ):
        super().__init__(message)
        self.count = count
        self.level = level
        # Estimate reached before the failing iteration
        self.transformation = transformation
