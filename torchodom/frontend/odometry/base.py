import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import torch

from ...backend.optimization.linear_system import LinearSystem
from ...errors import ConfigurationError


class OdometryMethod(Enum):
    """Cost formulations for RGB-D odometry."""

    POINT_TO_PLANE = 0  # Geometric, projective data association
    INTENSITY = 1  # Photometric
    HYBRID = 2  # Photometric plus depth

    @property
    def needs_intensity(self) -> bool:
        return self in (OdometryMethod.INTENSITY, OdometryMethod.HYBRID)

    @classmethod
    def parse(cls, method: Union["OdometryMethod", str]) -> "OdometryMethod":
        """
        Resolve a method given as a member or its case-insensitive name.

        Args:
            method: OdometryMethod or name such as "point_to_plane"

        Returns:
            OdometryMethod member
        """
        if isinstance(method, cls):
            return method
        if isinstance(method, str):
            try:
                return cls[method.strip().upper()]
            except KeyError:
                pass
        raise ConfigurationError(
            f"Odometry method {method!r} not implemented, expected one of "
            f"{[m.name.lower() for m in cls]}"
        )


class OdometryStatus(Enum):
    """Status of odometry estimation."""

    OK = 0
    LOST = 1
    UNCERTAIN = 2
    INITIALIZING = 3


@dataclass(frozen=True)
class OdometryConvergenceCriteria:
    """
    Optional early-stop rule for one pyramid level.

    A level stops once both the relative change in fitness and in inlier
    RMSE between two iterations fall below the thresholds, or after
    ``max_iteration`` iterations.
    """

    max_iteration: int = 30
    relative_fitness: float = 1e-6
    relative_rmse: float = 1e-6

    def __post_init__(self):
        if self.max_iteration < 0:
            raise ConfigurationError(
                f"max_iteration must be non-negative, got {self.max_iteration}"
            )
        if self.relative_fitness < 0 or self.relative_rmse < 0:
            raise ConfigurationError("Convergence thresholds must be non-negative")

    def has_converged(self, previous: LinearSystem, current: LinearSystem) -> bool:
        """Check whether two consecutive iterations changed little enough."""
        fitness_change = abs(current.fitness - previous.fitness) / max(
            previous.fitness, 1e-12
        )
        rmse_change = abs(current.rmse - previous.rmse) / max(previous.rmse, 1e-12)
        return (
            fitness_change < self.relative_fitness and rmse_change < self.relative_rmse
        )


@dataclass
class OdometryResult:
    """Result of a multi-scale odometry call."""

    transformation: torch.Tensor  # 4x4 source-to-target, float64 on host
    method: OdometryMethod
    # Last linear system of every level that ran at least one iteration
    level_systems: Dict[int, LinearSystem] = field(default_factory=dict)
    # Iterations actually run per level, coarsest first
    num_iterations: List[int] = field(default_factory=list)
    time_seconds: float = 0.0

    @property
    def final_system(self) -> Optional[LinearSystem]:
        if not self.level_systems:
            return None
        return self.level_systems[max(self.level_systems)]

    @property
    def fitness(self) -> float:
        """Inlier ratio at the finest level that ran."""
        system = self.final_system
        return system.fitness if system is not None else 0.0

    @property
    def inlier_rmse(self) -> float:
        system = self.final_system
        return system.rmse if system is not None else 0.0


class BaseOdometry(ABC):
    """Base class for odometry estimation."""

    def __init__(self, config: Dict = None):
        """
        Initialize odometry estimator.

        Args:
            config: Configuration dictionary
        """
        self.config = config if config is not None else {}
        self.current_pose = torch.eye(4, dtype=torch.float64)
        self.previous_pose = torch.eye(4, dtype=torch.float64)
        self.relative_motion = torch.eye(4, dtype=torch.float64)
        self.status = OdometryStatus.INITIALIZING
        self.frame_idx = 0
        self.is_initialized = False

        # Initialize logger
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def process_frame(self, data: Any) -> torch.Tensor:
        """
        Process a new frame to estimate odometry.

        Args:
            data: Sensor data (depends on the odometry method)

        Returns:
            Estimated 4x4 pose of the current frame
        """
        pass

    def reset(self):
        """Reset odometry estimator."""
        self.current_pose = torch.eye(4, dtype=torch.float64)
        self.previous_pose = torch.eye(4, dtype=torch.float64)
        self.relative_motion = torch.eye(4, dtype=torch.float64)
        self.status = OdometryStatus.INITIALIZING
        self.frame_idx = 0
        self.is_initialized = False

    def update_pose(self, relative_motion: torch.Tensor):
        """
        Update the pose with relative motion.

        Args:
            relative_motion: 4x4 motion of the current frame expressed in the
                previous frame
        """
        self.previous_pose = self.current_pose
        self.current_pose = torch.matmul(self.previous_pose, relative_motion)
        self.relative_motion = relative_motion
        self.frame_idx += 1
        self.status = OdometryStatus.OK
        self.is_initialized = True

    def get_current_pose(self) -> torch.Tensor:
        """
        Get the current estimated pose.

        Returns:
            4x4 pose of the current frame in the first frame's coordinates
        """
        return self.current_pose.clone()

    def get_relative_motion(self) -> torch.Tensor:
        """
        Get the relative motion between the last two frames.

        Returns:
            4x4 relative motion
        """
        return self.relative_motion.clone()

    def get_status(self) -> OdometryStatus:
        """
        Get the current status of the odometry estimation.

        Returns:
            Odometry status
        """
        return self.status
