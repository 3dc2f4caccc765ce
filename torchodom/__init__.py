"""
PyTorch RGB-D Odometry Library

A PyTorch-based library estimating the rigid motion between two RGB-D frames
with multi-scale dense alignment. Depth and color images stay on the device
they are given on (CPU or GPU); only the 6x6 normal equations and the 4x4
transformations move to the host.

Major Components:
- Geometry: RGB-D frames, depth preprocessing, pyramids, vertex and normal maps
- Backend: Rigid transformations and the Gauss-Newton linear solve
- Frontend: Point-to-plane, intensity and hybrid odometry kernels and the
  coarse-to-fine driver
- Utils: Pose error metrics
"""
from torchodom.backend import SE3, LinearSystem, pose_to_transformation
from torchodom.errors import (
    ConfigurationError,
    DataError,
    NumericalError,
    OdometryError,
)
from torchodom.frontend.odometry import (
    OdometryConvergenceCriteria,
    OdometryMethod,
    OdometryResult,
    OdometryStatus,
    RGBDOdometry,
    rgbd_odometry_multi_scale,
)
from torchodom.geometry import RGBDFrame

# Version information
from torchodom.version import __version__

__all__ = [
    "RGBDFrame",
    "SE3",
    "LinearSystem",
    "pose_to_transformation",
    "OdometryMethod",
    "OdometryStatus",
    "OdometryConvergenceCriteria",
    "OdometryResult",
    "RGBDOdometry",
    "rgbd_odometry_multi_scale",
    "OdometryError",
    "ConfigurationError",
    "NumericalError",
    "DataError",
    "__version__",
]
