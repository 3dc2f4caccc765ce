from typing import Optional, Union

import torch

from ..errors import ConfigurationError, NumericalError

# 4x4 transformations and pose increments always live on the host in double
HOST = torch.device("cpu")


def skew_symmetric(v: torch.Tensor) -> torch.Tensor:
    """
    Create skew-symmetric matrices from 3D vectors.

    Args:
        v: Vector(s) of shape (..., 3)

    Returns:
        Matrices of shape (..., 3, 3) such that skew(v) @ w == cross(v, w)
    """
    zero = torch.zeros_like(v[..., 0])
    x, y, z = v[..., 0], v[..., 1], v[..., 2]

    return torch.stack(
        [
            torch.stack([zero, -z, y], dim=-1),
            torch.stack([z, zero, -x], dim=-1),
            torch.stack([-y, x, zero], dim=-1),
        ],
        dim=-2,
    )


def so3_exp(omega: torch.Tensor) -> torch.Tensor:
    """
    Rotation matrix from an axis-angle vector using Rodrigues' formula.

    Args:
        omega: Rotation vector (3,)

    Returns:
        3x3 rotation matrix
    """
    theta = torch.linalg.norm(omega)
    eye = torch.eye(3, dtype=omega.dtype, device=omega.device)

    if theta < 1e-12:
        # First order expansion
        return eye + skew_symmetric(omega)

    K = skew_symmetric(omega / theta)
    return eye + torch.sin(theta) * K + (1 - torch.cos(theta)) * torch.matmul(K, K)


def pose_to_transformation(pose: torch.Tensor) -> torch.Tensor:
    """
    Convert a 6D pose increment to a 4x4 rigid transformation.

    Args:
        pose: Increment (rx, ry, rz, tx, ty, tz); the first three elements
            are an axis-angle rotation, the last three the translation

    Returns:
        4x4 float64 transformation on the host
    """
    pose = pose.detach().to(HOST, torch.float64).reshape(-1)
    if pose.shape != (6,):
        raise ConfigurationError(f"Expected 6D pose vector, got {tuple(pose.shape)}")
    if not bool(torch.isfinite(pose).all()):
        raise NumericalError(f"Non-finite pose increment {pose.tolist()}")

    transformation = torch.eye(4, dtype=torch.float64)
    transformation[:3, :3] = so3_exp(pose[:3])
    transformation[:3, 3] = pose[3:]
    return transformation


def as_transformation(
    matrix: Union[torch.Tensor, "SE3", None], name: str = "transformation"
) -> torch.Tensor:
    """
    Validate and copy a 4x4 transformation to a float64 host tensor.

    ``None`` gives the identity.
    """
    if matrix is None:
        return torch.eye(4, dtype=torch.float64)
    if isinstance(matrix, SE3):
        matrix = matrix.to_matrix()

    matrix = torch.as_tensor(matrix)
    if matrix.shape != (4, 4):
        raise ConfigurationError(f"Expected 4x4 {name}, got {tuple(matrix.shape)}")

    matrix = matrix.detach().to(HOST, torch.float64).clone()
    if not bool(torch.isfinite(matrix).all()):
        raise ConfigurationError(f"Non-finite values in {name}")
    return matrix


class SE3:
    """
    Rigid body transformation.

    Thin wrapper around a rotation matrix and translation vector used for
    composing, inverting and applying odometry results.
    """

    def __init__(self, rotation: torch.Tensor, translation: torch.Tensor):
        """
        Initialize SE(3) transformation.

        Args:
            rotation: 3x3 rotation matrix
            translation: 3D translation vector
        """
        self.R = rotation
        self.t = translation

    @property
    def device(self) -> torch.device:
        return self.R.device

    @classmethod
    def from_matrix(cls, matrix: torch.Tensor) -> "SE3":
        """
        Create SE(3) object from 4x4 transformation matrix.

        Args:
            matrix: 4x4 transformation matrix

        Returns:
            SE3 object
        """
        if matrix.shape != (4, 4):
            raise ConfigurationError(f"Expected 4x4 matrix, got {tuple(matrix.shape)}")

        return cls(matrix[:3, :3].clone(), matrix[:3, 3].clone())

    @classmethod
    def identity(
        cls, dtype: torch.dtype = torch.float64, device: Optional[torch.device] = None
    ) -> "SE3":
        """Create identity transformation."""
        device = device or HOST
        return cls(
            torch.eye(3, dtype=dtype, device=device),
            torch.zeros(3, dtype=dtype, device=device),
        )

    @classmethod
    def exp(cls, pose: torch.Tensor) -> "SE3":
        """
        Build a transformation from a 6D increment (rotation first).

        See :func:`pose_to_transformation`.
        """
        return cls.from_matrix(pose_to_transformation(pose))

    def to_matrix(self) -> torch.Tensor:
        """
        Convert to 4x4 transformation matrix.

        Returns:
            4x4 transformation matrix
        """
        matrix = torch.eye(4, dtype=self.R.dtype, device=self.device)
        matrix[:3, :3] = self.R
        matrix[:3, 3] = self.t
        return matrix

    def inverse(self) -> "SE3":
        """
        Compute the inverse transformation.

        Returns:
            Inverse SE3 object
        """
        R_inv = self.R.t()
        t_inv = -torch.matmul(R_inv, self.t)
        return SE3(R_inv, t_inv)

    def compose(self, other: "SE3") -> "SE3":
        """
        Compose with another SE(3) transformation: self * other

        Args:
            other: Another SE3 object

        Returns:
            Composed transformation
        """
        R = torch.matmul(self.R, other.R)
        t = torch.matmul(self.R, other.t) + self.t
        return SE3(R, t)

    def transform_points(self, points: torch.Tensor) -> torch.Tensor:
        """
        Transform 3D points.

        Args:
            points: Tensor of shape (..., 3); may live on any device

        Returns:
            Transformed points, same shape, dtype and device as the input
        """
        R = self.R.to(points.device, points.dtype)
        t = self.t.to(points.device, points.dtype)
        return torch.matmul(points, R.t()) + t

    def rotation_angle(self) -> float:
        """Rotation angle in radians."""
        cos_theta = (torch.trace(self.R) - 1) / 2
        return float(torch.acos(torch.clamp(cos_theta, -1.0, 1.0)))

    def __repr__(self) -> str:
        return f"SE3(R=\n{self.R},\nt={self.t})"
