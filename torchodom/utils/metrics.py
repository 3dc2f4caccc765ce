"""
Pose error metrics for evaluating odometry estimates.
"""
from typing import Tuple

import numpy as np
import torch
from scipy.spatial.transform import Rotation


def _as_numpy(matrix) -> np.ndarray:
    if isinstance(matrix, torch.Tensor):
        matrix = matrix.detach().cpu().numpy()
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.shape != (4, 4):
        raise ValueError(f"Expected 4x4 matrix, got {matrix.shape}")
    return matrix


def relative_pose_error(estimate, reference) -> Tuple[float, float]:
    """
    Translation and rotation error between two rigid transformations.

    Args:
        estimate: Estimated 4x4 transformation
        reference: Ground truth 4x4 transformation

    Returns:
        Tuple of (translation error in meters, rotation error in degrees)
    """
    estimate, reference = _as_numpy(estimate), _as_numpy(reference)
    error = np.linalg.inv(reference) @ estimate

    translation_error = float(np.linalg.norm(error[:3, 3]))
    rotation_error = float(
        np.degrees(Rotation.from_matrix(error[:3, :3]).magnitude())
    )
    return translation_error, rotation_error


def rotation_error_deg(estimate, reference) -> float:
    """Angle of the rotation separating two transformations, in degrees."""
    return relative_pose_error(estimate, reference)[1]


def translation_error(estimate, reference) -> float:
    """Distance between the translation parts of two transformations."""
    estimate, reference = _as_numpy(estimate), _as_numpy(reference)
    return float(np.linalg.norm(estimate[:3, 3] - reference[:3, 3]))
