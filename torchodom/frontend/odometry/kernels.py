"""
Per-level residual and Jacobian kernels for RGB-D odometry.

Every kernel linearizes its cost around the current source-to-target
transformation ``T``. A source point ``p`` is moved to ``p' = T p``; a pose
increment ``xi = (omega, v)`` applied on the left moves it to approximately
``p' + omega x p' + v``, so ``dp'/dxi = [-[p']_x | I]``. The Gauss-Newton
step solves ``(J^T J) xi = -J^T r`` and the increment premultiplies ``T``.

All three kernels reject a correspondence when the target depth at the
projected pixel differs from the transformed source depth by more than
``depth_diff``.
"""
import math
from typing import Tuple

import torch

from ...backend.optimization.linear_system import LinearSystem
from ...backend.se3 import pose_to_transformation, skew_symmetric
from ...errors import DataError
from ...geometry.image import sample_bilinear
from .pyramid import PyramidLevel

# A 6-DoF pose needs at least six independent constraints
MIN_CORRESPONDENCES = 6

# Weight of the depth term in the hybrid cost; the photometric term gets the rest
DEFAULT_DEPTH_WEIGHT = 0.968


def _valid_source_points(
    vertex_map: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Flat indices and coordinates of the finite vertices of a level."""
    points = vertex_map.reshape(-1, 3)
    indices = torch.nonzero(torch.isfinite(points).all(dim=-1), as_tuple=False)
    indices = indices.squeeze(-1)
    return indices, points[indices]


def _transform(points: torch.Tensor, transformation: torch.Tensor) -> torch.Tensor:
    R = transformation[:3, :3].to(points.device, points.dtype)
    t = transformation[:3, 3].to(points.device, points.dtype)
    return torch.matmul(points, R.t()) + t


def _project(
    points: torch.Tensor, intrinsics: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    fx, fy = float(intrinsics[0, 0]), float(intrinsics[1, 1])
    cx, cy = float(intrinsics[0, 2]), float(intrinsics[1, 2])
    z = points[:, 2]
    u = fx * points[:, 0] / z + cx
    v = fy * points[:, 1] / z + cy
    return u, v


def _projection_jacobian(points: torch.Tensor, intrinsics: torch.Tensor) -> torch.Tensor:
    """Jacobian of the pinhole projection, (N, 2, 3)."""
    fx, fy = float(intrinsics[0, 0]), float(intrinsics[1, 1])
    x, y, z = points[:, 0], points[:, 1], points[:, 2]
    inv_z = 1.0 / z
    zeros = torch.zeros_like(z)

    row_u = torch.stack([fx * inv_z, zeros, -fx * x * inv_z * inv_z], dim=-1)
    row_v = torch.stack([zeros, fy * inv_z, -fy * y * inv_z * inv_z], dim=-1)
    return torch.stack([row_u, row_v], dim=-2)


def _point_jacobian(points: torch.Tensor) -> torch.Tensor:
    """Jacobian of a left-perturbed point w.r.t. (omega, v), (N, 3, 6)."""
    eye = torch.eye(3, dtype=points.dtype, device=points.device)
    eye = eye.expand(points.shape[0], 3, 3)
    return torch.cat([-skew_symmetric(points), eye], dim=-1)


def _solve(
    jacobian: torch.Tensor, residual: torch.Tensor, count: int, num_candidates: int
) -> Tuple[torch.Tensor, LinearSystem]:
    if count < MIN_CORRESPONDENCES:
        raise DataError(
            f"Only {count} valid correspondences out of {num_candidates} pixels, "
            f"need at least {MIN_CORRESPONDENCES}",
            count=count,
        )

    system = LinearSystem.accumulate(jacobian, residual, count, num_candidates)
    delta = pose_to_transformation(system.solve())
    return delta, system


def _warp_source(
    source: PyramidLevel, target: PyramidLevel, transformation: torch.Tensor
):
    """Transform the finite source vertices and drop those behind the camera."""
    indices, points = _valid_source_points(source.vertex_map)
    num_candidates = int(indices.shape[0])

    warped = _transform(points, transformation)
    in_front = warped[:, 2] > 0
    indices, warped = indices[in_front], warped[in_front]

    u, v = _project(warped, target.intrinsics)
    return indices, warped, u, v, num_candidates


def compute_pose_point_to_plane(
    source: PyramidLevel,
    target: PyramidLevel,
    transformation: torch.Tensor,
    depth_diff: float,
) -> Tuple[torch.Tensor, LinearSystem]:
    """
    One Gauss-Newton step of point-to-plane projective ICP.

    Source vertices are projected into the target image and paired with the
    target vertex and normal at the nearest pixel. The residual is the
    distance of the transformed source point to the target tangent plane.

    Args:
        source: Source level with a vertex map
        target: Target level with vertex and normal maps
        transformation: Current 4x4 source-to-target estimate (float64)
        depth_diff: Maximum depth difference of a correspondence

    Returns:
        Tuple of (4x4 incremental transformation, linear system)
    """
    _, warped, u, v, num_candidates = _warp_source(source, target, transformation)

    ui = torch.round(u).long()
    vi = torch.round(v).long()
    in_bounds = (ui >= 0) & (ui < target.width) & (vi >= 0) & (vi < target.height)
    warped, ui, vi = warped[in_bounds], ui[in_bounds], vi[in_bounds]

    flat = vi * target.width + ui
    target_points = target.vertex_map.reshape(-1, 3)[flat]
    target_normals = target.normal_map.reshape(-1, 3)[flat]

    valid = (
        torch.isfinite(target_points).all(dim=-1)
        & torch.isfinite(target_normals).all(dim=-1)
        & ((target_points[:, 2] - warped[:, 2]).abs() <= depth_diff)
    )
    p, q, n = warped[valid], target_points[valid], target_normals[valid]

    residual = ((p - q) * n).sum(dim=-1)
    jacobian = torch.cat([torch.cross(p, n, dim=-1), n], dim=-1)

    return _solve(jacobian, residual, int(p.shape[0]), num_candidates)


def _photometric_terms(
    source: PyramidLevel,
    target: PyramidLevel,
    transformation: torch.Tensor,
    depth_diff: float,
    with_depth_gradient: bool,
):
    """Sample the target at the warped source pixels and keep valid pairs."""
    indices, warped, u, v, num_candidates = _warp_source(
        source, target, transformation
    )

    in_bounds = (u >= 0) & (u <= target.width - 1) & (v >= 0) & (v <= target.height - 1)
    indices, warped, u, v = indices[in_bounds], warped[in_bounds], u[in_bounds], v[in_bounds]

    target_depth = sample_bilinear(target.depth, u, v)
    target_intensity = sample_bilinear(target.intensity, u, v)
    grad_i = torch.stack(
        [
            sample_bilinear(target.intensity_dx, u, v),
            sample_bilinear(target.intensity_dy, u, v),
        ],
        dim=-1,
    )

    valid = (
        torch.isfinite(target_depth)
        & torch.isfinite(target_intensity)
        & torch.isfinite(grad_i).all(dim=-1)
        & ((target_depth - warped[:, 2]).abs() <= depth_diff)
    )

    grad_d = None
    if with_depth_gradient:
        grad_d = torch.stack(
            [
                sample_bilinear(target.depth_dx, u, v),
                sample_bilinear(target.depth_dy, u, v),
            ],
            dim=-1,
        )
        valid &= torch.isfinite(grad_d).all(dim=-1)
        grad_d = grad_d[valid]

    indices, warped = indices[valid], warped[valid]
    source_intensity = source.intensity.reshape(-1)[indices]

    # dp'/dxi mapped through the projection, (N, 2, 6)
    J_warp = torch.matmul(
        _projection_jacobian(warped, target.intrinsics), _point_jacobian(warped)
    )

    return {
        "warped": warped,
        "J_warp": J_warp,
        "residual_i": target_intensity[valid] - source_intensity,
        "grad_i": grad_i[valid],
        "target_depth": target_depth[valid],
        "grad_d": grad_d,
        "num_candidates": num_candidates,
    }


def compute_pose_intensity(
    source: PyramidLevel,
    target: PyramidLevel,
    transformation: torch.Tensor,
    depth_diff: float,
) -> Tuple[torch.Tensor, LinearSystem]:
    """
    One Gauss-Newton step of direct photometric alignment.

    Args:
        source: Source level with intensity and vertex map
        target: Target level with depth, intensity and intensity gradients
        transformation: Current 4x4 source-to-target estimate (float64)
        depth_diff: Maximum depth difference of a correspondence

    Returns:
        Tuple of (4x4 incremental transformation, linear system)
    """
    terms = _photometric_terms(source, target, transformation, depth_diff, False)

    jacobian = torch.matmul(terms["grad_i"].unsqueeze(1), terms["J_warp"]).squeeze(1)
    residual = terms["residual_i"]

    return _solve(jacobian, residual, int(residual.shape[0]), terms["num_candidates"])


def compute_pose_hybrid(
    source: PyramidLevel,
    target: PyramidLevel,
    transformation: torch.Tensor,
    depth_diff: float,
    depth_weight: float = DEFAULT_DEPTH_WEIGHT,
) -> Tuple[torch.Tensor, LinearSystem]:
    """
    One Gauss-Newton step on joint photometric and depth residuals.

    Each correspondence contributes an intensity residual and a depth
    residual ``D_t(u') - z'``, scaled by ``sqrt(1 - depth_weight)`` and
    ``sqrt(depth_weight)`` respectively.

    Args:
        source: Source level with intensity and vertex map
        target: Target level with depth, intensity and both gradient pairs
        transformation: Current 4x4 source-to-target estimate (float64)
        depth_diff: Maximum depth difference of a correspondence
        depth_weight: Weight of the depth term in [0, 1]

    Returns:
        Tuple of (4x4 incremental transformation, linear system)
    """
    terms = _photometric_terms(source, target, transformation, depth_diff, True)
    J_warp = terms["J_warp"]
    point_jacobian = _point_jacobian(terms["warped"])

    sqrt_depth = math.sqrt(depth_weight)
    sqrt_intensity = math.sqrt(1.0 - depth_weight)

    J_i = torch.matmul(terms["grad_i"].unsqueeze(1), J_warp).squeeze(1)
    J_d = (
        torch.matmul(terms["grad_d"].unsqueeze(1), J_warp).squeeze(1)
        - point_jacobian[:, 2, :]
    )
    r_i = terms["residual_i"]
    r_d = terms["target_depth"] - terms["warped"][:, 2]

    jacobian = torch.cat([sqrt_intensity * J_i, sqrt_depth * J_d], dim=0)
    residual = torch.cat([sqrt_intensity * r_i, sqrt_depth * r_d], dim=0)

    return _solve(jacobian, residual, int(r_i.shape[0]), terms["num_candidates"])
