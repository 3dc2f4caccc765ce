import math

import pytest
import torch

from torchodom.errors import DataError
from torchodom.frontend.odometry import OdometryMethod
from torchodom.frontend.odometry.kernels import (
    compute_pose_hybrid,
    compute_pose_intensity,
    compute_pose_point_to_plane,
)
from torchodom.frontend.odometry.pyramid import build_pyramid
from torchodom.geometry import RGBDFrame
from torchodom.utils import relative_pose_error

KERNELS = {
    OdometryMethod.POINT_TO_PLANE: compute_pose_point_to_plane,
    OdometryMethod.INTENSITY: compute_pose_intensity,
    OdometryMethod.HYBRID: compute_pose_hybrid,
}


def finest_levels(source, target, intrinsics, method, depth_scale=1000.0):
    """Single-level source and target pyramids for a frame pair."""
    need_intensity = method.needs_intensity
    source = source.preprocess(depth_scale, 3.0, need_intensity)
    target = target.preprocess(depth_scale, 3.0, need_intensity)
    source_level = build_pyramid(source, intrinsics, 1, 0.07, method, False)[0]
    target_level = build_pyramid(target, intrinsics, 1, 0.07, method, True)[0]
    return source_level, target_level


@pytest.mark.parametrize("method", list(KERNELS))
def test_ground_truth_is_stationary(method, frame_pair, true_motion, intrinsics):
    source, target = finest_levels(*frame_pair, intrinsics, method)
    trans = torch.tensor(true_motion)

    delta, system = KERNELS[method](source, target, trans, 0.07)

    assert delta.shape == (4, 4)
    assert delta.dtype == torch.float64
    assert system.count > 0.8 * source.height * source.width
    assert system.rmse < 5e-3
    t_err, r_err = relative_pose_error(delta, torch.eye(4, dtype=torch.float64))
    assert t_err < 2e-3
    assert r_err < 0.1


@pytest.mark.parametrize("method", list(KERNELS))
def test_single_step_reduces_error(method, frame_pair, true_motion, intrinsics):
    source, target = finest_levels(*frame_pair, intrinsics, method)
    start = torch.eye(4, dtype=torch.float64)

    delta, _ = KERNELS[method](source, target, start, 0.07)
    updated = delta @ start

    t_before, r_before = relative_pose_error(start, true_motion)
    t_after, r_after = relative_pose_error(updated, true_motion)
    assert t_after + 0.1 * r_after < t_before + 0.1 * r_before


@pytest.mark.parametrize("method", list(KERNELS))
def test_depth_difference_rejection_is_uniform(method, scene, intrinsics):
    frame = scene.render()
    source, target = finest_levels(frame, frame, intrinsics, method)

    # Pushing the source 20 cm along the optical axis breaks every pair
    trans = torch.eye(4, dtype=torch.float64)
    trans[2, 3] = 0.2

    with pytest.raises(DataError) as info:
        KERNELS[method](source, target, trans, 0.05)
    assert info.value.count == 0


def test_no_valid_target_depth_raises_data_error(scene, intrinsics):
    source = scene.render()
    target = RGBDFrame(torch.zeros_like(source.depth), source.color)
    source_level, target_level = finest_levels(
        source, target, intrinsics, OdometryMethod.POINT_TO_PLANE
    )

    with pytest.raises(DataError):
        compute_pose_point_to_plane(
            source_level, target_level, torch.eye(4, dtype=torch.float64), 0.07
        )


def test_hybrid_with_full_depth_weight_ignores_intensity(frame_pair, intrinsics):
    source, target = frame_pair
    flat_target = RGBDFrame(target.depth, torch.zeros_like(target.color))
    source_level, target_level = finest_levels(
        source, flat_target, intrinsics, OdometryMethod.HYBRID
    )
    trans = torch.eye(4, dtype=torch.float64)

    _, system = compute_pose_hybrid(source_level, target_level, trans, 0.07, 1.0)
    # Only depth residuals contribute; the wrong intensities are weighted out
    source_level2, target_level2 = finest_levels(
        source, target, intrinsics, OdometryMethod.HYBRID
    )
    _, reference = compute_pose_hybrid(source_level2, target_level2, trans, 0.07, 1.0)

    assert torch.allclose(system.A, reference.A)
    assert system.residual == pytest.approx(reference.residual)
    assert not math.isnan(system.rmse)
