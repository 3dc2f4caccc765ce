import numpy as np
import pytest
import torch

from conftest import make_transformation
from torchodom.utils import relative_pose_error, rotation_error_deg, translation_error


def test_identical_poses_have_zero_error():
    T = make_transformation([0.1, -0.2, 0.3], [1.0, 2.0, 3.0])

    t_err, r_err = relative_pose_error(T, T)

    assert t_err == pytest.approx(0.0, abs=1e-12)
    assert r_err == pytest.approx(0.0, abs=1e-6)


def test_pure_rotation_error():
    estimate = make_transformation([0.0, 0.0, np.radians(2.0)], [0.0, 0.0, 0.0])

    assert rotation_error_deg(estimate, np.eye(4)) == pytest.approx(2.0)
    assert translation_error(estimate, np.eye(4)) == pytest.approx(0.0)


def test_translation_error_accepts_tensors():
    estimate = torch.eye(4, dtype=torch.float64)
    estimate[:3, 3] = torch.tensor([0.03, 0.0, 0.04], dtype=torch.float64)

    assert translation_error(estimate, torch.eye(4)) == pytest.approx(0.05)
    t_err, r_err = relative_pose_error(estimate, np.eye(4))
    assert t_err == pytest.approx(0.05)
    assert r_err == pytest.approx(0.0, abs=1e-6)


def test_error_is_measured_in_reference_frame():
    reference = make_transformation([0.0, np.pi / 2, 0.0], [0.0, 0.0, 0.0])
    estimate = reference @ make_transformation([0.0, 0.0, 0.0], [0.1, 0.0, 0.0])

    t_err, _ = relative_pose_error(estimate, reference)

    assert t_err == pytest.approx(0.1)


def test_rejects_non_4x4():
    with pytest.raises(ValueError):
        relative_pose_error(np.eye(3), np.eye(4))
