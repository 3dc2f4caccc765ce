import math

import pytest
import torch

from torchodom.errors import ConfigurationError
from torchodom.geometry.image import (
    create_normal_map,
    create_vertex_map,
    filter_sobel,
    pyr_down,
    pyr_down_depth,
    sample_bilinear,
)


def test_pyr_down_depth_averages_smooth_blocks():
    depth = torch.tensor(
        [[1.00, 1.02, 2.0, 2.0], [1.02, 1.00, 2.0, 2.0]], dtype=torch.float32
    )
    out = pyr_down_depth(depth, 0.14)
    assert out.shape == (1, 2)
    assert out[0, 0].item() == pytest.approx(1.01)
    assert out[0, 1].item() == pytest.approx(2.0)


def test_pyr_down_depth_step_is_invalid_not_averaged():
    # Columns 0-2 at 1 m, column 3 at 2 m: the right block straddles the step
    depth = torch.tensor([[1.0, 1.0, 1.0, 2.0]] * 4, dtype=torch.float32)
    out = pyr_down_depth(depth, 0.14)

    assert out.shape == (2, 2)
    assert torch.allclose(out[:, 0], torch.ones(2))
    assert torch.isnan(out[:, 1]).all()


def test_pyr_down_depth_ignores_invalid_samples():
    nan = math.nan
    depth = torch.tensor([[nan, 1.0], [1.1, nan]], dtype=torch.float32)
    assert pyr_down_depth(depth, 0.14)[0, 0].item() == pytest.approx(1.05)

    depth = torch.full((2, 2), nan)
    assert math.isnan(pyr_down_depth(depth, 0.14)[0, 0].item())


def test_pyr_down_depth_odd_size_and_empty():
    assert pyr_down_depth(torch.ones(5, 7), 0.1).shape == (2, 3)
    with pytest.raises(ConfigurationError):
        pyr_down_depth(torch.ones(1, 8), 0.1)


def test_pyr_down_keeps_constant_image():
    image = torch.full((9, 12), 0.25)
    out = pyr_down(image)
    assert out.shape == (4, 6)
    assert torch.allclose(out, torch.full((4, 6), 0.25))


def test_filter_sobel_on_ramp():
    cols = torch.arange(6, dtype=torch.float32)
    image = (2.0 * cols).expand(5, 6).contiguous()
    dx, dy = filter_sobel(image)

    # Interior derivative is in units per pixel
    assert torch.allclose(dx[:, 1:-1], torch.full((5, 4), 2.0))
    assert torch.allclose(dy, torch.zeros(5, 6))


def test_vertex_map_back_projection():
    K = torch.tensor([[2.0, 0, 1.0], [0, 4.0, 1.0], [0, 0, 1]], dtype=torch.float64)
    depth = torch.full((3, 3), 2.0)
    depth[0, 0] = math.nan
    vertices = create_vertex_map(depth, K)

    assert vertices.shape == (3, 3, 3)
    # pixel (v=2, u=0): x = (0 - 1) * 2 / 2, y = (2 - 1) * 2 / 4
    assert torch.allclose(vertices[2, 0], torch.tensor([-1.0, 0.5, 2.0]))
    assert torch.isnan(vertices[0, 0]).all()


def test_normal_map_of_fronto_parallel_plane():
    K = torch.tensor([[10.0, 0, 2.0], [0, 10.0, 2.0], [0, 0, 1]], dtype=torch.float64)
    vertices = create_vertex_map(torch.full((5, 5), 1.0), K)
    normals = create_normal_map(vertices)

    assert torch.allclose(normals[:-1, :-1], torch.tensor([0.0, 0.0, 1.0]).expand(4, 4, 3))
    assert torch.isnan(normals[-1]).all()
    assert torch.isnan(normals[:, -1]).all()


def test_normal_map_needs_valid_neighbours():
    K = torch.tensor([[10.0, 0, 2.0], [0, 10.0, 2.0], [0, 0, 1]], dtype=torch.float64)
    depth = torch.full((4, 4), 1.0)
    depth[1, 1] = math.nan
    normals = create_normal_map(create_vertex_map(depth, K))

    assert torch.isnan(normals[1, 1]).all()
    assert torch.isnan(normals[0, 1]).all()  # lower neighbour invalid
    assert torch.isnan(normals[1, 0]).all()  # right neighbour invalid
    assert torch.isfinite(normals[2, 2]).all()


def test_sample_bilinear():
    image = torch.tensor([[0.0, 1.0], [2.0, 3.0]])
    values = sample_bilinear(image, torch.tensor([0.5, 1.0]), torch.tensor([0.5, 0.0]))
    assert torch.allclose(values, torch.tensor([1.5, 1.0]))

    vectors = torch.stack([image, -image], dim=-1)
    sampled = sample_bilinear(vectors, torch.tensor([0.5]), torch.tensor([0.5]))
    assert sampled.shape == (1, 2)
    assert torch.allclose(sampled, torch.tensor([[1.5, -1.5]]))
