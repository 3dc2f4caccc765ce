import cv2
import numpy as np
import pytest
import torch

from torchodom.geometry import RGBDFrame

WIDTH, HEIGHT = 160, 120
INTRINSICS = np.array(
    [[120.0, 0.0, 79.5], [0.0, 120.0, 59.5], [0.0, 0.0, 1.0]], dtype=np.float64
)
DEPTH_SCALE = 1000.0


class SyntheticScene:
    """
    Smooth textured height field z = f(x, y) seen by a pinhole camera.

    World coordinates are the coordinates of a camera at the identity pose.
    Frames are rendered by intersecting every pixel ray with the surface, so
    depth and color are exact for any camera pose.
    """

    width = WIDTH
    height = HEIGHT
    intrinsics = INTRINSICS
    depth_scale = DEPTH_SCALE

    @staticmethod
    def surface(x, y):
        return 1.5 + 0.15 * np.sin(3.0 * x) + 0.1 * np.cos(4.0 * y)

    @staticmethod
    def surface_gradient(x, y):
        return 0.45 * np.cos(3.0 * x), -0.4 * np.sin(4.0 * y)

    @staticmethod
    def texture(x, y):
        return (
            0.5
            + 0.15 * np.sin(9.0 * x)
            + 0.15 * np.cos(7.0 * y)
            + 0.1 * np.sin(5.0 * (x - y))
        )

    def render_arrays(self, world_to_camera: np.ndarray):
        """Render metric depth (H, W) and gray intensity (H, W) arrays."""
        camera_to_world = np.linalg.inv(world_to_camera)
        R, t = camera_to_world[:3, :3], camera_to_world[:3, 3]

        fx, fy = self.intrinsics[0, 0], self.intrinsics[1, 1]
        cx, cy = self.intrinsics[0, 2], self.intrinsics[1, 2]
        v, u = np.meshgrid(
            np.arange(self.height, dtype=np.float64),
            np.arange(self.width, dtype=np.float64),
            indexing="ij",
        )
        rays = np.stack([(u - cx) / fx, (v - cy) / fy, np.ones_like(u)], axis=-1)
        # World direction of each ray per unit camera depth
        a = rays @ R.T

        z = np.full(u.shape, 1.5)
        for _ in range(50):
            p = z[..., None] * a + t
            gx, gy = self.surface_gradient(p[..., 0], p[..., 1])
            g = p[..., 2] - self.surface(p[..., 0], p[..., 1])
            dg = a[..., 2] - gx * a[..., 0] - gy * a[..., 1]
            z = z - g / dg

        p = z[..., None] * a + t
        intensity = self.texture(p[..., 0], p[..., 1])
        return z, intensity

    def render(self, world_to_camera=None, device="cpu") -> RGBDFrame:
        """Render an RGBDFrame with raw (millimeter) depth and gray color."""
        if world_to_camera is None:
            world_to_camera = np.eye(4)
        depth, intensity = self.render_arrays(np.asarray(world_to_camera, np.float64))

        raw_depth = torch.tensor(depth * self.depth_scale, dtype=torch.float32)
        color = torch.tensor(intensity, dtype=torch.float32).expand(3, -1, -1)
        return RGBDFrame(raw_depth.to(device), color.contiguous().to(device))


def make_transformation(rotation_vector, translation) -> np.ndarray:
    """4x4 transformation from an axis-angle vector and a translation."""
    R, _ = cv2.Rodrigues(np.asarray(rotation_vector, dtype=np.float64).reshape(3, 1))
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = translation
    return T


@pytest.fixture(scope="session")
def scene():
    return SyntheticScene()


@pytest.fixture(scope="session")
def true_motion():
    """Source-to-target motion of about 1.5 degrees and 4 centimeters."""
    return make_transformation([0.02, -0.015, 0.01], [0.03, -0.02, 0.025])


@pytest.fixture(scope="session")
def frame_pair(scene, true_motion):
    """Source frame at the identity and target frame moved by true_motion."""
    return scene.render(), scene.render(true_motion)


@pytest.fixture
def intrinsics():
    return torch.tensor(INTRINSICS)
