"""
Multi-scale RGB-D odometry.

``rgbd_odometry_multi_scale`` estimates the rigid transformation taking the
source frame's geometry onto the target frame's geometry by running
Gauss-Newton iterations over an image pyramid, coarsest level first.
``RGBDOdometry`` chains those estimates over a stream of frames.
"""
import functools
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
import torch
from tqdm import tqdm

from ...backend.se3 import HOST, SE3, as_transformation
from ...errors import ConfigurationError, DataError
from ...geometry.image import create_vertex_map
from ...geometry.rgbd import RGBDFrame, color_from_numpy, depth_from_numpy
from .base import (
    BaseOdometry,
    OdometryConvergenceCriteria,
    OdometryMethod,
    OdometryResult,
    OdometryStatus,
)
from .kernels import (
    DEFAULT_DEPTH_WEIGHT,
    compute_pose_hybrid,
    compute_pose_intensity,
    compute_pose_point_to_plane,
)
from .pyramid import build_pyramid, check_pyramid_size

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "method": "hybrid",
    "depth_scale": 1000.0,
    "depth_max": 3.0,
    "depth_diff": 0.07,
    "iterations": [10, 5, 3],
    "num_levels": None,
    "criteria": None,
    "depth_weight": DEFAULT_DEPTH_WEIGHT,
    "use_motion_prior": False,
    "warm_up": False,
    "min_fitness": 0.25,
}


def select_kernel(
    method: OdometryMethod, depth_weight: float = DEFAULT_DEPTH_WEIGHT
) -> Callable:
    """
    Pick the per-level kernel for a cost method.

    Returns:
        Callable ``(source_level, target_level, transformation, depth_diff)``
        returning ``(delta, system)``
    """
    if method == OdometryMethod.POINT_TO_PLANE:
        return compute_pose_point_to_plane
    elif method == OdometryMethod.INTENSITY:
        return compute_pose_intensity
    elif method == OdometryMethod.HYBRID:
        return functools.partial(compute_pose_hybrid, depth_weight=depth_weight)
    raise ConfigurationError(f"Odometry method {method} not implemented")


def _check_iterations(
    iterations: Sequence[int], num_levels: Optional[int]
) -> List[int]:
    iterations = [int(i) for i in iterations]
    if len(iterations) == 0:
        raise ConfigurationError("iterations must name at least one pyramid level")
    if any(i < 0 for i in iterations):
        raise ConfigurationError(
            f"Iteration counts must be non-negative, got {iterations}"
        )
    if num_levels is not None and num_levels != len(iterations):
        raise ConfigurationError(
            f"Got {len(iterations)} iteration counts for {num_levels} pyramid levels"
        )
    return iterations


def _check_criteria(
    criteria: Optional[Sequence[Any]], num_levels: int
) -> Optional[List[OdometryConvergenceCriteria]]:
    if criteria is None:
        return None
    if len(criteria) != num_levels:
        raise ConfigurationError(
            f"Got {len(criteria)} convergence criteria for {num_levels} pyramid levels"
        )

    parsed = []
    for c in criteria:
        if isinstance(c, dict):
            c = OdometryConvergenceCriteria(**c)
        elif not isinstance(c, OdometryConvergenceCriteria):
            raise ConfigurationError(f"Invalid convergence criteria {c!r}")
        parsed.append(c)
    return parsed


def _check_frames(
    source: RGBDFrame, target: RGBDFrame, method: OdometryMethod, num_levels: int
) -> None:
    # Device first: nothing else is looked at for mismatched frames
    if source.device != target.device:
        raise ConfigurationError(
            f"Device mismatch, got {source.device} for source and "
            f"{target.device} for target"
        )
    if (source.height, source.width) != (target.height, target.width):
        raise ConfigurationError(
            f"Frame size mismatch, source {source.height}x{source.width} and "
            f"target {target.height}x{target.width}"
        )
    if method.needs_intensity:
        for name, frame in (("source", source), ("target", target)):
            if frame.color is None and frame.intensity is None:
                raise ConfigurationError(
                    f"{method.name} odometry requires a color image, "
                    f"none given for {name}"
                )
    check_pyramid_size(source.height, source.width, num_levels)


def rgbd_odometry_multi_scale(
    source: RGBDFrame,
    target: RGBDFrame,
    intrinsics: Union[torch.Tensor, np.ndarray],
    init_source_to_target: Optional[torch.Tensor] = None,
    depth_scale: float = 1000.0,
    depth_max: float = 3.0,
    depth_diff: float = 0.07,
    iterations: Sequence[int] = (10, 5, 3),
    method: Union[OdometryMethod, str] = OdometryMethod.HYBRID,
    criteria: Optional[Sequence[OdometryConvergenceCriteria]] = None,
    depth_weight: float = DEFAULT_DEPTH_WEIGHT,
    num_levels: Optional[int] = None,
    return_result: bool = False,
) -> Union[torch.Tensor, OdometryResult]:
    """
    Estimate the source-to-target transformation of two RGB-D frames.

    Args:
        source: Source frame (raw depth, optional color)
        target: Target frame on the same device as the source
        intrinsics: 3x3 camera matrix of the full resolution frames
        init_source_to_target: Initial 4x4 estimate, identity if None
        depth_scale: Raw depth units per meter
        depth_max: Depth beyond this (meters) is ignored
        depth_diff: Maximum depth difference of a correspondence (meters)
        iterations: Gauss-Newton iterations per level, coarsest level first;
            its length is the number of pyramid levels
        method: Cost formulation
        criteria: Optional early-stop criteria, one per level; without them
            every level runs its full iteration count
        depth_weight: Weight of the depth term for the hybrid method
        num_levels: Expected number of levels, checked against ``iterations``
        return_result: Return an OdometryResult instead of the matrix

    Returns:
        4x4 float64 source-to-target transformation on the host, or an
        OdometryResult

    Raises:
        ConfigurationError: Invalid inputs, detected before pyramid work
        NumericalError: Singular system or non-finite increment
        DataError: Too few correspondences at some level
    """
    start_time = time.time()

    method = OdometryMethod.parse(method)
    iterations = _check_iterations(iterations, num_levels)
    n_levels = len(iterations)
    _check_frames(source, target, method, n_levels)
    criteria = _check_criteria(criteria, n_levels)

    intrinsics = torch.as_tensor(intrinsics)
    if intrinsics.shape != (3, 3):
        raise ConfigurationError(
            f"Expected 3x3 intrinsics, got {tuple(intrinsics.shape)}"
        )
    if depth_scale <= 0 or depth_max <= 0 or depth_diff <= 0:
        raise ConfigurationError(
            f"depth_scale, depth_max and depth_diff must be positive, got "
            f"{depth_scale}, {depth_max}, {depth_diff}"
        )
    if not 0.0 <= depth_weight <= 1.0:
        raise ConfigurationError(f"depth_weight must be in [0, 1], got {depth_weight}")

    # 4x4 transformations are always float64 and stay on the host
    trans = as_transformation(init_source_to_target, "initial transformation")
    kernel = select_kernel(method, depth_weight)

    source_processed = source.preprocess(depth_scale, depth_max, method.needs_intensity)
    target_processed = target.preprocess(depth_scale, depth_max, method.needs_intensity)

    source_levels = build_pyramid(
        source_processed, intrinsics, n_levels, depth_diff, method, is_target=False
    )
    target_levels = build_pyramid(
        target_processed, intrinsics, n_levels, depth_diff, method, is_target=True
    )

    result = OdometryResult(trans, method)
    for level in range(n_levels):
        budget = iterations[level]
        if criteria is not None:
            budget = min(budget, criteria[level].max_iteration)

        previous = None
        ran = 0
        for _ in range(budget):
            try:
                delta, system = kernel(
                    source_levels[level], target_levels[level], trans, depth_diff
                )
            except DataError as e:
                e.level = level
                e.transformation = trans.clone()
                raise

            trans = torch.matmul(delta, trans)
            ran += 1
            result.level_systems[level] = system

            logger.debug(
                "level %d iter %d: %d correspondences, rmse %.6f, fitness %.4f",
                level,
                ran,
                system.count,
                system.rmse,
                system.fitness,
            )

            if (
                criteria is not None
                and previous is not None
                and criteria[level].has_converged(previous, system)
            ):
                break
            previous = system

        result.num_iterations.append(ran)

    result.transformation = trans
    result.time_seconds = time.time() - start_time

    return result if return_result else trans


class RGBDOdometry(BaseOdometry):
    """
    Frame-to-frame RGB-D odometry over a stream of frames.

    Each new frame is aligned to the previous one with
    :func:`rgbd_odometry_multi_scale` and the camera pose is accumulated in
    the coordinates of the first frame.
    """

    def __init__(self, config: Dict = None):
        """
        Initialize RGB-D odometry.

        Args:
            config: Configuration dictionary with the following keys:
                - intrinsics: 3x3 camera matrix (required)
                - device: PyTorch device frames are moved to
                - method: 'point_to_plane', 'intensity' or 'hybrid'
                - depth_scale: Raw depth units per meter
                - depth_max: Maximum valid depth in meters
                - depth_diff: Maximum depth difference of a correspondence
                - iterations: Iterations per pyramid level, coarsest first
                - num_levels: Optional number of levels, checked against iterations
                - criteria: Optional per-level convergence criteria (dicts or
                  OdometryConvergenceCriteria)
                - depth_weight: Depth term weight of the hybrid method
                - use_motion_prior: Start each alignment from the last motion
                - warm_up: Run one throw-away iteration before the first alignment
                - min_fitness: Inlier ratio below which a tracked frame is UNCERTAIN
        """
        super().__init__(config)

        intrinsics = self.config.get("intrinsics", None)
        if intrinsics is None:
            raise ConfigurationError("Camera intrinsics must be provided in the config")
        self.intrinsics = torch.as_tensor(intrinsics).to(HOST, torch.float64)
        if self.intrinsics.shape != (3, 3):
            raise ConfigurationError(
                f"Expected 3x3 intrinsics, got {tuple(self.intrinsics.shape)}"
            )

        self.device = torch.device(
            self.config.get("device", "cuda" if torch.cuda.is_available() else "cpu")
        )
        self.method = OdometryMethod.parse(
            self.config.get("method", DEFAULT_CONFIG["method"])
        )
        self.depth_scale = self.config.get("depth_scale", DEFAULT_CONFIG["depth_scale"])
        self.depth_max = self.config.get("depth_max", DEFAULT_CONFIG["depth_max"])
        self.depth_diff = self.config.get("depth_diff", DEFAULT_CONFIG["depth_diff"])
        self.depth_weight = self.config.get(
            "depth_weight", DEFAULT_CONFIG["depth_weight"]
        )
        self.iterations = _check_iterations(
            self.config.get("iterations", DEFAULT_CONFIG["iterations"]),
            self.config.get("num_levels", DEFAULT_CONFIG["num_levels"]),
        )
        self.criteria = _check_criteria(
            self.config.get("criteria", DEFAULT_CONFIG["criteria"]),
            len(self.iterations),
        )
        self.use_motion_prior = self.config.get(
            "use_motion_prior", DEFAULT_CONFIG["use_motion_prior"]
        )
        self.warm_up = self.config.get("warm_up", DEFAULT_CONFIG["warm_up"])
        self.min_fitness = self.config.get("min_fitness", DEFAULT_CONFIG["min_fitness"])
        if not 0.0 <= self.min_fitness <= 1.0:
            raise ConfigurationError(
                f"min_fitness must be in [0, 1], got {self.min_fitness}"
            )

        self._init_state()
        self.logger.info(
            f"Initializing {self.method.name} RGB-D odometry on device: {self.device}"
        )

    def _init_state(self):
        self.previous_frame = None
        self.current_frame = None
        self.timestamp = None
        self.last_result = None
        self.source_to_target = torch.eye(4, dtype=torch.float64)
        self.timings = []
        self._warmed_up = False

    def reset(self):
        """Reset odometry estimator."""
        super().reset()
        self._init_state()

    @property
    def current_transformation(self) -> torch.Tensor:
        """Pose of the current frame in the first frame's coordinates."""
        return self.get_current_pose()

    @property
    def relative_transformation(self) -> torch.Tensor:
        """Last previous-to-current source-to-target estimate."""
        return self.source_to_target.clone()

    @property
    def current_points(self) -> Optional[torch.Tensor]:
        """
        Valid 3D points of the current frame in the first frame's coordinates.

        Returns:
            Points (N, 3) on the odometry device, or None before any frame
        """
        if self.current_frame is None:
            return None

        frame = self.current_frame.preprocess(self.depth_scale, self.depth_max)
        vertices = create_vertex_map(frame.depth[0], self.intrinsics).reshape(-1, 3)
        vertices = vertices[torch.isfinite(vertices).all(dim=-1)]
        return SE3.from_matrix(self.current_pose).transform_points(vertices)

    def _to_frame(self, data: Union[RGBDFrame, Dict[str, Any]]) -> RGBDFrame:
        if isinstance(data, RGBDFrame):
            frame = data
            self.timestamp = None
        else:
            depth = data.get("depth")
            if depth is None:
                raise ConfigurationError("Missing depth image for RGB-D odometry")
            color = data.get("color")
            self.timestamp = data.get("timestamp")

            # Depth and color may independently be arrays or tensors
            if isinstance(depth, np.ndarray):
                depth = depth_from_numpy(depth)
            if isinstance(color, np.ndarray):
                device = depth.device if isinstance(depth, torch.Tensor) else None
                color = color_from_numpy(color, device)
            frame = RGBDFrame(depth, color)

        if frame.device != self.device:
            frame = frame.to(self.device)
        return frame

    def _align(self, source: RGBDFrame, target: RGBDFrame, init, iterations):
        return rgbd_odometry_multi_scale(
            source,
            target,
            self.intrinsics,
            init_source_to_target=init,
            depth_scale=self.depth_scale,
            depth_max=self.depth_max,
            depth_diff=self.depth_diff,
            iterations=iterations,
            method=self.method,
            criteria=self.criteria,
            depth_weight=self.depth_weight,
            return_result=True,
        )

    def process_frame(self, data: Union[RGBDFrame, Dict[str, Any]]) -> torch.Tensor:
        """
        Process a new frame to estimate odometry.

        Args:
            data: RGBDFrame, or dictionary containing:
                - depth: Raw depth image (H, W) tensor or array
                - color: Optional color image, (3, H, W) tensor or (H, W, 3) array
                - timestamp: Optional timestamp

        Returns:
            4x4 pose of the frame in the first frame's coordinates
        """
        frame = self._to_frame(data)

        # Handle the first frame
        if self.previous_frame is None:
            self.previous_frame = frame
            self.current_frame = frame
            self.status = OdometryStatus.INITIALIZING
            return self.get_current_pose()

        init = self.source_to_target if self.use_motion_prior else None
        start_time = time.time()
        try:
            if self.warm_up and not self._warmed_up:
                # Single throw-away iteration per level, excluded from timings
                self._warmed_up = True
                self._align(
                    self.previous_frame, frame, None, [1] * len(self.iterations)
                )
                start_time = time.time()

            result = self._align(self.previous_frame, frame, init, self.iterations)
        except DataError as e:
            self.logger.warning(
                f"RGB-D odometry lost at frame {self.frame_idx + 1}, level {e.level}: {e}"
            )
            self.status = OdometryStatus.LOST
            self.frame_idx += 1
            self.previous_frame = frame
            self.current_frame = frame
            self.timings.append(time.time() - start_time)
            return self.get_current_pose()

        self.timings.append(time.time() - start_time)
        self.last_result = result
        self.source_to_target = result.transformation

        # Motion of the current camera expressed in the previous camera
        relative_motion = SE3.from_matrix(result.transformation).inverse().to_matrix()
        self.update_pose(relative_motion)

        if result.fitness < self.min_fitness:
            self.status = OdometryStatus.UNCERTAIN
            self.logger.warning(
                f"Low fitness {result.fitness:.3f} at frame {self.frame_idx} "
                f"(minimum {self.min_fitness})"
            )

        self.previous_frame = frame
        self.current_frame = frame

        self.logger.debug(
            f"Frame {self.frame_idx}: fitness {result.fitness:.4f}, "
            f"rmse {result.inlier_rmse:.6f}, {self.timings[-1] * 1000:.1f} ms"
        )
        return self.get_current_pose()

    def track_sequence(
        self,
        frames: Iterable[Union[RGBDFrame, Dict[str, Any]]],
        show_progress: bool = False,
    ) -> List[torch.Tensor]:
        """
        Run odometry over a sequence of frames.

        Args:
            frames: Iterable of frames or frame dictionaries
            show_progress: Display a progress bar

        Returns:
            List of 4x4 poses, one per frame
        """
        poses = []
        for frame in tqdm(frames, desc="RGB-D odometry", disable=not show_progress):
            poses.append(self.process_frame(frame))

        if self.timings:
            self.logger.info(
                f"Tracked {len(poses)} frames, "
                f"average {1000 * sum(self.timings) / len(self.timings):.1f} ms per pair"
            )
        return poses
