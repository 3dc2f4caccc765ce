"""
Gauss-Newton normal equations for a 6-DoF pose.

Each odometry iteration stacks one Jacobian row per residual, reduces them to
a dense 6x6 system on the device, and solves it on the host in double
precision.
"""
import math
from dataclasses import dataclass
from typing import Optional

import torch

from ...errors import NumericalError
from ..se3 import HOST

# Smallest accepted ratio between the extreme eigenvalues of J^T J
MIN_RECIPROCAL_CONDITION = 1e-12


@dataclass
class LinearSystem:
    """Normal equations A x = -b accumulated over accepted correspondences."""

    A: torch.Tensor  # 6x6 J^T J, float64 on host
    b: torch.Tensor  # 6 J^T r, float64 on host
    residual: float  # sum of squared residuals
    count: int  # accepted correspondences
    num_candidates: int  # pixels that were tested

    @classmethod
    def accumulate(
        cls,
        jacobian: torch.Tensor,
        residual: torch.Tensor,
        count: Optional[int] = None,
        num_candidates: Optional[int] = None,
    ) -> "LinearSystem":
        """
        Reduce stacked Jacobian rows and residuals to the normal equations.

        Args:
            jacobian: Jacobian rows (M, 6)
            residual: Residuals (M,)
            count: Number of correspondences (defaults to M)
            num_candidates: Number of tested pixels (defaults to count)

        Returns:
            LinearSystem on the host
        """
        J = jacobian.to(torch.float64)
        r = residual.to(torch.float64)

        A = torch.matmul(J.t(), J).to(HOST)
        b = torch.matmul(J.t(), r).to(HOST)
        sq_sum = float(torch.dot(r, r))

        count = int(J.shape[0]) if count is None else int(count)
        num_candidates = count if num_candidates is None else int(num_candidates)

        return cls(A, b, sq_sum, count, num_candidates)

    @property
    def rmse(self) -> float:
        """Root mean squared residual over accepted correspondences."""
        if self.count == 0:
            return 0.0
        return math.sqrt(self.residual / self.count)

    @property
    def fitness(self) -> float:
        """Ratio of accepted correspondences to tested pixels."""
        if self.num_candidates == 0:
            return 0.0
        return self.count / self.num_candidates

    def solve(self) -> torch.Tensor:
        """
        Solve for the pose increment.

        Returns:
            6D increment (rotation first), float64 on host

        Raises:
            NumericalError: If the system is non-finite, singular or
                ill-conditioned
        """
        if not (bool(torch.isfinite(self.A).all()) and bool(torch.isfinite(self.b).all())):
            raise NumericalError("Non-finite values in the normal equations")

        eigenvalues = torch.linalg.eigvalsh(self.A)
        largest = float(eigenvalues[-1])
        smallest = float(eigenvalues[0])
        if largest <= 0.0 or smallest / largest < MIN_RECIPROCAL_CONDITION:
            raise NumericalError(
                f"Singular or ill-conditioned 6x6 system "
                f"(eigenvalues {smallest:.3e} .. {largest:.3e})"
            )

        x = torch.linalg.solve(self.A, -self.b)
        if not bool(torch.isfinite(x).all()):
            raise NumericalError(f"Non-finite pose increment {x.tolist()}")

        return x
