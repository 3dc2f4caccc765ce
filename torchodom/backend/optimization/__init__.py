"""
Optimization module for the RGB-D odometry backend.

This module contains the normal equations accumulated and solved at every
Gauss-Newton iteration.
"""

from .linear_system import LinearSystem

__all__ = ["LinearSystem"]
