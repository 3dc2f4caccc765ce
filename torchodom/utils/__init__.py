"""
Utility functions for evaluating odometry results.
"""

from .metrics import relative_pose_error, rotation_error_deg, translation_error

__all__ = ["relative_pose_error", "rotation_error_deg", "translation_error"]
