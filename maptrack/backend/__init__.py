"""
Backend module for the map tracker.

Optimization lives in :mod:`maptrack.backend.optimization` and is imported
from there directly.
"""

from .se3 import DTYPE, SE3, to_tensor

__all__ = ["DTYPE", "SE3", "to_tensor"]
