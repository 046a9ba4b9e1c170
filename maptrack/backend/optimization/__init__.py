"""
Optimization module for the map tracker backend.

This module contains the motion-only pose optimizer used while tracking.
"""

from .base import OptimizationResult, Optimizer
from .pose_optimizer import PoseOptimizer

__all__ = [
    "Optimizer",
    "OptimizationResult",
    "PoseOptimizer",
]
