"""
Odometry module for the map tracker.

This module contains the camera pose type and the frame-to-frame estimators:
PnP against map points and sparse optical flow.
"""

from .base import BaseOdometry, FramePose, OdometryStatus
from .optical_flow import OpticalFlowTracker
from .pnp import PnPSolver

__all__ = [
    "BaseOdometry",
    "FramePose",
    "OdometryStatus",
    "PnPSolver",
    "OpticalFlowTracker",
]
