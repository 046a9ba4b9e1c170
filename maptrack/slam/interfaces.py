from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np


class TrackingType(Enum):
    """Strategy that produced the pose of the last frame."""

    NONE = 0
    OPTICAL_FLOW = 1
    MOTION_MODEL = 2
    REFERENCE_KEYFRAME = 3
    RELOCALIZATION = 4
    INITIALIZATION = 5


class ImageSource(ABC):
    """Producer of timestamped camera images."""

    @abstractmethod
    def next_frame(self) -> Optional[Tuple[np.ndarray, Optional[np.ndarray], float]]:
        """
        Fetch the next image.

        Returns:
            Tuple of (grayscale image, color image or None, timestamp), or
            None when no image is available
        """
        pass

    @abstractmethod
    def calibration(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Camera calibration.

        Returns:
            Tuple of (3x3 intrinsics, distortion coefficients), or None if
            the camera is not calibrated yet
        """
        pass


class PoseSink(ABC):
    """Receiver of the estimated camera pose of every tracked frame."""

    @abstractmethod
    def update_pose(self, twc: np.ndarray, timestamp: float):
        pass


class SceneProxy(ABC):
    """Visualization collaborator notified when the persistent map changes."""

    @abstractmethod
    def update_all(self, map_):
        pass

    @abstractmethod
    def clear_all(self):
        pass

    def decorate_frame(self, keypoints: List, tracking_type: TrackingType):
        """Overlay data of the last frame; ignored unless overridden."""
        pass
