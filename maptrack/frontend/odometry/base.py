import logging
from enum import Enum
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import torch

from ...backend.se3 import DTYPE, to_tensor


class OdometryStatus(Enum):
    """Outcome of the last pose estimation attempt."""

    OK = 0
    FAILED = 1
    INSUFFICIENT_POINTS = 2


class FramePose:
    """
    Represents a rigid camera pose.

    Throughout the tracker a pose stored on a frame or keyframe maps world
    coordinates into the camera (Tcw).
    """

    def __init__(
        self, rotation: torch.Tensor, translation: torch.Tensor, timestamp: float = None
    ):
        """
        Initialize frame pose.

        Args:
            rotation: Rotation matrix (3x3)
            translation: Translation vector (3)
            timestamp: Optional timestamp
        """
        self.rotation = to_tensor(rotation)
        self.translation = to_tensor(translation).reshape(3)
        self.timestamp = timestamp

    @property
    def device(self) -> torch.device:
        """Get device of tensors."""
        return self.rotation.device

    def as_matrix(self) -> torch.Tensor:
        """
        Return pose as a 4x4 transformation matrix.

        Returns:
            4x4 transformation matrix (rotation and translation)
        """
        T = torch.eye(4, dtype=DTYPE, device=self.device)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> "FramePose":
        """
        Compute the inverse of this pose.

        Returns:
            Inverse pose
        """
        inv_rotation = self.rotation.transpose(0, 1)
        inv_translation = -torch.matmul(inv_rotation, self.translation)
        return FramePose(inv_rotation, inv_translation, self.timestamp)

    def compose(self, other: "FramePose") -> "FramePose":
        """
        Compose this pose with another pose: self * other

        Args:
            other: Other pose to compose with

        Returns:
            Composed pose
        """
        new_rotation = torch.matmul(self.rotation, other.rotation)
        new_translation = (
            torch.matmul(self.rotation, other.translation) + self.translation
        )
        new_timestamp = (
            other.timestamp if other.timestamp is not None else self.timestamp
        )
        return FramePose(new_rotation, new_translation, new_timestamp)

    def camera_center(self) -> torch.Tensor:
        """Position of the camera in world coordinates (-R^T t)."""
        return -torch.matmul(self.rotation.t(), self.translation)

    def transform_points(self, points: torch.Tensor) -> torch.Tensor:
        """Apply the pose to (N, 3) points or a single 3-vector."""
        if points.dim() == 1:
            return torch.matmul(self.rotation, points) + self.translation
        return torch.matmul(points, self.rotation.t()) + self.translation

    def copy(self) -> "FramePose":
        return FramePose(
            self.rotation.clone(), self.translation.clone(), self.timestamp
        )

    @classmethod
    def from_matrix(cls, matrix, timestamp: float = None) -> "FramePose":
        """
        Create a pose from a 4x4 transformation matrix.

        Args:
            matrix: 4x4 transformation matrix (tensor or array)
            timestamp: Optional timestamp

        Returns:
            FramePose object
        """
        matrix = to_tensor(matrix)
        if tuple(matrix.shape) not in ((4, 4), (3, 4)):
            raise ValueError(f"Expected 4x4 pose matrix, got {tuple(matrix.shape)}")
        return cls(matrix[:3, :3].clone(), matrix[:3, 3].clone(), timestamp)

    @classmethod
    def identity(cls, device: torch.device = None) -> "FramePose":
        """
        Create an identity pose.

        Args:
            device: PyTorch device

        Returns:
            Identity pose
        """
        rotation = torch.eye(3, dtype=DTYPE, device=device)
        translation = torch.zeros(3, dtype=DTYPE, device=device)
        return cls(rotation, translation)

    def to_numpy(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Convert to NumPy arrays.

        Returns:
            Tuple of (rotation, translation) as NumPy arrays
        """
        return self.rotation.cpu().numpy(), self.translation.cpu().numpy()

    def matrix_numpy(self) -> np.ndarray:
        return self.as_matrix().cpu().numpy()

    @classmethod
    def from_numpy(
        cls,
        rotation: np.ndarray,
        translation: np.ndarray,
        timestamp: float = None,
    ) -> "FramePose":
        """
        Create a pose from NumPy arrays.

        Args:
            rotation: Rotation matrix as NumPy array
            translation: Translation vector as NumPy array
            timestamp: Optional timestamp

        Returns:
            FramePose object
        """
        return cls(
            torch.tensor(np.asarray(rotation, dtype=np.float64)),
            torch.tensor(np.asarray(translation, dtype=np.float64).reshape(3)),
            timestamp,
        )

    def __repr__(self) -> str:
        return f"FramePose(R={self.rotation.tolist()}, t={self.translation.tolist()})"


class BaseOdometry:
    """Common state shared by the geometric pose estimators."""

    def __init__(self, config: Dict = None):
        """
        Initialize pose estimator.

        Args:
            config: Configuration dictionary
        """
        self.config = config if config is not None else {}
        self.status = OdometryStatus.OK
        self.num_inliers = 0

        # Initialize logger
        self.logger = logging.getLogger(self.__class__.__name__)

    def reset(self):
        """Reset the outcome of the last estimation."""
        self.status = OdometryStatus.OK
        self.num_inliers = 0

    def get_status(self) -> OdometryStatus:
        return self.status

    @staticmethod
    def pose_from_rvec_tvec(
        rvec: np.ndarray, tvec: np.ndarray, timestamp: Optional[float] = None
    ) -> FramePose:
        """Build a pose from an OpenCV Rodrigues vector and translation."""
        rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
        return FramePose.from_numpy(rotation, np.asarray(tvec).reshape(3), timestamp)

    @staticmethod
    def pose_to_rvec_tvec(pose: FramePose) -> Tuple[np.ndarray, np.ndarray]:
        """Convert a pose into an OpenCV Rodrigues vector and translation."""
        rotation, translation = pose.to_numpy()
        rvec, _ = cv2.Rodrigues(np.ascontiguousarray(rotation, dtype=np.float64))
        return rvec, np.ascontiguousarray(translation, dtype=np.float64).reshape(3, 1)
