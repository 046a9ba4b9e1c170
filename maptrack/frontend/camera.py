"""
Camera geometry shared by frames and keyframes.

The image bounds and the feature grid geometry are derived once from the
first frame seen with a given calibration. The tracker owns the resulting
:class:`GridGeometry` and hands it to every new frame until the
calibration changes.
"""
import math
from typing import Optional, Tuple

import cv2
import numpy as np
import torch

FRAME_GRID_COLS = 64
FRAME_GRID_ROWS = 48


class PinholeCamera:
    """Pinhole camera with optional radial-tangential distortion."""

    def __init__(self, camera_matrix, dist_coeffs=None):
        """
        Initialize camera.

        Args:
            camera_matrix: 3x3 intrinsics matrix
            dist_coeffs: Distortion coefficients (k1, k2, p1, p2[, k3])
        """
        K = np.asarray(camera_matrix, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"Camera matrix must be 3x3, got {K.shape}")

        self.K = K
        if dist_coeffs is None:
            dist_coeffs = np.zeros(4)
        self.dist_coeffs = np.asarray(dist_coeffs, dtype=np.float64).reshape(-1)

        self.fx = float(K[0, 0])
        self.fy = float(K[1, 1])
        self.cx = float(K[0, 2])
        self.cy = float(K[1, 2])
        self.inv_fx = 1.0 / self.fx
        self.inv_fy = 1.0 / self.fy

    @property
    def has_distortion(self) -> bool:
        return self.dist_coeffs.size > 0 and self.dist_coeffs[0] != 0.0

    def same_calibration(self, other: Optional["PinholeCamera"]) -> bool:
        if other is None:
            return False
        if self.dist_coeffs.shape != other.dist_coeffs.shape:
            return False
        return np.allclose(self.K, other.K) and np.allclose(
            self.dist_coeffs, other.dist_coeffs
        )

    def undistort_points(self, points: np.ndarray) -> np.ndarray:
        """
        Undistort pixel coordinates.

        Args:
            points: Array of shape (N, 2)

        Returns:
            Undistorted pixel coordinates of shape (N, 2)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if not self.has_distortion or len(points) == 0:
            return points.copy()

        undistorted = cv2.undistortPoints(
            points.reshape(-1, 1, 2), self.K, self.dist_coeffs, P=self.K
        )
        return undistorted.reshape(-1, 2)

    def project(self, points_cam: torch.Tensor) -> torch.Tensor:
        """
        Project camera-frame points to pixels.

        Args:
            points_cam: Points of shape (N, 3) or (3,)

        Returns:
            Pixel coordinates of shape (N, 2) or (2,)
        """
        x = points_cam[..., 0]
        y = points_cam[..., 1]
        inv_z = 1.0 / points_cam[..., 2]
        u = self.fx * x * inv_z + self.cx
        v = self.fy * y * inv_z + self.cy
        return torch.stack([u, v], dim=-1)

    def __repr__(self) -> str:
        return (
            f"PinholeCamera(fx={self.fx:.2f}, fy={self.fy:.2f}, "
            f"cx={self.cx:.2f}, cy={self.cy:.2f})"
        )


class ImageBounds:
    """Extent of the undistorted image in pixels."""

    def __init__(self, min_x: float, max_x: float, min_y: float, max_y: float):
        self.min_x = float(min_x)
        self.max_x = float(max_x)
        self.min_y = float(min_y)
        self.max_y = float(max_y)

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y

    def __eq__(self, other) -> bool:
        if not isinstance(other, ImageBounds):
            return NotImplemented
        return (
            self.min_x == other.min_x
            and self.max_x == other.max_x
            and self.min_y == other.min_y
            and self.max_y == other.max_y
        )

    def __repr__(self) -> str:
        return (
            f"ImageBounds(x=[{self.min_x:.1f}, {self.max_x:.1f}], "
            f"y=[{self.min_y:.1f}, {self.max_y:.1f}])"
        )


def compute_image_bounds(camera: PinholeCamera, width: int, height: int) -> ImageBounds:
    """
    Compute the bounds of the undistorted image.

    Without distortion the bounds are the image rectangle. Otherwise the four
    corners are undistorted and the extreme coordinates are used.
    """
    if not camera.has_distortion:
        return ImageBounds(0.0, float(width), 0.0, float(height))

    corners = np.array(
        [[0.0, 0.0], [width, 0.0], [0.0, height], [width, height]], dtype=np.float64
    )
    corners = camera.undistort_points(corners)
    return ImageBounds(
        min(corners[0, 0], corners[2, 0]),
        max(corners[1, 0], corners[3, 0]),
        min(corners[0, 1], corners[1, 1]),
        max(corners[2, 1], corners[3, 1]),
    )


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


class GridGeometry:
    """Fixed-size grid over the image bounds used to bucket keypoints."""

    def __init__(
        self,
        bounds: ImageBounds,
        cols: int = FRAME_GRID_COLS,
        rows: int = FRAME_GRID_ROWS,
    ):
        width = bounds.max_x - bounds.min_x
        height = bounds.max_y - bounds.min_y
        if width <= 0 or height <= 0:
            raise ValueError(f"Degenerate image bounds: {bounds}")

        self.bounds = bounds
        self.cols = cols
        self.rows = rows
        self.element_width_inv = cols / width
        self.element_height_inv = rows / height

    def cell_of(self, x: float, y: float) -> Optional[Tuple[int, int]]:
        """Grid cell of a keypoint, or None when it falls outside the grid."""
        pos_x = _round_half_away((x - self.bounds.min_x) * self.element_width_inv)
        pos_y = _round_half_away((y - self.bounds.min_y) * self.element_height_inv)

        if pos_x < 0 or pos_x >= self.cols or pos_y < 0 or pos_y >= self.rows:
            return None
        return pos_x, pos_y
