from typing import List, Tuple

import cv2
import numpy as np
import torch

# ORB descriptors are 256 bits.
DESCRIPTOR_BYTES = 32


class KeyPoint:
    """Class representing a keypoint."""

    def __init__(
        self,
        x: float,
        y: float,
        response: float = 0.0,
        size: float = 31.0,
        angle: float = -1.0,
        octave: int = 0,
    ):
        self.x = float(x)
        self.y = float(y)
        self.response = float(response)  # Strength of the keypoint
        self.size = float(size)  # Diameter of the meaningful keypoint neighborhood
        self.angle = float(angle)  # Orientation in degrees (-1 if not applicable)
        self.octave = int(
            octave
        )  # Octave (pyramid layer) from which the keypoint was extracted

    def pt(self) -> Tuple[float, float]:
        """Get point coordinates."""
        return (self.x, self.y)

    def moved_to(self, x: float, y: float) -> "KeyPoint":
        """Copy of this keypoint at another position."""
        return KeyPoint(x, y, self.response, self.size, self.angle, self.octave)

    @staticmethod
    def from_cv(kp: cv2.KeyPoint) -> "KeyPoint":
        return KeyPoint(
            x=kp.pt[0],
            y=kp.pt[1],
            response=kp.response,
            size=kp.size,
            angle=kp.angle,
            octave=kp.octave,
        )

    def to_row(self) -> List[float]:
        """Row layout used by OpenCV's keypoint serialization."""
        return [self.x, self.y, self.size, self.angle, self.response, self.octave, -1]

    @staticmethod
    def from_row(row) -> "KeyPoint":
        return KeyPoint(
            x=row[0],
            y=row[1],
            size=row[2],
            angle=row[3],
            response=row[4],
            octave=int(round(row[5])),
        )

    def __repr__(self) -> str:
        return f"KeyPoint(x={self.x:.2f}, y={self.y:.2f}, octave={self.octave})"


def keypoints_to_array(keypoints: List[KeyPoint]) -> np.ndarray:
    """Stack keypoints into an (N, 7) float32 array (OpenCV keypoint layout)."""
    if not keypoints:
        return np.zeros((0, 7), dtype=np.float32)
    return np.array([kp.to_row() for kp in keypoints], dtype=np.float32)


def keypoints_from_array(rows: np.ndarray) -> List[KeyPoint]:
    rows = np.asarray(rows, dtype=np.float64)
    if rows.size == 0:
        return []
    return [KeyPoint.from_row(row) for row in rows.reshape(-1, rows.shape[-1])]


def compute_scale_pyramid(
    scale_factor: float, n_levels: int
) -> Tuple[List[float], List[float], List[float]]:
    """
    Compute the per-level scale information of an image pyramid.

    Args:
        scale_factor: Scale factor between consecutive levels
        n_levels: Number of pyramid levels

    Returns:
        Tuple of (scale_factors, level_sigma2, inv_level_sigma2)
    """
    scale_factors = [1.0]
    level_sigma2 = [1.0]
    for level in range(1, n_levels):
        scale_factors.append(scale_factors[level - 1] * scale_factor)
        level_sigma2.append(scale_factors[level] * scale_factors[level])
    inv_level_sigma2 = [1.0 / s for s in level_sigma2]
    return scale_factors, level_sigma2, inv_level_sigma2


class BaseFeatureExtractor:
    """Base class for feature extraction.

    This class defines the interface for feature extraction and carries the
    scale pyramid information shared with frames and keyframes."""

    def __init__(
        self, max_features: int = 1000, scale_factor: float = 1.2, n_levels: int = 8
    ):
        self.max_features = max_features
        self.scale_factor = scale_factor
        self.n_levels = n_levels
        (
            self.scale_factors,
            self.level_sigma2,
            self.inv_level_sigma2,
        ) = compute_scale_pyramid(scale_factor, n_levels)

    def detect_and_compute(
        self, image: np.ndarray
    ) -> Tuple[List[KeyPoint], torch.Tensor]:
        """
        Extract features and compute descriptors.

        Args:
            image: Grayscale image (H, W) as uint8 NumPy array

        Returns:
            Tuple of (keypoints, descriptors) where descriptors is an
            (N, 32) uint8 tensor
        """
        raise NotImplementedError("Subclasses must implement detect_and_compute")

    @staticmethod
    def empty_descriptors() -> torch.Tensor:
        return torch.zeros((0, DESCRIPTOR_BYTES), dtype=torch.uint8)

    def _preprocess_image(self, image) -> np.ndarray:
        """Preprocess image for feature extraction."""
        if isinstance(image, torch.Tensor):
            image = image.detach().cpu().numpy()
            if image.ndim == 3 and image.shape[0] in (1, 3):
                image = np.transpose(image, (1, 2, 0))

        image = np.asarray(image)
        if image.ndim == 3 and image.shape[2] == 3:
            image = cv2.cvtColor(image.astype(np.uint8), cv2.COLOR_BGR2GRAY)
        elif image.ndim == 3 and image.shape[2] == 1:
            image = image[:, :, 0]
        elif image.ndim != 2:
            raise ValueError(f"Unsupported image format with shape {image.shape}")

        if image.dtype != np.uint8:
            if image.max() <= 1.0 + 1e-6:
                image = image * 255.0
            image = np.clip(image, 0, 255).astype(np.uint8)

        return np.ascontiguousarray(image)
