from typing import List, Tuple

import cv2
import numpy as np
import torch

from .base import BaseFeatureExtractor, KeyPoint


class ORBFeatureExtractor(BaseFeatureExtractor):
    """ORB (Oriented FAST and Rotated BRIEF) feature detector and descriptor.

    Detection and description run through OpenCV's ORB implementation. When
    the initial FAST threshold yields fewer than half of the requested
    features, detection is repeated with the minimum threshold so that low
    texture images still produce enough keypoints for tracking."""

    def __init__(
        self,
        max_features: int = 1000,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        ini_th_fast: int = 20,
        min_th_fast: int = 7,
        patch_size: int = 31,
    ):
        """
        Initialize ORB detector.

        Args:
            max_features: Maximum number of features to detect
            scale_factor: Scale factor between levels in the image pyramid
            n_levels: Number of scale levels in the image pyramid
            ini_th_fast: Initial threshold for FAST corner detection
            min_th_fast: Fallback FAST threshold for low texture images
            patch_size: Size of patch used by the descriptor
        """
        super().__init__(max_features, scale_factor, n_levels)
        self.ini_th_fast = ini_th_fast
        self.min_th_fast = min_th_fast
        self.patch_size = patch_size

        self._orb = self._create(ini_th_fast)
        self._orb_fallback = self._create(min_th_fast)

    @classmethod
    def from_config(cls, config: dict = None) -> "ORBFeatureExtractor":
        config = config or {}
        return cls(
            max_features=config.get("max_features", 1000),
            scale_factor=config.get("scale_factor", 1.2),
            n_levels=config.get("n_levels", 8),
            ini_th_fast=config.get("ini_th_fast", 20),
            min_th_fast=config.get("min_th_fast", 7),
        )

    def _create(self, fast_threshold: int):
        return cv2.ORB_create(
            nfeatures=self.max_features,
            scaleFactor=self.scale_factor,
            nlevels=self.n_levels,
            edgeThreshold=self.patch_size,
            patchSize=self.patch_size,
            fastThreshold=fast_threshold,
        )

    def detect_and_compute(
        self, image: np.ndarray
    ) -> Tuple[List[KeyPoint], torch.Tensor]:
        """
        Extract ORB keypoints and descriptors from image.

        Args:
            image: Grayscale or BGR image

        Returns:
            Tuple of (keypoints, descriptors)
        """
        img = self._preprocess_image(image)

        cv_keypoints, descriptors = self._orb.detectAndCompute(img, None)
        if len(cv_keypoints) < self.max_features // 2:
            fallback_keypoints, fallback_descriptors = (
                self._orb_fallback.detectAndCompute(img, None)
            )
            if len(fallback_keypoints) > len(cv_keypoints):
                cv_keypoints, descriptors = fallback_keypoints, fallback_descriptors

        if descriptors is None or len(cv_keypoints) == 0:
            return [], self.empty_descriptors()

        keypoints = [KeyPoint.from_cv(kp) for kp in cv_keypoints]
        return keypoints, torch.from_numpy(np.ascontiguousarray(descriptors))
