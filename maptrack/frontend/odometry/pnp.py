from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import torch

from .base import BaseOdometry, FramePose, OdometryStatus


class PnPSolver(BaseOdometry):
    """
    Perspective-n-Point (PnP) pose hypothesis with RANSAC.

    Estimates the camera pose from 3D-2D correspondences between map points
    and undistorted keypoints. Used by relocalization to get a first pose
    before refinement.
    """

    def __init__(self, config: Dict = None):
        """
        Initialize PnP solver.

        Args:
            config: Configuration dictionary with the following keys:
                - min_inliers: Minimum number of RANSAC inliers
                - ransac_iterations: Maximum number of RANSAC iterations
                - ransac_threshold: Reprojection error threshold in pixels
                - confidence: RANSAC confidence level
        """
        super().__init__(config)

        self.min_inliers = self.config.get("min_inliers", 10)
        self.ransac_iterations = self.config.get("ransac_iterations", 300)
        self.ransac_threshold = self.config.get("ransac_threshold", 2.5)
        self.confidence = self.config.get("confidence", 0.99)

    def solve(
        self,
        object_points: torch.Tensor,
        image_points: torch.Tensor,
        camera_matrix: np.ndarray,
    ) -> Tuple[Optional[FramePose], List[int]]:
        """
        Solve the PnP problem to get camera pose.

        Args:
            object_points: 3D points in world coordinates (N, 3)
            image_points: Undistorted 2D points in the image plane (N, 2)
            camera_matrix: Intrinsics (3x3)

        Returns:
            Tuple of (pose Tcw or None, indices of inlier correspondences)
        """
        self.reset()
        n_points = object_points.shape[0]

        # EPnP needs at least four correspondences
        if n_points < max(4, self.min_inliers):
            self.logger.debug(
                f"Not enough points for PnP: {n_points} < {max(4, self.min_inliers)}"
            )
            self.status = OdometryStatus.INSUFFICIENT_POINTS
            return None, []

        object_np = np.ascontiguousarray(
            object_points.detach().cpu().numpy(), dtype=np.float64
        ).reshape(-1, 1, 3)
        image_np = np.ascontiguousarray(
            image_points.detach().cpu().numpy(), dtype=np.float64
        ).reshape(-1, 1, 2)

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                object_np,
                image_np,
                np.asarray(camera_matrix, dtype=np.float64),
                None,
                iterationsCount=self.ransac_iterations,
                reprojectionError=self.ransac_threshold,
                confidence=self.confidence,
                flags=cv2.SOLVEPNP_EPNP,
            )
        except cv2.error as e:
            self.logger.error(f"PnP solver failed: {e}")
            self.status = OdometryStatus.FAILED
            return None, []

        if not success or inliers is None:
            self.status = OdometryStatus.FAILED
            return None, []

        inlier_indices = [int(i) for i in inliers.reshape(-1)]
        self.num_inliers = len(inlier_indices)
        if self.num_inliers < self.min_inliers:
            self.logger.debug(
                f"Not enough inliers for PnP: {self.num_inliers} < {self.min_inliers}"
            )
            self.status = OdometryStatus.INSUFFICIENT_POINTS
            return None, inlier_indices

        return self.pose_from_rvec_tvec(rvec, tvec), inlier_indices
