from typing import Dict, Optional

import cv2
import numpy as np

from .base import BaseOdometry, FramePose, OdometryStatus


class OpticalFlowTracker(BaseOdometry):
    """
    Frame-to-frame tracking of map-backed keypoints with pyramidal
    Lucas-Kanade optical flow, followed by PnP refinement of the last pose.

    On success the current frame's features are replaced by the tracked
    keypoints, each linked to its map point.
    """

    def __init__(self, config: Dict = None):
        """
        Initialize optical flow tracker.

        Args:
            config: Configuration dictionary with the following keys:
                - min_keypoints: Minimum number of keypoints in the last frame
                - min_tracked_ratio: Fraction of points that must be tracked
                - window_size: Lucas-Kanade window size
                - max_level: Number of pyramid levels
        """
        super().__init__(config)

        self.min_keypoints = self.config.get("min_keypoints", 100)
        self.min_tracked_ratio = self.config.get("min_tracked_ratio", 0.75)
        window_size = self.config.get("window_size", 15)
        self.window_size = (window_size, window_size)
        self.max_level = self.config.get("max_level", 3)
        self.criteria = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, 1, 0.03)
        self.min_eig_threshold = 0.01

    def track(self, last_frame, current_frame) -> Optional[FramePose]:
        """
        Track the last frame's map points into the current frame.

        Args:
            last_frame: Previous frame with image, pose and map point links
            current_frame: New frame with image

        Returns:
            Estimated pose (Tcw) or None if tracking failed
        """
        self.reset()

        if (
            last_frame.image is None
            or current_frame.image is None
            or last_frame.pose is None
            or last_frame.N < self.min_keypoints
        ):
            self.status = OdometryStatus.INSUFFICIENT_POINTS
            return None

        indices = [
            i
            for i, mp in enumerate(last_frame.map_points)
            if mp is not None
            and not last_frame.outliers[i]
            and not mp.is_bad()
            and mp.get_descriptor() is not None
        ]
        if len(indices) < 6:
            self.status = OdometryStatus.INSUFFICIENT_POINTS
            return None

        prev_points = np.array(
            [last_frame.keypoints[i].pt() for i in indices], dtype=np.float32
        ).reshape(-1, 1, 2)

        try:
            next_points, status, _ = cv2.calcOpticalFlowPyrLK(
                last_frame.image,
                current_frame.image,
                prev_points,
                None,
                winSize=self.window_size,
                maxLevel=self.max_level,
                criteria=self.criteria,
                minEigThreshold=self.min_eig_threshold,
            )
        except cv2.error as e:
            self.logger.error(f"Optical flow failed: {e}")
            self.status = OdometryStatus.FAILED
            return None

        if next_points is None or status is None:
            self.status = OdometryStatus.FAILED
            return None

        tracked = status.reshape(-1) == 1
        n_tracked = int(tracked.sum())
        if n_tracked < self.min_tracked_ratio * len(indices) or n_tracked < 6:
            self.logger.debug(
                f"Optical flow tracked {n_tracked} of {len(indices)} points"
            )
            self.status = OdometryStatus.INSUFFICIENT_POINTS
            return None

        next_points = next_points.reshape(-1, 2)
        keypoints = []
        map_points = []
        for tracked_ok, i, point in zip(tracked, indices, next_points):
            if tracked_ok:
                keypoints.append(last_frame.keypoints[i].moved_to(point[0], point[1]))
                map_points.append(last_frame.map_points[i])

        object_points = np.array(
            [mp.get_world_pos().numpy() for mp in map_points], dtype=np.float64
        )
        image_points = np.array([kp.pt() for kp in keypoints], dtype=np.float64)
        rvec, tvec = self.pose_to_rvec_tvec(last_frame.pose)

        camera = current_frame.camera
        try:
            success, rvec, tvec = cv2.solvePnP(
                object_points,
                image_points,
                camera.K,
                camera.dist_coeffs,
                rvec,
                tvec,
                useExtrinsicGuess=True,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            self.logger.error(f"PnP after optical flow failed: {e}")
            self.status = OdometryStatus.FAILED
            return None

        if not success:
            self.status = OdometryStatus.FAILED
            return None

        current_frame.assign_tracked_features(keypoints, map_points)
        self.num_inliers = len(map_points)
        return self.pose_from_rvec_tvec(rvec, tvec, current_frame.timestamp)
