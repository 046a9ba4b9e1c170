import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from .feature_extraction.feature_matcher import ORBMatcher
from .odometry.base import FramePose


@dataclass
class Reconstruction:
    """Result of a successful two-view initialization."""

    pose: FramePose  # Pose of the current frame (Tcw), reference at identity
    # Reference feature index -> (current feature index, 3D point)
    points: Dict[int, Tuple[int, np.ndarray]] = field(default_factory=dict)
    parallax_deg: float = 0.0


class MonocularInitializer:
    """
    Two-view initialization of a monocular map.

    The relative pose between a reference frame and the current frame is
    estimated from an essential matrix with RANSAC; matched features are
    then triangulated and filtered by cheirality, reprojection error and
    parallax.
    """

    def __init__(self, config: Dict = None, matcher: Optional[ORBMatcher] = None):
        """
        Initialize the initializer.

        Args:
            config: Configuration dictionary with the following keys:
                - min_features: Minimum keypoints in both frames
                - min_matches: Minimum matches between the frames
                - min_triangulated: Minimum triangulated points
                - min_parallax_deg: Minimum median parallax in degrees
                - search_window: Matching window in pixels
            matcher: Descriptor matcher
        """
        self.config = config if config is not None else {}
        self.min_features = self.config.get("min_features", 100)
        self.min_matches = self.config.get("min_matches", 100)
        self.min_triangulated = self.config.get("min_triangulated", 50)
        self.min_parallax_deg = self.config.get("min_parallax_deg", 1.0)
        self.search_window = self.config.get("search_window", 100)
        self.max_reprojection_error = 4.0

        self.matcher = matcher or ORBMatcher(nn_ratio=0.9, check_orientation=True)
        self.reference = None

        self.logger = logging.getLogger(self.__class__.__name__)

    def reset(self):
        self.reference = None

    def process(self, frame) -> Optional[Reconstruction]:
        """
        Feed a frame to the initializer.

        The first frame with enough features becomes the reference. Later
        frames are matched against it; a frame with too few features or
        matches drops the reference.

        Args:
            frame: New frame

        Returns:
            Reconstruction relative to the reference frame, or None
        """
        if self.reference is None:
            if frame.N > self.min_features:
                self.reference = frame
                self.logger.debug(f"Frame {frame.id} selected as initialization reference")
            return None

        if frame.N <= self.min_features:
            self.reset()
            return None

        matches = self.matcher.search_for_initialization(
            self.reference, frame, self.search_window
        )
        if len(matches) < self.min_matches:
            self.logger.debug(
                f"Initialization: only {len(matches)} matches, resetting reference"
            )
            self.reset()
            return None

        return self.reconstruct(self.reference, frame, matches)

    def reconstruct(
        self, reference, current, matches: List[Tuple[int, int]]
    ) -> Optional[Reconstruction]:
        """
        Estimate relative pose and structure from matched features.

        Args:
            reference: Reference frame (placed at the origin)
            current: Current frame
            matches: (reference index, current index) pairs

        Returns:
            Reconstruction or None if the geometry is not good enough
        """
        K = np.asarray(current.camera.K, dtype=np.float64)
        pts_ref = np.array(
            [reference.keypoints_un[i].pt() for i, _ in matches], dtype=np.float64
        )
        pts_cur = np.array(
            [current.keypoints_un[j].pt() for _, j in matches], dtype=np.float64
        )

        try:
            E, mask = cv2.findEssentialMat(
                pts_ref, pts_cur, cameraMatrix=K, method=cv2.RANSAC, prob=0.999, threshold=1.0
            )
            if E is None or mask is None or E.shape != (3, 3):
                return None
            _, R, t, pose_mask = cv2.recoverPose(E, pts_ref, pts_cur, K, mask=mask.copy())
        except cv2.error as e:
            self.logger.error(f"Essential matrix estimation failed: {e}")
            return None

        inliers = pose_mask.reshape(-1).astype(bool)
        if inliers.sum() < self.min_triangulated:
            return None

        P0 = K @ np.hstack([np.eye(3), np.zeros((3, 1))])
        P1 = K @ np.hstack([R, t.reshape(3, 1)])
        X_h = cv2.triangulatePoints(P0, P1, pts_ref.T, pts_cur.T)
        X = (X_h[:3, :] / (X_h[3:4, :] + 1e-12)).T

        # Cheirality
        z0 = X[:, 2]
        X_cur = (R @ X.T + t.reshape(3, 1)).T
        z1 = X_cur[:, 2]
        good = inliers & (z0 > 1e-6) & (z1 > 1e-6) & np.isfinite(X).all(axis=1)

        # Reprojection error in both views
        proj0 = (P0 @ np.hstack([X, np.ones((len(X), 1))]).T).T
        proj0 = proj0[:, :2] / (proj0[:, 2:3] + 1e-12)
        proj1 = (P1 @ np.hstack([X, np.ones((len(X), 1))]).T).T
        proj1 = proj1[:, :2] / (proj1[:, 2:3] + 1e-12)
        e0 = np.linalg.norm(proj0 - pts_ref, axis=1)
        e1 = np.linalg.norm(proj1 - pts_cur, axis=1)
        good &= (e0 < self.max_reprojection_error) & (e1 < self.max_reprojection_error)

        if good.sum() < self.min_triangulated:
            self.logger.debug(f"Initialization: only {int(good.sum())} points triangulated")
            return None

        # Parallax between the viewing rays of both cameras
        center1 = -R.T @ t.reshape(3)
        ray0 = X / np.linalg.norm(X, axis=1, keepdims=True)
        ray1 = X - center1
        ray1 = ray1 / np.linalg.norm(ray1, axis=1, keepdims=True)
        cos_parallax = np.clip((ray0 * ray1).sum(axis=1), -1.0, 1.0)
        parallax = np.degrees(np.arccos(cos_parallax[good]))
        median_parallax = float(np.median(parallax))
        if median_parallax < self.min_parallax_deg:
            self.logger.debug(
                f"Initialization: median parallax {median_parallax:.2f} deg too low"
            )
            return None

        points = {}
        for keep, (i, j), point in zip(good, matches, X):
            if keep:
                points[i] = (j, point)

        pose = FramePose.from_numpy(R, t.reshape(3), current.timestamp)
        self.logger.info(
            f"Initialized from frames {reference.id} and {current.id}: "
            f"{len(points)} points, parallax {median_parallax:.2f} deg"
        )
        return Reconstruction(pose=pose, points=points, parallax_deg=median_parallax)
