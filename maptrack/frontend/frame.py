import logging
import math
from typing import Dict, List, Optional

import cv2
import numpy as np
import torch

from .camera import GridGeometry, PinholeCamera, compute_image_bounds
from .feature_extraction.base import (
    BaseFeatureExtractor,
    KeyPoint,
    compute_scale_pyramid,
)
from .odometry.base import FramePose

logger = logging.getLogger(__name__)


class FeatureGrid:
    """
    Spatial bucket index over undistorted keypoints.

    Built once when a frame (or keyframe) is created; keypoints falling
    outside the grid are not indexed and never returned by radius queries.
    """

    def __init__(self, geometry: GridGeometry, keypoints: List[KeyPoint]):
        self.geometry = geometry
        self.keypoints = keypoints
        self.cells: List[List[List[int]]] = [
            [[] for _ in range(geometry.rows)] for _ in range(geometry.cols)
        ]
        for idx, kp in enumerate(keypoints):
            cell = geometry.cell_of(kp.x, kp.y)
            if cell is not None:
                self.cells[cell[0]][cell[1]].append(idx)

    def features_in_radius(
        self,
        x: float,
        y: float,
        r: float,
        min_level: int = -1,
        max_level: int = -1,
    ) -> List[int]:
        """
        Indices of keypoints inside the square window of half-size r.

        Args:
            x: Window centre x
            y: Window centre y
            r: Half window size (|dx| < r and |dy| < r)
            min_level: Minimum pyramid level
            max_level: Maximum pyramid level, unbounded when negative

        Returns:
            List of keypoint indices
        """
        geometry = self.geometry
        bounds = geometry.bounds

        min_cell_x = max(
            0, int(math.floor((x - bounds.min_x - r) * geometry.element_width_inv))
        )
        if min_cell_x >= geometry.cols:
            return []
        max_cell_x = min(
            geometry.cols - 1,
            int(math.ceil((x - bounds.min_x + r) * geometry.element_width_inv)),
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(
            0, int(math.floor((y - bounds.min_y - r) * geometry.element_height_inv))
        )
        if min_cell_y >= geometry.rows:
            return []
        max_cell_y = min(
            geometry.rows - 1,
            int(math.ceil((y - bounds.min_y + r) * geometry.element_height_inv)),
        )
        if max_cell_y < 0:
            return []

        check_levels = min_level > 0 or max_level >= 0
        indices = []
        for ix in range(min_cell_x, max_cell_x + 1):
            column = self.cells[ix]
            for iy in range(min_cell_y, max_cell_y + 1):
                for idx in column[iy]:
                    kp = self.keypoints[idx]
                    if check_levels:
                        if kp.octave < min_level:
                            continue
                        if max_level >= 0 and kp.octave > max_level:
                            continue
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        indices.append(idx)
        return indices


class Frame:
    """
    Snapshot of the features extracted from one camera image.

    A frame links every feature to at most one map point; the links are
    MapPoint objects and are only valid while the frame is the current or
    last frame of the tracker.
    """

    def __init__(
        self,
        frame_id: int,
        timestamp: float,
        camera: PinholeCamera,
        keypoints: List[KeyPoint],
        descriptors: torch.Tensor,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        geometry: Optional[GridGeometry] = None,
        image: Optional[np.ndarray] = None,
        image_size: Optional[tuple] = None,
    ):
        """
        Initialize frame from already extracted features.

        Args:
            frame_id: Monotonic frame id
            timestamp: Image timestamp in seconds
            camera: Camera intrinsics and distortion
            keypoints: Raw (distorted) keypoints
            descriptors: (N, 32) uint8 descriptors
            scale_factor: Pyramid scale factor used by the extractor
            n_levels: Number of pyramid levels used by the extractor
            geometry: Grid geometry; computed from the image size when None
            image: Grayscale image, kept for optical flow
            image_size: (width, height) used when no image is given
        """
        self.id = frame_id
        self.timestamp = timestamp
        self.camera = camera
        self.image = image

        if len(keypoints) != descriptors.shape[0]:
            raise ValueError(
                f"{len(keypoints)} keypoints but {descriptors.shape[0]} descriptors"
            )

        self.scale_factor = scale_factor
        self.n_levels = n_levels
        self.log_scale_factor = math.log(scale_factor)
        (
            self.scale_factors,
            self.level_sigma2,
            self.inv_level_sigma2,
        ) = compute_scale_pyramid(scale_factor, n_levels)

        if geometry is None:
            if image is not None:
                height, width = image.shape[:2]
            elif image_size is not None:
                width, height = image_size
            else:
                raise ValueError("Frame needs a grid geometry, an image or a size")
            geometry = GridGeometry(compute_image_bounds(camera, width, height))
        self.geometry = geometry

        self.pose: Optional[FramePose] = None
        self._camera_center: Optional[torch.Tensor] = None
        self.reference_keyframe = None

        self.bow_vector: Dict[int, float] = {}
        self.feature_vector: Dict[int, List[int]] = {}

        self._set_features(keypoints, descriptors)

    @classmethod
    def from_image(
        cls,
        frame_id: int,
        image: np.ndarray,
        timestamp: float,
        camera: PinholeCamera,
        extractor: BaseFeatureExtractor,
        geometry: Optional[GridGeometry] = None,
    ) -> "Frame":
        """
        Create a frame by extracting features from an image.

        Extraction failures are logged and produce a frame without features.
        """
        try:
            keypoints, descriptors = extractor.detect_and_compute(image)
        except cv2.error as e:
            logger.error(f"Feature extraction failed for frame {frame_id}: {e}")
            keypoints, descriptors = [], extractor.empty_descriptors()

        return cls(
            frame_id,
            timestamp,
            camera,
            keypoints,
            descriptors,
            scale_factor=extractor.scale_factor,
            n_levels=extractor.n_levels,
            geometry=geometry,
            image=image,
        )

    def _set_features(self, keypoints: List[KeyPoint], descriptors: torch.Tensor):
        self.keypoints = keypoints
        self.descriptors = descriptors
        self.N = len(keypoints)

        if self.N > 0 and self.camera.has_distortion:
            raw = np.array([kp.pt() for kp in keypoints], dtype=np.float64)
            undistorted = self.camera.undistort_points(raw)
            self.keypoints_un = [
                kp.moved_to(u[0], u[1]) for kp, u in zip(keypoints, undistorted)
            ]
        else:
            self.keypoints_un = list(keypoints)

        self.grid = FeatureGrid(self.geometry, self.keypoints_un)
        self.map_points: List[Optional[object]] = [None] * self.N
        self.outliers: List[bool] = [False] * self.N

    @property
    def bounds(self):
        return self.geometry.bounds

    def assign_tracked_features(self, keypoints: List[KeyPoint], map_points: List):
        """
        Replace the features with keypoints tracked by optical flow.

        Each tracked keypoint keeps its map point link and takes the map
        point's representative descriptor.
        """
        descriptors = []
        for mp in map_points:
            descriptor = mp.get_descriptor()
            descriptors.append(descriptor)
        if descriptors:
            stacked = torch.stack(descriptors)
        else:
            stacked = torch.zeros((0, 32), dtype=torch.uint8)

        self._set_features(keypoints, stacked)
        self.map_points = list(map_points)
        self.bow_vector = {}
        self.feature_vector = {}

    def set_pose(self, pose: FramePose):
        self.pose = pose.copy()
        self._camera_center = self.pose.camera_center()

    def has_pose(self) -> bool:
        return self.pose is not None

    def get_camera_center(self) -> torch.Tensor:
        return self._camera_center

    def compute_bow(self, vocabulary, levels_up: int = 2):
        if not self.bow_vector and self.N > 0:
            self.bow_vector, self.feature_vector = vocabulary.transform(
                self.descriptors, levels_up
            )

    def features_in_radius(
        self, x: float, y: float, r: float, min_level: int = -1, max_level: int = -1
    ) -> List[int]:
        return self.grid.features_in_radius(x, y, r, min_level, max_level)

    def is_in_frustum(self, map_point, viewing_cos_limit: float) -> bool:
        """
        Check whether a map point should be visible in this frame.

        On success the projection, predicted scale level and viewing angle
        are cached on the map point for the projection search.

        Args:
            map_point: Map point to test
            viewing_cos_limit: Minimum cosine between viewing ray and normal

        Returns:
            True if the point projects inside the image within its valid
            scale range and viewing angle
        """
        map_point.track_in_view = False

        position = map_point.get_world_pos()
        point_cam = self.pose.transform_points(position)
        z = float(point_cam[2])
        if z < 0.0:
            return False

        inv_z = 1.0 / z
        u = self.camera.fx * float(point_cam[0]) * inv_z + self.camera.cx
        v = self.camera.fy * float(point_cam[1]) * inv_z + self.camera.cy
        if not self.bounds.contains(u, v):
            return False

        max_distance = map_point.get_max_distance_invariance()
        min_distance = map_point.get_min_distance_invariance()
        ray = position - self._camera_center
        dist = float(torch.linalg.norm(ray))
        if dist < min_distance or dist > max_distance:
            return False

        view_cos = float(torch.dot(ray, map_point.get_normal())) / dist
        if view_cos < viewing_cos_limit:
            return False

        map_point.track_in_view = True
        map_point.track_proj_x = u
        map_point.track_proj_y = v
        map_point.track_scale_level = map_point.predict_scale(dist, self)
        map_point.track_view_cos = view_cos
        return True

    def tracked_map_points(self) -> List:
        """Map points currently linked to non-outlier features."""
        return [
            mp
            for mp, outlier in zip(self.map_points, self.outliers)
            if mp is not None and not outlier
        ]

    def __repr__(self) -> str:
        return f"Frame(id={self.id}, t={self.timestamp}, N={self.N})"
