import logging
import math
import threading
from typing import Dict, Optional

import torch

from ..backend.se3 import to_tensor
from .feature_extraction.feature_matcher import hamming_distance_matrix


class MapPoint:
    """
    A 3D landmark observed by one or more keyframes.

    Observations are stored as ``{keyframe_id: feature_index}``; keyframes
    are resolved through the owning map. A point whose last observation is
    erased is marked bad and removed from the map.
    """

    def __init__(self, point_id: int, position, reference_kf_id: int, map_=None):
        """
        Initialize map point.

        Args:
            point_id: Unique id
            position: World position (3)
            reference_kf_id: Id of the keyframe that created the point
            map_: Map owning the point and its observers
        """
        self.id = point_id
        self.first_kf_id = reference_kf_id
        self.map = map_

        self._position = to_tensor(position).reshape(3).clone()
        self._normal = torch.zeros(3, dtype=self._position.dtype)
        self._descriptor: Optional[torch.Tensor] = None
        self._min_distance = 0.0
        self._max_distance = 0.0

        self._observations: Dict[int, int] = {}
        self._reference_kf_id = reference_kf_id
        self._visible = 1
        self._found = 1
        self._bad = False

        # Scratch values written by Frame.is_in_frustum and the tracker
        self.track_in_view = False
        self.track_proj_x = 0.0
        self.track_proj_y = 0.0
        self.track_scale_level = 0
        self.track_view_cos = 0.0
        self.track_reference_for_frame = -1
        self.last_frame_seen = -1

        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_world_pos(self) -> torch.Tensor:
        with self._lock:
            return self._position.clone()

    def set_world_pos(self, position):
        with self._lock:
            self._position = to_tensor(position).reshape(3).clone()

    def get_normal(self) -> torch.Tensor:
        with self._lock:
            return self._normal.clone()

    def get_descriptor(self) -> Optional[torch.Tensor]:
        with self._lock:
            return self._descriptor

    def get_reference_keyframe_id(self) -> int:
        with self._lock:
            return self._reference_kf_id

    def set_reference_keyframe_id(self, kf_id: int):
        with self._lock:
            self._reference_kf_id = kf_id

    def get_observations(self) -> Dict[int, int]:
        with self._lock:
            return dict(self._observations)

    def observations(self) -> int:
        with self._lock:
            return len(self._observations)

    def add_observation(self, kf_id: int, feature_index: int) -> bool:
        """Record that a keyframe observes this point; no-op if it already does."""
        with self._lock:
            if kf_id in self._observations:
                return False
            self._observations[kf_id] = feature_index
            return True

    def erase_observation(self, kf_id: int):
        """
        Remove the observation of a keyframe.

        The reference keyframe moves to the first remaining observer; when no
        observer remains the point is marked bad.
        """
        with self._lock:
            if kf_id not in self._observations:
                return
            del self._observations[kf_id]
            if self._reference_kf_id == kf_id and self._observations:
                self._reference_kf_id = next(iter(self._observations))
            orphaned = not self._observations

        if orphaned:
            self.set_bad()

    def is_in_keyframe(self, kf_id: int) -> bool:
        with self._lock:
            return kf_id in self._observations

    def get_index_in_keyframe(self, kf_id: int) -> int:
        with self._lock:
            return self._observations.get(kf_id, -1)

    def set_bad(self):
        """Mark the point bad and detach it from its observers and the map."""
        with self._lock:
            if self._bad and not self._observations:
                return
            self._bad = True
            observations = dict(self._observations)
            self._observations.clear()

        if self.map is None:
            return
        for kf_id, idx in observations.items():
            keyframe = self.map.get_keyframe(kf_id)
            if keyframe is not None:
                keyframe.erase_map_point_match(idx)
        self.map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def increase_visible(self, n: int = 1):
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1):
        with self._lock:
            self._found += n

    def get_found(self) -> int:
        with self._lock:
            return self._found

    def get_visible(self) -> int:
        with self._lock:
            return self._visible

    def get_found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def _observing_keyframes(self):
        observations = self.get_observations()
        keyframes = []
        for kf_id, idx in observations.items():
            keyframe = self.map.get_keyframe(kf_id) if self.map is not None else None
            if keyframe is None or keyframe.is_bad():
                continue
            keyframes.append((keyframe, idx))
        return keyframes

    def compute_distinctive_descriptors(self):
        """
        Pick the observed descriptor with the smallest total Hamming
        distance to all other observed descriptors.
        """
        if self.is_bad():
            return

        descriptors = [
            keyframe.descriptors[idx] for keyframe, idx in self._observing_keyframes()
        ]
        if not descriptors:
            return

        stacked = torch.stack(descriptors)
        distances = hamming_distance_matrix(stacked, stacked)
        best = int(torch.argmin(distances.sum(dim=1)))

        with self._lock:
            self._descriptor = stacked[best].clone()

    def update_normal_and_depth(self):
        """
        Recompute the mean viewing direction and the scale invariance
        distances from the current observers.
        """
        if self.is_bad():
            return

        observers = self._observing_keyframes()
        if not observers:
            return

        with self._lock:
            position = self._position.clone()
            reference_id = self._reference_kf_id

        reference = None
        normal = torch.zeros(3, dtype=position.dtype)
        for keyframe, idx in observers:
            ray = position - keyframe.get_camera_center()
            normal = normal + ray / torch.linalg.norm(ray)
            if keyframe.id == reference_id:
                reference = (keyframe, idx)
        if reference is None:
            reference = observers[0]

        keyframe, idx = reference
        dist = float(torch.linalg.norm(position - keyframe.get_camera_center()))
        level = keyframe.keypoints_un[idx].octave
        level_scale_factor = keyframe.scale_factors[level]
        n_levels = keyframe.n_levels

        with self._lock:
            self._max_distance = dist * level_scale_factor
            self._min_distance = (
                self._max_distance / keyframe.scale_factors[n_levels - 1]
            )
            self._normal = normal / len(observers)

    def get_min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def get_max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame) -> int:
        """Predict the pyramid level at which the point appears at a distance."""
        with self._lock:
            ratio = self._max_distance / current_dist

        if ratio <= 0:
            return 0
        n_scale = int(math.ceil(math.log(ratio) / frame.log_scale_factor))
        return min(max(n_scale, 0), frame.n_levels - 1)

    def __repr__(self) -> str:
        return (
            f"MapPoint(id={self.id}, obs={self.observations()}, bad={self.is_bad()})"
        )
