import logging
import math
import threading
from typing import Dict, List, Optional, Set

import numpy as np
import torch

from .camera import GridGeometry, PinholeCamera
from .feature_extraction.base import KeyPoint, compute_scale_pyramid
from .frame import FeatureGrid, Frame
from .odometry.base import FramePose


class Keyframe:
    """
    A frame promoted to permanent map membership.

    Besides the frame's features a keyframe owns its place in three graphs:
    the covisibility graph (weight = number of shared map points), the
    spanning tree rooted at keyframe 0, and the loop edges. Map points and
    other keyframes are referenced by id and resolved through the map.
    """

    def __init__(
        self,
        kf_id: int,
        timestamp: float,
        camera: PinholeCamera,
        keypoints: List[KeyPoint],
        keypoints_un: List[KeyPoint],
        descriptors: torch.Tensor,
        pose: FramePose,
        geometry: GridGeometry,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        map_=None,
        frame_id: int = -1,
    ):
        """
        Initialize keyframe.

        Args:
            kf_id: Unique keyframe id; 0 is the map origin
            timestamp: Timestamp of the source image
            camera: Camera intrinsics
            keypoints: Raw keypoints
            keypoints_un: Undistorted keypoints
            descriptors: (N, 32) uint8 descriptors
            pose: Camera pose (Tcw)
            geometry: Grid geometry of the source frame
            scale_factor: Pyramid scale factor
            n_levels: Number of pyramid levels
            map_: Map owning the keyframe
            frame_id: Id of the source frame
        """
        self.id = kf_id
        self.frame_id = frame_id
        self.timestamp = timestamp
        self.camera = camera
        self.map = map_

        self.keypoints = keypoints
        self.keypoints_un = keypoints_un
        self.descriptors = descriptors
        self.N = len(keypoints_un)

        self.scale_factor = scale_factor
        self.n_levels = n_levels
        self.log_scale_factor = math.log(scale_factor)
        (
            self.scale_factors,
            self.level_sigma2,
            self.inv_level_sigma2,
        ) = compute_scale_pyramid(scale_factor, n_levels)

        self.geometry = geometry
        self.grid = FeatureGrid(geometry, keypoints_un)

        self.bow_vector: Dict[int, float] = {}
        self.feature_vector: Dict[int, List[int]] = {}

        self.image: Optional[np.ndarray] = None
        self.texture_path: Optional[str] = None

        self._pose = pose.copy()
        self._camera_center = self._pose.camera_center()
        self.parent_relative_pose: Optional[FramePose] = None
        # Parent at the time the keyframe was removed from the map
        self.removed_parent: Optional["Keyframe"] = None

        self._map_point_ids: List[Optional[int]] = [None] * self.N

        self._connected_weights: Dict[int, int] = {}
        self._ordered_connected: List[int] = []
        self._ordered_weights: List[int] = []

        self._parent_id: Optional[int] = None
        self._children: Set[int] = set()
        self._loop_edges: Set[int] = set()
        self._bad = False

        # Scratch value written by the tracker when building the local map
        self.track_reference_for_frame = -1

        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_frame(cls, kf_id: int, frame: Frame, map_=None) -> "Keyframe":
        """Create a keyframe copying the data of a tracked frame."""
        keyframe = cls(
            kf_id,
            frame.timestamp,
            frame.camera,
            list(frame.keypoints),
            list(frame.keypoints_un),
            frame.descriptors.clone(),
            frame.pose,
            frame.geometry,
            scale_factor=frame.scale_factor,
            n_levels=frame.n_levels,
            map_=map_,
            frame_id=frame.id,
        )
        keyframe.bow_vector = dict(frame.bow_vector)
        keyframe.feature_vector = {k: list(v) for k, v in frame.feature_vector.items()}
        if frame.image is not None:
            keyframe.image = frame.image
        return keyframe

    @property
    def bounds(self):
        return self.geometry.bounds

    # Pose

    def get_pose(self) -> FramePose:
        with self._lock:
            return self._pose.copy()

    def get_pose_inverse(self) -> FramePose:
        with self._lock:
            return self._pose.inverse()

    def set_pose(self, pose: FramePose):
        with self._lock:
            self._pose = pose.copy()
            self._camera_center = self._pose.camera_center()

    def get_camera_center(self) -> torch.Tensor:
        with self._lock:
            return self._camera_center.clone()

    def compute_bow(self, vocabulary, levels_up: int = 2):
        if not self.bow_vector and self.N > 0:
            self.bow_vector, self.feature_vector = vocabulary.transform(
                self.descriptors, levels_up
            )

    # Map point links

    def add_map_point(self, mp_id: int, idx: int):
        with self._lock:
            self._map_point_ids[idx] = mp_id

    def erase_map_point_match(self, idx: int):
        with self._lock:
            self._map_point_ids[idx] = None

    def erase_map_point_match_by_id(self, mp_id: int):
        with self._lock:
            for idx, current in enumerate(self._map_point_ids):
                if current == mp_id:
                    self._map_point_ids[idx] = None

    def get_map_point_ids(self) -> List[Optional[int]]:
        with self._lock:
            return list(self._map_point_ids)

    def get_map_point(self, idx: int):
        with self._lock:
            mp_id = self._map_point_ids[idx]
        if mp_id is None or self.map is None:
            return None
        return self.map.get_map_point(mp_id)

    def get_map_point_matches(self) -> List:
        """Map point per feature (None where there is no live point)."""
        ids = self.get_map_point_ids()
        if self.map is None:
            return [None] * len(ids)
        return [None if mp_id is None else self.map.get_map_point(mp_id) for mp_id in ids]

    def get_map_points(self) -> List:
        """Live, non-bad map points observed by this keyframe."""
        return [
            mp
            for mp in self.get_map_point_matches()
            if mp is not None and not mp.is_bad()
        ]

    def tracked_map_points(self, min_observations: int = 0) -> int:
        """Number of map points observed by at least ``min_observations`` keyframes."""
        count = 0
        for mp in self.get_map_points():
            if min_observations > 0:
                if mp.observations() >= min_observations:
                    count += 1
            else:
                count += 1
        return count

    def features_in_radius(
        self, x: float, y: float, r: float, min_level: int = -1, max_level: int = -1
    ) -> List[int]:
        return self.grid.features_in_radius(x, y, r, min_level, max_level)

    def compute_scene_median_depth(self, q: int = 2) -> float:
        """Depth of the observed map points at quantile 1/q."""
        points = self.get_map_points()
        if not points:
            return -1.0
        pose = self.get_pose()
        positions = torch.stack([mp.get_world_pos() for mp in points])
        depths = pose.transform_points(positions)[:, 2]
        depths, _ = torch.sort(depths)
        return float(depths[(len(points) - 1) // q])

    # Covisibility graph

    def add_connection(self, kf_id: int, weight: int):
        with self._lock:
            if self._connected_weights.get(kf_id) == weight:
                return
            self._connected_weights[kf_id] = weight
            self._update_best_covisibles()

    def erase_connection(self, kf_id: int):
        with self._lock:
            if kf_id in self._connected_weights:
                del self._connected_weights[kf_id]
                self._update_best_covisibles()

    def _update_best_covisibles(self):
        ordered = sorted(
            self._connected_weights.items(), key=lambda item: (-item[1], item[0])
        )
        self._ordered_connected = [kf_id for kf_id, _ in ordered]
        self._ordered_weights = [weight for _, weight in ordered]

    def get_connected_keyframe_ids(self) -> Set[int]:
        with self._lock:
            return set(self._connected_weights)

    def get_connection_weights(self) -> Dict[int, int]:
        with self._lock:
            return dict(self._connected_weights)

    def get_covisible_ids(self) -> List[int]:
        """Connected keyframe ids ordered by decreasing weight."""
        with self._lock:
            return list(self._ordered_connected)

    def get_best_covisibility_ids(self, n: int) -> List[int]:
        with self._lock:
            return self._ordered_connected[:n]

    def get_covisibles_by_weight(self, weight: int) -> List[int]:
        with self._lock:
            return [
                kf_id
                for kf_id, w in zip(self._ordered_connected, self._ordered_weights)
                if w >= weight
            ]

    def get_best_covisibility_keyframes(self, n: int) -> List["Keyframe"]:
        return self._resolve(self.get_best_covisibility_ids(n))

    def get_weight(self, kf_id: int) -> int:
        with self._lock:
            return self._connected_weights.get(kf_id, 0)

    def _resolve(self, kf_ids) -> List["Keyframe"]:
        keyframes = []
        for kf_id in kf_ids:
            keyframe = self.map.get_keyframe(kf_id)
            if keyframe is not None and not keyframe.is_bad():
                keyframes.append(keyframe)
        return keyframes

    def update_connections(self, build_spanning_tree: bool = True, threshold: int = 15):
        """
        Recompute the covisibility edges of this keyframe.

        An edge is kept when the keyframes share at least ``threshold`` map
        points. The best connected keyframe is always kept, as is any
        keyframe for which this one is the best connection, so that both
        ends of every edge agree on its weight. Edges that are dropped are
        also removed from the peer.

        Args:
            build_spanning_tree: Attach to the best connected keyframe when
                this keyframe has no parent yet
            threshold: Minimum number of shared map points for an edge
        """
        counter: Dict[int, int] = {}
        for mp in self.get_map_points():
            for kf_id in mp.get_observations():
                if kf_id == self.id:
                    continue
                counter[kf_id] = counter.get(kf_id, 0) + 1

        peers = {}
        for kf_id in list(counter):
            keyframe = self.map.get_keyframe(kf_id)
            if keyframe is None or keyframe.is_bad():
                del counter[kf_id]
            else:
                peers[kf_id] = keyframe

        with self._lock:
            previous = set(self._connected_weights)

        if not counter:
            for kf_id in previous:
                peer = self.map.get_keyframe(kf_id)
                if peer is not None:
                    peer.erase_connection(self.id)
            with self._lock:
                self._connected_weights = {}
                self._update_best_covisibles()
            return

        best_id = min(counter, key=lambda kf_id: (-counter[kf_id], kf_id))
        kept = {}
        for kf_id, weight in counter.items():
            peer = peers[kf_id]
            peer_best = peer.get_best_covisibility_ids(1)
            if weight >= threshold or kf_id == best_id or peer_best == [self.id]:
                kept[kf_id] = weight

        for kf_id, weight in kept.items():
            peers[kf_id].add_connection(self.id, weight)
        for kf_id in previous - set(kept):
            peer = self.map.get_keyframe(kf_id)
            if peer is not None:
                peer.erase_connection(self.id)

        with self._lock:
            self._connected_weights = kept
            self._update_best_covisibles()
            attach = build_spanning_tree and self._parent_id is None and self.id != 0

        if attach:
            self.change_parent(best_id)

    # Spanning tree

    def add_child(self, kf_id: int):
        with self._lock:
            self._children.add(kf_id)

    def erase_child(self, kf_id: int):
        with self._lock:
            self._children.discard(kf_id)

    def get_children(self) -> Set[int]:
        with self._lock:
            return set(self._children)

    def has_child(self, kf_id: int) -> bool:
        with self._lock:
            return kf_id in self._children

    def get_parent_id(self) -> Optional[int]:
        with self._lock:
            return self._parent_id

    def get_parent(self) -> Optional["Keyframe"]:
        parent_id = self.get_parent_id()
        if parent_id is None or self.map is None:
            return None
        return self.map.get_keyframe(parent_id)

    def change_parent(self, parent_id: Optional[int]):
        """Reassign the spanning-tree parent, updating both parents' children."""
        if parent_id == self.id:
            raise ValueError(f"Keyframe {self.id} cannot be its own parent")

        with self._lock:
            old_parent_id = self._parent_id
            self._parent_id = parent_id

        if old_parent_id is not None and old_parent_id != parent_id:
            old_parent = self.map.get_keyframe(old_parent_id)
            if old_parent is not None:
                old_parent.erase_child(self.id)
        if parent_id is not None:
            parent = self.map.get_keyframe(parent_id)
            if parent is not None:
                parent.add_child(self.id)

    # Loop edges

    def add_loop_edge(self, kf_id: int):
        with self._lock:
            self._loop_edges.add(kf_id)

    def get_loop_edges(self) -> Set[int]:
        with self._lock:
            return set(self._loop_edges)

    # Culling

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def can_be_erased(self) -> bool:
        """The origin keyframe and keyframes with loop edges stay in the map."""
        with self._lock:
            return self.id != 0 and not self._loop_edges

    def set_bad(self) -> bool:
        """
        Remove this keyframe from the map graphs.

        Connections and observations are erased first. Children are then
        re-attached, each to its best connected keyframe among the parent
        and the already re-attached siblings; children without such a
        connection go to the parent, or to keyframe 0 when this keyframe
        has no parent. The origin keyframe and keyframes with loop edges
        are never removed.

        Returns:
            True if the keyframe was removed
        """
        if not self.can_be_erased():
            self.logger.debug(f"Keyframe {self.id} cannot be erased")
            return False

        for kf_id in self.get_connected_keyframe_ids():
            peer = self.map.get_keyframe(kf_id)
            if peer is not None:
                peer.erase_connection(self.id)

        for idx, mp in enumerate(self.get_map_point_matches()):
            if mp is not None:
                mp.erase_observation(self.id)

        with self._lock:
            self._connected_weights = {}
            self._update_best_covisibles()
            parent_id = self._parent_id
            children = set(self._children)
        if parent_id is None and self.map.get_keyframe(0) is not None:
            self.logger.warning(f"Keyframe {self.id} has no parent, re-attaching children to 0")
            parent_id = 0

        candidates = {parent_id}
        while children:
            best = None
            max_weight = -1
            for child_id in children:
                child = self.map.get_keyframe(child_id)
                if child is None or child.is_bad():
                    continue
                for kf_id in child.get_covisible_ids():
                    if kf_id in candidates:
                        weight = child.get_weight(kf_id)
                        if weight > max_weight:
                            best = (child, kf_id)
                            max_weight = weight

            if best is None:
                break

            child, new_parent_id = best
            child.change_parent(new_parent_id)
            candidates.add(child.id)
            children.discard(child.id)

        for child_id in children:
            child = self.map.get_keyframe(child_id)
            if child is not None:
                child.change_parent(parent_id)

        parent = self.map.get_keyframe(parent_id)
        with self._lock:
            if parent is not None:
                parent.erase_child(self.id)
                self.removed_parent = parent
                self.parent_relative_pose = self._pose.compose(
                    parent.get_pose_inverse()
                )
            self._children.clear()
            self._bad = True

        self.logger.debug(f"Keyframe {self.id} marked bad")
        self.map.erase_keyframe(self)
        return True

    def is_in_image(self, x: float, y: float) -> bool:
        return self.bounds.contains(x, y)

    def __repr__(self) -> str:
        return f"Keyframe(id={self.id}, N={self.N}, parent={self.get_parent_id()})"
