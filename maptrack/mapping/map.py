import logging
import math
import threading
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import torch
from scipy.spatial.transform import Rotation

from ..frontend.odometry.base import FramePose
from .ids import IdAllocator


class TransformKind(Enum):
    """Global transformations that can be applied to the whole map."""

    ROTATE_X = 0
    ROTATE_Y = 1
    ROTATE_Z = 2
    TRANSLATE_X = 3
    TRANSLATE_Y = 4
    TRANSLATE_Z = 5
    SCALE = 6


class Map:
    """
    Thread-safe owner of all keyframes and map points.

    Entities are stored by id. Queries return point-in-time copies that
    never contain bad entities. Every structural change increments the
    change index so that dependents can detect stale state.
    """

    def __init__(self, keyframe_database=None, scene_proxy=None):
        """
        Initialize map.

        Args:
            keyframe_database: Database kept in sync when keyframes are erased
            scene_proxy: Visualization proxy notified of global changes
        """
        self.keyframe_database = keyframe_database
        self.scene_proxy = scene_proxy

        self._keyframes: Dict[int, object] = {}
        self._map_points: Dict[int, object] = {}
        self._reference_map_points: List = []
        self._max_kf_id = 0
        self._change_index = 0
        self.node_transform = np.eye(4)
        self.num_loop_closings = 0

        self.frame_ids = IdAllocator()
        self.keyframe_ids = IdAllocator()
        self.point_ids = IdAllocator()

        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)

    # Mutations

    def add_keyframe(self, keyframe):
        with self._lock:
            self._keyframes[keyframe.id] = keyframe
            self._max_kf_id = max(self._max_kf_id, keyframe.id)
            self._change_index += 1

    def add_map_point(self, map_point):
        with self._lock:
            self._map_points[map_point.id] = map_point
            self._change_index += 1

    def erase_keyframe(self, keyframe):
        """Detach a keyframe from the map and the keyframe database."""
        with self._lock:
            if self._keyframes.get(keyframe.id) is keyframe:
                del self._keyframes[keyframe.id]
                self._change_index += 1
            if self.keyframe_database is not None:
                self.keyframe_database.erase(keyframe)

    def erase_map_point(self, map_point):
        with self._lock:
            if self._map_points.get(map_point.id) is map_point:
                del self._map_points[map_point.id]
                self._change_index += 1

    def set_reference_map_points(self, map_points: List):
        with self._lock:
            self._reference_map_points = list(map_points)

    def increase_change_index(self):
        with self._lock:
            self._change_index += 1

    # Queries

    def get_keyframe(self, kf_id: int):
        with self._lock:
            return self._keyframes.get(kf_id)

    def get_map_point(self, mp_id: int):
        with self._lock:
            return self._map_points.get(mp_id)

    def get_all_keyframes(self) -> List:
        """Snapshot of the non-bad keyframes ordered by id."""
        with self._lock:
            keyframes = list(self._keyframes.values())
        return sorted(
            (kf for kf in keyframes if not kf.is_bad()), key=lambda kf: kf.id
        )

    def get_all_map_points(self) -> List:
        """Snapshot of the non-bad map points ordered by id."""
        with self._lock:
            map_points = list(self._map_points.values())
        return sorted(
            (mp for mp in map_points if not mp.is_bad()), key=lambda mp: mp.id
        )

    def get_reference_map_points(self) -> List:
        with self._lock:
            points = list(self._reference_map_points)
        return [mp for mp in points if not mp.is_bad()]

    def keyframes_in_map(self) -> int:
        return len(self.get_all_keyframes())

    def map_points_in_map(self) -> int:
        return len(self.get_all_map_points())

    def is_keyframe_in_map(self, kf_id: int) -> bool:
        with self._lock:
            return kf_id in self._keyframes

    def get_max_kf_id(self) -> int:
        with self._lock:
            return self._max_kf_id

    def get_change_index(self) -> int:
        with self._lock:
            return self._change_index

    # Session

    def clear(self):
        """Drop every keyframe and map point and restart the id allocators."""
        with self._lock:
            self._keyframes.clear()
            self._map_points.clear()
            self._reference_map_points = []
            self._max_kf_id = 0
            self._change_index += 1
            self.node_transform = np.eye(4)
            self.num_loop_closings = 0
            self.frame_ids.reset()
            self.keyframe_ids.reset()
            self.point_ids.reset()
        self.logger.info("Map cleared")

    def notify_scene(self):
        if self.scene_proxy is not None:
            self.scene_proxy.update_all(self)

    def apply_transformation(self, value: float, kind: TransformKind):
        """
        Transform every keyframe pose and map point position.

        Rotations take degrees and translations map units. The Y and Z
        axes are negated to follow the display convention, where they
        point the opposite way. The cached viewing geometry and descriptor
        of every map point is recomputed afterwards and the scene proxy is
        notified.

        Args:
            value: Angle in degrees, offset or scale factor
            kind: Transformation to apply
        """
        if not isinstance(kind, TransformKind):
            raise ValueError(f"Unknown transformation kind: {kind}")

        with self._lock:
            keyframes = self.get_all_keyframes()
            map_points = self.get_all_map_points()

            if kind in (TransformKind.ROTATE_X, TransformKind.ROTATE_Y, TransformKind.ROTATE_Z):
                axis = {
                    TransformKind.ROTATE_X: "x",
                    TransformKind.ROTATE_Y: "y",
                    TransformKind.ROTATE_Z: "z",
                }[kind]
                rotation = Rotation.from_euler(axis, math.radians(value))
                if kind != TransformKind.ROTATE_X:
                    rotation = rotation.inv()
                rot = FramePose(
                    torch.from_numpy(rotation.as_matrix()),
                    torch.zeros(3, dtype=torch.float64),
                )
                for keyframe in keyframes:
                    twc = rot.compose(keyframe.get_pose_inverse())
                    keyframe.set_pose(twc.inverse())
                for mp in map_points:
                    mp.set_world_pos(rot.transform_points(mp.get_world_pos()))

            elif kind in (
                TransformKind.TRANSLATE_X,
                TransformKind.TRANSLATE_Y,
                TransformKind.TRANSLATE_Z,
            ):
                offset = torch.zeros(3, dtype=torch.float64)
                if kind == TransformKind.TRANSLATE_X:
                    offset[0] = value
                elif kind == TransformKind.TRANSLATE_Y:
                    offset[1] = -value
                else:
                    offset[2] = -value
                for keyframe in keyframes:
                    twc = keyframe.get_pose_inverse()
                    twc = FramePose(twc.rotation, twc.translation + offset)
                    keyframe.set_pose(twc.inverse())
                for mp in map_points:
                    mp.set_world_pos(mp.get_world_pos() + offset)

            else:
                if value <= 0:
                    raise ValueError(f"Scale factor must be positive, got {value}")
                for keyframe in keyframes:
                    tcw = keyframe.get_pose()
                    keyframe.set_pose(FramePose(tcw.rotation, tcw.translation * value))
                for mp in map_points:
                    mp.set_world_pos(mp.get_world_pos() * value)

            for mp in map_points:
                mp.update_normal_and_depth()
                mp.compute_distinctive_descriptors()

            self._change_index += 1

        self.logger.info(f"Applied {kind.name} ({value}) to the map")
        self.notify_scene()

    def __repr__(self) -> str:
        return (
            f"Map(keyframes={self.keyframes_in_map()}, "
            f"map_points={self.map_points_in_map()})"
        )
