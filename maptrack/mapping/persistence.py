"""
Saving and loading maps with OpenCV's FileStorage.

The document holds three top-level fields:

* ``mapNodeTransform``: 4x4 transform of the map in the scene
* ``KeyFrames``: one record per keyframe (``id``, ``parentId``,
  ``loopEdges``, ``Tcw``, ``featureDescriptors``, ``keyPtsUndist``,
  ``scaleFactor``, ``nScaleLevels``, ``K``, ``nMinX``, ``nMinY``,
  ``nMaxX``, ``nMaxY``)
* ``MapPoints``: one record per map point (``id``, ``mWorldPos``,
  ``observingKfIds``, ``corrKpIndices``, ``refKfId``)

The serialization format (YAML, XML or JSON) follows the file extension.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import cv2
import numpy as np
import torch
from tqdm import tqdm

from ..frontend.camera import GridGeometry, ImageBounds, PinholeCamera
from ..frontend.feature_extraction.base import keypoints_from_array, keypoints_to_array
from ..frontend.keyframe import Keyframe
from ..frontend.map_point import MapPoint
from ..frontend.odometry.base import FramePose
from .migration import (
    NODE_TRANSFORM_KEY,
    needs_spanning_tree_repair,
    read_node_transform,
    repair_spanning_tree,
)
from .spanning_tree import SpanningTreeBuilder

PathLike = Union[str, Path]


class MapIOError(RuntimeError):
    """The map file could not be opened."""


class MapIntegrityError(RuntimeError):
    """The loaded map violates a structural invariant."""


def image_path(image_dir: PathLike, kf_id: int) -> str:
    return os.path.join(str(image_dir), f"kf{kf_id}.jpg")


class MapIO:
    """Reads and writes a map together with its keyframe database."""

    def __init__(
        self,
        config: Dict = None,
        tree_builder: Optional[SpanningTreeBuilder] = None,
    ):
        """
        Initialize map reader/writer.

        Args:
            config: Persistence configuration
            tree_builder: Strategy used to repair legacy spanning trees
        """
        self.config = config if config is not None else {}
        self.show_progress = self.config.get("show_progress", False)
        self.tree_builder = tree_builder
        self.logger = logging.getLogger(self.__class__.__name__)

    # Saving

    def save(self, path: PathLike, map_, image_dir: Optional[PathLike] = None) -> bool:
        """
        Write all non-bad keyframes and map points.

        Args:
            path: Target file
            map_: Map to save
            image_dir: Directory for keyframe images, or None to skip them

        Returns:
            True if the file was written
        """
        keyframes = map_.get_all_keyframes()
        if not keyframes:
            self.logger.warning("Map has no keyframes, nothing saved")
            return False

        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
        if not fs.isOpened():
            self.logger.error(f"Failed to open {path} for writing")
            return False

        saved_ids = {kf.id for kf in keyframes}
        map_points = map_.get_all_map_points()

        try:
            fs.write(NODE_TRANSFORM_KEY, np.asarray(map_.node_transform, np.float64))

            fs.startWriteStruct("KeyFrames", cv2.FileNode_SEQ)
            for keyframe in tqdm(
                keyframes, desc="Saving keyframes", disable=not self.show_progress
            ):
                self._write_keyframe(fs, keyframe)
            fs.endWriteStruct()

            fs.startWriteStruct("MapPoints", cv2.FileNode_SEQ)
            for mp in tqdm(
                map_points, desc="Saving map points", disable=not self.show_progress
            ):
                self._write_map_point(fs, mp, saved_ids)
            fs.endWriteStruct()
        finally:
            fs.release()

        if image_dir is not None:
            self._save_images(keyframes, image_dir)

        self.logger.info(
            f"Saved {len(keyframes)} keyframes and {len(map_points)} map points "
            f"to {path}"
        )
        return True

    @staticmethod
    def _write_int_sequence(fs: cv2.FileStorage, name: str, values):
        fs.startWriteStruct(name, cv2.FileNode_SEQ)
        for value in values:
            fs.write("", int(value))
        fs.endWriteStruct()

    def _write_keyframe(self, fs: cv2.FileStorage, keyframe: Keyframe):
        fs.startWriteStruct("", cv2.FileNode_MAP)
        fs.write("id", int(keyframe.id))

        parent_id = keyframe.get_parent_id()
        if keyframe.id == 0 or parent_id is None:
            parent_id = -1
        fs.write("parentId", int(parent_id))
        self._write_int_sequence(fs, "loopEdges", sorted(keyframe.get_loop_edges()))

        fs.write("Tcw", keyframe.get_pose().matrix_numpy().astype(np.float64))
        fs.write(
            "featureDescriptors",
            np.ascontiguousarray(keyframe.descriptors.cpu().numpy(), dtype=np.uint8),
        )
        fs.write("keyPtsUndist", keypoints_to_array(keyframe.keypoints_un))
        fs.write("scaleFactor", float(keyframe.scale_factor))
        fs.write("nScaleLevels", int(keyframe.n_levels))
        fs.write("K", keyframe.camera.K.astype(np.float64))

        bounds = keyframe.bounds
        fs.write("nMinX", float(bounds.min_x))
        fs.write("nMinY", float(bounds.min_y))
        fs.write("nMaxX", float(bounds.max_x))
        fs.write("nMaxY", float(bounds.max_y))
        fs.endWriteStruct()

    def _write_map_point(self, fs: cv2.FileStorage, mp: MapPoint, saved_ids):
        observations = {
            kf_id: idx
            for kf_id, idx in sorted(mp.get_observations().items())
            if kf_id in saved_ids
        }

        fs.startWriteStruct("", cv2.FileNode_MAP)
        fs.write("id", int(mp.id))
        fs.write("mWorldPos", mp.get_world_pos().numpy().reshape(3, 1))
        self._write_int_sequence(fs, "observingKfIds", observations.keys())
        self._write_int_sequence(fs, "corrKpIndices", observations.values())
        fs.write("refKfId", int(mp.get_reference_keyframe_id()))
        fs.endWriteStruct()

    def _save_images(self, keyframes: List[Keyframe], image_dir: PathLike):
        os.makedirs(str(image_dir), exist_ok=True)
        for keyframe in keyframes:
            if keyframe.image is None:
                continue
            image = keyframe.image
            if image.ndim == 2:
                image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
            target = image_path(image_dir, keyframe.id)
            if not cv2.imwrite(target, image):
                self.logger.error(f"Failed to write keyframe image {target}")

    # Loading

    def load(
        self,
        path: PathLike,
        map_,
        database=None,
        image_dir: Optional[PathLike] = None,
    ) -> int:
        """
        Replace the contents of a map with a saved map.

        Args:
            path: Source file
            map_: Map to fill; it is cleared first
            database: Keyframe database to fill, or None
            image_dir: Directory with keyframe images, or None

        Returns:
            Number of keyframes loaded

        Raises:
            MapIOError: If the file cannot be opened
            MapIntegrityError: If the map has no keyframe with id 0
        """
        if not os.path.isfile(str(path)):
            raise MapIOError(f"Map file not found: {path}")
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
        if not fs.isOpened():
            raise MapIOError(f"Failed to open map file {path}")

        try:
            map_.clear()
            if database is not None:
                database.clear()

            map_.node_transform = read_node_transform(fs)
            parent_ids, loop_edges = self._read_keyframes(
                fs.getNode("KeyFrames"), map_, database, image_dir
            )
            self._read_map_points(fs.getNode("MapPoints"), map_)
        finally:
            fs.release()

        keyframes = map_.get_all_keyframes()

        # Spanning tree as stored
        for keyframe in keyframes:
            parent_id = parent_ids.get(keyframe.id, -1)
            if keyframe.id == 0 or parent_id < 0:
                continue
            if map_.get_keyframe(parent_id) is None:
                self.logger.warning(
                    f"Parent {parent_id} of keyframe {keyframe.id} is missing"
                )
                continue
            keyframe.change_parent(parent_id)

        n_loop_edges = 0
        for kf_id, peers in loop_edges.items():
            keyframe = map_.get_keyframe(kf_id)
            for peer_id in peers:
                if map_.get_keyframe(peer_id) is None:
                    self.logger.warning(
                        f"Loop edge {kf_id}-{peer_id} points to a missing keyframe"
                    )
                    continue
                keyframe.add_loop_edge(peer_id)
                n_loop_edges += 1
        map_.num_loop_closings = n_loop_edges // 2

        for keyframe in keyframes:
            keyframe.update_connections(False)

        root = map_.get_keyframe(0)
        if root is None:
            raise MapIntegrityError(f"Map {path} has no keyframe with id 0")

        if needs_spanning_tree_repair(keyframes):
            repair_spanning_tree(keyframes, root, self.tree_builder)

        for mp in map_.get_all_map_points():
            mp.update_normal_and_depth()
            mp.compute_distinctive_descriptors()

        if keyframes:
            map_.keyframe_ids.advance_past(max(kf.id for kf in keyframes))
        map_points = map_.get_all_map_points()
        if map_points:
            map_.point_ids.advance_past(max(mp.id for mp in map_points))

        self.logger.info(
            f"Loaded {len(keyframes)} keyframes and {len(map_points)} map points "
            f"from {path}"
        )
        return len(keyframes)

    @staticmethod
    def _read_int(node: cv2.FileNode, name: str, default: int = -1) -> int:
        child = node.getNode(name)
        if child.empty():
            return default
        return int(round(child.real()))

    @staticmethod
    def _read_int_sequence(node: cv2.FileNode, name: str) -> List[int]:
        child = node.getNode(name)
        if child.empty() or not child.isSeq():
            return []
        return [int(round(child.at(i).real())) for i in range(child.size())]

    @staticmethod
    def _read_keypoints(node: cv2.FileNode) -> np.ndarray:
        if node.empty():
            return np.zeros((0, 7), dtype=np.float32)
        if not node.isSeq():
            matrix = node.mat()
            return np.zeros((0, 7)) if matrix is None else matrix.reshape(-1, 7)

        # Sequence of keypoints, either nested or flat 7-tuples
        values = []
        for i in range(node.size()):
            item = node.at(i)
            if item.isSeq():
                values.append([item.at(j).real() for j in range(item.size())])
            else:
                values.append(item.real())
        return np.asarray(values, dtype=np.float64).reshape(-1, 7)

    def _read_keyframes(self, node: cv2.FileNode, map_, database, image_dir):
        parent_ids: Dict[int, int] = {}
        loop_edges: Dict[int, List[int]] = {}
        if node.empty() or not node.isSeq():
            return parent_ids, loop_edges

        records = [node.at(i) for i in range(node.size())]
        for record in tqdm(
            records, desc="Loading keyframes", disable=not self.show_progress
        ):
            kf_id = self._read_int(record, "id")
            keypoints = keypoints_from_array(self._read_keypoints(record.getNode("keyPtsUndist")))

            descriptors = record.getNode("featureDescriptors").mat()
            if descriptors is None:
                descriptors = np.zeros((0, 32), dtype=np.uint8)

            camera = PinholeCamera(record.getNode("K").mat())
            bounds = ImageBounds(
                record.getNode("nMinX").real(),
                record.getNode("nMaxX").real(),
                record.getNode("nMinY").real(),
                record.getNode("nMaxY").real(),
            )

            keyframe = Keyframe(
                kf_id,
                0.0,
                camera,
                keypoints,
                list(keypoints),
                torch.from_numpy(np.ascontiguousarray(descriptors, dtype=np.uint8)),
                FramePose.from_matrix(record.getNode("Tcw").mat()),
                GridGeometry(bounds),
                scale_factor=record.getNode("scaleFactor").real(),
                n_levels=self._read_int(record, "nScaleLevels", 8),
                map_=map_,
            )

            if image_dir is not None:
                self._load_image(keyframe, image_dir)

            if database is not None:
                keyframe.compute_bow(database.vocabulary)

            map_.add_keyframe(keyframe)
            if database is not None:
                database.add(keyframe)

            parent_ids[kf_id] = self._read_int(record, "parentId", -1)
            loop_edges[kf_id] = self._read_int_sequence(record, "loopEdges")

        return parent_ids, loop_edges

    def _load_image(self, keyframe: Keyframe, image_dir: PathLike):
        target = image_path(image_dir, keyframe.id)
        if not os.path.isfile(target):
            return
        image = cv2.imread(target)
        if image is None:
            self.logger.warning(f"Could not read keyframe image {target}")
            return
        keyframe.image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        keyframe.texture_path = target

    def _read_map_points(self, node: cv2.FileNode, map_):
        if node.empty() or not node.isSeq():
            return

        records = [node.at(i) for i in range(node.size())]
        for record in tqdm(
            records, desc="Loading map points", disable=not self.show_progress
        ):
            mp_id = self._read_int(record, "id")
            position = record.getNode("mWorldPos").mat().reshape(3)
            kf_ids = self._read_int_sequence(record, "observingKfIds")
            indices = self._read_int_sequence(record, "corrKpIndices")
            ref_kf_id = self._read_int(record, "refKfId", -1)

            if len(kf_ids) != len(indices):
                self.logger.warning(
                    f"Map point {mp_id} has {len(kf_ids)} observers but "
                    f"{len(indices)} keypoint indices"
                )

            mp = MapPoint(mp_id, position, ref_kf_id, map_)
            for kf_id, idx in zip(kf_ids, indices):
                keyframe = map_.get_keyframe(kf_id)
                if keyframe is None or not 0 <= idx < keyframe.N:
                    self.logger.warning(
                        f"Map point {mp_id} observation ({kf_id}, {idx}) is invalid"
                    )
                    continue
                keyframe.add_map_point(mp_id, idx)
                mp.add_observation(kf_id, idx)

            observations = mp.get_observations()
            if not observations:
                self.logger.warning(f"Map point {mp_id} has no observers, skipped")
                continue
            if ref_kf_id not in observations:
                fallback = next(iter(observations))
                self.logger.warning(
                    f"Reference keyframe {ref_kf_id} of map point {mp_id} is "
                    f"missing, using keyframe {fallback}"
                )
                mp.set_reference_keyframe_id(fallback)

            map_.add_map_point(mp)
