import logging
from typing import Dict, List, Optional, Tuple

import numpy as np
import torch

from ..backend.se3 import SE3
from ..frontend.feature_extraction.feature_matcher import ORBMatcher
from ..frontend.keyframe import Keyframe
from ..frontend.map_point import MapPoint
from ..frontend.odometry.base import FramePose


def fundamental_from_keyframes(keyframe1: Keyframe, keyframe2: Keyframe) -> np.ndarray:
    """Fundamental matrix F12 between two keyframes (x1^T F12 x2 = 0)."""
    pose1 = keyframe1.get_pose()
    pose2 = keyframe2.get_pose()
    R1w, t1w = pose1.to_numpy()
    R2w, t2w = pose2.to_numpy()

    R12 = R1w @ R2w.T
    t12 = -R1w @ R2w.T @ t2w + t1w
    t12x = SE3.skew_symmetric(torch.from_numpy(t12)).numpy()

    K1_inv_t = np.linalg.inv(keyframe1.camera.K).T
    K2_inv = np.linalg.inv(keyframe2.camera.K)
    return K1_inv_t @ t12x @ R12 @ K2_inv


class MapGrower:
    """
    Grows the map from tracked frames.

    Creates the initial two-keyframe map, promotes frames to keyframes,
    triangulates new map points with covisible keyframes and culls
    unreliable points and redundant keyframes.
    """

    def __init__(self, map_, keyframe_database, config: Dict = None):
        """
        Initialize map grower.

        Args:
            map_: Map to grow
            keyframe_database: Database indexing new keyframes
            config: Configuration dictionary with the following keys:
                - min_tracked_for_keyframe: Minimum inliers to insert a keyframe
                - ref_ratio: Tracked ratio w.r.t. the reference keyframe
                - covisible_neighbors: Keyframes used for triangulation
                - min_found_ratio: Minimum found/visible ratio of new points
                - covisibility_threshold: Minimum weight of covisibility edges
                - min_initial_points: Points required in the initial map
                - cull_keyframes: Whether redundant keyframes are removed
                - redundant_ratio: Fraction of redundant points to cull a keyframe
        """
        self.map = map_
        self.keyframe_database = keyframe_database
        self.config = config if config is not None else {}

        self.min_tracked = self.config.get("min_tracked_for_keyframe", 15)
        self.ref_ratio = self.config.get("ref_ratio", 0.9)
        self.covisible_neighbors = self.config.get("covisible_neighbors", 20)
        self.min_found_ratio = self.config.get("min_found_ratio", 0.25)
        self.covisibility_threshold = self.config.get("covisibility_threshold", 15)
        self.min_initial_points = self.config.get("min_initial_points", 50)
        self.cull_keyframes = self.config.get("cull_keyframes", True)
        self.redundant_ratio = self.config.get("redundant_ratio", 0.9)

        self.matcher = ORBMatcher(nn_ratio=0.6, check_orientation=False)
        self.recent_map_points: List[MapPoint] = []

        self.logger = logging.getLogger(self.__class__.__name__)

    def reset(self):
        self.recent_map_points = []

    def _new_map_point(self, position, keyframe: Keyframe) -> MapPoint:
        return MapPoint(self.map.point_ids.next_id(), position, keyframe.id, self.map)

    def _link(self, mp: MapPoint, keyframe: Keyframe, idx: int):
        keyframe.add_map_point(mp.id, idx)
        mp.add_observation(keyframe.id, idx)

    def create_initial_map(
        self, reference, current, reconstruction
    ) -> Optional[Tuple[Keyframe, Keyframe]]:
        """
        Build keyframes 0 and 1 and their map points from a two-view
        reconstruction, with the scene scaled to unit median depth.

        Args:
            reference: Reference frame (identity pose)
            current: Current frame
            reconstruction: Two-view reconstruction

        Returns:
            The two keyframes, or None when the map is not good enough
        """
        vocabulary = self.keyframe_database.vocabulary

        reference.set_pose(FramePose.identity())
        current.set_pose(reconstruction.pose)

        kf_ini = Keyframe.from_frame(self.map.keyframe_ids.next_id(), reference, self.map)
        kf_cur = Keyframe.from_frame(self.map.keyframe_ids.next_id(), current, self.map)
        kf_ini.compute_bow(vocabulary)
        kf_cur.compute_bow(vocabulary)

        self.map.add_keyframe(kf_ini)
        self.map.add_keyframe(kf_cur)

        current.map_points = [None] * current.N
        current.outliers = [False] * current.N
        for ref_idx, (cur_idx, position) in reconstruction.points.items():
            mp = self._new_map_point(position, kf_cur)
            self._link(mp, kf_ini, ref_idx)
            self._link(mp, kf_cur, cur_idx)
            mp.compute_distinctive_descriptors()
            mp.update_normal_and_depth()
            current.map_points[cur_idx] = mp
            self.map.add_map_point(mp)

        kf_ini.update_connections(True, self.covisibility_threshold)
        kf_cur.update_connections(True, self.covisibility_threshold)

        median_depth = kf_ini.compute_scene_median_depth(2)
        n_tracked = kf_cur.tracked_map_points(1)
        if median_depth <= 0 or n_tracked < self.min_initial_points:
            self.logger.warning(
                f"Wrong initialization (median depth {median_depth:.3f}, "
                f"{n_tracked} points), resetting"
            )
            return None

        inv_median_depth = 1.0 / median_depth
        pose = kf_cur.get_pose()
        kf_cur.set_pose(FramePose(pose.rotation, pose.translation * inv_median_depth))
        for mp in kf_ini.get_map_points():
            mp.set_world_pos(mp.get_world_pos() * inv_median_depth)
        for mp in kf_ini.get_map_points():
            mp.update_normal_and_depth()

        current.set_pose(kf_cur.get_pose())

        self.keyframe_database.add(kf_ini)
        self.keyframe_database.add(kf_cur)
        self.recent_map_points = []

        self.logger.info(
            f"New map created with {self.map.map_points_in_map()} points"
        )
        return kf_ini, kf_cur

    def need_new_keyframe(
        self,
        frame,
        reference: Keyframe,
        n_inliers: int,
        last_keyframe_frame_id: int,
        last_reloc_frame_id: int,
        max_frames: int,
    ) -> bool:
        """
        Decide whether a tracked frame should become a keyframe.

        Args:
            frame: Tracked frame
            reference: Reference keyframe of the frame
            n_inliers: Map point inliers of the frame
            last_keyframe_frame_id: Frame id of the last inserted keyframe
            last_reloc_frame_id: Frame id of the last relocalization
            max_frames: Maximum number of frames between keyframes

        Returns:
            True if a keyframe should be inserted
        """
        n_keyframes = self.map.keyframes_in_map()
        if frame.id < last_reloc_frame_id + max_frames and n_keyframes > max_frames:
            return False

        min_observations = 2 if n_keyframes <= 2 else 3
        n_ref_matches = reference.tracked_map_points(min_observations)
        ref_ratio = 0.4 if n_keyframes < 2 else self.ref_ratio

        enough_inliers = n_inliers > self.min_tracked
        weak_tracking = n_inliers < n_ref_matches * ref_ratio
        timed_out = frame.id >= last_keyframe_frame_id + max_frames
        return enough_inliers and (weak_tracking or timed_out)

    def insert_keyframe(self, frame) -> Keyframe:
        """
        Promote a tracked frame to a keyframe and grow the map around it.

        Args:
            frame: Tracked frame with pose and map point links

        Returns:
            The new keyframe
        """
        vocabulary = self.keyframe_database.vocabulary
        keyframe = Keyframe.from_frame(self.map.keyframe_ids.next_id(), frame, self.map)
        keyframe.compute_bow(vocabulary)
        self.map.add_keyframe(keyframe)

        for idx, mp in enumerate(frame.map_points):
            if mp is None or mp.is_bad() or frame.outliers[idx]:
                continue
            if mp.is_in_keyframe(keyframe.id):
                continue
            self._link(mp, keyframe, idx)
            mp.update_normal_and_depth()
            mp.compute_distinctive_descriptors()

        keyframe.update_connections(True, self.covisibility_threshold)
        self.keyframe_database.add(keyframe)

        self.cull_recent_map_points(keyframe.id)
        n_new = self.create_new_map_points(keyframe)
        if self.cull_keyframes:
            self.cull_redundant_keyframes(keyframe)

        self.logger.info(
            f"Inserted keyframe {keyframe.id} from frame {frame.id} "
            f"({n_new} new map points)"
        )
        return keyframe

    def cull_recent_map_points(self, current_kf_id: int) -> int:
        """
        Remove recently created points that are rarely found or observed.

        Returns:
            Number of culled points
        """
        n_culled = 0
        kept = []
        for mp in self.recent_map_points:
            if mp.is_bad():
                continue
            age = current_kf_id - mp.first_kf_id
            if mp.get_found_ratio() < self.min_found_ratio:
                mp.set_bad()
                n_culled += 1
            elif age >= 2 and mp.observations() <= 2:
                mp.set_bad()
                n_culled += 1
            elif age < 3:
                kept.append(mp)
        self.recent_map_points = kept
        return n_culled

    def create_new_map_points(self, keyframe: Keyframe) -> int:
        """
        Triangulate unmatched features of a keyframe with its best
        covisible keyframes.

        Returns:
            Number of new map points
        """
        neighbours = keyframe.get_best_covisibility_keyframes(self.covisible_neighbors)
        if not neighbours:
            return 0

        pose1 = keyframe.get_pose()
        center1 = keyframe.get_camera_center().numpy()
        ratio_factor = 1.5 * keyframe.scale_factor
        n_created = 0

        for neighbour in neighbours:
            center2 = neighbour.get_camera_center().numpy()
            baseline = np.linalg.norm(center2 - center1)
            median_depth = neighbour.compute_scene_median_depth(2)
            if median_depth <= 0 or baseline / median_depth < 0.01:
                continue

            fundamental = fundamental_from_keyframes(keyframe, neighbour)
            matches = self.matcher.search_for_triangulation(
                keyframe, neighbour, fundamental
            )
            if not matches:
                continue

            pose2 = neighbour.get_pose()
            points = self._triangulate(keyframe, neighbour, pose1, pose2, matches)
            for idx1, idx2, position in points:
                kp1 = keyframe.keypoints_un[idx1]
                kp2 = neighbour.keypoints_un[idx2]

                dist1 = np.linalg.norm(position - center1)
                dist2 = np.linalg.norm(position - center2)
                if dist1 == 0 or dist2 == 0:
                    continue
                ratio_dist = dist2 / dist1
                ratio_octave = (
                    keyframe.scale_factors[kp1.octave]
                    / neighbour.scale_factors[kp2.octave]
                )
                if (
                    ratio_dist * ratio_factor < ratio_octave
                    or ratio_dist > ratio_octave * ratio_factor
                ):
                    continue

                # Another neighbour may have claimed the features already
                if (
                    keyframe.get_map_point(idx1) is not None
                    or neighbour.get_map_point(idx2) is not None
                ):
                    continue

                mp = self._new_map_point(position, keyframe)
                self._link(mp, keyframe, idx1)
                self._link(mp, neighbour, idx2)
                mp.compute_distinctive_descriptors()
                mp.update_normal_and_depth()
                self.map.add_map_point(mp)
                self.recent_map_points.append(mp)
                n_created += 1

        return n_created

    def _triangulate(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        pose1: FramePose,
        pose2: FramePose,
        matches: List[Tuple[int, int]],
    ) -> List[Tuple[int, int, np.ndarray]]:
        """Linear triangulation with parallax, depth and reprojection checks."""
        K1 = keyframe1.camera.K
        K2 = keyframe2.camera.K
        T1 = pose1.matrix_numpy()[:3]
        T2 = pose2.matrix_numpy()[:3]
        Rwc1 = T1[:, :3].T
        Rwc2 = T2[:, :3].T

        pts1 = np.array([keyframe1.keypoints_un[i].pt() for i, _ in matches])
        pts2 = np.array([keyframe2.keypoints_un[j].pt() for _, j in matches])
        xn1 = (np.linalg.inv(K1) @ np.vstack([pts1.T, np.ones(len(matches))])).T
        xn2 = (np.linalg.inv(K2) @ np.vstack([pts2.T, np.ones(len(matches))])).T

        ray1 = xn1 @ Rwc1.T
        ray2 = xn2 @ Rwc2.T
        cos_parallax = (ray1 * ray2).sum(axis=1) / (
            np.linalg.norm(ray1, axis=1) * np.linalg.norm(ray2, axis=1)
        )

        results = []
        for k, (idx1, idx2) in enumerate(matches):
            if not 0 < cos_parallax[k] < 0.9998:
                continue

            A = np.vstack(
                [
                    xn1[k, 0] * T1[2] - T1[0],
                    xn1[k, 1] * T1[2] - T1[1],
                    xn2[k, 0] * T2[2] - T2[0],
                    xn2[k, 1] * T2[2] - T2[1],
                ]
            )
            _, _, vt = np.linalg.svd(A)
            X = vt[-1]
            if X[3] == 0:
                continue
            X = X[:3] / X[3]

            if not self._reprojects(keyframe1, T1, K1, X, idx1):
                continue
            if not self._reprojects(keyframe2, T2, K2, X, idx2):
                continue
            results.append((idx1, idx2, X))
        return results

    @staticmethod
    def _reprojects(keyframe: Keyframe, T: np.ndarray, K: np.ndarray, X, idx) -> bool:
        Xc = T[:, :3] @ X + T[:, 3]
        if Xc[2] <= 0:
            return False
        u = K[0, 0] * Xc[0] / Xc[2] + K[0, 2]
        v = K[1, 1] * Xc[1] / Xc[2] + K[1, 2]
        kp = keyframe.keypoints_un[idx]
        err = (u - kp.x) ** 2 + (v - kp.y) ** 2
        return err <= 5.991 * keyframe.level_sigma2[kp.octave]

    def cull_redundant_keyframes(self, keyframe: Keyframe) -> int:
        """
        Remove covisible keyframes whose points are almost all seen by at
        least three other keyframes at the same or a finer scale.

        Returns:
            Number of keyframes removed
        """
        threshold_observations = 3
        n_culled = 0
        for candidate in keyframe.get_best_covisibility_keyframes(len(keyframe.get_covisible_ids())):
            if candidate.is_bad() or not candidate.can_be_erased():
                continue

            n_points = 0
            n_redundant = 0
            for idx, mp in enumerate(candidate.get_map_point_matches()):
                if mp is None or mp.is_bad():
                    continue
                n_points += 1
                if mp.observations() <= threshold_observations:
                    continue

                scale_level = candidate.keypoints_un[idx].octave
                n_observers = 0
                for kf_id, kf_idx in mp.get_observations().items():
                    if kf_id == candidate.id:
                        continue
                    observer = self.map.get_keyframe(kf_id)
                    if observer is None or observer.is_bad():
                        continue
                    if observer.keypoints_un[kf_idx].octave <= scale_level + 1:
                        n_observers += 1
                        if n_observers >= threshold_observations:
                            break
                if n_observers >= threshold_observations:
                    n_redundant += 1

            if n_points > 0 and n_redundant > self.redundant_ratio * n_points:
                self.logger.debug(
                    f"Culling redundant keyframe {candidate.id} "
                    f"({n_redundant}/{n_points} redundant points)"
                )
                if candidate.set_bad():
                    n_culled += 1
        return n_culled
