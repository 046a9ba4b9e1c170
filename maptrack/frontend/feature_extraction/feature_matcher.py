import logging
import math
from typing import Dict, List, Sequence, Set, Tuple

import numpy as np
import torch

HISTO_LENGTH = 30

# Number of set bits for every byte value
POPCOUNT_LUT = torch.tensor(
    [bin(i).count("1") for i in range(256)], dtype=torch.int32
)


def hamming_distance_matrix(
    query_descriptors: torch.Tensor,
    train_descriptors: torch.Tensor,
    batch_size: int = 256,
) -> torch.Tensor:
    """
    Compute pairwise Hamming distances between binary descriptors.

    Args:
        query_descriptors: (N, D) uint8 descriptors
        train_descriptors: (M, D) uint8 descriptors
        batch_size: Number of query rows processed at once

    Returns:
        (N, M) int32 tensor of distances in bits
    """
    n = query_descriptors.shape[0]
    m = train_descriptors.shape[0]
    if n == 0 or m == 0:
        return torch.zeros((n, m), dtype=torch.int32)

    lut = POPCOUNT_LUT.to(query_descriptors.device)
    train = train_descriptors.unsqueeze(0)
    distances = torch.empty((n, m), dtype=torch.int32, device=query_descriptors.device)

    # Process in batches to bound the (batch, M, D) intermediate
    for i in range(0, n, batch_size):
        batch = query_descriptors[i : i + batch_size].unsqueeze(1)
        xor = torch.bitwise_xor(batch, train).long()
        distances[i : i + batch_size] = lut[xor].sum(dim=2, dtype=torch.int32)

    return distances


def descriptor_distance(a: torch.Tensor, b: torch.Tensor) -> int:
    """Hamming distance between two (D,) uint8 descriptors."""
    xor = torch.bitwise_xor(a, b).long()
    return int(POPCOUNT_LUT.to(a.device)[xor].sum())


def compute_three_maxima(histogram: Sequence[List[int]]) -> Tuple[int, int, int]:
    """
    Indices of the three most populated histogram bins.

    The second and third bins are dropped (-1) when they hold fewer than a
    tenth of the entries of the first one.
    """
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for i, bin_entries in enumerate(histogram):
        s = len(bin_entries)
        if s > max1:
            max3, ind3 = max2, ind2
            max2, ind2 = max1, ind1
            max1, ind1 = s, i
        elif s > max2:
            max3, ind3 = max2, ind2
            max2, ind2 = s, i
        elif s > max3:
            max3, ind3 = s, i

    if max2 < 0.1 * max1:
        ind2 = ind3 = -1
    elif max3 < 0.1 * max1:
        ind3 = -1
    return ind1, ind2, ind3


def radius_by_viewing_cos(view_cos: float) -> float:
    return 2.5 if view_cos > 0.998 else 4.0


class ORBMatcher:
    """
    Guided matching of binary descriptors between frames, keyframes and map
    points.

    Every search enforces the Hamming thresholds TH_LOW/TH_HIGH and, where
    enabled, a rotation consistency check that keeps only the matches whose
    keypoint angle difference falls in the three dominant bins of a
    30-bin histogram.
    """

    TH_HIGH = 100
    TH_LOW = 50

    def __init__(self, nn_ratio: float = 0.6, check_orientation: bool = True):
        """
        Initialize matcher.

        Args:
            nn_ratio: Maximum ratio between best and second best distance
            check_orientation: Whether to apply the rotation consistency check
        """
        self.nn_ratio = nn_ratio
        self.check_orientation = check_orientation
        self.logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def _rotation_bin(angle1: float, angle2: float) -> int:
        rot = angle1 - angle2
        if rot < 0.0:
            rot += 360.0
        bin_idx = int(round(rot * HISTO_LENGTH / 360.0))
        if bin_idx == HISTO_LENGTH:
            bin_idx = 0
        return bin_idx

    def _inconsistent_rotations(self, histogram: List[List[int]]) -> List[int]:
        """Entries of the histogram outside the three dominant bins."""
        ind1, ind2, ind3 = compute_three_maxima(histogram)
        rejected = []
        for i, entries in enumerate(histogram):
            if i in (ind1, ind2, ind3):
                continue
            rejected.extend(entries)
        return rejected

    def search_by_bow(self, keyframe, frame) -> Tuple[int, List]:
        """
        Match the map points of a keyframe to the features of a frame
        sharing the same vocabulary node.

        Args:
            keyframe: Keyframe with a computed feature vector
            frame: Frame with a computed feature vector

        Returns:
            Tuple of (number of matches, list of length frame.N with the
            matched map point or None per feature)
        """
        matches: List = [None] * frame.N
        keyframe_points = keyframe.get_map_point_matches()
        histogram: List[List[int]] = [[] for _ in range(HISTO_LENGTH)]
        n_matches = 0

        for node_id, kf_indices in keyframe.feature_vector.items():
            frame_indices = frame.feature_vector.get(node_id)
            if not frame_indices:
                continue

            kf_indices = [
                idx
                for idx in kf_indices
                if keyframe_points[idx] is not None
                and not keyframe_points[idx].is_bad()
            ]
            if not kf_indices:
                continue

            distances = hamming_distance_matrix(
                keyframe.descriptors[kf_indices], frame.descriptors[frame_indices]
            ).tolist()

            for row, kf_idx in enumerate(kf_indices):
                best_dist1 = best_dist2 = 256
                best_idx = -1
                for col, frame_idx in enumerate(frame_indices):
                    if matches[frame_idx] is not None:
                        continue
                    dist = distances[row][col]
                    if dist < best_dist1:
                        best_dist2 = best_dist1
                        best_dist1 = dist
                        best_idx = frame_idx
                    elif dist < best_dist2:
                        best_dist2 = dist

                if best_dist1 <= self.TH_LOW and best_dist1 < self.nn_ratio * best_dist2:
                    matches[best_idx] = keyframe_points[kf_idx]
                    n_matches += 1
                    if self.check_orientation:
                        histogram[
                            self._rotation_bin(
                                keyframe.keypoints_un[kf_idx].angle,
                                frame.keypoints[best_idx].angle,
                            )
                        ].append(best_idx)

        if self.check_orientation:
            for idx in self._inconsistent_rotations(histogram):
                matches[idx] = None
                n_matches -= 1

        return n_matches, matches

    def _best_in_window(
        self, frame, indices: List[int], descriptor: torch.Tensor, skip
    ) -> Tuple[int, int]:
        best_dist = 256
        best_idx = -1
        candidates = [idx for idx in indices if not skip(idx)]
        if not candidates:
            return best_dist, best_idx
        distances = hamming_distance_matrix(
            descriptor.unsqueeze(0), frame.descriptors[candidates]
        )[0].tolist()
        for idx, dist in zip(candidates, distances):
            if dist < best_dist:
                best_dist = dist
                best_idx = idx
        return best_dist, best_idx

    def search_by_projection_local(self, frame, map_points: List, th: float) -> int:
        """
        Match local map points already projected by ``Frame.is_in_frustum``.

        Args:
            frame: Current frame; matches are written to ``frame.map_points``
            map_points: Candidate map points
            th: Window multiplier (1 keeps the viewing-angle based radius)

        Returns:
            Number of new matches
        """
        n_matches = 0
        use_factor = th != 1.0

        for mp in map_points:
            if not mp.track_in_view or mp.is_bad():
                continue
            descriptor = mp.get_descriptor()
            if descriptor is None:
                continue

            level = mp.track_scale_level
            r = radius_by_viewing_cos(mp.track_view_cos)
            if use_factor:
                r *= th

            indices = frame.features_in_radius(
                mp.track_proj_x,
                mp.track_proj_y,
                r * frame.scale_factors[level],
                level - 1,
                level,
            )
            if not indices:
                continue

            distances = hamming_distance_matrix(
                descriptor.unsqueeze(0), frame.descriptors[indices]
            )[0].tolist()

            best_dist = best_dist2 = 256
            best_level = best_level2 = -1
            best_idx = -1
            for idx, dist in zip(indices, distances):
                current = frame.map_points[idx]
                if current is not None and current.observations() > 0:
                    continue
                octave = frame.keypoints_un[idx].octave
                if dist < best_dist:
                    best_dist2 = best_dist
                    best_level2 = best_level
                    best_dist = dist
                    best_level = octave
                    best_idx = idx
                elif dist < best_dist2:
                    best_level2 = octave
                    best_dist2 = dist

            if best_dist <= self.TH_HIGH:
                if best_level == best_level2 and best_dist > self.nn_ratio * best_dist2:
                    continue
                frame.map_points[best_idx] = mp
                n_matches += 1

        return n_matches

    def search_by_projection_last_frame(self, current, last, th: float) -> int:
        """
        Project the map points tracked in the last frame into the current
        frame, using the current pose prediction.

        Args:
            current: Current frame with a predicted pose
            last: Last frame
            th: Search window in pixels at level 0

        Returns:
            Number of matches
        """
        n_matches = 0
        histogram: List[List[int]] = [[] for _ in range(HISTO_LENGTH)]
        camera = current.camera
        bounds = current.bounds

        for i, mp in enumerate(last.map_points):
            if mp is None or last.outliers[i] or mp.is_bad():
                continue
            descriptor = mp.get_descriptor()
            if descriptor is None:
                continue

            point_cam = current.pose.transform_points(mp.get_world_pos())
            z = float(point_cam[2])
            if z < 0:
                continue
            u = camera.fx * float(point_cam[0]) / z + camera.cx
            v = camera.fy * float(point_cam[1]) / z + camera.cy
            if not bounds.contains(u, v):
                continue

            last_octave = last.keypoints[i].octave
            radius = th * current.scale_factors[last_octave]
            indices = current.features_in_radius(
                u, v, radius, last_octave - 1, last_octave + 1
            )
            if not indices:
                continue

            def taken(idx):
                other = current.map_points[idx]
                return other is not None and other.observations() > 0

            best_dist, best_idx = self._best_in_window(
                current, indices, descriptor, taken
            )
            if best_dist <= self.TH_HIGH:
                current.map_points[best_idx] = mp
                n_matches += 1
                if self.check_orientation:
                    histogram[
                        self._rotation_bin(
                            last.keypoints_un[i].angle,
                            current.keypoints_un[best_idx].angle,
                        )
                    ].append(best_idx)

        if self.check_orientation:
            for idx in self._inconsistent_rotations(histogram):
                current.map_points[idx] = None
                n_matches -= 1

        return n_matches

    def search_by_projection_keyframe(
        self, frame, keyframe, already_found: Set, th: float, orb_dist: int
    ) -> int:
        """
        Project the map points of a keyframe into a frame with a known pose.

        Used by relocalization to recover more matches after a first pose
        estimate.

        Args:
            frame: Frame with a pose
            keyframe: Keyframe whose map points are projected
            already_found: Map points already matched in the frame
            th: Window multiplier per predicted scale
            orb_dist: Maximum descriptor distance

        Returns:
            Number of new matches
        """
        n_matches = 0
        histogram: List[List[int]] = [[] for _ in range(HISTO_LENGTH)]
        camera = frame.camera
        bounds = frame.bounds
        center = frame.get_camera_center()

        for i, mp in enumerate(keyframe.get_map_point_matches()):
            if mp is None or mp.is_bad() or mp in already_found:
                continue
            descriptor = mp.get_descriptor()
            if descriptor is None:
                continue

            position = mp.get_world_pos()
            point_cam = frame.pose.transform_points(position)
            z = float(point_cam[2])
            if z <= 0:
                continue
            u = camera.fx * float(point_cam[0]) / z + camera.cx
            v = camera.fy * float(point_cam[1]) / z + camera.cy
            if not bounds.contains(u, v):
                continue

            dist = float(torch.linalg.norm(position - center))
            if (
                dist < mp.get_min_distance_invariance()
                or dist > mp.get_max_distance_invariance()
            ):
                continue

            predicted_level = mp.predict_scale(dist, frame)
            radius = th * frame.scale_factors[predicted_level]
            indices = frame.features_in_radius(
                u, v, radius, predicted_level - 1, predicted_level + 1
            )
            if not indices:
                continue

            best_dist, best_idx = self._best_in_window(
                frame, indices, descriptor, lambda idx: frame.map_points[idx] is not None
            )
            if best_dist <= orb_dist:
                frame.map_points[best_idx] = mp
                n_matches += 1
                if self.check_orientation:
                    histogram[
                        self._rotation_bin(
                            keyframe.keypoints_un[i].angle,
                            frame.keypoints_un[best_idx].angle,
                        )
                    ].append(best_idx)

        if self.check_orientation:
            for idx in self._inconsistent_rotations(histogram):
                frame.map_points[idx] = None
                n_matches -= 1

        return n_matches

    def search_for_initialization(
        self, reference, current, window_size: int = 100
    ) -> List[Tuple[int, int]]:
        """
        Match finest-level features of two frames within a fixed window.

        Args:
            reference: First frame of the two-view initialization
            current: Second frame
            window_size: Search half-window in pixels

        Returns:
            List of (reference index, current index) pairs
        """
        matches12 = [-1] * reference.N
        matches21 = [-1] * current.N
        matched_distance = [math.inf] * current.N
        histogram: List[List[int]] = [[] for _ in range(HISTO_LENGTH)]

        for i1, kp1 in enumerate(reference.keypoints_un):
            level = kp1.octave
            if level > 0:
                continue
            indices = current.features_in_radius(kp1.x, kp1.y, window_size, level, level)
            if not indices:
                continue

            distances = hamming_distance_matrix(
                reference.descriptors[i1].unsqueeze(0), current.descriptors[indices]
            )[0].tolist()

            best_dist = best_dist2 = math.inf
            best_idx = -1
            for i2, dist in zip(indices, distances):
                if matched_distance[i2] <= dist:
                    continue
                if dist < best_dist:
                    best_dist2 = best_dist
                    best_dist = dist
                    best_idx = i2
                elif dist < best_dist2:
                    best_dist2 = dist

            if best_dist <= self.TH_LOW and best_dist < best_dist2 * self.nn_ratio:
                previous = matches21[best_idx]
                if previous >= 0:
                    matches12[previous] = -1
                matches12[i1] = best_idx
                matches21[best_idx] = i1
                matched_distance[best_idx] = best_dist
                if self.check_orientation:
                    histogram[
                        self._rotation_bin(
                            kp1.angle, current.keypoints_un[best_idx].angle
                        )
                    ].append(i1)

        if self.check_orientation:
            for i1 in self._inconsistent_rotations(histogram):
                matches12[i1] = -1

        return [(i1, i2) for i1, i2 in enumerate(matches12) if i2 >= 0]

    def search_for_triangulation(
        self, keyframe1, keyframe2, fundamental: np.ndarray
    ) -> List[Tuple[int, int]]:
        """
        Match features without map points between two keyframes, enforcing
        the epipolar constraint.

        Args:
            keyframe1: First keyframe
            keyframe2: Second keyframe
            fundamental: Fundamental matrix F12 (x1^T F12 x2 = 0)

        Returns:
            List of (index in keyframe1, index in keyframe2) pairs
        """
        # Epipole of camera 1 in image 2
        center1 = keyframe1.get_camera_center()
        center1_in_2 = keyframe2.get_pose().transform_points(center1)
        # No epipole in the image plane for sideways motion
        has_epipole = abs(float(center1_in_2[2])) > 1e-9
        if has_epipole:
            inv_z = 1.0 / float(center1_in_2[2])
            camera2 = keyframe2.camera
            ex = camera2.fx * float(center1_in_2[0]) * inv_z + camera2.cx
            ey = camera2.fy * float(center1_in_2[1]) * inv_z + camera2.cy

        points1 = keyframe1.get_map_point_ids()
        points2 = keyframe2.get_map_point_ids()
        matched2 = [False] * keyframe2.N
        matches12: Dict[int, int] = {}
        histogram: List[List[int]] = [[] for _ in range(HISTO_LENGTH)]

        for node_id, indices1 in keyframe1.feature_vector.items():
            indices2 = keyframe2.feature_vector.get(node_id)
            if not indices2:
                continue

            free1 = [idx for idx in indices1 if points1[idx] is None]
            free2 = [idx for idx in indices2 if points2[idx] is None]
            if not free1 or not free2:
                continue

            distances = hamming_distance_matrix(
                keyframe1.descriptors[free1], keyframe2.descriptors[free2]
            ).tolist()

            for row, idx1 in enumerate(free1):
                kp1 = keyframe1.keypoints_un[idx1]
                best_dist = self.TH_LOW
                best_idx2 = -1
                for col, idx2 in enumerate(free2):
                    if matched2[idx2]:
                        continue
                    dist = distances[row][col]
                    if dist > self.TH_LOW or dist > best_dist:
                        continue

                    kp2 = keyframe2.keypoints_un[idx2]
                    if has_epipole:
                        dist_ex = ex - kp2.x
                        dist_ey = ey - kp2.y
                        if (
                            dist_ex * dist_ex + dist_ey * dist_ey
                            < 100 * keyframe2.scale_factors[kp2.octave]
                        ):
                            continue

                    if self.check_dist_epipolar_line(kp1, kp2, fundamental, keyframe2):
                        best_idx2 = idx2
                        best_dist = dist

                if best_idx2 >= 0:
                    matched2[best_idx2] = True
                    matches12[idx1] = best_idx2
                    if self.check_orientation:
                        histogram[
                            self._rotation_bin(
                                kp1.angle, keyframe2.keypoints_un[best_idx2].angle
                            )
                        ].append(idx1)

        if self.check_orientation:
            for idx1 in self._inconsistent_rotations(histogram):
                matches12.pop(idx1, None)

        return sorted(matches12.items())

    @staticmethod
    def check_dist_epipolar_line(kp1, kp2, fundamental: np.ndarray, keyframe2) -> bool:
        """Check that kp2 lies close enough to the epipolar line of kp1."""
        a = kp1.x * fundamental[0, 0] + kp1.y * fundamental[1, 0] + fundamental[2, 0]
        b = kp1.x * fundamental[0, 1] + kp1.y * fundamental[1, 1] + fundamental[2, 1]
        c = kp1.x * fundamental[0, 2] + kp1.y * fundamental[1, 2] + fundamental[2, 2]

        num = a * kp2.x + b * kp2.y + c
        den = a * a + b * b
        if den == 0:
            return False

        dsqr = num * num / den
        return dsqr < 3.84 * keyframe2.level_sigma2[kp2.octave]
