from unittest.mock import patch

import numpy as np
import pytest
import torch

from maptrack.frontend.feature_extraction.base import KeyPoint
from maptrack.frontend.feature_extraction.feature_matcher import ORBMatcher
from maptrack.frontend.frame import Frame
from maptrack.frontend.odometry.base import FramePose
from maptrack.mapping.persistence import MapIO
from maptrack.slam.state import TrackingState
from maptrack.slam.tracker import Tracker

TEST_CONFIG = {
    "vocabulary": {"branching": 4, "depth": 3},
    "tracking": {"optical_flow": False},
}


def pose_at_x(x: float) -> FramePose:
    return FramePose(
        torch.eye(3, dtype=torch.float64), torch.tensor([-x, 0.0, 0.0], dtype=torch.float64)
    )


def random_descriptors(n: int, seed: int = 99) -> torch.Tensor:
    generator = torch.Generator().manual_seed(seed)
    return torch.randint(0, 256, (n, 32), dtype=torch.uint8, generator=generator)


def flip_bits(descriptors: torch.Tensor, n_bits: int, seed: int = 7) -> torch.Tensor:
    """Copy of the descriptors, each exactly ``n_bits`` away from the original."""
    rng = np.random.default_rng(seed)
    flipped = descriptors.numpy().copy()
    for row in flipped:
        bits = np.zeros(256, dtype=np.uint8)
        bits[rng.choice(256, n_bits, replace=False)] = 1
        row ^= np.packbits(bits)
    return torch.from_numpy(flipped)


@pytest.fixture
def tracker_for(tmp_path, camera):
    """Tracker with a synthetic map loaded through the persistence layer."""

    def make(map_, config=None):
        path = tmp_path / "map.yml"
        assert MapIO().save(path, map_)
        tracker = Tracker(config=config or TEST_CONFIG)
        tracker.set_calibration(camera.K)
        tracker.load_map(path)
        return tracker

    return make


def frame_from(tracker, keyframe, frame_id=100, keypoints=None, descriptors=None):
    """Frame with the features of a keyframe, optionally replaced."""
    return Frame(
        frame_id,
        0.1 * frame_id,
        tracker.camera,
        list(keypoints if keypoints is not None else keyframe.keypoints),
        descriptors if descriptors is not None else keyframe.descriptors.clone(),
        geometry=keyframe.geometry,
    )


def camera_x(frame) -> float:
    return float(frame.pose.camera_center()[0])


# --- Reference keyframe ---


def test_reference_keyframe_from_last_pose(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    reference = tracker.map.get_keyframe(1)
    tracker.reference_keyframe = reference
    tracker.last_frame = frame_from(tracker, tracker.map.get_keyframe(0), frame_id=99)
    tracker.last_frame.set_pose(pose_at_x(0.15))
    frame = frame_from(tracker, reference)
    tracker.current_frame = frame

    assert tracker.track_reference_keyframe()

    assert camera_x(frame) == pytest.approx(0.1, abs=1e-4)
    assert sum(mp is not None for mp in frame.map_points) == 30


def test_reference_keyframe_needs_15_matches(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    reference = tracker.map.get_keyframe(1)
    tracker.reference_keyframe = reference
    tracker.last_frame = frame_from(tracker, tracker.map.get_keyframe(0), frame_id=99)
    tracker.last_frame.set_pose(pose_at_x(0.1))

    descriptors = reference.descriptors.clone()
    descriptors[10:] = random_descriptors(20)
    tracker.current_frame = frame_from(tracker, reference, descriptors=descriptors)

    assert not tracker.track_reference_keyframe()


# --- Motion model ---


def moved_frame(tracker, keyframe, x, frame_id=100, descriptors=None):
    """Keyframe features re-projected from a camera centred at ``x``."""
    pose = pose_at_x(x)
    camera = tracker.camera
    keypoints = []
    for mp in keyframe.get_map_point_matches():
        p = pose.transform_points(mp.get_world_pos())
        u = camera.fx * float(p[0]) / float(p[2]) + camera.cx
        v = camera.fy * float(p[1]) / float(p[2]) + camera.cy
        keypoints.append(KeyPoint(u, v, response=1.0, angle=0.0, octave=0))
    return frame_from(tracker, keyframe, frame_id, keypoints, descriptors)


def prepare_motion_model(tracker):
    keyframe = tracker.map.get_keyframe(1)
    last = frame_from(tracker, keyframe, frame_id=99)
    last.set_pose(keyframe.get_pose())
    last.map_points = keyframe.get_map_point_matches()
    tracker.last_frame = last
    tracker.velocity = FramePose.identity()
    return keyframe


def test_motion_model_widens_window(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    keyframe = prepare_motion_model(tracker)
    # A 0.16 baseline moves the points 16 to 27 pixels from the prediction
    frame = moved_frame(tracker, keyframe, 0.26)
    tracker.current_frame = frame

    with patch.object(
        ORBMatcher,
        "search_by_projection_last_frame",
        autospec=True,
        side_effect=ORBMatcher.search_by_projection_last_frame,
    ) as search:
        assert tracker.track_with_motion_model()

    assert [call.args[3] for call in search.call_args_list] == [15, 30]
    assert camera_x(frame) == pytest.approx(0.26, abs=1e-4)
    assert sum(mp is not None for mp in frame.map_points) == 30


def test_motion_model_needs_20_matches(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    keyframe = prepare_motion_model(tracker)
    descriptors = keyframe.descriptors.clone()
    descriptors[19:] = random_descriptors(11)
    tracker.current_frame = moved_frame(tracker, keyframe, 0.12, descriptors=descriptors)

    with patch.object(
        ORBMatcher,
        "search_by_projection_last_frame",
        autospec=True,
        side_effect=ORBMatcher.search_by_projection_last_frame,
    ) as search:
        assert not tracker.track_with_motion_model()

    assert [call.args[3] for call in search.call_args_list] == [15, 30]


# --- Local map ---


def test_local_map_inlier_thresholds(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    keyframe = tracker.map.get_keyframe(1)

    def seeded_frame(frame_id):
        frame = frame_from(tracker, keyframe, frame_id)
        frame.set_pose(keyframe.get_pose())
        matches = keyframe.get_map_point_matches()
        frame.map_points[:10] = matches[:10]
        tracker.current_frame = frame
        return frame

    # Thirty inliers are enough in normal tracking
    frame = seeded_frame(100)
    assert tracker.track_local_map()
    assert tracker.n_matches_inliers == 30
    assert frame.map_points == keyframe.get_map_point_matches()
    assert tracker.reference_keyframe is not None

    # Shortly after a relocalization fifty are required
    seeded_frame(101)
    tracker.last_reloc_frame_id = 90
    assert not tracker.track_local_map()
    assert tracker.n_matches_inliers == 30


@pytest.mark.parametrize("max_local_keyframes, capped", [(0, True), (80, False)])
def test_local_keyframes_cap(map_factory, tracker_for, max_local_keyframes, capped):
    map_ = map_factory(n_keyframes=6, points_per_keyframe=30, overlap=10)
    config = {
        "vocabulary": {"branching": 4, "depth": 3},
        "tracking": {"optical_flow": False, "max_local_keyframes": max_local_keyframes},
    }
    tracker = tracker_for(map_, config)
    keyframe = tracker.map.get_keyframe(2)
    frame = frame_from(tracker, keyframe)
    frame.set_pose(keyframe.get_pose())
    # Points 50..59 are only seen by keyframe 2
    frame.map_points[10:20] = keyframe.get_map_point_matches()[10:20]
    tracker.current_frame = frame

    tracker.update_local_keyframes()

    local_ids = [kf.id for kf in tracker.local_keyframes]
    assert local_ids[0] == 2
    if capped:
        assert local_ids == [2]
    else:
        assert len(local_ids) > 1
    assert tracker.reference_keyframe is keyframe


# --- Relocalization ---


def test_relocalize_against_loaded_map(map_factory, tracker_for):
    tracker = tracker_for(map_factory(points_per_keyframe=80, overlap=60))
    keyframe = tracker.map.get_keyframe(1)
    frame = frame_from(tracker, keyframe)
    tracker.current_frame = frame

    assert tracker.relocalize()

    assert camera_x(frame) == pytest.approx(0.1, abs=1e-3)
    assert tracker.last_reloc_frame_id == frame.id
    assert sum(mp is not None for mp in frame.map_points) >= 50


def test_relocalization_needs_15_bow_matches(map_factory, tracker_for):
    tracker = tracker_for(map_factory(points_per_keyframe=80, overlap=60))
    keyframe = tracker.map.get_keyframe(1)
    descriptors = keyframe.descriptors.clone()
    descriptors[10:] = random_descriptors(70)
    frame = frame_from(tracker, keyframe, descriptors=descriptors)
    tracker.current_frame = frame
    assert tracker.keyframe_database.detect_relocalization_candidates(frame)

    with patch.object(tracker.pnp_solver, "solve", wraps=tracker.pnp_solver.solve) as solve:
        assert not tracker.relocalize()

    solve.assert_not_called()
    assert all(mp is None for mp in frame.map_points)


def test_relocalization_needs_50_inliers(synthetic_map, tracker_for):
    # Every keyframe sees 30 points: the pose is found but not trusted
    tracker = tracker_for(synthetic_map)
    tracker.current_frame = frame_from(tracker, tracker.map.get_keyframe(1))

    with patch.object(tracker.pnp_solver, "solve", wraps=tracker.pnp_solver.solve) as solve:
        assert not tracker.relocalize()

    solve.assert_called()
    assert tracker.last_reloc_frame_id == 0


def relocalization_windows(tracker):
    with patch.object(
        ORBMatcher,
        "search_by_projection_keyframe",
        autospec=True,
        side_effect=ORBMatcher.search_by_projection_keyframe,
    ) as search:
        ok = tracker.relocalize()
    return ok, [(call.args[4], call.args[5]) for call in search.call_args_list]


def test_relocalization_wide_window_recovers_matches(map_factory, tracker_for):
    tracker = tracker_for(map_factory(points_per_keyframe=80, overlap=60))
    keyframe = tracker.map.get_keyframe(1)
    descriptors = keyframe.descriptors.clone()
    # Too far for bag-of-words matching, close enough for the projection search
    descriptors[40:] = flip_bits(descriptors[40:], 60)
    frame = frame_from(tracker, keyframe, descriptors=descriptors)
    tracker.current_frame = frame

    ok, windows = relocalization_windows(tracker)

    assert ok
    assert windows[0] == (10, 100)
    assert (3, 64) not in windows
    assert camera_x(frame) == pytest.approx(0.1, abs=1e-3)


def test_relocalization_narrow_window(map_factory, tracker_for):
    tracker = tracker_for(map_factory(points_per_keyframe=80, overlap=60))
    keyframe = tracker.map.get_keyframe(1)
    keypoints = list(keyframe.keypoints)
    offsets = [(6.0, 0.0), (-6.0, 0.0), (0.0, 6.0), (0.0, -6.0)]
    for k, idx in enumerate(range(40, 55)):
        dx, dy = offsets[k % 4]
        keypoints[idx] = keypoints[idx].moved_to(keypoints[idx].x + dx, keypoints[idx].y + dy)
    descriptors = keyframe.descriptors.clone()
    descriptors[55:] = random_descriptors(25)
    tracker.current_frame = frame_from(
        tracker, keyframe, keypoints=keypoints, descriptors=descriptors
    )

    ok, windows = relocalization_windows(tracker)

    # 40 exact matches plus 15 displaced ones found by the wide window, which
    # the optimization rejects again; the narrow window has nothing left
    assert not ok
    assert set(windows) == {(10, 100), (3, 64)}
    narrow = windows.index((3, 64))
    assert windows[narrow - 1] == (10, 100)
    assert tracker.last_reloc_frame_id == 0


# --- Frame bookkeeping ---


def test_velocity_and_lost_frame_trajectory(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    tracker.only_tracking = True
    tracker.state_machine.state = TrackingState.OK
    tracker.reference_keyframe = tracker.map.get_keyframe(1)
    origin = tracker.map.get_keyframe(0)
    tracker.last_frame = frame_from(tracker, origin, frame_id=99)
    tracker.last_frame.set_pose(origin.get_pose())
    tracker._last_frame_ok = True

    tracker.current_frame = frame_from(tracker, tracker.map.get_keyframe(1))
    assert tracker._track()

    assert tracker.state == TrackingState.OK
    assert torch.allclose(
        tracker.velocity.translation,
        torch.tensor([-0.1, 0.0, 0.0], dtype=torch.float64),
        atol=1e-4,
    )
    assert len(tracker.trajectory) == 1
    tracked_pose = tracker.trajectory.last_pose()

    # Nothing matches: the last relative pose is repeated
    tracker.current_frame = frame_from(
        tracker, origin, frame_id=101, descriptors=random_descriptors(30)
    )
    assert not tracker._track()

    assert tracker.state == TrackingState.LOST
    assert tracker.velocity is None
    assert len(tracker.trajectory) == 2
    assert tracker.trajectory.entries[-1].lost
    assert tracker.trajectory.entries[-1].reference is tracker.trajectory.entries[0].reference
    assert torch.allclose(tracker.trajectory.last_pose().translation, tracked_pose.translation)


def test_velocity_needs_tracked_last_frame(synthetic_map, tracker_for):
    tracker = tracker_for(synthetic_map)
    origin = tracker.map.get_keyframe(0)
    tracker.last_frame = frame_from(tracker, origin, frame_id=99)
    tracker.last_frame.set_pose(origin.get_pose())
    frame = frame_from(tracker, tracker.map.get_keyframe(1))
    frame.set_pose(tracker.map.get_keyframe(1).get_pose())

    tracker._last_frame_ok = False
    tracker._update_motion_model(frame)
    assert tracker.velocity is None

    tracker._last_frame_ok = True
    tracker._update_motion_model(frame)
    assert float(tracker.velocity.translation[0]) == pytest.approx(-0.1)
