import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import torch

from maptrack.frontend.feature_extraction.base import KeyPoint
from maptrack.frontend.frame import Frame
from maptrack.frontend.odometry.base import FramePose
from maptrack.mapping.persistence import MapIO, MapIOError, MapIntegrityError
from maptrack.slam.interfaces import ImageSource, TrackingType
from maptrack.slam.state import TrackingState
from maptrack.slam.tracker import Tracker

CAMERA_MATRIX = np.array([[100.0, 0.0, 80.0], [0.0, 100.0, 60.0], [0.0, 0.0, 1.0]])

# Small vocabulary and no optical flow to keep the tests fast and deterministic
TEST_CONFIG = {
    "vocabulary": {"branching": 4, "depth": 3},
    "tracking": {"optical_flow": False, "idle_wait": 0.001},
}


class BlankSource(ImageSource):
    """Endless source of featureless images."""

    def __init__(self, calibration=True):
        self.n_frames = 0
        self._calibration = calibration

    def next_frame(self):
        self.n_frames += 1
        gray = np.zeros((120, 160), dtype=np.uint8)
        return gray, np.zeros((120, 160, 3), dtype=np.uint8), 0.1 * self.n_frames

    def calibration(self):
        if not self._calibration:
            return None
        return CAMERA_MATRIX, np.zeros(5)


def translation_pose(x):
    return FramePose(torch.eye(3, dtype=torch.float64), torch.tensor([x, 0.0, 0.0]))


class TestTracker(unittest.TestCase):
    def setUp(self):
        """Set up a serial tracker with a calibrated camera."""
        self.tracker = Tracker(config=TEST_CONFIG)
        self.tracker.set_calibration(CAMERA_MATRIX)

    def make_frame(self, frame_id=10, n_features=5):
        keypoints = [KeyPoint(10.0 + 20.0 * i, 50.0) for i in range(n_features)]
        descriptors = torch.zeros((n_features, 32), dtype=torch.uint8)
        return Frame(
            frame_id, 1.0, self.tracker.camera, keypoints, descriptors, image_size=(160, 120)
        )

    def test_initial_state(self):
        self.assertEqual(self.tracker.state, TrackingState.NOT_INITIALIZED)
        self.assertEqual(self.tracker.extractor.max_features, 1000)
        self.assertEqual(self.tracker.init_extractor.max_features, 2000)
        self.assertFalse(self.tracker.use_optical_flow)
        self.assertEqual(self.tracker.keyframe_database.size(), 0)

    def test_track_requires_calibration(self):
        tracker = Tracker(config=TEST_CONFIG)
        with self.assertRaises(ValueError):
            tracker.track(np.zeros((120, 160), dtype=np.uint8), 0.0)

    def test_calibration_from_image_source(self):
        tracker = Tracker(config=TEST_CONFIG, image_source=BlankSource())
        self.assertIsNone(tracker.camera)

        # A featureless image cannot start initialization
        gray, _, timestamp = tracker.image_source.next_frame()
        self.assertIsNone(tracker.track(gray, timestamp))

        self.assertIsNotNone(tracker.camera)
        self.assertTrue(np.allclose(tracker.camera.K, CAMERA_MATRIX))
        self.assertEqual(tracker.state, TrackingState.NOT_INITIALIZED)
        self.assertIsNone(tracker.initializer.reference)
        self.assertIs(tracker.last_frame, tracker.current_frame)

    def test_calibration_change_resets_geometry(self):
        self.tracker.track(np.zeros((120, 160), dtype=np.uint8), 0.0)
        self.assertIsNotNone(self.tracker.geometry)

        self.tracker.set_calibration(CAMERA_MATRIX)
        self.assertIsNotNone(self.tracker.geometry)

        other = CAMERA_MATRIX.copy()
        other[0, 0] = 120.0
        self.tracker.set_calibration(other)
        self.assertIsNone(self.tracker.geometry)

    # --- Strategy selection ---

    def test_lost_frame_is_relocalized(self):
        self.tracker.state_machine.state = TrackingState.LOST
        self.tracker.current_frame = self.make_frame()

        with patch.object(
            self.tracker, "relocalize", return_value=True
        ) as relocalize, patch.object(self.tracker, "track_reference_keyframe") as reference:
            self.assertTrue(self.tracker._estimate_pose())

        relocalize.assert_called_once()
        reference.assert_not_called()
        self.assertEqual(self.tracker.tracking_type, TrackingType.RELOCALIZATION)

    def test_reference_keyframe_without_velocity(self):
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.current_frame = self.make_frame()

        with patch.object(
            self.tracker, "track_reference_keyframe", return_value=True
        ) as reference, patch.object(self.tracker, "track_with_motion_model") as motion:
            self.assertTrue(self.tracker._estimate_pose())

        reference.assert_called_once()
        motion.assert_not_called()
        self.assertEqual(self.tracker.tracking_type, TrackingType.REFERENCE_KEYFRAME)

    def test_motion_model_falls_back_to_reference_keyframe(self):
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.current_frame = self.make_frame()
        self.tracker.velocity = translation_pose(0.1)

        with patch.object(
            self.tracker, "track_with_motion_model", return_value=False
        ) as motion, patch.object(
            self.tracker, "track_reference_keyframe", return_value=True
        ) as reference:
            self.assertTrue(self.tracker._estimate_pose())

        motion.assert_called_once()
        reference.assert_called_once()
        self.assertEqual(self.tracker.tracking_type, TrackingType.REFERENCE_KEYFRAME)

    def test_motion_model_used_with_velocity(self):
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.current_frame = self.make_frame()
        self.tracker.velocity = translation_pose(0.1)

        with patch.object(
            self.tracker, "track_with_motion_model", return_value=True
        ), patch.object(self.tracker, "track_reference_keyframe") as reference:
            self.assertTrue(self.tracker._estimate_pose())

        reference.assert_not_called()
        self.assertEqual(self.tracker.tracking_type, TrackingType.MOTION_MODEL)

    def test_reference_keyframe_right_after_relocalization(self):
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.current_frame = self.make_frame(frame_id=10)
        self.tracker.velocity = translation_pose(0.1)
        self.tracker.last_reloc_frame_id = 9

        with patch.object(
            self.tracker, "track_reference_keyframe", return_value=False
        ) as reference, patch.object(self.tracker, "track_with_motion_model") as motion:
            self.assertFalse(self.tracker._estimate_pose())

        reference.assert_called_once()
        motion.assert_not_called()

    def test_relocalize_without_candidates(self):
        self.tracker.current_frame = self.make_frame()

        with patch.object(
            self.tracker.keyframe_database, "detect_relocalization_candidates", return_value=[]
        ), patch("maptrack.slam.tracker.ORBMatcher") as matcher:
            self.assertFalse(self.tracker.relocalize())

        matcher.assert_not_called()

    # --- Visual odometry ---

    def test_visual_odometry_prefers_relocalization(self):
        frame = self.make_frame()
        self.tracker.current_frame = frame
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.vo_mode = True
        self.tracker.velocity = translation_pose(0.1)

        def motion_model():
            frame.set_pose(translation_pose(1.0))
            return True

        def relocalize():
            frame.set_pose(translation_pose(2.0))
            return True

        with patch.object(
            self.tracker, "track_with_motion_model", side_effect=motion_model
        ), patch.object(self.tracker, "relocalize", side_effect=relocalize):
            self.assertTrue(self.tracker._estimate_pose())

        self.assertFalse(self.tracker.vo_mode)
        self.assertEqual(self.tracker.tracking_type, TrackingType.RELOCALIZATION)
        self.assertAlmostEqual(float(frame.pose.translation[0]), 2.0)

    def test_visual_odometry_keeps_motion_model_result(self):
        frame = self.make_frame()
        self.tracker.current_frame = frame
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.vo_mode = True
        self.tracker.velocity = translation_pose(0.1)
        map_point = MagicMock()

        def motion_model():
            frame.set_pose(translation_pose(1.0))
            frame.map_points[0] = map_point
            return True

        def relocalize():
            # A failed relocalization leaves its own pose and matches behind
            frame.set_pose(translation_pose(2.0))
            frame.map_points = [None] * frame.N
            return False

        with patch.object(
            self.tracker, "track_with_motion_model", side_effect=motion_model
        ), patch.object(self.tracker, "relocalize", side_effect=relocalize):
            self.assertTrue(self.tracker._estimate_pose())

        self.assertTrue(self.tracker.vo_mode)
        self.assertEqual(self.tracker.tracking_type, TrackingType.MOTION_MODEL)
        self.assertAlmostEqual(float(frame.pose.translation[0]), 1.0)
        self.assertIs(frame.map_points[0], map_point)
        map_point.increase_found.assert_called_once()

    def test_visual_odometry_fails_when_both_fail(self):
        self.tracker.current_frame = self.make_frame()
        self.tracker.state_machine.state = TrackingState.OK
        self.tracker.vo_mode = True

        with patch.object(self.tracker, "track_with_motion_model") as motion, patch.object(
            self.tracker, "relocalize", return_value=False
        ):
            self.assertFalse(self.tracker._estimate_pose())

        # Without velocity only relocalization is attempted
        motion.assert_not_called()

    # --- Worker ---

    def test_serial_tracker_cannot_start(self):
        with self.assertRaises(RuntimeError):
            self.tracker.start()

    def test_worker_requires_image_source(self):
        tracker = Tracker(config=TEST_CONFIG, serial=False)
        with self.assertRaises(ValueError):
            tracker.start()

    def test_pause_without_worker(self):
        self.assertFalse(self.tracker.pause(0.01))

    def test_worker_pause_resume_stop(self):
        source = BlankSource()
        tracker = Tracker(config=TEST_CONFIG, image_source=source, serial=False)

        tracker.start()
        try:
            self.assertTrue(tracker.is_worker_running())
            self.assertTrue(tracker.pause(5.0))
            self.assertTrue(tracker.state_machine.is_idle())

            # No image is consumed while idle
            n_frames = source.n_frames
            time.sleep(0.05)
            self.assertEqual(source.n_frames, n_frames)

            tracker.resume()
        finally:
            tracker.stop(5.0)

        self.assertFalse(tracker.is_worker_running())
        self.assertIsNotNone(tracker.camera)
        self.assertGreater(source.n_frames, 0)

    def test_worker_stops_while_waiting_for_calibration(self):
        tracker = Tracker(
            config=TEST_CONFIG, image_source=BlankSource(calibration=False), serial=False
        )
        tracker.start()
        tracker.stop(5.0)

        self.assertFalse(tracker.is_worker_running())
        self.assertEqual(tracker.image_source.n_frames, 0)

    def test_reset_while_waiting_for_calibration(self):
        source = BlankSource(calibration=False)
        tracker = Tracker(config=TEST_CONFIG, image_source=source, serial=False)
        tracker.start()
        try:
            resetter = threading.Thread(target=tracker.reset, daemon=True)
            resetter.start()
            resetter.join(5.0)
            self.assertFalse(resetter.is_alive())
            self.assertEqual(tracker.state, TrackingState.NOT_INITIALIZED)

            self.assertTrue(tracker.pause(5.0))
            self.assertEqual(source.n_frames, 0)
            tracker.resume()

            # The worker still starts once a calibration arrives
            tracker.set_calibration(CAMERA_MATRIX)
            deadline = time.time() + 5.0
            while source.n_frames == 0 and time.time() < deadline:
                time.sleep(0.01)
            self.assertGreater(source.n_frames, 0)
        finally:
            tracker.stop(5.0)

        self.assertFalse(tracker.is_worker_running())


# --- Session ---


@pytest.fixture
def saved_map(synthetic_map, tmp_path):
    path = tmp_path / "map.yml"
    assert MapIO().save(path, synthetic_map)
    return path


def test_load_map_sets_lost(saved_map):
    scene = MagicMock()
    tracker = Tracker(config=TEST_CONFIG, scene_proxy=scene)

    assert tracker.load_map(saved_map) == 3

    assert tracker.state == TrackingState.LOST
    assert tracker.map.keyframes_in_map() == 3
    assert tracker.map.map_points_in_map() == 50
    assert tracker.keyframe_database.size() == 3
    scene.clear_all.assert_called_once()
    scene.update_all.assert_called()


def test_save_loaded_map(saved_map, tmp_path):
    tracker = Tracker(config=TEST_CONFIG)
    tracker.load_map(saved_map)

    path = tmp_path / "copy.json"
    assert tracker.save_map(path)

    other = Tracker(config=TEST_CONFIG)
    assert other.load_map(path) == 3


def test_reset_clears_session(saved_map):
    scene = MagicMock()
    tracker = Tracker(config=TEST_CONFIG, scene_proxy=scene)
    tracker.load_map(saved_map)
    scene.reset_mock()

    tracker.reset()

    assert tracker.state == TrackingState.NOT_INITIALIZED
    assert tracker.map.keyframes_in_map() == 0
    assert tracker.keyframe_database.size() == 0
    assert tracker.trajectory.last_pose() is None
    scene.clear_all.assert_called_once()


def test_failed_load_keeps_session_map(saved_map, tmp_path):
    tracker = Tracker(config=TEST_CONFIG)
    tracker.load_map(saved_map)
    session_map = tracker.map
    session_database = tracker.keyframe_database

    with pytest.raises(MapIOError):
        tracker.load_map(tmp_path / "typo.yml")

    assert tracker.map is session_map
    assert tracker.keyframe_database is session_database
    assert tracker.map.keyframes_in_map() == 3
    assert tracker.map.map_points_in_map() == 50
    assert tracker.keyframe_database.size() == 3
    assert tracker.state == TrackingState.LOST


def test_map_without_origin_is_not_loaded(saved_map, synthetic_map, tmp_path):
    synthetic_map.erase_keyframe(synthetic_map.get_keyframe(0))
    broken = tmp_path / "broken.yml"
    assert MapIO().save(broken, synthetic_map)

    tracker = Tracker(config=TEST_CONFIG)
    tracker.load_map(saved_map)

    with pytest.raises(MapIntegrityError):
        tracker.load_map(broken)

    assert tracker.map.keyframes_in_map() == 3
    assert tracker.keyframe_database.size() == 3


def test_loaded_map_is_wired_into_map_growth(saved_map):
    tracker = Tracker(config=TEST_CONFIG)
    tracker.load_map(saved_map)

    assert tracker.map_grower.map is tracker.map
    assert tracker.map.keyframe_database is tracker.keyframe_database
