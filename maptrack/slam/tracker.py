"""
Monocular map-based camera tracker.

The tracker turns a stream of grayscale images into camera poses. It
initializes a map from two views, then estimates the pose of every frame
with optical flow, a constant velocity motion model, the reference keyframe
or relocalization, refines it against the local map, and grows the map with
new keyframes. It can run on a background worker thread fed by an image
source, or be driven frame by frame in serial mode.
"""
import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import numpy as np
import torch

from ..backend.optimization.pose_optimizer import PoseOptimizer
from ..config import DEFAULT_CONFIG, merge_config
from ..frontend.camera import GridGeometry, PinholeCamera
from ..frontend.feature_extraction.feature_matcher import ORBMatcher
from ..frontend.feature_extraction.orb import ORBFeatureExtractor
from ..frontend.frame import Frame
from ..frontend.initializer import MonocularInitializer
from ..frontend.odometry.base import FramePose
from ..frontend.odometry.optical_flow import OpticalFlowTracker
from ..frontend.odometry.pnp import PnPSolver
from ..frontend.place_recognition import KeyframeDatabase, OrbVocabulary
from ..mapping.map import Map
from ..mapping.map_growth import MapGrower
from ..mapping.persistence import MapIO
from .interfaces import ImageSource, PoseSink, SceneProxy, TrackingType
from .state import TrackingState, TrackingStateMachine
from .trajectory import TrajectoryLog


class Tracker:
    """
    Camera tracking state machine with an optional background worker.

    The map, the keyframe database and the trajectory belong to the
    tracker session. Frames are owned by the thread running :meth:`track`.
    """

    def __init__(
        self,
        config: Dict = None,
        image_source: Optional[ImageSource] = None,
        pose_sink: Optional[PoseSink] = None,
        scene_proxy: Optional[SceneProxy] = None,
        vocabulary: Optional[OrbVocabulary] = None,
        serial: bool = True,
    ):
        """
        Initialize the tracker.

        Args:
            config: Configuration overriding ``DEFAULT_CONFIG``
            image_source: Source of images and calibration for the worker
            pose_sink: Receiver of the camera pose of every tracked frame
            scene_proxy: Visualization proxy notified of map changes
            vocabulary: Visual vocabulary; built from the configuration if None
            serial: If True, frames are pushed with :meth:`track` and no
                worker thread is started
        """
        self.config = merge_config(DEFAULT_CONFIG, config)
        self.image_source = image_source
        self.pose_sink = pose_sink
        self.scene_proxy = scene_proxy
        self.serial = serial

        self.logger = logging.getLogger(self.__class__.__name__)

        tracking_config = self.config.get("tracking", {})
        self.only_tracking = tracking_config.get("only_tracking", False)
        self.use_optical_flow = tracking_config.get("optical_flow", True)
        self.max_frames = tracking_config.get("fps", 30)
        self.motion_model_threshold = tracking_config.get("motion_model_threshold", 15)
        self.min_motion_model_matches = tracking_config.get("min_motion_model_matches", 20)
        self.min_reference_matches = tracking_config.get("min_reference_matches", 15)
        self.min_reference_map_matches = tracking_config.get("min_reference_map_matches", 10)
        self.vo_map_matches = tracking_config.get("vo_map_matches", 10)
        self.max_local_keyframes = tracking_config.get("max_local_keyframes", 80)
        self.local_map_inliers = tracking_config.get("local_map_inliers", 30)
        self.local_map_inliers_after_reloc = tracking_config.get(
            "local_map_inliers_after_reloc", 50
        )
        self.idle_wait = tracking_config.get("idle_wait", 0.005)

        reloc_config = self.config.get("relocalization", {})
        self.reloc_min_bow_matches = reloc_config.get("min_bow_matches", 15)
        self.reloc_min_good = reloc_config.get("min_good_matches", 10)
        self.reloc_min_inliers = reloc_config.get("min_inliers", 50)

        self._init_frontend(vocabulary)
        self._init_mapping()

        # Session state
        self.state_machine = TrackingStateMachine()
        self.trajectory = TrajectoryLog()
        self.current_frame: Optional[Frame] = None
        self.last_frame: Optional[Frame] = None
        self.velocity: Optional[FramePose] = None
        self.reference_keyframe = None
        self.local_keyframes: List = []
        self.local_map_points: List = []
        self.vo_mode = False
        self.n_matches_inliers = 0
        self.last_reloc_frame_id = 0
        self.last_keyframe_frame_id = 0
        self.tracking_type = TrackingType.NONE
        self._last_frame_ok = False

        # Calibration is supplied by the caller or the image source
        self._camera: Optional[PinholeCamera] = None
        self.geometry: Optional[GridGeometry] = None
        self._calibration_ready = threading.Condition()

        self._running = False
        self._run_lock = threading.Lock()
        self._track_lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None

    def _init_frontend(self, vocabulary: Optional[OrbVocabulary]):
        """Initialize feature extraction, pose estimation and place recognition."""
        feature_config = self.config.get("feature_extraction", {})
        self.extractor = ORBFeatureExtractor.from_config(feature_config)
        # Initialization needs more features to find enough two-view matches
        init_config = dict(feature_config)
        init_config["max_features"] = 2 * feature_config.get("max_features", 1000)
        self.init_extractor = ORBFeatureExtractor.from_config(init_config)

        self.vocabulary = vocabulary or OrbVocabulary.from_config(
            self.config.get("vocabulary", {})
        )
        self.keyframe_database = KeyframeDatabase(self.vocabulary)

        self.optical_flow = OpticalFlowTracker(self.config.get("optical_flow", {}))
        self.pnp_solver = PnPSolver(self.config.get("pnp", {}))
        self.pose_optimizer = PoseOptimizer(self.config.get("optimization", {}))
        self.initializer = MonocularInitializer(self.config.get("initialization", {}))

    def _init_mapping(self, map_: Optional[Map] = None):
        """Initialize the map, map growth and persistence."""
        self.map = map_ if map_ is not None else Map(self.keyframe_database, self.scene_proxy)

        mapping_config = dict(self.config.get("mapping", {}))
        mapping_config["covisibility_threshold"] = self.config.get("matching", {}).get(
            "covisibility_threshold", 15
        )
        self.map_grower = MapGrower(self.map, self.keyframe_database, mapping_config)
        self.map_io = MapIO(self.config.get("persistence", {}))

    # Calibration

    def set_calibration(self, camera_matrix, dist_coeffs=None):
        """
        Supply or change the camera calibration.

        The grid geometry is recomputed from the next frame when the
        calibration changes. A worker waiting for calibration is released.
        """
        camera = PinholeCamera(camera_matrix, dist_coeffs)
        with self._calibration_ready:
            if not camera.same_calibration(self._camera):
                self.geometry = None
            self._camera = camera
            self._calibration_ready.notify_all()
        self.logger.info(f"Calibration set: {camera}")

    @property
    def camera(self) -> Optional[PinholeCamera]:
        with self._calibration_ready:
            return self._camera

    def _calibration_from_source(self) -> bool:
        if self.image_source is None:
            return False
        calibration = self.image_source.calibration()
        if calibration is None:
            return False
        self.set_calibration(*calibration)
        return True

    # Per-frame pipeline

    @property
    def state(self) -> TrackingState:
        return self.state_machine.state

    def track(
        self, image: np.ndarray, timestamp: float, color: Optional[np.ndarray] = None
    ) -> Optional[FramePose]:
        """
        Track one grayscale image.

        Args:
            image: Grayscale image
            timestamp: Image timestamp in seconds
            color: Color image for visualization, unused by tracking

        Returns:
            Camera pose (Tcw) of the frame, or None if tracking failed
        """
        camera = self.camera
        if camera is None and self._calibration_from_source():
            camera = self.camera
        if camera is None:
            raise ValueError("Camera calibration must be set before tracking")

        with self._track_lock:
            initializing = self.state == TrackingState.NOT_INITIALIZED
            extractor = self.init_extractor if initializing else self.extractor
            frame = Frame.from_image(
                self.map.frame_ids.next_id(),
                image,
                timestamp,
                camera,
                extractor,
                geometry=self.geometry,
            )
            if self.geometry is None:
                self.geometry = frame.geometry

            self.current_frame = frame
            ok = self._track()
            return frame.pose.copy() if ok and frame.pose is not None else None

    def _track(self) -> bool:
        frame = self.current_frame
        self.tracking_type = TrackingType.NONE

        if self.state == TrackingState.NOT_INITIALIZED:
            ok = self._initialize()
            if not ok:
                self.last_frame = frame
                self._last_frame_ok = False
                self._decorate()
                return False
            self._publish_pose(frame)
            self._finish_frame(True)
            return True

        ok = self._estimate_pose()

        # In VO mode there are too few map matches to retrieve a local map
        if ok and not self.vo_mode:
            ok = self.track_local_map()

        self.state_machine.state = TrackingState.OK if ok else TrackingState.LOST

        if ok:
            self._update_motion_model(frame)
            self._publish_pose(frame)
            self._clean_vo_matches(frame)
            if self._need_new_keyframe(frame):
                keyframe = self.map_grower.insert_keyframe(frame)
                self.reference_keyframe = keyframe
                frame.reference_keyframe = keyframe
                self.last_keyframe_frame_id = frame.id
                self.map.notify_scene()
            self._discard_outliers(frame)
        else:
            self.velocity = None

        self._decorate()
        self._finish_frame(ok)
        return ok

    def _estimate_pose(self) -> bool:
        """Run the pose estimation strategies in priority order."""
        frame = self.current_frame

        if self.state == TrackingState.LOST:
            ok = self.relocalize()
            if ok:
                self.tracking_type = TrackingType.RELOCALIZATION
            return ok

        ok = False
        if self.use_optical_flow:
            ok = self.track_with_optical_flow()
            if ok:
                self.tracking_type = TrackingType.OPTICAL_FLOW
                return True

        if not self.vo_mode:
            if self.velocity is None or frame.id < self.last_reloc_frame_id + 2:
                ok = self.track_reference_keyframe()
                self.tracking_type = TrackingType.REFERENCE_KEYFRAME
            else:
                ok = self.track_with_motion_model()
                self.tracking_type = TrackingType.MOTION_MODEL
                if not ok:
                    ok = self.track_reference_keyframe()
                    self.tracking_type = TrackingType.REFERENCE_KEYFRAME
            return ok

        return self._track_visual_odometry()

    def _track_visual_odometry(self) -> bool:
        """
        Compute one pose from the motion model and one from relocalization.

        The relocalized pose wins whenever relocalization succeeds, since it
        is anchored to the map and leaves VO mode; otherwise the motion
        model result is kept.
        """
        frame = self.current_frame
        ok_motion_model = False
        saved: Optional[Tuple[FramePose, List, List[bool]]] = None
        if self.velocity is not None:
            ok_motion_model = self.track_with_motion_model()
            if frame.pose is not None:
                saved = (frame.pose.copy(), list(frame.map_points), list(frame.outliers))

        ok_reloc = self.relocalize()

        if ok_motion_model and not ok_reloc:
            pose, map_points, outliers = saved
            frame.set_pose(pose)
            frame.map_points = map_points
            frame.outliers = outliers
            if self.vo_mode:
                for mp, outlier in zip(frame.map_points, frame.outliers):
                    if mp is not None and not outlier:
                        mp.increase_found()
            self.tracking_type = TrackingType.MOTION_MODEL
        elif ok_reloc:
            self.vo_mode = False
            self.tracking_type = TrackingType.RELOCALIZATION

        return ok_reloc or ok_motion_model

    def _initialize(self) -> bool:
        """Two-view map initialization."""
        frame = self.current_frame
        reconstruction = self.initializer.process(frame)
        if reconstruction is None:
            return False

        reference = self.initializer.reference
        keyframes = self.map_grower.create_initial_map(reference, frame, reconstruction)
        if keyframes is None:
            self._reset_session()
            return False

        kf_ini, kf_cur = keyframes
        self.initializer.reset()
        self.tracking_type = TrackingType.INITIALIZATION
        self.local_keyframes = [kf_cur, kf_ini]
        self.local_map_points = self.map.get_all_map_points()
        self.map.set_reference_map_points(self.local_map_points)
        self.reference_keyframe = kf_cur
        frame.reference_keyframe = kf_cur
        self.last_keyframe_frame_id = frame.id
        self.velocity = None
        self.vo_mode = False
        self.state_machine.state = TrackingState.OK
        self.map.notify_scene()
        self._decorate()
        return True

    def _finish_frame(self, ok: bool):
        frame = self.current_frame
        if frame.reference_keyframe is None:
            frame.reference_keyframe = self.reference_keyframe

        if ok and frame.reference_keyframe is not None and frame.pose is not None:
            self.trajectory.append(frame.pose, frame.reference_keyframe, frame.timestamp)
        else:
            self.trajectory.repeat_last(frame.timestamp)

        self.last_frame = frame
        self._last_frame_ok = ok

    def _update_motion_model(self, frame: Frame):
        last = self.last_frame
        if self._last_frame_ok and last is not None and last.pose is not None:
            self.velocity = frame.pose.compose(last.pose.inverse())
        else:
            self.velocity = None

    def _publish_pose(self, frame: Frame):
        if self.pose_sink is not None:
            twc = frame.pose.inverse().matrix_numpy()
            self.pose_sink.update_pose(twc, frame.timestamp)

    def _decorate(self):
        if self.scene_proxy is None or self.current_frame is None:
            return
        frame = self.current_frame
        keypoints = [
            frame.keypoints[i]
            for i, mp in enumerate(frame.map_points)
            if mp is not None and not frame.outliers[i]
        ]
        self.scene_proxy.decorate_frame(keypoints, self.tracking_type)

    @staticmethod
    def _clean_vo_matches(frame: Frame):
        for i, mp in enumerate(frame.map_points):
            if mp is not None and mp.observations() < 1:
                frame.outliers[i] = False
                frame.map_points[i] = None

    @staticmethod
    def _discard_outliers(frame: Frame):
        for i, mp in enumerate(frame.map_points):
            if mp is not None and frame.outliers[i]:
                frame.map_points[i] = None

    def _discard_optimized_outliers(self, frame: Frame) -> Tuple[int, int]:
        """
        Drop outlier matches after pose optimization.

        Returns:
            Tuple of (remaining matches, remaining matches to map points
            with observations)
        """
        n_matches = 0
        n_map_matches = 0
        for i, mp in enumerate(frame.map_points):
            if mp is None:
                continue
            if frame.outliers[i]:
                frame.map_points[i] = None
                frame.outliers[i] = False
                mp.track_in_view = False
                mp.last_frame_seen = frame.id
            else:
                n_matches += 1
                if mp.observations() > 0:
                    n_map_matches += 1
        return n_matches, n_map_matches

    # Strategies

    def track_with_optical_flow(self) -> bool:
        """Track the last frame's map points with optical flow."""
        last = self.last_frame
        if last is None or not self._last_frame_ok:
            return False

        pose = self.optical_flow.track(last, self.current_frame)
        if pose is None:
            return False

        self.current_frame.set_pose(pose)
        self.n_matches_inliers = self.optical_flow.num_inliers
        self.vo_mode = True
        return True

    def _update_last_frame(self):
        # Keyframe poses may have changed since the last frame was tracked
        pose = self.trajectory.last_pose()
        if pose is not None:
            self.last_frame.set_pose(pose)

    def track_with_motion_model(self) -> bool:
        """Predict the pose with constant velocity and match the last frame's points."""
        frame = self.current_frame
        last = self.last_frame
        if self.velocity is None or last is None:
            return False

        matcher = ORBMatcher(0.9, True)
        self._update_last_frame()
        frame.set_pose(self.velocity.compose(last.pose))
        frame.map_points = [None] * frame.N
        frame.outliers = [False] * frame.N

        th = self.motion_model_threshold
        n_matches = matcher.search_by_projection_last_frame(frame, last, th)
        if n_matches < self.min_motion_model_matches:
            frame.map_points = [None] * frame.N
            n_matches = matcher.search_by_projection_last_frame(frame, last, 2 * th)
        if n_matches < self.min_motion_model_matches:
            self.logger.debug(f"Motion model: only {n_matches} matches")
            return False

        self.pose_optimizer.optimize_pose(frame)
        n_matches, n_map_matches = self._discard_optimized_outliers(frame)

        if self.only_tracking:
            self.vo_mode = n_map_matches < self.vo_map_matches
            return n_matches > self.min_motion_model_matches
        return n_map_matches >= self.min_reference_map_matches

    def track_reference_keyframe(self) -> bool:
        """Match the reference keyframe by bag of words and optimize from the last pose."""
        frame = self.current_frame
        reference = self.reference_keyframe
        if reference is None or reference.is_bad() or self.last_frame is None:
            return False
        if self.last_frame.pose is None:
            return False

        frame.compute_bow(self.vocabulary)
        matcher = ORBMatcher(0.7, True)
        n_matches, matches = matcher.search_by_bow(reference, frame)
        if n_matches < self.min_reference_matches:
            self.logger.debug(f"Reference keyframe: only {n_matches} matches")
            return False

        frame.map_points = matches
        frame.outliers = [False] * frame.N
        frame.set_pose(self.last_frame.pose)
        self.pose_optimizer.optimize_pose(frame)

        _, n_map_matches = self._discard_optimized_outliers(frame)
        return n_map_matches >= self.min_reference_map_matches

    def relocalize(self) -> bool:
        """
        Recover the pose from keyframes similar to the current frame.

        Every candidate is matched by bag of words; candidates with enough
        matches get a PnP hypothesis which is refined by pose optimization
        and, if needed, more matches found by projection with a coarse
        and then a narrow window. The first candidate reaching the inlier
        threshold wins.

        Returns:
            True if the frame was relocalized
        """
        frame = self.current_frame
        candidates = self.keyframe_database.detect_relocalization_candidates(frame)
        if not candidates:
            self.logger.debug(f"Frame {frame.id}: no relocalization candidates")
            return False

        matcher = ORBMatcher(0.75, True)
        hypotheses = []
        for keyframe in candidates:
            if keyframe.is_bad():
                continue
            n_matches, matches = matcher.search_by_bow(keyframe, frame)
            if n_matches < self.reloc_min_bow_matches:
                continue
            hypotheses.append((keyframe, matches))

        if not hypotheses:
            return False

        projection_matcher = ORBMatcher(0.9, True)
        for keyframe, matches in hypotheses:
            if self._relocalize_with(frame, keyframe, matches, projection_matcher):
                self.last_reloc_frame_id = frame.id
                self.vo_mode = False
                self.logger.info(
                    f"Relocalized frame {frame.id} against keyframe {keyframe.id}"
                )
                return True

        frame.map_points = [None] * frame.N
        frame.outliers = [False] * frame.N
        return False

    def _relocalize_with(self, frame: Frame, keyframe, matches: List, matcher: ORBMatcher) -> bool:
        indices = [i for i, mp in enumerate(matches) if mp is not None and not mp.is_bad()]
        if len(indices) < 4:
            return False
        object_points = torch.stack([matches[i].get_world_pos() for i in indices])
        image_points = torch.tensor(
            [frame.keypoints_un[i].pt() for i in indices], dtype=torch.float64
        )
        pose, inliers = self.pnp_solver.solve(object_points, image_points, frame.camera.K)
        if pose is None:
            return False

        frame.set_pose(pose)
        frame.map_points = [None] * frame.N
        frame.outliers = [False] * frame.N
        found = set()
        for k in inliers:
            idx = indices[k]
            frame.map_points[idx] = matches[idx]
            found.add(matches[idx])

        n_good = self.pose_optimizer.optimize_pose(frame)
        if n_good < self.reloc_min_good:
            return False
        self._discard_outliers(frame)

        if n_good < self.reloc_min_inliers:
            n_additional = matcher.search_by_projection_keyframe(frame, keyframe, found, 10, 100)
            if n_additional + n_good >= self.reloc_min_inliers:
                n_good = self.pose_optimizer.optimize_pose(frame)

                # Narrower search now that the pose is better
                if 30 < n_good < self.reloc_min_inliers:
                    found = {mp for mp in frame.map_points if mp is not None}
                    n_additional = matcher.search_by_projection_keyframe(
                        frame, keyframe, found, 3, 64
                    )
                    if n_good + n_additional >= self.reloc_min_inliers:
                        n_good = self.pose_optimizer.optimize_pose(frame)
                        self._discard_outliers(frame)

        return n_good >= self.reloc_min_inliers

    # Local map

    def track_local_map(self) -> bool:
        """
        Refine the pose against the local map.

        Returns:
            True if enough map point inliers remain
        """
        frame = self.current_frame
        self.update_local_map()
        self.search_local_points()
        self.pose_optimizer.optimize_pose(frame)

        self.n_matches_inliers = 0
        for i, mp in enumerate(frame.map_points):
            if mp is None or frame.outliers[i]:
                continue
            mp.increase_found()
            if mp.observations() > 0:
                self.n_matches_inliers += 1

        recently_relocalized = frame.id < self.last_reloc_frame_id + self.max_frames
        if recently_relocalized and self.n_matches_inliers < self.local_map_inliers_after_reloc:
            return False
        if self.n_matches_inliers < self.local_map_inliers:
            self.logger.debug(f"Local map: only {self.n_matches_inliers} inliers")
            return False
        return True

    def update_local_map(self):
        self.update_local_keyframes()
        self.update_local_points()
        self.map.set_reference_map_points(self.local_map_points)

    def update_local_keyframes(self):
        """
        Collect the keyframes observing the frame's map points plus their
        best covisible keyframe, a child and the parent, and choose the
        keyframe sharing most points as reference.
        """
        frame = self.current_frame
        counter: Dict[int, int] = {}
        for i, mp in enumerate(frame.map_points):
            if mp is None:
                continue
            if mp.is_bad():
                frame.map_points[i] = None
                continue
            for kf_id in mp.get_observations():
                counter[kf_id] = counter.get(kf_id, 0) + 1

        if not counter:
            return

        best = None
        max_count = 0
        self.local_keyframes = []
        for kf_id, count in counter.items():
            keyframe = self.map.get_keyframe(kf_id)
            if keyframe is None or keyframe.is_bad():
                continue
            if count > max_count:
                max_count = count
                best = keyframe
            self.local_keyframes.append(keyframe)
            keyframe.track_reference_for_frame = frame.id

        def take(keyframe) -> bool:
            if keyframe is None or keyframe.is_bad():
                return False
            if keyframe.track_reference_for_frame == frame.id:
                return False
            self.local_keyframes.append(keyframe)
            keyframe.track_reference_for_frame = frame.id
            return True

        for keyframe in list(self.local_keyframes):
            if len(self.local_keyframes) > self.max_local_keyframes:
                break
            for neighbour in keyframe.get_best_covisibility_keyframes(10):
                if take(neighbour):
                    break
            for child_id in sorted(keyframe.get_children()):
                if take(self.map.get_keyframe(child_id)):
                    break
            take(keyframe.get_parent())

        if best is not None:
            self.reference_keyframe = best
            frame.reference_keyframe = best

    def update_local_points(self):
        frame = self.current_frame
        self.local_map_points = []
        for keyframe in self.local_keyframes:
            for mp in keyframe.get_map_points():
                if mp.track_reference_for_frame == frame.id:
                    continue
                self.local_map_points.append(mp)
                mp.track_reference_for_frame = frame.id

    def search_local_points(self) -> int:
        """
        Project local map points not yet matched into the frame and match them.

        Returns:
            Number of new matches
        """
        frame = self.current_frame
        for i, mp in enumerate(frame.map_points):
            if mp is None:
                continue
            if mp.is_bad():
                frame.map_points[i] = None
            else:
                mp.increase_visible()
                mp.last_frame_seen = frame.id
                mp.track_in_view = False

        n_to_match = 0
        for mp in self.local_map_points:
            if mp.last_frame_seen == frame.id or mp.is_bad():
                continue
            if frame.is_in_frustum(mp, 0.5):
                mp.increase_visible()
                n_to_match += 1

        if n_to_match == 0:
            return 0

        th = 5 if frame.id < self.last_reloc_frame_id + 2 else 1
        matcher = ORBMatcher(0.8)
        return matcher.search_by_projection_local(frame, self.local_map_points, th)

    # Map growth

    def _need_new_keyframe(self, frame: Frame) -> bool:
        if self.only_tracking or self.vo_mode:
            return False
        if self.tracking_type in (TrackingType.OPTICAL_FLOW, TrackingType.RELOCALIZATION):
            return False
        if self.reference_keyframe is None:
            return False
        return self.map_grower.need_new_keyframe(
            frame,
            self.reference_keyframe,
            self.n_matches_inliers,
            self.last_keyframe_frame_id,
            self.last_reloc_frame_id,
            self.max_frames,
        )

    # Session control

    def _reset_session(self):
        self.keyframe_database.clear()
        self.map.clear()
        self.initializer.reset()
        self.map_grower.reset()
        self.state_machine.reset()
        self.trajectory.clear()
        self.current_frame = None
        self.last_frame = None
        self.velocity = None
        self.reference_keyframe = None
        self.local_keyframes = []
        self.local_map_points = []
        self.vo_mode = False
        self.n_matches_inliers = 0
        self.last_reloc_frame_id = 0
        self.last_keyframe_frame_id = 0
        self._last_frame_ok = False
        if self.scene_proxy is not None:
            self.scene_proxy.clear_all()

    def reset(self):
        """Drop the map, the keyframe database and the trajectory."""
        self.logger.info("Resetting tracker")
        paused = self.pause()
        try:
            with self._track_lock:
                self._reset_session()
        finally:
            if paused:
                self.resume()

    def is_worker_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def pause(self, timeout: Optional[float] = None) -> bool:
        """
        Ask the worker to go idle and wait for the acknowledgement.

        Returns:
            True if a running worker was paused
        """
        if not self.is_worker_running():
            return False
        self.state_machine.request_idle()
        # Wake the worker if it is still waiting for the calibration
        with self._calibration_ready:
            self._calibration_ready.notify_all()
        if not self.state_machine.wait_until_idle(timeout):
            self.logger.warning("Worker did not acknowledge the pause request")
            return False
        return True

    def resume(self):
        self.state_machine.request_resume()

    @property
    def running(self) -> bool:
        with self._run_lock:
            return self._running

    @running.setter
    def running(self, value: bool):
        with self._run_lock:
            self._running = value

    def start(self):
        """Start the background worker."""
        if self.serial:
            raise RuntimeError("A serial tracker is driven with track()")
        if self.image_source is None:
            raise ValueError("An image source is required to run the worker")
        if self.is_worker_running():
            return

        self.running = True
        self._thread = threading.Thread(
            target=self._run, name="maptrack-tracker", daemon=True
        )
        self._thread.start()
        self.logger.info("Tracker worker started")

    def stop(self, timeout: Optional[float] = None):
        """Stop the worker after its current iteration."""
        self.running = False
        with self._calibration_ready:
            self._calibration_ready.notify_all()
        self.state_machine.request_resume()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("Tracker worker stopped")

    def _wait_for_calibration(self) -> bool:
        """
        Block until a calibration is available, honouring pause requests.

        Returns:
            False if the worker was stopped first
        """
        while self.running:
            with self._calibration_ready:
                self._calibration_ready.wait_for(
                    lambda: self._camera is not None
                    or not self.running
                    or self.state_machine.idle_requested()
                )
                if self._camera is not None:
                    return True
            if self.state_machine.idle_requested():
                self.state_machine.acknowledge_idle(0.1)
        return False

    def _run(self):
        if self.camera is None:
            self._calibration_from_source()
        if not self._wait_for_calibration():
            return

        while self.running:
            if self.state_machine.idle_requested():
                self.state_machine.acknowledge_idle(0.1)
                continue
            try:
                self.process_next_frame()
            except Exception:
                self.logger.exception("Tracking iteration failed")
                self.state_machine.state = TrackingState.LOST

    def process_next_frame(self) -> bool:
        """
        Pull one image from the image source and track it.

        Returns:
            False if the source had no image
        """
        data = self.image_source.next_frame()
        if data is None:
            time.sleep(self.idle_wait)
            return False
        gray, color, timestamp = data
        self.track(gray, timestamp, color)
        return True

    # Persistence

    def save_map(self, path, image_dir=None) -> bool:
        """Save the map, pausing the worker while writing."""
        paused = self.pause()
        try:
            with self._track_lock:
                return self.map_io.save(path, self.map, image_dir)
        finally:
            if paused:
                self.resume()

    def load_map(self, path, image_dir=None) -> int:
        """
        Replace the session map with a saved one.

        The file is read into a new map and keyframe database, which replace
        the session ones only once loading succeeded. The tracker is then
        reset and becomes LOST, so that the next frame is relocalized
        against the loaded map.

        Returns:
            Number of loaded keyframes

        Raises:
            MapIOError: If the file cannot be read; the session map is kept
            MapIntegrityError: If the saved map has no origin keyframe
        """
        paused = self.pause()
        try:
            with self._track_lock:
                database = KeyframeDatabase(self.vocabulary)
                map_ = Map(database, self.scene_proxy)
                n_keyframes = self.map_io.load(path, map_, database, image_dir)

                self._reset_session()
                self.keyframe_database = database
                self._init_mapping(map_)
                self.state_machine.state = TrackingState.LOST
                self.map.notify_scene()
                return n_keyframes
        finally:
            if paused:
                self.resume()
