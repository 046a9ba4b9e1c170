import math

import pytest
import torch

from maptrack.backend.optimization import OptimizationResult, PoseOptimizer
from maptrack.backend.se3 import DTYPE, SE3
from maptrack.frontend.frame import Frame
from maptrack.frontend.odometry.base import FramePose


def frame_from_keyframe(keyframe, keypoints=None):
    frame = Frame(
        20,
        2.0,
        keyframe.camera,
        list(keypoints if keypoints is not None else keyframe.keypoints_un),
        keyframe.descriptors.clone(),
        geometry=keyframe.geometry,
    )
    frame.map_points = keyframe.get_map_point_matches()
    frame.outliers = [False] * frame.N
    return frame


def perturbed(pose):
    delta = SE3.exp(torch.tensor([0.05, -0.03, 0.04, 0.01, -0.02, 0.015], dtype=DTYPE))
    T = delta.compose(SE3(pose.rotation, pose.translation))
    return FramePose(T.R, T.t)


def test_converges_from_perturbed_pose(synthetic_map):
    keyframe = synthetic_map.get_keyframe(1)
    frame = frame_from_keyframe(keyframe)
    frame.set_pose(perturbed(keyframe.get_pose()))

    optimizer = PoseOptimizer()
    n_inliers = optimizer.optimize_pose(frame)

    assert n_inliers == 30
    assert not any(frame.outliers)
    assert torch.allclose(frame.pose.as_matrix(), keyframe.get_pose().as_matrix(), atol=1e-6)

    result = optimizer.last_result
    assert isinstance(result, OptimizationResult)
    assert result.success
    assert result.num_inliers == 30
    assert result.final_cost < result.initial_cost


def test_shifted_observations_are_flagged_as_outliers(synthetic_map):
    keyframe = synthetic_map.get_keyframe(0)
    keypoints = list(keyframe.keypoints_un)
    for idx in range(5):
        kp = keypoints[idx]
        keypoints[idx] = kp.moved_to(kp.x + 30.0, kp.y)
    frame = frame_from_keyframe(keyframe, keypoints)
    frame.set_pose(perturbed(keyframe.get_pose()))

    n_inliers = PoseOptimizer().optimize_pose(frame)

    assert n_inliers == 25
    assert frame.outliers == [True] * 5 + [False] * 25
    assert torch.allclose(frame.pose.as_matrix(), keyframe.get_pose().as_matrix(), atol=1e-6)


def test_too_few_correspondences(synthetic_map):
    keyframe = synthetic_map.get_keyframe(0)
    frame = frame_from_keyframe(keyframe)
    frame.map_points = [None] * frame.N
    frame.map_points[0] = keyframe.get_map_point_matches()[0]
    frame.map_points[1] = keyframe.get_map_point_matches()[1]
    start = perturbed(keyframe.get_pose())
    frame.set_pose(start)

    assert PoseOptimizer().optimize_pose(frame) == 0
    assert torch.equal(frame.pose.as_matrix(), start.as_matrix())


def test_bad_points_are_ignored(synthetic_map):
    keyframe = synthetic_map.get_keyframe(0)
    frame = frame_from_keyframe(keyframe)
    frame.set_pose(perturbed(keyframe.get_pose()))
    frame.map_points[0].set_bad()

    assert PoseOptimizer().optimize_pose(frame) == 29


def test_config_overrides():
    optimizer = PoseOptimizer({"rounds": 2, "iterations": 5, "chi2_threshold": 9.0})
    assert optimizer.rounds == 2
    assert optimizer.max_iterations == 5
    assert optimizer.huber_delta == pytest.approx(math.sqrt(9.0))
