import numpy as np
import pytest
import torch

from maptrack.frontend.camera import GridGeometry, ImageBounds, PinholeCamera
from maptrack.frontend.feature_extraction.base import KeyPoint
from maptrack.frontend.keyframe import Keyframe
from maptrack.frontend.map_point import MapPoint
from maptrack.frontend.odometry.base import FramePose
from maptrack.mapping.map import Map

WIDTH = 640
HEIGHT = 480
CAMERA_MATRIX = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


@pytest.fixture
def camera():
    return PinholeCamera(CAMERA_MATRIX)


@pytest.fixture
def geometry():
    return GridGeometry(ImageBounds(0.0, WIDTH, 0.0, HEIGHT))


def pose_at(center) -> FramePose:
    """Camera looking along +z with its centre at ``center`` (Tcw)."""
    center = torch.as_tensor(center, dtype=torch.float64)
    return FramePose(torch.eye(3, dtype=torch.float64), -center)


def project(camera: PinholeCamera, pose: FramePose, point: torch.Tensor):
    p = pose.transform_points(point)
    return (
        camera.fx * float(p[0]) / float(p[2]) + camera.cx,
        camera.fy * float(p[1]) / float(p[2]) + camera.cy,
    )


def build_synthetic_map(
    n_keyframes: int = 3,
    points_per_keyframe: int = 30,
    overlap: int = 20,
    baseline: float = 0.1,
    link_parents: bool = True,
    seed: int = 0,
    map_=None,
):
    """
    Map with keyframes on a line along x observing a strip of points.

    Keyframe k observes points ``k * step ... k * step + points_per_keyframe``
    with ``step = points_per_keyframe - overlap``, so consecutive keyframes
    share ``overlap`` points. Keypoints are the exact projections and every
    observation of a point carries the same random descriptor.
    """
    rng = np.random.default_rng(seed)
    generator = torch.Generator().manual_seed(seed)
    camera = PinholeCamera(CAMERA_MATRIX)
    geometry = GridGeometry(ImageBounds(0.0, WIDTH, 0.0, HEIGHT))
    map_ = map_ if map_ is not None else Map()

    step = points_per_keyframe - overlap
    n_points = step * (n_keyframes - 1) + points_per_keyframe
    positions = torch.from_numpy(
        np.column_stack(
            [
                rng.uniform(-1.0, 1.0, n_points),
                rng.uniform(-0.7, 0.7, n_points),
                rng.uniform(3.0, 5.0, n_points),
            ]
        )
    )
    point_descriptors = torch.randint(
        0, 256, (n_points, 32), dtype=torch.uint8, generator=generator
    )

    keyframes = []
    observed = []
    for k in range(n_keyframes):
        pose = pose_at([baseline * k, 0.0, 0.0])
        point_ids = list(range(k * step, k * step + points_per_keyframe))
        keypoints = []
        for pid in point_ids:
            u, v = project(camera, pose, positions[pid])
            keypoints.append(KeyPoint(u, v, response=1.0, angle=0.0, octave=0))
        descriptors = point_descriptors[point_ids].clone()
        keyframe = Keyframe(
            k,
            0.1 * k,
            camera,
            keypoints,
            list(keypoints),
            descriptors,
            pose,
            geometry,
            map_=map_,
            frame_id=k,
        )
        map_.add_keyframe(keyframe)
        keyframes.append(keyframe)
        observed.append(point_ids)

    for pid in range(n_points):
        observers = [k for k in range(n_keyframes) if pid in observed[k]]
        mp = MapPoint(pid, positions[pid], observers[0], map_)
        for k in observers:
            idx = observed[k].index(pid)
            keyframes[k].add_map_point(pid, idx)
            mp.add_observation(k, idx)
        map_.add_map_point(mp)

    for mp in map_.get_all_map_points():
        mp.compute_distinctive_descriptors()
        mp.update_normal_and_depth()

    for keyframe in keyframes:
        keyframe.update_connections(link_parents)

    map_.keyframe_ids.advance_past(n_keyframes - 1)
    map_.point_ids.advance_past(n_points - 1)
    return map_


@pytest.fixture
def synthetic_map():
    return build_synthetic_map()


@pytest.fixture
def map_factory():
    return build_synthetic_map


def parent_chain(keyframe, map_):
    """Keyframe ids from ``keyframe`` up to the root, failing on cycles."""
    chain = [keyframe.id]
    current = keyframe
    for _ in range(map_.keyframes_in_map() + 1):
        parent_id = current.get_parent_id()
        if parent_id is None:
            return chain
        chain.append(parent_id)
        current = map_.get_keyframe(parent_id)
        if current is None:
            return chain
    raise AssertionError(f"Cycle in spanning tree: {chain}")


@pytest.fixture
def chain_to_root():
    return parent_chain
