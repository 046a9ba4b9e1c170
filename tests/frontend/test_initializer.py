import numpy as np
import pytest
import torch

from maptrack.frontend.feature_extraction.base import KeyPoint
from maptrack.frontend.frame import Frame
from maptrack.frontend.initializer import MonocularInitializer


@pytest.fixture
def scene():
    rng = np.random.default_rng(4)
    points = np.column_stack(
        [
            rng.uniform(-2.0, 2.0, 200),
            rng.uniform(-1.5, 1.5, 200),
            rng.uniform(4.0, 8.0, 200),
        ]
    )
    generator = torch.Generator().manual_seed(4)
    descriptors = torch.randint(0, 256, (200, 32), dtype=torch.uint8, generator=generator)
    return points, descriptors


def view(frame_id, camera, points, descriptors, center):
    """Frame observing ``points`` from a camera at ``center`` with no rotation."""
    keypoints = []
    for p in points - np.asarray(center):
        u = camera.fx * p[0] / p[2] + camera.cx
        v = camera.fy * p[1] / p[2] + camera.cy
        keypoints.append(KeyPoint(u, v, angle=10.0, octave=0))
    return Frame(
        frame_id, 0.1 * frame_id, camera, keypoints, descriptors.clone(), image_size=(640, 480)
    )


def test_reconstruct_recovers_relative_pose(camera, scene):
    points, descriptors = scene
    reference = view(0, camera, points, descriptors, [0.0, 0.0, 0.0])
    current = view(1, camera, points, descriptors, [0.3, 0.0, 0.0])
    initializer = MonocularInitializer()

    matches = initializer.matcher.search_for_initialization(reference, current, 100)
    assert len(matches) == 200

    reconstruction = initializer.reconstruct(reference, current, matches)

    assert reconstruction is not None
    rotation = reconstruction.pose.rotation.numpy()
    translation = reconstruction.pose.translation.numpy()
    assert np.allclose(rotation, np.eye(3), atol=1e-3)
    assert np.allclose(translation / np.linalg.norm(translation), [-1.0, 0.0, 0.0], atol=1e-3)
    assert reconstruction.parallax_deg > 1.0
    assert len(reconstruction.points) >= 150

    # Points are recovered up to the scale of the baseline
    for i, (j, point) in reconstruction.points.items():
        assert i == j
        assert np.allclose(point * 0.3, points[i], atol=1e-2)


def test_reconstruct_rejects_low_parallax(camera, scene):
    points, descriptors = scene
    reference = view(0, camera, points, descriptors, [0.0, 0.0, 0.0])
    current = view(1, camera, points, descriptors, [0.005, 0.0, 0.0])
    initializer = MonocularInitializer()

    matches = initializer.matcher.search_for_initialization(reference, current, 100)

    assert initializer.reconstruct(reference, current, matches) is None


def test_process_selects_and_drops_reference(camera, scene):
    points, descriptors = scene
    initializer = MonocularInitializer({"min_features": 10})

    sparse = view(0, camera, points[:5], descriptors[:5], [0.0, 0.0, 0.0])
    assert initializer.process(sparse) is None
    assert initializer.reference is None

    reference = view(1, camera, points, descriptors, [0.0, 0.0, 0.0])
    assert initializer.process(reference) is None
    assert initializer.reference is reference

    # Too few features drop the reference
    sparse = view(2, camera, points[:5], descriptors[:5], [0.3, 0.0, 0.0])
    assert initializer.process(sparse) is None
    assert initializer.reference is None


def test_process_resets_on_too_few_matches(camera, scene):
    points, descriptors = scene
    initializer = MonocularInitializer({"min_features": 10})
    initializer.process(view(0, camera, points, descriptors, [0.0, 0.0, 0.0]))

    # Unrelated descriptors produce no matches
    generator = torch.Generator().manual_seed(99)
    other = torch.randint(0, 256, (200, 32), dtype=torch.uint8, generator=generator)
    assert initializer.process(view(1, camera, points, other, [0.3, 0.0, 0.0])) is None
    assert initializer.reference is None


def test_process_initializes_from_two_views(camera, scene):
    points, descriptors = scene
    initializer = MonocularInitializer({"min_features": 10})

    initializer.process(view(0, camera, points, descriptors, [0.0, 0.0, 0.0]))
    reconstruction = initializer.process(view(1, camera, points, descriptors, [0.3, 0.0, 0.0]))

    assert reconstruction is not None
    assert len(reconstruction.points) >= 150
