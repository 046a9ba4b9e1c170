import cv2
import numpy as np
import pytest

from maptrack.datasets import CalibrationData, ImageSequenceSource


@pytest.fixture
def image_dir(tmp_path):
    rng = np.random.default_rng(0)
    for idx in range(3):
        image = rng.integers(0, 256, (48, 64, 3), dtype=np.uint8)
        cv2.imwrite(str(tmp_path / f"{idx:06d}.png"), image)
    (tmp_path / "notes.txt").write_text("not an image")
    return tmp_path


def test_calibration_from_parameters():
    calibration = CalibrationData.from_dict(
        {"fx": 500, "fy": 510, "cx": 320, "cy": 240, "distortion": [0.1, 0.0, 0.0, 0.0]}
    )
    intrinsics, distortion = calibration.as_tuple()

    assert intrinsics[0, 0] == 500.0 and intrinsics[1, 1] == 510.0
    assert intrinsics[0, 2] == 320.0 and intrinsics[1, 2] == 240.0
    assert distortion.tolist() == [0.1, 0.0, 0.0, 0.0]


def test_calibration_requires_intrinsics():
    with pytest.raises(ValueError):
        CalibrationData.from_dict({"fx": 500})
    with pytest.raises(ValueError):
        CalibrationData(np.eye(4))


def test_calibration_yaml_round_trip(tmp_path):
    calibration = CalibrationData.from_parameters(400.0, 400.0, 32.0, 24.0)
    path = tmp_path / "calibration.yaml"
    calibration.to_yaml(path)

    loaded = CalibrationData.from_yaml(path)

    assert np.array_equal(loaded.intrinsics, calibration.intrinsics)
    assert loaded.distortion.tolist() == [0.0] * 5


def test_sequence_reads_images_in_order(image_dir):
    source = ImageSequenceSource(image_dir, fps=10.0)

    assert len(source) == 3
    assert source.timestamps == pytest.approx([0.0, 0.1, 0.2])
    assert source.calibration() is None

    item = source[1]
    assert item["index"] == 1
    assert tuple(item["image"].shape) == (48, 64)

    frames = []
    while not source.exhausted():
        frames.append(source.next_frame())
    assert [timestamp for _, _, timestamp in frames] == pytest.approx([0.0, 0.1, 0.2])
    gray, color, _ = frames[0]
    assert gray.shape == (48, 64)
    assert color.shape == (48, 64, 3)
    assert source.next_frame() is None

    source.rewind()
    assert source.next_frame() is not None


def test_sequence_uses_directory_files(image_dir):
    CalibrationData.from_parameters(50.0, 50.0, 32.0, 24.0).to_yaml(image_dir / "calibration.yaml")
    (image_dir / "times.txt").write_text("1.5\n1.6\n1.7\n")

    source = ImageSequenceSource(image_dir)

    assert source.timestamps == [1.5, 1.6, 1.7]
    intrinsics, _ = source.calibration()
    assert intrinsics[0, 0] == 50.0


def test_sequence_errors(image_dir, tmp_path):
    with pytest.raises(ValueError):
        ImageSequenceSource(tmp_path / "missing")
    with pytest.raises(ValueError):
        ImageSequenceSource(image_dir, timestamps=[0.0])
    with pytest.raises(IndexError):
        ImageSequenceSource(image_dir).load_image(5)
