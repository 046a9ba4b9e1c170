import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import cv2
import numpy as np
import torch
import yaml
from torch.utils.data import Dataset

from ..slam.interfaces import ImageSource

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp", ".pgm")


class CalibrationData:
    """Intrinsics and distortion coefficients of a monocular camera."""

    def __init__(self, intrinsics: np.ndarray, distortion: Optional[np.ndarray] = None):
        intrinsics = np.asarray(intrinsics, dtype=np.float64)
        if intrinsics.shape != (3, 3):
            raise ValueError(f"Intrinsics must be 3x3, got {intrinsics.shape}")
        self.intrinsics = intrinsics
        if distortion is None:
            distortion = np.zeros(5)
        self.distortion = np.asarray(distortion, dtype=np.float64).reshape(-1)

    @classmethod
    def from_parameters(
        cls, fx: float, fy: float, cx: float, cy: float, distortion=None
    ) -> "CalibrationData":
        intrinsics = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])
        return cls(intrinsics, distortion)

    def to_dict(self) -> Dict:
        """Convert calibration data to dictionary for serialization."""
        return {
            "intrinsics": self.intrinsics.tolist(),
            "distortion": self.distortion.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationData":
        """
        Create calibration data from a dictionary.

        Accepts either an ``intrinsics`` 3x3 matrix or the individual
        ``fx``, ``fy``, ``cx``, ``cy`` values, plus an optional
        ``distortion`` list (k1, k2, p1, p2[, k3]).
        """
        distortion = data.get("distortion")
        if data.get("intrinsics") is not None:
            return cls(np.array(data["intrinsics"], dtype=np.float64), distortion)
        try:
            return cls.from_parameters(
                float(data["fx"]),
                float(data["fy"]),
                float(data["cx"]),
                float(data["cy"]),
                distortion,
            )
        except KeyError as e:
            raise ValueError(f"Calibration is missing {e}") from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "CalibrationData":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration file not found: {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_yaml(self, path: Union[str, Path]):
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f)

    def as_tuple(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.intrinsics.copy(), self.distortion.copy()


class ImageSequenceSource(Dataset, ImageSource):
    """
    Image source reading a directory of images in file name order.

    Works both as a torch dataset (random access by index) and as the
    sequential image source consumed by the tracker worker.
    """

    def __init__(
        self,
        image_dir: Union[str, Path],
        calibration: Optional[CalibrationData] = None,
        timestamps: Optional[List[float]] = None,
        fps: float = 30.0,
    ):
        """
        Initialize image sequence.

        Args:
            image_dir: Directory with the images
            calibration: Camera calibration; ``calibration.yaml`` in the
                directory is used when None and the file exists
            timestamps: Timestamp per image; a ``times.txt`` file in the
                directory or ``index / fps`` is used when None
            fps: Frame rate used to derive timestamps
        """
        self.image_dir = Path(image_dir)
        if not self.image_dir.is_dir():
            raise ValueError(f"Image directory not found: {self.image_dir}")

        self.file_paths = sorted(
            str(p) for p in self.image_dir.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS
        )
        self.fps = fps
        self.logger = logging.getLogger(self.__class__.__name__)

        if calibration is None:
            calib_file = self.image_dir / "calibration.yaml"
            if calib_file.exists():
                calibration = CalibrationData.from_yaml(calib_file)
        self._calibration = calibration

        if timestamps is None:
            timestamps = self._load_timestamps()
        if len(timestamps) < len(self.file_paths):
            raise ValueError(
                f"{len(timestamps)} timestamps for {len(self.file_paths)} images"
            )
        self.timestamps = [float(t) for t in timestamps[: len(self.file_paths)]]

        self._next_index = 0
        self.logger.info(f"Image sequence {self.image_dir}: {len(self)} images")

    def _load_timestamps(self) -> List[float]:
        times_file = self.image_dir / "times.txt"
        if times_file.exists():
            with open(times_file, "r") as f:
                return [float(line.split()[0]) for line in f if line.strip()]
        return [idx / self.fps for idx in range(len(self.file_paths))]

    def __len__(self) -> int:
        return len(self.file_paths)

    def load_image(self, idx: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Load one image.

        Returns:
            Tuple of (grayscale image, BGR color image)
        """
        if idx >= len(self.file_paths):
            raise IndexError(f"Index {idx} out of range for {len(self)} images")
        file_path = self.file_paths[idx]
        color = cv2.imread(file_path, cv2.IMREAD_COLOR)
        if color is None:
            raise IOError(f"Failed to load image: {file_path}")
        gray = cv2.cvtColor(color, cv2.COLOR_BGR2GRAY)
        return gray, color

    def __getitem__(self, idx: int) -> Dict[str, Any]:
        gray, _ = self.load_image(idx)
        return {
            "image": torch.from_numpy(gray),
            "timestamp": self.timestamps[idx],
            "index": idx,
        }

    # ImageSource

    def next_frame(self) -> Optional[Tuple[np.ndarray, np.ndarray, float]]:
        if self._next_index >= len(self):
            return None
        idx = self._next_index
        self._next_index += 1
        gray, color = self.load_image(idx)
        return gray, color, self.timestamps[idx]

    def rewind(self):
        self._next_index = 0

    def exhausted(self) -> bool:
        return self._next_index >= len(self)

    def calibration(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if self._calibration is None:
            return None
        return self._calibration.as_tuple()
