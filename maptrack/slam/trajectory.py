import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
from scipy.spatial.transform import Rotation

from ..frontend.odometry.base import FramePose


@dataclass
class TrajectoryEntry:
    """Pose of one frame relative to its reference keyframe."""

    relative_pose: FramePose  # Tcr
    reference: object  # Reference keyframe
    timestamp: float
    lost: bool


class TrajectoryLog:
    """
    Per-frame trajectory stored relative to reference keyframes.

    Relative poses stay valid when keyframe poses are refined or keyframes
    are removed: absolute poses are reconstructed on demand by chaining
    through the spanning-tree parents of removed keyframes.
    """

    def __init__(self):
        self.entries: List[TrajectoryEntry] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    def __len__(self) -> int:
        return len(self.entries)

    def append(self, frame_pose: FramePose, reference, timestamp: float):
        """
        Record a tracked frame.

        Args:
            frame_pose: Frame pose (Tcw)
            reference: Reference keyframe of the frame
            timestamp: Frame timestamp
        """
        relative = frame_pose.compose(reference.get_pose_inverse())
        self.entries.append(TrajectoryEntry(relative, reference, timestamp, False))

    def repeat_last(self, timestamp: float) -> bool:
        """
        Record a lost frame by repeating the last relative pose.

        Returns:
            False if nothing has been recorded yet
        """
        if not self.entries:
            return False
        last = self.entries[-1]
        self.entries.append(
            TrajectoryEntry(last.relative_pose.copy(), last.reference, timestamp, True)
        )
        return True

    def clear(self):
        self.entries = []

    @staticmethod
    def _reference_pose(keyframe) -> FramePose:
        # Chain Tcp of removed keyframes up to a live ancestor
        pose = FramePose.identity()
        while keyframe.is_bad() and keyframe.removed_parent is not None:
            pose = pose.compose(keyframe.parent_relative_pose)
            keyframe = keyframe.removed_parent
        return pose.compose(keyframe.get_pose())

    def last_pose(self) -> Optional[FramePose]:
        """Current estimate of the last recorded frame pose (Tcw)."""
        if not self.entries:
            return None
        entry = self.entries[-1]
        return entry.relative_pose.compose(self._reference_pose(entry.reference))

    def world_poses(self, map_=None) -> List[np.ndarray]:
        """
        Camera-to-world transforms (Twc, 4x4) of every recorded frame.

        Args:
            map_: Map whose node transform is applied to the result

        Returns:
            List of 4x4 arrays
        """
        node_transform = np.eye(4) if map_ is None else np.asarray(map_.node_transform)
        poses = []
        for entry in self.entries:
            tcw = entry.relative_pose.compose(self._reference_pose(entry.reference))
            poses.append(node_transform @ tcw.inverse().matrix_numpy())
        return poses

    def timestamps(self) -> List[float]:
        return [entry.timestamp for entry in self.entries]

    def save_tum(self, path: Union[str, Path], map_=None, include_lost: bool = True):
        """
        Write the trajectory in TUM format (timestamp tx ty tz qx qy qz qw).

        Args:
            path: Output file
            map_: Map whose node transform is applied
            include_lost: Whether frames recorded while lost are written
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            for entry, twc in zip(self.entries, self.world_poses(map_)):
                if entry.lost and not include_lost:
                    continue
                t = twc[:3, 3]
                q = Rotation.from_matrix(twc[:3, :3]).as_quat()
                f.write(
                    f"{entry.timestamp:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} "
                    f"{q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n"
                )
        self.logger.info(f"Saved {len(self.entries)} poses to {path}")

    def plot(self, ax=None, map_=None, title: Optional[str] = "Trajectory (x-z)"):
        """
        Top-down plot of the camera centres, lost frames marked in red.

        Args:
            ax: Matplotlib axes, a new figure is created when None
            map_: Map whose node transform is applied
            title: Axes title

        Returns:
            The axes
        """
        if ax is None:
            _, ax = plt.subplots(figsize=(6, 6))

        poses = self.world_poses(map_)
        if poses:
            centers = np.array([twc[:3, 3] for twc in poses])
            lost = np.array([entry.lost for entry in self.entries])
            ax.plot(centers[:, 0], centers[:, 2], lw=2, label="estimate")
            if lost.any():
                ax.scatter(centers[lost, 0], centers[lost, 2], c="r", s=8, label="lost")
            ax.legend(loc="upper right")

        ax.set_xlabel("x")
        ax.set_ylabel("z")
        ax.set_aspect("equal", adjustable="datalim")
        ax.grid(True, alpha=0.3)
        if title:
            ax.set_title(title)
        return ax
