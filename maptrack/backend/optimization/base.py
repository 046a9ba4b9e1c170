from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import torch


@dataclass
class OptimizationResult:
    """Results from an optimization run."""

    success: bool  # Whether optimization was successful
    initial_cost: float  # Robust cost before optimization
    final_cost: float  # Robust cost after optimization
    num_inliers: int  # Correspondences classified as inliers
    num_iterations: int  # Number of iterations performed
    time_seconds: float  # Time taken in seconds
    convergence_info: Dict[str, Any] = field(default_factory=dict)


class Optimizer(ABC):
    """
    Base class for the pose/graph optimizers consumed by the tracker.

    An optimizer works in place on a frame: it writes the refined pose and
    the per-feature outlier flags and returns the number of inliers.
    """

    def __init__(
        self,
        max_iterations: int = 10,
        convergence_threshold: float = 1e-10,
        device: Optional[torch.device] = None,
    ):
        """
        Initialize optimizer.

        Args:
            max_iterations: Maximum number of iterations per round
            convergence_threshold: Update norm below which iterations stop
            device: PyTorch device
        """
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.device = device if device is not None else torch.device("cpu")
        self.last_result: Optional[OptimizationResult] = None

    @abstractmethod
    def optimize_pose(self, frame) -> int:
        """
        Refine the pose of a frame from its map point correspondences.

        Args:
            frame: Frame with a pose estimate and map point links

        Returns:
            Number of inlier correspondences
        """
        pass

    def measure_convergence(self, update_norm: float) -> bool:
        """
        Check if optimization has converged.

        Args:
            update_norm: Norm of the update step

        Returns:
            True if converged, False otherwise
        """
        return update_norm < self.convergence_threshold
