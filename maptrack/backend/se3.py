from typing import Optional

import numpy as np
import torch

# All geometry in the tracker is carried in double precision.
DTYPE = torch.float64


class SE3:
    """
    SE(3) Lie group implementation for rigid body transformations.

    Only the parts needed by the tracker are provided: construction from
    matrices, the exponential map used for pose updates, composition,
    inversion and point transformation.
    """

    def __init__(self, rotation: torch.Tensor, translation: torch.Tensor):
        """
        Initialize SE(3) transformation.

        Args:
            rotation: 3x3 rotation matrix
            translation: 3D translation vector
        """
        self.R = rotation
        self.t = translation

    @classmethod
    def from_matrix(cls, matrix: torch.Tensor) -> "SE3":
        """
        Create SE(3) object from 4x4 transformation matrix.

        Args:
            matrix: 4x4 transformation matrix

        Returns:
            SE3 object
        """
        if tuple(matrix.shape) != (4, 4):
            raise ValueError(f"Expected 4x4 matrix, got {tuple(matrix.shape)}")

        return cls(matrix[:3, :3].clone(), matrix[:3, 3].clone())

    @classmethod
    def identity(cls, device: Optional[torch.device] = None) -> "SE3":
        device = device or torch.device("cpu")
        return cls(
            torch.eye(3, dtype=DTYPE, device=device),
            torch.zeros(3, dtype=DTYPE, device=device),
        )

    @classmethod
    def exp(cls, xi: torch.Tensor) -> "SE3":
        """
        Exponential map from se(3) to SE(3).

        Args:
            xi: 6D twist coordinates (v, omega) in se(3)
                First 3 elements are translation components
                Last 3 elements are rotation components

        Returns:
            SE3 object
        """
        if tuple(xi.shape) != (6,):
            raise ValueError(f"Expected 6D vector, got {tuple(xi.shape)}")

        device = xi.device
        v = xi[:3]
        omega = xi[3:]
        eye = torch.eye(3, dtype=xi.dtype, device=device)

        theta = torch.linalg.norm(omega)

        if theta < 1e-10:
            K = cls.skew_symmetric(omega)
            R = eye + K
            V = eye + 0.5 * K
        else:
            K = cls.skew_symmetric(omega / theta)
            KK = torch.matmul(K, K)

            # Rodrigues' formula
            R = eye + torch.sin(theta) * K + (1 - torch.cos(theta)) * KK
            V = (
                eye
                + (1 - torch.cos(theta)) / theta * K
                + (theta - torch.sin(theta)) / theta * KK
            )

        return cls(R, torch.matmul(V, v))

    def to_matrix(self) -> torch.Tensor:
        matrix = torch.eye(4, dtype=self.R.dtype, device=self.R.device)
        matrix[:3, :3] = self.R
        matrix[:3, 3] = self.t
        return matrix

    def inverse(self) -> "SE3":
        R_inv = self.R.t()
        return SE3(R_inv, -torch.matmul(R_inv, self.t))

    def compose(self, other: "SE3") -> "SE3":
        """
        Compose with another SE(3) transformation: self * other

        Args:
            other: Another SE3 object

        Returns:
            Composed transformation
        """
        return SE3(
            torch.matmul(self.R, other.R), torch.matmul(self.R, other.t) + self.t
        )

    def transform_points(self, points: torch.Tensor) -> torch.Tensor:
        """
        Transform multiple 3D points.

        Args:
            points: Tensor of shape (N, 3) containing 3D points

        Returns:
            Transformed points of shape (N, 3)
        """
        return torch.matmul(points, self.R.t()) + self.t

    @staticmethod
    def skew_symmetric(v: torch.Tensor) -> torch.Tensor:
        """
        Create a skew-symmetric matrix from a 3D vector.

        Args:
            v: 3D vector

        Returns:
            3x3 skew-symmetric matrix
        """
        zero = torch.zeros((), dtype=v.dtype, device=v.device)
        return torch.stack(
            [
                torch.stack([zero, -v[2], v[1]]),
                torch.stack([v[2], zero, -v[0]]),
                torch.stack([-v[1], v[0], zero]),
            ]
        )

    @staticmethod
    def skew_symmetric_batch(v: torch.Tensor) -> torch.Tensor:
        """
        Skew-symmetric matrices for a batch of vectors.

        Args:
            v: Tensor of shape (N, 3)

        Returns:
            Tensor of shape (N, 3, 3)
        """
        zero = torch.zeros_like(v[:, 0])
        return torch.stack(
            [
                torch.stack([zero, -v[:, 2], v[:, 1]], dim=1),
                torch.stack([v[:, 2], zero, -v[:, 0]], dim=1),
                torch.stack([-v[:, 1], v[:, 0], zero], dim=1),
            ],
            dim=1,
        )

    def __repr__(self) -> str:
        return f"SE3(R=\n{self.R},\nt={self.t})"


def to_tensor(value, device: Optional[torch.device] = None) -> torch.Tensor:
    """Convert an array-like to a double precision tensor."""
    if isinstance(value, torch.Tensor):
        return value.to(dtype=DTYPE, device=device)
    return torch.as_tensor(np.asarray(value, dtype=np.float64), device=device)
