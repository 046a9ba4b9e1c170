import logging
import math
import time
from typing import Dict, Tuple

import torch

from ...frontend.odometry.base import FramePose
from ..se3 import DTYPE, SE3
from .base import OptimizationResult, Optimizer


class PoseOptimizer(Optimizer):
    """
    Motion-only optimization of a frame pose against fixed map points.

    The reprojection error of every map point correspondence is minimized
    with Gauss-Newton on SE(3) (left perturbation, twist ordered as
    translation then rotation). The optimization runs in several rounds;
    each round restarts from the initial pose, uses only the current
    inliers, and reclassifies every correspondence with a chi-square test.
    A Huber kernel is applied in all rounds but the last.
    """

    def __init__(self, config: Dict = None, device: torch.device = None):
        """
        Initialize pose optimizer.

        Args:
            config: Configuration dictionary with the following keys:
                - rounds: Number of outlier classification rounds
                - iterations: Gauss-Newton iterations per round
                - chi2_threshold: Chi-square threshold (2 dof, 95%)
            device: PyTorch device
        """
        config = config if config is not None else {}
        super().__init__(config.get("iterations", 10), 1e-10, device)
        self.rounds = config.get("rounds", 4)
        self.chi2_threshold = config.get("chi2_threshold", 5.991)
        self.huber_delta = math.sqrt(self.chi2_threshold)
        self.min_edges = 10
        self.damping_factor = 1e-9

        self.logger = logging.getLogger(self.__class__.__name__)

    def optimize_pose(self, frame) -> int:
        """
        Optimize the pose of a frame in place.

        Args:
            frame: Frame with a pose and map point links; its pose and
                outlier flags are updated

        Returns:
            Number of inlier correspondences, 0 if there are fewer than 3
        """
        start_time = time.time()

        indices = []
        points = []
        observations = []
        information = []
        for i, mp in enumerate(frame.map_points):
            if mp is None or mp.is_bad():
                continue
            frame.outliers[i] = False
            kp = frame.keypoints_un[i]
            indices.append(i)
            points.append(mp.get_world_pos())
            observations.append((kp.x, kp.y))
            information.append(frame.inv_level_sigma2[kp.octave])

        n_initial = len(indices)
        if n_initial < 3:
            return 0

        points = torch.stack(points).to(self.device, DTYPE)
        observations = torch.tensor(observations, dtype=DTYPE, device=self.device)
        information = torch.tensor(information, dtype=DTYPE, device=self.device)
        intrinsics = (
            frame.camera.fx,
            frame.camera.fy,
            frame.camera.cx,
            frame.camera.cy,
        )

        initial = SE3(
            frame.pose.rotation.to(self.device), frame.pose.translation.to(self.device)
        )
        outliers = torch.zeros(n_initial, dtype=torch.bool, device=self.device)
        pose = initial
        n_bad = 0
        total_iterations = 0
        initial_cost = None
        final_cost = 0.0

        for round_idx in range(self.rounds):
            robust = round_idx < self.rounds - 1
            active = ~outliers
            pose, iterations, costs = self._gauss_newton(
                initial,
                points[active],
                observations[active],
                information[active],
                intrinsics,
                robust,
            )
            total_iterations += iterations
            if initial_cost is None:
                initial_cost = costs[0]
            final_cost = costs[1]

            chi2, valid = self._chi2(pose, points, observations, information, intrinsics)
            outliers = (chi2 > self.chi2_threshold) | ~valid
            n_bad = int(outliers.sum())

            if n_initial - n_bad < self.min_edges:
                break

        frame.set_pose(FramePose(pose.R.cpu(), pose.t.cpu(), frame.timestamp))
        for idx, is_outlier in zip(indices, outliers.tolist()):
            frame.outliers[idx] = is_outlier

        n_inliers = n_initial - n_bad
        self.last_result = OptimizationResult(
            success=n_inliers > 0,
            initial_cost=initial_cost if initial_cost is not None else 0.0,
            final_cost=final_cost,
            num_inliers=n_inliers,
            num_iterations=total_iterations,
            time_seconds=time.time() - start_time,
            convergence_info={"correspondences": n_initial, "outliers": n_bad},
        )
        self.logger.debug(
            f"Pose optimization of frame {frame.id}: {n_inliers}/{n_initial} inliers"
        )
        return n_inliers

    @staticmethod
    def _project(
        pose: SE3, points: torch.Tensor, intrinsics
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        fx, fy, cx, cy = intrinsics
        points_cam = pose.transform_points(points)
        z = points_cam[:, 2]
        valid = z > 1e-6
        z_safe = torch.where(valid, z, torch.ones_like(z))
        u = fx * points_cam[:, 0] / z_safe + cx
        v = fy * points_cam[:, 1] / z_safe + cy
        return torch.stack([u, v], dim=1), points_cam, valid

    def _chi2(self, pose, points, observations, information, intrinsics):
        projected, _, valid = self._project(pose, points, intrinsics)
        errors = observations - projected
        chi2 = information * (errors**2).sum(dim=1)
        return chi2, valid

    def _robust_cost(self, chi2: torch.Tensor, robust: bool) -> float:
        if not robust:
            return float(chi2.sum())
        e = torch.sqrt(chi2)
        delta = self.huber_delta
        rho = torch.where(e <= delta, chi2, 2 * delta * e - delta * delta)
        return float(rho.sum())

    def _gauss_newton(
        self,
        pose: SE3,
        points: torch.Tensor,
        observations: torch.Tensor,
        information: torch.Tensor,
        intrinsics,
        robust: bool,
    ) -> Tuple[SE3, int, Tuple[float, float]]:
        """
        Run Gauss-Newton iterations on the active correspondences.

        Returns:
            Tuple of (optimized pose, iterations, (initial cost, final cost))
        """
        fx, fy, _, _ = intrinsics
        if points.shape[0] == 0:
            return pose, 0, (0.0, 0.0)

        eye = torch.eye(3, dtype=DTYPE, device=points.device)
        initial_cost = None
        cost = 0.0
        iteration = 0

        for iteration in range(1, self.max_iterations + 1):
            projected, points_cam, valid = self._project(pose, points, intrinsics)
            errors = observations - projected
            chi2 = information * (errors**2).sum(dim=1)
            cost = self._robust_cost(chi2[valid], robust)
            if initial_cost is None:
                initial_cost = cost

            weights = information * valid.to(DTYPE)
            if robust:
                e = torch.sqrt(chi2)
                huber = torch.where(
                    e <= self.huber_delta,
                    torch.ones_like(e),
                    self.huber_delta / e.clamp_min(1e-12),
                )
                weights = weights * huber

            x = points_cam[:, 0]
            y = points_cam[:, 1]
            inv_z = 1.0 / torch.where(valid, points_cam[:, 2], torch.ones_like(x))
            zeros = torch.zeros_like(x)
            jac_proj = torch.stack(
                [
                    torch.stack([fx * inv_z, zeros, -fx * x * inv_z * inv_z], dim=1),
                    torch.stack([zeros, fy * inv_z, -fy * y * inv_z * inv_z], dim=1),
                ],
                dim=1,
            )
            jac_point = torch.cat(
                [
                    eye.expand(points_cam.shape[0], 3, 3),
                    -SE3.skew_symmetric_batch(points_cam),
                ],
                dim=2,
            )
            jacobian = -torch.matmul(jac_proj, jac_point)

            H = torch.einsum("m,mai,maj->ij", weights, jacobian, jacobian)
            b = -torch.einsum("m,mai,ma->i", weights, jacobian, errors)
            H = H + self.damping_factor * torch.eye(6, dtype=DTYPE, device=H.device)

            try:
                delta = torch.linalg.solve(H, b)
            except RuntimeError as e:
                self.logger.warning(f"Singular pose optimization system: {e}")
                break

            pose = SE3.exp(delta).compose(pose)
            if self.measure_convergence(float(torch.linalg.norm(delta))):
                break

        projected, _, valid = self._project(pose, points, intrinsics)
        chi2 = information * ((observations - projected) ** 2).sum(dim=1)
        final_cost = self._robust_cost(chi2[valid], robust)
        return pose, iteration, (initial_cost or 0.0, final_cost)
