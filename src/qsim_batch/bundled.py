"""Randomized-smoothing ("bundled") estimates of ``B`` along a trajectory.

Sample ``k`` of timestep ``t`` perturbs ``(x_trj[t], u_trj[t])`` with the
stream for index ``t * K + k``. Invalid samples are left out of the mean and
the divisor shrinks with them. A timestep without any valid sample gets a zero
matrix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import torch

from qsim_batch.batch import BatchExecutor
from qsim_batch.errors import InputShapeError
from qsim_batch.params import GradientMode
from qsim_batch.state import Task, TaskResult
from qsim_batch.utils.determinism import perturb_sample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BundledGradientTrajectory:
    B: list[torch.Tensor]
    num_valid: list[int]

    def __len__(self) -> int:
        return len(self.B)


def sample_index(t: int, k: int, n_samples: int) -> int:
    return t * n_samples + k


def mean_valid_gradient(results: list[TaskResult], *, n_q: int, n_u: int) -> tuple[torch.Tensor, int]:
    """Unweighted mean of the valid sample gradients, in sample order."""
    valid = [r.B for r in sorted(results, key=lambda r: r.index) if r.is_valid and r.B is not None]
    if not valid:
        return torch.zeros((n_q, n_u), dtype=torch.float64), 0
    return torch.stack(valid).sum(dim=0) / len(valid), len(valid)


class BundledGradientEstimator:
    def __init__(self, executor: BatchExecutor) -> None:
        self._executor = executor

    def _check_trajectory(
        self, x_trj: torch.Tensor, u_trj: torch.Tensor, n_samples: int, seed: int
    ) -> tuple[torch.Tensor, torch.Tensor]:
        x_trj = torch.as_tensor(x_trj, dtype=torch.float64)
        u_trj = torch.as_tensor(u_trj, dtype=torch.float64)
        if x_trj.ndim != 2 or u_trj.ndim != 2:
            raise InputShapeError("x_trj and u_trj must be 2-D")
        if x_trj.shape[0] != u_trj.shape[0] + 1:
            raise InputShapeError(f"x_trj must have T + 1 rows for T = {u_trj.shape[0]}, got {x_trj.shape[0]}")
        if n_samples < 1:
            raise ValueError(f"n_samples must be positive, got {n_samples}")
        if seed < 0:
            raise ValueError(f"seed must be non-negative, got {seed}")
        return x_trj, u_trj

    def _sample_task(
        self,
        x_trj: torch.Tensor,
        u_trj: torch.Tensor,
        *,
        t: int,
        k: int,
        std_x: float | torch.Tensor,
        std_u: float | torch.Tensor,
        n_samples: int,
        seed: int,
        h: float,
    ) -> Task:
        index = sample_index(t, k, n_samples)
        x, u = perturb_sample(x_trj[t], u_trj[t], std_x=std_x, std_u=std_u, seed=seed, index=index)
        return Task(index=index, x=x, u=u, h=h, gradient_mode=GradientMode.B_ONLY)

    def _reduce(self, per_step: list[list[TaskResult]], n_q: int, n_u: int) -> BundledGradientTrajectory:
        B_trj: list[torch.Tensor] = []
        num_valid: list[int] = []
        for t, results in enumerate(per_step):
            B_mean, n_valid = mean_valid_gradient(results, n_q=n_q, n_u=n_u)
            if n_valid == 0:
                logger.warning("timestep %d: all %d bundled samples invalid, using zero gradient", t, len(results))
            B_trj.append(B_mean)
            num_valid.append(n_valid)
        return BundledGradientTrajectory(B=B_trj, num_valid=num_valid)

    def estimate_direct(
        self,
        x_trj: torch.Tensor,
        u_trj: torch.Tensor,
        std_x: float | torch.Tensor,
        std_u: float | torch.Tensor,
        n_samples: int,
        seed: int,
        *,
        h: float,
    ) -> BundledGradientTrajectory:
        """Step every sample one after another on a single solver."""
        x_trj, u_trj = self._check_trajectory(x_trj, u_trj, n_samples, seed)
        self._executor.validate_inputs(x_trj[:-1], u_trj, h)
        T = int(u_trj.shape[0])

        per_step: list[list[TaskResult]] = []
        for t in range(T):
            results = []
            for k in range(n_samples):
                task = self._sample_task(
                    x_trj, u_trj, t=t, k=k, std_x=std_x, std_u=std_u, n_samples=n_samples, seed=seed, h=h
                )
                results.append(self._executor.run_task(task, worker_id=0))
            per_step.append(results)
        return self._reduce(per_step, int(x_trj.shape[1]), int(u_trj.shape[1]))

    def estimate_batched(
        self,
        x_trj: torch.Tensor,
        u_trj: torch.Tensor,
        std_x: float | torch.Tensor,
        std_u: float | torch.Tensor,
        n_samples: int,
        seed: int,
        *,
        h: float,
        num_workers: int | None = None,
    ) -> BundledGradientTrajectory:
        """Flatten all ``T * K`` samples into one batch, then reduce per timestep."""
        x_trj, u_trj = self._check_trajectory(x_trj, u_trj, n_samples, seed)
        T = int(u_trj.shape[0])

        tasks = [
            self._sample_task(x_trj, u_trj, t=t, k=k, std_x=std_x, std_u=std_u, n_samples=n_samples, seed=seed, h=h)
            for t in range(T)
            for k in range(n_samples)
        ]
        if not tasks:
            return BundledGradientTrajectory(B=[], num_valid=[])
        x_batch = torch.stack([task.x for task in tasks])
        u_batch = torch.stack([task.u for task in tasks])
        batch = self._executor.run_batch(x_batch, u_batch, h, GradientMode.B_ONLY, num_workers=num_workers)

        per_step: list[list[TaskResult]] = []
        for t in range(T):
            rows = range(sample_index(t, 0, n_samples), sample_index(t + 1, 0, n_samples))
            per_step.append(
                [
                    TaskResult(index=i, x_next=batch.x_next[i], B=batch.B[i], is_valid=batch.is_valid[i])
                    for i in rows
                ]
            )
        return self._reduce(per_step, int(x_trj.shape[1]), int(u_trj.shape[1]))
