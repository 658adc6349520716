from __future__ import annotations

import functools
import logging
from typing import Any, Mapping

import torch

from qsim_batch.batch import BatchExecutor, build_solver, default_num_workers
from qsim_batch.bundled import BundledGradientEstimator
from qsim_batch.engine import QuasistaticSimulator
from qsim_batch.params import GradientMode, QuasistaticSimParameters, sim_parameters_from_dict
from qsim_batch.systems.planar_scene import ModelSource

logger = logging.getLogger(__name__)

DynamicsBatch = tuple[torch.Tensor, list[torch.Tensor], list[bool]]


class BatchQuasistaticSimulator:
    """Batched forward dynamics and bundled gradients over a solver arena."""

    def __init__(
        self,
        model_directive: ModelSource,
        robot_stiffness_dict: Mapping[str, Any],
        object_geometry_dict: Mapping[str, ModelSource],
        sim_params: QuasistaticSimParameters,
        *,
        num_max_parallel_executions: int | None = None,
    ) -> None:
        self._solver_factory = functools.partial(
            QuasistaticSimulator,
            model_directive,
            dict(robot_stiffness_dict),
            dict(object_geometry_dict),
            sim_params,
        )
        # Model bookkeeping only; never stepped by the arena.
        self._q_sim = build_solver(self._solver_factory)
        self._sim_params = sim_params
        self._build_executor(num_max_parallel_executions or default_num_workers())

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> BatchQuasistaticSimulator:
        """Build from a mapping with ``model_directive``, ``robot_stiffness``,
        ``objects`` and optional ``sim_params`` / ``num_workers`` entries."""
        return cls(
            cfg["model_directive"],
            dict(cfg["robot_stiffness"]),
            dict(cfg["objects"]),
            sim_parameters_from_dict(cfg.get("sim_params", {})),
            num_max_parallel_executions=cfg.get("num_workers"),
        )

    def _build_executor(self, num_workers: int) -> None:
        self._executor = BatchExecutor(self._solver_factory, num_workers=num_workers)
        self._bundled = BundledGradientEstimator(self._executor)

    def get_q_sim(self) -> QuasistaticSimulator:
        return self._q_sim

    def get_num_max_parallel_executions(self) -> int:
        return self._executor.num_workers

    def set_num_max_parallel_executions(self, n: int) -> None:
        if n < 1:
            raise ValueError(f"num_max_parallel_executions must be positive, got {n}")
        if n != self._executor.num_workers:
            self._build_executor(int(n))

    def calc_dynamics(
        self,
        x_batch: torch.Tensor,
        u_batch: torch.Tensor,
        h: float,
        gradient_mode: GradientMode,
        options: Mapping[str, Any] | None = None,
        parallel: bool = True,
    ) -> DynamicsBatch:
        """Step every row of ``(x_batch, u_batch)``.

        Returns ``(x_next_batch, B_batch, is_valid_batch)``. ``B_batch`` is empty
        for ``GradientMode.NONE``. ``options`` overrides simulation parameters
        for this call only.
        """
        params = self._sim_params.updated(options)
        num_workers = None if parallel else 1
        result = self._executor.run_batch(x_batch, u_batch, h, gradient_mode, num_workers=num_workers, params=params)
        return result.as_tuple()

    def calc_dynamics_parallel(
        self,
        x_batch: torch.Tensor,
        u_batch: torch.Tensor,
        h: float,
        gradient_mode: GradientMode,
        options: Mapping[str, Any] | None = None,
    ) -> DynamicsBatch:
        return self.calc_dynamics(x_batch, u_batch, h, gradient_mode, options, parallel=True)

    def calc_dynamics_serial(
        self,
        x_batch: torch.Tensor,
        u_batch: torch.Tensor,
        h: float,
        gradient_mode: GradientMode,
        options: Mapping[str, Any] | None = None,
    ) -> DynamicsBatch:
        return self.calc_dynamics(x_batch, u_batch, h, gradient_mode, options, parallel=False)

    def calc_bundled_b_trj(
        self,
        x_trj: torch.Tensor,
        u_trj: torch.Tensor,
        std_x: float | torch.Tensor,
        std_u: float | torch.Tensor,
        n_samples: int,
        seed: int,
        *,
        h: float | None = None,
        num_workers: int | None = None,
    ) -> list[torch.Tensor]:
        h = self._sim_params.h if h is None else h
        trj = self._bundled.estimate_batched(
            x_trj, u_trj, std_x, std_u, n_samples, seed, h=h, num_workers=num_workers
        )
        return trj.B

    def calc_bundled_b_trj_direct(
        self,
        x_trj: torch.Tensor,
        u_trj: torch.Tensor,
        std_x: float | torch.Tensor,
        std_u: float | torch.Tensor,
        n_samples: int,
        seed: int,
        *,
        h: float | None = None,
    ) -> list[torch.Tensor]:
        h = self._sim_params.h if h is None else h
        return self._bundled.estimate_direct(x_trj, u_trj, std_x, std_u, n_samples, seed, h=h).B
