from __future__ import annotations

import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import torch

from qsim_batch.engine import StepSolver
from qsim_batch.errors import InputShapeError, SolverConstructionError
from qsim_batch.params import GradientMode, QuasistaticSimParameters
from qsim_batch.state import BatchResult, Task, TaskResult

logger = logging.getLogger(__name__)

SolverFactory = Callable[[], StepSolver]


def default_num_workers() -> int:
    return max(1, os.cpu_count() or 1)


def partition_tasks(n_tasks: int, num_workers: int) -> list[range]:
    """Contiguous chunks of ``ceil(n / w)`` tasks; the last one may be shorter."""
    if n_tasks < 0:
        raise ValueError(f"n_tasks must be non-negative, got {n_tasks}")
    if num_workers < 1:
        raise ValueError(f"num_workers must be positive, got {num_workers}")
    if n_tasks == 0:
        return []
    chunk = math.ceil(n_tasks / num_workers)
    return [range(start, min(n_tasks, start + chunk)) for start in range(0, n_tasks, chunk)]


def build_solver(solver_factory: SolverFactory, *, worker_id: int = 0) -> StepSolver:
    try:
        return solver_factory()
    except Exception as exc:
        raise SolverConstructionError(f"Failed to construct solver for worker {worker_id}: {exc}") from exc


class BatchExecutor:
    """Fans independent step tasks out to a fixed arena of solver instances.

    Solver ``i`` of the arena is used only by the chunk assigned to worker
    ``i``, so no solver is touched by two threads during a batch.
    """

    def __init__(self, solver_factory: SolverFactory, num_workers: int | None = None) -> None:
        num_workers = default_num_workers() if num_workers is None else int(num_workers)
        if num_workers < 1:
            raise ValueError(f"num_workers must be positive, got {num_workers}")
        self._solvers = self._build_arena(solver_factory, num_workers)
        self._n_q = self._solvers[0].num_positions()
        self._n_u = self._solvers[0].num_actuated_dofs()

    @staticmethod
    def _build_arena(solver_factory: SolverFactory, num_workers: int) -> list[StepSolver]:
        solvers = [build_solver(solver_factory, worker_id=worker_id) for worker_id in range(num_workers)]
        logger.info("constructed %d solver instances", num_workers)
        return solvers

    @property
    def num_workers(self) -> int:
        return len(self._solvers)

    @property
    def primary_solver(self) -> StepSolver:
        return self._solvers[0]

    def run_task(self, task: Task, *, worker_id: int = 0, params: QuasistaticSimParameters | None = None) -> TaskResult:
        """Run one task on worker ``worker_id``'s solver; failures become ``is_valid=False``."""
        solver = self._solvers[worker_id]
        try:
            x_next, B, is_valid = solver.step(task.x, task.u, task.h, task.gradient_mode, params)
        except Exception as exc:
            logger.warning("task %d failed on worker %d: %s: %s", task.index, worker_id, type(exc).__name__, exc)
            return self._invalid_result(task)

        if not is_valid:
            logger.warning("task %d reported an invalid step on worker %d", task.index, worker_id)
            return self._invalid_result(task)
        if task.gradient_mode != GradientMode.NONE and B is None:
            logger.warning("task %d returned no gradient", task.index)
            return self._invalid_result(task)
        if task.gradient_mode == GradientMode.NONE:
            B = None
        return TaskResult(index=task.index, x_next=x_next, B=B, is_valid=True)

    def _invalid_result(self, task: Task) -> TaskResult:
        B = None
        if task.gradient_mode != GradientMode.NONE:
            B = torch.zeros((self._n_q, self._n_u), dtype=torch.float64)
        return TaskResult(index=task.index, x_next=task.x.clone(), B=B, is_valid=False)

    def _run_chunk(
        self, worker_id: int, tasks: list[Task], params: QuasistaticSimParameters | None
    ) -> list[TaskResult]:
        return [self.run_task(task, worker_id=worker_id, params=params) for task in tasks]

    def validate_inputs(self, x_batch: torch.Tensor, u_batch: torch.Tensor, h: float) -> None:
        if x_batch.ndim != 2 or u_batch.ndim != 2:
            raise InputShapeError(
                f"x_batch and u_batch must be 2-D, got shapes {tuple(x_batch.shape)} and {tuple(u_batch.shape)}"
            )
        if x_batch.shape[0] != u_batch.shape[0]:
            raise InputShapeError(f"Row count mismatch: x_batch has {x_batch.shape[0]}, u_batch has {u_batch.shape[0]}")
        if x_batch.shape[1] != self._n_q:
            raise InputShapeError(f"x_batch must have {self._n_q} columns, got {x_batch.shape[1]}")
        if u_batch.shape[1] != self._n_u:
            raise InputShapeError(f"u_batch must have {self._n_u} columns, got {u_batch.shape[1]}")
        if not h > 0.0:
            raise InputShapeError(f"h must be positive, got {h}")

    def run_batch(
        self,
        x_batch: torch.Tensor,
        u_batch: torch.Tensor,
        h: float,
        gradient_mode: GradientMode,
        *,
        num_workers: int | None = None,
        params: QuasistaticSimParameters | None = None,
    ) -> BatchResult:
        x_batch = torch.as_tensor(x_batch, dtype=torch.float64)
        u_batch = torch.as_tensor(u_batch, dtype=torch.float64)
        self.validate_inputs(x_batch, u_batch, h)
        gradient_mode = GradientMode(int(gradient_mode))

        num_workers = self.num_workers if num_workers is None else int(num_workers)
        if not 1 <= num_workers <= self.num_workers:
            raise InputShapeError(f"num_workers must be in [1, {self.num_workers}], got {num_workers}")

        n_tasks = int(x_batch.shape[0])
        if n_tasks == 0:
            return BatchResult(
                x_next=torch.zeros((0, self._n_q), dtype=torch.float64),
                B=[],
                is_valid=[],
            )

        tasks = [
            Task(index=i, x=x_batch[i], u=u_batch[i], h=float(h), gradient_mode=gradient_mode)
            for i in range(n_tasks)
        ]
        chunks = partition_tasks(n_tasks, num_workers)
        logger.debug("dispatching %d tasks in %d chunks", n_tasks, len(chunks))

        results: list[TaskResult | None] = [None] * n_tasks
        with ThreadPoolExecutor(max_workers=len(chunks)) as pool:
            futures = [
                pool.submit(self._run_chunk, worker_id, [tasks[i] for i in chunk], params)
                for worker_id, chunk in enumerate(chunks)
            ]
            for future in futures:
                for result in future.result():
                    results[result.index] = result

        batch = BatchResult.from_task_results([r for r in results if r is not None], gradient_mode)
        if batch.num_tasks != n_tasks:
            raise RuntimeError(f"Expected {n_tasks} task results, collected {batch.num_tasks}")
        if batch.num_valid < n_tasks:
            logger.debug("%d of %d tasks invalid", n_tasks - batch.num_valid, n_tasks)
        return batch
