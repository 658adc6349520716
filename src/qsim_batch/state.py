from __future__ import annotations

from dataclasses import dataclass

import torch

from qsim_batch.params import GradientMode


@dataclass(frozen=True)
class Task:
    index: int
    x: torch.Tensor
    u: torch.Tensor
    h: float
    gradient_mode: GradientMode


@dataclass(frozen=True)
class TaskResult:
    index: int
    x_next: torch.Tensor
    B: torch.Tensor | None
    is_valid: bool


@dataclass(frozen=True)
class BatchResult:
    """Task results re-assembled in input order.

    ``x_next`` is ``(N, n_q)``. ``B`` holds one ``(n_q, n_u)`` matrix per row when
    gradients were requested and is empty otherwise.
    """

    x_next: torch.Tensor
    B: list[torch.Tensor]
    is_valid: list[bool]

    @classmethod
    def from_task_results(cls, results: list[TaskResult], gradient_mode: GradientMode) -> BatchResult:
        ordered = sorted(results, key=lambda r: r.index)
        x_next = torch.stack([r.x_next for r in ordered])
        if gradient_mode == GradientMode.NONE:
            B: list[torch.Tensor] = []
        else:
            B = [r.B for r in ordered if r.B is not None]
            if len(B) != len(ordered):
                raise RuntimeError("Gradient requested but missing from some task results")
        return cls(x_next=x_next, B=B, is_valid=[bool(r.is_valid) for r in ordered])

    @property
    def num_tasks(self) -> int:
        return int(self.x_next.shape[0])

    @property
    def num_valid(self) -> int:
        return sum(1 for flag in self.is_valid if flag)

    def as_tuple(self) -> tuple[torch.Tensor, list[torch.Tensor], list[bool]]:
        return self.x_next, self.B, self.is_valid

    def as_dict(self) -> dict[str, object]:
        return {"x_next": self.x_next, "B": self.B, "is_valid": self.is_valid}
