from __future__ import annotations

import torch


def compare_dynamics_batches(
    batch_a: tuple[torch.Tensor, list[torch.Tensor], list[bool]],
    batch_b: tuple[torch.Tensor, list[torch.Tensor], list[bool]],
) -> dict[str, float | int]:
    """Agreement metrics between two ``(x_next, B, is_valid)`` batches.

    ``x_next_err_mean`` is the row-wise state error norm averaged over the
    batch. Gradient errors are Frobenius norms, relative to ``batch_a``.
    """
    x_a, B_a, valid_a = batch_a
    x_b, B_b, valid_b = batch_b
    if x_a.shape != x_b.shape:
        raise ValueError(f"x_next shapes differ: {tuple(x_a.shape)} vs {tuple(x_b.shape)}")
    if len(B_a) != len(B_b) or len(valid_a) != len(valid_b):
        raise ValueError("Batches have different lengths")

    n = int(x_a.shape[0])
    x_err = torch.linalg.vector_norm(x_b - x_a, dim=1).sum() / max(n, 1)
    B_err_max = 0.0
    B_rel_err_max = 0.0
    for Ba, Bb in zip(B_a, B_b):
        err = float(torch.linalg.matrix_norm(Ba - Bb).item())
        ref = float(torch.linalg.matrix_norm(Ba).item())
        B_err_max = max(B_err_max, err)
        if ref > 0.0:
            B_rel_err_max = max(B_rel_err_max, err / ref)
        elif err > 0.0:
            B_rel_err_max = float("inf")

    return {
        "n_tasks": n,
        "is_valid_mismatch": sum(1 for a, b in zip(valid_a, valid_b) if bool(a) != bool(b)),
        "x_next_err_mean": float(x_err.item()),
        "B_err_max": B_err_max,
        "B_rel_err_max": B_rel_err_max,
    }


def max_trajectory_error(B_trj_a: list[torch.Tensor], B_trj_b: list[torch.Tensor]) -> float:
    if len(B_trj_a) != len(B_trj_b):
        raise ValueError(f"Trajectory lengths differ: {len(B_trj_a)} vs {len(B_trj_b)}")
    errors = [float(torch.linalg.matrix_norm(a - b).item()) for a, b in zip(B_trj_a, B_trj_b)]
    return max(errors, default=0.0)
