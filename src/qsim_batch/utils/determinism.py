from __future__ import annotations

import os
import random

import numpy as np
import torch


def set_determinism(seed: int, deterministic: bool) -> None:
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)

    if deterministic:
        os.environ.setdefault("CUBLAS_WORKSPACE_CONFIG", ":4096:8")
        torch.use_deterministic_algorithms(True)


def derive_stream(seed: int, index: int) -> torch.Generator:
    """Generator for task/sample ``index`` under the global ``seed``.

    Pure in ``(seed, index)``: no shared counter, clock or thread identity, so a
    given index draws the same values whichever worker runs it.
    """
    if seed < 0 or index < 0:
        raise ValueError(f"seed and index must be non-negative, got seed={seed} index={index}")
    seq = np.random.SeedSequence(entropy=int(seed), spawn_key=(int(index),))
    generator = torch.Generator(device="cpu")
    generator.manual_seed(int(seq.generate_state(1, dtype=np.uint64)[0]))
    return generator


def _as_scale(std: float | torch.Tensor, size: int) -> torch.Tensor:
    scale = torch.as_tensor(std, dtype=torch.float64).reshape(-1)
    if scale.numel() not in (1, size):
        raise ValueError(f"noise scale must be a scalar or have {size} entries, got {scale.numel()}")
    return scale


def perturb_sample(
    x: torch.Tensor,
    u: torch.Tensor,
    *,
    std_x: float | torch.Tensor,
    std_u: float | torch.Tensor,
    seed: int,
    index: int,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Gaussian perturbation of ``(x, u)``: state noise is drawn first, then control noise."""
    x = torch.as_tensor(x, dtype=torch.float64).reshape(-1)
    u = torch.as_tensor(u, dtype=torch.float64).reshape(-1)
    generator = derive_stream(seed, index)
    noise_x = torch.randn(x.shape, generator=generator, dtype=torch.float64)
    noise_u = torch.randn(u.shape, generator=generator, dtype=torch.float64)
    return x + _as_scale(std_x, x.numel()) * noise_x, u + _as_scale(std_u, u.numel()) * noise_u
