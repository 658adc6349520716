"""Shared planar-hand scene used across the batch simulator tests."""

from __future__ import annotations

import pytest
import torch

from qsim_batch.params import QuasistaticSimParameters
from qsim_batch.simulator import BatchQuasistaticSimulator

NUM_WORKERS = 4

PLANAR_HAND_DIRECTIVE = {
    "friction_mu": 0.8,
    "ground": {"enabled": True, "height": 0.0},
    "robots": [
        {"name": "arm_left", "radius": 0.05},
        {"name": "arm_right", "radius": 0.05},
    ],
}
SPHERE_GEOMETRY = {"radius": 0.25, "mass": 1.0}


def planar_hand_params(**overrides: object) -> QuasistaticSimParameters:
    params = QuasistaticSimParameters(
        gravity=(0.0, 0.0, -10.0),
        nd_per_contact=2,
        contact_detection_tolerance=1.0,
        is_quasi_dynamic=True,
        gradient_from_active_constraints=True,
    )
    return params.updated(overrides)


def build_planar_hand(num_workers: int = NUM_WORKERS, **overrides: object) -> BatchQuasistaticSimulator:
    Kp = torch.tensor([50.0, 25.0], dtype=torch.float64)
    return BatchQuasistaticSimulator(
        PLANAR_HAND_DIRECTIVE,
        {"arm_left": Kp, "arm_right": Kp},
        {"sphere": SPHERE_GEOMETRY},
        planar_hand_params(**overrides),
        num_max_parallel_executions=num_workers,
    )


def planar_hand_q0(q_sim_batch: BatchQuasistaticSimulator) -> tuple[torch.Tensor, torch.Tensor]:
    q_sim = q_sim_batch.get_q_sim()
    name_to_idx = q_sim.get_model_instance_name_to_index_map()
    q0_dict = {
        name_to_idx["sphere"]: [0.0, 0.316, 0.0],
        name_to_idx["arm_left"]: [-0.3, 0.33],
        name_to_idx["arm_right"]: [0.3, 0.33],
    }
    return q_sim.get_q_vec_from_dict(q0_dict), q_sim.get_q_a_cmd_vec_from_dict(q0_dict)


def sample_u_batch(u0: torch.Tensor, n_tasks: int, interval_size: float, seed: int = 1) -> torch.Tensor:
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    noise = 2.0 * torch.rand((n_tasks, int(u0.numel())), generator=generator, dtype=torch.float64) - 1.0
    return u0.unsqueeze(0) + interval_size * noise


@pytest.fixture
def planar_hand() -> BatchQuasistaticSimulator:
    return build_planar_hand()


@pytest.fixture
def planar_hand_batch(planar_hand: BatchQuasistaticSimulator) -> tuple[torch.Tensor, torch.Tensor]:
    # Not divisible by the worker count, so the last chunk is short.
    n_tasks = NUM_WORKERS * 20 + 1
    q0, u0 = planar_hand_q0(planar_hand)
    x_batch = q0.unsqueeze(0).repeat(n_tasks, 1)
    u_batch = sample_u_batch(u0, n_tasks, 0.1)
    return x_batch, u_batch
