from __future__ import annotations

import logging
from typing import Any, Mapping

import torch

from qsim_batch.contacts import detect_contacts, friction_cone_constraints
from qsim_batch.lcp import (
    LCPSolution,
    dual_problem,
    kkt_sensitivity,
    primal_from_dual,
    solve_lcp_active_set,
    solve_lcp_pgs,
)
from qsim_batch.params import GradientMode, QuasistaticSimParameters
from qsim_batch.systems.planar_scene import ModelSource, PlanarScene, load_planar_scene

logger = logging.getLogger(__name__)

Diagnostics = dict[str, Any]
StepOutput = tuple[torch.Tensor, torch.Tensor | None, bool]


class StepSolver:
    """Single-step dynamics: ``(x, u) -> (x_next, B, is_valid)``.

    Instances may hold scratch state between calls and are not reentrant; give
    each worker thread its own.
    """

    def step(
        self,
        x: torch.Tensor,
        u: torch.Tensor,
        h: float,
        gradient_mode: GradientMode,
        params: QuasistaticSimParameters | None = None,
    ) -> StepOutput:
        raise NotImplementedError

    def num_positions(self) -> int:
        raise NotImplementedError

    def num_actuated_dofs(self) -> int:
        raise NotImplementedError


class QuasistaticSimulator(StepSolver):
    """Quasistatic contact step for a planar scene of fingers and disks.

    Solves ``min 0.5 dq^T Q dq + b^T dq  s.t.  phi + J dq >= 0`` with
    ``Q = diag(h Kp, M_u / h)`` and ``b = -h [Kp (u - q_a); f_u]`` through its
    dual LCP, then sets ``q_next = q + dq``.
    """

    def __init__(
        self,
        model_directive: ModelSource,
        robot_stiffness_dict: Mapping[str, Any],
        object_geometry_dict: Mapping[str, ModelSource],
        sim_params: QuasistaticSimParameters,
    ) -> None:
        self._scene = load_planar_scene(model_directive, robot_stiffness_dict, object_geometry_dict)
        self._sim_params = sim_params
        self._kp = self._scene.stiffness_vector()
        self._mass_u = self._scene.unactuated_mass_vector()
        self.last_diagnostics: Diagnostics = {}

    @property
    def scene(self) -> PlanarScene:
        return self._scene

    @property
    def sim_params(self) -> QuasistaticSimParameters:
        return self._sim_params

    def num_positions(self) -> int:
        return self._scene.num_positions

    def num_actuated_dofs(self) -> int:
        return self._scene.num_actuated_dofs

    def get_model_instance_name_to_index_map(self) -> dict[str, int]:
        return self._scene.name_to_index_map()

    def get_q_vec_from_dict(self, q_dict: Mapping[int, Any]) -> torch.Tensor:
        q = torch.zeros((self.num_positions(),), dtype=torch.float64)
        n_instances = len(self._scene.instance_names())
        missing = [idx for idx in range(n_instances) if idx not in q_dict]
        if missing:
            raise KeyError(f"Missing configuration for model instances {missing}")
        for instance, value in q_dict.items():
            cols = self._scene.position_slice(int(instance))
            q[cols] = torch.as_tensor(value, dtype=torch.float64).reshape(-1)
        return q

    def get_q_a_cmd_vec_from_dict(self, q_a_cmd_dict: Mapping[int, Any]) -> torch.Tensor:
        n_fingers = len(self._scene.fingers)
        parts: list[torch.Tensor] = []
        for instance in range(n_fingers):
            if instance not in q_a_cmd_dict:
                raise KeyError(f"Missing command for actuated model instance {instance}")
            parts.append(torch.as_tensor(q_a_cmd_dict[instance], dtype=torch.float64).reshape(-1))
        if not parts:
            return torch.zeros((0,), dtype=torch.float64)
        return torch.cat(parts)

    def step(
        self,
        x: torch.Tensor,
        u: torch.Tensor,
        h: float,
        gradient_mode: GradientMode,
        params: QuasistaticSimParameters | None = None,
    ) -> StepOutput:
        params = params or self._sim_params
        q = torch.as_tensor(x, dtype=torch.float64).reshape(-1)
        u = torch.as_tensor(u, dtype=torch.float64).reshape(-1)
        n_q = self.num_positions()
        n_a = self.num_actuated_dofs()
        if q.shape[0] != n_q or u.shape[0] != n_a:
            raise ValueError(f"Expected x of size {n_q} and u of size {n_a}, got {q.shape[0]} and {u.shape[0]}")
        if h <= 0.0:
            raise ValueError(f"h must be positive, got {h}")

        B_placeholder = torch.zeros((n_q, n_a), dtype=torch.float64)
        if not bool(torch.isfinite(q).all().item() and torch.isfinite(u).all().item()):
            self.last_diagnostics = {"solver": {"status": "non_finite_input"}}
            return q.clone(), self._maybe_b(B_placeholder, gradient_mode), False

        mass_scale = 1.0 if params.is_quasi_dynamic else float(params.unactuated_mass_scale)
        Q_diag = torch.cat([h * self._kp, self._mass_u * mass_scale / h])
        f_u = self._scene.gravity_force(params.gravity)
        b = -h * torch.cat([self._kp * (u - q[:n_a]), f_u])

        contacts = detect_contacts(self._scene, q, tolerance=params.contact_detection_tolerance)
        J, phi = friction_cone_constraints(
            contacts,
            friction_mu=self._scene.friction_mu,
            nd_per_contact=params.nd_per_contact,
            n_q=n_q,
        )
        A, c = dual_problem(Q_diag, b, J, phi, eps=params.regularization)
        sol = self._solve(A, c, params)
        dq = primal_from_dual(Q_diag, b, J, sol.lam)
        q_next = q + dq

        is_valid = sol.converged and bool(torch.isfinite(q_next).all().item())
        self.last_diagnostics = {
            "contacts": {"count": len(contacts), "items": [c_.to_dict() for c_ in contacts]},
            "solver": {"iters": sol.iters, "residual_max": sol.residual, "status": sol.status},
        }
        if not is_valid:
            return q_next, self._maybe_b(B_placeholder, gradient_mode), False

        if gradient_mode == GradientMode.NONE:
            return q_next, None, True

        db_du = torch.zeros((n_q, n_a), dtype=torch.float64)
        db_du[:n_a] = -h * torch.diag(self._kp)
        B = kkt_sensitivity(
            Q_diag,
            J,
            sol,
            db_du,
            eps=params.regularization,
            active_only=params.gradient_from_active_constraints,
            active_tol=params.residual_tol,
        )
        if not bool(torch.isfinite(B).all().item()):
            return q_next, B_placeholder, False
        return q_next, B, True

    def _solve(self, A: torch.Tensor, c: torch.Tensor, params: QuasistaticSimParameters) -> LCPSolution:
        sol = solve_lcp_active_set(A, c, max_iters=params.lcp_max_iters, tol=params.residual_tol)
        if sol.converged:
            return sol
        logger.debug("active-set solve %s after %d iters, falling back to PGS", sol.status, sol.iters)
        return solve_lcp_pgs(A, c, iters=params.pgs_iters, tol=params.residual_tol, lam0=sol.lam)

    @staticmethod
    def _maybe_b(B: torch.Tensor, gradient_mode: GradientMode) -> torch.Tensor | None:
        return None if gradient_mode == GradientMode.NONE else B
