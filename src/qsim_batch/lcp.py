"""Small dense LCP solvers and KKT sensitivities for the quasistatic step.

The step is the QP ``min 0.5 dq^T Q dq + b^T dq  s.t.  phi + J dq >= 0`` with a
diagonal ``Q``. Its regularized dual is the LCP

    w = A lam + c,   lam >= 0,   w >= 0,   lam^T w = 0,

with ``A = J Q^-1 J^T + eps I`` and ``c = phi - J Q^-1 b``.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch


@dataclass(frozen=True)
class LCPSolution:
    lam: torch.Tensor
    w: torch.Tensor
    iters: int
    residual: float
    status: str

    @property
    def converged(self) -> bool:
        return self.status == "converged"


def complementarity_residual(lam: torch.Tensor, w: torch.Tensor) -> float:
    if lam.numel() == 0:
        return 0.0
    return float(torch.minimum(lam, w).abs().max().item())


def solve_lcp_active_set(A: torch.Tensor, c: torch.Tensor, *, max_iters: int, tol: float) -> LCPSolution:
    """Primal-dual active-set iteration; exact once the active set settles."""
    m = int(c.shape[0])
    if m == 0:
        empty = torch.zeros((0,), dtype=c.dtype)
        return LCPSolution(lam=empty, w=empty, iters=0, residual=0.0, status="converged")

    active = c < 0
    lam = torch.zeros_like(c)
    w = c.clone()
    for iter_index in range(max_iters):
        lam = torch.zeros_like(c)
        if bool(active.any().item()):
            idx = torch.nonzero(active).reshape(-1)
            lam[idx] = torch.linalg.solve(A[idx][:, idx], -c[idx])
        w = A @ lam + c
        next_active = (lam - w) > 0
        if torch.equal(next_active, active):
            residual = complementarity_residual(lam, w)
            status = "converged" if residual <= tol else "stalled"
            return LCPSolution(lam=lam, w=w, iters=iter_index + 1, residual=residual, status=status)
        active = next_active

    return LCPSolution(lam=lam, w=w, iters=max_iters, residual=complementarity_residual(lam, w), status="max_iter")


def solve_lcp_pgs(
    A: torch.Tensor,
    c: torch.Tensor,
    *,
    iters: int,
    tol: float,
    lam0: torch.Tensor | None = None,
) -> LCPSolution:
    """Projected Gauss-Seidel sweeps over the dual variables."""
    m = int(c.shape[0])
    if m == 0:
        empty = torch.zeros((0,), dtype=c.dtype)
        return LCPSolution(lam=empty, w=empty, iters=0, residual=0.0, status="converged")

    lam = torch.zeros_like(c) if lam0 is None else torch.clamp(lam0.clone(), min=0.0)
    diag = torch.diagonal(A)
    status = "max_iter"
    residual = float("inf")
    iters_done = 0
    for iter_index in range(max(1, iters)):
        for i in range(m):
            w_i = A[i] @ lam + c[i]
            lam[i] = torch.clamp(lam[i] - w_i / diag[i], min=0.0)
        iters_done = iter_index + 1
        residual = complementarity_residual(lam, A @ lam + c)
        if residual <= tol:
            status = "converged"
            break

    return LCPSolution(lam=lam, w=A @ lam + c, iters=iters_done, residual=residual, status=status)


def dual_problem(
    Q_diag: torch.Tensor, b: torch.Tensor, J: torch.Tensor, phi: torch.Tensor, *, eps: float
) -> tuple[torch.Tensor, torch.Tensor]:
    Q_inv = 1.0 / Q_diag
    JQ_inv = J * Q_inv.unsqueeze(0)
    A = JQ_inv @ J.transpose(0, 1)
    A = A + float(eps) * torch.eye(int(A.shape[0]), dtype=A.dtype)
    c = phi - JQ_inv @ b
    return A, c


def primal_from_dual(Q_diag: torch.Tensor, b: torch.Tensor, J: torch.Tensor, lam: torch.Tensor) -> torch.Tensor:
    return (J.transpose(0, 1) @ lam - b) / Q_diag


def kkt_sensitivity(
    Q_diag: torch.Tensor,
    J: torch.Tensor,
    sol: LCPSolution,
    db: torch.Tensor,
    *,
    eps: float,
    active_only: bool,
    active_tol: float,
) -> torch.Tensor:
    """Return ``d dq / d p`` given ``db = d b / d p`` (shape ``(n, p)``).

    ``active_only`` differentiates the equality-constrained KKT system of the
    constraints with ``lam > active_tol``; otherwise the full complementarity
    conditions ``lam_i w_i = 0`` are differentiated.
    """
    n = int(Q_diag.shape[0])
    Q = torch.diag(Q_diag)
    if J.shape[0] == 0:
        return -db / Q_diag.unsqueeze(-1)

    if active_only:
        idx = torch.nonzero(sol.lam > active_tol).reshape(-1)
        if idx.numel() == 0:
            return -db / Q_diag.unsqueeze(-1)
        J_a = J[idx]
        m = int(J_a.shape[0])
        kkt = torch.zeros((n + m, n + m), dtype=Q.dtype)
        kkt[:n, :n] = Q
        kkt[:n, n:] = -J_a.transpose(0, 1)
        kkt[n:, :n] = J_a
        kkt[n:, n:] = float(eps) * torch.eye(m, dtype=Q.dtype)
        rhs = torch.cat([-db, torch.zeros((m, db.shape[1]), dtype=db.dtype)], dim=0)
        return torch.linalg.solve(kkt, rhs)[:n]

    m = int(J.shape[0])
    lam = sol.lam
    w = sol.w
    kkt = torch.zeros((n + m, n + m), dtype=Q.dtype)
    kkt[:n, :n] = Q
    kkt[:n, n:] = -J.transpose(0, 1)
    kkt[n:, :n] = lam.unsqueeze(-1) * J
    kkt[n:, n:] = torch.diag(w + float(eps) * lam)
    rhs = torch.cat([-db, torch.zeros((m, db.shape[1]), dtype=db.dtype)], dim=0)
    # Degenerate constraints (lam = w = 0) leave zero rows.
    return torch.linalg.lstsq(kkt, rhs, driver="gelsd").solution[:n]
