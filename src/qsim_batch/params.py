from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Mapping

import yaml


class GradientMode(IntEnum):
    NONE = 0
    B_ONLY = 1


def gradient_mode_name(mode: int) -> str:
    try:
        return GradientMode(int(mode)).name.lower()
    except ValueError:
        return "unknown"


@dataclass(frozen=True)
class QuasistaticSimParameters:
    """Immutable bundle of options consumed by the step solver.

    ``gravity`` is a 3-vector; planar scenes live in the y-z plane and use its
    last two components. ``nd_per_contact`` is the number of polyhedral
    friction-cone edges per contact. With ``is_quasi_dynamic`` the object
    inertia ``M_u / h`` is kept in the step cost, otherwise it is scaled down by
    ``unactuated_mass_scale``. ``gradient_from_active_constraints`` selects
    whether ``B`` is obtained from the active-set KKT system or from the full
    complementarity system.
    """

    gravity: tuple[float, float, float] = (0.0, 0.0, 0.0)
    contact_detection_tolerance: float = 0.01
    nd_per_contact: int = 2
    is_quasi_dynamic: bool = True
    gradient_from_active_constraints: bool = True
    h: float = 0.1
    unactuated_mass_scale: float = 1e-3
    regularization: float = 1e-9
    lcp_max_iters: int = 50
    pgs_iters: int = 2000
    residual_tol: float = 1e-8

    def __post_init__(self) -> None:
        gravity = tuple(float(g) for g in self.gravity)
        if len(gravity) != 3:
            raise ValueError(f"gravity must have 3 components, got {len(gravity)}")
        object.__setattr__(self, "gravity", gravity)

        if self.contact_detection_tolerance < 0.0:
            raise ValueError("contact_detection_tolerance must be non-negative")
        if self.nd_per_contact < 2 or self.nd_per_contact % 2 != 0:
            raise ValueError(f"nd_per_contact must be an even number >= 2, got {self.nd_per_contact}")
        if self.h <= 0.0:
            raise ValueError(f"h must be positive, got {self.h}")
        if self.unactuated_mass_scale <= 0.0:
            raise ValueError("unactuated_mass_scale must be positive")
        if self.regularization < 0.0:
            raise ValueError("regularization must be non-negative")
        if self.lcp_max_iters < 1 or self.pgs_iters < 1:
            raise ValueError("solver iteration limits must be positive")
        if self.residual_tol <= 0.0:
            raise ValueError("residual_tol must be positive")

    def updated(self, overrides: Mapping[str, Any] | None) -> QuasistaticSimParameters:
        if not overrides:
            return self
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown simulation parameters: {unknown}")
        return dataclasses.replace(self, **dict(overrides))

    def as_dict(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}


def sim_parameters_from_dict(cfg: Mapping[str, Any]) -> QuasistaticSimParameters:
    return QuasistaticSimParameters().updated(dict(cfg))


def load_sim_parameters(path: Path) -> QuasistaticSimParameters:
    cfg = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(cfg, dict):
        raise TypeError(f"Simulation parameters must be a mapping, got {type(cfg)}")
    return sim_parameters_from_dict(cfg)
