from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import torch
import yaml

ModelSource = str | Path | Mapping[str, Any]

FINGER_DOFS = 2
DISK_DOFS = 3


def _load_mapping(source: ModelSource) -> dict[str, Any]:
    if isinstance(source, Mapping):
        return dict(source)
    data = yaml.safe_load(Path(source).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise TypeError(f"{source} must contain a mapping, got {type(data)}")
    return data


@dataclass(frozen=True)
class Finger:
    """Position-controlled spherical fingertip moving in the y-z plane."""

    name: str
    radius: float
    stiffness: tuple[float, ...]


@dataclass(frozen=True)
class Disk:
    """Unactuated disk with configuration (y, z, theta)."""

    name: str
    radius: float
    mass: float
    inertia: float


@dataclass(frozen=True)
class PlanarScene:
    fingers: tuple[Finger, ...]
    disks: tuple[Disk, ...]
    friction_mu: float
    ground_height: float | None

    # Model instances are numbered fingers first, then disks. q is laid out in
    # the same order, so q = [q_a; q_u].

    @property
    def num_actuated_dofs(self) -> int:
        return FINGER_DOFS * len(self.fingers)

    @property
    def num_unactuated_dofs(self) -> int:
        return DISK_DOFS * len(self.disks)

    @property
    def num_positions(self) -> int:
        return self.num_actuated_dofs + self.num_unactuated_dofs

    def instance_names(self) -> list[str]:
        return [f.name for f in self.fingers] + [d.name for d in self.disks]

    def name_to_index_map(self) -> dict[str, int]:
        return {name: idx for idx, name in enumerate(self.instance_names())}

    def position_slice(self, instance: int) -> slice:
        n_fingers = len(self.fingers)
        if 0 <= instance < n_fingers:
            start = FINGER_DOFS * instance
            return slice(start, start + FINGER_DOFS)
        disk_i = instance - n_fingers
        if 0 <= disk_i < len(self.disks):
            start = self.num_actuated_dofs + DISK_DOFS * disk_i
            return slice(start, start + DISK_DOFS)
        raise KeyError(f"Unknown model instance {instance}")

    def stiffness_vector(self, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
        values = [k for f in self.fingers for k in f.stiffness]
        return torch.tensor(values, dtype=dtype)

    def unactuated_mass_vector(self, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
        values = [v for d in self.disks for v in (d.mass, d.mass, d.inertia)]
        return torch.tensor(values, dtype=dtype)

    def gravity_force(self, gravity: tuple[float, float, float], *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
        # Planar scenes use the y and z components; no torque from gravity.
        g_y, g_z = float(gravity[1]), float(gravity[2])
        values = [v for d in self.disks for v in (d.mass * g_y, d.mass * g_z, 0.0)]
        return torch.tensor(values, dtype=dtype)


def load_planar_scene(
    model_directive: ModelSource,
    robot_stiffness_dict: Mapping[str, Any],
    object_geometry_dict: Mapping[str, ModelSource],
) -> PlanarScene:
    """Build a scene from a directive plus per-instance stiffness and geometry.

    The directive lists robots (``name``, ``radius``) and optional ``ground``
    and ``friction_mu`` entries. Each object geometry source holds ``radius``,
    ``mass`` and optionally ``inertia`` (defaults to a solid disk).
    """
    directive = _load_mapping(model_directive)

    fingers: list[Finger] = []
    for robot in directive.get("robots", []):
        name = str(robot["name"])
        if name not in robot_stiffness_dict:
            raise KeyError(f"No stiffness given for robot {name!r}")
        stiffness = tuple(float(k) for k in torch.as_tensor(robot_stiffness_dict[name]).reshape(-1).tolist())
        if len(stiffness) != FINGER_DOFS:
            raise ValueError(f"Robot {name!r} expects {FINGER_DOFS} stiffness values, got {len(stiffness)}")
        if any(k <= 0.0 for k in stiffness):
            raise ValueError(f"Robot {name!r} stiffness must be positive")
        fingers.append(Finger(name=name, radius=float(robot.get("radius", 0.05)), stiffness=stiffness))

    extra = sorted(set(robot_stiffness_dict) - {f.name for f in fingers})
    if extra:
        raise KeyError(f"Stiffness given for robots missing from the directive: {extra}")

    disks: list[Disk] = []
    for name, source in object_geometry_dict.items():
        geometry = _load_mapping(source)
        radius = float(geometry["radius"])
        mass = float(geometry.get("mass", 1.0))
        if radius <= 0.0 or mass <= 0.0:
            raise ValueError(f"Object {name!r} must have positive radius and mass")
        inertia = float(geometry.get("inertia", 0.5 * mass * radius * radius))
        disks.append(Disk(name=str(name), radius=radius, mass=mass, inertia=inertia))

    names = [f.name for f in fingers] + [d.name for d in disks]
    if len(set(names)) != len(names):
        raise ValueError(f"Model instance names must be unique, got {names}")

    ground_cfg = directive.get("ground")
    ground_height = None
    if isinstance(ground_cfg, dict) and bool(ground_cfg.get("enabled", True)):
        ground_height = float(ground_cfg.get("height", 0.0))

    friction_mu = float(directive.get("friction_mu", 0.5))
    if friction_mu < 0.0:
        raise ValueError("friction_mu must be non-negative")

    return PlanarScene(
        fingers=tuple(fingers),
        disks=tuple(disks),
        friction_mu=friction_mu,
        ground_height=ground_height,
    )
