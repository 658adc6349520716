from __future__ import annotations

import math
from dataclasses import dataclass
from enum import IntEnum

import torch

from qsim_batch.systems.planar_scene import PlanarScene

GROUND = -1


class ContactKind(IntEnum):
    FINGER_OBJECT = 0
    OBJECT_GROUND = 1
    OBJECT_OBJECT = 2


def contact_kind_name(kind: int) -> str:
    try:
        return ContactKind(int(kind)).name.lower()
    except ValueError:
        return "unknown"


@dataclass(frozen=True)
class Contact:
    """Contact between instance ``body_a`` and ``body_b`` (``-1`` is the ground).

    ``n`` points from ``b`` to ``a`` so that ``phi`` grows when ``a`` moves along
    it. ``J`` maps dq to the (normal, tangential) relative displacement of the
    contact point.
    """

    id: str
    body_a: int
    body_b: int
    phi: torch.Tensor
    n: torch.Tensor
    t: torch.Tensor
    J: torch.Tensor
    kind: int

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "body_a": int(self.body_a),
            "body_b": int(self.body_b),
            "phi": self.phi,
            "n": self.n,
            "kind": int(self.kind),
            "kind_name": contact_kind_name(int(self.kind)),
        }


def _perp2(v: torch.Tensor) -> torch.Tensor:
    return torch.stack([-v[1], v[0]])


def _cross2(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a[0] * b[1] - a[1] * b[0]


def _normal_between(p_a: torch.Tensor, p_b: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    delta = p_a - p_b
    dist = torch.linalg.vector_norm(delta)
    if bool((dist <= 1e-12).item()):
        return torch.tensor([0.0, 1.0], dtype=p_a.dtype), dist
    return delta / dist, dist


def _contact_jacobian(
    scene: PlanarScene,
    *,
    body_a: int,
    body_b: int,
    n: torch.Tensor,
    t: torch.Tensor,
    r_a: torch.Tensor | None,
    r_b: torch.Tensor | None,
    dtype: torch.dtype,
) -> torch.Tensor:
    J = torch.zeros((2, scene.num_positions), dtype=dtype)
    for body, r, sign in ((body_a, r_a, 1.0), (body_b, r_b, -1.0)):
        if body == GROUND:
            continue
        cols = scene.position_slice(body)
        J[0, cols.start : cols.start + 2] = sign * n
        J[1, cols.start : cols.start + 2] = sign * t
        # Disks rotate: the contact point moves by omega x r.
        if r is not None and cols.stop - cols.start == 3:
            J[0, cols.start + 2] = sign * _cross2(r, n)
            J[1, cols.start + 2] = sign * _cross2(r, t)
    return J


def detect_contacts(scene: PlanarScene, q: torch.Tensor, *, tolerance: float) -> list[Contact]:
    """Return every pair whose signed distance is within ``tolerance``."""
    dtype = q.dtype
    n_fingers = len(scene.fingers)
    contacts: list[Contact] = []

    def disk_center(disk_i: int) -> torch.Tensor:
        cols = scene.position_slice(n_fingers + disk_i)
        return q[cols.start : cols.start + 2]

    for disk_i, disk in enumerate(scene.disks):
        body_a = n_fingers + disk_i
        c_a = disk_center(disk_i)

        for finger_i, finger in enumerate(scene.fingers):
            cols = scene.position_slice(finger_i)
            n, dist = _normal_between(c_a, q[cols])
            phi = dist - (disk.radius + finger.radius)
            if not bool((phi <= tolerance).item()):
                continue
            t = _perp2(n)
            J = _contact_jacobian(
                scene, body_a=body_a, body_b=finger_i, n=n, t=t, r_a=-n * disk.radius, r_b=None, dtype=dtype
            )
            contacts.append(
                Contact(
                    id=f"{disk.name}-{finger.name}",
                    body_a=body_a,
                    body_b=finger_i,
                    phi=phi,
                    n=n,
                    t=t,
                    J=J,
                    kind=int(ContactKind.FINGER_OBJECT),
                )
            )

        if scene.ground_height is not None:
            phi = c_a[1] - (scene.ground_height + disk.radius)
            if bool((phi <= tolerance).item()):
                n = torch.tensor([0.0, 1.0], dtype=dtype)
                t = _perp2(n)
                r_a = torch.tensor([0.0, -disk.radius], dtype=dtype)
                J = _contact_jacobian(scene, body_a=body_a, body_b=GROUND, n=n, t=t, r_a=r_a, r_b=None, dtype=dtype)
                contacts.append(
                    Contact(
                        id=f"{disk.name}-ground",
                        body_a=body_a,
                        body_b=GROUND,
                        phi=phi,
                        n=n,
                        t=t,
                        J=J,
                        kind=int(ContactKind.OBJECT_GROUND),
                    )
                )

        for disk_j in range(disk_i + 1, len(scene.disks)):
            other = scene.disks[disk_j]
            n, dist = _normal_between(c_a, disk_center(disk_j))
            phi = dist - (disk.radius + other.radius)
            if not bool((phi <= tolerance).item()):
                continue
            t = _perp2(n)
            J = _contact_jacobian(
                scene,
                body_a=body_a,
                body_b=n_fingers + disk_j,
                n=n,
                t=t,
                r_a=-n * disk.radius,
                r_b=n * other.radius,
                dtype=dtype,
            )
            contacts.append(
                Contact(
                    id=f"{disk.name}-{other.name}",
                    body_a=body_a,
                    body_b=n_fingers + disk_j,
                    phi=phi,
                    n=n,
                    t=t,
                    J=J,
                    kind=int(ContactKind.OBJECT_OBJECT),
                )
            )

    return contacts


def friction_cone_constraints(
    contacts: list[Contact], *, friction_mu: float, nd_per_contact: int, n_q: int, dtype: torch.dtype = torch.float64
) -> tuple[torch.Tensor, torch.Tensor]:
    """Stack the pyramidal friction-cone rows ``phi + (J_n + mu d_k J_t) dq >= 0``.

    In the plane the tangent space is one-dimensional, so edge ``k`` of an
    ``nd``-sided pyramid projects onto ``cos(2 pi k / nd)`` times the tangent.
    """
    if not contacts:
        return torch.zeros((0, n_q), dtype=dtype), torch.zeros((0,), dtype=dtype)

    scales = torch.tensor(
        [math.cos(2.0 * math.pi * k / nd_per_contact) for k in range(nd_per_contact)],
        dtype=dtype,
    )
    rows: list[torch.Tensor] = []
    phis: list[torch.Tensor] = []
    for c in contacts:
        edges = c.J[0].unsqueeze(0) + friction_mu * scales.unsqueeze(-1) * c.J[1].unsqueeze(0)
        rows.append(edges)
        phis.append(c.phi.reshape(1).expand(nd_per_contact))
    return torch.cat(rows, dim=0), torch.cat(phis, dim=0)
