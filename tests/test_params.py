from pathlib import Path

import pytest

from qsim_batch.params import (
    GradientMode,
    QuasistaticSimParameters,
    gradient_mode_name,
    load_sim_parameters,
    sim_parameters_from_dict,
)


def test_defaults_are_valid() -> None:
    params = QuasistaticSimParameters()
    assert params.gravity == (0.0, 0.0, 0.0)
    assert params.nd_per_contact == 2
    assert params.is_quasi_dynamic
    assert params.as_dict()["h"] == 0.1


@pytest.mark.parametrize(
    "overrides",
    [
        {"gravity": (0.0, -9.81)},
        {"contact_detection_tolerance": -1.0},
        {"nd_per_contact": 3},
        {"nd_per_contact": 0},
        {"h": 0.0},
        {"unactuated_mass_scale": 0.0},
        {"regularization": -1e-9},
        {"lcp_max_iters": 0},
        {"residual_tol": 0.0},
    ],
)
def test_invalid_values_raise(overrides: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        QuasistaticSimParameters(**overrides)  # type: ignore[arg-type]


def test_updated_returns_new_instance() -> None:
    base = QuasistaticSimParameters()
    changed = base.updated({"gravity": [0, 0, -10], "nd_per_contact": 4})

    assert changed.gravity == (0.0, 0.0, -10.0)
    assert changed.nd_per_contact == 4
    assert base.gravity == (0.0, 0.0, 0.0)
    assert base.updated(None) is base
    assert base.updated({}) is base


def test_updated_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError, match="log_barrier_weight"):
        QuasistaticSimParameters().updated({"log_barrier_weight": 1.0})


def test_load_sim_parameters_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "sim.yaml"
    path.write_text(
        "gravity: [0.0, 0.0, -10.0]\ncontact_detection_tolerance: 1.0\ngradient_from_active_constraints: false\n",
        encoding="utf-8",
    )

    params = load_sim_parameters(path)

    assert params.gravity == (0.0, 0.0, -10.0)
    assert params.contact_detection_tolerance == 1.0
    assert params.gradient_from_active_constraints is False


def test_empty_yaml_gives_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_sim_parameters(path) == QuasistaticSimParameters()


def test_non_mapping_yaml_raises(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(TypeError):
        load_sim_parameters(path)


def test_sim_parameters_from_dict() -> None:
    assert sim_parameters_from_dict({"h": 0.05}).h == 0.05


def test_gradient_mode_names() -> None:
    assert gradient_mode_name(GradientMode.NONE) == "none"
    assert gradient_mode_name(1) == "b_only"
    assert gradient_mode_name(7) == "unknown"
