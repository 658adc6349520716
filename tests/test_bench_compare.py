import json
import importlib.util
import subprocess
import sys
from pathlib import Path

import pytest
import yaml

REPO_ROOT = Path(__file__).resolve().parents[1]


def _load_compare_module():
    path = REPO_ROOT / "bench" / "compare.py"
    spec = importlib.util.spec_from_file_location("_bench_compare", path)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


_compare = _load_compare_module()
evaluate_run = _compare.evaluate_run


def _run(parity: dict[str, object], bundled_err: float) -> dict[str, object]:
    return {
        "config": "configs/planar_hand.yaml",
        "seed": 1,
        "summary": {
            "demo": "planar_hand",
            "parity": parity,
            "timing": {"parallel_s": 0.5, "serial_s": 1.5},
            "bundled": {"direct_batched_err_max": bundled_err},
        },
    }


def test_bench_compare_evaluate_run_thresholds() -> None:
    suite_thresholds = {
        "planar_hand": {
            "parity.is_valid_mismatch": 0,
            "parity.x_next_err_mean": 1e-6,
            "parity.B_err_max": 1e-6,
            "bundled.direct_batched_err_max": 1e-10,
        }
    }
    run = _run({"is_valid_mismatch": 0, "x_next_err_mean": 0.0, "B_err_max": 2e-12}, 0.0)

    results = evaluate_run(run=run, suite_thresholds=suite_thresholds)

    assert len(results) == 4
    assert all(r.ok for r in results)


def test_bench_compare_evaluate_run_flags_parity_mismatch() -> None:
    suite_thresholds = {"planar_hand": {"parity.is_valid_mismatch": 0, "parity.B_err_max": 1e-6}}
    run = _run({"is_valid_mismatch": 3, "B_err_max": 1e-3}, 0.0)

    results = evaluate_run(run=run, suite_thresholds=suite_thresholds)

    assert [r.ok for r in results] == [False, False]
    assert results[0].value == 3


def test_bench_compare_evaluate_run_fails_on_missing_key() -> None:
    suite_thresholds = {"planar_hand": {"bundled.direct_batched_err_max": 1e-10}}
    run = {"config": "configs/planar_hand.yaml", "summary": {"demo": "planar_hand"}}
    results = evaluate_run(run=run, suite_thresholds=suite_thresholds)
    assert len(results) == 1
    assert results[0].ok is False
    assert results[0].value is None


def test_bench_compare_cli_exit_code(tmp_path: Path) -> None:
    candidate = {
        "runs": [_run({"is_valid_mismatch": 0, "x_next_err_mean": 1e-9, "B_err_max": 1e-9, "B_rel_err_max": 1e-7}, 0.0)]
    }
    candidate_path = tmp_path / "candidate.json"
    suite_path = tmp_path / "suite.yaml"
    candidate_path.write_text(json.dumps(candidate), encoding="utf-8")

    def compare(suite: dict[str, object]) -> subprocess.CompletedProcess[str]:
        suite_path.write_text(yaml.safe_dump(suite), encoding="utf-8")
        return subprocess.run(
            [sys.executable, "bench/compare.py", "--candidate", str(candidate_path), "--suite", str(suite_path)],
            cwd=REPO_ROOT,
            check=False,
            capture_output=True,
            text=True,
        )

    ok = compare({"thresholds": {"planar_hand": {"parity.x_next_err_mean": 1e-6, "parity.is_valid_mismatch": 0}}})
    assert ok.returncode == 0, ok.stdout + ok.stderr
    assert "PASS configs/planar_hand.yaml" in ok.stdout

    bad = compare({"thresholds": {"planar_hand": {"parity.x_next_err_mean": 1e-12}}})
    assert bad.returncode != 0
    assert "FAIL configs/planar_hand.yaml" in bad.stdout


def test_default_suite_covers_parity_metrics() -> None:
    suite = yaml.safe_load((REPO_ROOT / "bench" / "suites" / "parity.yaml").read_text(encoding="utf-8"))
    keys = set(suite["thresholds"]["planar_hand"])
    assert {"parity.is_valid_mismatch", "parity.x_next_err_mean", "parity.B_err_max"} <= keys


def test_bench_compare_rejects_string_thresholds() -> None:
    # "1e-6" without a decimal point loads as a string under YAML 1.1.
    suite_thresholds = yaml.safe_load("planar_hand:\n  parity.x_next_err_mean: 1e-6\n")
    assert isinstance(suite_thresholds["planar_hand"]["parity.x_next_err_mean"], str)
    run = _run({"x_next_err_mean": 0.0}, 0.0)

    with pytest.raises(TypeError, match="1.0e-6"):
        evaluate_run(run=run, suite_thresholds=suite_thresholds)


def test_suite_written_with_safe_dump_round_trips_floats(tmp_path: Path) -> None:
    path = tmp_path / "suite.yaml"
    path.write_text(yaml.safe_dump({"thresholds": {"planar_hand": {"parity.B_err_max": 1e-6}}}), encoding="utf-8")
    assert _compare._read_suite(path) == {"planar_hand": {"parity.B_err_max": 1e-6}}
