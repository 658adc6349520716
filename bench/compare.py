from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

TIMING_KEYS = (
    "timing.parallel_s",
    "timing.serial_s",
    "timing.bundled_batched_s",
    "timing.bundled_direct_s",
)


@dataclass(frozen=True)
class CheckResult:
    ok: bool
    key: str
    threshold: Any
    value: Any


def _lookup(summary: dict[str, Any], dotted: str) -> Any:
    node: Any = summary
    for part in dotted.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _passes(value: Any, threshold: Any, key: str) -> bool:
    if isinstance(threshold, str):
        # YAML 1.1 reads "1e-6" as a string; floats need a decimal point.
        raise TypeError(f"Threshold for {key} is the string {threshold!r}; write numbers like 1.0e-6")
    if isinstance(threshold, bool):
        return bool(value) is threshold
    if not _is_number(threshold):
        raise TypeError(f"Unsupported threshold type for {key}: {type(threshold)}")
    return _is_number(value) and float(value) <= float(threshold)


def evaluate_run(*, run: dict[str, Any], suite_thresholds: dict[str, Any]) -> list[CheckResult]:
    """Check ``run.summary`` values against the thresholds of its demo."""
    summary = run.get("summary")
    if not isinstance(summary, dict) or not isinstance(summary.get("demo"), str):
        raise TypeError("run.summary.demo missing or invalid")

    thresholds = suite_thresholds.get(summary["demo"])
    if not isinstance(thresholds, dict):
        return []

    results: list[CheckResult] = []
    for key, threshold in thresholds.items():
        value = _lookup(summary, str(key))
        ok = value is not None and _passes(value, threshold, str(key))
        results.append(CheckResult(ok=ok, key=str(key), threshold=threshold, value=value))
    return results


def _read_json_object(path: Path, label: str) -> dict[str, Any]:
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise TypeError(f"{label} summary {path} is not a JSON object")
    return doc


def _read_suite(path: Path) -> dict[str, Any]:
    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    thresholds = doc.get("thresholds") if isinstance(doc, dict) else None
    if not isinstance(thresholds, dict):
        raise TypeError(f"Suite {path} needs a 'thresholds' mapping")
    return thresholds


def _runs_by_config(doc: dict[str, Any]) -> dict[str, dict[str, Any]]:
    runs = doc.get("runs")
    if not isinstance(runs, list):
        raise TypeError("summary.json has no 'runs' list")
    return {run["config"]: run for run in runs if isinstance(run, dict) and isinstance(run.get("config"), str)}


def _print_timing_deltas(candidate: dict[str, Any], baseline: dict[str, Any]) -> None:
    for key in TIMING_KEYS:
        new = _lookup(candidate.get("summary", {}), key)
        old = _lookup(baseline.get("summary", {}), key)
        if _is_number(new) and _is_number(old):
            print(f"    delta {key} = {float(new) - float(old):+.3e} (cand={new}, base={old})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Check run_batch.py summaries against parity thresholds.")
    parser.add_argument("--candidate", type=Path, required=True, help="summary.json written by run_batch.py")
    parser.add_argument("--baseline", type=Path, default=None, help="Earlier summary.json for timing deltas")
    parser.add_argument("--suite", type=Path, default=Path("bench/suites/parity.yaml"))
    parser.add_argument("--strict", action="store_true", default=False, help="Fail when a baseline config has no candidate run")
    args = parser.parse_args()

    candidate_runs = _runs_by_config(_read_json_object(args.candidate, "Candidate"))
    baseline_runs = {}
    if args.baseline is not None:
        baseline_runs = _runs_by_config(_read_json_object(args.baseline, "Baseline"))
    thresholds = _read_suite(args.suite)

    failed = False
    for config in sorted(candidate_runs.keys() | baseline_runs.keys()):
        run = candidate_runs.get(config)
        if run is None:
            print(f"MISSING candidate: {config}")
            failed = failed or args.strict
            continue

        checks = evaluate_run(run=run, suite_thresholds=thresholds)
        ok = all(c.ok for c in checks)
        failed = failed or not ok
        print(f"{'PASS' if ok else 'FAIL'} {config} demo={run['summary']['demo']}")
        for c in checks:
            print(f"  - {'ok' if c.ok else 'bad'} {c.key} value={c.value} thr={c.threshold}")
        if config in baseline_runs:
            _print_timing_deltas(run, baseline_runs[config])

    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
