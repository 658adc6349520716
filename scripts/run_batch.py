from __future__ import annotations

import argparse
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any

import torch
import yaml

from qsim_batch.params import GradientMode
from qsim_batch.parity import compare_dynamics_batches, max_trajectory_error
from qsim_batch.simulator import BatchQuasistaticSimulator
from qsim_batch.utils.determinism import set_determinism
from qsim_batch.utils.logging import configure_logging


def _default_out_dir(config_path: Path, demo_name: str) -> Path:
    timestamp = time.strftime("%Y%m%d-%H%M%S")
    run_id = f"{timestamp}-{demo_name}-{config_path.stem}"
    return Path("outputs") / run_id


def _sample_u_batch(u0: torch.Tensor, *, n_tasks: int, interval: float, seed: int) -> torch.Tensor:
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    noise = 2.0 * torch.rand((n_tasks, int(u0.numel())), generator=generator, dtype=torch.float64) - 1.0
    return u0.unsqueeze(0) + interval * noise


def _timed(fn, *args, **kwargs) -> tuple[Any, float]:
    start = time.perf_counter()
    out = fn(*args, **kwargs)
    return out, time.perf_counter() - start


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", type=Path, required=True)
    parser.add_argument("--out-dir", type=Path, default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--deterministic", action="store_true", default=False)
    parser.add_argument("--verbose", action="store_true", default=False)
    args = parser.parse_args()

    logger = configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    config = yaml.safe_load(args.config.read_text(encoding="utf-8"))
    demo = str(config["demo"])
    seed = int(config.get("seed", 0))
    h = float(config.get("h", 0.1))
    n_tasks = int(config.get("n_tasks", 100))
    interval = float(config.get("u_interval", 0.1))
    set_determinism(seed=seed, deterministic=args.deterministic)

    if args.workers is not None:
        config["num_workers"] = args.workers
    q_sim_batch = BatchQuasistaticSimulator.from_config(config)
    q_sim = q_sim_batch.get_q_sim()

    name_to_idx = q_sim.get_model_instance_name_to_index_map()
    q0_dict = {name_to_idx[name]: value for name, value in config["q0"].items()}
    q0 = q_sim.get_q_vec_from_dict(q0_dict)
    u0 = q_sim.get_q_a_cmd_vec_from_dict(q0_dict)

    x_batch = q0.unsqueeze(0).repeat(n_tasks, 1)
    u_batch = _sample_u_batch(u0, n_tasks=n_tasks, interval=interval, seed=seed)

    parallel, t_parallel = _timed(q_sim_batch.calc_dynamics_parallel, x_batch, u_batch, h, GradientMode.B_ONLY)
    serial, t_serial = _timed(q_sim_batch.calc_dynamics_serial, x_batch, u_batch, h, GradientMode.B_ONLY)
    parity = compare_dynamics_batches(serial, parallel)
    parity["n_valid"] = sum(1 for flag in serial[2] if flag)
    logger.info(
        "parity: %d tasks, %d valid, x err %.3e, B err %.3e",
        parity["n_tasks"],
        parity["n_valid"],
        parity["x_next_err_mean"],
        parity["B_err_max"],
    )

    summary: dict[str, Any] = {
        "demo": demo,
        "parity": parity,
        "timing": {"parallel_s": t_parallel, "serial_s": t_serial},
    }

    bundled_cfg = config.get("bundled")
    if isinstance(bundled_cfg, dict):
        T = int(bundled_cfg.get("T", 10))
        n_samples = int(bundled_cfg.get("n_samples", 10))
        std_x = float(bundled_cfg.get("std_x", 0.0))
        std_u = float(bundled_cfg.get("std_u", 0.1))
        bundled_seed = int(bundled_cfg.get("seed", seed))
        x_trj = q0.unsqueeze(0).repeat(T + 1, 1)
        u_trj = u_batch[0].unsqueeze(0).repeat(T, 1)
        B_batched, t_batched = _timed(
            q_sim_batch.calc_bundled_b_trj, x_trj, u_trj, std_x, std_u, n_samples, bundled_seed, h=h
        )
        B_direct, t_direct = _timed(
            q_sim_batch.calc_bundled_b_trj_direct, x_trj, u_trj, std_x, std_u, n_samples, bundled_seed, h=h
        )
        err = max_trajectory_error(B_direct, B_batched)
        logger.info("bundled: T=%d K=%d direct/batched err %.3e", T, n_samples, err)
        summary["bundled"] = {"T": T, "n_samples": n_samples, "direct_batched_err_max": err}
        summary["timing"].update({"bundled_batched_s": t_batched, "bundled_direct_s": t_direct})

    out_dir = args.out_dir or _default_out_dir(args.config, demo)
    out_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(args.config, out_dir / "config.yaml")

    bench_summary = {"runs": [{"config": str(args.config), "seed": seed, "summary": summary}]}
    (out_dir / "summary.json").write_text(json.dumps(bench_summary, ensure_ascii=False, indent=2), encoding="utf-8")

    meta = {
        "demo": demo,
        "torch": torch.__version__,
        "seed": seed,
        "h": h,
        "n_tasks": n_tasks,
        "num_workers": q_sim_batch.get_num_max_parallel_executions(),
        "sim_params": q_sim.sim_params.as_dict(),
    }
    (out_dir / "meta.json").write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("wrote outputs to %s", out_dir)


if __name__ == "__main__":
    main()
