"""Run a tabular DP solve for an engine config and persist run artifacts."""

from __future__ import annotations

import argparse
import csv
from dataclasses import replace
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any

import yaml

from decision_engine.core.params import load_engine_config
from decision_engine.dp.artifacts import (
    SNAPSHOT_FILE,
    ensure_run_dir,
    write_json,
    write_snapshot,
    write_yaml,
)
from decision_engine.dp.engine import SOLVER_METHODS, DecisionEngine
from decision_engine.dp.policy import build_evaluation_summary, policy_rows
from decision_engine.dp.quality_checks import run_quality_checks
from decision_engine.dp.value_iteration import ValueIterationConfig


def main() -> int:
    parser = argparse.ArgumentParser(description="Solve an engine config via DP.")
    parser.add_argument(
        "--engine-config",
        type=Path,
        default=Path("configs/engine/analysis_workflow.yaml"),
        help="Path to engine config YAML.",
    )
    parser.add_argument(
        "--solver-config",
        type=Path,
        default=Path("configs/dp/solver.yaml"),
        help="Path to DP solver config YAML.",
    )
    parser.add_argument(
        "--method",
        choices=SOLVER_METHODS,
        default=None,
        help="Solver algorithm (default from solver config, else value_iteration).",
    )
    parser.add_argument(
        "--run-dir",
        type=Path,
        default=None,
        help="Optional explicit output run directory.",
    )
    parser.add_argument("--tag", default="manual", help="Tag used in default run directory.")
    parser.add_argument("--gamma", type=float, default=None)
    parser.add_argument("--epsilon", type=float, default=None)
    parser.add_argument("--max-iters", type=int, default=None)
    parser.add_argument("--eval-max-iters", type=int, default=None)
    parser.add_argument("--bellman-atol", type=float, default=None)
    parser.add_argument("--n-workers", type=int, default=None)
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable tqdm progress bar with current Bellman delta.",
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    engine_config = load_engine_config(args.engine_config)
    solver_cfg = _load_solver_config(args.solver_config)
    method = str(args.method or solver_cfg.get("method", "value_iteration"))
    if method not in SOLVER_METHODS:
        raise ValueError(f"Unknown solver method {method!r}; expected one of {SOLVER_METHODS}.")
    gamma = float(
        args.gamma if args.gamma is not None else solver_cfg.get("gamma", engine_config.gamma)
    )
    epsilon = float(
        args.epsilon if args.epsilon is not None else solver_cfg.get("epsilon", 1.0e-8)
    )
    max_iters = int(
        args.max_iters if args.max_iters is not None else solver_cfg.get("max_iters", 1000)
    )
    eval_max_iters = int(
        args.eval_max_iters
        if args.eval_max_iters is not None
        else solver_cfg.get("eval_max_iters", 1000)
    )
    bellman_atol = float(
        args.bellman_atol
        if args.bellman_atol is not None
        else solver_cfg.get("bellman_atol", 1.0e-6)
    )
    n_workers = int(
        args.n_workers if args.n_workers is not None else solver_cfg.get("n_workers", 1)
    )

    engine_config = replace(engine_config, gamma=gamma)
    engine = DecisionEngine(engine_config)
    process = engine.process
    config = ValueIterationConfig(
        gamma=gamma,
        epsilon=epsilon,
        max_iters=max_iters,
        eval_max_iters=eval_max_iters,
        n_workers=n_workers,
        show_progress=not args.no_progress and method == "value_iteration",
        progress_desc=f"Value Iteration (S={process.n_states})",
    )
    result = engine.solve(method, config)
    rows = policy_rows(process, result.policy, result.values)
    evaluation_summary = build_evaluation_summary(rows)
    quality = run_quality_checks(
        process=process,
        values=result.values,
        policy=result.policy,
        q_values=result.q_values,
        gamma=config.gamma,
        bellman_atol=bellman_atol,
        converged=result.converged,
        value_history=result.value_history,
        strict_conceptual=False,
    )

    run_dir = args.run_dir or _default_run_dir(tag=args.tag)
    ensure_run_dir(run_dir)
    _write_policy_table(run_dir=run_dir, rows=rows)

    config_payload = {
        "created_at_utc": datetime.now(timezone.utc).isoformat(),
        "engine_config_path": str(args.engine_config),
        "solver_config_path": str(args.solver_config),
        "engine": engine_config.to_dict(),
        "solver": {
            "method": method,
            "gamma": config.gamma,
            "epsilon": config.epsilon,
            "max_iters": config.max_iters,
            "eval_max_iters": config.eval_max_iters,
            "bellman_atol": bellman_atol,
            "n_workers": config.n_workers,
        },
        "config_hash": process.config_hash,
    }

    solver_metrics = {
        "method": result.method,
        "status": result.status.value,
        "iterations": result.iterations,
        "converged": result.converged,
        "max_delta_history": list(result.max_delta_history),
        "value_history": list(result.value_history),
        "eval_iterations": list(result.eval_iterations),
        "final_bellman_residual": result.final_bellman_residual,
        "n_states": process.n_states,
        "n_actions": process.n_actions,
        "n_terminal_states": int(process.terminal_mask.sum()),
    }

    write_yaml(run_dir / "config_resolved.yaml", config_payload)
    write_snapshot(run_dir / SNAPSHOT_FILE, engine.save_policy())
    write_json(run_dir / "solver_metrics.json", solver_metrics)
    write_json(run_dir / "quality_report.json", quality.to_dict())
    write_json(
        run_dir / "quality_warnings.json",
        [warning.to_dict() for warning in quality.conceptual_warnings],
    )
    write_json(run_dir / "evaluation_summary.json", evaluation_summary)

    label = "Policy Iteration" if method == "policy_iteration" else "Value Iteration"
    print(f"Run directory: {run_dir}")
    print(
        f"{label}: status={result.status.value}, converged={result.converged}, "
        f"iterations={result.iterations}, residual={result.final_bellman_residual:.3e}"
    )
    if quality.conceptual_warnings:
        print(
            "Conceptual warnings: "
            + ", ".join(warning.name for warning in quality.conceptual_warnings)
        )

    if quality.hard_failures:
        print("Hard quality checks failed; see quality_report.json.")
        return 1
    return 0


def _load_solver_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    raw = yaml.safe_load(path.read_text())
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Expected mapping in solver config: {path}")
    return raw


def _default_run_dir(tag: str) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    safe_tag = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in tag)
    return Path("runs") / "dp" / f"{timestamp}_{safe_tag}"


def _write_policy_table(run_dir: Path, rows: list[dict[str, object]]) -> None:
    output_path = run_dir / "policy_table.csv"
    if not rows:
        output_path.write_text("", encoding="utf-8")
        return
    fieldnames = list(rows[0].keys())
    with output_path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


if __name__ == "__main__":
    raise SystemExit(main())
