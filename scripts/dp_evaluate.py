"""Evaluate DP run artifacts: policy summaries and simulated episodes."""

from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
from typing import Any

import pandas as pd

from decision_engine.dp.artifacts import PolicyStore, load_run_artifacts, write_json
from decision_engine.dp.mdp import build_decision_process
from decision_engine.dp.policy import build_evaluation_summary, policy_rows
from decision_engine.rl.rollout import (
    DEFAULT_MAX_STEPS,
    run_batch,
    summarize_episodes,
    trajectory_frame,
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Evaluate DP run artifacts.")
    parser.add_argument(
        "--run-dir",
        type=Path,
        default=None,
        help="Run directory. If omitted, the latest runs/dp/* directory is used.",
    )
    parser.add_argument(
        "--episodes",
        type=int,
        default=20,
        help="Episodes simulated per configured initial state.",
    )
    parser.add_argument("--max-steps", type=int, default=DEFAULT_MAX_STEPS)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--n-workers", type=int, default=4)
    parser.add_argument(
        "--deterministic",
        action="store_true",
        help="Follow the most probable branch instead of sampling.",
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if args.episodes < 0:
        raise ValueError("--episodes must be non-negative.")

    run_dir = args.run_dir or _latest_run_dir(root=Path("runs") / "dp")
    loaded = load_run_artifacts(run_dir)
    solver_cfg = _solver_config(loaded.config_resolved)
    gamma = float(solver_cfg["gamma"])
    process = build_decision_process(replace(loaded.config, gamma=gamma))
    restored = PolicyStore(process).load(loaded.snapshot)

    rows = policy_rows(process, restored.policy, restored.values)
    summary = build_evaluation_summary(rows)
    summary["solver_config"] = {
        "method": str(solver_cfg.get("method", "value_iteration")),
        "gamma": gamma,
        "bellman_atol": float(solver_cfg.get("bellman_atol", 1e-6)),
    }

    initial_states = list(loaded.config.initial_states) or [
        {name: 0.0 for name in process.space.features}
    ]
    starts = [state for state in initial_states for _ in range(args.episodes)]
    episodes = run_batch(
        process,
        restored.policy,
        starts,
        max_steps=args.max_steps,
        seed=args.seed,
        deterministic=args.deterministic,
        max_workers=args.n_workers,
    )
    summary["episodes"] = {
        **summarize_episodes(episodes),
        "seed": args.seed,
        "max_steps": args.max_steps,
        "deterministic": args.deterministic,
    }
    _write_episodes_table(run_dir=run_dir, episodes=episodes)
    write_json(run_dir / "evaluation_summary.json", summary)

    policy_summary = summary["policy_summary"]
    episode_summary = summary["episodes"]
    print(f"Run directory: {run_dir}")
    print(f"Live states: {policy_summary['n_live_states']}")
    print(f"Policy entropy (bits): {policy_summary['policy_entropy_bits']:.3f}")
    print(f"Episodes: {episode_summary['n_episodes']}")
    print(f"Mean discounted reward: {episode_summary['mean_total_reward']:.4f}")
    print(f"Termination rate: {episode_summary['termination_rate']:.3f}")
    print(f"Success rate: {episode_summary['success_rate']:.3f}")
    return 0


def _write_episodes_table(run_dir: Path, episodes: list) -> None:
    frames = []
    for index, episode in enumerate(episodes):
        frame = trajectory_frame(episode)
        frame.insert(0, "episode", index)
        frames.append(frame)
    output_path = run_dir / "episodes.csv"
    if not frames:
        output_path.write_text("", encoding="utf-8")
        return
    pd.concat(frames, ignore_index=True).to_csv(output_path, index=False)


def _solver_config(config_resolved: dict[str, Any]) -> dict[str, Any]:
    solver_cfg = config_resolved.get("solver")
    if not isinstance(solver_cfg, dict):
        raise ValueError("config_resolved.yaml missing 'solver' mapping.")
    if "gamma" not in solver_cfg:
        raise ValueError("config_resolved.yaml missing solver.gamma.")
    return solver_cfg


def _latest_run_dir(root: Path) -> Path:
    if not root.exists():
        raise FileNotFoundError(f"Run root does not exist: {root}")
    candidates = sorted([path for path in root.iterdir() if path.is_dir()])
    if not candidates:
        raise FileNotFoundError(f"No run directories found in {root}")
    return candidates[-1]


if __name__ == "__main__":
    raise SystemExit(main())
