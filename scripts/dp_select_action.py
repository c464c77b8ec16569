"""Recommend the next action for a feature vector from a solved DP run."""

from __future__ import annotations

import argparse
from dataclasses import asdict, replace
import json
import logging
from pathlib import Path
from typing import Any

from decision_engine.core.errors import DecisionEngineError
from decision_engine.dp.artifacts import load_run_artifacts
from decision_engine.dp.engine import DecisionEngine
from decision_engine.dp.mdp import build_decision_process


def main() -> int:
    parser = argparse.ArgumentParser(description="Select an action from a solved policy.")
    parser.add_argument(
        "--run-dir",
        type=Path,
        default=None,
        help="Run directory. If omitted, the latest runs/dp/* directory is used.",
    )
    parser.add_argument(
        "--feature",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Observed feature value; repeat for every configured feature.",
    )
    parser.add_argument(
        "--features-json",
        default=None,
        help="Observed features as a JSON object (merged under --feature values).",
    )
    parser.add_argument(
        "--episode",
        action="store_true",
        help="Also simulate one deterministic episode from the observation.",
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    features = _parse_features(args.features_json, args.feature)
    run_dir = args.run_dir or _latest_run_dir(root=Path("runs") / "dp")
    loaded = load_run_artifacts(run_dir)
    gamma = float(loaded.config_resolved.get("solver", {}).get("gamma", loaded.config.gamma))
    engine = DecisionEngine(process=build_decision_process(replace(loaded.config, gamma=gamma)))

    try:
        engine.load_policy(loaded.snapshot)
        decision = engine.select_action(features)
    except DecisionEngineError as exc:
        print(f"Error: {exc}")
        return 1

    payload: dict[str, Any] = {"decision": asdict(decision)}
    if args.episode:
        episode = engine.run_episode(features, deterministic=True)
        payload["episode"] = {
            "actions": [step.action_name for step in episode.trajectory],
            "total_reward": episode.total_reward,
            "terminated": episode.terminated,
            "success": episode.success,
        }
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _parse_features(raw_json: str | None, pairs: list[str]) -> dict[str, float]:
    features: dict[str, float] = {}
    if raw_json is not None:
        parsed = json.loads(raw_json)
        if not isinstance(parsed, dict):
            raise ValueError("--features-json must be a JSON object.")
        features.update({str(name): float(value) for name, value in parsed.items()})
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected NAME=VALUE, got {pair!r}.")
        try:
            features[name.strip()] = float(value)
        except ValueError as exc:
            raise ValueError(f"Feature {name!r} must be numeric, got {value!r}.") from exc
    return features


def _latest_run_dir(root: Path) -> Path:
    if not root.exists():
        raise FileNotFoundError(f"Run root does not exist: {root}")
    candidates = sorted([path for path in root.iterdir() if path.is_dir()])
    if not candidates:
        raise FileNotFoundError(f"No run directories found in {root}")
    return candidates[-1]


if __name__ == "__main__":
    raise SystemExit(main())
