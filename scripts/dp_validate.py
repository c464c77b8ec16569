"""Validate DP run artifacts and quality checks."""

from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
from typing import Any

from decision_engine.core.errors import IncompatiblePolicy
from decision_engine.dp.artifacts import (
    REQUIRED_RUN_FILES,
    PolicyStore,
    load_run_artifacts,
    write_json,
)
from decision_engine.dp.mdp import build_decision_process
from decision_engine.dp.quality_checks import CheckResult, run_quality_checks


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate DP run artifacts.")
    parser.add_argument(
        "--run-dir",
        type=Path,
        default=None,
        help="Run directory. If omitted, latest runs/dp/* is used.",
    )
    parser.add_argument(
        "--strict-conceptual",
        action="store_true",
        help="Fail on conceptual warnings in addition to hard checks.",
    )
    parser.add_argument(
        "--bellman-atol",
        type=float,
        default=None,
        help=(
            "Tolerance for Bellman residual hard check. "
            "Defaults to run config value when available."
        ),
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    run_dir = args.run_dir or _latest_run_dir(root=Path("runs") / "dp")
    loaded = load_run_artifacts(run_dir)
    solver_cfg = _solver_config(loaded.config_resolved)
    gamma = float(solver_cfg["gamma"])
    bellman_atol = float(
        args.bellman_atol
        if args.bellman_atol is not None
        else solver_cfg.get("bellman_atol", 1e-6)
    )

    artifact_check = _check_artifact_completeness(run_dir)
    process = build_decision_process(replace(loaded.config, gamma=gamma))
    try:
        restored = PolicyStore(process).load(loaded.snapshot)
    except IncompatiblePolicy as exc:
        print(f"Run directory: {run_dir}")
        print(f"Policy snapshot rejected: {exc}")
        return 1

    quality = run_quality_checks(
        process=process,
        values=restored.values,
        policy=restored.policy,
        q_values=restored.q_values,
        gamma=gamma,
        bellman_atol=bellman_atol,
        converged=bool(loaded.solver_metrics.get("converged", restored.converged)),
        value_history=[float(v) for v in loaded.solver_metrics.get("value_history", [])],
        strict_conceptual=args.strict_conceptual,
    )
    report_payload = quality.to_dict()
    report_payload["artifact_completeness"] = artifact_check.to_dict()

    warnings_payload = [warning.to_dict() for warning in quality.conceptual_warnings]
    write_json(run_dir / "quality_report.json", report_payload)
    write_json(run_dir / "quality_warnings.json", warnings_payload)

    print(f"Run directory: {run_dir}")
    print(f"Hard failures: {len(quality.hard_failures)}")
    print(f"Conceptual warnings: {len(quality.conceptual_warnings)}")

    if not artifact_check.passed:
        print(artifact_check.details)
        return 1
    if not quality.passed:
        print("Validation failed; see quality_report.json.")
        return 1
    return 0


def _solver_config(config_resolved: dict[str, Any]) -> dict[str, Any]:
    solver_cfg = config_resolved.get("solver")
    if not isinstance(solver_cfg, dict):
        raise ValueError("config_resolved.yaml missing 'solver' mapping.")
    if "gamma" not in solver_cfg:
        raise ValueError("config_resolved.yaml missing solver.gamma.")
    return solver_cfg


def _check_artifact_completeness(run_dir: Path) -> CheckResult:
    missing = [name for name in REQUIRED_RUN_FILES if not (run_dir / name).exists()]
    if missing:
        return CheckResult(
            name="artifact_completeness",
            passed=False,
            details=f"missing artifact files: {', '.join(missing)}",
        )

    empty = [name for name in REQUIRED_RUN_FILES if (run_dir / name).stat().st_size == 0]
    if empty:
        return CheckResult(
            name="artifact_completeness",
            passed=False,
            details=f"empty artifact files: {', '.join(empty)}",
        )

    return CheckResult(
        name="artifact_completeness",
        passed=True,
        details="all required artifacts present and non-empty",
    )


def _latest_run_dir(root: Path) -> Path:
    if not root.exists():
        raise FileNotFoundError(f"Run root does not exist: {root}")
    candidates = sorted([path for path in root.iterdir() if path.is_dir()])
    if not candidates:
        raise FileNotFoundError(f"No run directories found in {root}")
    return candidates[-1]


if __name__ == "__main__":
    raise SystemExit(main())
