"""DP script end-to-end tests."""

from __future__ import annotations

import json
import os
from pathlib import Path
import subprocess
import sys

import yaml

from decision_engine.dp.artifacts import REQUIRED_RUN_FILES


def _run_script(
    *,
    project_root: Path,
    env: dict[str, str],
    script_name: str,
    args: list[str],
) -> subprocess.CompletedProcess[str]:
    cmd = [sys.executable, str(project_root / "scripts" / script_name), *args]
    return subprocess.run(cmd, check=False, env=env, capture_output=True, text=True)


def _env(project_root: Path) -> dict[str, str]:
    env = dict(os.environ)
    env["PYTHONPATH"] = str(project_root / "src")
    return env


def _solve(project_root: Path, run_dir: Path, *extra: str) -> subprocess.CompletedProcess[str]:
    return _run_script(
        project_root=project_root,
        env=_env(project_root),
        script_name="dp_solve.py",
        args=[
            "--engine-config",
            str(project_root / "tests" / "fixtures" / "engine_small.yaml"),
            "--solver-config",
            str(project_root / "configs" / "dp" / "solver.yaml"),
            "--run-dir",
            str(run_dir),
            "--tag",
            "pytest",
            "--no-progress",
            *extra,
        ],
    )


def test_dp_solve_script_writes_expected_run_artifacts(tmp_path: Path) -> None:
    project_root = Path(__file__).resolve().parents[2]
    run_dir = tmp_path / "dp_run"
    env = _env(project_root)

    result = _solve(project_root, run_dir, "--gamma", "0.9")
    assert result.returncode == 0, result.stderr
    for required in REQUIRED_RUN_FILES:
        assert (run_dir / required).exists(), required
        assert (run_dir / required).stat().st_size > 0, required

    config = yaml.safe_load((run_dir / "config_resolved.yaml").read_text())
    assert config["solver"]["method"] == "value_iteration"
    assert abs(float(config["solver"]["gamma"]) - 0.9) <= 1e-12
    assert config["engine"]["features"] == ["a", "b"]

    policy_header = (run_dir / "policy_table.csv").read_text().splitlines()[0]
    assert "action_name" in policy_header

    snapshot = json.loads((run_dir / "policy_snapshot.json").read_text())
    assert snapshot["configHash"] == config["config_hash"]
    assert len(snapshot["policy"]) == 9

    validate = _run_script(
        project_root=project_root,
        env=env,
        script_name="dp_validate.py",
        args=["--run-dir", str(run_dir)],
    )
    assert validate.returncode == 0, validate.stdout + validate.stderr

    evaluate = _run_script(
        project_root=project_root,
        env=env,
        script_name="dp_evaluate.py",
        args=["--run-dir", str(run_dir), "--episodes", "5", "--seed", "1"],
    )
    assert evaluate.returncode == 0, evaluate.stderr
    summary = json.loads((run_dir / "evaluation_summary.json").read_text())
    assert summary["episodes"]["n_episodes"] == 10
    assert (run_dir / "episodes.csv").stat().st_size > 0

    select = _run_script(
        project_root=project_root,
        env=env,
        script_name="dp_select_action.py",
        args=["--run-dir", str(run_dir), "--feature", "a=0", "--feature", "b=0", "--episode"],
    )
    assert select.returncode == 0, select.stderr
    payload = json.loads(select.stdout)
    assert payload["decision"]["action_name"] == "advance_a"
    assert payload["decision"]["approximated"] is False
    assert payload["episode"]["terminated"] is True


def test_dp_solve_policy_iteration(tmp_path: Path) -> None:
    project_root = Path(__file__).resolve().parents[2]
    run_dir = tmp_path / "dp_run_pi"

    result = _solve(project_root, run_dir, "--method", "policy_iteration")
    assert result.returncode == 0, result.stderr
    assert "Policy Iteration" in result.stdout

    metrics = json.loads((run_dir / "solver_metrics.json").read_text())
    assert metrics["method"] == "policy_iteration"
    assert metrics["converged"] is True
    history = metrics["value_history"]
    assert all(later >= earlier - 1e-6 for earlier, later in zip(history, history[1:]))

    validate = _run_script(
        project_root=project_root,
        env=_env(project_root),
        script_name="dp_validate.py",
        args=["--run-dir", str(run_dir)],
    )
    assert validate.returncode == 0, validate.stdout + validate.stderr


def test_dp_validate_rejects_snapshot_for_changed_config(tmp_path: Path) -> None:
    project_root = Path(__file__).resolve().parents[2]
    run_dir = tmp_path / "dp_run_tampered"
    assert _solve(project_root, run_dir).returncode == 0

    config_path = run_dir / "config_resolved.yaml"
    config = yaml.safe_load(config_path.read_text())
    config["engine"]["p_success"] = 0.5
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")

    validate = _run_script(
        project_root=project_root,
        env=_env(project_root),
        script_name="dp_validate.py",
        args=["--run-dir", str(run_dir)],
    )
    assert validate.returncode == 1
    assert "rejected" in validate.stdout
