"""Policy snapshots and serialization helpers for DP run artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from decision_engine.core.errors import IncompatiblePolicy
from decision_engine.core.params import EngineConfig
from decision_engine.core.types import SolverStatus
from decision_engine.dp.mdp import DecisionProcess
from decision_engine.dp.value_iteration import SolverResult

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "policy_snapshot.json"

REQUIRED_RUN_FILES: tuple[str, ...] = (
    "config_resolved.yaml",
    SNAPSHOT_FILE,
    "solver_metrics.json",
    "policy_table.csv",
    "quality_report.json",
    "quality_warnings.json",
    "evaluation_summary.json",
)


@dataclass(frozen=True)
class PolicySnapshot:
    """Serializable policy, value and Q tables bound to a configuration hash."""

    policy: list[int]
    value_function: list[float]
    q_function: list[list[float]]
    config_hash: str
    action_names: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": list(self.policy),
            "valueFunction": list(self.value_function),
            "qFunction": [list(row) for row in self.q_function],
            "configHash": self.config_hash,
            "actions": list(self.action_names),
            "diagnostics": dict(self.diagnostics),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PolicySnapshot":
        missing = [
            key
            for key in ("policy", "valueFunction", "qFunction", "configHash")
            if key not in payload
        ]
        if missing:
            raise ValueError(f"Policy snapshot missing key(s): {', '.join(missing)}")
        return cls(
            policy=[int(action) for action in payload["policy"]],
            value_function=[float(value) for value in payload["valueFunction"]],
            q_function=[[float(value) for value in row] for row in payload["qFunction"]],
            config_hash=str(payload["configHash"]),
            action_names=[str(name) for name in payload.get("actions", [])],
            diagnostics=dict(payload.get("diagnostics", {})),
        )


class PolicyStore:
    """Save and restore solver outputs for one decision process."""

    def __init__(self, process: DecisionProcess) -> None:
        self.process = process

    def save(self, result: SolverResult) -> PolicySnapshot:
        """Snapshot a solve; float lists round-trip exactly through JSON."""
        return PolicySnapshot(
            policy=[int(action) for action in result.policy],
            value_function=[float(value) for value in result.values],
            q_function=[[float(value) for value in row] for row in result.q_values],
            config_hash=self.process.config_hash,
            action_names=list(self.process.action_names),
            diagnostics={
                **result.diagnostics(),
                "finalBellmanResidual": result.final_bellman_residual,
            },
        )

    def load(self, snapshot: PolicySnapshot | dict[str, Any]) -> SolverResult:
        """Restore a snapshot solved for this exact configuration.

        Raises ``IncompatiblePolicy`` when the configuration hash or array
        shapes differ; nothing is restored in that case.
        """
        if isinstance(snapshot, dict):
            snapshot = PolicySnapshot.from_dict(snapshot)
        if snapshot.config_hash != self.process.config_hash:
            logger.warning(
                "Rejected policy snapshot: config hash %s does not match %s",
                snapshot.config_hash[:12],
                self.process.config_hash[:12],
            )
            raise IncompatiblePolicy(
                "Policy snapshot was solved for a different state space or "
                f"transition model (hash {snapshot.config_hash[:12]} != "
                f"{self.process.config_hash[:12]})."
            )

        n_states = self.process.n_states
        n_actions = self.process.n_actions
        policy = np.asarray(snapshot.policy, dtype=np.int64)
        values = np.asarray(snapshot.value_function, dtype=np.float64)
        q_values = np.asarray(snapshot.q_function, dtype=np.float64)
        if (
            policy.shape != (n_states,)
            or values.shape != (n_states,)
            or q_values.shape != (n_states, n_actions)
        ):
            raise IncompatiblePolicy(
                f"Policy snapshot shapes {policy.shape}/{values.shape}/{q_values.shape} "
                f"do not match {n_states} states x {n_actions} actions."
            )
        if np.any((policy < 0) | (policy >= n_actions)):
            raise IncompatiblePolicy("Policy snapshot contains out-of-range actions.")

        for array in (policy, values, q_values):
            array.setflags(write=False)
        diagnostics = snapshot.diagnostics
        return SolverResult(
            values=values,
            q_values=q_values,
            policy=policy,
            iterations=int(diagnostics.get("iterations", 0)),
            status=SolverStatus(diagnostics.get("status", SolverStatus.CONVERGED.value)),
            max_delta_history=(float(diagnostics.get("maxDelta", 0.0)),),
            final_bellman_residual=float(diagnostics.get("finalBellmanResidual", 0.0)),
            method=str(diagnostics.get("method", "value_iteration")),
        )


@dataclass(frozen=True)
class LoadedRunArtifacts:
    """Structured artifacts loaded from a DP run directory."""

    run_dir: Path
    config: EngineConfig
    config_resolved: dict[str, Any]
    snapshot: PolicySnapshot
    solver_metrics: dict[str, Any]
    quality_report: dict[str, Any]
    evaluation_summary: dict[str, Any]


def ensure_run_dir(run_dir: Path) -> None:
    """Create run directory and parent paths."""
    run_dir.mkdir(parents=True, exist_ok=True)


def write_json(path: Path, payload: Any) -> None:
    """Write JSON with stable formatting."""
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def write_yaml(path: Path, payload: Any) -> None:
    """Write YAML with stable formatting."""
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def write_snapshot(path: Path, snapshot: PolicySnapshot) -> None:
    """Persist a policy snapshot as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot.to_dict()) + "\n", encoding="utf-8")


def read_snapshot(path: Path) -> PolicySnapshot:
    """Load a policy snapshot written by :func:`write_snapshot`."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object in policy snapshot: {path}")
    return PolicySnapshot.from_dict(payload)


def load_run_artifacts(run_dir: Path) -> LoadedRunArtifacts:
    """Load all required artifacts from a run directory."""
    missing = [name for name in REQUIRED_RUN_FILES if not (run_dir / name).exists()]
    if missing:
        raise FileNotFoundError(
            f"Missing required run artifacts in {run_dir}: {', '.join(missing)}"
        )

    config_resolved = yaml.safe_load((run_dir / "config_resolved.yaml").read_text())
    if not isinstance(config_resolved, dict):
        raise ValueError("config_resolved.yaml must contain a YAML mapping.")

    engine_payload = config_resolved.get("engine")
    if not isinstance(engine_payload, dict):
        raise ValueError("config_resolved.yaml missing 'engine' payload.")

    return LoadedRunArtifacts(
        run_dir=run_dir,
        config=EngineConfig.from_dict(engine_payload),
        config_resolved=config_resolved,
        snapshot=read_snapshot(run_dir / SNAPSHOT_FILE),
        solver_metrics=json.loads((run_dir / "solver_metrics.json").read_text()),
        quality_report=json.loads((run_dir / "quality_report.json").read_text()),
        evaluation_summary=json.loads((run_dir / "evaluation_summary.json").read_text()),
    )
