"""Thread-safe facade tying the decision process, solvers and policy store."""

from __future__ import annotations

import logging
from pathlib import Path
import threading
from typing import Any

import numpy as np

from decision_engine.core.errors import DecisionEngineError
from decision_engine.core.params import EngineConfig, load_engine_config
from decision_engine.core.types import NOT_FOUND, ActionDecision, FeatureInput, SolverStatus
from decision_engine.dp.artifacts import (
    PolicySnapshot,
    PolicyStore,
    read_snapshot,
    write_snapshot,
)
from decision_engine.dp.mdp import DecisionProcess, build_decision_process
from decision_engine.dp.policy import build_evaluation_summary, policy_rows
from decision_engine.dp.policy_iteration import solve_policy_iteration
from decision_engine.dp.value_iteration import (
    CancelCheck,
    SolverResult,
    ValueIterationConfig,
    solve_value_iteration,
)
from decision_engine.rl.rollout import DEFAULT_MAX_STEPS, EpisodeResult, EpisodeRunner

logger = logging.getLogger(__name__)

SOLVER_METHODS = ("value_iteration", "policy_iteration")


class DecisionEngine:
    """Solve once, then answer action queries from the published solution.

    Solves are serialized and computed off to the side; the finished result
    replaces the published one under a lock, so concurrent readers see
    either the previous solution or the new one, never a partial solve. A
    cancelled solve is not published.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        process: DecisionProcess | None = None,
    ) -> None:
        if (config is None) == (process is None):
            raise ValueError("Provide exactly one of config or process.")
        self.config = config
        self.process = process if process is not None else build_decision_process(config)
        self.store = PolicyStore(self.process)
        self._lock = threading.Lock()
        self._solve_lock = threading.Lock()
        self._solution: SolverResult | None = None
        self._status = SolverStatus.UNINITIALIZED

    @classmethod
    def from_yaml(cls, path: Path) -> "DecisionEngine":
        return cls(load_engine_config(path))

    @property
    def status(self) -> SolverStatus:
        with self._lock:
            return self._status

    @property
    def solution(self) -> SolverResult | None:
        with self._lock:
            return self._solution

    def default_solver_config(self) -> ValueIterationConfig:
        return ValueIterationConfig(gamma=self.process.gamma, epsilon=1e-3, max_iters=1000)

    def solve(
        self,
        method: str = "value_iteration",
        config: ValueIterationConfig | None = None,
        *,
        cancel: CancelCheck = None,
        initial_policy: np.ndarray | None = None,
    ) -> SolverResult:
        """Run a solver and publish its result unless it was cancelled."""
        if method not in SOLVER_METHODS:
            raise ValueError(f"Unknown solver method {method!r}; expected one of {SOLVER_METHODS}.")
        config = config or self.default_solver_config()

        with self._solve_lock:
            with self._lock:
                self._status = SolverStatus.ITERATING
            try:
                if method == "policy_iteration":
                    result = solve_policy_iteration(
                        self.process,
                        config,
                        initial_policy=initial_policy,
                        cancel=cancel,
                    )
                else:
                    result = solve_value_iteration(self.process, config, cancel=cancel)
            except Exception:
                with self._lock:
                    self._status = (
                        SolverStatus.UNINITIALIZED
                        if self._solution is None
                        else self._solution.status
                    )
                raise

            with self._lock:
                self._status = result.status
                if result.status is not SolverStatus.CANCELLED:
                    self._solution = result
        return result

    def select_action(self, features: FeatureInput) -> ActionDecision:
        """Recommend the policy action for an observed feature vector."""
        solution = self._require_solution()
        space = self.process.space
        state = space.lookup(features)
        approximated = state == NOT_FOUND
        if approximated:
            state = space.nearest(features)
            logger.warning(
                "Off-grid feature vector approximated by nearest state %d", state
            )
        action = int(solution.policy[state])
        return ActionDecision(
            action_id=action,
            action_name=self.process.action_names[action],
            state_id=state,
            approximated=approximated,
            expected_value=float(solution.q_values[state, action]),
            converged=solution.converged,
        )

    def runner(
        self,
        *,
        seed: int | None = None,
        deterministic: bool = False,
        gamma: float | None = None,
    ) -> EpisodeRunner:
        solution = self._require_solution()
        return EpisodeRunner(
            self.process,
            solution.policy,
            gamma=gamma,
            deterministic=deterministic,
            seed=seed,
        )

    def run_episode(
        self,
        initial: FeatureInput,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        seed: int | None = None,
        deterministic: bool = False,
    ) -> EpisodeResult:
        return self.runner(seed=seed, deterministic=deterministic).run(
            initial, max_steps=max_steps
        )

    def save_policy(self, path: Path | None = None) -> PolicySnapshot:
        """Snapshot the published solution, optionally writing it to ``path``."""
        snapshot = self.store.save(self._require_solution())
        if path is not None:
            write_snapshot(path, snapshot)
            logger.info("Saved policy snapshot to %s", path)
        return snapshot

    def load_policy(self, source: PolicySnapshot | dict[str, Any] | Path) -> SolverResult:
        """Restore and publish a snapshot; incompatible snapshots change nothing."""
        if isinstance(source, Path):
            source = read_snapshot(source)
        result = self.store.load(source)
        with self._lock:
            self._solution = result
            self._status = result.status
        return result

    def policy_summary(self) -> dict[str, Any]:
        """Action histogram, value summary and solver diagnostics."""
        solution = self._require_solution()
        rows = policy_rows(self.process, solution.policy, solution.values)
        summary = build_evaluation_summary(rows)
        summary["diagnostics"] = solution.diagnostics()
        summary["n_states"] = self.process.n_states
        summary["n_actions"] = self.process.n_actions
        summary["n_terminal_states"] = int(self.process.terminal_mask.sum())
        return summary

    def _require_solution(self) -> SolverResult:
        solution = self.solution
        if solution is None:
            raise DecisionEngineError("No solved policy; call solve() or load_policy() first.")
        return solution
